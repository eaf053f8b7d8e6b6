import enum

from sqlalchemy import Column, String, Integer, ForeignKey, DateTime, Text, Enum
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from .base import Base


class ExperimentStatus(enum.Enum):
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    ENDED = "ENDED"


class ExperimentORM(Base):
    __tablename__ = 'experiments'

    experiment_id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text)

    status = Column(Enum(ExperimentStatus), default=ExperimentStatus.DRAFT, nullable=False)

    # Percentage (0-100) of users that take part in the experiment at all
    traffic_allocation = Column(Integer, default=100, nullable=False)

    # Mixed into the selection hash; must never change once the experiment exists
    salt = Column(String, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Selection walks variations in this order
    variations = relationship(
        "VariationORM",
        back_populates="experiment",
        order_by="VariationORM.position",
    )


class VariationORM(Base):
    __tablename__ = 'variations'

    variation_id = Column(String, primary_key=True)
    key = Column(String, nullable=False)
    # Percentage points in the cumulative selection walk
    weight = Column(Integer, nullable=False, default=0)
    position = Column(Integer, nullable=False, default=0)

    experiment_id = Column(String, ForeignKey('experiments.experiment_id'), nullable=False, index=True)

    experiment = relationship("ExperimentORM", back_populates="variations")
