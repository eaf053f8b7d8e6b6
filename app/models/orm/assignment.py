from sqlalchemy import (
    Column,
    String,
    ForeignKey,
    DateTime,
    PrimaryKeyConstraint,
)
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from .base import Base


class AssignmentORM(Base):
    __tablename__ = "assignments"

    user_id = Column(String, nullable=False, index=True)
    experiment_id = Column(
        String, ForeignKey("experiments.experiment_id"), nullable=False, index=True
    )
    variation_id = Column(String, ForeignKey("variations.variation_id"), nullable=False)

    assigned_at = Column(DateTime, default=utcnow, nullable=False)

    # The composite key is what makes assignment creation a compare-and-set
    __table_args__ = (
        PrimaryKeyConstraint("user_id", "experiment_id", name="assignment_pk"),
    )

    variation = relationship("VariationORM")

    experiment = relationship("ExperimentORM")
