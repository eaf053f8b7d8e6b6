from sqlalchemy import (
    Column,
    String,
    Float,
    Integer,
    ForeignKey,
    DateTime,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from .base import Base


class JourneyORM(Base):
    __tablename__ = "journeys"

    journey_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    # NULL while the journey is open
    converted_at = Column(DateTime, nullable=True, index=True)
    conversion_value = Column(Float, nullable=True)
    attribution_model = Column(String, nullable=True)

    touchpoints = relationship(
        "TouchpointORM",
        back_populates="journey",
        order_by="TouchpointORM.order",
    )

    __table_args__ = (
        # At most one open journey per user
        Index(
            "uq_journeys_open_user",
            "user_id",
            unique=True,
            postgresql_where=converted_at.is_(None),
            sqlite_where=converted_at.is_(None),
        ),
    )


class TouchpointORM(Base):
    __tablename__ = "touchpoints"

    touchpoint_id = Column(String, primary_key=True)
    journey_id = Column(
        String, ForeignKey("journeys.journey_id"), nullable=False, index=True
    )

    # 1-based position inside the journey
    order = Column("touch_order", Integer, nullable=False)

    channel = Column(String, nullable=False)
    source = Column(String, nullable=True)
    medium = Column(String, nullable=True)
    campaign = Column(String, nullable=True)
    ad_group = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)
    click_id = Column(String, nullable=True)
    click_id_type = Column(String, nullable=True)

    timestamp = Column(DateTime, default=utcnow, nullable=False)

    attribution_weight = Column(Float, nullable=True)

    journey = relationship("JourneyORM", back_populates="touchpoints")

    __table_args__ = (
        UniqueConstraint("journey_id", "touch_order", name="uq_touchpoints_journey_order"),
    )
