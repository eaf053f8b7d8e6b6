import logging
import uuid
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.core.clock import to_naive_utc, utcnow
from app.models.orm.journey import JourneyORM, TouchpointORM
from app.models.schemas.attribution import TouchpointData

logger = logging.getLogger(__name__)

# Attempts at appending a touchpoint before giving up on order collisions
MAX_APPEND_ATTEMPTS = 3

# TouchpointData fields stored as touchpoint columns
TOUCHPOINT_FIELDS = (
    "channel",
    "source",
    "medium",
    "campaign",
    "ad_group",
    "ad_id",
    "click_id",
    "click_id_type",
)


class JourneyAlreadyConvertedError(Exception):
    """Raised when a journey is no longer open."""


class JourneyChangedError(Exception):
    """Raised when touchpoints were added to a journey while it was being converted."""


class JourneyRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_journey(self, journey_id: str) -> Optional[JourneyORM]:
        stmt = (
            select(JourneyORM)
            .where(JourneyORM.journey_id == journey_id)
            .options(selectinload(JourneyORM.touchpoints))
        )
        return self.db.scalars(stmt).one_or_none()

    def get_open_journey(self, user_id: str) -> Optional[JourneyORM]:
        """Most recent journey for the user that has not converted yet."""
        stmt = (
            select(JourneyORM)
            .where(JourneyORM.user_id == user_id, JourneyORM.converted_at.is_(None))
            .order_by(JourneyORM.created_at.desc())
            .limit(1)
            .options(selectinload(JourneyORM.touchpoints))
        )
        return self.db.scalars(stmt).first()

    def create_journey(self, user_id: str, session_id: Optional[str]) -> JourneyORM:
        """
        Opens a new journey for the user.

        Only one open journey may exist per user. If another request opened
        one first, that journey is returned instead.
        """
        db_journey = JourneyORM(
            journey_id=str(uuid.uuid4()),
            user_id=user_id,
            session_id=session_id,
            created_at=utcnow(),
        )

        try:
            self.db.add(db_journey)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_open_journey(user_id)
            if existing is None:
                raise
            logger.warning("Open journey for user %s was created concurrently", user_id)
            return existing
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Database error while opening a journey for user %s", user_id)
            raise

        return self.get_journey(db_journey.journey_id)

    def _count_touchpoints(self, journey_id: str) -> int:
        stmt = select(func.count()).select_from(TouchpointORM).where(
            TouchpointORM.journey_id == journey_id
        )
        return self.db.scalar(stmt)

    def _lock_open_journey(self, journey_id: str) -> bool:
        """
        Row-locks the journey for the rest of the transaction and reports
        whether it is still open. SQLite has no row locks; there the write
        lock taken by an earlier flush serializes writers instead.
        """
        stmt = (
            select(JourneyORM.journey_id)
            .where(JourneyORM.journey_id == journey_id, JourneyORM.converted_at.is_(None))
            .with_for_update()
        )
        return self.db.scalar(stmt) is not None

    def append_touchpoint(self, journey_id: str, data: TouchpointData) -> TouchpointORM:
        """
        Appends a touchpoint at the end of the open journey.

        The order is the current touchpoint count plus one. A concurrent append
        taking the same order trips the (journey_id, order) unique constraint,
        in which case the count is re-read and the insert retried.

        The insert is only committed while the journey is still open; if it
        was converted in the meantime the insert is rolled back and
        JourneyAlreadyConvertedError raised.
        """
        touchpoint_fields = data.model_dump(include=set(TOUCHPOINT_FIELDS))

        for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
            db_touchpoint = TouchpointORM(
                touchpoint_id=str(uuid.uuid4()),
                journey_id=journey_id,
                order=self._count_touchpoints(journey_id) + 1,
                timestamp=to_naive_utc(data.timestamp),
                **touchpoint_fields,
            )
            try:
                self.db.add(db_touchpoint)
                self.db.flush()
                is_open = self._lock_open_journey(journey_id)
            except IntegrityError:
                self.db.rollback()
                if attempt == MAX_APPEND_ATTEMPTS:
                    raise
                logger.warning(
                    "Touchpoint order collision on journey %s (attempt %d)", journey_id, attempt
                )
                continue
            except SQLAlchemyError:
                self.db.rollback()
                logger.exception("Database error while appending touchpoint to journey %s", journey_id)
                raise

            if not is_open:
                self.db.rollback()
                raise JourneyAlreadyConvertedError(journey_id)

            try:
                self.db.commit()
            except SQLAlchemyError:
                self.db.rollback()
                logger.exception("Database error while appending touchpoint to journey %s", journey_id)
                raise
            return db_touchpoint

    def _mark_converted(
        self, journey_id: str, conversion_value: float, model: str, converted_at: datetime
    ) -> None:
        # Conditional update: only an open journey can be converted
        result = self.db.execute(
            update(JourneyORM)
            .where(JourneyORM.journey_id == journey_id, JourneyORM.converted_at.is_(None))
            .values(
                converted_at=converted_at,
                conversion_value=conversion_value,
                attribution_model=model,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise JourneyAlreadyConvertedError(journey_id)

    def finalize_conversion(
        self,
        journey: JourneyORM,
        weights: Sequence[float],
        conversion_value: float,
        model: str,
    ) -> None:
        """
        Writes the attribution weights onto every touchpoint and marks the
        journey converted, as one transaction.

        The journey row is locked first. If the stored touchpoints no longer
        match the ones the weights were computed for (a touchpoint was appended
        after the journey was read), JourneyChangedError is raised. A journey
        that is already converted raises JourneyAlreadyConvertedError.

        On any failure the transaction is rolled back: the journey stays open
        and no touchpoint keeps a weight.
        """
        journey_id = journey.journey_id
        touchpoints = journey.touchpoints
        if len(weights) != len(touchpoints):
            raise ValueError(
                f"Expected {len(touchpoints)} weights for journey {journey_id}, got {len(weights)}"
            )

        try:
            if not self._lock_open_journey(journey_id):
                raise JourneyAlreadyConvertedError(journey_id)
            for touchpoint, weight in zip(touchpoints, weights):
                touchpoint.attribution_weight = weight
            self.db.flush()
            if self._count_touchpoints(journey_id) != len(weights):
                raise JourneyChangedError(journey_id)
            self._mark_converted(journey_id, conversion_value, model, utcnow())
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Conversion of journey %s rolled back", journey_id)
            raise
        except Exception:
            self.db.rollback()
            raise

    def get_converted_journeys(
        self, start_date: datetime, end_date: datetime, model: Optional[str] = None
    ) -> List[JourneyORM]:
        stmt = (
            select(JourneyORM)
            .where(
                JourneyORM.converted_at >= to_naive_utc(start_date),
                JourneyORM.converted_at <= to_naive_utc(end_date),
            )
            .options(selectinload(JourneyORM.touchpoints))
        )
        if model:
            stmt = stmt.where(JourneyORM.attribution_model == model)

        return self.db.scalars(stmt).all()
