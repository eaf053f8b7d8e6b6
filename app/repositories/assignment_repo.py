import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from app.core.clock import utcnow
from app.models.orm.assignment import AssignmentORM

logger = logging.getLogger(__name__)


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_assignment(
        self, experiment_id: str, user_id: str
    ) -> Optional[AssignmentORM]:
        """Retrieves a persistent assignment for a user in a specific experiment."""
        stmt = (
            select(AssignmentORM)
            .where(
                AssignmentORM.experiment_id == experiment_id,
                AssignmentORM.user_id == user_id,
            )
            .options(joinedload(AssignmentORM.variation))
        )
        return self.db.scalars(stmt).one_or_none()

    def create_if_absent(
        self, experiment_id: str, user_id: str, variation_id: str
    ) -> AssignmentORM:
        """
        Inserts the assignment unless one already exists, and returns whichever
        row is persisted.

        The (user_id, experiment_id) primary key arbitrates concurrent callers:
        the loser's insert fails with an IntegrityError, after which the
        winner's row is read back and returned. The returned variation may
        therefore differ from ``variation_id``.
        """
        db_assignment = AssignmentORM(
            experiment_id=experiment_id,
            user_id=user_id,
            variation_id=variation_id,
            assigned_at=utcnow(),
        )

        try:
            self.db.add(db_assignment)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_assignment(experiment_id, user_id)
            if existing is None:
                # The conflict was not on the assignment key (e.g. a bad foreign key)
                raise
            logger.warning(
                "Assignment for user %s in experiment %s was created concurrently; using variation %s",
                user_id,
                experiment_id,
                existing.variation_id,
            )
            return existing
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Database error while creating assignment for user %s", user_id)
            raise

        return self.get_assignment(experiment_id, user_id)
