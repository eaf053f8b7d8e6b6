import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.models.orm.experiment import ExperimentORM, VariationORM, ExperimentStatus
from app.models.schemas.experiment import ExperimentCreateModel

logger = logging.getLogger(__name__)


class ExperimentRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_experiment(
        self, experiment_data: ExperimentCreateModel
    ) -> ExperimentORM:
        """
        Creates an experiment together with its variations in one transaction.

        Variations keep the order they were given in; that order drives
        selection. A salt is generated when none is supplied.
        """
        experiment_id = str(uuid.uuid4())

        db_experiment = ExperimentORM(
            experiment_id=experiment_id,
            name=experiment_data.name,
            description=experiment_data.description,
            status=experiment_data.status,
            traffic_allocation=experiment_data.traffic_allocation,
            salt=experiment_data.salt or uuid.uuid4().hex,
        )
        self.db.add(db_experiment)

        for position, variation_data in enumerate(experiment_data.variations):
            self.db.add(
                VariationORM(
                    variation_id=str(uuid.uuid4()),
                    experiment_id=experiment_id,
                    key=variation_data.key,
                    weight=variation_data.weight,
                    position=position,
                )
            )

        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ValueError(f"Database integrity error (e.g., duplicate name): {e.orig}")
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Database error while creating experiment %s", experiment_data.name)
            raise

        return self.get_experiment_with_variations(experiment_id)

    def get_experiment_with_variations(self, experiment_id: str) -> Optional[ExperimentORM]:
        """Fetches one experiment with its variations eagerly loaded, in selection order."""
        stmt = (
            select(ExperimentORM)
            .where(ExperimentORM.experiment_id == experiment_id)
            .options(selectinload(ExperimentORM.variations))
        )

        return self.db.scalars(stmt).one_or_none()

    def update_status(
        self, experiment_id: str, new_status: ExperimentStatus
    ) -> Optional[ExperimentORM]:
        experiment = self.get_experiment_with_variations(experiment_id)
        if experiment is None:
            return None

        experiment.status = new_status
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Database error while updating experiment %s", experiment_id)
            raise

        self.db.refresh(experiment)
        return experiment
