# services/experiment_service.py
import logging
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.core.cache import Cache, assignment_cache_key, experiment_cache_key
from app.core.settings import config_settings
from app.models.orm.experiment import ExperimentStatus
from app.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentModel,
    VariationModel,
)
from app.repositories.assignment_repo import AssignmentRepository
from app.repositories.experiment_repo import ExperimentRepository
from app.services.bucketing import is_in_traffic, select_variation

logger = logging.getLogger(__name__)


class ExperimentService:
    def __init__(self, db: Session, cache: Cache):
        self.assignment_repo = AssignmentRepository(db)
        self.experiment_repo = ExperimentRepository(db)
        self.cache = cache

    def create_experiment(self, experiment_data: ExperimentCreateModel) -> ExperimentModel:
        """
        Creates an experiment and its ordered variations.

        Variation weights are not required to add up to 100; users whose bucket
        falls past the last cumulative weight get the first variation.
        """
        try:
            experiment_orm = self.experiment_repo.create_experiment(experiment_data)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        logger.info("Created experiment %s (%s)", experiment_orm.experiment_id, experiment_orm.name)
        return ExperimentModel.model_validate(experiment_orm)

    def get_experiment(self, experiment_id: str) -> ExperimentModel:
        """Loads an experiment through the cache. Raises a 404 when it does not exist."""
        cache_key = experiment_cache_key(experiment_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return ExperimentModel.model_validate(cached)

        experiment_orm = self.experiment_repo.get_experiment_with_variations(experiment_id)
        if not experiment_orm:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Experiment {experiment_id} not found.",
            )

        experiment = ExperimentModel.model_validate(experiment_orm)
        self.cache.set(
            cache_key,
            experiment.model_dump(mode="json"),
            config_settings.EXPERIMENT_CACHE_TTL_SECONDS,
        )
        return experiment

    def update_experiment_status(
        self, experiment_id: str, new_status: ExperimentStatus
    ) -> ExperimentModel:
        experiment_orm = self.experiment_repo.update_status(experiment_id, new_status)
        if not experiment_orm:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Experiment {experiment_id} not found.",
            )

        self.cache.delete(experiment_cache_key(experiment_id))
        logger.info("Experiment %s is now %s", experiment_id, new_status.value)
        return ExperimentModel.model_validate(experiment_orm)

    def _cache_assignment(self, experiment_id: str, user_id: str, variation: VariationModel):
        self.cache.set(
            assignment_cache_key(experiment_id, user_id),
            variation.model_dump(mode="json"),
            config_settings.ASSIGNMENT_CACHE_TTL_SECONDS,
        )

    def assign(self, experiment_id: str, user_id: str) -> Optional[VariationModel]:
        """
        Returns the user's variation for the experiment, creating the sticky
        assignment on first call.

        1. Cached assignment.
        2. Stored assignment (then cached).
        3. Experiments that are not RUNNING hand out their first variation to
           everyone, without touching traffic allocation or storage.
        4. Users outside the traffic allocation get None and no assignment.
        5. Otherwise a variation is selected and stored. If another request
           stored one first, that one wins and is returned.

        The cache is only ever filled from what the store has confirmed.
        """
        cache_key = assignment_cache_key(experiment_id, user_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return VariationModel.model_validate(cached)

        existing_assignment = self.assignment_repo.get_assignment(experiment_id, user_id)
        if existing_assignment:
            variation = VariationModel.model_validate(existing_assignment.variation)
            self._cache_assignment(experiment_id, user_id, variation)
            return variation

        experiment = self.get_experiment(experiment_id)

        if experiment.status != ExperimentStatus.RUNNING:
            return experiment.variations[0] if experiment.variations else None

        if not is_in_traffic(user_id, experiment.experiment_id, experiment.traffic_allocation):
            logger.debug("User %s is outside the traffic of experiment %s", user_id, experiment_id)
            return None

        selected = select_variation(user_id, experiment.salt, experiment.variations)

        assignment = self.assignment_repo.create_if_absent(
            experiment_id=experiment_id,
            user_id=user_id,
            variation_id=selected.variation_id,
        )
        variation = VariationModel.model_validate(assignment.variation)

        logger.info(
            "Assigned user %s to variation %s of experiment %s",
            user_id,
            variation.key,
            experiment_id,
        )
        self._cache_assignment(experiment_id, user_id, variation)
        return variation
