# services/attribution_service.py
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.settings import config_settings
from app.models.orm.journey import JourneyORM, TouchpointORM
from app.models.schemas.attribution import (
    AttributedTouchpointModel,
    AttributionResultModel,
    ChannelAttributionSummaryModel,
    JourneyAttributionModel,
    JourneyTouchpointModel,
    TouchpointData,
)
from app.repositories.journey_repo import (
    JourneyAlreadyConvertedError,
    JourneyChangedError,
    JourneyRepository,
)
from app.services.attribution_weights import AttributionModel, calculate_weights

logger = logging.getLogger(__name__)


# Attempts at appending a touchpoint when its journey keeps getting converted underneath
MAX_TRACK_ATTEMPTS = 3
# Attempts at converting a journey that keeps gaining touchpoints
MAX_CONVERSION_ATTEMPTS = 3

# Click id field (stored as click_id_type) -> channel, in precedence order
CLICK_ID_CHANNELS = (
    ("gclid", "google"),
    ("fbc", "meta"),
    ("fbp", "meta"),
    ("ttclid", "tiktok"),
)


def resolve_channel(data: TouchpointData) -> TouchpointData:
    """
    Fills in channel, click_id and click_id_type from the raw ad-platform
    click ids when the caller left them blank. Without a click id the
    channel falls back to the lowercased source, then to 'direct'.
    Values the caller supplied are never overwritten.
    """
    click_field, click_channel = next(
        ((field, channel) for field, channel in CLICK_ID_CHANNELS if getattr(data, field)),
        (None, None),
    )

    update = {}
    if not data.channel:
        if click_channel:
            update["channel"] = click_channel
        elif data.source:
            update["channel"] = data.source.lower()
        else:
            update["channel"] = "direct"
    if click_field and not data.click_id:
        update["click_id"] = getattr(data, click_field)
    if click_field and not data.click_id_type:
        update["click_id_type"] = click_field

    return data.model_copy(update=update) if update else data


class AttributionService:
    def __init__(self, db: Session, half_life_days: Optional[float] = None):
        self.journey_repo = JourneyRepository(db)
        self.half_life_days = half_life_days or config_settings.TIME_DECAY_HALF_LIFE_DAYS

    def track_touchpoint(
        self, user_id: str, session_id: Optional[str], data: TouchpointData
    ) -> TouchpointORM:
        """
        Appends a touchpoint to the user's open journey, opening a journey
        first when the user has none. Weights are only set on conversion.

        If the journey is converted between being read and being appended to,
        the touchpoint goes to a freshly opened journey instead.
        """
        data = resolve_channel(data)

        journey = self.journey_repo.get_open_journey(user_id)
        for attempt in range(1, MAX_TRACK_ATTEMPTS + 1):
            if journey is None:
                journey = self.journey_repo.create_journey(user_id, session_id)
            try:
                touchpoint = self.journey_repo.append_touchpoint(journey.journey_id, data)
                break
            except JourneyAlreadyConvertedError:
                if attempt == MAX_TRACK_ATTEMPTS:
                    raise
                logger.warning(
                    "Journey %s was converted before touchpoint could be appended; reopening",
                    journey.journey_id,
                )
                journey = self.journey_repo.get_open_journey(user_id)

        logger.debug(
            "Tracked touchpoint %s (order %d) for user %s, journey %s",
            touchpoint.touchpoint_id,
            touchpoint.order,
            user_id,
            touchpoint.journey_id,
        )
        return touchpoint

    def _weights(self, touchpoints: Sequence[TouchpointORM], model: AttributionModel) -> List[float]:
        return calculate_weights(
            touchpoints, model, now=utcnow(), half_life_days=self.half_life_days
        )

    def _build_result(
        self,
        journey_id: str,
        touchpoints: Sequence[TouchpointORM],
        weights: Sequence[float],
        model: AttributionModel,
        conversion_value: float,
    ) -> AttributionResultModel:
        return AttributionResultModel(
            journey_id=journey_id,
            model=model,
            touchpoints=[
                AttributedTouchpointModel(
                    touchpoint_id=touchpoint.touchpoint_id,
                    channel=touchpoint.channel,
                    weight=weight,
                    credited_value=conversion_value * weight,
                )
                for touchpoint, weight in zip(touchpoints, weights)
            ],
            total_value=conversion_value,
        )

    def record_conversion(
        self,
        user_id: str,
        conversion_value: float,
        model: AttributionModel = AttributionModel.LAST_TOUCH,
    ) -> Optional[AttributionResultModel]:
        """
        Closes the user's open journey and credits its touchpoints.

        Returns None without writing anything when the user has no open
        journey, when that journey has no touchpoints, or when a concurrent
        request converted it first. A touchpoint appended while the weights
        were being computed makes the conversion start over from a fresh read.
        """
        model = AttributionModel.parse(model)

        for attempt in range(1, MAX_CONVERSION_ATTEMPTS + 1):
            journey = self.journey_repo.get_open_journey(user_id)
            if journey is None or not journey.touchpoints:
                logger.warning("No journey or touchpoints found for user %s", user_id)
                return None

            journey_id = journey.journey_id
            touchpoints = list(journey.touchpoints)
            weights = self._weights(touchpoints, model)

            # Captured before the commit expires the ORM rows
            result = self._build_result(journey_id, touchpoints, weights, model, conversion_value)

            try:
                self.journey_repo.finalize_conversion(journey, weights, conversion_value, model.value)
            except JourneyAlreadyConvertedError:
                logger.warning("Journey %s was converted concurrently; skipping", journey_id)
                return None
            except JourneyChangedError:
                if attempt == MAX_CONVERSION_ATTEMPTS:
                    raise
                logger.warning(
                    "Journey %s gained touchpoints during conversion (attempt %d); retrying",
                    journey_id,
                    attempt,
                )
                continue

            logger.info("Conversion recorded for user %s with %s model", user_id, model.value)
            return result

    def _get_journey_or_404(self, journey_id: str) -> JourneyORM:
        journey = self.journey_repo.get_journey(journey_id)
        if not journey:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Journey {journey_id} not found.",
            )
        return journey

    def get_journey_attribution(self, journey_id: str) -> JourneyAttributionModel:
        journey = self._get_journey_or_404(journey_id)

        return JourneyAttributionModel(
            journey_id=journey.journey_id,
            user_id=journey.user_id,
            model=journey.attribution_model,
            conversion_value=journey.conversion_value,
            converted_at=journey.converted_at,
            touchpoints=[
                JourneyTouchpointModel(
                    touchpoint_id=tp.touchpoint_id,
                    order=tp.order,
                    channel=tp.channel,
                    source=tp.source,
                    medium=tp.medium,
                    campaign=tp.campaign,
                    timestamp=tp.timestamp,
                    weight=tp.attribution_weight,
                    credited_value=(journey.conversion_value or 0.0) * (tp.attribution_weight or 0.0),
                )
                for tp in journey.touchpoints
            ],
        )

    def compare_models(self, journey_id: str) -> Dict[str, AttributionResultModel]:
        """Re-attributes a converted journey under every model, without saving anything."""
        journey = self._get_journey_or_404(journey_id)
        if journey.converted_at is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Journey {journey_id} has not converted yet.",
            )

        touchpoints = list(journey.touchpoints)
        return {
            model.value: self._build_result(
                journey.journey_id,
                touchpoints,
                self._weights(touchpoints, model),
                model,
                journey.conversion_value,
            )
            for model in AttributionModel
        }

    def get_channel_attribution_summary(
        self,
        start_date: datetime,
        end_date: datetime,
        model: Optional[AttributionModel] = None,
    ) -> List[ChannelAttributionSummaryModel]:
        """
        Aggregates credited value per channel over journeys converted between
        ``start_date`` and ``end_date`` (inclusive), optionally restricted to
        journeys attributed with ``model``.
        """
        journeys = self.journey_repo.get_converted_journeys(
            start_date, end_date, model.value if model else None
        )

        channel_stats = defaultdict(lambda: {"conversions": 0.0, "value": 0.0, "touchpoints": 0})
        for journey in journeys:
            for tp in journey.touchpoints:
                stats = channel_stats[tp.channel.lower()]
                weight = tp.attribution_weight or 0.0

                stats["touchpoints"] += 1
                stats["value"] += (journey.conversion_value or 0.0) * weight
                if weight > 0:
                    stats["conversions"] += weight

        return [
            ChannelAttributionSummaryModel(channel=channel, **stats)
            for channel, stats in channel_stats.items()
        ]
