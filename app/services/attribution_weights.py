"""
Attribution weighting strategies.

Every strategy takes the touchpoints of one journey, in journey order, and
returns one weight per touchpoint. Weights of a non-empty journey always sum
to 1.0; an empty journey yields an empty list.

Only ``channel`` and ``timestamp`` are read from each touchpoint, so ORM rows,
pydantic models and plain test doubles can all be passed in.
"""
import enum
from datetime import datetime
from typing import List, Optional, Sequence

from app.core.clock import to_naive_utc, utcnow

DEFAULT_HALF_LIFE_DAYS = 7.0

SECONDS_PER_DAY = 24 * 60 * 60

# Relative importance of each channel for the data-driven heuristic
CHANNEL_WEIGHTS = {
    "google": 1.2,
    "meta": 1.1,
    "tiktok": 1.0,
    "direct": 0.8,
    "organic": 0.7,
    "email": 0.9,
    "referral": 0.85,
}
DEFAULT_CHANNEL_WEIGHT = 1.0

FIRST_TOUCH_MULTIPLIER = 1.3
LAST_TOUCH_MULTIPLIER = 1.5


class AttributionModel(str, enum.Enum):
    LAST_TOUCH = "last_touch"
    FIRST_TOUCH = "first_touch"
    LINEAR = "linear"
    TIME_DECAY = "time_decay"
    DATA_DRIVEN = "data_driven"

    @classmethod
    def parse(cls, name: Optional[str]) -> "AttributionModel":
        """Resolves a model name, falling back to last touch for unknown names."""
        if isinstance(name, cls):
            return name
        try:
            return cls((name or "").strip().lower())
        except ValueError:
            return cls.LAST_TOUCH


def _normalize(raw_weights: List[float]) -> List[float]:
    total = sum(raw_weights)
    return [w / total for w in raw_weights]


def last_touch_weights(count: int) -> List[float]:
    weights = [0.0] * count
    if count > 0:
        weights[-1] = 1.0
    return weights


def first_touch_weights(count: int) -> List[float]:
    weights = [0.0] * count
    if count > 0:
        weights[0] = 1.0
    return weights


def linear_weights(count: int) -> List[float]:
    if count == 0:
        return []
    return [1.0 / count] * count


def _ages_in_days(touchpoints: Sequence, now: datetime) -> List[float]:
    now = to_naive_utc(now)
    return [
        (now - to_naive_utc(touchpoint.timestamp)).total_seconds() / SECONDS_PER_DAY
        for touchpoint in touchpoints
    ]


def time_decay_raw_weights(
    touchpoints: Sequence,
    now: datetime,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
) -> List[float]:
    """Un-normalized weights: 0.5 ** (age_in_days / half_life_days)."""
    return [0.5 ** (age / half_life_days) for age in _ages_in_days(touchpoints, now)]


def time_decay_weights(
    touchpoints: Sequence,
    now: datetime,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
) -> List[float]:
    """
    Normalized time-decay weights.

    Ages are measured from the youngest touchpoint, which scales every raw
    weight by the same factor: the youngest gets exactly 1.0, so the sum never
    underflows to zero and no weight can overflow, however old or far in the
    future the timestamps are.
    """
    if not touchpoints:
        return []
    ages = _ages_in_days(touchpoints, now)
    youngest = min(ages)
    return _normalize([0.5 ** ((age - youngest) / half_life_days) for age in ages])


def channel_weight(channel: Optional[str]) -> float:
    return CHANNEL_WEIGHTS.get((channel or "").lower(), DEFAULT_CHANNEL_WEIGHT)


def position_multiplier(index: int, total: int) -> float:
    if index == 0:
        return FIRST_TOUCH_MULTIPLIER
    if index == total - 1:
        return LAST_TOUCH_MULTIPLIER
    return 1.0


def data_driven_weights(touchpoints: Sequence) -> List[float]:
    count = len(touchpoints)
    if count == 0:
        return []
    raw_weights = [
        channel_weight(touchpoint.channel) * position_multiplier(i, count)
        for i, touchpoint in enumerate(touchpoints)
    ]
    return _normalize(raw_weights)


def calculate_weights(
    touchpoints: Sequence,
    model: AttributionModel,
    now: Optional[datetime] = None,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
) -> List[float]:
    """
    Returns the credit share of each touchpoint under ``model``.

    ``now`` is only used by the time-decay model and defaults to the current
    UTC time.
    """
    count = len(touchpoints)

    if model is AttributionModel.LAST_TOUCH:
        return last_touch_weights(count)
    if model is AttributionModel.FIRST_TOUCH:
        return first_touch_weights(count)
    if model is AttributionModel.LINEAR:
        return linear_weights(count)
    if model is AttributionModel.TIME_DECAY:
        return time_decay_weights(touchpoints, now or utcnow(), half_life_days)
    if model is AttributionModel.DATA_DRIVEN:
        return data_driven_weights(touchpoints)

    raise ValueError(f"Unsupported attribution model: {model!r}")
