from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict

from app.core.clock import utcnow
from app.services.attribution_weights import AttributionModel


# --- Tracking ---


class TouchpointData(BaseModel):
    """A single marketing interaction."""

    channel: Optional[str] = Field(
        None,
        min_length=1,
        description="e.g. 'google', 'meta', 'email'. Inferred from click ids or source when omitted.",
    )
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    ad_group: Optional[str] = None
    ad_id: Optional[str] = None
    click_id: Optional[str] = None
    click_id_type: Optional[str] = Field(None, description="e.g. 'gclid', 'fbc', 'ttclid'")
    # Raw ad-platform click ids, used to infer channel and click_id when those are omitted
    gclid: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    ttclid: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class TouchpointCreateModel(TouchpointData):
    user_id: str
    session_id: Optional[str] = None


class TouchpointResponseModel(BaseModel):
    touchpoint_id: str
    journey_id: str
    order: int

    model_config = ConfigDict(from_attributes=True)


# --- Conversion ---


class ConversionCreateModel(BaseModel):
    user_id: str
    conversion_value: float = Field(..., ge=0.0)
    model: str = Field(
        AttributionModel.LAST_TOUCH.value,
        description="Unknown model names are attributed with last_touch.",
    )


class AttributedTouchpointModel(BaseModel):
    touchpoint_id: str
    channel: str
    weight: float
    credited_value: float


class AttributionResultModel(BaseModel):
    journey_id: str
    model: AttributionModel
    touchpoints: List[AttributedTouchpointModel]
    total_value: float


class ConversionResponseModel(BaseModel):
    attributed: bool
    result: Optional[AttributionResultModel] = None


# --- Reporting ---


class JourneyTouchpointModel(BaseModel):
    touchpoint_id: str
    order: int
    channel: str
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    timestamp: datetime
    weight: Optional[float] = None
    credited_value: float = 0.0


class JourneyAttributionModel(BaseModel):
    journey_id: str
    user_id: str
    model: Optional[str] = None
    conversion_value: Optional[float] = None
    converted_at: Optional[datetime] = None
    touchpoints: List[JourneyTouchpointModel]


class ChannelAttributionSummaryModel(BaseModel):
    channel: str
    conversions: float = Field(..., description="Sum of the channel's positive attribution weights.")
    value: float = Field(..., description="Credited conversion value.")
    touchpoints: int
