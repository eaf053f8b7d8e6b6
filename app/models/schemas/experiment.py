from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict

from app.models.orm.experiment import ExperimentStatus


class VariationConfig(BaseModel):
    """Configuration for a single variation in an experiment."""

    key: str = Field(..., min_length=1)
    weight: int = Field(
        ...,
        ge=0,
        description="Percentage points this variation covers in the cumulative selection walk.",
    )


class ExperimentCreateModel(BaseModel):
    """Input for creating an experiment. Variations are selected in the given order."""

    name: str
    description: Optional[str] = None
    status: ExperimentStatus = ExperimentStatus.DRAFT
    traffic_allocation: int = Field(
        100,
        ge=0,
        le=100,
        description="Percentage of users included in the experiment at all.",
    )
    salt: Optional[str] = Field(
        None, description="Generated when omitted. Cannot be changed later."
    )
    variations: List[VariationConfig] = Field(..., min_length=1)


class ExperimentStatusUpdateModel(BaseModel):
    status: ExperimentStatus


class VariationModel(BaseModel):
    variation_id: str
    key: str
    weight: int

    model_config = ConfigDict(from_attributes=True)


class ExperimentModel(BaseModel):
    """Experiment as returned by the API and stored in the cache."""

    experiment_id: str
    name: str
    description: Optional[str] = None
    status: ExperimentStatus
    traffic_allocation: int
    salt: str
    created_at: Optional[datetime] = None
    variations: List[VariationModel]

    model_config = ConfigDict(from_attributes=True)
