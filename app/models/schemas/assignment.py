from typing import Optional
from pydantic import BaseModel, Field

from app.models.schemas.experiment import VariationModel


class AssignmentModel(BaseModel):
    """A user's variation for an experiment, or no variation when excluded by traffic."""

    experiment_id: str
    user_id: str
    variation: Optional[VariationModel] = Field(
        None, description="Null when the user is outside the experiment's traffic allocation."
    )
    included: bool
