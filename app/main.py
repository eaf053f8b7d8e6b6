import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import FastAPI, Depends, HTTPException, Path, Query, Request
from fastapi.responses import JSONResponse
import uvicorn
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette import status

from app.core.auth import require_auth_token
from app.core.cache import Cache, get_cache
from app.core.clock import to_naive_utc
from app.core.db import get_db, init_db
from app.core.settings import config_settings
from app.models.schemas.assignment import AssignmentModel
from app.models.schemas.attribution import (
    AttributionResultModel,
    ChannelAttributionSummaryModel,
    ConversionCreateModel,
    ConversionResponseModel,
    JourneyAttributionModel,
    TouchpointCreateModel,
    TouchpointResponseModel,
)
from app.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentModel,
    ExperimentStatusUpdateModel,
)
from app.services.attribution_service import AttributionService
from app.services.attribution_weights import AttributionModel
from app.services.experiment_service import ExperimentService

logging.basicConfig(
    level=config_settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Crediting core",
    description="Sticky experiment assignment and multi-touch conversion attribution.",
    version="0.1.0",
    dependencies=[Depends(require_auth_token)],
)


@app.exception_handler(OperationalError)
def database_unavailable_handler(request: Request, exc: OperationalError):
    logger.error("Database operational error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Database connection failed. Please try again shortly."},
    )


# --- Experiments ---


@app.post(
    "/experiments",
    response_model=ExperimentModel,
    status_code=status.HTTP_201_CREATED,
)
def post_experiments(
    experiment_data: ExperimentCreateModel,
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    return ExperimentService(db, cache).create_experiment(experiment_data)


@app.get(
    "/experiments/{experiment_id}",
    response_model=ExperimentModel,
    status_code=status.HTTP_200_OK,
)
def get_experiment(
    experiment_id: str,
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    return ExperimentService(db, cache).get_experiment(experiment_id)


@app.patch(
    "/experiments/{experiment_id}/status",
    response_model=ExperimentModel,
    status_code=status.HTTP_200_OK,
)
def patch_experiment_status(
    experiment_id: str,
    status_update: ExperimentStatusUpdateModel,
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    return ExperimentService(db, cache).update_experiment_status(
        experiment_id, status_update.status
    )


@app.get(
    "/experiments/{experiment_id}/assignment/{user_id}",
    response_model=AssignmentModel,
    status_code=status.HTTP_200_OK,
    summary="Get user assignment",
)
def get_user_variation_assignment(
    experiment_id: str = Path(..., description="The ID of the experiment."),
    user_id: str = Path(..., description="The ID of the user."),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """
    Retrieves a user's variation. The first call for a user creates a sticky
    assignment; users outside the traffic allocation get no variation.
    """
    variation = ExperimentService(db, cache).assign(experiment_id, user_id)

    return AssignmentModel(
        experiment_id=experiment_id,
        user_id=user_id,
        variation=variation,
        included=variation is not None,
    )


# --- Attribution ---


@app.post(
    "/touchpoints",
    response_model=TouchpointResponseModel,
    status_code=status.HTTP_201_CREATED,
    summary="Record a marketing touchpoint.",
)
def post_touchpoints(touchpoint_data: TouchpointCreateModel, db: Session = Depends(get_db)):
    touchpoint = AttributionService(db).track_touchpoint(
        touchpoint_data.user_id, touchpoint_data.session_id, touchpoint_data
    )
    return TouchpointResponseModel.model_validate(touchpoint)


@app.post(
    "/conversions",
    response_model=ConversionResponseModel,
    status_code=status.HTTP_200_OK,
    summary="Record a conversion and attribute it to the open journey.",
)
def post_conversions(conversion_data: ConversionCreateModel, db: Session = Depends(get_db)):
    result = AttributionService(db).record_conversion(
        conversion_data.user_id,
        conversion_data.conversion_value,
        AttributionModel.parse(conversion_data.model),
    )
    return ConversionResponseModel(attributed=result is not None, result=result)


@app.get(
    "/journeys/{journey_id}/attribution",
    response_model=JourneyAttributionModel,
    status_code=status.HTTP_200_OK,
)
def get_journey_attribution(journey_id: str, db: Session = Depends(get_db)):
    return AttributionService(db).get_journey_attribution(journey_id)


@app.get(
    "/journeys/{journey_id}/attribution/compare",
    response_model=Dict[str, AttributionResultModel],
    status_code=status.HTTP_200_OK,
)
def get_journey_model_comparison(journey_id: str, db: Session = Depends(get_db)):
    return AttributionService(db).compare_models(journey_id)


@app.get(
    "/attribution/channels",
    response_model=List[ChannelAttributionSummaryModel],
    status_code=status.HTTP_200_OK,
    summary="Credited value per channel for journeys converted in a date range.",
)
def get_channel_attribution(
    start_date: datetime = Query(...),
    end_date: datetime = Query(...),
    model: Optional[AttributionModel] = Query(None),
    db: Session = Depends(get_db),
):
    if to_naive_utc(start_date) > to_naive_utc(end_date):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start_date must not be after end_date.",
        )
    return AttributionService(db).get_channel_attribution_summary(start_date, end_date, model)


if __name__ == "__main__":
    init_db()
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
