"""
FastAPI application entrypoint.

Run locally:  uvicorn mediator.main:app --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mediator.api.routes import router
from mediator.config import settings
from mediator.exceptions import MediatorError, UpstreamUnavailable
from mediator.models.database import Base, engine
from mediator.schemas.api import ErrorResponse

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="CHT Interoperability Mediator",
    description=(
        "Synchronises Patients, Encounters and Observations between CHT, a "
        "FHIR store and OpenMRS, and routes LTFU follow-up requests to the "
        "requesting organisation's callback endpoint."
    ),
    version="1.0.0",
)

app.include_router(
    router,
    prefix="/mediator",
    responses={code: {"model": ErrorResponse} for code in (400, 409, 502, 504)},
)


@app.exception_handler(MediatorError)
def handle_mediator_error(request: Request, exc: MediatorError):
    if isinstance(exc, UpstreamUnavailable):
        logger.error("%s %s: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
