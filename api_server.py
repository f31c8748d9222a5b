from __future__ import annotations

import hmac
from functools import lru_cache
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from allocation.engine import BookingLifecycleManager
from allocation.schema import (
    AdminActionRequest,
    AvailabilityRequest,
    BookingResult,
    CancelBookingRequest,
    CreateBookingRequest,
    ExpireResponse,
    Outcome,
    UpdateBookingRequest,
)
from config import get_settings
from db.session import validate_db_compatibility
from logger import configure_logging

settings = get_settings()
configure_logging(settings.log_level)

APP_NAME = settings.app_name
APP_VERSION = settings.app_version
API_KEY_HEADER = "X-API-Key"
ADMIN_API_KEY_HEADER = "X-Admin-API-Key"

OUTCOME_STATUS_CODES = {
    Outcome.CREATED: 201,
    Outcome.DENIED: 409,
    Outcome.INVALID: 422,
    Outcome.NOT_FOUND: 404,
    Outcome.FORBIDDEN: 403,
    Outcome.ERROR: 500,
}


@lru_cache
def get_manager() -> BookingLifecycleManager:
    return BookingLifecycleManager()


def verify_api_key(x_api_key: Optional[str] = Header(default=None, alias=API_KEY_HEADER)):
    if not x_api_key or not hmac.compare_digest(x_api_key, settings.booking_api_key):
        raise HTTPException(status_code=401, detail="Invalid or missing API key.")


def verify_admin_api_key(x_admin_api_key: Optional[str] = Header(default=None, alias=ADMIN_API_KEY_HEADER)):
    if not x_admin_api_key or not hmac.compare_digest(x_admin_api_key, settings.admin_api_key):
        raise HTTPException(status_code=401, detail="Invalid or missing admin API key.")


def _respond(result: BookingResult) -> JSONResponse:
    return JSONResponse(
        status_code=OUTCOME_STATUS_CODES.get(result.outcome, 200),
        content=result.model_dump(mode="json"),
    )


class HealthResponse(BaseModel):
    status: Literal["ok", "error"]
    service: str
    version: str


class BatchCancelRequest(BaseModel):
    actor_id: str = Field(min_length=1)
    booking_ids: list[str] = Field(min_length=1)
    reason: str = Field(min_length=1, max_length=500)


app = FastAPI(title=APP_NAME, version=APP_VERSION)


@app.on_event("startup")
def startup_checks():
    _ = settings.booking_api_key
    _ = settings.admin_api_key
    _ = settings.database_url
    validate_db_compatibility()


@app.get("/health/live", response_model=HealthResponse)
def health_live():
    return HealthResponse(status="ok", service=APP_NAME, version=APP_VERSION)


@app.get("/health/ready", response_model=HealthResponse)
def health_ready():
    try:
        validate_db_compatibility()
    except Exception as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return HealthResponse(status="ok", service=APP_NAME, version=APP_VERSION)


@app.post("/v1/bookings", dependencies=[Depends(verify_api_key)])
def create_booking(request: CreateBookingRequest, manager: BookingLifecycleManager = Depends(get_manager)):
    return _respond(
        manager.create_booking(
            resource_id=request.resource_id,
            requester_id=request.requester_id,
            start_time=request.start_time,
            end_time=request.end_time,
            category=request.category,
            purpose=request.purpose,
            attachment_ref=request.attachment_ref,
        )
    )


@app.patch("/v1/bookings/{booking_id}", dependencies=[Depends(verify_api_key)])
def update_booking(
    booking_id: str,
    request: UpdateBookingRequest,
    manager: BookingLifecycleManager = Depends(get_manager),
):
    return _respond(
        manager.update_booking(
            booking_id,
            request.actor_id,
            start_time=request.start_time,
            end_time=request.end_time,
            category=request.category,
        )
    )


@app.post("/v1/bookings/{booking_id}/cancel", dependencies=[Depends(verify_api_key)])
def cancel_booking(
    booking_id: str,
    request: CancelBookingRequest,
    manager: BookingLifecycleManager = Depends(get_manager),
):
    return _respond(manager.cancel_booking(booking_id, request.actor_id, request.reason))


@app.post("/v1/availability", dependencies=[Depends(verify_api_key)])
def check_availability(request: AvailabilityRequest, manager: BookingLifecycleManager = Depends(get_manager)):
    result = manager.check_availability(
        request.resource_id,
        request.start_time,
        request.end_time,
        requester_id=request.requester_id,
        category=request.category,
        exclude_booking_id=request.exclude_booking_id,
    )
    return JSONResponse(content=result.model_dump(mode="json"))


@app.post("/v1/admin/bookings/{booking_id}/approve", dependencies=[Depends(verify_admin_api_key)])
def admin_approve_booking(
    booking_id: str,
    request: AdminActionRequest,
    manager: BookingLifecycleManager = Depends(get_manager),
):
    return _respond(manager.approve_booking(booking_id, request.actor_id, notes=request.notes))


@app.post("/v1/admin/bookings/{booking_id}/reject", dependencies=[Depends(verify_admin_api_key)])
def admin_reject_booking(
    booking_id: str,
    request: AdminActionRequest,
    manager: BookingLifecycleManager = Depends(get_manager),
):
    return _respond(manager.reject_booking(booking_id, request.actor_id, request.reason or ""))


@app.post("/v1/admin/bookings/{booking_id}/in-use", dependencies=[Depends(verify_admin_api_key)])
def admin_mark_in_use(
    booking_id: str,
    request: AdminActionRequest,
    manager: BookingLifecycleManager = Depends(get_manager),
):
    return _respond(manager.mark_in_use(booking_id, request.actor_id))


@app.post("/v1/admin/bookings/{booking_id}/complete", dependencies=[Depends(verify_admin_api_key)])
def admin_complete_booking(
    booking_id: str,
    request: AdminActionRequest,
    manager: BookingLifecycleManager = Depends(get_manager),
):
    return _respond(manager.complete_booking(booking_id, request.actor_id))


@app.post("/v1/admin/bookings/cancel", dependencies=[Depends(verify_admin_api_key)])
def admin_cancel_bookings(request: BatchCancelRequest, manager: BookingLifecycleManager = Depends(get_manager)):
    result = manager.cancel_bookings(request.booking_ids, request.actor_id, request.reason)
    return JSONResponse(content=result.model_dump(mode="json"))


@app.post("/v1/admin/expire", response_model=ExpireResponse, dependencies=[Depends(verify_admin_api_key)])
def admin_expire_overdue(manager: BookingLifecycleManager = Depends(get_manager)):
    return ExpireResponse(expired=manager.expire_overdue())
