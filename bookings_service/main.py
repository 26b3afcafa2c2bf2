import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from common.cache import delete_prefix, get_cached_json, set_cached_json

from . import config, exceptions, models, queries, schemas
from .auth import get_current_user_claims, require_roles
from .database import Base, SessionLocal, engine, get_db
from .expiry import AVAILABILITY_CACHE_PREFIX, ExpirySweeper, invalidate_availability_cache
from .lifecycle import BookingLifecycleEngine
from .notifications import NotificationDispatcher
from .overlap import has_conflict
from .rate_limiter import booking_rate_limiter

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "bookings"

ERROR_STATUS_CODES = (
    (exceptions.NotFoundError, status.HTTP_404_NOT_FOUND),
    (exceptions.NotAuthorized, status.HTTP_403_FORBIDDEN),
    (exceptions.InvalidTransition, status.HTTP_400_BAD_REQUEST),
    (exceptions.ConflictError, status.HTTP_400_BAD_REQUEST),
    (exceptions.PolicyViolation, status.HTTP_400_BAD_REQUEST),
    (exceptions.ValidationError, status.HTTP_400_BAD_REQUEST),
)


def build_engine() -> BookingLifecycleEngine:
    """
    Build the lifecycle engine from environment configuration.
    """
    return BookingLifecycleEngine(
        SessionLocal,
        expiry_window=timedelta(hours=config.BOOKING_EXPIRY_HOURS),
        notifier=NotificationDispatcher(
            base_url=config.NOTIFICATIONS_SERVICE_URL,
            timeout=config.NOTIFICATIONS_TIMEOUT_SECONDS,
        ),
        max_retries=config.BOOKING_MAX_RETRIES,
    )


lifecycle_engine = build_engine()


def get_lifecycle_engine() -> BookingLifecycleEngine:
    return lifecycle_engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)

    sweeper = None
    if config.BOOKING_EXPIRY_SWEEP_SECONDS > 0:
        sweeper = ExpirySweeper(lifecycle_engine, config.BOOKING_EXPIRY_SWEEP_SECONDS)
        sweeper.start()
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop(timeout=5)


app = FastAPI(title="Hostel Bookings Service", version="1.0.0", lifespan=lifespan)
router_v1 = APIRouter(prefix="/api/v1")


def _error_body(request: Request, status_code: int, detail, **extra) -> Dict:
    body = {
        "service": SERVICE_NAME,
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "detail": detail,
    }
    body.update(extra)
    return body


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(exceptions.BookingError)
async def booking_error_handler(request: Request, exc: exceptions.BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            status_code = code
            break
    return JSONResponse(
        status_code=status_code,
        content=_error_body(request, status_code, exc.message, error=exc.kind),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_error_body(request, 500, "Internal server error"),
    )


@app.get("/")
def root():
    """
    Health-check endpoint for the Bookings service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": "bookings", "status": "running"}


student_only = require_roles("student")
landlord_only = require_roles("landlord")
admin_only = require_roles("admin")
sweep_roles = require_roles("admin", "service_account")


def ensure_period_valid(start_date: datetime, end_date: datetime, require_future: bool = True):
    """
    Validate a requested booking period before it reaches the engine.

    Parameters
    ----------
    start_date : datetime
        Requested start (naive UTC).
    end_date : datetime
        Requested end (naive UTC).
    require_future : bool
        Whether the start must lie in the future.

    Raises
    ------
    HTTPException
        If end_date is not strictly after start_date, or the start is not
        in the future.
    """
    if end_date <= start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end_date must be after start_date",
        )
    if require_future and start_date <= models.utcnow():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Start date must be in the future",
        )


def invalidate_room_cache(room_id: int) -> None:
    delete_prefix(f"{AVAILABILITY_CACHE_PREFIX}{room_id}:")
    delete_prefix(f"room:{room_id}")


def _page(result: Dict) -> schemas.BookingPage:
    return schemas.BookingPage(
        bookings=[schemas.BookingRead.model_validate(b) for b in result["bookings"]],
        pagination=schemas.Pagination(**result["pagination"]),
    )


# ---------- Check room availability ----------


@router_v1.get("/bookings/availability", response_model=schemas.AvailabilityRead)
def check_availability(
    room_id: int,
    start_date: datetime,
    end_date: datetime,
    db: Session = Depends(get_db),
    _: Dict = Depends(get_current_user_claims),
):
    """
    Check whether a room could take a booking for a period.

    The room must exist, be active and available, and the period must be
    free of pending or approved bookings. Read-only; the answer can be
    stale by the time a booking is placed.
    """
    period = schemas.BookingPeriod(start_date=start_date, end_date=end_date)
    ensure_period_valid(period.start_date, period.end_date, require_future=False)

    cache_key = (
        f"{AVAILABILITY_CACHE_PREFIX}{room_id}:"
        f"{period.start_date.isoformat()}:{period.end_date.isoformat()}"
    )
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    room = db.get(models.Room, room_id)
    if room is None:
        raise exceptions.RoomNotFound()

    available = (
        room.is_active
        and room.is_available
        and not has_conflict(db, room_id, period.start_date, period.end_date)
    )
    data = {"room_id": room_id, "available": bool(available)}
    set_cached_json(cache_key, data, ttl_seconds=30)
    return data


# ---------- Student routes ----------


@router_v1.post(
    "/rooms/{room_id}/book",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_rate_limiter)],
)
def create_booking(
    room_id: int,
    booking_in: schemas.BookingCreate,
    request: Request,
    claims: Dict = Depends(student_only),
    lifecycle: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    """
    Request a booking for a room.

    Access
    ------
    - Allowed roles: student.

    Behavior
    --------
    - Validates the period (end after start, start in the future).
    - Creates a pending booking awaiting the landlord's decision.
    - Fails if the room is missing, inactive, unavailable, its hostel is not
      approved, or the period overlaps a pending/approved booking.
    """
    ensure_period_valid(booking_in.start_date, booking_in.end_date)

    booking = lifecycle.create_booking(
        room_id,
        claims["user_id"],
        booking_in.start_date,
        booking_in.end_date,
        metadata={
            "source": booking_in.source,
            "ip_address": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent"),
        },
    )
    invalidate_room_cache(room_id)
    return booking


@router_v1.get("/bookings/my", response_model=schemas.BookingPage)
def list_my_bookings(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=queries.DEFAULT_PAGE_SIZE, ge=1, le=queries.MAX_PAGE_SIZE),
    booking_status: Optional[models.BookingStatus] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    claims: Dict = Depends(student_only),
):
    """
    List the authenticated student's active bookings, newest first.
    """
    result = queries.list_student_bookings(
        db, claims["user_id"], page=page, limit=limit, status=booking_status
    )
    return _page(result)


@router_v1.patch("/bookings/{booking_id}/cancel", response_model=schemas.BookingRead)
def cancel_booking(
    booking_id: int,
    cancel_in: Optional[schemas.BookingCancel] = None,
    claims: Dict = Depends(student_only),
    lifecycle: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    """
    Cancel one of the student's pending or approved bookings.

    Cancelling an approved booking makes the room bookable again.
    """
    reason = cancel_in.reason if cancel_in else None
    booking = lifecycle.cancel_booking(booking_id, claims["user_id"], reason)
    invalidate_room_cache(booking.room_id)
    return booking


# ---------- Landlord routes ----------


@router_v1.get("/hostels/{hostel_id}/bookings", response_model=schemas.BookingPage)
def list_hostel_bookings(
    hostel_id: int,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=queries.DEFAULT_PAGE_SIZE, ge=1, le=queries.MAX_PAGE_SIZE),
    booking_status: Optional[models.BookingStatus] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    claims: Dict = Depends(landlord_only),
):
    """
    List booking requests for a hostel owned by the authenticated landlord.

    Without a status filter, only pending and approved bookings are shown.
    """
    result = queries.list_hostel_bookings(
        db, hostel_id, claims["user_id"], page=page, limit=limit, status=booking_status
    )
    return _page(result)


@router_v1.patch("/bookings/{booking_id}/decision", response_model=schemas.BookingRead)
def decide_booking(
    booking_id: int,
    decision: schemas.BookingDecision,
    claims: Dict = Depends(landlord_only),
    lifecycle: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    """
    Approve or reject a pending booking.

    A reason is required when rejecting. Approving locks the room.
    """
    if decision.action == "reject" and not (decision.reason and decision.reason.strip()):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Rejection reason is required",
        )

    booking = lifecycle.decide_booking(
        booking_id, claims["user_id"], decision.action, decision.reason
    )
    invalidate_room_cache(booking.room_id)
    return booking


# ---------- Admin routes ----------


@router_v1.get("/admin/bookings", response_model=schemas.BookingPage)
def list_all_bookings(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=queries.DEFAULT_PAGE_SIZE, ge=1, le=queries.MAX_PAGE_SIZE),
    booking_status: Optional[models.BookingStatus] = Query(default=None, alias="status"),
    hostel_id: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    _: Dict = Depends(admin_only),
):
    """
    Administrator view over all bookings with optional filters.
    """
    result = queries.list_all_bookings(
        db, page=page, limit=limit, status=booking_status, hostel_id=hostel_id
    )
    return _page(result)


@router_v1.patch("/admin/bookings/{booking_id}/force-cancel", response_model=schemas.BookingRead)
def force_cancel_booking(
    booking_id: int,
    cancel_in: Optional[schemas.BookingCancel] = None,
    claims: Dict = Depends(admin_only),
    lifecycle: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    """
    Cancel any pending or approved booking and deactivate it.
    """
    reason = cancel_in.reason if cancel_in else None
    booking = lifecycle.force_cancel_booking(booking_id, claims["user_id"], reason)
    invalidate_room_cache(booking.room_id)
    return booking


# ---------- Expiry ----------


@router_v1.post("/bookings/expire", response_model=schemas.ExpireResult)
def expire_bookings(
    _: Dict = Depends(sweep_roles),
    lifecycle: BookingLifecycleEngine = Depends(get_lifecycle_engine),
):
    """
    Expire pending bookings whose decision deadline has passed.

    Meant for cron jobs; the background sweeper does the same on a timer.
    """
    count = lifecycle.expire_old_bookings()
    if count:
        invalidate_availability_cache()
    return {"expired": count, "message": f"Expired {count} bookings"}


# ---------- Shared ----------


@router_v1.get("/bookings/{booking_id}", response_model=schemas.BookingRead)
def get_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Read one booking. Allowed for its student, the hostel's landlord, or an admin.
    """
    return queries.get_booking(db, booking_id, claims["user_id"], claims["role"])


app.include_router(router_v1)
