"""FastAPI dependencies: caller scope, shared collaborators and services."""
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from reservation_engine.database import get_db
from reservation_engine.models.enums import UserRole
from reservation_engine.services.approvals import ApprovalService
from reservation_engine.services.cache import StatusCache
from reservation_engine.services.collaborators import LoggingNotifier, PropertyScope
from reservation_engine.services.errors import ForbiddenError, ReservationEngineError
from reservation_engine.services.scheduler import AutomationScheduler
from reservation_engine.services.state_machine import StatusTransitionService
from reservation_engine.settings import get_settings

ERROR_STATUS_CODES = {
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "FORBIDDEN": status.HTTP_403_FORBIDDEN,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "INVALID_STATE": status.HTTP_409_CONFLICT,
    "CONCURRENT_MODIFICATION": status.HTTP_409_CONFLICT,
    "VALIDATION_ERROR": 422,
}


def to_http_error(error: ReservationEngineError) -> HTTPException:
    """Translate a service refusal into an HTTP error with a structured detail."""
    return HTTPException(
        status_code=ERROR_STATUS_CODES.get(error.code, status.HTTP_400_BAD_REQUEST),
        detail=error.to_dict()
    )


def get_scope(
    x_property_id: str = Header(...),
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: str = Header(...)
) -> PropertyScope:
    """
    Caller scope as resolved by the upstream tenant gateway.

    Callers cannot claim the SYSTEM role over HTTP; it belongs to the scheduler.
    """
    try:
        role = UserRole(x_actor_role.upper())
    except ValueError:
        raise to_http_error(ForbiddenError(f"Unknown role: {x_actor_role}"))
    if role == UserRole.SYSTEM:
        raise to_http_error(ForbiddenError("The SYSTEM role is reserved for the scheduler"))
    return PropertyScope(property_id=x_property_id, actor_id=x_actor_id, role=role)


@lru_cache()
def get_status_cache() -> StatusCache:
    settings = get_settings()
    return StatusCache(
        max_size=settings.status_cache_max_size,
        ttl_seconds=settings.status_cache_ttl_seconds
    )


@lru_cache()
def get_notifier() -> LoggingNotifier:
    return LoggingNotifier()


def get_transition_service(
    db: Session = Depends(get_db),
    cache: StatusCache = Depends(get_status_cache),
    notifier=Depends(get_notifier)
) -> StatusTransitionService:
    return StatusTransitionService(
        db,
        notifier=notifier,
        cache=cache,
        bulk_limit=get_settings().bulk_transition_limit
    )


def get_approval_service(
    db: Session = Depends(get_db),
    engine: StatusTransitionService = Depends(get_transition_service)
) -> ApprovalService:
    return ApprovalService(db, engine)


def get_scheduler(request: Request) -> AutomationScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Scheduler is not configured")
    return scheduler
