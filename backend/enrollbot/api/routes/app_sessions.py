"""
Desktop client session routes.

Provides endpoints for:
- Reading the caller's current entitlement
- Starting a usage session (one active session per user)
- Heartbeating a session
- Reporting a successful course registration
- Reporting client shutdown

All routes authenticate with the X-Enrollbot-User / X-Enrollbot-Key headers.
Timestamps are Unix epoch seconds; the server clock is used when omitted.

Start, ping, registration and stop answers are signed with the server's
Ed25519 key and returned as {"data": {...}, "signature": "..."}.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from enrollbot.api.dependencies.app_auth import get_app_user
from enrollbot.database.session import get_db_session
from enrollbot.models.base import utc_now
from enrollbot.models.user import User
from enrollbot.platform.response_signing import ResponseSigner, get_response_signer
from enrollbot.services.entitlement_service import EntitlementService, UserNotFoundError
from enrollbot.services.session_registry import (
    ActiveSessionConflictError,
    ClientClockSkewError,
    DeviceMeta,
    SessionNotAliveError,
    SessionRegistry,
    TerminationRecord,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/app", tags=["app-sessions"])

STATUS_SUCCESS = "Success"
REASON_OK = "OK"


# --- Request/Response Models ---


class CourseTarget(BaseModel):
    course_id: str = Field(..., min_length=1)
    section: str = Field(..., min_length=1)


class StartSessionRequest(BaseModel):
    """Device descriptor sent by the client at launch."""
    core_count: int = Field(..., ge=1)
    cpu_speed: int = Field(..., ge=0, description="CPU clock speed in MHz")
    system_arch: str
    os: str
    name: Optional[str] = None
    is_planner: bool = False
    target_courses: Optional[List[CourseTarget]] = Field(
        None, description="Omit to use the user's saved course selections"
    )


class PingRequest(BaseModel):
    timestamp: Optional[int] = None


class RegistrationRequest(BaseModel):
    course_id: str = Field(..., min_length=1)
    section: str = Field(..., min_length=1)
    timestamp: Optional[int] = None


class StopSessionRequest(BaseModel):
    did_finish: bool
    unknown_crash: bool = Field(
        False, description="Client recovered from a crash it could not classify"
    )
    reason: Optional[str] = None
    avg_cycle_time: Optional[float] = None
    cycle_time_std: Optional[float] = None
    avg_sleep_time: Optional[float] = None
    sleep_time_std: Optional[float] = None


class EntitlementResponse(BaseModel):
    username: str
    grant_level: str
    current_credits: int
    demo_available: bool


class StartPermission(BaseModel):
    """Permission to run, as granted at launch."""
    username: str
    grant_level: str
    session_id: int
    response_timestamp: int
    courses: List[CourseTarget]

    def string_to_sign(self) -> str:
        return f"{self.username},{self.grant_level},{self.session_id},{self.response_timestamp}"


class StatusData(BaseModel):
    username: str
    status: str = STATUS_SUCCESS
    reason: str = REASON_OK
    response_timestamp: int

    def string_to_sign(self) -> str:
        return f"{self.username},{self.status},{self.reason},{self.response_timestamp}"


class SignedStartSessionResponse(BaseModel):
    data: StartPermission
    signature: str


class SignedStatusResponse(BaseModel):
    data: StatusData
    signature: str


# --- Helpers ---


def _to_utc(timestamp: Optional[int]) -> datetime:
    if timestamp is None:
        return utc_now()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _response_timestamp() -> int:
    return int(utc_now().timestamp())


def _signed_status(signer: ResponseSigner, username: str) -> SignedStatusResponse:
    data = StatusData(username=username, response_timestamp=_response_timestamp())
    return SignedStatusResponse(data=data, signature=signer.sign(data.string_to_sign()))


def _require_own_session(registry: SessionRegistry, session_id: int, user: User) -> None:
    session = registry.get_session(session_id)
    if session is None or session.username != user.username:
        raise HTTPException(
            status_code=status.HTTP_410_GONE,
            detail="Session is not alive",
        )


# --- Routes ---


@router.get("/entitlement", response_model=EntitlementResponse)
def get_entitlement(
    user: User = Depends(get_app_user),
    db: Session = Depends(get_db_session),
):
    """Grant level a new session would receive right now."""
    try:
        info = EntitlementService(db).get_entitlement(user.username)
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return EntitlementResponse(**info.to_dict())


@router.post(
    "/sessions",
    response_model=SignedStartSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
def start_session(
    body: StartSessionRequest,
    request: Request,
    user: User = Depends(get_app_user),
    db: Session = Depends(get_db_session),
    signer: ResponseSigner = Depends(get_response_signer),
):
    """
    Start a usage session for the calling device.

    Returns 409 if the user already has an active session elsewhere.
    """
    device = DeviceMeta(
        core_count=body.core_count,
        cpu_speed=body.cpu_speed,
        system_arch=body.system_arch,
        os=body.os,
        name=body.name,
        ip=request.client.host if request.client else None,
    )
    targets = None
    if body.target_courses is not None:
        targets = [(c.course_id, c.section) for c in body.target_courses]

    registry = SessionRegistry(db)
    try:
        started = registry.try_start_session(
            user.username,
            device,
            is_planner=body.is_planner,
            target_courses=targets,
        )
    except ActiveSessionConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    permission = StartPermission(
        username=user.username,
        grant_level=started.grant_level.value,
        session_id=started.session_id,
        response_timestamp=_response_timestamp(),
        courses=[CourseTarget(course_id=c, section=s) for c, s in started.courses],
    )
    return SignedStartSessionResponse(
        data=permission,
        signature=signer.sign(permission.string_to_sign()),
    )


@router.post("/sessions/{session_id}/ping", response_model=SignedStatusResponse)
def ping_session(
    session_id: int,
    body: Optional[PingRequest] = None,
    user: User = Depends(get_app_user),
    db: Session = Depends(get_db_session),
    signer: ResponseSigner = Depends(get_response_signer),
):
    """
    Heartbeat. Returns 410 once the session has ended.

    Returns 400 if the client's timestamp is too far ahead of the server.
    """
    registry = SessionRegistry(db)
    _require_own_session(registry, session_id, user)

    client_timestamp = None
    if body is not None and body.timestamp is not None:
        client_timestamp = _to_utc(body.timestamp)

    try:
        registry.heartbeat(session_id, client_timestamp)
    except ClientClockSkewError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SessionNotAliveError as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(e))
    return _signed_status(signer, user.username)


@router.post("/sessions/{session_id}/registrations", response_model=SignedStatusResponse)
def report_registration(
    session_id: int,
    body: RegistrationRequest,
    user: User = Depends(get_app_user),
    db: Session = Depends(get_db_session),
    signer: ResponseSigner = Depends(get_response_signer),
):
    """Record a successful registration. Returns 410 if the session has ended."""
    registry = SessionRegistry(db)
    ok = registry.mark_registered(
        user.username,
        session_id,
        _to_utc(body.timestamp),
        body.course_id,
        body.section,
    )
    if not ok:
        raise HTTPException(
            status_code=status.HTTP_410_GONE,
            detail="Session is not alive",
        )
    return _signed_status(signer, user.username)


@router.post("/sessions/{session_id}/stop", response_model=SignedStatusResponse)
def stop_session(
    session_id: int,
    body: StopSessionRequest,
    user: User = Depends(get_app_user),
    db: Session = Depends(get_db_session),
    signer: ResponseSigner = Depends(get_response_signer),
):
    """Client shutdown report. Returns 410 if the session already ended."""
    registry = SessionRegistry(db)
    _require_own_session(registry, session_id, user)

    record = TerminationRecord(
        did_finish=body.did_finish,
        unknown_crash=body.unknown_crash,
        reason=body.reason,
        avg_cycle_time=body.avg_cycle_time,
        cycle_time_std=body.cycle_time_std,
        avg_sleep_time=body.avg_sleep_time,
        sleep_time_std=body.sleep_time_std,
    )
    try:
        registry.terminate(session_id, record)
    except SessionNotAliveError as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(e))
    return _signed_status(signer, user.username)
