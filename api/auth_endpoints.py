"""
Authentication Endpoints.

Sign-in, registration, sign-out and session restore for the single user of
this client. Every route delegates to the engine's `SessionManager`; typed auth
failures (invalid credentials, already registered, network) propagate as
`ChatSyncError`s and are mapped to status codes by the error middleware.

Endpoints Provided:
- `/auth/sign-in`: Email and password sign-in.
- `/auth/sign-up`: Registration with username and optional avatar.
- `/auth/sign-out`: Revokes the session and clears all per-user state.
- `/auth/restore`: Re-runs the persisted-credential restore.
- `/auth/session`: Current auth state, without tokens.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from core.logging_config import get_logger, log_function_call
from services.chat_engine import ChatEngine

from .dependencies import get_engine
from .endpoints import AttachmentPayload

logger = get_logger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])


# Request/Response Models
class SignInRequest(BaseModel):
    email: str
    password: str


class SignUpRequest(BaseModel):
    email: str
    password: str
    username: str
    avatar: Optional[AttachmentPayload] = None


class SessionResponse(BaseModel):
    state: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    expires_at: Optional[int] = None


def _session_response(engine: ChatEngine) -> SessionResponse:
    snapshot = engine.snapshot
    session = snapshot.session
    return SessionResponse(
        state=engine.sessions.status.value,
        user_id=session.user_id if session else None,
        username=snapshot.profile.username if snapshot.profile else None,
        expires_at=session.expires_at if session else None,
    )


@router.post("/sign-in", response_model=SessionResponse)
@log_function_call(logger)
async def sign_in(request: SignInRequest, engine: ChatEngine = Depends(get_engine)):
    await engine.sessions.sign_in(request.email, request.password)
    return _session_response(engine)


@router.post("/sign-up", response_model=SessionResponse)
@log_function_call(logger)
async def sign_up(request: SignUpRequest, engine: ChatEngine = Depends(get_engine)):
    avatar = request.avatar.to_attachment() if request.avatar else None
    await engine.sessions.sign_up(request.email, request.password, request.username, avatar)
    return _session_response(engine)


@router.post("/sign-out", response_model=SessionResponse)
async def sign_out(engine: ChatEngine = Depends(get_engine)):
    await engine.sessions.sign_out()
    logger.info("Signed out via API")
    return _session_response(engine)


@router.post("/restore", response_model=SessionResponse)
async def restore(engine: ChatEngine = Depends(get_engine)):
    await engine.sessions.restore()
    return _session_response(engine)


@router.get("/session", response_model=SessionResponse)
async def get_session(engine: ChatEngine = Depends(get_engine)):
    return _session_response(engine)
