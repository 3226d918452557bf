"""Dashboard API: key management and usage for the logged-in user.

Provides:
  GET  /dashboard/api/csrf               — CSRF token for the current session
  GET  /dashboard/api/keys               — all keys of the user (no secrets)
  POST /dashboard/api/keys               — create a key; plaintext returned once
  POST /dashboard/api/keys/{id}/revoke   — revoke one of the user's keys
  GET  /dashboard/api/usage              — today's count, limit, seconds to reset

All endpoints require the session cookie.  POST endpoints also require the
``X-CSRF-Token`` header.  The user id always comes from the session, never
from the request body.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from authproxy.audit.models import AuditEvent
from authproxy.auth.limiter import KEY_MANAGEMENT_RATE_LIMIT, limiter
from authproxy.auth.session import Session, enforce_csrf, require_session
from authproxy.errors import ConflictError, NotFoundError
from authproxy.utils.logger import get_logger
from authproxy.utils.timeutil import seconds_until_utc_midnight, utc_date

logger = get_logger(__name__)

router = APIRouter(prefix="/dashboard/api", tags=["dashboard"])


# ─── Request Models ───────────────────────────────────────────────────────────


class CreateKeyRequest(BaseModel):
    """Request body for POST /dashboard/api/keys.

    Only a display label; the owner is always the session user.
    """

    label: Optional[str] = Field(default=None, max_length=100)


async def _audit(request: Request, audit_type: str, user_id: int, **details) -> None:
    state = request.app.state
    await state.audit_backend.log_event(
        AuditEvent(type=audit_type, user_id=user_id, details=details, created_at=state.clock())
    )


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/csrf")
async def get_csrf_token(request: Request, session: Session = Depends(require_session)) -> dict:
    return {"csrf_token": request.app.state.sessions.csrf_token(session)}


@router.get("/keys")
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def get_keys(request: Request, session: Session = Depends(require_session)) -> dict:
    """List the user's keys, newest first, active and revoked."""
    keys = await request.app.state.keys.list_keys(session.user_id)
    return {"keys": [key.to_dict() for key in keys]}


@router.post("/keys", status_code=201)
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def create_key(
    request: Request,
    body: Optional[CreateKeyRequest] = None,
    session: Session = Depends(enforce_csrf),
) -> JSONResponse:
    """Create a new key.  The plaintext ``key`` is in this response only.

    Raises:
        500 failed_to_create after repeated prefix collisions.
    """
    state = request.app.state
    label = body.label.strip() if body and body.label else None
    created = await state.keys.create(session.user_id, label, state.clock())
    await _audit(request, "key_create", session.user_id, key_id=created.id, prefix=created.prefix)
    return JSONResponse(
        status_code=201,
        content={
            "id": created.id,
            "key": created.key,
            "prefix": created.prefix,
            "message": "Store this key now. It will not be shown again.",
        },
    )


@router.post("/keys/{key_id}/revoke")
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def revoke_key(
    key_id: int,
    request: Request,
    session: Session = Depends(enforce_csrf),
) -> dict:
    """Revoke one of the user's keys.

    Raises:
        404 not_found   — unknown key or a key owned by someone else
        409 not_revoked — already revoked
    """
    state = request.app.state
    outcome = await state.keys.revoke(session.user_id, key_id, state.clock())
    if not outcome.ok:
        await _audit(request, "key_revoke_fail", session.user_id, key_id=key_id, reason=outcome.reason)
        if outcome.reason == "not_revoked":
            raise ConflictError("Key is already revoked", code="not_revoked")
        raise NotFoundError("Key not found", code="not_found")

    await _audit(request, "key_revoke", session.user_id, key_id=key_id)
    return {"id": key_id, "status": "revoked"}


@router.get("/usage")
async def get_usage(request: Request, session: Session = Depends(require_session)) -> dict:
    state = request.app.state
    now = state.clock()
    today = utc_date(now)
    count = await state.quota.get_count(session.user_id, today)
    return {
        "date": today,
        "count": count,
        "limit": state.config.quota.daily_limit,
        "reset_seconds": seconds_until_utc_midnight(now),
    }
