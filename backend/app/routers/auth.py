from fastapi import APIRouter, Depends, HTTPException

from app.auth import DEMO_PASSWORD, Actor, create_access_token, require_actor
from app.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse
from app.routers.errors import raise_service_http_error
from app.services.errors import ServiceError
from app.services.seva_store import seva_store
from app.services.view_cache import view_cache

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    if payload.password != DEMO_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    try:
        seva_store.ensure_account(user_id, first_name=payload.first_name, last_name=payload.last_name)
        view_cache.invalidate(("profiles",))
    except ServiceError as exc:
        raise_service_http_error(exc)
    token, expires_at = create_access_token(user_id=user_id)
    return AuthLoginResponse(access_token=token, user_id=user_id, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(actor: Actor = Depends(require_actor)):
    return AuthMeResponse(user_id=actor.user_id, is_admin=actor.is_admin, is_provider=actor.is_provider)
