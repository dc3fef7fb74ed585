from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
import jwt
from jwt import InvalidTokenError

from drive_service.config import settings


@dataclass(frozen=True)
class Principal:
    user_id: str
    source: str
    is_admin: bool = False


def _parse_api_key_mappings() -> dict[str, str]:
    mapping: dict[str, str] = {}
    for item in settings.api_key_mappings.split(","):
        api_key, sep, user_id = item.strip().partition(":")
        if not sep:
            continue
        api_key = api_key.strip()
        user_id = user_id.strip()
        if api_key and user_id:
            mapping[api_key] = user_id
    return mapping


def _admin_ids() -> set[str]:
    return {item.strip() for item in settings.admin_user_ids.split(",") if item.strip()}


def _parse_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer":
        raise HTTPException(status_code=401, detail="invalid authorization header")
    token = token.strip()
    if not token:
        raise HTTPException(status_code=401, detail="missing bearer token")
    return token


def _user_from_jwt(authorization: str | None) -> str:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="jwt auth is enabled but jwt_secret is not configured")
    token = _parse_bearer_token(authorization)
    decode_kwargs = {"key": settings.jwt_secret, "algorithms": [settings.jwt_algorithm]}
    if settings.jwt_audience:
        decode_kwargs["audience"] = settings.jwt_audience
    if settings.jwt_issuer:
        decode_kwargs["issuer"] = settings.jwt_issuer
    try:
        payload = jwt.decode(token, **decode_kwargs)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"invalid bearer token: {exc}") from exc
    user_id = str(payload.get("sub") or payload.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="jwt missing subject claim")
    return user_id


def _user_from_api_key(x_api_key: str | None) -> str:
    if not x_api_key:
        raise HTTPException(status_code=401, detail="missing API key")
    user_id = _parse_api_key_mappings().get(x_api_key)
    if not user_id:
        raise HTTPException(status_code=403, detail="invalid API key")
    return user_id


def require_principal(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    mode = settings.auth_mode.lower().strip()
    if mode == "jwt" or (mode == "hybrid" and authorization):
        user_id, source = _user_from_jwt(authorization), "jwt"
    elif mode in ("api_key", "hybrid"):
        user_id, source = _user_from_api_key(x_api_key), "api_key"
    else:
        raise HTTPException(status_code=500, detail=f"unsupported auth_mode: {settings.auth_mode}")
    return Principal(user_id=user_id, source=source, is_admin=user_id in _admin_ids())


def require_admin(principal: Principal = Depends(require_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return principal
