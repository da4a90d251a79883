import base64
import binascii
from dataclasses import dataclass
import hmac
import logging

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from .config import settings
from .database import get_db
from .services import get_or_create_user

logger = logging.getLogger("credits.auth")


@dataclass
class AuthContext:
    user_id: str
    email: str | None
    validated_via_internal_key: bool


def _internal_key_matches(value: str | None) -> bool:
    if not settings.internal_api_key or not value:
        return False
    return hmac.compare_digest(value.encode("utf-8"), settings.internal_api_key.encode("utf-8"))


def get_auth_context(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_email: str | None = Header(default=None, alias="X-User-Email"),
    x_internal_api_key: str | None = Header(default=None, alias="X-Internal-API-Key"),
) -> AuthContext:
    # Sessions are resolved by the auth gateway in front of this service; it forwards the user id.
    if _internal_key_matches(x_internal_api_key):
        if not x_user_id:
            raise HTTPException(status_code=401, detail="X-User-Id is required for internal auth")
        return AuthContext(user_id=x_user_id, email=x_user_email, validated_via_internal_key=True)

    if settings.allow_insecure_dev_auth and x_user_id:
        return AuthContext(user_id=x_user_id, email=x_user_email, validated_via_internal_key=False)

    raise HTTPException(status_code=401, detail="Unauthorized")


def current_user_dep(
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
):
    return get_or_create_user(db, auth.user_id, email=auth.email)


def require_internal_api_key(x_internal_api_key: str | None = Header(default=None, alias="X-Internal-API-Key")) -> None:
    if not settings.internal_api_key:
        raise HTTPException(status_code=503, detail="internal_api_key is not configured")
    if not _internal_key_matches(x_internal_api_key):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _basic_credentials_match(header: str) -> bool:
    if not header.startswith("Basic "):
        return False
    try:
        decoded = base64.b64decode(header[6:], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logger.warning("Cron auth: malformed basic credentials")
        return False
    username, _, password = decoded.partition(":")
    return hmac.compare_digest(
        username.encode("utf-8"), (settings.cron_jobs_username or "").encode("utf-8")
    ) and hmac.compare_digest(password.encode("utf-8"), (settings.cron_jobs_password or "").encode("utf-8"))


def require_cron_auth(authorization: str | None = Header(default=None, alias="Authorization")) -> None:
    header = authorization or ""
    has_basic = bool(settings.cron_jobs_username and settings.cron_jobs_password)
    has_bearer = bool(settings.cron_secret)

    if has_basic and _basic_credentials_match(header):
        return
    if has_bearer and hmac.compare_digest(header.encode("utf-8"), f"Bearer {settings.cron_secret}".encode("utf-8")):
        return

    logger.error("Cron: unauthorized request")
    if not has_basic and not has_bearer:
        raise HTTPException(status_code=500, detail="Cron auth not configured")
    raise HTTPException(status_code=401, detail="Unauthorized")
