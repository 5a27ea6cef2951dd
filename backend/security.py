import base64
import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import Header, HTTPException

from backend.config import ADMIN_PASSWORD, AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY

# The dashboard has a single shared login; every session is the admin.
ADMIN_SUBJECT = "admin"


def _digest(body: str) -> str:
    mac = hmac.new(SIGNING_KEY.encode("utf-8"), body.encode("utf-8"), hashlib.sha256)
    return base64.urlsafe_b64encode(mac.digest()).rstrip(b"=").decode("ascii")


def verify_admin_password(password: str) -> bool:
    expected = ADMIN_PASSWORD.strip()
    candidate = (password or "").strip()
    if not expected or not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def issue_session_token() -> tuple[str, dict[str, Any]]:
    """
    Returns:
      (token:str, claims:dict) where token is "<claims b64>.<hmac b64>"
    """
    issued = int(time.time())
    claims = {"sub": ADMIN_SUBJECT, "iat": issued, "exp": issued + AUTH_TOKEN_TTL_SECONDS}
    raw = json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8")
    body = base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
    return f"{body}.{_digest(body)}", claims


def decode_session_token(token: str) -> dict[str, Any] | None:
    body, sep, signature = (token or "").partition(".")
    if not sep or not hmac.compare_digest(signature.encode("utf-8"), _digest(body).encode("ascii")):
        return None

    try:
        claims = json.loads(base64.urlsafe_b64decode(body + "=" * (-len(body) % 4)))
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(claims, dict) or claims.get("sub") != ADMIN_SUBJECT:
        return None
    exp = claims.get("exp")
    if not isinstance(exp, int) or exp < int(time.time()):
        return None
    return claims


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    claims = decode_session_token(token.strip())
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")
    return claims
