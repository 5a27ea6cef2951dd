import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_session_token, require_session, verify_admin_password

router = APIRouter()


class AdminLogin(BaseModel):
    password: str


@router.post("/auth/login")
def admin_login(payload: AdminLogin):
    password = payload.password.strip()
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    if not verify_admin_password(password):
        raise HTTPException(status_code=401, detail="Invalid admin password.")

    token, claims = issue_session_token()
    return {
        "access_token": token,
        "token_type": "bearer",
        "role": claims["sub"],
        "expires_at": claims["exp"],
        "expires_in": max(0, claims["exp"] - int(time.time())),
    }


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "role": session["sub"],
        "expires_at": session["exp"],
        "issued_at": session.get("iat"),
    }
