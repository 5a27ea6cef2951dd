import logging
import sqlite3

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from backend.signature import inspect_signature
from database.db import (
    create_sign_out_record,
    get_available_students,
    get_classes,
    get_open_sign_out,
    get_student_by_id,
)

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_ERRORS = {
    "not_data_url": "Signature must be a PNG or JPEG data URL.",
    "bad_base64": "Signature data is not valid base64.",
    "too_large": "Signature image is too large.",
    "undecodable": "Signature image could not be read.",
    "blank": "Please sign before submitting.",
}


class SignOutRequest(BaseModel):
    student_id: int | None = None
    signer_name: str | None = None
    signature_data: str | None = None
    signature_url: str | None = None


@router.get("/classes")
def classes():
    rows = get_classes()
    return {
        "classes": [
            {"id": r[0], "name": r[1], "created_at": r[2]}
            for r in rows
        ]
    }


@router.get("/students/{class_id}")
def available_students(class_id: int):
    rows = get_available_students(class_id)
    return {
        "students": [
            {"id": r[0], "first_name": r[1], "last_name": r[2], "class_id": r[3]}
            for r in rows
        ]
    }


@router.post("/sign-out")
def sign_out(payload: SignOutRequest):
    signer_name = (payload.signer_name or "").strip()
    if not payload.student_id or not signer_name:
        raise HTTPException(status_code=400, detail="Student ID and signer name are required.")

    signature_data = (payload.signature_data or "").strip() or None
    signature_url = (payload.signature_url or "").strip() or None
    if signature_data and signature_url:
        raise HTTPException(status_code=400, detail="Send either signature_data or signature_url, not both.")

    if signature_data:
        ok, reason = inspect_signature(signature_data)
        if not ok:
            raise HTTPException(status_code=400, detail=SIGNATURE_ERRORS.get(reason, "Invalid signature."))

    if not get_student_by_id(payload.student_id):
        raise HTTPException(status_code=400, detail="Student not found.")

    if get_open_sign_out(payload.student_id) is not None:
        raise HTTPException(status_code=400, detail="Student is already signed out.")

    try:
        record = create_sign_out_record(
            payload.student_id,
            signer_name,
            signature_data=signature_data,
            signature_url=signature_url,
        )
    except sqlite3.IntegrityError:
        # lost a race with another kiosk submit for the same student
        raise HTTPException(status_code=400, detail="Student is already signed out.")

    logger.info("Student %s signed out by %s", payload.student_id, signer_name)
    return {"success": True, "record": record}
