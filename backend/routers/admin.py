import logging
import sqlite3
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from backend.security import require_session
from backend.services.archive import reset_day
from database.db import (
    ArchiveError,
    MissingTableError,
    archive_records,
    get_archive_day,
    get_live_records,
    list_archive_days,
    mark_signed_back_in,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_session)])


@router.get("/admin/records")
def today_records():
    today = datetime.now().strftime("%Y-%m-%d")
    return {"records": get_live_records(day=today, newest_first=True)}


@router.post("/admin/records/{record_id}/sign-in")
def sign_back_in(record_id: int):
    if not mark_signed_back_in(record_id):
        raise HTTPException(status_code=404, detail="No open sign-out record with that id.")
    return {"success": True, "id": record_id}


@router.post("/admin/reset-day")
def reset_day_route():
    # Callers must not overlap resets; the dashboard disables the button while pending.
    try:
        result = reset_day()
    except MissingTableError as exc:
        logger.error("reset-day needs a migration: %s", exc)
        return JSONResponse(status_code=503, content={"error": str(exc)})
    except (ArchiveError, sqlite3.Error) as exc:
        logger.exception("reset-day failed")
        return JSONResponse(status_code=500, content={"error": str(exc)})
    return result.as_response()


@router.get("/history")
def history_days():
    try:
        days = list_archive_days()
    except MissingTableError as exc:
        return {"days": [], "note": str(exc)}
    return {"days": days}


@router.get("/history/{day}")
def history_day(day: str):
    try:
        row = get_archive_day(day)
    except MissingTableError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ArchiveError as exc:
        logger.error("history read failed for %s: %s", day, exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    if not row:
        raise HTTPException(status_code=404, detail=f"No archive for {day}.")

    data = row["data"]
    return {
        "archive": {
            "day": row["day"],
            "created_at": row["created_at"],
            "data": {
                "day": data.get("day", row["day"]) if isinstance(data, dict) else row["day"],
                "records": archive_records(data),
            },
        }
    }
