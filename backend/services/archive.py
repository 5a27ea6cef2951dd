import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from backend.config import ARCHIVE_PROCEDURE_ENABLED
from database import db
from database.db import (
    ArchiveError,
    ArchiveWriteError,
    ConstraintViolationError,
    LEGACY_ARCHIVE_COLUMNS,
    ProcedureUnavailableError,
    archive_records,
)

logger = logging.getLogger(__name__)

ResetPath = Literal["procedure", "fallback"]
WriteStrategy = Literal["upsert", "replace"]


@dataclass(frozen=True)
class ResetResult:
    day: str
    archived: int
    path: ResetPath
    write_strategy: WriteStrategy | None = None
    legacy_columns: bool = False
    live_delete_failed: bool = False

    def as_response(self) -> dict[str, Any]:
        return {"success": True, "archived": self.archived}


def count_archived_records(data: Any) -> int:
    """Number of records in an archive payload, whichever shape it was stored in."""
    return len(archive_records(data))


def legacy_archive_columns(records: list[dict[str, Any]], table_columns: set[str]) -> dict[str, Any]:
    """
    Values for legacy per-row archive columns, taken from the earliest record.

    Only columns that exist on the table are returned.
    """
    if not records:
        return {}
    first = min(records, key=lambda r: (str(r.get("signed_out_at") or ""), r.get("id") or 0))
    return {col: first.get(col) for col in LEGACY_ARCHIVE_COLUMNS if col in table_columns}


# -----------------------------
# Primary path
# -----------------------------
def _run_procedure(day: str) -> int:
    if not ARCHIVE_PROCEDURE_ENABLED:
        raise ProcedureUnavailableError("reset_day_archive procedure is disabled on this deployment.")
    return db.reset_day_archive(day)


def _summarize(day: str, moved: int) -> int:
    """Read the day's row back after the procedure commits."""
    row = db.get_archive_day(day)
    stored = count_archived_records(row["data"]) if row else 0
    if stored < moved:
        raise ArchiveError(f"Archive row for {day} holds {stored} records after moving {moved}.")
    return stored


# -----------------------------
# Fallback path
# -----------------------------
def _upsert_or_replace(day: str, payload: dict[str, Any], legacy: dict[str, Any] | None) -> WriteStrategy:
    try:
        db.upsert_archive_day(day, payload, legacy=legacy)
        return "upsert"
    except ConstraintViolationError as exc:
        if exc.kind != "missing_unique":
            raise
        logger.warning("Archive table has no unique day constraint; replacing row for %s", day)

    db.replace_archive_day(day, payload, legacy=legacy)
    return "replace"


def write_archive(day: str, payload: dict[str, Any], records: list[dict[str, Any]]) -> tuple[WriteStrategy, bool]:
    """
    Persist `payload` as the archive row for `day`.

    Tries upsert, then delete+insert, then both again with legacy columns
    filled in. Returns (strategy, used_legacy_columns). Raises
    ArchiveWriteError when nothing could be written; MissingTableError
    passes through untouched.
    """
    try:
        return _upsert_or_replace(day, payload, None), False
    except ConstraintViolationError as exc:
        if exc.kind != "not_null":
            raise ArchiveWriteError(str(exc)) from exc
        logger.warning("Archive table requires legacy column %r; writing compatibility row for %s", exc.column, day)
    except sqlite3.Error as exc:
        raise ArchiveWriteError(str(exc)) from exc

    legacy = legacy_archive_columns(records, db.get_archive_columns())
    try:
        return _upsert_or_replace(day, payload, legacy), True
    except (ConstraintViolationError, sqlite3.Error) as exc:
        raise ArchiveWriteError(str(exc)) from exc


def _fallback_reset(day: str) -> ResetResult:
    # Not day-scoped: anything still live goes into today's archive.
    records = db.get_live_records()
    if not records:
        logger.info("No live sign-out records to archive for %s", day)
        return ResetResult(day=day, archived=0, path="fallback")

    existing = db.get_archive_day(day)
    merged = db.merge_archive_records(archive_records(existing["data"]) if existing else [], records)
    payload = db.build_archive_payload(day, merged)

    strategy, used_legacy = write_archive(day, payload, records)

    live_delete_failed = False
    try:
        db.delete_sign_out_records(r["id"] for r in records)
    except Exception:
        # Archive already holds these records; a rerun re-merges them by id.
        live_delete_failed = True
        logger.exception("Archived %d records for %s but could not clear live records", len(records), day)

    return ResetResult(
        day=day,
        archived=len(records),
        path="fallback",
        write_strategy=strategy,
        legacy_columns=used_legacy,
        live_delete_failed=live_delete_failed,
    )


# -----------------------------
# Entry point
# -----------------------------
def reset_day(*, now: datetime | None = None) -> ResetResult:
    """
    Archive the day's sign-out records and clear the live table.

    Not safe to run concurrently with itself; callers trigger it at most
    once at a time.
    """
    day = (now or datetime.now()).strftime("%Y-%m-%d")

    try:
        moved = _run_procedure(day)
        stored = _summarize(day, moved)
    except Exception as exc:
        logger.warning("reset_day_archive failed for %s (%s); using fallback path", day, exc)
        result = _fallback_reset(day)
    else:
        result = ResetResult(day=day, archived=moved, path="procedure")
        logger.debug("Archive row for %s now holds %d records", day, stored)

    logger.info(
        "Reset day %s via %s: archived=%d strategy=%s",
        result.day,
        result.path,
        result.archived,
        result.write_strategy or "-",
    )
    return result
