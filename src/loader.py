# src/loader.py
import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import config
from db import PatientStore
from mapping import CSV_FIELDS, OPERATOR_DEFAULTS, OPERATOR_FIELDS
from models import ImportPayload, PersistedPatientRecord, ParsedRow, ImportResult, RowCommitError

logger = logging.getLogger(__name__)


class RowSkip(Exception):
    """A row that cannot be committed; recorded and the batch moves on."""


def build_document(payload: ImportPayload, snapshot: Optional[PersistedPatientRecord] = None) -> Dict[str, Any]:
    """
    Import fields always come from payload. Operator-owned fields come
    from snapshot when given (update), otherwise their empty defaults
    (insert).
    """
    doc: Dict[str, Any] = {f: getattr(payload, f) for f in CSV_FIELDS}
    for f in OPERATOR_FIELDS:
        if snapshot is not None:
            doc[f] = copy.deepcopy(getattr(snapshot, f))
        else:
            doc[f] = copy.deepcopy(OPERATOR_DEFAULTS[f])
    return doc


async def _commit_one(store: PatientStore, pr: ParsedRow) -> None:
    if not pr.isUpdate:
        await store.insert(build_document(pr.mappedPayload))
        return

    if not pr.matchedRecordId:
        raise RowSkip("No identifier to update against")

    snapshot = pr.matchedRecordSnapshot
    if snapshot is None:
        snapshot = await store.fetch_by_id(pr.matchedRecordId)
        if snapshot is None:
            raise RowSkip("Patient to update was not found")

    await store.update_by_id(pr.matchedRecordId, build_document(pr.mappedPayload, snapshot))


async def commit_rows(
    store: PatientStore,
    rows: Sequence[ParsedRow],
    delay_seconds: Optional[float] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> ImportResult:
    """
    Insert or update each parsed row, one at a time and in order.

    A failing row is recorded with its row number and national ID and
    the loop continues; nothing already written is rolled back. The
    fixed pause after every row caps the request rate one session puts
    on the store. on_progress, when given, is called with the number of
    rows processed so far after each row.
    """
    delay = config.COMMIT_DELAY_MS / 1000 if delay_seconds is None else delay_seconds
    imported = failed = 0
    errors: List[RowCommitError] = []

    for pr in rows:
        try:
            await _commit_one(store, pr)
            imported += 1
        except Exception as e:
            failed += 1
            message = str(e) or "Unknown error while importing row"
            errors.append(RowCommitError(row=pr.row, nationalId=pr.mappedPayload.national_id, message=message))
            logger.warning("[import] row %d (dni=%s) failed: %s", pr.row, pr.mappedPayload.national_id, message)

        if on_progress is not None:
            on_progress(imported + failed)
        if delay > 0:
            await asyncio.sleep(delay)

    logger.info("[import] commit done imported=%d failed=%d", imported, failed)
    return ImportResult(importedCount=imported, failedCount=failed, errors=errors)
