# src/db.py
import asyncio
import logging
import uuid
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TypeVar

import asyncpg

import config
from models import FacilityContext, PersistedPatientRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

async def get_pool() -> asyncpg.Pool:
    return await asyncpg.create_pool(
        user=config.PG_USER, password=config.PG_PASS, host=config.PG_HOST,
        port=config.PG_PORT, database=config.PG_DB,
        min_size=1, max_size=config.PG_POOL_MAX,
    )

CREATE_PATIENTS = """
CREATE TABLE IF NOT EXISTS ward_round_patients (
  id uuid PRIMARY KEY,
  bed text NOT NULL DEFAULT '',
  national_id text NOT NULL DEFAULT '',
  full_name text NOT NULL DEFAULT '',
  age text NOT NULL DEFAULT '',
  history text NOT NULL DEFAULT '',
  chief_complaint text NOT NULL DEFAULT '',
  physical_exam text NOT NULL DEFAULT '',
  studies text NOT NULL DEFAULT '',
  severity text NOT NULL DEFAULT '',
  diagnosis text NOT NULL DEFAULT '',
  plan text NOT NULL DEFAULT '',
  admission_date date,
  facility_context text NOT NULL DEFAULT 'Posadas',
  pending_items text NOT NULL DEFAULT '',
  thumbnail_image_refs text[] NOT NULL DEFAULT '{}',
  full_image_refs text[] NOT NULL DEFAULT '{}',
  external_report_refs text[] NOT NULL DEFAULT '{}',
  assigned_resident_id text,
  display_order integer,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_ward_patients_natural_key
  ON ward_round_patients (national_id, facility_context)
  WHERE national_id <> '';
"""

async def ensure_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute(CREATE_PATIENTS)


class StoreError(Exception):
    """A store operation failed after its timeout/retry budget was spent."""

    def __init__(self, operation: str, message: str, is_timeout: bool = False, attempts: int = 1):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.is_timeout = is_timeout
        self.attempts = attempts


async def robust_query(
    fn: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    retries: int,
    operation: str,
    base_delay: Optional[float] = None,
) -> T:
    """
    Run fn() bounded by timeout, retrying with exponential backoff
    (base_delay, 2*base_delay, 4*base_delay ...). Raises StoreError once
    retries are exhausted.
    """
    delay = config.RETRY_BASE_DELAY_S if base_delay is None else base_delay
    retries = max(0, retries)
    for attempt in range(retries + 1):
        if attempt > 0:
            wait = delay * 2 ** (attempt - 1)
            logger.info("[store] retry %s attempt %d/%d after %.1fs", operation, attempt + 1, retries + 1, wait)
            await asyncio.sleep(wait)
        try:
            return await asyncio.wait_for(fn(), timeout=timeout)
        except asyncpg.IntegrityConstraintViolationError as e:
            # a retry would violate the same constraint
            raise StoreError(operation, str(e), attempts=attempt + 1) from e
        except asyncio.TimeoutError:
            logger.warning("[store] %s timed out after %.1fs", operation, timeout)
            err = StoreError(operation, f"timeout after {timeout}s", is_timeout=True, attempts=attempt + 1)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.warning("[store] %s failed on attempt %d: %s", operation, attempt + 1, e)
            err = StoreError(operation, str(e), attempts=attempt + 1)
    logger.error("[store] %s failed after %d attempts", operation, retries + 1)
    raise err


class PatientStore(Protocol):
    async def find_one(self, national_id: str, facility_context: FacilityContext) -> Optional[PersistedPatientRecord]: ...
    async def fetch_by_id(self, record_id: str) -> Optional[PersistedPatientRecord]: ...
    async def insert(self, document: Dict[str, Any]) -> PersistedPatientRecord: ...
    async def update_by_id(self, record_id: str, document: Dict[str, Any]) -> PersistedPatientRecord: ...


WRITE_COLUMNS = (
    "bed", "national_id", "full_name", "age", "history", "chief_complaint",
    "physical_exam", "studies", "severity", "diagnosis", "plan",
    "admission_date", "facility_context",
    "pending_items", "thumbnail_image_refs", "full_image_refs", "external_report_refs",
    "assigned_resident_id", "display_order",
)

SELECT_BY_NATURAL_KEY = """
SELECT * FROM ward_round_patients
WHERE national_id = $1 AND facility_context = $2
ORDER BY created_at
LIMIT 1;
"""

SELECT_BY_ID = "SELECT * FROM ward_round_patients WHERE id = $1;"

INSERT_PATIENT = f"""
INSERT INTO ward_round_patients(id, {", ".join(WRITE_COLUMNS)})
VALUES($1, {", ".join(f"${i}" for i in range(2, len(WRITE_COLUMNS) + 2))})
RETURNING *;
"""

UPDATE_PATIENT = f"""
UPDATE ward_round_patients SET
  {", ".join(f"{c} = ${i}" for i, c in enumerate(WRITE_COLUMNS, start=2))},
  updated_at = now()
WHERE id = $1
RETURNING *;
"""


def _to_record(row: Optional[asyncpg.Record]) -> Optional[PersistedPatientRecord]:
    if row is None:
        return None
    d = dict(row)
    d["id"] = str(d["id"])
    d["admission_date"] = d["admission_date"].isoformat() if d.get("admission_date") else ""
    for k in ("thumbnail_image_refs", "full_image_refs", "external_report_refs"):
        d[k] = list(d.get(k) or [])
    return PersistedPatientRecord(**d)


def _params(document: Dict[str, Any]) -> list:
    values = []
    for c in WRITE_COLUMNS:
        v = document.get(c)
        if c == "admission_date":
            v = date.fromisoformat(v) if v else None
        elif c == "facility_context" and isinstance(v, FacilityContext):
            v = v.value
        values.append(v)
    return values


class PostgresPatientStore:
    """PatientStore over the ward_round_patients table."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def find_one(self, national_id, facility_context):
        async def q():
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(SELECT_BY_NATURAL_KEY, national_id, FacilityContext(facility_context).value)
        row = await robust_query(q, timeout=config.LOOKUP_TIMEOUT_S, retries=config.LOOKUP_RETRIES,
                                 operation="find_one")
        return _to_record(row)

    async def fetch_by_id(self, record_id):
        async def q():
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(SELECT_BY_ID, uuid.UUID(record_id))
        row = await robust_query(q, timeout=config.FETCH_TIMEOUT_S, retries=config.FETCH_RETRIES,
                                 operation="fetch_by_id")
        return _to_record(row)

    async def insert(self, document):
        new_id = uuid.uuid4()
        params = _params(document)

        async def q():
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(INSERT_PATIENT, new_id, *params)
        row = await robust_query(q, timeout=config.WRITE_TIMEOUT_S, retries=config.WRITE_RETRIES,
                                 operation="insert")
        return _to_record(row)

    async def update_by_id(self, record_id, document):
        params = _params(document)

        async def q():
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(UPDATE_PATIENT, uuid.UUID(record_id), *params)
        row = await robust_query(q, timeout=config.WRITE_TIMEOUT_S, retries=config.WRITE_RETRIES,
                                 operation="update_by_id")
        if row is None:
            raise StoreError("update_by_id", f"no patient with id {record_id}")
        return _to_record(row)
