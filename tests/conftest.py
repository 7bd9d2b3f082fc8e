import os
import sys
import textwrap
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
from uuid import uuid4

import pytest

# ---- Make src/ importable ----
THIS_DIR = os.path.dirname(__file__)
SRC_DIR = os.path.abspath(os.path.join(THIS_DIR, '..', 'src'))
assert os.path.isdir(SRC_DIR), f"src/ not found at {SRC_DIR}"
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)
# ------------------------------

from fastapi.testclient import TestClient
import main
from db import StoreError
from models import FacilityContext, PersistedPatientRecord

SAMPLE_CSV = textwrap.dedent("""\
    PASE DE SALA - NEUROLOGIA,,,,,,,,,,
    Completar una fila por paciente,,,,,,,,,,
    Actualizado por guardia,,,,,,,,,,
    CAMA,DNI,NOMBRE,EDAD,ANT,MC,EF/NIHSS/ABCD2,EC,SEV,DX,PLAN
    12, 30111222 ,Juan Perez,45,HTA,Hemiparesia derecha,NIHSS 4,TC sin sangrado,ii,ACV isquemico,Control TA
    14,87654321,Ana Gomez,,DBT,Cefalea,Sin foco,RMN pendiente,I,Migrana,Analgesia
""")


class FakePatientStore:
    """In-memory PatientStore. Records keep insertion order."""

    def __init__(self):
        self.records: Dict[str, PersistedPatientRecord] = {}
        self.calls: List[tuple] = []
        self.fail_writes_for: Set[str] = set()
        self.lookup_error: Optional[Exception] = None

    def seed(self, **fields) -> PersistedPatientRecord:
        now = datetime.now(timezone.utc)
        rec = PersistedPatientRecord(id=str(uuid4()), created_at=now, updated_at=now, **fields)
        self.records[rec.id] = rec
        return rec.model_copy(deep=True)

    def _check_write(self, document):
        if document.get("national_id") in self.fail_writes_for:
            raise StoreError("write", "simulated write failure")

    async def find_one(self, national_id, facility_context):
        self.calls.append(("find_one", national_id))
        if self.lookup_error is not None:
            raise self.lookup_error
        for rec in self.records.values():
            if rec.national_id == national_id and rec.facility_context == FacilityContext(facility_context):
                return rec.model_copy(deep=True)
        return None

    async def fetch_by_id(self, record_id):
        self.calls.append(("fetch_by_id", record_id))
        rec = self.records.get(record_id)
        return rec.model_copy(deep=True) if rec else None

    async def insert(self, document):
        self.calls.append(("insert", document["national_id"]))
        self._check_write(document)
        now = datetime.now(timezone.utc)
        rec = PersistedPatientRecord(id=str(uuid4()), created_at=now, updated_at=now, **document)
        self.records[rec.id] = rec
        return rec.model_copy(deep=True)

    async def update_by_id(self, record_id, document):
        self.calls.append(("update_by_id", record_id))
        self._check_write(document)
        old = self.records.get(record_id)
        if old is None:
            raise StoreError("update_by_id", f"no patient with id {record_id}")
        rec = PersistedPatientRecord(
            id=record_id, created_at=old.created_at, updated_at=datetime.now(timezone.utc), **document
        )
        self.records[record_id] = rec
        return rec.model_copy(deep=True)


@pytest.fixture
def store():
    return FakePatientStore()


@pytest.fixture
def sample_csv():
    return SAMPLE_CSV


@pytest.fixture
def client(store, monkeypatch):
    monkeypatch.setattr(main.config, "COMMIT_DELAY_MS", 0)
    main.sessions.clear()
    main.app.dependency_overrides[main.get_store] = lambda: store
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()
        main.sessions.clear()
