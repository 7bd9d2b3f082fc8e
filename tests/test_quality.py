import pytest

from db import StoreError
from models import FacilityContext
from quality import validate_rows

DATE = "2024-03-01"


def row(**cells):
    base = {"CAMA": "1", "DNI": "", "NOMBRE": "Paciente", "EDAD": "50", "SEV": "I"}
    base.update(cells)
    return base


@pytest.mark.asyncio
async def test_new_row_is_classified_new(store):
    raw = {"CAMA": "12", "DNI": "30111222", "NOMBRE": "Juan Perez", "EDAD": "45", "SEV": "ii"}
    res = await validate_rows(store, [raw], DATE, FacilityContext.posadas)
    assert res.valid
    pr = res.parsedRows[0]
    assert pr.row == 5
    assert pr.isUpdate is False
    assert pr.matchedRecordId is None
    assert pr.mappedPayload.severity == "II"
    assert res.summary.newCount == 1
    assert res.summary.updateCount == 0


@pytest.mark.asyncio
async def test_empty_dni_is_error_and_never_matches(store):
    store.seed(national_id="", full_name="ghost")
    res = await validate_rows(store, [row(DNI="")], DATE, FacilityContext.posadas)
    assert not res.valid
    assert [(e.row, e.field) for e in res.errors] == [(5, "DNI")]
    assert res.parsedRows[0].isUpdate is False
    assert ("find_one", "") not in store.calls


@pytest.mark.asyncio
async def test_match_in_same_facility_is_update_with_snapshot(store):
    existing = store.seed(national_id="87654321", full_name="Old", pending_items="MRI",
                          facility_context=FacilityContext.posadas)
    res = await validate_rows(store, [row(DNI="87654321")], DATE, FacilityContext.posadas)
    pr = res.parsedRows[0]
    assert pr.isUpdate is True
    assert pr.matchedRecordId == existing.id
    assert pr.matchedRecordSnapshot.pending_items == "MRI"
    assert res.summary.updateCount == 1


@pytest.mark.asyncio
async def test_match_in_other_facility_is_new(store):
    store.seed(national_id="87654321", facility_context=FacilityContext.julian)
    res = await validate_rows(store, [row(DNI="87654321")], DATE, FacilityContext.posadas)
    assert res.parsedRows[0].isUpdate is False


@pytest.mark.asyncio
async def test_severity_outside_vocabulary_is_error(store):
    res = await validate_rows(store, [row(DNI="1", SEV="VI")], DATE, FacilityContext.posadas)
    assert not res.valid
    err = res.errors[0]
    assert err.field == "SEV"
    assert err.rawValue == "VI"


@pytest.mark.asyncio
async def test_missing_required_fields_each_reported(store):
    res = await validate_rows(store, [row(CAMA="", DNI="", NOMBRE="")], DATE, FacilityContext.posadas)
    assert [e.field for e in res.errors] == ["CAMA", "DNI", "NOMBRE"]
    assert res.summary.errorCount == 3


@pytest.mark.asyncio
async def test_missing_age_is_only_a_warning(store):
    res = await validate_rows(store, [row(DNI="1", EDAD="")], DATE, FacilityContext.posadas)
    assert res.valid
    assert [(w.field, w.message) for w in res.warnings] == [("EDAD", "Age is missing")]
    assert res.summary.warningCount == 1


@pytest.mark.asyncio
async def test_repeated_dni_in_batch_is_error(store):
    rows = [row(DNI="111"), row(DNI="222"), row(DNI="111")]
    res = await validate_rows(store, rows, DATE, FacilityContext.posadas)
    assert not res.valid
    assert len(res.errors) == 1
    err = res.errors[0]
    assert (err.row, err.field) == (7, "DNI")
    assert "first at row 5" in err.message


@pytest.mark.asyncio
async def test_counts_and_cardinality_hold_with_errors(store):
    store.seed(national_id="222")
    rows = [row(DNI="111"), row(DNI="222", SEV="X"), row(DNI="", NOMBRE="")]
    res = await validate_rows(store, rows, DATE, FacilityContext.posadas)
    s = res.summary
    assert len(res.parsedRows) == len(rows) == s.totalRows
    assert s.newCount + s.updateCount == s.totalRows
    assert (s.newCount, s.updateCount) == (2, 1)
    assert [pr.row for pr in res.parsedRows] == [5, 6, 7]
    assert res.valid == (s.errorCount == 0)


@pytest.mark.asyncio
async def test_validation_is_idempotent(store):
    store.seed(national_id="222")
    rows = [row(DNI="111"), row(DNI="222", EDAD="")]
    first = await validate_rows(store, rows, DATE, FacilityContext.posadas)
    second = await validate_rows(store, rows, DATE, FacilityContext.posadas)
    assert first.model_dump() == second.model_dump()


@pytest.mark.asyncio
async def test_lookup_failure_aborts(store):
    store.lookup_error = StoreError("find_one", "timeout after 5s", is_timeout=True)
    with pytest.raises(StoreError):
        await validate_rows(store, [row(DNI="111")], DATE, FacilityContext.posadas)


@pytest.mark.asyncio
async def test_row_numbers_follow_source_lines(store):
    rows = [row(DNI="111"), row(DNI="")]
    res = await validate_rows(store, rows, DATE, FacilityContext.posadas, line_numbers=[5, 7])
    assert [pr.row for pr in res.parsedRows] == [5, 7]
    assert [(e.row, e.field) for e in res.errors] == [(7, "DNI")]
