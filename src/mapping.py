# src/mapping.py
import re
from datetime import date
from typing import Dict, Any, Optional

from models import RawRow, ImportPayload, FacilityContext

# Spreadsheet column -> ImportPayload attribute
CSV_COLUMNS: Dict[str, str] = {
    "CAMA": "bed",
    "DNI": "national_id",
    "NOMBRE": "full_name",
    "EDAD": "age",
    "ANT": "history",
    "MC": "chief_complaint",
    "EF/NIHSS/ABCD2": "physical_exam",
    "EC": "studies",
    "SEV": "severity",
    "DX": "diagnosis",
    "PLAN": "plan",
}

# Fields the import writes on every insert/update
CSV_FIELDS = tuple(CSV_COLUMNS.values()) + ("admission_date", "facility_context")

# Fields operators edit in the ward UI; an import never overwrites them
OPERATOR_DEFAULTS: Dict[str, Any] = {
    "pending_items": "",
    "thumbnail_image_refs": [],
    "full_image_refs": [],
    "external_report_refs": [],
    "assigned_resident_id": None,
    "display_order": None,
}
OPERATOR_FIELDS = tuple(OPERATOR_DEFAULTS)

SEVERITY_VALUES = frozenset({"I", "II", "III", "IV", "V"})

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

def _cell(raw: RawRow, column: str) -> str:
    val: Optional[str] = raw.get(column)
    return str(val).strip() if val else ""

def map_row(raw: RawRow, admission_date: str, facility_context: FacilityContext) -> ImportPayload:
    values = {attr: _cell(raw, col) for col, attr in CSV_COLUMNS.items()}
    values["severity"] = values["severity"].upper()
    return ImportPayload(
        **values,
        admission_date=admission_date,
        facility_context=facility_context,
    )

def normalize_admission_date(value: Optional[str], fallback: str) -> str:
    """Keep value only if it looks like YYYY-MM-DD; otherwise use fallback."""
    value = (value or "").strip()
    if not DATE_RE.match(value):
        return fallback
    try:
        date.fromisoformat(value)
    except ValueError:
        return fallback
    return value

def resolve_facility_context(value: Optional[str], default: Optional[str] = None) -> FacilityContext:
    return FacilityContext(value or default or FacilityContext.posadas.value)
