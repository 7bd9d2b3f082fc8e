# src/quality.py
import logging
from typing import Dict, List, Optional, Sequence

from db import PatientStore
from mapping import map_row, SEVERITY_VALUES
from models import (
    RawRow, FacilityContext, ValidationIssue, ParsedRow,
    ValidationSummary, ValidationResult,
)
from source import HEADER_LINES_SKIPPED

logger = logging.getLogger(__name__)

# skipped title lines + the header line; the first data row is line 5
FIRST_DATA_LINE = HEADER_LINES_SKIPPED + 2

REQUIRED_FIELDS = (
    ("CAMA", "bed", "Bed is required"),
    ("DNI", "national_id", "National ID is required"),
    ("NOMBRE", "full_name", "Name is required"),
)

async def validate_rows(
    store: PatientStore,
    rows: Sequence[RawRow],
    admission_date: str,
    facility_context: FacilityContext,
    line_numbers: Optional[Sequence[int]] = None,
) -> ValidationResult:
    """
    Map, check and classify every row against the store.

    Every row yields a ParsedRow, including rows with errors, so
    new + update always equals total. Structural and vocabulary problems
    are collected as issues; a failed store lookup (StoreError) is raised
    and aborts the whole call.

    line_numbers gives the source line of each row; without it rows are
    numbered as if the file had no blank lines.
    """
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []
    parsed: List[ParsedRow] = []
    first_seen: Dict[str, int] = {}
    new_count = update_count = 0

    for index, raw in enumerate(rows):
        row_no = line_numbers[index] if line_numbers else index + FIRST_DATA_LINE
        mapped = map_row(raw, admission_date, facility_context)

        for column, attr, message in REQUIRED_FIELDS:
            if not getattr(mapped, attr):
                errors.append(ValidationIssue(row=row_no, field=column, message=message))
        if mapped.age == "":
            warnings.append(ValidationIssue(row=row_no, field="EDAD", message="Age is missing"))

        if mapped.severity and mapped.severity not in SEVERITY_VALUES:
            errors.append(ValidationIssue(
                row=row_no, field="SEV",
                message="Severity must be one of I, II, III, IV or V",
                rawValue=mapped.severity,
            ))

        existing = None
        if mapped.national_id:
            if mapped.national_id in first_seen:
                errors.append(ValidationIssue(
                    row=row_no, field="DNI",
                    message=f"National ID repeated in this file (first at row {first_seen[mapped.national_id]})",
                    rawValue=mapped.national_id,
                ))
            else:
                first_seen[mapped.national_id] = row_no
            existing = await store.find_one(mapped.national_id, facility_context)

        if existing is not None:
            update_count += 1
        else:
            new_count += 1

        parsed.append(ParsedRow(
            row=row_no,
            isUpdate=existing is not None,
            matchedRecordId=existing.id if existing is not None else None,
            mappedPayload=mapped,
            matchedRecordSnapshot=existing,
        ))

    result = ValidationResult(
        summary=ValidationSummary(
            totalRows=len(rows),
            newCount=new_count,
            updateCount=update_count,
            errorCount=len(errors),
            warningCount=len(warnings),
        ),
        errors=errors,
        warnings=warnings,
        parsedRows=parsed,
    )
    logger.info(
        "[import] validated rows=%d new=%d updates=%d errors=%d warnings=%d",
        len(rows), new_count, update_count, len(errors), len(warnings),
    )
    return result
