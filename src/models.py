# src/models.py
from enum import Enum
from pydantic import BaseModel, Field, computed_field
from typing import Optional, List, Dict
from datetime import datetime

# Header-keyed cells of one source line, as produced by the reader
RawRow = Dict[str, Optional[str]]

class FacilityContext(str, Enum):
    posadas = "Posadas"
    julian = "Julian"

class SessionStatus(str, Enum):
    idle = "idle"
    validating = "validating"
    invalid = "invalid"
    valid = "valid"
    committing = "committing"
    completed = "completed"
    partial = "partial"

class ImportPayload(BaseModel):
    """Patient fields supplied by the ward-round spreadsheet."""
    bed: str = ""
    national_id: str = ""
    full_name: str = ""
    age: str = ""
    history: str = ""
    chief_complaint: str = ""
    physical_exam: str = ""
    studies: str = ""
    severity: str = ""
    diagnosis: str = ""
    plan: str = ""
    admission_date: str = ""
    facility_context: FacilityContext = FacilityContext.posadas

class PersistedPatientRecord(ImportPayload):
    """A ward_round_patients row: the import fields plus everything operators own."""
    id: Optional[str] = None
    pending_items: str = ""
    thumbnail_image_refs: List[str] = Field(default_factory=list)
    full_image_refs: List[str] = Field(default_factory=list)
    external_report_refs: List[Optional[str]] = Field(default_factory=list)
    assigned_resident_id: Optional[str] = None
    display_order: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class ParseIssue(BaseModel):
    """A source line the reader kept but could not line up with the header."""
    row: int
    message: str

class ValidationIssue(BaseModel):
    row: int
    field: str
    message: str
    rawValue: Optional[str] = None

class ParsedRow(BaseModel):
    row: int
    isUpdate: bool = False
    matchedRecordId: Optional[str] = None
    mappedPayload: ImportPayload
    # captured at validation time; the committer re-fetches when absent
    matchedRecordSnapshot: Optional[PersistedPatientRecord] = None

class ValidationSummary(BaseModel):
    totalRows: int = 0
    newCount: int = 0
    updateCount: int = 0
    errorCount: int = 0
    warningCount: int = 0

class ValidationResult(BaseModel):
    summary: ValidationSummary
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    parsedRows: List[ParsedRow] = Field(default_factory=list)

    @computed_field
    @property
    def valid(self) -> bool:
        return len(self.errors) == 0

class RowCommitError(BaseModel):
    row: int
    nationalId: str
    message: str

class ImportResult(BaseModel):
    importedCount: int = 0
    failedCount: int = 0
    errors: List[RowCommitError] = Field(default_factory=list)

    @computed_field
    @property
    def success(self) -> bool:
        return self.failedCount == 0

class ImportSession(BaseModel):
    sessionId: str
    status: SessionStatus = SessionStatus.idle
    admissionDate: str
    facility: FacilityContext
    source: Optional[str] = None
    progress: int = 0
    parseErrors: List[ParseIssue] = Field(default_factory=list)
    validation: Optional[ValidationResult] = None
    result: Optional[ImportResult] = None
    message: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime
