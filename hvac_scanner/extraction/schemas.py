"""Pydantic models for scan results, inspection reports and persisted records.

Layers / roles:
    FieldProvenance    : Where one equipment value came from (scanned / ai_inferred / manual) + confidence.
    EquipmentRecord    : One physical HVAC unit; owns its provenance map.
    LabelScanOutcome   : Transient result of one label-scan call (never persisted verbatim).
    FailureFinding     : One problem reported by an equipment-condition analysis.
    EquipmentAnalysis  : Normalized equipment-condition analysis.
    CapturedImage      : Photo metadata; the blob itself lives in the images collection.
    InspectionReport   : One inspection session with its status lifecycle.

Wire format is camelCase (the mobile client and the model prompts both use it);
snake_case input is accepted as well. Field validators are deliberately lenient:
the model is told what shape to return but nothing enforces it, so values that
cannot be projected onto the declared type become None (logged) instead of
failing the whole response.
"""

import logging
import math
import re
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger("hvac.extract")

NUMBER_RX = re.compile(r"-?\d+(?:\.\d+)?")
DATE_RX = re.compile(r"^(\d{4})[-/](\d{1,2})(?:[-/](\d{1,2}))?")  # YYYY-MM-DD, YYYY/MM/DD, YYYY-MM
MONTH_YEAR_RX = re.compile(r"^(\d{1,2})[-/.](\d{4})$")  # MM/YYYY, common on nameplates
YEAR_RX = re.compile(r"^(\d{4})$")
BLANK_TOKENS = {"", "null", "none", "n/a", "unknown"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip().lower() in BLANK_TOKENS)


def _flatten_value(v):
    """Collapse the shapes models like to return into a plain scalar.

      * dict -> canonical value keys ('value', 'VALUE', 'val'); fallback to first scalar.
      * list/tuple -> join stringified non-None members with a single space.
      * anything else -> unchanged.
    """
    if isinstance(v, dict):
        for key in ("value", "VALUE", "val"):
            if key in v and v[key] is not None:
                return v[key]
        for _, v2 in v.items():
            if isinstance(v2, (str, int, float)):
                return v2
        return None
    if isinstance(v, (list, tuple)):
        return " ".join(str(x) for x in v if x is not None)
    return v


def _clamp(v, lo: float, hi: float, fallback):
    try:
        v = float(v)
    except (TypeError, ValueError):
        return fallback
    if not (lo <= v <= hi):
        return fallback
    return v


def coerce_enum(enum_cls, value, field: str, fallback=None):
    """Map loose model spellings ("Within Week", "heat-pump") onto enum members."""
    value = _flatten_value(value)
    if _is_blank(value):
        return None
    if isinstance(value, enum_cls):
        return value
    key = re.sub(r"[\s\-]+", "_", str(value).strip().lower())
    try:
        return enum_cls(key)
    except ValueError:
        logger.warning("unrecognized_enum_value field=%s value=%r fallback=%s", field, value, fallback)
        return fallback


def lenient_number(value, field: str, cast):
    """Accept 36000, "36000", "36,000 BTU/h" or "SEER 16"; anything else -> None."""
    value = _flatten_value(value)
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        logger.warning("unparseable_number field=%s value=%r", field, value)
        return None
    if isinstance(value, (int, float)):
        number = value
    else:
        match = NUMBER_RX.search(str(value).replace(",", ""))
        if not match:
            logger.warning("unparseable_number field=%s value=%r", field, value)
            return None
        number = float(match.group())
    try:
        if isinstance(number, float) and not math.isfinite(number):
            raise OverflowError(number)
        return cast(number)
    except OverflowError:
        logger.warning("non_finite_number field=%s value=%r", field, value)
        return None


def lenient_date(value) -> Optional[date]:
    value = _flatten_value(value)
    if _is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    parts = None
    if DATE_RX.match(text):
        parts = DATE_RX.match(text).groups()
    elif MONTH_YEAR_RX.match(text):
        month, year = MONTH_YEAR_RX.match(text).groups()
        parts = (year, month, None)
    elif YEAR_RX.match(text):
        parts = (text, None, None)
    if parts:
        year, month, day = parts
        try:
            return date(int(year), int(month or 1), int(day or 1))
        except ValueError:
            pass
    logger.warning("unparseable_date field=manufacture_date value=%r", value)
    return None


def string_list(value) -> List[str]:
    """Ordered list of non-blank strings; a lone string becomes a one-item list."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    out: List[str] = []
    for item in value:
        text = _flatten_value(item)
        if not _is_blank(text):
            out.append(str(text).strip())
    return out


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


class _RankedEnum(str, Enum):
    """Enum whose declaration order is its ordering (later = worse / more urgent)."""

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)


class FieldSource(str, Enum):
    SCANNED = "scanned"
    AI_INFERRED = "ai_inferred"
    MANUAL = "manual"


class EquipmentType(str, Enum):
    AIR_CONDITIONER = "air_conditioner"
    HEAT_PUMP = "heat_pump"
    FURNACE = "furnace"
    DUCTWORK = "ductwork"
    OTHER = "other"


class FailureType(str, Enum):
    CORROSION = "corrosion"
    REFRIGERANT_LEAK = "refrigerant_leak"
    DAMAGED_COILS = "damaged_coils"
    DIRTY_FILTER = "dirty_filter"
    BLOCKED_AIRFLOW = "blocked_airflow"
    ELECTRICAL_DAMAGE = "electrical_damage"
    MISSING_COMPONENT = "missing_component"
    WEAR_AND_TEAR = "wear_and_tear"
    IMPROPER_INSTALLATION = "improper_installation"
    OTHER = "other"


class Severity(_RankedEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class OverallCondition(_RankedEnum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"


class MaintenanceUrgency(_RankedEnum):
    NONE = "none"
    ROUTINE = "routine"
    WITHIN_MONTH = "within_month"
    WITHIN_WEEK = "within_week"
    IMMEDIATE = "immediate"


class FieldProvenance(_WireModel):
    """Provenance of a single equipment value.

    inference_basis only survives when source is ai_inferred; a scanned value
    has nothing to explain.
    """

    source: FieldSource = FieldSource.SCANNED
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    inference_basis: Optional[str] = None

    @model_validator(mode="after")
    def _basis_only_when_inferred(self):
        if self.source is not FieldSource.AI_INFERRED:
            self.inference_basis = None
        return self

    @classmethod
    def from_any(cls, raw, default_conf: float, lo: float = 0.0, hi: float = 1.0):
        """Validate one model-supplied metadata entry without rewriting sane values.

        A missing confidence stays missing; an out-of-range or non-numeric one
        becomes default_conf. Unknown sources are treated as scanned.
        """
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, dict):
            source = coerce_enum(FieldSource, raw.get("source"), "source", FieldSource.SCANNED)
            conf = raw.get("confidence")
            basis = raw.get("inferenceBasis", raw.get("inference_basis"))
        else:
            source = coerce_enum(FieldSource, raw, "source", FieldSource.SCANNED)
            conf, basis = default_conf, None
        if conf is not None:
            conf = _clamp(conf, lo, hi, default_conf)
        return cls(
            source=source or FieldSource.SCANNED,
            confidence=conf,
            inference_basis=None if _is_blank(basis) else str(basis),
        )


RECORD_META_FIELDS = {"id", "created_at", "updated_at", "field_metadata"}
TEXT_FIELDS = (
    "brand", "model", "serial_number", "capacity", "voltage",
    "amperage", "refrigerant_type", "location", "notes",
)


class EquipmentRecord(_WireModel):
    """One physical HVAC unit.

    id stays "" until the store assigns one. Unrecognized keys coming from the
    model are kept as extras rather than dropped.
    """

    model_config = ConfigDict(extra="allow")

    id: str = ""
    brand: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    capacity: Optional[str] = None  # free text: tons, BTU or unitless depending on the label
    btu: Optional[int] = None
    manufacture_date: Optional[date] = None
    voltage: Optional[str] = None
    amperage: Optional[str] = None
    refrigerant_type: Optional[str] = None
    seer_rating: Optional[float] = None
    eer_rating: Optional[float] = None
    equipment_type: Optional[EquipmentType] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    field_metadata: Dict[str, FieldProvenance] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator(*TEXT_FIELDS, mode="before")
    @classmethod
    def _flatten_text(cls, v):
        v = _flatten_value(v)
        if _is_blank(v):
            return None
        return v.strip() if isinstance(v, str) else v

    @field_validator("btu", mode="before")
    @classmethod
    def _btu(cls, v):
        return lenient_number(v, "btu", int)

    @field_validator("seer_rating", "eer_rating", mode="before")
    @classmethod
    def _ratings(cls, v, info):
        return lenient_number(v, info.field_name, float)

    @field_validator("manufacture_date", mode="before")
    @classmethod
    def _manufacture_date(cls, v):
        return lenient_date(v)

    @field_validator("equipment_type", mode="before")
    @classmethod
    def _category(cls, v):
        return coerce_enum(EquipmentType, v, "equipment_type", EquipmentType.OTHER)

    @field_validator("field_metadata", mode="before")
    @classmethod
    def _metadata_mapping(cls, v):
        if v is None:
            return {}
        if not isinstance(v, dict):
            logger.warning("field_metadata_not_mapping type=%s", type(v).__name__)
            return {}
        return v

    @classmethod
    def wire_names(cls) -> Dict[str, str]:
        """camelCase alias -> python attribute name."""
        return {info.alias or name: name for name, info in cls.model_fields.items()}

    def populated_fields(self) -> Dict[str, Any]:
        """Wire name -> value for every non-null data field, extras included."""
        out: Dict[str, Any] = {}
        for name, info in type(self).model_fields.items():
            if name in RECORD_META_FIELDS:
                continue
            value = getattr(self, name)
            if value is not None:
                out[info.alias or name] = value
        for key, value in (self.model_extra or {}).items():
            if value is not None:
                out[key] = value
        return out

    def fill_missing_provenance(self, source: FieldSource, confidence: Optional[float] = None) -> "EquipmentRecord":
        """Give every populated field without an entry a default one; explicit entries win."""
        for key in self.populated_fields():
            if key not in self.field_metadata:
                self.field_metadata[key] = FieldProvenance(source=source, confidence=confidence)
        return self

    def apply_edits(self, changes: Dict[str, Any], now: Optional[datetime] = None) -> "EquipmentRecord":
        """Return a copy with user edits applied.

        Changed fields are re-attributed to manual entry, cleared fields lose
        their provenance. id / createdAt are never taken from changes and
        updatedAt only moves forward.
        """
        names = self.wire_names()
        clean: Dict[str, Any] = {}
        for key, value in (changes or {}).items():
            name = names.get(key, key)
            if name in RECORD_META_FIELDS:
                logger.debug("edit_ignored_field field=%s", key)
                continue
            clean[name] = value
        before = self.populated_fields()
        edited = type(self).model_validate({**self.model_dump(), **clean})
        after = edited.populated_fields()
        provenance = dict(self.field_metadata)
        for key in set(before) | set(after):
            if before.get(key) == after.get(key):
                continue
            if key in after:
                provenance[key] = FieldProvenance(source=FieldSource.MANUAL)
            else:
                provenance.pop(key, None)
        edited.field_metadata = provenance
        edited.updated_at = max(now or utcnow(), self.updated_at)
        return edited


class LabelScanOutcome(_WireModel):
    confidence: float = Field(ge=0.0, le=1.0)
    extracted_data: EquipmentRecord
    raw_text: str = ""
    processing_time_ms: int = 0


class FailureFinding(_WireModel):
    id: str = Field(default_factory=new_id)
    type: FailureType = FailureType.OTHER
    severity: Optional[Severity] = None
    description: str = ""
    location: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    recommendations: List[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v):
        return new_id() if _is_blank(v) else v

    @field_validator("type", mode="before")
    @classmethod
    def _failure_type(cls, v):
        return coerce_enum(FailureType, v, "type", FailureType.OTHER) or FailureType.OTHER

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, v):
        return coerce_enum(Severity, v, "severity")

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v):
        v = _flatten_value(v)
        return "" if _is_blank(v) else v

    @field_validator("location", mode="before")
    @classmethod
    def _location(cls, v):
        v = _flatten_value(v)
        return None if _is_blank(v) else v

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v):
        return None if v is None else _clamp(v, 0.0, 1.0, None)

    @field_validator("recommendations", mode="before")
    @classmethod
    def _recommendations(cls, v):
        return string_list(v)


class EquipmentAnalysis(_WireModel):
    """Equipment-condition analysis.

    overall_condition / maintenance_urgency stay None when the model did not
    give them: condition is a safety call and is never guessed here.
    """

    equipment_type: Optional[str] = None
    equipment_description: Optional[str] = None
    failures: List[FailureFinding] = Field(default_factory=list)
    overall_condition: Optional[OverallCondition] = None
    maintenance_urgency: Optional[MaintenanceUrgency] = None
    general_recommendations: List[str] = Field(default_factory=list)
    processing_time_ms: int = 0

    @field_validator("equipment_type", "equipment_description", mode="before")
    @classmethod
    def _text(cls, v):
        v = _flatten_value(v)
        return None if _is_blank(v) else v

    @field_validator("failures", mode="before")
    @classmethod
    def _failures(cls, v):
        if v is None:
            return []
        if not isinstance(v, (list, tuple)):
            logger.warning("failures_not_list type=%s", type(v).__name__)
            return []
        out = []
        for idx, item in enumerate(v):
            if _is_blank(item):
                continue
            if not isinstance(item, (dict, FailureFinding)):
                item = {"description": str(item)}  # bare string finding
            try:
                out.append(FailureFinding.model_validate(item))
            except ValidationError as exc:
                logger.warning("failure_finding_dropped index=%d errors=%d", idx, exc.error_count())
        return out

    @field_validator("overall_condition", mode="before")
    @classmethod
    def _condition(cls, v):
        return coerce_enum(OverallCondition, v, "condition")

    @field_validator("maintenance_urgency", mode="before")
    @classmethod
    def _urgency(cls, v):
        return coerce_enum(MaintenanceUrgency, v, "urgency")

    @field_validator("general_recommendations", mode="before")
    @classmethod
    def _recommendations(cls, v):
        return string_list(v)

    def highest_severity(self) -> Optional[Severity]:
        ranked = [f.severity for f in self.failures if f.severity is not None]
        return max(ranked, key=lambda s: s.rank) if ranked else None


class ImageKind(str, Enum):
    LABEL = "label"
    EQUIPMENT = "equipment"


class ImageDimensions(_WireModel):
    width: int
    height: int


class CapturedImage(_WireModel):
    id: str = Field(default_factory=new_id)
    url: str = ""
    type: ImageKind
    equipment_id: Optional[str] = None
    captured_at: datetime = Field(default_factory=utcnow)
    file_size: int = 0
    dimensions: Optional[ImageDimensions] = None

    @model_validator(mode="after")
    def _default_url(self):
        if not self.url:
            self.url = f"/images/{self.id}"
        return self


class ReportStatus(str, Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = {ReportStatus.COMPLETED, ReportStatus.ERROR}
_TRANSITIONS = {
    ReportStatus.DRAFT: {ReportStatus.PROCESSING},
    ReportStatus.PROCESSING: {ReportStatus.COMPLETED, ReportStatus.ERROR},
    ReportStatus.COMPLETED: set(),
    ReportStatus.ERROR: set(),
}


def is_valid_transition(current: ReportStatus, target: ReportStatus) -> bool:
    return target in _TRANSITIONS[ReportStatus(current)]


class InspectionReport(_WireModel):
    """One inspection session.

    Lifecycle: draft -> processing -> completed | error, nothing leaves a
    terminal status. completed_at is set exactly when status is completed.
    """

    id: str = Field(default_factory=new_id)
    equipment_id: str
    label_images: List[CapturedImage] = Field(default_factory=list)
    equipment_images: List[CapturedImage] = Field(default_factory=list)
    label_scan_result: Optional[LabelScanOutcome] = None
    inspection_result: Optional[EquipmentAnalysis] = None
    status: ReportStatus = ReportStatus.DRAFT
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None
    error: Optional[str] = None  # diagnostic code when status is error

    @model_validator(mode="after")
    def _completed_at_matches_status(self):
        if (self.status is ReportStatus.COMPLETED) != (self.completed_at is not None):
            raise ValueError("completed_at must be set exactly when status is completed")
        return self

    def transition_to(self, status, *, now: Optional[datetime] = None, error: Optional[str] = None) -> "InspectionReport":
        status = ReportStatus(status)
        if not is_valid_transition(self.status, status):
            raise ValueError(f"invalid_status_transition {self.status.value}->{status.value}")
        update: Dict[str, Any] = {"status": status}
        if status is ReportStatus.COMPLETED:
            update["completed_at"] = now or utcnow()
        if error is not None:
            update["error"] = error
        return self.model_copy(update=update)


class ScanLabelResponse(_WireModel):
    """Label scan as returned to the capture screen.

    low_confidence marks the outcome provisional: the client should show the
    retake prompt and route the technician through manual review.
    """

    request_id: str
    outcome: LabelScanOutcome
    low_confidence: bool = False
    message: Optional[str] = None
    equipment_id: Optional[str] = None

