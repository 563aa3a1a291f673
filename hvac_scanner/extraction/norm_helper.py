"""Normalization layer converting raw model text -> typed scan / analysis results.

Why separate module?:
    Keeps transformation logic isolated from both the model client and API
    route handlers. Everything here is a pure function of its input text (no
    I/O, no shared state), so it is unit tested without any network.

Parse pipeline (bounded on purpose):
    1. strip a wrapping code fence (opening and closing markers independently);
    2. strict json.loads of what is left;
    3. retry on the first '{' .. last '}' substring;
    4. otherwise ParseError with a short excerpt. No further repair.

Provenance rules for label scans:
    - the record is validated first; provenance covers exactly its populated fields;
    - explicit fieldMetadata entries are re-keyed to wire names (serial_number -> serialNumber)
      and kept when their field is populated;
    - every populated field without an entry gets
      {source: scanned, confidence: overall confidence or DEFAULT_FIELD_CONFIDENCE};
    - the overall confidence falls back to DEFAULT_SCAN_CONFIDENCE afterwards.
"""

import json
import logging
import re
import time
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from hvac_scanner.core.config import get_settings
from hvac_scanner.extraction.errors import ParseError
from hvac_scanner.extraction.schemas import (
    EquipmentAnalysis,
    EquipmentRecord,
    FieldProvenance,
    FieldSource,
    LabelScanOutcome,
    _is_blank,
    string_list,
    utcnow,
)

logger = logging.getLogger("hvac.extract")
settings = get_settings()

EXCERPT_CHARS = 200
FENCE_OPEN_RX = re.compile(r"^```[\w+\-]*[ \t]*\r?\n?")
FENCE_CLOSE_RX = re.compile(r"\r?\n?```$")
RESERVED_KEYS = {"id", "createdAt", "created_at", "updatedAt", "updated_at", "fieldMetadata", "field_metadata"}


def strip_code_fence(text: str) -> str:
    """Remove ```lang ... ``` wrapping; either marker may be missing."""
    cleaned = (text or "").strip()
    cleaned = FENCE_OPEN_RX.sub("", cleaned, count=1)
    cleaned = FENCE_CLOSE_RX.sub("", cleaned, count=1)
    return cleaned.strip()


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def parse_model_json(raw_text: str) -> Dict[str, Any]:
    """Return the single JSON object contained in a model reply or raise ParseError."""
    cleaned = strip_code_fence(raw_text)
    parsed = _loads(cleaned)
    if isinstance(parsed, dict):
        return parsed
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        parsed = _loads(cleaned[start:end + 1])
        if isinstance(parsed, dict):
            logger.debug("json_recovered_by_brace_extraction offset=%d", start)
            return parsed
    logger.warning("model_output_unparseable excerpt=%s", cleaned[:EXCERPT_CHARS].replace("\n", " "))
    raise ParseError("model_output_unparseable", excerpt=cleaned[:EXCERPT_CHARS])


def _overall_confidence(value) -> Optional[float]:
    """Model-reported confidence if it is a usable number in [0, 1], else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        conf = float(value)
    except (TypeError, ValueError):
        logger.warning("confidence_not_numeric value=%r", value)
        return None
    if not (settings.MIN_CONFIDENCE <= conf <= settings.MAX_CONFIDENCE):
        logger.warning("confidence_out_of_range value=%r", value)
        return None
    return conf


_ALIAS_BY_NAME = {name: alias for alias, name in EquipmentRecord.wire_names().items()}


def _wire_key(key: str) -> str:
    """serial_number -> serialNumber; unknown keys are left alone."""
    return _ALIAS_BY_NAME.get(key, key)


def reconcile_provenance(populated: Dict[str, Any], metadata: Any, overall: Optional[float]) -> Dict[str, FieldProvenance]:
    """Provenance for exactly the populated fields of a record.

    populated is EquipmentRecord.populated_fields() (wire names). Model entries
    are re-keyed to wire names and kept when their field survived validation;
    the remaining fields get a synthesized scanned entry.
    """
    default_conf = overall if overall is not None else settings.DEFAULT_FIELD_CONFIDENCE
    provenance: Dict[str, FieldProvenance] = {}
    if isinstance(metadata, dict):
        for key, entry in metadata.items():
            wire = _wire_key(str(key))
            if wire not in populated:
                logger.debug("field_metadata_orphan field=%s", key)
                continue
            provenance[wire] = FieldProvenance.from_any(
                entry,
                default_conf=default_conf,
                lo=settings.MIN_CONFIDENCE,
                hi=settings.MAX_CONFIDENCE,
            )
    elif metadata is not None:
        logger.warning("field_metadata_not_mapping type=%s", type(metadata).__name__)
    synthesized = 0
    for key in populated:
        if key in provenance:
            continue
        provenance[key] = FieldProvenance(source=FieldSource.SCANNED, confidence=default_conf)
        synthesized += 1
    if synthesized:
        logger.debug("provenance_synthesized fields=%d confidence=%s", synthesized, default_conf)
    return provenance


def _build_record(data: Dict[str, Any]) -> EquipmentRecord:
    try:
        return EquipmentRecord.model_validate(data)
    except ValidationError as exc:
        # Validators are lenient, so this is rare (e.g. a nested object where
        # text was expected). Drop the offending top-level keys once.
        bad = {err["loc"][0] for err in exc.errors() if err.get("loc")}
        logger.warning("structured_fields_dropped fields=%s", sorted(str(b) for b in bad))
        return EquipmentRecord.model_validate({k: v for k, v in data.items() if k not in bad})


def normalize_label_scan(raw_text: str, requested_at: Optional[float] = None) -> LabelScanOutcome:
    """Return a LabelScanOutcome from one label-scan reply.

    requested_at is the epoch time (time.time()) the model call was issued;
    when given, processing_time_ms covers the call plus normalization.
    """
    payload = parse_model_json(raw_text)

    structured = payload.get("structuredData")
    if not isinstance(structured, dict):
        if structured is not None:
            logger.warning("structured_data_not_mapping type=%s", type(structured).__name__)
        structured = {}

    overall = _overall_confidence(payload.get("confidence"))
    confidence = overall if overall is not None else settings.DEFAULT_SCAN_CONFIDENCE

    now = utcnow()
    fields = {k: v for k, v in structured.items() if k not in RESERVED_KEYS and not _is_blank(v)}
    record = _build_record({
        **fields,
        "id": "",
        "createdAt": now,
        "updatedAt": now,
        "fieldMetadata": {},
    })
    # Values the validators dropped (unreadable numbers, dates) carry no provenance.
    record.field_metadata = reconcile_provenance(record.populated_fields(), payload.get("fieldMetadata"), overall)

    extracted_text = payload.get("extractedText")
    if extracted_text is None:
        extracted_text = ""
    elif not isinstance(extracted_text, str):
        extracted_text = json.dumps(extracted_text)

    elapsed_ms = int((time.time() - requested_at) * 1000) if requested_at is not None else 0
    return LabelScanOutcome(
        confidence=confidence,
        extracted_data=record,
        raw_text=extracted_text,
        processing_time_ms=max(elapsed_ms, 0),
    )


def normalize_equipment_analysis(raw_text: str, requested_at: Optional[float] = None) -> EquipmentAnalysis:
    """Return an EquipmentAnalysis from one equipment-analysis reply.

    Only straightforward defaults apply (missing lists -> []); condition and
    urgency are passed through and stay None when absent.
    """
    payload = parse_model_json(raw_text)
    elapsed_ms = int((time.time() - requested_at) * 1000) if requested_at is not None else 0
    return EquipmentAnalysis(
        equipment_type=payload.get("equipmentType"),
        equipment_description=payload.get("equipmentDescription"),
        failures=payload.get("failures") or [],
        overall_condition=payload.get("condition"),
        maintenance_urgency=payload.get("urgency"),
        general_recommendations=payload.get("recommendations") or [],
        processing_time_ms=max(elapsed_ms, 0),
    )


def normalize_recommendations(raw_text: str) -> List[str]:
    """Return the ordered recommendation strings from a recommendations reply.

    Accepts a bare JSON array or an object carrying a "recommendations" array.
    """
    cleaned = strip_code_fence(raw_text)
    parsed = _loads(cleaned)
    if not isinstance(parsed, (list, dict)):
        for opener, closer in (("[", "]"), ("{", "}")):
            start, end = cleaned.find(opener), cleaned.rfind(closer)
            if start != -1 and end > start:
                parsed = _loads(cleaned[start:end + 1])
                if isinstance(parsed, (list, dict)):
                    break
    if isinstance(parsed, dict):
        parsed = parsed.get("recommendations")
    if isinstance(parsed, list):
        return string_list(parsed)
    logger.warning("recommendations_unparseable excerpt=%s", cleaned[:EXCERPT_CHARS].replace("\n", " "))
    raise ParseError("model_output_unparseable", excerpt=cleaned[:EXCERPT_CHARS])
