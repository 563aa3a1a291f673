"""Scan / analysis orchestration: one model call, then normalization.

Each function takes the vision client explicitly so routes can inject it and
tests can pass a fake. ParseError and provider errors propagate unchanged;
nothing here retries.
"""

import logging
import time
from typing import List, Optional, Sequence

from hvac_scanner.core.config import get_settings
from hvac_scanner.extraction.norm_helper import (
    normalize_equipment_analysis,
    normalize_label_scan,
    normalize_recommendations,
)
from hvac_scanner.extraction.prompts import (
    EQUIPMENT_ANALYSIS_PROMPT,
    EQUIPMENT_ANALYSIS_TASK,
    LABEL_SCAN_PROMPT,
    LABEL_SCAN_TASK,
    RECOMMENDATIONS_PROMPT_BASE,
    build_recommendations_prompt,
)
from hvac_scanner.extraction.schemas import (
    EquipmentAnalysis,
    EquipmentRecord,
    FailureFinding,
    LabelScanOutcome,
)

logger = logging.getLogger("hvac.extract")


async def scan_label(client, image: bytes) -> LabelScanOutcome:
    """Read one nameplate photo into a LabelScanOutcome."""
    settings = get_settings()
    requested_at = time.time()
    res = await client.run(
        LABEL_SCAN_PROMPT,
        [image],
        prompt=LABEL_SCAN_TASK,
        max_tokens=settings.LABEL_MAX_TOKENS,
    )
    outcome = normalize_label_scan(res.get("text") or "", requested_at=requested_at)
    logger.info(
        "label_scan_success confidence=%.2f fields=%d latency_ms=%s",
        outcome.confidence,
        len(outcome.extracted_data.populated_fields()),
        res.get("latency_ms"),
    )
    return outcome


async def analyze_equipment(client, images: Sequence[bytes]) -> EquipmentAnalysis:
    """Inspect all equipment photos in a single call."""
    settings = get_settings()
    requested_at = time.time()
    res = await client.run(
        EQUIPMENT_ANALYSIS_PROMPT,
        list(images),
        prompt=EQUIPMENT_ANALYSIS_TASK,
        max_tokens=settings.ANALYSIS_MAX_TOKENS,
    )
    analysis = normalize_equipment_analysis(res.get("text") or "", requested_at=requested_at)
    logger.info(
        "equipment_analysis_success images=%d failures=%d condition=%s latency_ms=%s",
        len(images),
        len(analysis.failures),
        analysis.overall_condition.value if analysis.overall_condition else None,
        res.get("latency_ms"),
    )
    return analysis


async def generate_recommendations(
    client,
    equipment: Optional[EquipmentRecord],
    failures: Sequence[FailureFinding],
) -> List[str]:
    """Detailed, prioritized repair guidance for an inspected unit (text-only call)."""
    settings = get_settings()
    res = await client.run(
        RECOMMENDATIONS_PROMPT_BASE,
        prompt=build_recommendations_prompt(equipment, failures),
        max_tokens=settings.ANALYSIS_MAX_TOKENS,
    )
    return normalize_recommendations(res.get("text") or "")


def is_low_confidence(outcome: LabelScanOutcome, threshold: Optional[float] = None) -> bool:
    """True when the scan should be treated as provisional (manual review / retake).

    A scan is accepted only when its confidence is strictly above the threshold.
    """
    if threshold is None:
        threshold = get_settings().LOW_CONFIDENCE_THRESHOLD
    return outcome.confidence <= threshold
