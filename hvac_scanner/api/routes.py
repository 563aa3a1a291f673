"""Capture endpoints: label scan, equipment inspection, detailed recommendations."""

from fastapi import APIRouter, UploadFile, File, HTTPException, Depends, Form
from typing import List, Optional, Tuple
import logging
import httpx

from hvac_scanner.core.config import get_settings
from hvac_scanner.extraction.errors import ParseError
from hvac_scanner.extraction.pipeline import (
    analyze_equipment,
    generate_recommendations,
    is_low_confidence,
    scan_label,
)
from hvac_scanner.extraction.processing import (
    generate_request_id,
    prepare_image,
    validate_source,
)
from hvac_scanner.extraction.schemas import (
    CapturedImage,
    EquipmentRecord,
    ImageDimensions,
    ImageKind,
    InspectionReport,
    ReportStatus,
    ScanLabelResponse,
)
from hvac_scanner.extraction.vision_model_client import get_vision_client
from hvac_scanner.storage.database import LocalStore, get_store

logger = logging.getLogger("hvac.api")
router = APIRouter()


def _check_url_host(url: httpx.URL, settings) -> None:
    allowed = settings.URL_SOURCE_HOSTS
    if allowed and (url.host or "").lower() not in allowed:
        logger.warning("url_host_not_allowed host=%s", url.host)
        raise HTTPException(400, "url_host_not_allowed")


async def fetch_url_bytes(url: str, settings) -> Tuple[bytes, str]:
    """Fetch remote photo bytes with redirect support & size guard.

    Only enabled with ALLOW_URL_SOURCES; URL_SOURCE_HOSTS, when set, is checked
    on the first request and on every redirect hop.

    Raises HTTPException with one of: url_sources_disabled, invalid_url_scheme,
    url_host_not_allowed, url_fetch_error, url_too_large.
    """
    if not settings.ALLOW_URL_SOURCES:
        logger.warning("url_sources_disabled url=%s", url)
        raise HTTPException(400, "url_sources_disabled")
    if not (url.startswith("http://") or url.startswith("https://")):
        logger.warning("url_invalid_scheme url=%s", url)
        raise HTTPException(400, "invalid_url_scheme")
    try:
        _check_url_host(httpx.URL(url), settings)
    except httpx.InvalidURL:
        raise HTTPException(400, "url_fetch_error")

    async def guard_redirect(request: httpx.Request):
        _check_url_host(request.url, settings)

    max_bytes = settings.MAX_FILE_MB * 1024 * 1024
    try:
        async with httpx.AsyncClient(
            timeout=30,
            follow_redirects=True,
            event_hooks={"request": [guard_redirect]},
        ) as client:
            async with client.stream("GET", url) as resp:
                if resp.status_code != 200:
                    logger.warning("url_fetch_error status=%s url=%s", resp.status_code, url)
                    raise HTTPException(400, "url_fetch_error")
                final_url = str(resp.url)
                filename = final_url.split("?")[0].rsplit("/", 1)[-1] or "remote"
                chunks: List[bytes] = []
                total = 0
                async for chunk in resp.aiter_bytes():
                    total += len(chunk)
                    if total > max_bytes:
                        logger.warning("url_too_large url=%s size=%s max=%s", final_url, total, max_bytes)
                        raise HTTPException(400, "url_too_large")
                    chunks.append(chunk)
        return b"".join(chunks), filename
    except HTTPException:
        raise
    except httpx.HTTPError as exc:
        logger.warning("url_fetch_exception url=%s err=%s", url, exc)
        raise HTTPException(400, "url_fetch_error")


def _read_photo(filename: str, raw: bytes) -> Tuple[bytes, Tuple[int, int]]:
    try:
        validate_source(filename, raw)
        return prepare_image(raw)
    except ValueError as ve:
        raise HTTPException(400, str(ve))


def _captured(kind: ImageKind, equipment_id: Optional[str], jpeg: bytes, size: Tuple[int, int]) -> CapturedImage:
    return CapturedImage(
        type=kind,
        equipment_id=equipment_id,
        file_size=len(jpeg),
        dimensions=ImageDimensions(width=size[0], height=size[1]),
    )


@router.post(
    "/scan/label",
    summary="Read an equipment nameplate photo (file OR url)",
    response_model=ScanLabelResponse,
    responses={
        400: {"description": "Invalid or missing photo"},
        422: {"description": "Model reply could not be parsed"},
        502: {"description": "Model call failed"},
    },
)
async def scan_label_endpoint(
    file: UploadFile = File(None, description="Nameplate photo"),
    url: str = Form(None, description="HTTP/HTTPS URL of a nameplate photo"),
    settings = Depends(get_settings),
    client = Depends(get_vision_client),
    store: LocalStore = Depends(get_store),
):
    # Normalize empty submissions (Swagger "send empty value" or blank form fields)
    if url is not None and url.strip() == "":
        url = None
    if file is not None and getattr(file, "filename", None) in (None, ""):
        file = None
    if (file is None) == (url is None):
        raise HTTPException(400, "provide_exactly_one_source")

    rid = generate_request_id()
    if file is not None:
        raw, filename = await file.read(), file.filename
    else:
        raw, filename = await fetch_url_bytes(url, settings)
    image, size = _read_photo(filename, raw)

    try:
        outcome = await scan_label(client, image)
    except ParseError as pe:
        logger.warning("label_scan_unparseable request_id=%s excerpt=%s", rid, pe.excerpt[:120])
        raise HTTPException(422, "model_output_unparseable")
    except Exception as exc:
        logger.warning("model_inference_error request_id=%s file=%s err=%s", rid, filename, exc)
        raise HTTPException(502, "model_inference_error")

    low = is_low_confidence(outcome, settings.LOW_CONFIDENCE_THRESHOLD)
    message = None
    if low:
        message = (
            f"Low confidence ({round(outcome.confidence * 100)}%). "
            "Retake with better lighting or angle, or review the fields manually."
        )

    equipment_id = None
    if settings.AUTO_SAVE_SCANS and (not low or settings.PERSIST_LOW_CONFIDENCE):
        record = await store.save_equipment(outcome.extracted_data)
        await store.save_image(_captured(ImageKind.LABEL, record.id, image, size), image)
        outcome = outcome.model_copy(update={"extracted_data": record})
        equipment_id = record.id

    logger.info(
        "label_scan_done request_id=%s confidence=%.2f low_confidence=%s saved=%s",
        rid, outcome.confidence, low, bool(equipment_id),
    )
    return ScanLabelResponse(
        request_id=rid,
        outcome=outcome,
        low_confidence=low,
        message=message,
        equipment_id=equipment_id,
    )


@router.post(
    "/inspections",
    summary="Analyze equipment photos and record an inspection report",
    response_model=InspectionReport,
    responses={
        400: {"description": "No usable photos"},
        404: {"description": "Unknown equipment id"},
        422: {"description": "Model reply could not be parsed"},
        502: {"description": "Model call failed"},
    },
)
async def create_inspection(
    files: List[UploadFile] = File(None, description="Equipment photos (1..N)"),
    label_file: UploadFile = File(None, description="Optional nameplate photo"),
    equipment_id: Optional[str] = Form(None),
    notes: Optional[str] = Form(None),
    settings = Depends(get_settings),
    client = Depends(get_vision_client),
    store: LocalStore = Depends(get_store),
):
    cleaned = [f for f in (files or []) if f and (getattr(f, "filename", "") or "").strip()]
    if not cleaned:
        raise HTTPException(400, "provide_files")
    if len(cleaned) > settings.MAX_IMAGES_PER_INSPECTION:
        raise HTTPException(400, f"too_many_images max={settings.MAX_IMAGES_PER_INSPECTION}")
    if label_file is not None and not (getattr(label_file, "filename", "") or "").strip():
        label_file = None

    equipment = None
    if equipment_id:
        equipment = await store.get_equipment(equipment_id)
        if equipment is None:
            raise HTTPException(404, "equipment_not_found")

    # Every photo is validated before anything is written.
    prepared = [_read_photo(up.filename, await up.read()) for up in cleaned]
    label = _read_photo(label_file.filename, await label_file.read()) if label_file is not None else None

    if equipment is None:
        # Manual inspection without a scanned label: unidentified unit.
        equipment = await store.save_equipment(EquipmentRecord())

    photos = [jpeg for jpeg, _ in prepared]
    equipment_images = [_captured(ImageKind.EQUIPMENT, equipment.id, jpeg, size) for jpeg, size in prepared]
    label_photo = None
    label_images: List[CapturedImage] = []
    if label is not None:
        label_photo, size = label
        label_images.append(_captured(ImageKind.LABEL, equipment.id, label_photo, size))

    for meta, data in zip(equipment_images + label_images, photos + ([label_photo] if label_photo else [])):
        await store.save_image(meta, data)

    rid = generate_request_id()
    report = await store.save_report(InspectionReport(
        equipment_id=equipment.id,
        equipment_images=equipment_images,
        label_images=label_images,
        notes=notes,
    ))
    report = await store.save_report(report.transition_to(ReportStatus.PROCESSING))

    try:
        label_result = await scan_label(client, label_photo) if label_photo else None
        analysis = await analyze_equipment(client, photos)
    except ParseError as pe:
        logger.warning("inspection_unparseable request_id=%s report=%s excerpt=%s", rid, report.id, pe.excerpt[:120])
        await store.save_report(report.transition_to(ReportStatus.ERROR, error="model_output_unparseable"))
        raise HTTPException(422, "model_output_unparseable")
    except Exception as exc:
        logger.warning("model_inference_error request_id=%s report=%s err=%s", rid, report.id, exc)
        await store.save_report(report.transition_to(ReportStatus.ERROR, error="model_inference_error"))
        raise HTTPException(502, "model_inference_error")

    report = report.model_copy(update={
        "label_scan_result": label_result,
        "inspection_result": analysis,
    }).transition_to(ReportStatus.COMPLETED)
    logger.info(
        "inspection_completed request_id=%s report=%s equipment=%s failures=%d worst=%s",
        rid, report.id, equipment.id, len(analysis.failures),
        analysis.highest_severity().value if analysis.highest_severity() else None,
    )
    return await store.save_report(report)


@router.post(
    "/reports/{report_id}/recommendations",
    summary="Detailed, prioritized repair guidance for an analyzed report",
    response_model=List[str],
)
async def report_recommendations(
    report_id: str,
    client = Depends(get_vision_client),
    store: LocalStore = Depends(get_store),
):
    report = await store.get_report(report_id)
    if report is None:
        raise HTTPException(404, "report_not_found")
    if report.inspection_result is None:
        raise HTTPException(409, "report_not_analyzed")
    equipment = await store.get_equipment(report.equipment_id)
    try:
        return await generate_recommendations(client, equipment, report.inspection_result.failures)
    except ParseError as pe:
        logger.warning("recommendations_unparseable report=%s excerpt=%s", report_id, pe.excerpt[:120])
        raise HTTPException(422, "model_output_unparseable")
    except Exception as exc:
        logger.warning("model_inference_error report=%s err=%s", report_id, exc)
        raise HTTPException(502, "model_inference_error")
