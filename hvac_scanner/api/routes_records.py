"""FastAPI router for the stored collections: equipment, reports, photos.

Endpoints:
    * /equipment        create (manual entry), list, get, edit, delete
    * /reports          list (status / equipment / text search), get, delete
    * /images/{id}      stored JPEG bytes, delete; /equipment/{id}/images lists photo metadata
    * /storage          usage info, clear everything

Error handling:
    * 404 '<kind>_not_found' for unknown ids.
    * 422 'invalid_equipment_fields' when an edit cannot be applied.
    * StorageError is mapped to 500 'storage_error' by the app-level handler.
"""

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response
from pydantic import ValidationError
from typing import Any, Dict, List, Optional
import logging

from hvac_scanner.extraction.schemas import (
    CapturedImage,
    EquipmentRecord,
    EquipmentType,
    FieldSource,
    ImageKind,
    InspectionReport,
    ReportStatus,
    utcnow,
)
from hvac_scanner.storage.database import LocalStore, get_store

router_records = APIRouter()
log = logging.getLogger("hvac.records")


@router_records.post("/equipment", response_model=EquipmentRecord, status_code=201)
async def create_equipment(record: EquipmentRecord, store: LocalStore = Depends(get_store)):
    """Save a record typed in (or reviewed) by the technician.

    Fields that arrive without provenance are attributed to manual entry.
    A create always gets a fresh id and timestamps; client-sent ones are ignored.
    """
    now = utcnow()
    record = record.model_copy(update={"id": "", "created_at": now, "updated_at": now})
    record.fill_missing_provenance(FieldSource.MANUAL)
    saved = await store.save_equipment(record)
    log.info("equipment_created id=%s fields=%d", saved.id, len(saved.populated_fields()))
    return saved


@router_records.get("/equipment", response_model=List[EquipmentRecord])
async def list_equipment(
    brand: Optional[str] = Query(None),
    equipment_type: Optional[EquipmentType] = Query(None),
    store: LocalStore = Depends(get_store),
):
    return await store.list_equipment(brand=brand, equipment_type=equipment_type)


@router_records.get("/equipment/{equipment_id}", response_model=EquipmentRecord)
async def get_equipment(equipment_id: str, store: LocalStore = Depends(get_store)):
    record = await store.get_equipment(equipment_id)
    if record is None:
        raise HTTPException(404, "equipment_not_found")
    return record


@router_records.patch("/equipment/{equipment_id}", response_model=EquipmentRecord)
async def edit_equipment(
    equipment_id: str,
    changes: Dict[str, Any] = Body(..., description="Wire-name -> new value (null clears)"),
    store: LocalStore = Depends(get_store),
):
    record = await store.get_equipment(equipment_id)
    if record is None:
        raise HTTPException(404, "equipment_not_found")
    try:
        edited = record.apply_edits(changes)
    except ValidationError as exc:
        log.warning("equipment_edit_rejected id=%s errors=%d", equipment_id, exc.error_count())
        raise HTTPException(422, "invalid_equipment_fields")
    saved = await store.save_equipment(edited)
    log.info("equipment_edited id=%s keys=%s", equipment_id, ",".join(sorted(changes)))
    return saved


@router_records.delete("/equipment/{equipment_id}", status_code=204)
async def delete_equipment(equipment_id: str, store: LocalStore = Depends(get_store)):
    if not await store.delete_equipment(equipment_id):
        raise HTTPException(404, "equipment_not_found")
    return Response(status_code=204)


@router_records.get("/reports", response_model=List[InspectionReport])
async def list_reports(
    status: Optional[ReportStatus] = Query(None),
    equipment_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Brand, model or serial number"),
    store: LocalStore = Depends(get_store),
):
    return await store.list_reports(equipment_id=equipment_id, status=status, search=search)


@router_records.get("/reports/{report_id}", response_model=InspectionReport)
async def get_report(report_id: str, store: LocalStore = Depends(get_store)):
    report = await store.get_report(report_id)
    if report is None:
        raise HTTPException(404, "report_not_found")
    return report


@router_records.delete("/reports/{report_id}", status_code=204)
async def delete_report(report_id: str, store: LocalStore = Depends(get_store)):
    if not await store.delete_report(report_id):
        raise HTTPException(404, "report_not_found")
    return Response(status_code=204)


@router_records.get("/equipment/{equipment_id}/images", response_model=List[CapturedImage])
async def list_equipment_images(
    equipment_id: str,
    kind: Optional[ImageKind] = Query(None),
    store: LocalStore = Depends(get_store),
):
    return await store.list_images(equipment_id=equipment_id, kind=kind)


@router_records.get("/images/{image_id}", response_class=Response)
async def get_image(image_id: str, store: LocalStore = Depends(get_store)):
    data = await store.get_image_data(image_id)
    if data is None:
        raise HTTPException(404, "image_not_found")
    return Response(content=data, media_type="image/jpeg")


@router_records.delete("/images/{image_id}", status_code=204)
async def delete_image(image_id: str, store: LocalStore = Depends(get_store)):
    if not await store.delete_image(image_id):
        raise HTTPException(404, "image_not_found")
    return Response(status_code=204)


@router_records.get("/storage")
async def storage_info(store: LocalStore = Depends(get_store)):
    return await store.storage_info()


@router_records.delete("/storage", status_code=204)
async def clear_storage(store: LocalStore = Depends(get_store)):
    await store.clear_all()
    return Response(status_code=204)
