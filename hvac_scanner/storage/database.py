"""Local persistence store for equipment, inspection reports and photos.

SQLite through aiosqlite, one connection per operation with WAL journaling.
Each collection is keyed by id and keeps the full pydantic document as JSON
TEXT next to the columns it is indexed on:

    equipment : created_at, brand, equipment_type
    reports   : equipment_id, status, created_at
    images    : equipment_id, type, captured_at (+ the JPEG blob)

Collections are independent: deleting equipment never removes its reports or
images, removal is always an explicit call. The schema is created lazily on
the first connection, so the store needs a real file path (not ":memory:").
"""

import logging
import os
import shutil
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

import aiosqlite

from hvac_scanner.core.config import get_settings
from hvac_scanner.extraction.errors import StorageError
from hvac_scanner.extraction.schemas import (
    TERMINAL_STATUSES,
    CapturedImage,
    EquipmentRecord,
    EquipmentType,
    ImageKind,
    InspectionReport,
    ReportStatus,
    is_valid_transition,
    new_id,
    utcnow,
)

log = logging.getLogger("hvac.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS equipment (
    id TEXT PRIMARY KEY,
    brand TEXT,
    equipment_type TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    doc TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_equipment_created_at ON equipment(created_at);
CREATE INDEX IF NOT EXISTS idx_equipment_brand ON equipment(brand);
CREATE INDEX IF NOT EXISTS idx_equipment_type ON equipment(equipment_type);

CREATE TABLE IF NOT EXISTS reports (
    id TEXT PRIMARY KEY,
    equipment_id TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    doc TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_reports_equipment_id ON reports(equipment_id);
CREATE INDEX IF NOT EXISTS idx_reports_status ON reports(status);
CREATE INDEX IF NOT EXISTS idx_reports_created_at ON reports(created_at);

CREATE TABLE IF NOT EXISTS images (
    id TEXT PRIMARY KEY,
    equipment_id TEXT,
    type TEXT NOT NULL,
    captured_at TEXT NOT NULL,
    doc TEXT NOT NULL,
    data BLOB
);
CREATE INDEX IF NOT EXISTS idx_images_equipment_id ON images(equipment_id);
CREATE INDEX IF NOT EXISTS idx_images_type ON images(type);
CREATE INDEX IF NOT EXISTS idx_images_captured_at ON images(captured_at);
"""

COLLECTIONS = ("equipment", "reports", "images")


def _ts(dt: datetime) -> str:
    """Fixed-width UTC timestamp so TEXT ordering matches time ordering."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _enum_value(value) -> Optional[str]:
    return value.value if value is not None else None


class LocalStore:
    """Async CRUD over the three collections."""

    def __init__(self, path: str):
        self.path = path
        self._ready = False

    @asynccontextmanager
    async def connect(self):
        """Yield an aiosqlite connection; driver errors surface as StorageError."""
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        try:
            db = await aiosqlite.connect(self.path)
        except aiosqlite.Error as e:
            raise StorageError(f"storage_open_failed: {e}") from e
        db.row_factory = aiosqlite.Row
        try:
            await db.execute("PRAGMA journal_mode=WAL")
            if not self._ready:
                await db.executescript(SCHEMA)
                await db.commit()
                self._ready = True
            yield db
        except aiosqlite.Error as e:
            log.error("storage_error path=%s error=%s", self.path, e)
            raise StorageError(f"storage_error: {e}") from e
        finally:
            await db.close()

    @staticmethod
    async def _fetch_doc(db, table: str, item_id: str) -> Optional[str]:
        cursor = await db.execute(f"SELECT doc FROM {table} WHERE id = ?", (item_id,))
        row = await cursor.fetchone()
        return row["doc"] if row else None

    @staticmethod
    async def _delete(db, table: str, item_id: str) -> bool:
        cursor = await db.execute(f"DELETE FROM {table} WHERE id = ?", (item_id,))
        await db.commit()
        return cursor.rowcount > 0

    # ---- equipment ----

    async def save_equipment(self, record: EquipmentRecord) -> EquipmentRecord:
        """Insert or update; assigns an id when empty.

        createdAt of a stored record is never replaced, updatedAt only moves forward.
        """
        async with self.connect() as db:
            if not record.id:
                record = record.model_copy(update={"id": new_id()})
            else:
                existing = await self._fetch_doc(db, "equipment", record.id)
                if existing is not None:
                    prev = EquipmentRecord.model_validate_json(existing)
                    record = record.model_copy(update={
                        "created_at": prev.created_at,
                        "updated_at": max(utcnow(), prev.updated_at),
                    })
            await db.execute(
                """
                INSERT INTO equipment (id, brand, equipment_type, created_at, updated_at, doc)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    brand = excluded.brand,
                    equipment_type = excluded.equipment_type,
                    updated_at = excluded.updated_at,
                    doc = excluded.doc
                """,
                (
                    record.id,
                    record.brand,
                    _enum_value(record.equipment_type),
                    _ts(record.created_at),
                    _ts(record.updated_at),
                    record.model_dump_json(by_alias=True),
                ),
            )
            await db.commit()
        log.debug("equipment_saved id=%s brand=%s", record.id, record.brand)
        return record

    async def get_equipment(self, equipment_id: str) -> Optional[EquipmentRecord]:
        async with self.connect() as db:
            doc = await self._fetch_doc(db, "equipment", equipment_id)
        return EquipmentRecord.model_validate_json(doc) if doc else None

    async def list_equipment(
        self,
        brand: Optional[str] = None,
        equipment_type: Optional[EquipmentType] = None,
    ) -> List[EquipmentRecord]:
        """Newest first; brand match is case-insensitive."""
        sql = "SELECT doc FROM equipment WHERE 1=1"
        params: List[Any] = []
        if brand:
            sql += " AND brand = ? COLLATE NOCASE"
            params.append(brand)
        if equipment_type:
            sql += " AND equipment_type = ?"
            params.append(EquipmentType(equipment_type).value)
        sql += " ORDER BY created_at DESC"
        async with self.connect() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [EquipmentRecord.model_validate_json(r["doc"]) for r in rows]

    async def delete_equipment(self, equipment_id: str) -> bool:
        async with self.connect() as db:
            return await self._delete(db, "equipment", equipment_id)

    # ---- reports ----

    async def save_report(self, report: InspectionReport) -> InspectionReport:
        """Insert or update; a status change must follow the report lifecycle."""
        async with self.connect() as db:
            existing = await self._fetch_doc(db, "reports", report.id)
            if existing is not None:
                prev = InspectionReport.model_validate_json(existing)
                if prev.status != report.status and (
                    prev.status in TERMINAL_STATUSES or not is_valid_transition(prev.status, report.status)
                ):
                    raise ValueError(f"invalid_status_transition {prev.status.value}->{report.status.value}")
            await db.execute(
                """
                INSERT INTO reports (id, equipment_id, status, created_at, doc)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    equipment_id = excluded.equipment_id,
                    status = excluded.status,
                    doc = excluded.doc
                """,
                (
                    report.id,
                    report.equipment_id,
                    report.status.value,
                    _ts(report.created_at),
                    report.model_dump_json(by_alias=True),
                ),
            )
            await db.commit()
        log.debug("report_saved id=%s status=%s", report.id, report.status.value)
        return report

    async def get_report(self, report_id: str) -> Optional[InspectionReport]:
        async with self.connect() as db:
            doc = await self._fetch_doc(db, "reports", report_id)
        return InspectionReport.model_validate_json(doc) if doc else None

    async def list_reports(
        self,
        equipment_id: Optional[str] = None,
        status: Optional[ReportStatus] = None,
        search: Optional[str] = None,
    ) -> List[InspectionReport]:
        """Newest first; search matches the equipment's brand, model or serial number."""
        sql = (
            "SELECT r.doc FROM reports r LEFT JOIN equipment e ON e.id = r.equipment_id "
            "WHERE 1=1"
        )
        params: List[Any] = []
        if equipment_id:
            sql += " AND r.equipment_id = ?"
            params.append(equipment_id)
        if status:
            sql += " AND r.status = ?"
            params.append(ReportStatus(status).value)
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            sql += (
                " AND (json_extract(e.doc, '$.brand') LIKE ?"
                " OR json_extract(e.doc, '$.model') LIKE ?"
                " OR json_extract(e.doc, '$.serialNumber') LIKE ?)"
            )
            params.extend([pattern, pattern, pattern])
        sql += " ORDER BY r.created_at DESC"
        async with self.connect() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [InspectionReport.model_validate_json(r["doc"]) for r in rows]

    async def delete_report(self, report_id: str) -> bool:
        async with self.connect() as db:
            return await self._delete(db, "reports", report_id)

    # ---- images ----

    async def save_image(self, image: CapturedImage, data: bytes) -> CapturedImage:
        async with self.connect() as db:
            await db.execute(
                """
                INSERT INTO images (id, equipment_id, type, captured_at, doc, data)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    equipment_id = excluded.equipment_id,
                    type = excluded.type,
                    doc = excluded.doc,
                    data = excluded.data
                """,
                (
                    image.id,
                    image.equipment_id,
                    image.type.value,
                    _ts(image.captured_at),
                    image.model_dump_json(by_alias=True),
                    data,
                ),
            )
            await db.commit()
        return image

    async def get_image(self, image_id: str) -> Optional[CapturedImage]:
        async with self.connect() as db:
            doc = await self._fetch_doc(db, "images", image_id)
        return CapturedImage.model_validate_json(doc) if doc else None

    async def get_image_data(self, image_id: str) -> Optional[bytes]:
        async with self.connect() as db:
            cursor = await db.execute("SELECT data FROM images WHERE id = ?", (image_id,))
            row = await cursor.fetchone()
        return bytes(row["data"]) if row and row["data"] is not None else None

    async def list_images(
        self,
        equipment_id: Optional[str] = None,
        kind: Optional[ImageKind] = None,
    ) -> List[CapturedImage]:
        sql = "SELECT doc FROM images WHERE 1=1"
        params: List[Any] = []
        if equipment_id:
            sql += " AND equipment_id = ?"
            params.append(equipment_id)
        if kind:
            sql += " AND type = ?"
            params.append(ImageKind(kind).value)
        sql += " ORDER BY captured_at"
        async with self.connect() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [CapturedImage.model_validate_json(r["doc"]) for r in rows]

    async def delete_image(self, image_id: str) -> bool:
        async with self.connect() as db:
            return await self._delete(db, "images", image_id)

    # ---- utility ----

    async def clear_all(self) -> None:
        async with self.connect() as db:
            for table in COLLECTIONS:
                await db.execute(f"DELETE FROM {table}")
            await db.commit()
        log.info("storage_cleared path=%s", self.path)

    async def storage_info(self) -> Dict[str, int]:
        """Bytes used by the database files, free disk space and per-collection counts."""
        info: Dict[str, int] = {}
        async with self.connect() as db:
            for table in COLLECTIONS:
                cursor = await db.execute(f"SELECT COUNT(*) AS n FROM {table}")
                row = await cursor.fetchone()
                info[table] = row["n"]
        used = 0
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(self.path + suffix):
                used += os.path.getsize(self.path + suffix)
        info["used"] = used
        info["available"] = shutil.disk_usage(os.path.dirname(os.path.abspath(self.path))).free
        return info


@lru_cache
def get_store() -> LocalStore:
    """FastAPI dependency: process-wide store bound to settings.DB_PATH."""
    return LocalStore(get_settings().DB_PATH)
