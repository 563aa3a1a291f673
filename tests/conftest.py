"""Shared fixtures: temporary store, scripted vision client, API test client."""

import io
import json
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from hvac_scanner.core.config import Settings, get_settings
from hvac_scanner.extraction.vision_model_client import get_vision_client
from hvac_scanner.main import app
from hvac_scanner.storage.database import LocalStore, get_store


LABEL_REPLY = json.dumps({
    "extractedText": "CARRIER MODEL 24ACC636A003 SERIAL 1234E56789 R-410A 208/230V",
    "structuredData": {
        "brand": "Carrier",
        "model": "24ACC636A003",
        "serialNumber": "1234E56789",
        "capacity": "3 tons",
        "btu": 36000,
        "refrigerantType": "R-410A",
        "voltage": "208/230V",
        "equipmentType": "air_conditioner",
        "amperage": None,
    },
    "fieldMetadata": {
        "capacity": {"source": "ai_inferred", "confidence": 0.7, "inferenceBasis": "model number -36 = 36,000 BTU"},
    },
    "confidence": 0.9,
})

ANALYSIS_REPLY = json.dumps({
    "equipmentType": "Split_System",
    "equipmentDescription": "Outdoor condensing unit on a concrete pad",
    "failures": [
        {
            "type": "corrosion",
            "severity": "medium",
            "description": "Surface rust on the base pan",
            "location": "base pan",
            "confidence": 0.8,
            "recommendations": ["Wire brush and treat the base pan"],
        },
        {
            "type": "dirty_filter",
            "severity": "low",
            "description": "Debris on the condenser coil",
            "confidence": 0.6,
            "recommendations": [],
        },
    ],
    "condition": "fair",
    "urgency": "within_month",
    "recommendations": ["Schedule coil cleaning", "Re-check in six months"],
})

RECOMMENDATIONS_REPLY = json.dumps([
    "Clean the condenser coil with a foaming cleaner (30 min, garden hose).",
    "Treat the base pan rust and apply a protective coating.",
])


class FakeVisionClient:
    """Stands in for VisionModelClient: replays queued replies, records calls."""

    def __init__(self, replies: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.replies = list(replies or [])
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def run(self, instructions, images=(), *, prompt="", max_tokens=None):
        self.calls.append({
            "instructions": instructions,
            "images": list(images),
            "prompt": prompt,
            "max_tokens": max_tokens,
        })
        if self.error is not None:
            raise self.error
        return {"text": self.replies.pop(0), "latency_ms": 12}


def make_image(width: int = 1600, height: int = 1200, fmt: str = "JPEG", mode: str = "RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, (width, height), color=(120, 130, 140) if mode == "RGB" else (120, 130, 140, 200)).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def photo() -> bytes:
    return make_image()


@pytest.fixture
def store(tmp_path) -> LocalStore:
    return LocalStore(str(tmp_path / "hvac_test.db"))


@pytest.fixture
def fake_client() -> FakeVisionClient:
    return FakeVisionClient()


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.AUTO_SAVE_SCANS = False
    s.PERSIST_LOW_CONFIDENCE = False
    s.ALLOW_URL_SOURCES = False
    s.URL_SOURCE_HOSTS = []
    return s


@pytest.fixture
def api(store, fake_client, settings):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_vision_client] = lambda: fake_client
    app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
