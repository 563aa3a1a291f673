"""Runtime configuration helpers.

This module centralizes environment-driven runtime switches so the rest of the
codebase can import a single cached Settings instance.

Env vars (optional) and their roles:
        VISION_PROVIDER          -> "openai" (default) or "groq"; selects the pydantic-ai model backend.
        VISION_MODEL             -> Identifier/name of the vision-capable model to use.
        OPENAI_API_KEY           -> API key for the OpenAI provider (never hard-code secrets).
        OPENAI_BASE_URL          -> Optional OpenAI-compatible gateway URL.
        GROQ_API_KEY             -> API key for the Groq provider.
        MAX_FILE_MB              -> Upper bound for accepted photo size (reject larger uploads early).
        MAX_IMAGE_EDGE           -> Longest image edge (px) sent to the model after downscaling.
        ALLOW_URL_SOURCES        -> Let /scan/label fetch a photo from a url (off by default).
        URL_SOURCE_HOSTS         -> Comma-separated host allowlist for url sources (redirects included).
        DEBUG_EXTRACTION         -> Verbose logging toggle (helps diagnose prompt/model issues).
        DEFAULT_SCAN_CONFIDENCE  -> Overall scan confidence used when the model omits one.
        DEFAULT_FIELD_CONFIDENCE -> Per-field confidence synthesized when the model gives neither.
        LOW_CONFIDENCE_THRESHOLD -> Scans below this are provisional and need manual review.
        AUTO_SAVE_SCANS          -> Persist scanned equipment immediately instead of waiting for the form.
        PERSIST_LOW_CONFIDENCE   -> Allow AUTO_SAVE_SCANS to persist low-confidence scans too.
        HVAC_SCANNER_DB          -> SQLite file backing the local store.

Credentials are NOT validated here; the vision client checks the key for the
provider it is asked to build, so the normalizer and store can be used (and
tested) without any model configured.
"""

import os
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

_TRUTHY = {"1", "true", "True", "yes"}


class Settings:
        """Central runtime switches.

        Values read once at process start and memoized via get_settings().
        """

        # ---- Model selection / credentials ----
        VISION_PROVIDER: str = os.getenv("VISION_PROVIDER", "openai")
        VISION_MODEL: str = os.getenv("VISION_MODEL", "gpt-4o")
        # VISION_MODEL: str = os.getenv("VISION_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct")  # Groq alternative
        OPENAI_API_KEY: str = os.environ.get("OPENAI_API_KEY")
        OPENAI_BASE_URL: str = os.environ.get("OPENAI_BASE_URL")
        GROQ_API_KEY: str = os.environ.get("GROQ_API_KEY")

        # ---- Model call knobs ----
        MODEL_TEMPERATURE: float = float(os.getenv("MODEL_TEMPERATURE", "0.1"))
        LABEL_MAX_TOKENS: int = int(os.getenv("LABEL_MAX_TOKENS", "800"))
        ANALYSIS_MAX_TOKENS: int = int(os.getenv("ANALYSIS_MAX_TOKENS", "1500"))

        # ---- Resource & size guards ----
        MAX_FILE_MB: int = int(os.getenv("MAX_FILE_MB", "15"))            # Photo size cap (reject early to save memory)
        MAX_IMAGE_EDGE: int = int(os.getenv("MAX_IMAGE_EDGE", "800"))     # Longest edge after downscaling
        JPEG_QUALITY: int = int(os.getenv("JPEG_QUALITY", "70"))          # Re-encode quality for model uploads
        MAX_IMAGES_PER_INSPECTION: int = int(os.getenv("MAX_IMAGES_PER_INSPECTION", "10"))

        # ---- Remote photo sources (scan by url) ----
        ALLOW_URL_SOURCES: bool = os.getenv("ALLOW_URL_SOURCES", "0") in _TRUTHY   # Off: server never fetches client-chosen urls
        URL_SOURCE_HOSTS: list = [
                h.strip().lower() for h in os.getenv("URL_SOURCE_HOSTS", "").split(",") if h.strip()
        ]  # Empty: any host (only when ALLOW_URL_SOURCES is on)

        # ---- Diagnostics ----
        DEBUG_EXTRACTION: bool = os.getenv("DEBUG_EXTRACTION", "0") in _TRUTHY

        # ---- Confidence handling knobs ----
        DEFAULT_SCAN_CONFIDENCE: float = float(os.getenv("DEFAULT_SCAN_CONFIDENCE", "0.6"))    # Overall, when omitted
        DEFAULT_FIELD_CONFIDENCE: float = float(os.getenv("DEFAULT_FIELD_CONFIDENCE", "0.8"))  # Synthesized per field
        LOW_CONFIDENCE_THRESHOLD: float = float(os.getenv("LOW_CONFIDENCE_THRESHOLD", "0.3"))
        MIN_CONFIDENCE: float = 0.0  # Lower clamp bound
        MAX_CONFIDENCE: float = 1.0  # Upper clamp bound

        # ---- Persistence policy ----
        AUTO_SAVE_SCANS: bool = os.getenv("AUTO_SAVE_SCANS", "0") in _TRUTHY
        PERSIST_LOW_CONFIDENCE: bool = os.getenv("PERSIST_LOW_CONFIDENCE", "0") in _TRUTHY
        DB_PATH: str = os.getenv(
                "HVAC_SCANNER_DB",
                str(Path(__file__).resolve().parent.parent.parent / "data" / "hvac_scanner.db"),
        )


@lru_cache
def get_settings() -> Settings:
        """Return cached singleton Settings instance.

        Using functools.lru_cache ensures each worker process resolves environment
        variables once; subsequent imports are cheap attribute access.
        """
        return Settings()
