import logging

from fastapi import FastAPI, Request  # Core FastAPI imports
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import FileResponse, JSONResponse
from pathlib import Path

from hvac_scanner.api.routes import router
from hvac_scanner.api.routes_records import router_records
from hvac_scanner.core.config import get_settings
from hvac_scanner.extraction.errors import StorageError

settings = get_settings()
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG_EXTRACTION else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
log = logging.getLogger("hvac.api")

BASE_DIR = Path(__file__).resolve().parent.parent  # Root project dir
FRONTEND_DIR = BASE_DIR / "frontend"              # Static capture UI, if built

app = FastAPI(title="HVAC Scanner API", version="0.1.0")  # Main ASGI app

# CORS (wide-open so the capture UI can run from another origin on the LAN)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if FRONTEND_DIR.exists():  # Serve static assets if built
    app.mount("/static", StaticFiles(directory=FRONTEND_DIR), name="static")


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    log.error("storage_failure path=%s err=%s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "storage_error"})


@app.get("/")
async def root_index():
    """Return the capture UI index page (fallback JSON if missing)."""
    index_path = FRONTEND_DIR / "index.html"
    if index_path.exists():
        return FileResponse(index_path)
    return {"message": "Frontend not built"}


@app.get("/health")
async def health():
    return {"status": "ok", "provider": settings.VISION_PROVIDER, "model": settings.VISION_MODEL}


app.include_router(router)
app.include_router(router_records)
