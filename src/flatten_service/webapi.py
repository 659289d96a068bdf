import logging
import os
from pathlib import Path

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import FileResponse, JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from flatten_service.conversion import (
    AuthError,
    BadRequestError,
    ConversionService,
    MethodError,
    NotFoundError,
    SecurityGateway,
    ServiceError,
    UnsupportedMediaError,
)
from flatten_service.conversion.adapters import (
    GcsArtifactStore,
    LocalArtifactStore,
    PillowImageEncoder,
    PyMuPdfAssembler,
    PyMuPdfRasterizer,
    SharedSecretSecurity,
    SystemClock,
)

app = FastAPI(
    title="PDF Flatten Service",
    version=os.getenv("FLATTEN_SERVICE_VERSION", "0.1.0"),
    description=(
        "Converts uploaded PDFs into image-only PDFs to prevent copying of their "
        "text and vector content. Results are downloadable for a limited time."
    ),
)

logger = logging.getLogger(__name__)

# Global configuration defaults
AUTH_TOKEN = os.getenv("AUTH_TOKEN", "")
DATA_DIR = Path(os.getenv("DATA_DIR", "./data")).resolve()
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local").lower()
GCS_BUCKET = os.getenv("GCS_BUCKET", "")
GCS_PREFIX = os.getenv("GCS_PREFIX", "converted/")
GCP_PROJECT_ID = os.getenv("GCP_PROJECT_ID") or None
ARTIFACT_TTL_SECONDS = float(os.getenv("ARTIFACT_TTL_SECONDS", "300"))
RASTER_SCALE = int(os.getenv("RASTER_SCALE", "2000"))
FIT_BOX = (int(os.getenv("FIT_WIDTH", "2480")), int(os.getenv("FIT_HEIGHT", "3508")))
PAGE_SIZE = (float(os.getenv("PAGE_WIDTH", "612")), float(os.getenv("PAGE_HEIGHT", "792")))
PAGE_PLACEMENT = os.getenv("PAGE_PLACEMENT", "natural").lower()
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "100"))
ALLOWED_MIME = {"application/pdf", "application/x-pdf", "application/octet-stream"}

SERVICE: ConversionService | None = None
SECURITY: SecurityGateway | None = None


def build_service() -> ConversionService:
    if STORAGE_BACKEND == "gcs":
        store = GcsArtifactStore(GCS_BUCKET, prefix=GCS_PREFIX, project=GCP_PROJECT_ID)
    elif STORAGE_BACKEND == "local":
        store = LocalArtifactStore(str(DATA_DIR / "output"))
    else:
        raise RuntimeError(f"unknown STORAGE_BACKEND {STORAGE_BACKEND!r}")
    return ConversionService(
        rasterizer=PyMuPdfRasterizer(),
        encoder=PillowImageEncoder(),
        assembler=PyMuPdfAssembler(),
        store=store,
        clock=SystemClock(),
        data_dir=str(DATA_DIR),
        ttl_seconds=ARTIFACT_TTL_SECONDS,
        raster_scale=RASTER_SCALE,
        fit_box=FIT_BOX,
        page_size=PAGE_SIZE,
        placement=PAGE_PLACEMENT,
    )


@app.exception_handler(ServiceError)
async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 405:
        return JSONResponse(status_code=405, content={"error": MethodError.message})
    if exc.status_code == 404:
        return JSONResponse(status_code=404, content={"error": "Not found"})
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.on_event("startup")
async def _startup() -> None:
    global SERVICE, SECURITY
    if SECURITY is None:
        # Refuse to serve without a shared secret.
        SECURITY = SharedSecretSecurity(AUTH_TOKEN)
    if SERVICE is None:
        SERVICE = build_service()
    await SERVICE.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    if SERVICE is not None:
        await SERVICE.stop()


def _check_bearer_token(auth_header: str | None) -> None:
    if not auth_header:
        logger.info("Rejected request without bearer token")
        raise AuthError("missing bearer token")
    scheme, _, rest = auth_header.partition(" ")
    token = rest.strip()
    assert SECURITY is not None
    if scheme.lower() != "bearer" or not token or not SECURITY.verify(token):
        logger.info("Rejected request with invalid bearer token")
        raise AuthError("invalid bearer token")


async def require_token(authorization: str | None = Header(None)) -> None:
    _check_bearer_token(authorization)


def _service() -> ConversionService:
    assert SERVICE is not None
    return SERVICE


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.post("/convert")
@app.post("/convert-pdf")
async def convert(request: Request) -> JSONResponse:
    """Convert an uploaded PDF into an image-only PDF.

    Accepts multipart/form-data with a single required part named "pdf".
    The token is checked before the body is read, so a rejected request
    never reaches the multipart parser. Returns the download link and the
    link reporting how long the download stays available.
    """
    _check_bearer_token(request.headers.get("authorization"))

    form = await request.form()
    try:
        pdf = form.get("pdf")
        if not isinstance(pdf, UploadFile):
            raise BadRequestError("missing pdf file part")
        ct = (pdf.content_type or "").split(";")[0].strip().lower()
        fn = (pdf.filename or "").lower()
        if ct and ct not in ALLOWED_MIME and not fn.endswith(".pdf"):
            raise UnsupportedMediaError(f"content-type {pdf.content_type} not allowed")

        service = _service()

        async def read_chunk(n: int) -> bytes:
            return await pdf.read(n)

        upload_path = await service.save_upload(pdf.filename or "upload.pdf", read_chunk, max_upload_mb=MAX_UPLOAD_MB)
    finally:
        await form.close()
    result = await service.convert(upload_path, base_url=str(request.base_url))
    return JSONResponse(content={"downloadUrl": result.download_url, "timeRemainingUrl": result.time_remaining_url})


@app.get("/time-remaining/{artifact_id}")
async def time_remaining(artifact_id: str, authorization: str | None = Header(None)) -> JSONResponse:
    service = _service()
    # Signed URLs carry their own expiry, so the remote store does not gate this query.
    if service.store.requires_auth:
        _check_bearer_token(authorization)
    seconds = service.time_remaining(artifact_id)
    return JSONResponse(
        content={"filename": artifact_id, "timeRemaining": seconds, "timeRemainingSeconds": seconds}
    )


@app.get("/downloads/{filename}", dependencies=[Depends(require_token)])
async def download(filename: str) -> FileResponse:
    service = _service()
    store = service.store
    if not isinstance(store, LocalArtifactStore):
        raise NotFoundError("downloads are served by the remote store")
    if not service.registry.is_available(filename):
        raise NotFoundError(f"{filename} is not available")
    path = store.path(filename)
    if not path.is_file():
        raise NotFoundError(f"{filename} is missing on disk")
    return FileResponse(
        path,
        media_type="application/pdf",
        filename=filename,
        headers={"Cache-Control": "no-store", "X-Content-Type-Options": "nosniff"},
    )


def run() -> None:
    """Run the ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:3000). Set PORT env var to override.
    """
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    reload = os.getenv("RELOAD", "false").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("flatten_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
