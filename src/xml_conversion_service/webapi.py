import os
import platform
import shlex
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import quote

import structlog
from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from xml_conversion_service.conversion import (
    ConversionService,
    LocalStorage,
    PathGuard,
    ProcessSpawnCapability,
    SubprocessRunner,
)
from xml_conversion_service.conversion.errors import ConversionServiceError, EmptyUploadError
from xml_conversion_service.conversion.interfaces import (
    ArtifactGroup,
    ConversionJob,
    DocumentEntry,
    isoformat_z,
)
from xml_conversion_service.logging_config import configure_logging


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


# Global configuration defaults
IS_VERCEL = os.getenv("VERCEL") == "1"
APP_ENV = os.getenv("APP_ENV", "development")
# serverless hosts only allow writes under /tmp
DATA_DIR = Path(os.getenv("DATA_DIR", "/tmp/xml-conversion" if IS_VERCEL else "./data")).resolve()
CONVERTER_CMD = shlex.split(os.getenv("XML_CONVERTER_CMD", "xml-to-csv"))
CONVERSION_TIMEOUT_SEC = float(os.getenv("CONVERSION_TIMEOUT_SEC", "60"))
MAX_UPLOAD_MB = float(os.getenv("MAX_UPLOAD_MB", "10"))
MAX_UPLOAD_BYTES = int(MAX_UPLOAD_MB * 1024 * 1024)
STDERR_CAPTURE_BYTES = int(os.getenv("STDERR_CAPTURE_BYTES", "65536"))
DEMO_MODE = IS_VERCEL or _truthy(os.getenv("DEMO_MODE"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _truthy(os.getenv("LOG_JSON"))

SPREADSHEET_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
MEDIA_TYPES = {
    ".csv": "text/csv",
    ".xlsx": SPREADSHEET_MIME,
    ".html": "text/html",
}

logger = structlog.get_logger()


def build_service() -> ConversionService:
    storage = LocalStorage(DATA_DIR)
    guard = PathGuard()
    runner = SubprocessRunner(
        storage,
        guard,
        CONVERTER_CMD,
        timeout_sec=CONVERSION_TIMEOUT_SEC,
        capture_bytes=STDERR_CAPTURE_BYTES,
    )
    return ConversionService(
        storage,
        runner,
        capability=ProcessSpawnCapability(enabled=not DEMO_MODE),
        guard=guard,
        max_upload_bytes=MAX_UPLOAD_BYTES,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(LOG_LEVEL, json=LOG_JSON)
    # tests install their own service before the app starts
    if getattr(app.state, "service", None) is None:
        app.state.service = build_service()
    service: ConversionService = app.state.service
    await service.start()
    try:
        yield
    finally:
        await service.stop()


app = FastAPI(
    title="XML Conversion Service",
    version=os.getenv("XML_CONVERSION_SERVICE_VERSION", "0.1.0"),
    description=(
        "Upload XML documents, convert them to CSV, XLSX and HTML with an "
        "external converter, then list, download and delete the results."
    ),
    lifespan=lifespan,
)


def get_service(request: Request) -> ConversionService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "not_ready", "message": "service not started"},
        )
    return service


@app.exception_handler(ConversionServiceError)
async def _domain_error(request: Request, exc: ConversionServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": {"code": "internal_error", "message": "internal error"}},
    )


class ProcessRequest(BaseModel):
    storedName: str | None = None
    # older clients send the stored name as "filename"
    filename: str | None = None


class DeleteRequest(BaseModel):
    filePath: str | None = None
    fileName: str | None = None


def download_url(file_name: str) -> str:
    return f"/api/download?file={quote(file_name)}"


def _job_body(job: ConversionJob) -> dict[str, object]:
    body = job.to_dict()
    body["convertedFiles"] = {kind: download_url(name) for kind, name in job.outputs.items()}
    return body


def _group_body(group: ArtifactGroup) -> dict[str, object]:
    return {
        "id": group.id,
        "originalName": group.original_name,
        "newestModifiedAt": isoformat_z(group.newest_modified_at),
        "files": {
            kind: {
                "name": artifact.file_name,
                "kind": kind,
                "size": artifact.size_bytes,
                "modifiedAt": isoformat_z(artifact.modified_at),
                "downloadUrl": download_url(artifact.file_name),
            }
            for kind, artifact in group.artifacts.items()
        },
    }


def _document_body(entry: DocumentEntry) -> dict[str, object]:
    return {
        "id": entry.id,
        "storedName": entry.stored_name,
        "originalName": entry.original_name,
        "size": entry.size_bytes,
        "modifiedAt": isoformat_z(entry.modified_at),
        "converted": entry.converted,
    }


async def _read_upload(file: UploadFile | None, xml_file: UploadFile | None) -> tuple[bytes, str]:
    upload = file or xml_file
    if upload is None or not upload.filename:
        raise EmptyUploadError("no file found in the request")
    # read one byte past the limit so oversize uploads are detected without reading everything
    data = await upload.read(MAX_UPLOAD_BYTES + 1)
    return data, upload.filename


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.get("/api/environment")
async def environment(service: ConversionService = Depends(get_service)) -> dict[str, object]:
    """Report the runtime environment and whether conversions are simulated."""
    return {
        "environment": "vercel" if IS_VERCEL else APP_ENV,
        "isDemo": service.is_demo,
        "canSpawn": service.capability.can_spawn(),
        "platform": sys.platform,
        "pythonVersion": platform.python_version(),
    }


@app.post("/api/upload", status_code=status.HTTP_201_CREATED)
async def upload(
    file: UploadFile | None = File(None),
    xmlFile: UploadFile | None = File(None),
    service: ConversionService = Depends(get_service),
) -> JSONResponse:
    """Stage a single XML document.

    Accepts multipart/form-data with one part named "file" (or "xmlFile").
    """
    data, name = await _read_upload(file, xmlFile)
    document = await service.upload(data, name)
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=document.to_dict())


@app.post("/api/process")
async def process(payload: ProcessRequest, service: ConversionService = Depends(get_service)) -> JSONResponse:
    stored_name = payload.storedName or payload.filename
    if not stored_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "bad_request", "message": "storedName is required"},
        )
    job = await service.process(stored_name)
    return JSONResponse(content=_job_body(job))


@app.post("/api/convert")
async def convert(
    file: UploadFile | None = File(None),
    xmlFile: UploadFile | None = File(None),
    service: ConversionService = Depends(get_service),
) -> JSONResponse:
    """Upload and convert in one request."""
    data, name = await _read_upload(file, xmlFile)
    document, job = await service.upload_and_process(data, name)
    body = document.to_dict()
    body.update(_job_body(job))
    return JSONResponse(content=body)


@app.get("/api/files")
async def list_files(service: ConversionService = Depends(get_service)) -> JSONResponse:
    groups = await service.list_groups()
    documents = await service.list_documents()
    return JSONResponse(
        content={
            "isDemo": service.is_demo,
            "groups": [_group_body(g) for g in groups],
            "documents": [_document_body(d) for d in documents],
        },
        headers={"Cache-Control": "no-store"},
    )


@app.get("/api/download")
async def download(
    file: str = Query(..., min_length=1),
    service: ConversionService = Depends(get_service),
) -> FileResponse:
    path = await service.resolve_download(file)
    ext = path.suffix.lower()
    return FileResponse(
        path,
        media_type=MEDIA_TYPES.get(ext, "application/octet-stream"),
        filename=path.name,
        content_disposition_type="inline" if ext == ".html" else "attachment",
        headers={"Cache-Control": "no-store", "X-Content-Type-Options": "nosniff"},
    )


@app.delete("/api/files/{name}")
async def delete_file(name: str, service: ConversionService = Depends(get_service)) -> JSONResponse:
    result = await service.delete(name)
    return JSONResponse(content=result.to_dict())


@app.post("/api/delete")
async def delete_legacy(payload: DeleteRequest, service: ConversionService = Depends(get_service)) -> JSONResponse:
    """Delete by bare file name or by a path inside one of the managed directories."""
    target = payload.filePath or payload.fileName
    if not target:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "bad_request", "message": "filePath is required"},
        )
    result = await service.delete(target)
    return JSONResponse(content=result.to_dict())


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("xml_conversion_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
