import logging
import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Form, File, UploadFile, Header, Query
from fastapi.middleware.cors import CORSMiddleware

from chunkvault.config import settings
from chunkvault.exceptions import UploadError
from chunkvault.models.upload_models import *
from chunkvault.services.upload_service import UploadService
from chunkvault.services.cleanup_service import CleanupService

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    cleanup_service = CleanupService(
        s3_client=upload_service.s3_client,
        redis_client=upload_service.redis_client
    )
    cleanup_task = asyncio.create_task(cleanup_service.start_cleanup_scheduler())

    yield

    # Shutdown
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass

app = FastAPI(title=settings.APP_TITLE, version=settings.APP_VERSION, lifespan=lifespan)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services
upload_service = UploadService()


def _http_error(e: UploadError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.exception(f"Unexpected error while {action}")
    return HTTPException(status_code=500, detail={"code": "internal_error", "message": str(e)})


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.post("/upload/init", response_model=InitUploadResponse)
async def init_upload(request: InitUploadRequest):
    """Create or re-attach an upload session; `instant` means no bytes need to move"""
    try:
        return await upload_service.init_session(request)
    except UploadError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("initializing upload", e)


@app.get("/upload/status", response_model=SessionStatusResponse)
async def get_upload_status(session_id: str = Query(...)):
    """Parts the server already holds; clients query this before every resume"""
    try:
        session = await upload_service.get_session(session_id)
        if not session:
            raise HTTPException(status_code=404, detail={"code": "session_not_found", "session_id": session_id})
        parts = await upload_service.get_received_parts(session_id)
        return SessionStatusResponse(
            session_id=session_id,
            status=session.status,
            total_parts=session.total_parts,
            uploaded_parts=sorted(parts)
        )
    except HTTPException:
        raise
    except UploadError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("reading upload status", e)


@app.post("/upload/part")
async def upload_part(
    session_id: str = Form(...),
    part_number: int = Form(...),
    part: UploadFile = File(...),
    x_upload_credential: Optional[str] = Header(None)
):
    """Store a single part. Uploading the same part twice overwrites it."""
    try:
        data = await part.read()
        await upload_service.put_part(session_id, part_number, data, x_upload_credential)
        return {"part_number": part_number, "size": len(data)}
    except UploadError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error(f"storing part {part_number} of session {session_id}", e)


@app.post("/upload/refresh-credential")
async def refresh_credential(request: RefreshCredentialRequest):
    """Issue a fresh upload credential for a session"""
    try:
        credential = await upload_service.refresh_credential(request.session_id, request.hash)
        return {"credential": credential}
    except UploadError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("refreshing credential", e)


@app.post("/upload/complete")
async def complete_upload(request: CompleteUploadRequest):
    """Merge all parts and register the file"""
    try:
        file = await upload_service.complete_session(request.session_id, request.total_parts, request.hash)
        return {"status": "completed", "file": file}
    except UploadError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error(f"completing session {request.session_id}", e)


@app.post("/upload/abort")
async def abort_upload(request: AbortUploadRequest):
    """Abandon an upload; stored parts stay for a later resume"""
    try:
        await upload_service.abort_session(request.session_id)
        return {"status": "aborted"}
    except UploadError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error(f"aborting session {request.session_id}", e)


@app.get("/upload/session/{session_id}")
async def get_session(session_id: str):
    """Get upload session details"""
    session = await upload_service.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail={"code": "session_not_found", "session_id": session_id})
    return session


@app.get("/upload/sessions/active")
async def get_active_sessions():
    """Get all active upload sessions"""
    sessions = await upload_service.get_active_sessions()
    return {"sessions": sessions}


@app.get("/files/{file_id}", response_model=FileMetadata)
async def get_file(file_id: str):
    file = await upload_service.get_file(file_id)
    if not file:
        raise HTTPException(status_code=404, detail={"code": "file_not_found", "file_id": file_id})
    return file
