"""
Medhira - FastAPI Main Application
"""

import time
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Request, Depends, status, UploadFile, File, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from medhira.config import settings
from medhira.core.exceptions import (
    AudioValidationError,
    ConsultationBusyError,
    ConsultationNotFound,
    DriveExportError,
    DuplicateUserError,
    InvalidStatusTransition,
)
from medhira.core.logging import setup_logging, get_logger, audit_logger
from medhira.core.security import (
    data_encryption,
    get_current_user,
    hash_password,
    security_manager,
    verify_password,
)
from medhira.models.consultation import (
    Consultation,
    ConsultationStatus,
    SUMMARY_FIELDS,
    NOT_SPECIFIED,
    User,
    backfill_fields,
    utcnow,
)
from medhira.models.requests import ConsultationCreate, ConsultationUpdate, LoginRequest, RegisterRequest
from medhira.models.responses import (
    AuthResponse,
    ConsultationListItem,
    ConsultationListResponse,
    ConsultationResponse,
    ErrorResponse,
    ExportResponse,
    HealthCheckResponse,
    JobAcknowledgement,
    MessageResponse,
    PartialData,
    ProcessingStatusResponse,
    RateLimitResponse,
    TranscriptionResponse,
    UserPublic,
)
from medhira.services.audio_processor import AudioProcessor, AudioHandle
from medhira.services.drive_service import DriveExporter
from medhira.services.fallback import build_summarizer, build_transcriber
from medhira.services.jobs import BackgroundJobRunner
from medhira.services.pipeline import AudioProcessingPipeline
from medhira.services.repository import build_repositories

# Initialize logging
setup_logging()
logger = get_logger(__name__)

START_TIME = time.time()

# Prometheus metrics
request_count = Counter('http_requests_total', 'Total HTTP requests', ['method', 'endpoint', 'status'])
request_duration = Histogram('http_request_duration_seconds', 'HTTP request duration')

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

# Service instances
consultation_repository, user_repository = build_repositories(settings)
audio_processor = AudioProcessor.from_settings(settings, data_encryption)
transcriber = build_transcriber(settings)
summarizer = build_summarizer(settings)
pipeline = AudioProcessingPipeline(consultation_repository, transcriber, summarizer, audio_processor)
job_runner = BackgroundJobRunner(
    pipeline,
    max_concurrency=settings.max_concurrent_jobs,
    job_timeout=settings.job_timeout_seconds,
)
drive_exporter = DriveExporter(settings.google_drive_api_base_url, settings.drive_folder_name)

AUDIO_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    429: {"model": RateLimitResponse},
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("🚀 Medhira starting...")
    logger.info(f"Environment: {settings.environment.value}")
    logger.info(f"API Version: {settings.api_version}")
    logger.info(f"Transcription: {transcriber.describe()}")
    logger.info(f"Summarization: {summarizer.describe()}")

    yield

    await job_runner.shutdown()
    logger.info("🛑 Medhira shutting down...")


app = FastAPI(
    title=settings.api_title,
    description=settings.api_description,
    version=settings.api_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
    debug=settings.debug,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Rate limiting
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


@app.middleware("http")
async def track_requests(request: Request, call_next):
    """Request tracking and Prometheus metrics"""

    start_time = time.time()
    request_id = security_manager.generate_request_id()
    request.state.request_id = request_id
    request.state.start_time = start_time

    try:
        response = await call_next(request)

        duration = time.time() - start_time
        request_count.labels(
            method=request.method,
            endpoint=request.url.path,
            status=response.status_code
        ).inc()
        request_duration.observe(duration)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time"] = f"{duration:.3f}s"
        return response

    except Exception as e:
        request_count.labels(
            method=request.method,
            endpoint=request.url.path,
            status=500
        ).inc()
        logger.error(f"Request {request_id} failed: {e}", exc_info=True)
        return _internal_error(request_id)


def _internal_error(request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat()
        },
        headers={"X-Request-ID": request_id}
    )


# --- Helpers ---

def _owner_id(user_info: Dict[str, Any]) -> str:
    return str(user_info["sub"])


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Consultation not found")


async def _get_owned(consultation_id: str, owner_id: str) -> Consultation:
    try:
        return await consultation_repository.get_for_owner(consultation_id, owner_id)
    except ConsultationNotFound:
        raise _not_found()


async def _accept_audio(audio: Optional[UploadFile], check_format: bool = True) -> AudioHandle:
    try:
        return await audio_processor.save_upload(audio, check_format=check_format)
    except AudioValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


async def _create_placeholder(owner_id: str, handle: AudioHandle) -> Consultation:
    consultation = Consultation(
        owner_id=owner_id,
        audio_file=handle.stored_name,
        original_name=handle.original_name,
        file_size=handle.size,
        mime_type=handle.mime_type,
        status=ConsultationStatus.UPLOADED,
        patient_name="Processing...",
        diagnosis="Pending transcription",
    )
    try:
        return await consultation_repository.create(consultation)
    except Exception:
        handle.delete()
        raise


def _status_message(consultation: Consultation) -> str:
    if consultation.status == ConsultationStatus.COMPLETED:
        return "Processing completed successfully"
    if consultation.status == ConsultationStatus.FAILED:
        return "Processing failed"
    return f"Processing is {consultation.status.value}"


# --- Service endpoints ---

@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """Service health check"""
    return HealthCheckResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=settings.api_version,
        uptime_seconds=int(time.time() - START_TIME),
    )


@app.get("/ready")
async def readiness_check():
    """
    Reports which providers are live and which answer from the fallback.
    The service is ready either way, fallbacks keep the pipeline available.
    """
    return {
        "status": "ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.api_version,
        "details": {
            "transcription": transcriber.describe(),
            "summarization": summarizer.describe(),
            "store": settings.store_backend.value,
            "active_jobs": job_runner.active_jobs,
        },
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics"""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# --- Audio processing ---

@app.post("/audio/upload", response_model=JobAcknowledgement, responses=AUDIO_ERROR_RESPONSES)
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def upload_audio(
    request: Request,
    user_info: dict = Depends(get_current_user),
    audio: Optional[UploadFile] = File(None),
):
    """
    Stores the uploaded recording, creates the consultation and starts
    processing in the background. Poll /audio/status/{id} for the outcome.
    """
    owner_id = _owner_id(user_info)
    handle = await _accept_audio(audio)
    consultation = await _create_placeholder(owner_id, handle)
    logger.info(
        f"[{request.state.request_id}] Created consultation {consultation.id} "
        f"({handle.size / 1024 / 1024:.2f} MB, {handle.mime_type})"
    )
    audit_logger.log_api_request(
        request_id=request.state.request_id,
        endpoint=request.url.path,
        method=request.method,
        subject=owner_id,
        ip_address=get_remote_address(request),
        consultation_id=consultation.id,
    )
    return job_runner.submit(consultation.id, handle)


@app.post("/audio/process-step", response_model=ConsultationResponse, responses=AUDIO_ERROR_RESPONSES)
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def process_audio_step_by_step(
    request: Request,
    user_info: dict = Depends(get_current_user),
    audio: Optional[UploadFile] = File(None),
):
    """Uploads and processes synchronously, passing through an observable 'summarizing' state."""
    owner_id = _owner_id(user_info)
    handle = await _accept_audio(audio)
    consultation = await _create_placeholder(owner_id, handle)

    try:
        result = await pipeline.process_step_by_step(consultation.id, handle)
    except ConsultationBusyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ConsultationNotFound:
        raise _not_found()
    if result is None:
        raise _not_found()

    return ConsultationResponse(
        consultation_id=result.id,
        status=result.status,
        message=_status_message(result),
        consultation=result,
    )


@app.post("/audio/transcribe", response_model=TranscriptionResponse)
async def transcribe_audio(
    request: Request,
    user_info: dict = Depends(get_current_user),
    audio: Optional[UploadFile] = File(None),
):
    """Legacy transcription-only endpoint, always answers with text."""
    handle = await _accept_audio(audio, check_format=False)
    try:
        result = await transcriber.transcribe(handle)
        return TranscriptionResponse(text=result.value)
    except Exception as e:
        logger.error(f"[{request.state.request_id}] Legacy transcription error: {e}", exc_info=True)
        text = await transcriber.fallback.transcribe(handle)
        return TranscriptionResponse(text=text, note="Used fallback data due to error")
    finally:
        handle.delete()


@app.get("/audio/status/{consultation_id}", response_model=ProcessingStatusResponse, response_model_exclude_none=True)
async def get_processing_status(consultation_id: str, user_info: dict = Depends(get_current_user)):
    """Poll the processing state of one consultation."""
    consultation = await _get_owned(consultation_id, _owner_id(user_info))

    response = ProcessingStatusResponse(
        consultation_id=consultation.id,
        status=consultation.status,
        message=_status_message(consultation),
        created_at=consultation.created_at,
        updated_at=consultation.updated_at,
    )
    if consultation.status == ConsultationStatus.COMPLETED:
        response.consultation = consultation
    elif consultation.status == ConsultationStatus.FAILED:
        response.error = consultation.error
        if consultation.transcript:
            response.partial_data = PartialData(transcript=consultation.transcript)
    else:
        response.processing_started_at = consultation.processing_started_at
    return response


@app.get("/audio/consultations", response_model=ConsultationListResponse)
async def list_audio_consultations(user_info: dict = Depends(get_current_user)):
    consultations = await consultation_repository.list_for_owner(_owner_id(user_info))
    items = [ConsultationListItem.model_validate(x.model_dump()) for x in consultations]
    return ConsultationListResponse(count=len(items), consultations=items)


@app.get("/audio/consultation/{consultation_id}", response_model=ConsultationResponse)
async def get_audio_consultation(consultation_id: str, user_info: dict = Depends(get_current_user)):
    owner_id = _owner_id(user_info)
    consultation = await _get_owned(consultation_id, owner_id)
    audit_logger.log_consultation_access(consultation_id, owner_id, action="read")
    return ConsultationResponse(consultation=consultation)


@app.delete("/audio/consultation/{consultation_id}", response_model=MessageResponse)
async def delete_audio_consultation(consultation_id: str, user_info: dict = Depends(get_current_user)):
    return await delete_consultation(consultation_id, user_info)


# --- Manual consultation CRUD ---

@app.get("/consultations", response_model=ConsultationListResponse)
async def list_consultations(user_info: dict = Depends(get_current_user)):
    consultations = await consultation_repository.list_for_owner(_owner_id(user_info))
    return ConsultationListResponse(count=len(consultations), consultations=consultations)


@app.get("/consultations/{consultation_id}", response_model=ConsultationResponse)
async def get_consultation(consultation_id: str, user_info: dict = Depends(get_current_user)):
    owner_id = _owner_id(user_info)
    consultation = await _get_owned(consultation_id, owner_id)
    audit_logger.log_consultation_access(consultation_id, owner_id, action="read")
    return ConsultationResponse(consultation=consultation)


@app.post("/consultations", response_model=ConsultationResponse, status_code=status.HTTP_201_CREATED)
async def create_consultation(payload: ConsultationCreate, user_info: dict = Depends(get_current_user)):
    """Saves a manually written summary; it never passes through the pipeline."""
    owner_id = _owner_id(user_info)
    now = utcnow()
    consultation = Consultation(
        owner_id=owner_id,
        status=ConsultationStatus.COMPLETED,
        processed_at=now,
        **backfill_fields(payload.model_dump()),
    )
    consultation = await consultation_repository.create(consultation)
    logger.info(f"Consultation {consultation.id} created manually for user {owner_id}")
    return ConsultationResponse(message="Consultation saved successfully", consultation=consultation)


@app.put("/consultations/{consultation_id}", response_model=ConsultationResponse)
async def update_consultation(
    consultation_id: str,
    payload: ConsultationUpdate,
    user_info: dict = Depends(get_current_user),
):
    owner_id = _owner_id(user_info)
    consultation = await _get_owned(consultation_id, owner_id)

    changes = payload.model_dump(exclude_unset=True)
    if consultation.status == ConsultationStatus.COMPLETED:
        for field in SUMMARY_FIELDS:
            if field in changes and not (changes[field] or "").strip():
                changes[field] = NOT_SPECIFIED

    try:
        updated = await consultation_repository.update(consultation_id, changes)
    except ConsultationNotFound:
        raise _not_found()
    audit_logger.log_consultation_access(consultation_id, owner_id, action="update", fields=sorted(changes))
    return ConsultationResponse(message="Consultation updated successfully", consultation=updated)


@app.delete("/consultations/{consultation_id}", response_model=MessageResponse)
async def delete_consultation(consultation_id: str, user_info: dict = Depends(get_current_user)):
    owner_id = _owner_id(user_info)
    try:
        await consultation_repository.delete_for_owner(consultation_id, owner_id)
    except ConsultationNotFound:
        raise _not_found()
    audit_logger.log_consultation_access(consultation_id, owner_id, action="delete")
    return MessageResponse(message="Consultation deleted successfully")


@app.post("/consultations/{consultation_id}/export", response_model=ExportResponse)
async def export_consultation(
    consultation_id: str,
    user_info: dict = Depends(get_current_user),
    drive_access_token: Optional[str] = Header(None, alias="X-Drive-Access-Token"),
):
    """Uploads the completed summary as a PDF to the caller's Google Drive."""
    owner_id = _owner_id(user_info)
    consultation = await _get_owned(consultation_id, owner_id)
    if consultation.status != ConsultationStatus.COMPLETED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only completed consultations can be exported (status is {consultation.status.value})",
        )

    try:
        upload = await drive_exporter.export(consultation, drive_access_token or "")
    except DriveExportError as e:
        if e.status_code is None:
            code = status.HTTP_400_BAD_REQUEST
        elif e.status_code in (401, 403):
            code = status.HTTP_401_UNAUTHORIZED
        else:
            code = status.HTTP_502_BAD_GATEWAY
        raise HTTPException(status_code=code, detail=str(e))

    await consultation_repository.update(
        consultation_id,
        {"drive_link": upload.drive_link, "file_id": upload.file_id, "file_name": upload.file_name},
    )
    audit_logger.log_consultation_access(consultation_id, owner_id, action="export", file_id=upload.file_id)
    return ExportResponse(
        message="Summary successfully saved to Google Drive!",
        drive_link=upload.drive_link,
        file_id=upload.file_id,
        file_name=upload.file_name,
    )


# --- Authentication ---

def _auth_response(user: User, message: str) -> AuthResponse:
    token = security_manager.create_access_token({"sub": user.id, "username": user.username})
    return AuthResponse(
        message=message,
        token=token,
        user=UserPublic(id=user.id, username=user.username, email=user.email, role=user.role),
    )


@app.post("/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterRequest):
    if not payload.username or not payload.email or not payload.password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="All fields are required")
    if len(payload.password) < 6:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must be at least 6 characters",
        )

    user = User(
        username=payload.username.strip(),
        email=payload.email.strip().lower(),
        hashed_password=hash_password(payload.password),
    )
    try:
        await user_repository.create(user)
    except DuplicateUserError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(f"User registered successfully: {user.email}")
    return _auth_response(user, "User registered successfully")


@app.post("/auth/login", response_model=AuthResponse)
async def login(payload: LoginRequest):
    if not payload.email or not payload.password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email and password are required")

    user = await user_repository.get_by_email(payload.email.strip())
    if user is None or not verify_password(payload.password, user.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    logger.info(f"User logged in successfully: {user.email}")
    return _auth_response(user, "Login successful")


# --- Exception handlers ---

@app.exception_handler(InvalidStatusTransition)
async def invalid_transition_handler(request: Request, exc: InvalidStatusTransition):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Custom rate limit error handler"""
    retry_after = settings.rate_limit_window
    response = RateLimitResponse(
        message="Too many requests. Please try again later.",
        retry_after=retry_after,
        limit=settings.rate_limit_requests,
        window=settings.rate_limit_window,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=response.model_dump(mode="json", by_alias=True),
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""
    request_id = getattr(request.state, 'request_id', 'unknown')
    audit_logger.log_error(
        request_id=request_id,
        error_type=type(exc).__name__,
        error_message=str(exc),
        stack_trace=traceback.format_exc(),
    )
    return _internal_error(request_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "medhira.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development"
    )
