import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, Depends, UploadFile, File, Form, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.orm import Session

from . import accounts, config, crud, database, errors, models, schemas
from .coordinators import (
    DeletionCoordinator,
    UploadCoordinator,
    UploadRequest,
    delete_thumbnail,
    fetch_thumbnail,
    initiate_download,
    rename_file,
)
from .logging_config import setup_logging
from .sidecar import SidecarStore
from .storage_client import StorageServerClient
from .utils import RateLimiter


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.LOG_DIR, config.LOG_LEVEL)
    # Create tables
    models.Base.metadata.create_all(bind=database.engine)
    config.VIDEOS_DIR.mkdir(parents=True, exist_ok=True)
    app.state.storage_client = StorageServerClient(
        config.STORAGE_SERVER_URL,
        config.STORAGE_SERVER_API_KEY,
        timeout=config.STORAGE_SERVER_TIMEOUT,
    )
    logger.info("Backend server ready")
    try:
        yield
    finally:
        app.state.storage_client.close()
        database.engine.dispose()


app = FastAPI(title="MediaVault API", lifespan=lifespan)

# --- Error handling ---

def internal_error_response(request: Request, exc: Exception) -> JSONResponse:
    logger.opt(exception=exc).error("Internal Server Error on {} {}", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

@app.exception_handler(errors.MediaVaultError)
async def mediavault_error_handler(request: Request, exc: errors.MediaVaultError):
    return JSONResponse(status_code=exc.status_code, content=exc.payload())

@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    return internal_error_response(request, exc)

# --- Rate Limiting ---
upload_limiter = RateLimiter(config.UPLOAD_RATE_LIMIT_CALLS, config.UPLOAD_RATE_LIMIT_WINDOW)

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        # Unhandled errors are answered inside the CORS layer
        response = internal_error_response(request, exc)
    logger.info(
        "{} {} -> {} ({:.1f} ms)",
        request.method, request.url.path, response.status_code, (time.perf_counter() - start) * 1000,
    )
    return response

@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if request.method == "POST" and request.url.path == "/upload":
        client_ip = request.client.host if request.client else "unknown"
        if not upload_limiter.allow(client_ip):
            logger.warning("Rate limit exceeded for {}", client_ip)
            return JSONResponse({"error": "Too Many Requests"}, status_code=429)
    return await call_next(request)

# Added last so it wraps every response above, including 429 and 500
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Dependencies ---

def get_storage_client(request: Request) -> StorageServerClient:
    return request.app.state.storage_client

def get_media_root() -> Path:
    return config.VIDEOS_DIR

def get_sidecars(media_root: Path = Depends(get_media_root)) -> SidecarStore:
    return SidecarStore(media_root)

def require_allowed_origin(request: Request):
    """Requests without an Origin header are same-origin and allowed."""
    origin = request.headers.get("origin")
    if origin and origin not in config.CORS_ALLOWED:
        logger.warning("Blocked request from unauthorized origin: {}", origin)
        raise errors.Unauthorized()

checked = [Depends(require_allowed_origin)]

# --- Routes ---

@app.post("/upload", response_model=schemas.UploadResponse, dependencies=checked)
def upload_file(
    file: UploadFile = File(...),
    user_email: Optional[str] = Form(None, alias="userEmail"),
    privacy: schemas.Privacy = Form("public"),
    user_email_query: Optional[str] = Query(None, alias="userEmail"),
    db: Session = Depends(database.get_db),
    storage: StorageServerClient = Depends(get_storage_client),
    media_root: Path = Depends(get_media_root),
):
    owner = user_email or user_email_query
    if not owner:
        raise errors.BadRequest("User email is required")

    outcome = UploadCoordinator(db, storage, media_root).upload(
        UploadRequest(
            owner_email=owner,
            file_name=file.filename,
            source=file.file,
            declared_size=file.size,
            privacy=privacy,
        )
    )
    return schemas.UploadResponse(
        filename=outcome.file_name,
        user_email=outcome.owner_email,
        storage_used=outcome.storage_used,
        storage_limit=outcome.storage_limit,
        remaining_storage=outcome.remaining_storage,
        user_plan=outcome.plan.value,
        token=outcome.token,
        privacy=outcome.privacy,
        views=outcome.views,
        size=outcome.size,
    )

@app.get("/files", response_model=List[schemas.SidecarMetadata], dependencies=checked)
def list_files(
    user_email: Optional[str] = Query(None, alias="userEmail"),
    sidecars: SidecarStore = Depends(get_sidecars),
):
    """Lists the sidecar metadata of a user's files"""
    if not user_email:
        raise errors.BadRequest("User email is required")
    return sidecars.list(user_email)

@app.post("/create-metadata", response_model=schemas.MessageResponse, dependencies=checked)
def create_metadata(body: schemas.CreateMetadataRequest, sidecars: SidecarStore = Depends(get_sidecars)):
    sidecars.register(
        body.user_email,
        body.file_name,
        file_size=body.file_size,
        token=body.token,
        update_existing=body.update_existing,
    )
    return schemas.MessageResponse(message="Metadata file created/updated successfully")

@app.post("/api/update-file-name", response_model=schemas.RenameResponse, dependencies=checked)
def update_file_name(
    body: schemas.RenameRequest,
    db: Session = Depends(database.get_db),
    storage: StorageServerClient = Depends(get_storage_client),
    sidecars: SidecarStore = Depends(get_sidecars),
):
    outcome = rename_file(db, storage, sidecars, body.token, body.new_file_name)
    return schemas.RenameResponse(new_file_name=outcome.new_file_name, token=outcome.token)

@app.delete("/request/delete/{token}", response_model=schemas.DeletionResponse, dependencies=checked)
def delete_file(
    token: str,
    db: Session = Depends(database.get_db),
    storage: StorageServerClient = Depends(get_storage_client),
    sidecars: SidecarStore = Depends(get_sidecars),
):
    outcome = DeletionCoordinator(db, storage, sidecars).delete(token)
    return schemas.DeletionResponse(
        details=schemas.DeletionDetails(storage_freed=outcome.storage_freed, user_email=outcome.owner_email)
    )

@app.get("/api/thumbnail/{token}", dependencies=checked)
def get_thumbnail(
    token: str,
    db: Session = Depends(database.get_db),
    storage: StorageServerClient = Depends(get_storage_client),
):
    return Response(content=fetch_thumbnail(db, storage, token), media_type="image/jpeg")

@app.delete("/request/delete-thumbnail/{token}", response_model=schemas.MessageResponse, dependencies=checked)
def request_thumbnail_deletion(
    token: str,
    db: Session = Depends(database.get_db),
    storage: StorageServerClient = Depends(get_storage_client),
):
    delete_thumbnail(db, storage, token)
    return schemas.MessageResponse(message="Thumbnail deletion request sent successfully")

@app.post("/request-token", response_model=schemas.TokenResponse, dependencies=checked)
def request_token(body: schemas.TokenRequest, storage: StorageServerClient = Depends(get_storage_client)):
    token = storage.issue_token(body.file_name, body.user_email)
    if not token:
        logger.info("No token found for file: {}", body.file_name)
        raise errors.FileNotFound("No token found for this file")
    return schemas.TokenResponse(token=token)

@app.get("/api/initiate-download/{token}", response_model=schemas.DownloadResponse)
def download_file(
    token: str,
    db: Session = Depends(database.get_db),
    storage: StorageServerClient = Depends(get_storage_client),
):
    """Premium and Custom plans only"""
    return schemas.DownloadResponse(download_url=initiate_download(db, storage, token))

@app.get("/api/file-analytics/{token}", response_model=schemas.FileAnalytics, dependencies=checked)
def file_analytics(token: str, db: Session = Depends(database.get_db)):
    meta = crud.get_file_meta(db, token)
    if meta is None:
        raise errors.FileNotFound()
    return schemas.FileAnalytics(views=meta.views or 0, privacy=meta.privacy, size=meta.size)

@app.post("/check-user-status", response_model=schemas.UserStatusResponse, dependencies=checked)
def check_user_status(body: schemas.UserStatusRequest, db: Session = Depends(database.get_db)):
    plan, storage_limit = accounts.refresh_user_plan(db, body.user_email)
    return schemas.UserStatusResponse(plan=plan, storage_limit=storage_limit)

@app.get("/api/user-plan/{email}", response_model=schemas.UserPlanResponse, dependencies=checked)
def user_plan(email: str, db: Session = Depends(database.get_db)):
    return schemas.UserPlanResponse(plan=accounts.get_user_plan(db, email))

@app.post("/api/ste", response_model=schemas.MessageResponse)
def payment_status(body: schemas.PaymentStatusUpdate, request: Request, db: Session = Depends(database.get_db)):
    """Payment gateway status callback"""
    if not config.STE_KEY or body.ste_api_key != config.STE_KEY:
        client_ip = request.client.host if request.client else "unknown"
        logger.warning("Invalid STE API key used from IP: {}", client_ip)
        raise errors.Unauthorized("Unauthorized: Invalid STE API key")
    accounts.record_payment_status(db, body.reference_id, body.status)
    return schemas.MessageResponse(message="Payment status updated successfully")
