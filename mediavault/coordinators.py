"""Upload, deletion and rename workflows.

Each workflow is a :class:`~mediavault.saga.Saga`: an ordered list of steps
spanning the local staging area, the relational store and the storage server.
There is no distributed transaction; every step states its compensation, and
most state "none". In particular nothing after a successful remote call ever
issues a compensating remote call.
"""
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Optional

from loguru import logger
from sqlalchemy.orm import Session

from . import config, crud, models
from .errors import (
    DeletionFailed,
    FileNameTaken,
    FileNotFound,
    Forbidden,
    MediaVaultError,
    QuotaExceeded,
    RenameFailed,
    StorageServerError,
    UnsupportedType,
    UploadFailed,
    UserNotFound,
)
from .quota import Plan, resolve_plan
from .saga import Saga, SagaStep
from .sidecar import SidecarStore
from .storage_client import StorageServerClient
from .utils import safe_component, stage_stream

STAGING_DIR = ".staging"


def storage_location(owner_email: str, file_name: str) -> str:
    """Ledger location of a file: ``<owner email>/<file name>``."""
    return str(PurePosixPath(owner_email) / file_name)


def location_file_name(location: str) -> str:
    return PurePosixPath(location).name


def staging_dir(media_root: Path) -> Path:
    return Path(media_root) / STAGING_DIR


def staging_path(media_root: Path, file_name: str) -> Path:
    """Transient copy of an upload, unique per request and outside every user directory."""
    return staging_dir(media_root) / f"{uuid.uuid4().hex}_{file_name}"


# --- Upload ---

@dataclass
class UploadRequest:
    owner_email: str
    file_name: str
    source: BinaryIO
    declared_size: Optional[int] = None
    privacy: str = "public"


@dataclass
class UploadOutcome:
    file_name: str
    owner_email: str
    token: str
    storage_used: int
    storage_limit: int
    remaining_storage: int
    plan: Plan
    privacy: str
    views: int
    size: int
    updated: bool


@dataclass
class _UploadState:
    request: UploadRequest
    owner_email: str = ""
    file_name: str = ""
    staged_path: Optional[Path] = None
    size: int = 0
    user: Optional[models.User] = None
    plan: Plan = Plan.FREE
    storage_limit: int = 0
    remote_token: Optional[str] = None
    token: Optional[str] = None
    previous_size: int = 0
    updated: bool = False
    meta: Optional[models.FileMeta] = None


class UploadCoordinator:
    """
    Admit, transfer and account for one uploaded file.

    Validation (owner, quota, type) happens after staging but before any
    remote or ledger mutation; the only side effect a rejected upload leaves
    behind is a repaired ``storage_limit``. Every failure purges the staged
    bytes.
    """

    def __init__(self, db: Session, storage: StorageServerClient, media_root: Path):
        self.db = db
        self.storage = storage
        self.media_root = Path(media_root)

    def upload(self, request: UploadRequest) -> UploadOutcome:
        state = _UploadState(request=request)
        Saga("upload", [
            SagaStep("stage", self._stage, compensate=self._purge),
            SagaStep("resolve_owner", self._resolve_owner),
            SagaStep("repair_limit", self._repair_limit),
            SagaStep("check_quota", self._check_quota),
            SagaStep("check_type", self._check_type),
            SagaStep("transfer", self._transfer),
            SagaStep("reconcile_ledger", self._reconcile_ledger),
            SagaStep("purge_stage", self._purge),
            SagaStep("charge_quota", self._charge_quota),
            SagaStep("upsert_meta", self._upsert_meta),
        ]).run(state)

        self.db.refresh(state.user)
        used = state.user.storage_used
        logger.info(
            "Uploaded {} for {} ({} bytes, token {}, {})",
            state.file_name, state.owner_email, state.size, state.token,
            "updated" if state.updated else "new",
        )
        return UploadOutcome(
            file_name=state.file_name,
            owner_email=state.owner_email,
            token=state.token,
            storage_used=used,
            storage_limit=state.storage_limit,
            remaining_storage=state.storage_limit - used,
            plan=state.plan,
            privacy=state.meta.privacy,
            views=state.meta.views or 0,
            size=state.size,
            updated=state.updated,
        )

    def _stage(self, state: _UploadState):
        state.owner_email = safe_component(state.request.owner_email, "User email")
        state.file_name = safe_component(state.request.file_name, "File name")
        state.staged_path = staging_path(self.media_root, state.file_name)
        state.size = stage_stream(state.request.source, state.staged_path)

    def _purge(self, state: _UploadState):
        if state.staged_path is not None:
            state.staged_path.unlink(missing_ok=True)

    def _resolve_owner(self, state: _UploadState):
        state.user = crud.get_user(self.db, state.owner_email)
        if state.user is None:
            raise UserNotFound()

    def _repair_limit(self, state: _UploadState):
        state.storage_limit = crud.ensure_storage_limit(self.db, state.user)
        state.plan = resolve_plan(state.user.plan)

    def _check_quota(self, state: _UploadState):
        remaining = state.storage_limit - state.user.storage_used
        attempted = state.request.declared_size
        if attempted is None:
            attempted = state.size
        if attempted > remaining:
            raise QuotaExceeded(remaining=remaining, attempted=attempted)

    def _check_type(self, state: _UploadState):
        if Path(state.file_name).suffix.lower() not in config.ALLOWED_EXTENSIONS:
            raise UnsupportedType()

    def _transfer(self, state: _UploadState):
        try:
            state.remote_token = self.storage.receive(
                state.staged_path, state.owner_email, state.file_name, state.request.privacy
            )
        except StorageServerError as exc:
            raise UploadFailed(details=exc.message) from exc

    def _reconcile_ledger(self, state: _UploadState):
        location = storage_location(state.owner_email, state.file_name)
        existing = crud.find_token_for_location(self.db, location, state.owner_email)
        if existing is not None:
            state.token = existing.token
            state.previous_size = existing.file_size or 0
            state.updated = True
            crud.update_token_entry(self.db, existing, file_size=state.size)
            return
        state.token = state.remote_token or self._fallback_token(state)
        crud.insert_token_entry(self.db, state.token, location, state.owner_email, state.size)

    def _fallback_token(self, state: _UploadState) -> str:
        try:
            token = self.storage.issue_token(state.file_name, state.owner_email)
        except StorageServerError as exc:
            logger.warning("Token request for {} failed, issuing a local token: {}", state.file_name, exc)
            token = None
        return token or uuid.uuid4().hex

    def _charge_quota(self, state: _UploadState):
        # Re-uploads over an existing entry only pay for the size difference
        delta = state.size - state.previous_size
        if delta > 0:
            crud.add_storage_used(self.db, state.owner_email, delta)
        elif delta < 0:
            crud.refund_storage(self.db, state.owner_email, -delta)

    def _upsert_meta(self, state: _UploadState):
        state.meta = crud.upsert_file_meta(self.db, state.token, state.size, state.request.privacy)


# --- Deletion ---

@dataclass
class DeletionOutcome:
    token: str
    owner_email: str
    storage_freed: int


@dataclass
class _DeletionState:
    token: str
    entry: Optional[models.FileToken] = None
    owner_email: str = ""
    file_name: str = ""
    size: int = 0
    removed: int = 0


class DeletionCoordinator:
    """
    Delete a stored file and refund its size.

    A failed remote delete leaves the ledger row and the quota untouched so the
    request can be retried; only the sidecar is removed beforehand.
    """

    def __init__(self, db: Session, storage: StorageServerClient, sidecars: SidecarStore):
        self.db = db
        self.storage = storage
        self.sidecars = sidecars

    def delete(self, token: str) -> DeletionOutcome:
        state = _DeletionState(token=token)
        Saga("delete", [
            SagaStep("resolve", self._resolve),
            SagaStep("remove_sidecar", self._remove_sidecar),
            SagaStep("remote_delete", self._remote_delete),
            SagaStep("remove_ledger", self._remove_ledger),
            SagaStep("refund", self._refund),
        ]).run(state)
        logger.info("Deleted {} for {}, freed {} bytes", state.token, state.owner_email, state.size)
        return DeletionOutcome(token=state.token, owner_email=state.owner_email, storage_freed=state.size)

    def _resolve(self, state: _DeletionState):
        state.entry = crud.get_token_entry(self.db, state.token)
        if state.entry is None:
            raise FileNotFound()
        state.owner_email = state.entry.user_email
        state.file_name = location_file_name(state.entry.file_path)
        state.size = state.entry.file_size or 0

    def _remove_sidecar(self, state: _DeletionState):
        try:
            self.sidecars.remove(state.owner_email, state.file_name)
        except (OSError, MediaVaultError) as exc:
            logger.warning("Could not remove sidecar for {}: {}", state.token, exc)

    def _remote_delete(self, state: _DeletionState):
        try:
            self.storage.delete_file(state.owner_email, token=state.token)
        except StorageServerError as exc:
            raise DeletionFailed(details=exc.message) from exc

    def _remove_ledger(self, state: _DeletionState):
        state.removed = crud.delete_token_entry(self.db, state.token)

    def _refund(self, state: _DeletionState):
        # Only the request that actually removed the ledger row refunds
        if not state.removed:
            logger.info("Ledger entry {} already removed by another request; no refund", state.token)
            state.size = 0
            return
        crud.refund_storage(self.db, state.owner_email, state.size)


# --- Rename ---

@dataclass
class RenameOutcome:
    token: str
    new_file_name: str


@dataclass
class _RenameState:
    token: str
    new_name: str
    entry: Optional[models.FileToken] = None
    owner_email: str = ""
    old_name: str = ""
    remote_token: Optional[str] = None


def rename_file(
    db: Session,
    storage: StorageServerClient,
    sidecars: SidecarStore,
    token: str,
    new_name: str,
) -> RenameOutcome:
    """
    Rename a file: sidecar first, then the storage server.

    If the storage server rejects the rename the sidecar keeps its new name;
    the local listing then diverges from the server. That divergence is not
    rolled back.
    """
    state = _RenameState(token=token, new_name=safe_component(new_name, "New file name"))

    def resolve(s: _RenameState):
        s.entry = crud.get_token_entry(db, s.token)
        if s.entry is None:
            raise FileNotFound()
        s.owner_email = s.entry.user_email
        s.old_name = location_file_name(s.entry.file_path)
        taken = crud.find_token_for_location(db, storage_location(s.owner_email, s.new_name), s.owner_email)
        if taken is not None and taken.token != s.token:
            raise FileNameTaken()

    def rewrite_sidecar(s: _RenameState):
        if sidecars.rename(s.owner_email, s.old_name, s.new_name) is None:
            logger.info("No sidecar for {} to rename", s.token)

    def remote_rename(s: _RenameState):
        try:
            s.remote_token = storage.rename_file(s.token, s.new_name, s.owner_email)
        except StorageServerError as exc:
            raise RenameFailed(details=exc.message) from exc

    def relocate_ledger(s: _RenameState):
        crud.update_token_entry(db, s.entry, file_path=storage_location(s.owner_email, s.new_name))

    Saga("rename", [
        SagaStep("resolve", resolve),
        SagaStep("rewrite_sidecar", rewrite_sidecar),
        SagaStep("remote_rename", remote_rename),
        SagaStep("relocate_ledger", relocate_ledger),
    ]).run(state)
    return RenameOutcome(token=state.remote_token or state.token, new_file_name=state.new_name)


# --- Download gating & thumbnails ---

def _ledger_entry(db: Session, token: str) -> models.FileToken:
    entry = crud.get_token_entry(db, token)
    if entry is None:
        raise FileNotFound()
    return entry


def initiate_download(db: Session, storage: StorageServerClient, token: str) -> str:
    """Download URL for Premium and Custom owners. Re-evaluated on every call."""
    entry = _ledger_entry(db, token)
    user = crud.get_user(db, entry.user_email)
    plan = resolve_plan(user.plan if user else None)
    if plan is Plan.FREE:
        logger.info("Free user {} attempted to download {}", entry.user_email, token)
        raise Forbidden("Download is only available for Premium users. Upgrade your plan to access this feature.")
    return storage.download_url(token)


def fetch_thumbnail(db: Session, storage: StorageServerClient, token: str) -> bytes:
    _ledger_entry(db, token)
    return storage.fetch_thumbnail(token)


def thumbnail_name(file_name: str) -> str:
    return f"{PurePosixPath(file_name).stem}_thumbnail.jpg"


def delete_thumbnail(db: Session, storage: StorageServerClient, token: str) -> str:
    entry = _ledger_entry(db, token)
    name = thumbnail_name(location_file_name(entry.file_path))
    try:
        storage.delete_file(entry.user_email, file_name=name)
    except StorageServerError as exc:
        raise DeletionFailed("Failed to process thumbnail deletion", details=exc.message) from exc
    return name
