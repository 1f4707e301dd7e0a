"""Per-user sidecar metadata files.

``<root>/<email>/<file name>.json`` holds a display-oriented copy of a file's
metadata for fast listing. It is a cache: entries may be stale or missing, and
nothing here assumes the relational store agrees with it.
"""
from pathlib import Path
from typing import List, Optional

from loguru import logger
from pydantic import ValidationError

from .schemas import SidecarMetadata
from .utils import safe_component, utc_now_iso

SUFFIX = ".json"


class SidecarStore:
    def __init__(self, root: Path):
        self.root = Path(root)

    def user_dir(self, user_email: str) -> Path:
        return self.root / safe_component(user_email, "User email")

    def path_for(self, user_email: str, file_name: str) -> Path:
        return self.user_dir(user_email) / f"{safe_component(file_name, 'File name')}{SUFFIX}"

    def read(self, path: Path) -> SidecarMetadata:
        return SidecarMetadata.model_validate_json(path.read_text(encoding="utf-8"))

    def write(self, path: Path, metadata: SidecarMetadata) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(metadata.model_dump_json(by_alias=True), encoding="utf-8")

    def list(self, user_email: str) -> List[SidecarMetadata]:
        directory = self.user_dir(user_email)
        if not directory.is_dir():
            return []
        entries = []
        for path in sorted(directory.glob(f"*{SUFFIX}")):
            try:
                entries.append(self.read(path))
            except (OSError, ValueError, ValidationError) as exc:
                logger.warning("Skipping unreadable sidecar {}: {}", path, exc)
        return entries

    def find_by_token(self, user_email: str, token: str) -> Optional[Path]:
        directory = self.user_dir(user_email)
        if not directory.is_dir():
            return None
        for path in directory.glob(f"*{SUFFIX}"):
            try:
                if self.read(path).token == token:
                    return path
            except (OSError, ValueError, ValidationError) as exc:
                logger.warning("Error reading sidecar {}: {}", path, exc)
        return None

    def register(
        self,
        user_email: str,
        file_name: str,
        file_size: Optional[int] = None,
        token: Optional[str] = None,
        update_existing: bool = False,
    ) -> SidecarMetadata:
        """Create a sidecar, or replace the one carrying the same token when ``update_existing``.

        A replaced sidecar hands over its upload date and, when no new size is
        given, its size.
        """
        previous = None
        if update_existing and token:
            old_path = self.find_by_token(user_email, token)
            if old_path is not None:
                previous = self.read(old_path)
                old_path.unlink()

        now = utc_now_iso()
        metadata = SidecarMetadata(
            file_name=file_name,
            user_email=user_email,
            file_size=file_size if file_size is not None else (previous.file_size if previous else None),
            token=token,
            upload_date=previous.upload_date if previous else now,
            update_date=now,
        )
        self.write(self.path_for(user_email, file_name), metadata)
        return metadata

    def rename(self, user_email: str, old_name: str, new_name: str) -> Optional[SidecarMetadata]:
        """Move a sidecar to its new file name; returns None when there was none to move."""
        old_path = self.path_for(user_email, old_name)
        if not old_path.exists():
            return None
        try:
            metadata = self.read(old_path)
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Cannot rename unreadable sidecar {}: {}", old_path, exc)
            return None
        metadata.file_name = new_name
        metadata.update_date = utc_now_iso()
        self.write(self.path_for(user_email, new_name), metadata)
        if old_name != new_name:
            old_path.unlink()
        return metadata

    def remove(self, user_email: str, file_name: str) -> bool:
        path = self.path_for(user_email, file_name)
        if not path.exists():
            return False
        path.unlink()
        return True
