from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from typing import Literal, Optional

Privacy = Literal["public", "private"]

class CamelModel(BaseModel):
    """Snake-case fields in Python, camelCase on the wire (the frontend's naming)."""
    class Config:
        alias_generator = to_camel
        populate_by_name = True

# --- Sidecar ---

class SidecarMetadata(CamelModel):
    file_name: str
    user_email: str
    file_size: Optional[int] = None
    token: Optional[str] = None
    upload_date: str
    update_date: str

# --- Requests ---

class CreateMetadataRequest(CamelModel):
    file_name: str
    user_email: str
    file_size: Optional[int] = None
    token: Optional[str] = None
    update_existing: bool = False

class RenameRequest(CamelModel):
    token: str
    new_file_name: str

class UserStatusRequest(CamelModel):
    user_email: str

class TokenRequest(CamelModel):
    file_name: str
    user_email: str

class PaymentStatusUpdate(CamelModel):
    reference_id: str
    status: str
    ste_api_key: Optional[str] = None

# --- Responses ---

class UploadResponse(CamelModel):
    message: str = "File uploaded successfully and encoding started"
    filename: str
    user_email: str
    storage_used: int
    storage_limit: int
    remaining_storage: int
    user_plan: str
    token: str
    privacy: Privacy
    views: int
    size: int

class DeletionDetails(CamelModel):
    storage_freed: int
    user_email: str

class DeletionResponse(CamelModel):
    message: str = "File and metadata deleted successfully"
    details: DeletionDetails

class RenameResponse(CamelModel):
    message: str = "File and metadata renamed successfully"
    new_file_name: str
    token: str

class FileAnalytics(CamelModel):
    views: int
    privacy: Privacy
    size: int

class UserPlanResponse(CamelModel):
    plan: str

class UserStatusResponse(CamelModel):
    plan: str
    storage_limit: int

class DownloadResponse(CamelModel):
    download_url: str

class TokenResponse(CamelModel):
    token: str

class MessageResponse(CamelModel):
    message: str
