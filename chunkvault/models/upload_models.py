# models/upload_models.py
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum

from chunkvault.chunker import DEFAULT_CHUNK_SIZE


class UploadStatus(str, Enum):
    INITIALIZING = "initializing"
    IN_PROGRESS = "in_progress"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTED = "aborted"


CONTENT_HASH_PATTERN = r"^[0-9a-f]{64}$"


class InitUploadRequest(BaseModel):
    name: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    hash: str = Field(..., pattern=CONTENT_HASH_PATTERN)
    total_parts: int = Field(..., ge=0)
    parent_id: str = ""
    chunk_size: int = Field(DEFAULT_CHUNK_SIZE, gt=0)


class FileMetadata(BaseModel):
    id: str
    name: str
    size: int
    content_hash: str
    parent_id: str
    created_at: datetime
    instant: bool = False


class InitUploadResponse(BaseModel):
    instant: bool
    session_id: Optional[str] = None
    credential: Optional[str] = None
    chunk_size: int
    total_parts: int
    file: Optional[FileMetadata] = None


class UploadSession(BaseModel):
    session_id: str
    filename: str
    content_hash: str
    file_size: int
    chunk_size: int
    total_parts: int
    parent_id: str
    status: UploadStatus
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    file_id: Optional[str] = None


class StoredObject(BaseModel):
    content_hash: str
    size: int
    key: str
    created_at: datetime


class SessionStatusResponse(BaseModel):
    session_id: str
    status: UploadStatus
    total_parts: int
    uploaded_parts: List[int]


class RefreshCredentialRequest(BaseModel):
    session_id: str
    hash: str = Field(..., pattern=CONTENT_HASH_PATTERN)


class CompleteUploadRequest(BaseModel):
    session_id: str
    total_parts: int = Field(..., ge=0)
    hash: str = Field(..., pattern=CONTENT_HASH_PATTERN)


class AbortUploadRequest(BaseModel):
    session_id: str
