"""
Pydantic schemas for FastAPI endpoints
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field


class SyncJobResponse(BaseModel):
    """Sync job with progress counters"""
    id: str
    owner_id: str
    status: str
    uids_to_process: Dict[str, List[int]] = Field(default_factory=dict)
    total_count: int
    processed_count: int
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncJobListResponse(BaseModel):
    jobs: List[SyncJobResponse]


class ProcessBatchRequest(BaseModel):
    job_id: Optional[str] = Field(None, description="Job to continue; omitted claims the oldest pending job")


class ProcessBatchResponse(BaseModel):
    """Outcome of one batch worker invocation"""
    message: str
    job_id: Optional[str] = None
    processed: int = 0
    status: Optional[str] = None
    stored: int = 0
    duplicates: int = 0
    failed: int = 0
    remaining: int = 0


class RunAllResult(BaseModel):
    owner_id: str
    status: str = Field(..., description="job, up_to_date or error")
    job_id: Optional[str] = None
    job_status: Optional[str] = None
    total_count: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None


class RunAllResponse(BaseModel):
    message: str
    results: List[RunAllResult] = Field(default_factory=list)


class SaveAccountRequest(BaseModel):
    """Mailbox account settings; the password is encrypted before storage"""
    email_address: Optional[str] = None
    imap_username: Optional[str] = None
    imap_password: Optional[str] = Field(None, repr=False)
    imap_host: Optional[str] = Field(None, description="Overrides the server-wide IMAP_HOST")
    imap_port: Optional[int] = Field(None, ge=1, le=65535)


class AccountResponse(BaseModel):
    """Account without secrets"""
    email_address: str
    imap_username: str
    imap_host: Optional[str] = None
    imap_port: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ConfigStatusResponse(BaseModel):
    status: Dict[str, bool]


class AttachmentResponse(BaseModel):
    id: str
    file_name: str
    storage_path: str
    content_type: Optional[str] = None
    size: Optional[int] = None

    class Config:
        from_attributes = True


class EmailResponse(BaseModel):
    """Ingested message (list view, no bodies)"""
    id: str
    mailbox: str
    uid: int
    message_id: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    subject: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class EmailDetailResponse(EmailResponse):
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[AttachmentResponse] = Field(default_factory=list)


class EmailListResponse(BaseModel):
    emails: List[EmailResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    checks: Dict[str, Any] = Field(default_factory=dict)
