"""
Email models produced by the message normalizer.
"""
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List


class AttachmentPart(BaseModel):
    """Attachment carved out of a MIME message"""
    filename: Optional[str] = Field(None, description="Decoded filename (None for unnamed attachment parts)")
    content_type: str = Field("application/octet-stream", description="MIME type of the part")
    content: bytes = Field(b"", description="Decoded payload")

    @property
    def size(self) -> int:
        return len(self.content)


class NormalizedMessage(BaseModel):
    """Structured record for one raw RFC 822 message"""
    message_id: Optional[str] = Field(None, description="RFC822 Message-ID header")
    from_address: Optional[str] = Field(None, description='Sender formatted as "Name <address>"')
    to_address: Optional[str] = Field(None, description="Recipients, comma-joined")
    subject: Optional[str] = None
    sent_at: Optional[datetime] = Field(None, description="Date header normalized to UTC")
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[AttachmentPart] = Field(default_factory=list)

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0
