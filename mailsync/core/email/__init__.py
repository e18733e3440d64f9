"""Email module: IMAP access and message normalization"""
from .models import NormalizedMessage, AttachmentPart
from .processor import MessageNormalizer
from .imap_monitor import IMAPConfig, MailboxClient, open_session

__all__ = [
    "NormalizedMessage",
    "AttachmentPart",
    "MessageNormalizer",
    "IMAPConfig",
    "MailboxClient",
    "open_session",
]
