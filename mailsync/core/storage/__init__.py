"""Attachment blob storage"""
from .blob_store import BlobStore, LocalBlobStore, attachment_key, safe_filename

__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "attachment_key",
    "safe_filename",
]
