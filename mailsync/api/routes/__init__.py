"""
API Routes
"""
from mailsync.api.routes import accounts, emails, sync

__all__ = ["accounts", "emails", "sync"]
