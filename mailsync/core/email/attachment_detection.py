"""
Attachment detection shared by body extraction and attachment collection.

A part is an attachment when it is not a multipart container and it either
carries a filename or is explicitly marked `Content-Disposition: attachment`.
Inline parts without a filename (signatures, embedded body alternatives) are
message body, not attachments.
"""

from email.message import Message
from typing import List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


def is_attachment_part(part: Message) -> bool:
    """
    Determine if a MIME part is an attachment.

    Args:
        part: A part from msg.walk()

    Returns:
        True if this part should be stored as an attachment
    """
    if part.get_content_maintype() == 'multipart':
        return False

    if part.get_content_disposition() == 'attachment':
        return True

    try:
        filename = part.get_filename()
    except (ValueError, LookupError) as e:
        # Undecodable RFC 2231 filename parameter
        logger.debug(f"Unreadable filename on {part.get_content_type()} part: {e}")
        return False
    return bool(filename)


def get_attachment_parts(msg: Message) -> List[Tuple[Message, Optional[str], str]]:
    """
    Collect all attachment parts of a message.

    Returns:
        List of (part, filename, content_type) tuples in MIME order
    """
    attachments = []
    for part in msg.walk():
        if part is msg and not msg.is_multipart():
            # A single-part message is its own body
            continue
        if is_attachment_part(part):
            try:
                filename = part.get_filename()
            except (ValueError, LookupError):
                filename = None
            attachments.append((part, filename, part.get_content_type()))
    return attachments
