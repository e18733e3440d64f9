"""
Message normalization: raw RFC 822 bytes -> NormalizedMessage.

Header problems are tolerated field by field (an unreadable From or Date
becomes None); only input that cannot be treated as a message at all
raises ParseError.
"""
import email
from email import policy
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime, quote
from datetime import datetime, timezone
from bs4 import BeautifulSoup
from typing import List, Optional, Tuple
import logging
import re

from .models import NormalizedMessage, AttachmentPart
from .attachment_detection import get_attachment_parts, is_attachment_part
from mailsync.core.errors import ParseError

logger = logging.getLogger(__name__)

CHARSET_FALLBACKS = ('utf-8', 'latin-1', 'cp1252')

# Non-standard charset labels seen in the wild
CHARSET_ALIASES = {
    'x-unknown': 'utf-8',
    'unknown-8bit': 'utf-8',
    'x-euc-jp': 'euc-jp',
    'x-sjis': 'shift-jis',
    'x-gb2312': 'gb2312',
    'x-big5': 'big5',
}

# Characters that force a display name into a quoted-string
_NAME_SPECIALS = re.compile(r'[()<>\[\]:;@\\,."]')


class MessageNormalizer:
    """Parses raw messages into the stored representation"""

    def parse(self, raw_email: bytes) -> NormalizedMessage:
        """
        Normalize one raw message.

        Args:
            raw_email: Raw RFC822 bytes as fetched from the server

        Returns:
            NormalizedMessage

        Raises:
            ParseError: If the input is empty, not bytes, has no headers,
                or the parser fails unexpectedly
        """
        if not isinstance(raw_email, (bytes, bytearray)):
            raise ParseError(f"Expected raw message bytes, got {type(raw_email).__name__}")
        if not raw_email.strip():
            raise ParseError("Empty message")

        try:
            msg = email.message_from_bytes(bytes(raw_email), policy=policy.default)
        except Exception as e:
            raise ParseError(f"Failed to parse message: {e}") from e

        if not msg.keys():
            raise ParseError("Message has no headers")

        try:
            body_html, body_text = self._extract_body(msg)
            if body_text is None and body_html:
                body_text = self._html_to_text(body_html)

            return NormalizedMessage(
                message_id=self._header_text(msg, 'Message-ID'),
                from_address=self._format_addresses(msg, 'From'),
                to_address=self._format_addresses(msg, 'To'),
                subject=self._header_text(msg, 'Subject'),
                sent_at=self._parse_date(msg),
                body_text=body_text,
                body_html=body_html,
                attachments=self._extract_attachments(msg),
            )
        except ParseError:
            raise
        except Exception as e:
            logger.warning(f"Unexpected failure normalizing message: {e}")
            raise ParseError(f"Failed to normalize message: {e}") from e

    def _header_text(self, msg: Message, name: str) -> Optional[str]:
        """Decoded header value, or None when absent, blank or unreadable"""
        try:
            value = msg.get(name)
        except Exception as e:
            logger.debug(f"Unreadable {name} header: {e}")
            return None
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def _format_addresses(self, msg: Message, name: str) -> Optional[str]:
        """
        Format an address header as "Name <address>" entries, comma-joined.
        Entries without a display name are the bare address.
        """
        try:
            values = msg.get_all(name) or []
            formatted = []
            for display_name, address in getaddresses([str(value) for value in values]):
                if not address:
                    continue
                display_name = display_name.strip().strip('"').strip()
                if not display_name:
                    formatted.append(address)
                elif _NAME_SPECIALS.search(display_name):
                    formatted.append(f'"{quote(display_name)}" <{address}>')
                else:
                    formatted.append(f'{display_name} <{address}>')
        except Exception as e:
            logger.debug(f"Unparseable {name} header: {e}")
            return None
        return ', '.join(formatted) or None

    def _parse_date(self, msg: Message) -> Optional[datetime]:
        """Date header in UTC; None when missing or invalid"""
        try:
            raw_values = msg.get_all('Date')
        except Exception as e:
            logger.debug(f"Unreadable Date header: {e}")
            return None
        if not raw_values:
            return None

        date_str = str(raw_values[0]).strip()
        if not date_str:
            return None
        try:
            parsed = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, IndexError, OverflowError) as e:
            logger.debug(f"Invalid Date header '{date_str}': {e}")
            return None
        if parsed is None:
            return None

        if parsed.tzinfo is None:
            # RFC 5322 "-0000" and bare dates carry no zone; read them as UTC
            return parsed.replace(tzinfo=timezone.utc)
        try:
            return parsed.astimezone(timezone.utc)
        except (ValueError, OverflowError) as e:
            logger.debug(f"Date header '{date_str}' out of range: {e}")
            return None

    def _decode_payload(self, payload: bytes, charset: Optional[str]) -> str:
        """Decode a body part, falling back through common charsets"""
        candidates = []
        if charset:
            charset = charset.lower()
            candidates.append(CHARSET_ALIASES.get(charset, charset))
        candidates.extend(c for c in CHARSET_FALLBACKS if c not in candidates)

        for candidate in candidates:
            try:
                return payload.decode(candidate)
            except (LookupError, UnicodeDecodeError):
                continue
        return payload.decode('utf-8', errors='replace')

    def _extract_body(self, msg: Message) -> Tuple[Optional[str], Optional[str]]:
        """
        First text/html and first text/plain part that is not an attachment.

        Returns: (html_body, text_body)
        """
        html_body = None
        text_body = None

        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part is not msg and is_attachment_part(part):
                continue
            content_type = part.get_content_type()
            if content_type not in ('text/plain', 'text/html'):
                continue
            if content_type == 'text/plain' and text_body is not None:
                continue
            if content_type == 'text/html' and html_body is not None:
                continue

            payload = part.get_payload(decode=True)
            if not payload:
                continue
            decoded = self._decode_payload(payload, part.get_content_charset())
            if content_type == 'text/html':
                html_body = decoded
            else:
                text_body = decoded

        return html_body, text_body

    def _html_to_text(self, html: str) -> str:
        soup = BeautifulSoup(html, 'html.parser')
        for tag in soup(['script', 'style', 'head']):
            tag.decompose()
        text = soup.get_text(separator='\n')
        lines = [line.strip() for line in text.splitlines()]
        return re.sub(r'\n{3,}', '\n\n', '\n'.join(lines)).strip()

    def _extract_attachments(self, msg: Message) -> List[AttachmentPart]:
        attachments = []
        for part, filename, content_type in get_attachment_parts(msg):
            if part.get_content_maintype() == 'message' and part.is_multipart():
                # Attached message (message/rfc822): keep its raw bytes
                content = part.get_payload(0).as_bytes()
            else:
                content = part.get_payload(decode=True) or b''
            attachments.append(AttachmentPart(
                filename=filename.strip() if filename else None,
                content_type=content_type,
                content=content,
            ))
        return attachments
