"""
IMAP mailbox client used by the sync planner and batch worker.

Read-only by construction: folders are selected read-only, messages are
fetched with BODY.PEEK[] so server \\Seen flags are untouched, and nothing
is ever stored back to the server.
"""
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional, Tuple
import logging
import time

from mailsync.core.config import get_settings
from mailsync.core.errors import AuthenticationError, MailboxConnectionError

logger = logging.getLogger(__name__)

# Folder flags (RFC 3501 / RFC 5258) for mailboxes that cannot be selected
UNSELECTABLE_FLAGS = {'\\noselect', '\\nonexistent'}

# Substrings of error messages worth retrying on connect
RETRYABLE_PATTERNS = (
    'timed out', 'timeout', 'connection reset', 'connection refused',
    'broken pipe', 'network', 'temporary', 'unavailable', 'eof',
)

FETCH_CHUNK_SIZE = 25


@dataclass
class IMAPConfig:
    """IMAP connection configuration"""
    host: str
    username: str
    password: str = field(repr=False)
    port: int = 993
    use_ssl: bool = True


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, LoginError):
        return False
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


class MailboxClient:
    """
    One authenticated IMAP session.

    Usage:
        with MailboxClient(config, timeout=30) as client:
            for mailbox in client.list_mailboxes():
                uids = client.list_message_ids(mailbox)
    """

    def __init__(self,
                 config: IMAPConfig,
                 timeout: int = 30,
                 max_retries: int = 3,
                 retry_delay: float = 5.0):
        """
        Args:
            config: IMAP connection configuration
            timeout: Socket timeout in seconds, bounds every server call
            max_retries: Connection attempts for transient network errors
            retry_delay: Base delay for exponential backoff between attempts
        """
        self.config = config
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.client: Optional[IMAPClient] = None

    @contextmanager
    def _server_call(self, action: str):
        """Map imapclient/socket failures onto the sync error taxonomy"""
        try:
            yield
        except LoginError as e:
            raise AuthenticationError(f"IMAP login rejected for {self.config.username}: {e}") from e
        except (IMAPClientError, OSError) as e:
            raise MailboxConnectionError(
                f"IMAP {action} failed on {self.config.host}:{self.config.port}: {e}"
            ) from e

    def connect(self) -> IMAPClient:
        """
        Open and authenticate the session, retrying transient network errors
        with exponential backoff.

        Raises:
            AuthenticationError: Login rejected (never retried)
            MailboxConnectionError: Network/TLS/protocol failure after all retries
        """
        if self.client is not None:
            return self.client

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            if attempt > 0:
                wait_time = self.retry_delay * (2 ** (attempt - 1))
                logger.info(f"Retry {attempt}/{self.max_retries - 1}: waiting {wait_time}s before reconnecting...")
                time.sleep(wait_time)

            logger.info(
                f"Connecting to IMAP server {self.config.host}:{self.config.port} "
                f"(timeout: {self.timeout}s, attempt {attempt + 1}/{self.max_retries})"
            )
            client = None
            try:
                client = IMAPClient(
                    host=self.config.host,
                    port=self.config.port,
                    ssl=self.config.use_ssl,
                    timeout=self.timeout,
                )
                client.login(self.config.username, self.config.password)
                logger.info(f"Logged in as {self.config.username}")
                self.client = client
                return client

            except (IMAPClientError, OSError) as e:
                last_error = e
                if client is not None:
                    self._shutdown(client)
                if not _is_retryable(e):
                    logger.error(f"Connection failed (non-retryable): {e}")
                    break
                logger.warning(f"Connection attempt {attempt + 1} failed (retryable): {e}")

        if isinstance(last_error, LoginError):
            raise AuthenticationError(f"IMAP login rejected for {self.config.username}: {last_error}") from last_error
        raise MailboxConnectionError(
            f"Failed to connect to {self.config.host}:{self.config.port}: {last_error}"
        ) from last_error

    def _require_client(self) -> IMAPClient:
        if self.client is None:
            self.connect()
        return self.client

    def list_mailboxes(self) -> List[str]:
        """Selectable mailbox paths in server order"""
        client = self._require_client()
        with self._server_call("LIST"):
            folders = client.list_folders()

        mailboxes = []
        for flags, _delimiter, name in folders:
            normalized = {
                (flag.decode('ascii', 'replace') if isinstance(flag, bytes) else str(flag)).lower()
                for flag in flags
            }
            if normalized & UNSELECTABLE_FLAGS:
                logger.debug(f"Skipping non-selectable mailbox {name}")
                continue
            if isinstance(name, bytes):
                name = name.decode('utf-8', 'replace')
            mailboxes.append(name)
        return mailboxes

    def list_message_ids(self, mailbox: str) -> List[int]:
        """All UIDs in a mailbox, ascending"""
        client = self._require_client()
        with self._server_call(f"SEARCH in {mailbox}"):
            client.select_folder(mailbox, readonly=True)
            uids = client.search(['ALL'])
        logger.debug(f"Found {len(uids)} message(s) in {mailbox}")
        return sorted(int(uid) for uid in uids)

    def fetch_raw(self, mailbox: str, uids: Iterable[int],
                  chunk_size: int = FETCH_CHUNK_SIZE) -> Iterator[Tuple[int, bytes]]:
        """
        Fetch raw RFC822 bytes without touching \\Seen.

        Yields (uid, raw_bytes) for every requested UID the server still has;
        UIDs that no longer exist are logged and skipped.
        """
        wanted = sorted(int(uid) for uid in uids)
        if not wanted:
            return

        client = self._require_client()
        with self._server_call(f"SELECT {mailbox}"):
            client.select_folder(mailbox, readonly=True)

        for start in range(0, len(wanted), chunk_size):
            chunk = wanted[start:start + chunk_size]
            with self._server_call(f"FETCH in {mailbox}"):
                fetch_data = client.fetch(chunk, ['BODY.PEEK[]'])

            for uid in chunk:
                msg_data = fetch_data.get(uid)
                if not msg_data:
                    logger.warning(f"UID {uid} no longer present in {mailbox}")
                    continue
                # BODY.PEEK[] comes back under b'BODY[]'
                raw_email = msg_data.get(b'BODY[]', msg_data.get(b'RFC822'))
                if raw_email is None:
                    logger.warning(f"No body returned for UID {uid} in {mailbox}")
                    continue
                yield uid, raw_email

    def _shutdown(self, client: IMAPClient):
        try:
            client.shutdown()
        except (IMAPClientError, OSError) as e:
            logger.debug(f"Error closing IMAP socket: {e}")

    def close(self):
        """Log out and release the connection; never raises"""
        if self.client is None:
            return
        client, self.client = self.client, None
        try:
            client.logout()
            logger.info("Disconnected from IMAP server")
        except (IMAPClientError, OSError) as e:
            logger.warning(f"Error during logout: {e}")
            self._shutdown(client)

    def __enter__(self):
        """Context manager support"""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


MailboxClientFactory = Callable[[IMAPConfig], MailboxClient]


def create_mailbox_client(config: IMAPConfig) -> MailboxClient:
    """Default factory: a client using the configured socket timeout"""
    return MailboxClient(config, timeout=get_settings().imap_timeout)


@contextmanager
def open_session(config: IMAPConfig, timeout: Optional[int] = None,
                 client_factory: Optional[MailboxClientFactory] = None) -> Iterator[MailboxClient]:
    """
    Connected session that is closed on every exit path.

    Args:
        config: IMAP connection configuration
        timeout: Socket timeout (defaults to settings.imap_timeout)
        client_factory: Alternative client constructor (tests)
    """
    if client_factory is not None:
        client = client_factory(config)
    else:
        client = MailboxClient(config, timeout=timeout or get_settings().imap_timeout)
    try:
        client.connect()
        yield client
    finally:
        client.close()
