"""
Abstract base class for email providers.
Defines the interface that all email providers must implement.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..errors import ProviderConnectionError, UnsupportedOperation

logger = logging.getLogger(__name__)


class ProviderType(str, Enum):
    """Supported email provider types."""
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    IMAP = "imap"


def ensure_aware(value: datetime) -> datetime:
    """Return a timezone-aware datetime, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _log_abandoned_result(future: asyncio.Future) -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.warning(f"Abandoned provider call failed: {future.exception()}")


@dataclass
class EmailMessage:
    """Standardized email message structure across all providers."""
    message_id: str
    from_address: str
    subject: str
    received_at: datetime

    # Optional fields
    thread_id: Optional[str] = None
    to_addresses: List[str] = field(default_factory=list)
    cc_addresses: List[str] = field(default_factory=list)
    snippet: str = ""
    body_text: str = ""
    body_html: Optional[str] = None
    is_unread: bool = False
    labels: List[str] = field(default_factory=list)
    has_attachments: bool = False

    def __post_init__(self):
        self.received_at = ensure_aware(self.received_at)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON shape returned to callers."""
        return {
            'id': self.message_id,
            'threadId': self.thread_id,
            'from': self.from_address,
            'to': self.to_addresses,
            'cc': self.cc_addresses,
            'subject': self.subject,
            'snippet': self.snippet,
            'body': self.body_text,
            'bodyHtml': self.body_html,
            'date': self.received_at.isoformat(),
            'isUnread': self.is_unread,
            'labels': self.labels,
            'hasAttachments': self.has_attachments,
        }

    def to_summary(self) -> Dict[str, Any]:
        """Compact form used for list results."""
        return {
            'id': self.message_id,
            'from': self.from_address,
            'subject': self.subject,
            'snippet': self.snippet,
            'date': self.received_at.isoformat(),
            'isUnread': self.is_unread,
            'hasAttachments': self.has_attachments,
        }


@dataclass
class TaggedEmailMessage:
    """An EmailMessage annotated with the account it came from."""
    message: EmailMessage
    account_id: str
    account_name: str
    provider_type: ProviderType

    @property
    def message_id(self) -> str:
        return self.message.message_id

    @property
    def received_at(self) -> datetime:
        return self.message.received_at

    def _tags(self) -> Dict[str, Any]:
        return {
            'accountId': self.account_id,
            'accountName': self.account_name,
            'provider': self.provider_type.value,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**self._tags(), **self.message.to_dict()}

    def to_summary(self) -> Dict[str, Any]:
        return {**self._tags(), **self.message.to_summary()}


@dataclass
class EmailFolder:
    """Represents an email folder/label."""
    folder_id: str
    name: str
    unread_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.folder_id,
            'name': self.name,
            'unreadCount': self.unread_count,
        }


@dataclass
class OutgoingEmail:
    """Envelope for a message to be sent."""
    to: List[str]
    subject: str
    body: str
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    is_html: bool = False
    reply_to: Optional[str] = None

    @property
    def all_recipients(self) -> List[str]:
        return [*self.to, *self.cc, *self.bcc]


class EmailProvider(ABC):
    """
    Abstract base class for email providers.

    All email providers (Gmail, Outlook, IMAP) must implement this interface.
    connect() must succeed before any other operation is used; the adapter then
    stays usable until disconnect() or until an operation raises AuthError.
    Token refresh and other backend-specific retries happen inside the adapter.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the email provider.

        Args:
            config: Provider-specific configuration dictionary
        """
        self.config = config
        self._connected = False

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Return the provider type identifier."""
        pass

    @property
    def is_connected(self) -> bool:
        """Check if currently connected."""
        return self._connected

    def _require_connection(self) -> None:
        if not self._connected:
            raise ProviderConnectionError(f"Not connected to {self.provider_type.value}")

    async def _run_exclusive(self, lock: asyncio.Lock, func: Callable[[], Any]) -> Any:
        """
        Run a blocking client call in the default executor while holding lock.

        The lock is released when the worker thread returns, not when the caller
        stops waiting, so a call abandoned by a timeout never overlaps the next
        one on the same connection.
        """
        loop = asyncio.get_running_loop()
        await lock.acquire()
        try:
            future = loop.run_in_executor(None, func)
        except BaseException:
            lock.release()
            raise
        future.add_done_callback(lambda _: lock.release())

        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            logger.warning(
                f"{self.provider_type.value} call abandoned while still running; "
                "connection stays busy until it returns"
            )
            future.add_done_callback(_log_abandoned_result)
            raise

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish the session or token state.

        Raises:
            AuthError: credentials were rejected
            ProviderConnectionError: the backend could not be reached
        """
        pass

    @abstractmethod
    async def fetch_unread(self, limit: int = 10) -> List[EmailMessage]:
        """
        Fetch unread messages, newest first.

        Args:
            limit: Maximum number of messages to return
        """
        pass

    @abstractmethod
    async def search(
        self,
        query: str,
        limit: int = 10,
        folder: Optional[str] = None
    ) -> List[EmailMessage]:
        """
        Search messages using the provider's own query syntax.

        Args:
            query: Provider-specific query, passed through unchanged
            limit: Maximum number of messages to return
            folder: Folder/label to search in (provider default when omitted)
        """
        pass

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[EmailMessage]:
        """
        Get full email content.

        Returns:
            EmailMessage with full content, or None if not found
        """
        pass

    @abstractmethod
    async def mark_as_read(self, message_id: str) -> None:
        """Mark an email as read. Idempotent."""
        pass

    @abstractmethod
    async def mark_as_unread(self, message_id: str) -> None:
        """Mark an email as unread. Idempotent."""
        pass

    @abstractmethod
    async def send_message(self, envelope: OutgoingEmail) -> str:
        """
        Send an email.

        Returns:
            The backend's identifier for the sent message
        """
        pass

    @abstractmethod
    async def list_folders(self) -> List[EmailFolder]:
        """Get all available folders/labels."""
        pass

    async def delete_message(self, message_id: str) -> None:
        """Delete (or trash) an email. Providers can override."""
        raise UnsupportedOperation(f"Delete not supported by the {self.provider_type.value} provider")

    async def move_message(self, message_id: str, folder_id: str) -> None:
        """Move an email to another folder. Providers can override."""
        raise UnsupportedOperation(f"Move not supported by the {self.provider_type.value} provider")

    async def disconnect(self) -> None:
        """Disconnect from the email provider. Must not raise."""
        self._connected = False
