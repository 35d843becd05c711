"""
Shared fixtures: an in-memory provider and helpers for building accounts.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from api.email.accounts import AccountConfig
from api.email.errors import AuthError, BackendError
from api.email.providers.base import (
    EmailFolder,
    EmailMessage,
    EmailProvider,
    OutgoingEmail,
    ProviderType,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_message(message_id: str, minutes_ago: int = 0, unread: bool = True, **kwargs) -> EmailMessage:
    return EmailMessage(
        message_id=message_id,
        from_address=kwargs.pop('from_address', 'sender@example.com'),
        subject=kwargs.pop('subject', f"Subject {message_id}"),
        received_at=NOW - timedelta(minutes=minutes_ago),
        is_unread=unread,
        **kwargs
    )


def make_account(
    account_id: str,
    provider_type: ProviderType = ProviderType.IMAP,
    is_default: bool = False,
    **config
) -> AccountConfig:
    config.setdefault('name', account_id)
    return AccountConfig(
        account_id=account_id,
        name=f"{account_id.title()} Mail",
        provider_type=provider_type,
        is_default=is_default,
        config=config,
    )


class FakeProvider(EmailProvider):
    """In-memory provider. Behaviour is driven by config keys."""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.messages: Dict[str, EmailMessage] = {
            message.message_id: message for message in config.get('messages', [])
        }
        self.folders: List[EmailFolder] = config.get('folders', [EmailFolder('INBOX', 'Inbox', 0)])
        self.fail_on = set(config.get('fail_on', []))
        self.supports_delete = config.get('supports_delete', True)
        self.calls: List[tuple] = []
        self.sent: List[OutgoingEmail] = []
        self.disconnects = 0

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType(self.config.get('kind', 'imap'))

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append((operation,))
        if operation in self.fail_on:
            raise BackendError(f"{operation} exploded")

    async def connect(self) -> None:
        if self.config.get('connect_error') == 'auth':
            raise AuthError("bad credentials")
        if self.config.get('connect_error'):
            raise ConnectionRefusedError("connection refused")
        self._connected = True

    async def fetch_unread(self, limit: int = 10) -> List[EmailMessage]:
        self._maybe_fail('fetch_unread')
        unread = [m for m in self.messages.values() if m.is_unread]
        return sorted(unread, key=lambda m: m.received_at, reverse=True)[:limit]

    async def search(self, query: str, limit: int = 10, folder: Optional[str] = None) -> List[EmailMessage]:
        self._maybe_fail('search')
        found = [m for m in self.messages.values() if query.lower() in m.subject.lower()]
        return found[:limit]

    async def get_message(self, message_id: str) -> Optional[EmailMessage]:
        self._maybe_fail('get_message')
        self.calls.append(('get_message', message_id))
        return self.messages.get(message_id)

    async def mark_as_read(self, message_id: str) -> None:
        self._maybe_fail('mark_as_read')
        self.messages[message_id].is_unread = False

    async def mark_as_unread(self, message_id: str) -> None:
        self._maybe_fail('mark_as_unread')
        self.messages[message_id].is_unread = True

    async def send_message(self, envelope: OutgoingEmail) -> str:
        self._maybe_fail('send_message')
        self.sent.append(envelope)
        return f"sent-{len(self.sent)}"

    async def list_folders(self) -> List[EmailFolder]:
        self._maybe_fail('list_folders')
        return self.folders

    async def delete_message(self, message_id: str) -> None:
        if not self.supports_delete:
            return await super().delete_message(message_id)
        self._maybe_fail('delete_message')
        self.messages.pop(message_id, None)

    async def disconnect(self) -> None:
        self.disconnects += 1
        if self.config.get('disconnect_error'):
            raise RuntimeError("socket already closed")
        self._connected = False


@pytest.fixture
def providers() -> Dict[str, FakeProvider]:
    """Providers created by fake_factory, keyed by their 'name' config."""
    return {}


@pytest.fixture
def fake_factory(providers):
    def factory(provider_type: ProviderType, config: Dict[str, Any]) -> FakeProvider:
        provider = FakeProvider({'kind': ProviderType(provider_type).value, **config})
        providers[config['name']] = provider
        return provider
    return factory
