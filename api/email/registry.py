"""
Account registry and multi-account orchestration.

Connects one provider per configured account, routes single-account
operations, and fans unified operations out to every connected account,
merging the results into one list ordered newest first.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

from .accounts import AccountConfig, load_accounts_file
from .errors import (
    AccountNotFound,
    BackendError,
    EmailError,
    NoDefaultAccount,
    OperationTimeout,
)
from .providers import create_provider
from .providers.base import (
    EmailFolder,
    EmailMessage,
    EmailProvider,
    OutgoingEmail,
    ProviderType,
    TaggedEmailMessage,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class ConnectedAccount:
    """An account whose provider connected successfully."""
    config: AccountConfig
    provider: EmailProvider

    @property
    def account_id(self) -> str:
        return self.config.account_id

    @property
    def name(self) -> str:
        return self.config.name

    def tag(self, message: EmailMessage) -> TaggedEmailMessage:
        return TaggedEmailMessage(
            message=message,
            account_id=self.config.account_id,
            account_name=self.config.name,
            provider_type=self.config.provider_type,
        )


def merge_messages(batches: List[List[TaggedEmailMessage]]) -> List[TaggedEmailMessage]:
    """Flatten per-account batches and order by timestamp, newest first.

    sorted() is stable, so equal timestamps keep account order.
    """
    merged = [message for batch in batches for message in batch]
    return sorted(merged, key=lambda message: message.received_at, reverse=True)


class AccountRegistry:
    """
    Owns the connected accounts and the default account.

    The account map is written only during load(); afterwards it is read-only,
    so concurrent operations need no locking.
    """

    def __init__(
        self,
        call_timeout: Optional[float] = 30.0,
        max_concurrency: Optional[int] = None,
        provider_factory: Callable[[ProviderType, Dict[str, Any]], EmailProvider] = create_provider
    ):
        """
        Args:
            call_timeout: Seconds allowed for each provider call (None disables)
            max_concurrency: Cap on simultaneous provider calls (None: unbounded)
            provider_factory: Builds a provider for an account's kind and config
        """
        self.call_timeout = call_timeout
        self.provider_factory = provider_factory
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None
        self._accounts: Dict[str, ConnectedAccount] = {}
        self._default_account_id: Optional[str] = None
        self._loaded = False
        self.connection_failures: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._accounts)

    def __contains__(self, account_id: str) -> bool:
        return account_id in self._accounts

    @property
    def default_account_id(self) -> Optional[str]:
        return self._default_account_id

    @property
    def accounts(self) -> List[ConnectedAccount]:
        return list(self._accounts.values())

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one provider call under the concurrency cap and timeout."""
        if self._semaphore is None:
            return await asyncio.wait_for(operation(), timeout=self.call_timeout)
        async with self._semaphore:
            return await asyncio.wait_for(operation(), timeout=self.call_timeout)

    # ============ Loading ============

    async def _connect_account(self, account: AccountConfig) -> Optional[ConnectedAccount]:
        try:
            provider = self.provider_factory(account.provider_type, account.config)
            await self._call(provider.connect)
        except asyncio.TimeoutError:
            self.connection_failures[account.account_id] = f"connect timed out after {self.call_timeout}s"
            logger.error(f"Failed to connect {account.name}: timed out after {self.call_timeout}s")
            return None
        except Exception as e:
            self.connection_failures[account.account_id] = str(e)
            logger.error(f"Failed to connect {account.name}: {e}")
            return None

        logger.info(f"Connected: {account.name} ({account.provider_type.value})")
        return ConnectedAccount(config=account, provider=provider)

    async def load(self, accounts: List[AccountConfig]) -> None:
        """
        Connect every account concurrently and resolve the default account.

        Accounts that fail to connect are logged and left out; they are not
        retried. Zero connected accounts is not an error here, callers check
        len(registry).
        """
        if self._loaded:
            raise RuntimeError("Account registry is already loaded")
        self._loaded = True

        results = await asyncio.gather(*(self._connect_account(account) for account in accounts))

        # Insert in manifest order so iteration and default selection are deterministic
        for connected in results:
            if connected is not None:
                self._accounts[connected.account_id] = connected

        marked = [account.account_id for account in accounts if account.is_default]
        if marked and marked[0] in self._accounts:
            self._default_account_id = marked[0]
        elif self._accounts:
            self._default_account_id = next(iter(self._accounts))
            if marked:
                logger.warning(
                    f"Default account '{marked[0]}' did not connect; "
                    f"using '{self._default_account_id}' instead"
                )

        logger.info(f"Loaded {len(self._accounts)} of {len(accounts)} accounts")

    async def load_from_file(self, path: str, environ: Optional[Mapping[str, str]] = None) -> None:
        """Resolve the manifest at path, then connect its accounts.

        ConfigValidationError propagates before any connection is attempted.
        """
        accounts = load_accounts_file(path, environ)
        await self.load(accounts)

    # ============ Lookup ============

    def list_accounts(self) -> List[Dict[str, Any]]:
        return [
            {
                'id': account_id,
                'name': account.name,
                'provider': account.config.provider_type.value,
                'isDefault': account_id == self._default_account_id,
            }
            for account_id, account in self._accounts.items()
        ]

    def get_account(self, account_id: Optional[str] = None) -> ConnectedAccount:
        """Resolve an explicit account id, or the default when omitted."""
        if account_id is None:
            if self._default_account_id is None:
                raise NoDefaultAccount("No account specified and no default set")
            account_id = self._default_account_id

        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFound(f"Account not found: {account_id}", account_id=account_id)
        return account

    # ============ Unified operations ============

    async def _fan_out(
        self,
        operation_name: str,
        operation: Callable[[ConnectedAccount], Awaitable[List[T]]]
    ) -> List[List[T]]:
        """Run operation on every account concurrently; failures contribute []."""

        async def run(account: ConnectedAccount) -> List[T]:
            try:
                return await self._call(lambda: operation(account))
            except asyncio.TimeoutError:
                logger.error(f"Timed out {operation_name} from {account.name} after {self.call_timeout}s")
            except Exception as e:
                logger.error(f"Error {operation_name} from {account.name}: {e}")
            return []

        return list(await asyncio.gather(*(run(account) for account in self._accounts.values())))

    async def fetch_all_unread(self, max_results_per_account: int = 10) -> List[TaggedEmailMessage]:
        """Fetch unread from ALL accounts, newest first."""
        async def fetch(account: ConnectedAccount) -> List[TaggedEmailMessage]:
            emails = await account.provider.fetch_unread(max_results_per_account)
            return [account.tag(email) for email in emails]

        return merge_messages(await self._fan_out('fetching unread', fetch))

    async def search_all(
        self,
        query: str,
        max_results: int = 10,
        folder: Optional[str] = None
    ) -> List[TaggedEmailMessage]:
        """Search across ALL accounts, newest first."""
        async def search(account: ConnectedAccount) -> List[TaggedEmailMessage]:
            emails = await account.provider.search(query, limit=max_results, folder=folder)
            return [account.tag(email) for email in emails]

        return merge_messages(await self._fan_out('searching', search))

    async def get_all_folders(self) -> List[Dict[str, Any]]:
        """Folders grouped per account; accounts that fail are omitted."""
        async def folders(account: ConnectedAccount) -> List[Dict[str, Any]]:
            result: List[EmailFolder] = await account.provider.list_folders()
            return [{
                'accountId': account.account_id,
                'accountName': account.name,
                'provider': account.config.provider_type.value,
                'folders': [folder.to_dict() for folder in result],
            }]

        return [group for groups in await self._fan_out('listing folders', folders) for group in groups]

    # ============ Single-account operations ============

    async def _run_single(
        self,
        account_id: Optional[str],
        operation_name: str,
        operation: Callable[[ConnectedAccount], Awaitable[T]]
    ) -> T:
        account = self.get_account(account_id)
        try:
            return await self._call(lambda: operation(account))
        except EmailError as e:
            raise e.with_context(account.account_id, operation_name)
        except asyncio.TimeoutError as e:
            raise OperationTimeout(
                f"no response within {self.call_timeout}s",
                account_id=account.account_id,
                operation=operation_name
            ) from e
        except Exception as e:
            raise BackendError(str(e), account_id=account.account_id, operation=operation_name) from e

    async def fetch_unread(
        self,
        account_id: Optional[str] = None,
        max_results: int = 10
    ) -> List[TaggedEmailMessage]:
        async def fetch(account: ConnectedAccount) -> List[TaggedEmailMessage]:
            return [account.tag(email) for email in await account.provider.fetch_unread(max_results)]

        return await self._run_single(account_id, 'fetch_unread', fetch)

    async def search(
        self,
        query: str,
        account_id: Optional[str] = None,
        max_results: int = 10,
        folder: Optional[str] = None
    ) -> List[TaggedEmailMessage]:
        async def search(account: ConnectedAccount) -> List[TaggedEmailMessage]:
            emails = await account.provider.search(query, limit=max_results, folder=folder)
            return [account.tag(email) for email in emails]

        return await self._run_single(account_id, 'search', search)

    async def get_message(self, account_id: Optional[str], message_id: str) -> Optional[TaggedEmailMessage]:
        """Fetch one message from one account; None when it does not exist."""
        async def get(account: ConnectedAccount) -> Optional[TaggedEmailMessage]:
            email = await account.provider.get_message(message_id)
            return account.tag(email) if email else None

        return await self._run_single(account_id, 'get_message', get)

    async def mark_as_read(self, account_id: Optional[str], message_id: str) -> None:
        await self._run_single(account_id, 'mark_as_read', lambda a: a.provider.mark_as_read(message_id))

    async def mark_as_unread(self, account_id: Optional[str], message_id: str) -> None:
        await self._run_single(account_id, 'mark_as_unread', lambda a: a.provider.mark_as_unread(message_id))

    async def delete_message(self, account_id: Optional[str], message_id: str) -> None:
        await self._run_single(account_id, 'delete_message', lambda a: a.provider.delete_message(message_id))

    async def move_message(self, account_id: Optional[str], message_id: str, folder_id: str) -> None:
        await self._run_single(
            account_id, 'move_message', lambda a: a.provider.move_message(message_id, folder_id)
        )

    async def send_message(self, envelope: OutgoingEmail, account_id: Optional[str] = None) -> str:
        """Send from account_id, or from the default account."""
        return await self._run_single(account_id, 'send_message', lambda a: a.provider.send_message(envelope))

    # ============ Teardown ============

    async def disconnect(self) -> None:
        """Disconnect every account in turn; one failure does not stop the rest."""
        for account_id, account in self._accounts.items():
            try:
                await account.provider.disconnect()
            except Exception as e:
                logger.error(f"Error disconnecting {account_id}: {e}")
        logger.info(f"Disconnected {len(self._accounts)} accounts")
