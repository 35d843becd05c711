"""
Microsoft 365 / Outlook email provider implementation.
Uses Microsoft Graph API for email access.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional

import httpx
import msal

from .base import EmailProvider, EmailMessage, EmailFolder, OutgoingEmail, ProviderType
from ..errors import AuthError, BackendError, ProviderConnectionError

logger = logging.getLogger(__name__)


class MicrosoftProvider(EmailProvider):
    """
    Microsoft 365 / Outlook email provider using Graph API.

    Two authentication modes are supported:

    * delegated: ``tokenPath`` points at a stored token
      (``access_token``, ``refresh_token``, ``expires_at`` in epoch ms) which is
      refreshed through MSAL and written back; requests address ``/me``.
    * application: ``userEmail`` is set and the client credentials flow is
      used; requests address ``/users/{userEmail}``.

    Unread state is ``not isRead`` as reported by Graph.
    """

    GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
    DELEGATED_SCOPES = [
        "https://graph.microsoft.com/Mail.ReadWrite",
        "https://graph.microsoft.com/Mail.Send",
    ]
    APPLICATION_SCOPES = ["https://graph.microsoft.com/.default"]
    MESSAGE_FIELDS = (
        "id,conversationId,subject,from,toRecipients,ccRecipients,bodyPreview,body,"
        "receivedDateTime,isRead,hasAttachments,categories"
    )
    # Refresh a little before the stored expiry
    EXPIRY_MARGIN_MS = 60_000

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize Microsoft provider.

        Config keys:
            clientId: Application (client) ID
            clientSecret: Client secret value
            tenantId: Azure AD tenant ID (default: common)
            tokenPath: Stored delegated token (delegated mode)
            userEmail: Mailbox to access (application mode)
        """
        super().__init__(config)
        self.client_id = config.get('clientId')
        self.client_secret = config.get('clientSecret')
        self.tenant_id = config.get('tenantId') or 'common'
        self.token_path = config.get('tokenPath')
        self.user_email = config.get('userEmail')
        self._token: Optional[Dict[str, Any]] = None
        self._access_token: Optional[str] = None
        self._msal_app: Optional[msal.ConfidentialClientApplication] = None
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.OUTLOOK

    @property
    def _mailbox(self) -> str:
        return f"/users/{self.user_email}" if self.user_email else "/me"

    def _get_msal_app(self) -> msal.ConfidentialClientApplication:
        """Get or create MSAL application instance."""
        if self._msal_app is None:
            authority = f"https://login.microsoftonline.com/{self.tenant_id}"
            self._msal_app = msal.ConfidentialClientApplication(
                self.client_id,
                authority=authority,
                client_credential=self.client_secret
            )
        return self._msal_app

    def _load_token_file(self) -> Dict[str, Any]:
        if not os.path.exists(self.token_path):
            raise ProviderConnectionError(f"Outlook token file not found: {self.token_path}")
        with open(self.token_path, 'r') as f:
            return json.load(f)

    def _save_token_file(self) -> None:
        with open(self.token_path, 'w') as f:
            json.dump(self._token, f, indent=2)

    @staticmethod
    def token_record(result: Dict[str, Any], refresh_token: Optional[str] = None) -> Dict[str, Any]:
        """Stored delegated token built from an MSAL result; expires_at is epoch ms."""
        return {
            'access_token': result['access_token'],
            'refresh_token': result.get('refresh_token') or refresh_token,
            'expires_at': int(time.time() * 1000 + int(result.get('expires_in', 3600)) * 1000),
        }

    def _acquire_token(self) -> str:
        """Blocking token acquisition. Runs in the executor."""
        app = self._get_msal_app()

        if self.user_email:
            result = app.acquire_token_silent(self.APPLICATION_SCOPES, account=None)
            if not result:
                result = app.acquire_token_for_client(scopes=self.APPLICATION_SCOPES)
        else:
            if self._token is None:
                self._token = self._load_token_file()
            now_ms = time.time() * 1000
            if self._access_token is None and now_ms < self._token.get('expires_at', 0) - self.EXPIRY_MARGIN_MS:
                return self._token['access_token']
            refresh_token = self._token.get('refresh_token')
            if not refresh_token:
                raise AuthError("Outlook token has no refresh token")
            result = app.acquire_token_by_refresh_token(refresh_token, scopes=self.DELEGATED_SCOPES)

        if "access_token" not in result:
            error = result.get("error_description", result.get("error", "Unknown error"))
            raise AuthError(f"Failed to acquire token: {error}")

        if not self.user_email:
            self._token = self.token_record(result, self._token.get('refresh_token'))
            self._save_token_file()
            logger.info("Outlook token refreshed")

        return result['access_token']

    async def _refresh_access_token(self) -> None:
        loop = asyncio.get_running_loop()
        self._access_token = await loop.run_in_executor(None, self._acquire_token)

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        json_data: Optional[Dict] = None,
        allow_not_found: bool = False
    ) -> Optional[Dict[str, Any]]:
        """Make authenticated request to Graph API."""
        self._require_connection()

        url = f"{self.GRAPH_BASE_URL}{endpoint}"

        async def send() -> httpx.Response:
            headers = {
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json"
            }
            return await self._http_client.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_data
            )

        try:
            response = await send()
            if response.status_code == 401:
                # Token might be expired, refresh and retry
                await self._refresh_access_token()
                response = await send()
        except httpx.HTTPError as e:
            raise BackendError(f"Graph request {method} {endpoint} failed: {e}") from e

        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code in (401, 403):
            raise AuthError(f"Graph rejected {method} {endpoint} ({response.status_code})")
        if response.is_error:
            raise BackendError(
                f"Graph request {method} {endpoint} failed ({response.status_code}): {response.text[:200]}"
            )
        return response.json() if response.content else {}

    @staticmethod
    def _address(recipient: Dict[str, Any]) -> str:
        return recipient.get('emailAddress', {}).get('address', '')

    def _parse_email(self, msg: Dict[str, Any]) -> EmailMessage:
        """Parse Graph API email message to EmailMessage."""
        received_str = msg.get('receivedDateTime', '')
        received_at = (
            datetime.fromisoformat(received_str.replace('Z', '+00:00'))
            if received_str else datetime.now(timezone.utc)
        )

        body = msg.get('body', {})
        body_content = body.get('content', '')
        if body.get('contentType', 'text').lower() == 'html':
            body_html = body_content
            body_text = msg.get('bodyPreview', '')
        else:
            body_html = None
            body_text = body_content

        return EmailMessage(
            message_id=msg.get('id', ''),
            thread_id=msg.get('conversationId'),
            from_address=self._address(msg.get('from') or {}),
            to_addresses=[self._address(r) for r in msg.get('toRecipients', [])],
            cc_addresses=[self._address(r) for r in msg.get('ccRecipients', [])],
            subject=msg.get('subject') or '',
            snippet=(msg.get('bodyPreview') or '')[:500],
            body_text=body_text,
            body_html=body_html,
            received_at=received_at,
            is_unread=not msg.get('isRead', False),
            labels=msg.get('categories', []),
            has_attachments=msg.get('hasAttachments', False),
        )

    async def connect(self) -> None:
        """Acquire a Graph access token and open the HTTP client."""
        if not self.user_email and not self.token_path:
            raise ProviderConnectionError("Outlook config needs either 'tokenPath' or 'userEmail'")
        try:
            await self._refresh_access_token()
        except (AuthError, ProviderConnectionError):
            raise
        except (OSError, ValueError) as e:
            raise ProviderConnectionError(f"Could not acquire Outlook token: {e}") from e
        self._http_client = httpx.AsyncClient(timeout=30.0)
        self._connected = True
        logger.info("Microsoft Graph API authenticated successfully")

    async def _list_messages(self, folder: str, limit: int, filter_query: Optional[str]) -> List[EmailMessage]:
        params: Dict[str, Any] = {"$top": limit, "$select": self.MESSAGE_FIELDS}
        if filter_query:
            params["$filter"] = filter_query
        else:
            params["$orderby"] = "receivedDateTime desc"

        result = await self._make_request(
            "GET",
            f"{self._mailbox}/mailFolders/{folder}/messages",
            params=params
        )
        return [self._parse_email(msg) for msg in result.get('value', [])]

    async def fetch_unread(self, limit: int = 10) -> List[EmailMessage]:
        emails = await self._list_messages('inbox', limit, 'isRead eq false')
        emails.sort(key=lambda e: e.received_at, reverse=True)
        return emails

    async def search(
        self,
        query: str,
        limit: int = 10,
        folder: Optional[str] = None
    ) -> List[EmailMessage]:
        """Search a folder; the query is an OData $filter expression."""
        return await self._list_messages(folder or 'inbox', limit, query or None)

    async def get_message(self, message_id: str) -> Optional[EmailMessage]:
        """Get full email content."""
        result = await self._make_request(
            "GET",
            f"{self._mailbox}/messages/{message_id}",
            params={"$select": self.MESSAGE_FIELDS},
            allow_not_found=True
        )
        if result is None:
            return None
        return self._parse_email(result)

    async def mark_as_read(self, message_id: str) -> None:
        await self._make_request(
            "PATCH",
            f"{self._mailbox}/messages/{message_id}",
            json_data={"isRead": True}
        )

    async def mark_as_unread(self, message_id: str) -> None:
        await self._make_request(
            "PATCH",
            f"{self._mailbox}/messages/{message_id}",
            json_data={"isRead": False}
        )

    async def send_message(self, envelope: OutgoingEmail) -> str:
        """Create a draft and send it, returning the draft's message id."""
        def recipients(addresses: List[str]) -> List[Dict[str, Any]]:
            return [{"emailAddress": {"address": address}} for address in addresses]

        message: Dict[str, Any] = {
            "subject": envelope.subject,
            "body": {
                "contentType": "HTML" if envelope.is_html else "Text",
                "content": envelope.body,
            },
            "toRecipients": recipients(envelope.to),
            "ccRecipients": recipients(envelope.cc),
            "bccRecipients": recipients(envelope.bcc),
        }
        if envelope.reply_to:
            message["replyTo"] = recipients([envelope.reply_to])

        draft = await self._make_request("POST", f"{self._mailbox}/messages", json_data=message)
        message_id = draft['id']
        await self._make_request("POST", f"{self._mailbox}/messages/{message_id}/send")
        logger.info(f"Sent Outlook message {message_id}")
        return message_id

    async def list_folders(self) -> List[EmailFolder]:
        """Get all mail folders."""
        result = await self._make_request(
            "GET",
            f"{self._mailbox}/mailFolders",
            params={"$top": 100, "$select": "id,displayName,unreadItemCount"}
        )
        return [
            EmailFolder(
                folder_id=folder.get('id', ''),
                name=folder.get('displayName', ''),
                unread_count=folder.get('unreadItemCount')
            )
            for folder in result.get('value', [])
        ]

    async def delete_message(self, message_id: str) -> None:
        await self._make_request("DELETE", f"{self._mailbox}/messages/{message_id}")

    async def move_message(self, message_id: str, folder_id: str) -> None:
        await self._make_request(
            "POST",
            f"{self._mailbox}/messages/{message_id}/move",
            json_data={"destinationId": folder_id}
        )

    async def disconnect(self) -> None:
        """Disconnect from Microsoft Graph API."""
        if self._http_client is not None:
            try:
                await self._http_client.aclose()
            except Exception as e:
                logger.debug(f"Error closing Graph HTTP client: {e}")
            self._http_client = None
        self._access_token = None
        self._connected = False
