"""
Gmail email provider implementation.
Uses Google Gmail API for email access.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import os
from datetime import datetime, timezone
from email.message import EmailMessage as MIMEMessage
from email.utils import getaddresses, parsedate_to_datetime
from typing import List, Dict, Any, Optional, Callable

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .base import EmailProvider, EmailMessage, EmailFolder, OutgoingEmail, ProviderType
from ..errors import AuthError, BackendError, ProviderConnectionError

logger = logging.getLogger(__name__)


class GmailProvider(EmailProvider):
    """
    Gmail email provider using Google API.

    Unread state is the presence of the UNREAD system label.
    """

    SCOPES = ['https://www.googleapis.com/auth/gmail.modify']

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize Gmail provider.

        Config keys:
            tokenPath: Path to the authorized-user token JSON (refreshed in place)
            credentialsPath: Path to the OAuth2 client credentials JSON (informational)
        """
        super().__init__(config)
        self.token_path = config.get('tokenPath', './credentials/gmail-token.json')
        self.credentials_path = config.get('credentialsPath')
        self._service = None
        self._credentials: Optional[Credentials] = None
        # the service shares one httplib2 transport, which is not thread-safe
        self._lock = asyncio.Lock()

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GMAIL

    def _load_credentials(self) -> Credentials:
        """Load the stored token and refresh it when expired."""
        if not os.path.exists(self.token_path):
            raise ProviderConnectionError(
                f"Gmail token file not found: {self.token_path}. "
                "Authorize the account and store the token before starting."
            )

        try:
            creds = Credentials.from_authorized_user_file(self.token_path, self.SCOPES)
        except ValueError as e:
            raise AuthError(f"Invalid Gmail token file {self.token_path}: {e}") from e

        if not creds.valid:
            if not creds.refresh_token:
                raise AuthError("Gmail token is expired and has no refresh token")
            try:
                creds.refresh(Request())
            except RefreshError as e:
                raise AuthError(f"Gmail token refresh failed: {e}") from e

            with open(self.token_path, 'w') as token:
                token.write(creds.to_json())
            logger.info("Gmail token refreshed")

        return creds

    def _build_service(self) -> None:
        self._credentials = self._load_credentials()
        self._service = build('gmail', 'v1', credentials=self._credentials, cache_discovery=False)

    async def _run(self, func: Callable[[], Any]) -> Any:
        """Run a blocking Google API call in the executor, translating errors."""
        try:
            return await self._run_exclusive(self._lock, func)
        except HttpError as e:
            status = e.resp.status if e.resp is not None else None
            if status in (401, 403):
                raise AuthError(f"Gmail rejected the request ({status}): {e.reason}") from e
            raise BackendError(f"Gmail API error ({status}): {e.reason}") from e
        except RefreshError as e:
            raise AuthError(f"Gmail token refresh failed: {e}") from e

    @property
    def _api(self):
        self._require_connection()
        return self._service.users()

    @staticmethod
    def _decode_base64(data: str) -> str:
        """Decode base64url encoded data."""
        padding = 4 - len(data) % 4
        if padding != 4:
            data += '=' * padding
        return base64.urlsafe_b64decode(data).decode('utf-8', errors='replace')

    @staticmethod
    def _get_header(headers: List[Dict], name: str) -> str:
        """Get header value by name."""
        for header in headers:
            if header.get('name', '').lower() == name.lower():
                return header.get('value', '')
        return ""

    @staticmethod
    def _parse_address_list(header_value: str) -> List[str]:
        return [addr for _, addr in getaddresses([header_value]) if addr] if header_value else []

    def _parse_email(self, msg: Dict[str, Any]) -> EmailMessage:
        """Parse Gmail API message to EmailMessage."""
        payload = msg.get('payload', {})
        headers = payload.get('headers', [])

        body_text = ""
        body_html = None

        def extract_body(part: Dict) -> None:
            nonlocal body_text, body_html
            mime_type = part.get('mimeType', '')
            data = part.get('body', {}).get('data', '')
            if part.get('filename'):
                return
            if mime_type == 'text/plain' and data and not body_text:
                body_text = self._decode_base64(data)
            elif mime_type == 'text/html' and data and body_html is None:
                body_html = self._decode_base64(data)
            for subpart in part.get('parts', []):
                extract_body(subpart)

        extract_body(payload)

        def has_attachment(part: Dict) -> bool:
            if part.get('filename'):
                return True
            return any(has_attachment(subpart) for subpart in part.get('parts', []))

        # internalDate is epoch milliseconds; fall back to the Date header
        if msg.get('internalDate'):
            received_at = datetime.fromtimestamp(int(msg['internalDate']) / 1000, tz=timezone.utc)
        else:
            received_at = datetime.now(timezone.utc)
            date_header = self._get_header(headers, 'Date')
            if date_header:
                try:
                    received_at = parsedate_to_datetime(date_header)
                except (TypeError, ValueError):
                    logger.debug(f"Unparseable Date header on Gmail message {msg.get('id')}")

        labels = msg.get('labelIds', [])

        return EmailMessage(
            message_id=msg.get('id', ''),
            thread_id=msg.get('threadId'),
            from_address=self._get_header(headers, 'From'),
            to_addresses=self._parse_address_list(self._get_header(headers, 'To')),
            cc_addresses=self._parse_address_list(self._get_header(headers, 'Cc')),
            subject=self._get_header(headers, 'Subject'),
            snippet=msg.get('snippet', '')[:500],
            body_text=body_text,
            body_html=body_html,
            received_at=received_at,
            is_unread='UNREAD' in labels,
            labels=labels,
            has_attachments=has_attachment(payload),
        )

    async def connect(self) -> None:
        """Load credentials and build the Gmail API service."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._build_service)
        except (AuthError, ProviderConnectionError):
            raise
        except OSError as e:
            raise ProviderConnectionError(f"Could not initialise Gmail client: {e}") from e
        self._connected = True
        logger.info("Gmail API authenticated successfully")

    async def fetch_unread(self, limit: int = 10) -> List[EmailMessage]:
        return await self.search('is:unread', limit=limit)

    async def search(
        self,
        query: str,
        limit: int = 10,
        folder: Optional[str] = None
    ) -> List[EmailMessage]:
        """Search with Gmail query syntax; folder is a label id."""
        api = self._api
        params: Dict[str, Any] = {'userId': 'me', 'q': query, 'maxResults': limit}
        if folder:
            params['labelIds'] = [folder]

        results = await self._run(api.messages().list(**params).execute)

        emails = []
        for msg_ref in results.get('messages', []):
            email = await self.get_message(msg_ref['id'])
            if email:
                emails.append(email)
        return emails

    async def get_message(self, message_id: str) -> Optional[EmailMessage]:
        """Get full email content."""
        api = self._api
        try:
            msg = await self._run(
                api.messages().get(userId='me', id=message_id, format='full').execute
            )
        except BackendError as e:
            if isinstance(e.__cause__, HttpError) and e.__cause__.resp.status == 404:
                return None
            raise
        return self._parse_email(msg)

    async def _modify_labels(self, message_id: str, body: Dict[str, List[str]]) -> None:
        api = self._api
        await self._run(api.messages().modify(userId='me', id=message_id, body=body).execute)

    async def mark_as_read(self, message_id: str) -> None:
        """Mark email as read by removing UNREAD label."""
        await self._modify_labels(message_id, {'removeLabelIds': ['UNREAD']})

    async def mark_as_unread(self, message_id: str) -> None:
        await self._modify_labels(message_id, {'addLabelIds': ['UNREAD']})

    async def send_message(self, envelope: OutgoingEmail) -> str:
        api = self._api

        mime = MIMEMessage()
        mime['To'] = ', '.join(envelope.to)
        if envelope.cc:
            mime['Cc'] = ', '.join(envelope.cc)
        if envelope.bcc:
            mime['Bcc'] = ', '.join(envelope.bcc)
        if envelope.reply_to:
            mime['Reply-To'] = envelope.reply_to
        mime['Subject'] = envelope.subject
        mime.set_content(envelope.body, subtype='html' if envelope.is_html else 'plain')

        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode('ascii')
        result = await self._run(
            api.messages().send(userId='me', body={'raw': raw}).execute
        )
        logger.info(f"Sent Gmail message {result.get('id')}")
        return result['id']

    async def list_folders(self) -> List[EmailFolder]:
        """Get all Gmail labels (folders)."""
        api = self._api
        results = await self._run(api.labels().list(userId='me').execute)
        return [
            EmailFolder(
                folder_id=label['id'],
                name=label['name'],
                unread_count=label.get('messagesUnread')
            )
            for label in results.get('labels', [])
        ]

    async def delete_message(self, message_id: str) -> None:
        """Move the message to trash."""
        api = self._api
        await self._run(api.messages().trash(userId='me', id=message_id).execute)

    async def disconnect(self) -> None:
        """Disconnect from Gmail API."""
        if self._service is not None:
            try:
                self._service.close()
            except Exception as e:
                logger.debug(f"Error closing Gmail service: {e}")
        self._service = None
        self._credentials = None
        self._connected = False
