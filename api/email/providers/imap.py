"""
IMAP email provider implementation.
Reads over IMAP (SSL/TLS or plain) and sends over SMTP.
"""

import asyncio
import email
import imaplib
import logging
import re
import smtplib
import socket
import time
from datetime import datetime, timezone
from email.header import decode_header
from email.message import EmailMessage as MIMEMessage
from email.utils import parseaddr, getaddresses, parsedate_to_datetime, make_msgid, formatdate
from typing import List, Dict, Any, Optional, Tuple, Callable

from .base import EmailProvider, EmailMessage, EmailFolder, OutgoingEmail, ProviderType
from ..errors import AuthError, BackendError, ProviderConnectionError

logger = logging.getLogger(__name__)

DEFAULT_MAILBOX = 'INBOX'

# (\HasNoChildren) "/" "INBOX/Sub folder"
LIST_RESPONSE = re.compile(r'\((?P<flags>[^)]*)\) (?P<delimiter>"[^"]*"|NIL) (?P<name>.+)')

# from:, to:, subject: and is: terms in a search query
SEARCH_TERM = re.compile(r'(?:^|\s)(from|to|subject|is):')
SEARCH_FLAGS = {'unread': 'UNSEEN', 'read': 'SEEN'}


def make_message_id(mailbox: str, uid: str) -> str:
    """Message ids are UIDs, qualified with their mailbox outside INBOX."""
    if mailbox == DEFAULT_MAILBOX:
        return uid
    return f"{mailbox}:{uid}"


def split_message_id(message_id: str) -> Tuple[str, str]:
    mailbox, _, uid = message_id.rpartition(':')
    if not uid.isdigit():
        raise BackendError(f"Invalid IMAP message id: {message_id}")
    return (mailbox or DEFAULT_MAILBOX), uid


def quote(value: str) -> str:
    """Quote a string argument for an IMAP command."""
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


def unquote(value: str) -> str:
    """Undo IMAP quoting on a string returned by the server."""
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return re.sub(r'\\(.)', r'\1', value[1:-1])
    return value


class IMAPProvider(EmailProvider):
    """
    IMAP email provider for generic email servers.

    Unread state is the absence of the \\Seen flag.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize IMAP provider.

        Config keys:
            host: IMAP server hostname
            port: IMAP port (default 993)
            user: Login name, also used as the sender address
            password: Login password
            tls: Use an SSL/TLS IMAP connection (default True)
            smtpHost: SMTP server hostname (defaults to host)
            smtpPort: SMTP port (default 587)
            smtpSecure: Implicit TLS for SMTP; STARTTLS otherwise (default False)
        """
        super().__init__(config)
        self.host = config.get('host')
        self.port = int(config.get('port') or 993)
        self.user = config.get('user')
        self.password = config.get('password')
        self.use_tls = config.get('tls', True)
        self.smtp_host = config.get('smtpHost') or self.host
        self.smtp_port = int(config.get('smtpPort') or 587)
        self.smtp_secure = config.get('smtpSecure', False)
        self._connection: Optional[imaplib.IMAP4] = None
        # imaplib connections are not safe for interleaved commands; held until
        # the worker thread returns
        self._lock = asyncio.Lock()

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.IMAP

    def _decode_header_value(self, value: str) -> str:
        """Decode email header value."""
        if not value:
            return ""
        decoded_parts = decode_header(value)
        result = []
        for content, charset in decoded_parts:
            if isinstance(content, bytes):
                try:
                    result.append(content.decode(charset or 'utf-8', errors='replace'))
                except (LookupError, UnicodeDecodeError):
                    result.append(content.decode('utf-8', errors='replace'))
            else:
                result.append(content)
        return ''.join(result)

    def _parse_address_list(self, header_value: str) -> List[str]:
        """Parse multiple email addresses from header."""
        if not header_value:
            return []
        return [addr for _, addr in getaddresses([header_value]) if addr]

    def _get_body_content(self, msg: email.message.Message) -> Tuple[str, str, Optional[str]]:
        """Extract body content from email message. Returns (preview, text, html)."""
        body_text = ""
        body_html = None

        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.is_multipart():
                continue
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue

            payload = part.get_payload(decode=True)
            if not payload:
                continue
            charset = part.get_content_charset() or 'utf-8'
            try:
                text = payload.decode(charset, errors='replace')
            except LookupError:
                text = payload.decode('utf-8', errors='replace')

            if content_type == "text/plain" and not body_text:
                body_text = text
            elif content_type == "text/html" and body_html is None:
                body_html = text

        # Generate preview from text or stripped HTML
        preview = ' '.join(body_text.split())[:200]
        if not preview and body_html:
            preview = ' '.join(re.sub(r'<[^>]+>', ' ', body_html).split())[:200]

        return preview, body_text, body_html

    def _has_attachments(self, msg: email.message.Message) -> bool:
        for part in msg.walk():
            if "attachment" in str(part.get("Content-Disposition", "")) or part.get_filename():
                return True
        return False

    def _parse_message(
        self,
        message_id: str,
        raw_email: bytes,
        flags: Tuple[bytes, ...],
        internal_date: Optional[datetime] = None
    ) -> EmailMessage:
        """Parse raw email data into EmailMessage."""
        msg = email.message_from_bytes(raw_email)

        from_name, from_address = parseaddr(msg.get('From', ''))
        from_name = self._decode_header_value(from_name)

        received_at = internal_date or datetime.now(timezone.utc)
        date_str = msg.get('Date')
        if date_str:
            try:
                received_at = parsedate_to_datetime(date_str)
            except (TypeError, ValueError):
                logger.debug(f"Unparseable Date header on IMAP message {message_id}")

        preview, body_text, body_html = self._get_body_content(msg)

        return EmailMessage(
            message_id=message_id,
            from_address=f"{from_name} <{from_address}>" if from_name else from_address,
            to_addresses=self._parse_address_list(msg.get('To', '')),
            cc_addresses=self._parse_address_list(msg.get('Cc', '')),
            subject=self._decode_header_value(msg.get('Subject', '')),
            snippet=preview,
            body_text=body_text,
            body_html=body_html,
            received_at=received_at,
            is_unread=b'\\Seen' not in flags,
            labels=[flag.decode(errors='replace') for flag in flags],
            has_attachments=self._has_attachments(msg),
        )

    def _connect(self) -> None:
        """Synchronous connection method."""
        try:
            if self.use_tls:
                connection = imaplib.IMAP4_SSL(self.host, self.port)
            else:
                connection = imaplib.IMAP4(self.host, self.port)
        except (OSError, imaplib.IMAP4.error) as e:
            raise ProviderConnectionError(f"Could not reach IMAP server {self.host}:{self.port}: {e}") from e

        try:
            connection.login(self.user, self.password)
        except imaplib.IMAP4.error as e:
            try:
                connection.logout()
            except Exception:
                logger.debug("IMAP logout after failed login also failed")
            raise AuthError(f"IMAP login rejected for {self.user}: {e}") from e

        self._connection = connection

    async def _run(self, func: Callable[[], Any]) -> Any:
        """Run blocking IMAP work in the executor, one command sequence at a time."""
        self._require_connection()

        def command() -> Any:
            # an earlier sequence may have dropped the connection while this one queued
            self._require_connection()
            try:
                return func()
            except imaplib.IMAP4.abort as e:
                self._connected = False
                raise ProviderConnectionError(f"IMAP connection lost: {e}") from e
            except (imaplib.IMAP4.error, OSError) as e:
                raise BackendError(f"IMAP command failed: {e}") from e

        return await self._run_exclusive(self._lock, command)

    async def connect(self) -> None:
        """Connect and authenticate to IMAP server."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._connect)
        self._connected = True
        logger.info(f"IMAP authenticated to {self.host}")

    def _select(self, mailbox: str, readonly: bool = True) -> None:
        status, data = self._connection.select(quote(mailbox), readonly=readonly)
        if status != 'OK':
            raise BackendError(f"Could not select mailbox {mailbox}: {data}")

    def _uid_search(self, criteria: List[str]) -> List[str]:
        status, data = self._connection.uid('SEARCH', None, *criteria)
        if status != 'OK':
            raise BackendError(f"IMAP search failed: {data}")
        return [uid.decode() for uid in data[0].split()] if data and data[0] else []

    def _fetch_uid(self, mailbox: str, uid: str) -> Optional[EmailMessage]:
        status, data = self._connection.uid('FETCH', uid, '(UID FLAGS INTERNALDATE BODY.PEEK[])')
        if status != 'OK':
            raise BackendError(f"IMAP fetch failed for UID {uid}: {data}")

        for item in data or []:
            if isinstance(item, tuple):
                meta, raw_email = item
                flags = imaplib.ParseFlags(meta)
                internal = imaplib.Internaldate2tuple(meta)
                internal_date = (
                    datetime.fromtimestamp(time.mktime(internal), tz=timezone.utc)
                    if internal else None
                )
                return self._parse_message(make_message_id(mailbox, uid), raw_email, flags, internal_date)
        return None

    def _fetch_newest(self, mailbox: str, criteria: List[str], limit: int) -> List[EmailMessage]:
        self._select(mailbox)
        uids = self._uid_search(criteria)
        # UIDs ascend with arrival, so the newest are at the end
        selected = list(reversed(uids[-limit:])) if limit > 0 else []
        emails = []
        for uid in selected:
            email_msg = self._fetch_uid(mailbox, uid)
            if email_msg:
                emails.append(email_msg)
        return emails

    @staticmethod
    def _search_criteria(query: str) -> List[str]:
        """
        Translate a simple query into IMAP SEARCH criteria.

        from:, to:, subject: and is:unread / is:read terms are ANDed together.
        from: and to: take one word, subject: runs up to the next term, and
        whatever is left over is matched as TEXT.
        """
        query = (query or '').strip()
        if query == 'UNSEEN':
            return ['UNSEEN']

        parts = SEARCH_TERM.split(query)
        criteria = []
        free_text = [parts[0].strip()]
        for key, value in zip(parts[1::2], parts[2::2]):
            value = value.strip()
            if key == 'subject':
                if value:
                    criteria += ['SUBJECT', quote(value)]
                continue

            word, _, rest = value.partition(' ')
            free_text.append(rest.strip())
            if key == 'is':
                if word in SEARCH_FLAGS:
                    criteria.append(SEARCH_FLAGS[word])
                else:
                    free_text.append(f"is:{word}")
            elif word:
                criteria += [key.upper(), quote(word)]

        text = ' '.join(t for t in free_text if t)
        if text:
            criteria += ['TEXT', quote(text)]
        return criteria or ['ALL']

    async def fetch_unread(self, limit: int = 10) -> List[EmailMessage]:
        return await self._run(lambda: self._fetch_newest(DEFAULT_MAILBOX, ['UNSEEN'], limit))

    async def search(
        self,
        query: str,
        limit: int = 10,
        folder: Optional[str] = None
    ) -> List[EmailMessage]:
        criteria = self._search_criteria(query)
        return await self._run(lambda: self._fetch_newest(folder or DEFAULT_MAILBOX, criteria, limit))

    async def get_message(self, message_id: str) -> Optional[EmailMessage]:
        mailbox, uid = split_message_id(message_id)

        def fetch() -> Optional[EmailMessage]:
            self._select(mailbox)
            return self._fetch_uid(mailbox, uid)

        return await self._run(fetch)

    async def _store_flags(self, message_id: str, command: str, flag: str, expunge: bool = False) -> None:
        mailbox, uid = split_message_id(message_id)

        def store() -> None:
            self._select(mailbox, readonly=False)
            status, data = self._connection.uid('STORE', uid, command, f'({flag})')
            if status != 'OK':
                raise BackendError(f"IMAP STORE {command} {flag} failed for UID {uid}: {data}")
            if expunge:
                self._connection.expunge()

        await self._run(store)

    async def mark_as_read(self, message_id: str) -> None:
        await self._store_flags(message_id, '+FLAGS', '\\Seen')

    async def mark_as_unread(self, message_id: str) -> None:
        await self._store_flags(message_id, '-FLAGS', '\\Seen')

    async def delete_message(self, message_id: str) -> None:
        await self._store_flags(message_id, '+FLAGS', '\\Deleted', expunge=True)

    async def move_message(self, message_id: str, folder_id: str) -> None:
        mailbox, uid = split_message_id(message_id)

        def move() -> None:
            self._select(mailbox, readonly=False)
            if 'MOVE' in self._connection.capabilities:
                status, data = self._connection.uid('MOVE', uid, quote(folder_id))
            else:
                status, data = self._connection.uid('COPY', uid, quote(folder_id))
                if status == 'OK':
                    self._connection.uid('STORE', uid, '+FLAGS', '(\\Deleted)')
                    self._connection.expunge()
            if status != 'OK':
                raise BackendError(f"IMAP move of UID {uid} to {folder_id} failed: {data}")

        await self._run(move)

    def _list_folders(self) -> List[EmailFolder]:
        status, folder_list = self._connection.list()
        if status != 'OK':
            raise BackendError(f"IMAP LIST failed: {folder_list}")

        folders = []
        for folder_data in folder_list:
            if not folder_data:
                continue
            if isinstance(folder_data, tuple):
                folder_data = b' '.join(folder_data)
            match = LIST_RESPONSE.match(folder_data.decode(errors='replace'))
            if not match:
                continue
            if '\\Noselect' in match.group('flags'):
                continue
            folder_name = unquote(match.group('name'))

            unread = None
            try:
                status, status_data = self._connection.status(quote(folder_name), '(UNSEEN)')
                if status == 'OK' and status_data and status_data[0]:
                    found = re.search(rb'UNSEEN (\d+)', status_data[0])
                    if found:
                        unread = int(found.group(1))
            except imaplib.IMAP4.error as e:
                logger.warning(f"Could not get status for folder {folder_name}: {e}")

            folders.append(EmailFolder(folder_id=folder_name, name=folder_name, unread_count=unread))
        return folders

    async def list_folders(self) -> List[EmailFolder]:
        """Get all IMAP folders."""
        return await self._run(self._list_folders)

    def _send(self, envelope: OutgoingEmail) -> str:
        """Synchronous SMTP send."""
        msg = MIMEMessage()
        msg['From'] = self.user
        msg['To'] = ', '.join(envelope.to)
        if envelope.cc:
            msg['Cc'] = ', '.join(envelope.cc)
        if envelope.reply_to:
            msg['Reply-To'] = envelope.reply_to
        msg['Subject'] = envelope.subject
        msg['Date'] = formatdate(localtime=True)
        message_id = make_msgid(domain=self.smtp_host or None)
        msg['Message-ID'] = message_id
        msg.set_content(envelope.body, subtype='html' if envelope.is_html else 'plain')

        try:
            if self.smtp_secure:
                server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=30)
            else:
                server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            with server:
                if not self.smtp_secure:
                    server.starttls()
                server.login(self.user, self.password)
                server.send_message(msg, to_addrs=envelope.all_recipients)
        except smtplib.SMTPAuthenticationError as e:
            raise AuthError(f"SMTP login rejected for {self.user}: {e}") from e
        except (smtplib.SMTPException, OSError, socket.timeout) as e:
            raise BackendError(f"SMTP send failed: {e}") from e

        return message_id

    async def send_message(self, envelope: OutgoingEmail) -> str:
        self._require_connection()
        loop = asyncio.get_running_loop()
        message_id = await loop.run_in_executor(None, self._send, envelope)
        logger.info(f"Sent via SMTP: {message_id}")
        return message_id

    async def disconnect(self) -> None:
        """Disconnect from IMAP server."""
        if self._connection:
            try:
                self._connection.logout()
            except Exception as e:
                logger.debug(f"IMAP logout failed: {e}")
            self._connection = None
        self._connected = False

