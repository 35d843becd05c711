"""
Email module for reading and sending email across multiple accounts.
Supports Gmail, Microsoft 365 / Outlook, and generic IMAP/SMTP.
"""

from .providers.base import EmailProvider, EmailMessage, TaggedEmailMessage, EmailFolder, OutgoingEmail
from .accounts import AccountConfig, load_accounts_file, parse_accounts_manifest
from .registry import AccountRegistry, ConnectedAccount
from .tools import EmailToolSurface

__all__ = [
    'EmailProvider',
    'EmailMessage',
    'TaggedEmailMessage',
    'EmailFolder',
    'OutgoingEmail',
    'AccountConfig',
    'load_accounts_file',
    'parse_accounts_manifest',
    'AccountRegistry',
    'ConnectedAccount',
    'EmailToolSurface',
]
