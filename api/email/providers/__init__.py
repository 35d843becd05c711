"""
Email providers for different email services.
"""

from typing import Any, Dict, Type

from .base import (
    EmailProvider,
    EmailMessage,
    TaggedEmailMessage,
    EmailFolder,
    OutgoingEmail,
    ProviderType,
)
from .gmail import GmailProvider
from .imap import IMAPProvider
from .microsoft import MicrosoftProvider
from ..errors import ConfigValidationError

PROVIDER_CLASSES: Dict[ProviderType, Type[EmailProvider]] = {
    ProviderType.GMAIL: GmailProvider,
    ProviderType.OUTLOOK: MicrosoftProvider,
    ProviderType.IMAP: IMAPProvider,
}


def create_provider(provider_type: ProviderType, config: Dict[str, Any]) -> EmailProvider:
    """Instantiate the adapter for a provider kind."""
    try:
        provider_class = PROVIDER_CLASSES[ProviderType(provider_type)]
    except (KeyError, ValueError):
        raise ConfigValidationError(f"Unknown provider: {provider_type}")
    return provider_class(config)


__all__ = [
    'EmailProvider',
    'EmailMessage',
    'TaggedEmailMessage',
    'EmailFolder',
    'OutgoingEmail',
    'ProviderType',
    'GmailProvider',
    'IMAPProvider',
    'MicrosoftProvider',
    'PROVIDER_CLASSES',
    'create_provider',
]
