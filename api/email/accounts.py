"""
Account manifest loading.

Reads the accounts JSON file, rejects plaintext secrets, and substitutes
${ENV_VAR} placeholders from the environment.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .errors import ConfigValidationError, PlaintextSecretError, UnresolvedSecretError
from .providers.base import ProviderType

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'\$\{(\w+)\}')
PLACEHOLDER_ONLY = re.compile(r'^\$\{\w+\}$')

# Fields that must be given as ${VAR} placeholders in the manifest
SENSITIVE_FIELDS: Dict[ProviderType, tuple] = {
    ProviderType.OUTLOOK: ('clientSecret',),
    ProviderType.IMAP: ('password',),
}


@dataclass(frozen=True)
class AccountConfig:
    """One account entry from the manifest, after substitution."""
    account_id: str
    name: str
    provider_type: ProviderType
    is_default: bool = False
    config: Dict[str, Any] = field(default_factory=dict)


def _parse_entries(raw_text: str) -> List[Dict[str, Any]]:
    try:
        document = json.loads(raw_text)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Account manifest is not valid JSON: {e}") from e

    if not isinstance(document, dict) or not isinstance(document.get('accounts'), list):
        raise ConfigValidationError("Account manifest must be an object with an 'accounts' list")

    entries = document['accounts']
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigValidationError(f"Account entry #{index} must be an object")
        for key in ('id', 'name', 'provider'):
            if not isinstance(entry.get(key), str) or not entry[key]:
                raise ConfigValidationError(f"Account entry #{index} is missing '{key}'")
        try:
            ProviderType(entry['provider'])
        except ValueError:
            raise ConfigValidationError(
                f"Unknown provider: {entry['provider']}", account_id=entry['id']
            )
        if not isinstance(entry.get('config', {}), dict):
            raise ConfigValidationError("'config' must be an object", account_id=entry['id'])
        if not isinstance(entry.get('default', False), bool):
            raise ConfigValidationError("'default' must be true or false", account_id=entry['id'])
    return entries


def _reject_plaintext_secrets(entries: List[Dict[str, Any]]) -> None:
    """Check sensitive fields on the raw, unsubstituted values."""
    for entry in entries:
        account_config = entry.get('config', {})
        for field_name in SENSITIVE_FIELDS.get(ProviderType(entry['provider']), ()):
            value = account_config.get(field_name)
            if value is None or value == '':
                continue
            if not isinstance(value, str) or not PLACEHOLDER_ONLY.match(value):
                raise PlaintextSecretError(entry['id'], field_name)


def _substitute(value: Any, environ: Mapping[str, str], account_id: str) -> Any:
    if isinstance(value, str):
        def replace(match: re.Match) -> str:
            name = match.group(1)
            resolved = environ.get(name)
            if not resolved:
                logger.warning(f"Environment variable {name} is not set or empty (account '{account_id}')")
                return ''
            return resolved
        return PLACEHOLDER_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {key: _substitute(item, environ, account_id) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute(item, environ, account_id) for item in value]
    return value


def parse_accounts_manifest(
    raw_text: str,
    environ: Optional[Mapping[str, str]] = None
) -> List[AccountConfig]:
    """
    Validate a manifest and resolve its placeholders.

    Args:
        raw_text: Manifest JSON exactly as stored
        environ: Variables for substitution (default: os.environ)

    Returns:
        AccountConfig list in manifest order

    Raises:
        ConfigValidationError: on any invalid manifest, plaintext or unresolved secret
    """
    if environ is None:
        environ = os.environ

    entries = _parse_entries(raw_text)
    _reject_plaintext_secrets(entries)

    accounts: List[AccountConfig] = []
    seen_ids = set()
    for entry in entries:
        account_id = entry['id']
        if account_id in seen_ids:
            raise ConfigValidationError("Duplicate account id", account_id=account_id)
        seen_ids.add(account_id)

        resolved = _substitute(entry, environ, account_id)
        provider_type = ProviderType(resolved['provider'])
        account_config = resolved.get('config', {})

        for field_name in SENSITIVE_FIELDS.get(provider_type, ()):
            if not account_config.get(field_name):
                raise UnresolvedSecretError(account_id, field_name)

        accounts.append(AccountConfig(
            account_id=account_id,
            name=resolved['name'],
            provider_type=provider_type,
            is_default=resolved.get('default', False),
            config=account_config,
        ))

    defaults = [account.account_id for account in accounts if account.is_default]
    if len(defaults) > 1:
        raise ConfigValidationError(f"Only one account may be the default, found: {', '.join(defaults)}")

    return accounts


def load_accounts_file(
    path: str,
    environ: Optional[Mapping[str, str]] = None
) -> List[AccountConfig]:
    """Read and resolve the account manifest at path."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw_text = f.read()
    except OSError as e:
        raise ConfigValidationError(f"Could not read account manifest {path}: {e}") from e

    accounts = parse_accounts_manifest(raw_text, environ)
    logger.info(f"Loaded {len(accounts)} account definitions from {path}")
    return accounts
