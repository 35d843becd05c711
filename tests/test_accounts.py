"""
Tests for account manifest loading and secret handling.
"""

import json
import logging

import pytest

from api.email.accounts import load_accounts_file, parse_accounts_manifest
from api.email.errors import (
    ConfigValidationError,
    PlaintextSecretError,
    UnresolvedSecretError,
)
from api.email.providers.base import ProviderType


def manifest(*accounts) -> str:
    return json.dumps({'accounts': list(accounts)})


IMAP_ACCOUNT = {
    'id': 'fastmail',
    'name': 'Fastmail',
    'provider': 'imap',
    'config': {
        'host': '${IMAP_HOST}',
        'user': 'me@example.com',
        'password': '${FASTMAIL_PASSWORD}',
    },
}

OUTLOOK_ACCOUNT = {
    'id': 'work',
    'name': 'Work',
    'provider': 'outlook',
    'default': True,
    'config': {
        'clientId': 'client-123',
        'clientSecret': '${WORK_CLIENT_SECRET}',
        'tokenPath': 'credentials/work-token.json',
    },
}


class TestSubstitution:

    def test_placeholders_resolved_from_environment(self):
        accounts = parse_accounts_manifest(
            manifest(IMAP_ACCOUNT, OUTLOOK_ACCOUNT),
            environ={
                'IMAP_HOST': 'imap.fastmail.com',
                'FASTMAIL_PASSWORD': 's3cret',
                'WORK_CLIENT_SECRET': 'abc',
            },
        )

        assert [a.account_id for a in accounts] == ['fastmail', 'work']
        assert accounts[0].provider_type == ProviderType.IMAP
        assert accounts[0].config['host'] == 'imap.fastmail.com'
        assert accounts[0].config['password'] == 's3cret'
        assert accounts[1].config['clientSecret'] == 'abc'
        assert accounts[1].is_default is True
        assert accounts[0].is_default is False

    def test_unset_non_sensitive_placeholder_becomes_empty(self, caplog):
        with caplog.at_level(logging.WARNING):
            accounts = parse_accounts_manifest(
                manifest(IMAP_ACCOUNT), environ={'FASTMAIL_PASSWORD': 's3cret'}
            )

        assert accounts[0].config['host'] == ''
        assert 'IMAP_HOST' in caplog.text
        assert 'fastmail' in caplog.text

    def test_placeholder_inside_longer_string(self):
        account = dict(IMAP_ACCOUNT, config=dict(IMAP_ACCOUNT['config'], user='${USER_NAME}@example.com'))

        accounts = parse_accounts_manifest(
            manifest(account),
            environ={'IMAP_HOST': 'h', 'FASTMAIL_PASSWORD': 'p', 'USER_NAME': 'alice'},
        )

        assert accounts[0].config['user'] == 'alice@example.com'


class TestSecrets:

    def test_unset_sensitive_placeholder_is_rejected(self):
        with pytest.raises(UnresolvedSecretError) as exc_info:
            parse_accounts_manifest(manifest(IMAP_ACCOUNT), environ={'IMAP_HOST': 'h'})

        assert exc_info.value.account_id == 'fastmail'
        assert exc_info.value.field == 'password'
        assert 'fastmail' in str(exc_info.value)

    def test_plaintext_password_is_rejected(self):
        account = dict(IMAP_ACCOUNT, config=dict(IMAP_ACCOUNT['config'], password='hunter2'))

        with pytest.raises(PlaintextSecretError) as exc_info:
            parse_accounts_manifest(manifest(account), environ={'IMAP_HOST': 'h'})

        assert exc_info.value.field == 'password'
        assert 'hunter2' not in str(exc_info.value)

    def test_plaintext_client_secret_is_rejected(self):
        account = dict(OUTLOOK_ACCOUNT, config=dict(OUTLOOK_ACCOUNT['config'], clientSecret='raw-secret'))

        with pytest.raises(PlaintextSecretError):
            parse_accounts_manifest(manifest(account), environ={})

    def test_placeholder_with_extra_text_counts_as_plaintext(self):
        account = dict(IMAP_ACCOUNT, config=dict(IMAP_ACCOUNT['config'], password='pw-${SUFFIX}'))

        with pytest.raises(PlaintextSecretError):
            parse_accounts_manifest(manifest(account), environ={'SUFFIX': 'x'})

    def test_plaintext_rejected_even_when_other_accounts_are_valid(self):
        leaky = dict(OUTLOOK_ACCOUNT, config=dict(OUTLOOK_ACCOUNT['config'], clientSecret='raw'))

        with pytest.raises(PlaintextSecretError):
            parse_accounts_manifest(
                manifest(IMAP_ACCOUNT, leaky),
                environ={'IMAP_HOST': 'h', 'FASTMAIL_PASSWORD': 'p'},
            )

    def test_gmail_has_no_sensitive_fields(self):
        gmail = {'id': 'personal', 'name': 'Personal', 'provider': 'gmail',
                 'config': {'tokenPath': 'credentials/gmail-token.json'}}

        accounts = parse_accounts_manifest(manifest(gmail), environ={})

        assert accounts[0].provider_type == ProviderType.GMAIL


class TestValidation:

    def test_invalid_json(self):
        with pytest.raises(ConfigValidationError, match="not valid JSON"):
            parse_accounts_manifest('{"accounts": [', environ={})

    def test_accounts_must_be_a_list(self):
        with pytest.raises(ConfigValidationError):
            parse_accounts_manifest('{"accounts": {}}', environ={})

    def test_missing_required_key(self):
        with pytest.raises(ConfigValidationError, match="missing 'name'"):
            parse_accounts_manifest(manifest({'id': 'x', 'provider': 'gmail'}), environ={})

    def test_unknown_provider(self):
        with pytest.raises(ConfigValidationError, match="Unknown provider: pop3"):
            parse_accounts_manifest(manifest({'id': 'x', 'name': 'X', 'provider': 'pop3'}), environ={})

    def test_duplicate_ids(self):
        gmail = {'id': 'dup', 'name': 'One', 'provider': 'gmail'}

        with pytest.raises(ConfigValidationError, match="Duplicate account id"):
            parse_accounts_manifest(manifest(gmail, dict(gmail, name='Two')), environ={})

    def test_more_than_one_default(self):
        first = {'id': 'a', 'name': 'A', 'provider': 'gmail', 'default': True}
        second = {'id': 'b', 'name': 'B', 'provider': 'gmail', 'default': True}

        with pytest.raises(ConfigValidationError, match="Only one account may be the default"):
            parse_accounts_manifest(manifest(first, second), environ={})

    def test_empty_manifest(self):
        assert parse_accounts_manifest(manifest(), environ={}) == []


class TestLoadFile:

    def test_reads_file(self, tmp_path):
        path = tmp_path / 'accounts.json'
        path.write_text(manifest({'id': 'a', 'name': 'A', 'provider': 'gmail'}))

        accounts = load_accounts_file(str(path), environ={})

        assert accounts[0].name == 'A'

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigValidationError, match="Could not read account manifest"):
            load_accounts_file(str(tmp_path / 'missing.json'), environ={})
