"""
Tests for the tool surface: argument validation, routing and result envelopes.
"""

import pytest
import pytest_asyncio

from api.email.providers.base import ProviderType
from api.email.registry import AccountRegistry
from api.email.tools import EmailToolSurface, TOOLS

from tests.conftest import make_account, make_message


@pytest_asyncio.fixture
async def surface(fake_factory):
    registry = AccountRegistry(provider_factory=fake_factory)
    await registry.load([
        make_account('home', messages=[
            make_message('h1', minutes_ago=10),
            make_message('h2', minutes_ago=2, unread=False, subject="Invoice March"),
        ]),
        make_account('work', ProviderType.OUTLOOK, is_default=True, messages=[
            make_message('w1', minutes_ago=4, subject="Invoice April", has_attachments=True),
        ]),
        make_account('legacy', supports_delete=False),
    ])
    return EmailToolSurface(registry)


class TestListing:

    @pytest.mark.asyncio
    async def test_list_accounts(self, surface):
        response = await surface.call('list_accounts')

        assert response['success'] is True
        assert response['result'] == [
            {'id': 'home', 'name': 'Home Mail', 'provider': 'imap', 'isDefault': False},
            {'id': 'work', 'name': 'Work Mail', 'provider': 'outlook', 'isDefault': True},
            {'id': 'legacy', 'name': 'Legacy Mail', 'provider': 'imap', 'isDefault': False},
        ]

    @pytest.mark.asyncio
    async def test_fetch_unread_across_accounts(self, surface, providers):
        response = await surface.call('fetch_unread_emails', {'maxResultsPerAccount': 5})

        result = response['result']
        assert [e['id'] for e in result] == ['w1', 'h1']
        assert result[0]['accountId'] == 'work'
        assert result[0]['provider'] == 'outlook'
        assert result[0]['hasAttachments'] is True
        assert result[1]['accountName'] == 'Home Mail'
        assert ('fetch_unread',) in providers['legacy'].calls

    @pytest.mark.asyncio
    async def test_fetch_unread_single_account(self, surface, providers):
        response = await surface.call('fetch_unread_emails', {'accountId': 'home'})

        assert [e['id'] for e in response['result']] == ['h1']
        assert providers['work'].calls == []

    @pytest.mark.asyncio
    async def test_search_across_accounts(self, surface):
        response = await surface.call('search_emails', {'query': 'invoice'})

        assert [e['id'] for e in response['result']] == ['h2', 'w1']

    @pytest.mark.asyncio
    async def test_get_all_folders(self, surface):
        response = await surface.call('get_all_folders')

        assert [group['accountId'] for group in response['result']] == ['home', 'work', 'legacy']


class TestSingleMessage:

    @pytest.mark.asyncio
    async def test_get_email(self, surface):
        response = await surface.call('get_email', {'accountId': 'home', 'emailId': 'h2'})

        assert response['found'] is True
        assert response['result']['subject'] == "Invoice March"
        assert response['result']['isUnread'] is False
        assert response['result']['accountId'] == 'home'

    @pytest.mark.asyncio
    async def test_get_email_not_found(self, surface):
        response = await surface.call('get_email', {'accountId': 'home', 'emailId': 'nope'})

        assert response == {'success': True, 'result': None, 'found': False}

    @pytest.mark.asyncio
    async def test_get_email_unknown_account(self, surface):
        response = await surface.call('get_email', {'accountId': 'x', 'emailId': '123'})

        assert response['success'] is False
        assert response['error_type'] == 'AccountNotFound'
        assert 'x' in response['error']

    @pytest.mark.asyncio
    async def test_mark_as_read_twice(self, surface, providers):
        args = {'accountId': 'home', 'emailId': 'h1'}

        first = await surface.call('mark_as_read', args)
        second = await surface.call('mark_as_read', args)

        assert first == second == {'success': True, 'result': {'message': 'Email marked as read'}}
        assert providers['home'].messages['h1'].is_unread is False

    @pytest.mark.asyncio
    async def test_mark_as_unread(self, surface, providers):
        response = await surface.call('mark_as_unread', {'accountId': 'home', 'emailId': 'h2'})

        assert response['success'] is True
        assert providers['home'].messages['h2'].is_unread is True

    @pytest.mark.asyncio
    async def test_delete_email(self, surface, providers):
        response = await surface.call('delete_email', {'accountId': 'home', 'emailId': 'h1'})

        assert response['result'] == {'message': 'Email deleted'}
        assert 'h1' not in providers['home'].messages

    @pytest.mark.asyncio
    async def test_delete_unsupported(self, surface):
        response = await surface.call('delete_email', {'accountId': 'legacy', 'emailId': '1'})

        assert response['success'] is False
        assert response['error_type'] == 'UnsupportedOperation'
        assert "delete_message failed for account 'legacy'" in response['error']

    @pytest.mark.asyncio
    async def test_move_unsupported(self, surface):
        response = await surface.call('move_email', {'accountId': 'home', 'emailId': 'h1', 'folderId': 'Archive'})

        assert response['error_type'] == 'UnsupportedOperation'

    @pytest.mark.asyncio
    async def test_provider_failure_is_reported(self, fake_factory):
        registry = AccountRegistry(provider_factory=fake_factory)
        await registry.load([make_account('x', fail_on=['get_message'])])

        response = await EmailToolSurface(registry).call('get_email', {'accountId': 'x', 'emailId': '1'})

        assert response['success'] is False
        assert response['error_type'] == 'BackendError'
        assert 'get_message exploded' in response['error']


class TestSend:

    @pytest.mark.asyncio
    async def test_send_from_default_account(self, surface, providers):
        response = await surface.call('send_email', {
            'to': ['bob@example.com'],
            'subject': 'Hi',
            'body': '<p>Hello</p>',
            'isHtml': True,
            'cc': ['carol@example.com'],
        })

        assert response['result'] == {'message': 'Email sent', 'messageId': 'sent-1'}
        envelope = providers['work'].sent[0]
        assert envelope.is_html is True
        assert envelope.cc == ['carol@example.com']

    @pytest.mark.asyncio
    async def test_send_from_named_account(self, surface, providers):
        await surface.call('send_email', {'accountId': 'home', 'to': ['a@b.c'], 'subject': 's', 'body': 'b'})

        assert len(providers['home'].sent) == 1
        assert providers['work'].sent == []

    @pytest.mark.asyncio
    async def test_send_requires_recipients(self, surface, providers):
        response = await surface.call('send_email', {'to': [], 'subject': 's', 'body': 'b'})

        assert response['error_type'] == 'ValidationError'
        assert providers['work'].sent == []


class TestDispatch:

    @pytest.mark.asyncio
    async def test_unknown_tool(self, surface):
        response = await surface.call('archive_everything')

        assert response == {
            'success': False,
            'error': 'Unknown tool: archive_everything',
            'error_type': 'UnknownTool',
        }

    @pytest.mark.asyncio
    async def test_missing_required_argument(self, surface):
        response = await surface.call('get_email', {'accountId': 'home'})

        assert response['success'] is False
        assert response['error_type'] == 'ValidationError'
        assert 'emailId' in response['error']

    @pytest.mark.asyncio
    async def test_unexpected_argument(self, surface):
        response = await surface.call('list_accounts', {'verbose': True})

        assert response['error_type'] == 'ValidationError'

    @pytest.mark.asyncio
    async def test_out_of_range_limit(self, surface):
        response = await surface.call('fetch_unread_emails', {'maxResultsPerAccount': 0})

        assert response['error_type'] == 'ValidationError'

    @pytest.mark.asyncio
    async def test_list_tools_uses_wire_names(self, surface):
        tools = {tool['name']: tool for tool in surface.list_tools()}

        assert set(tools) == set(TOOLS)
        assert len(tools) == 10
        send_schema = tools['send_email']['inputSchema']
        assert 'isHtml' in send_schema['properties']
        assert set(send_schema['required']) == {'to', 'subject', 'body'}
        assert tools['get_email']['inputSchema']['required'] == ['accountId', 'emailId']
