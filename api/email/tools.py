"""
Named email operations exposed to callers.

Each tool has a pydantic argument model and a handler on the registry.
Results always come back in one envelope:
{"success": True, "result": ...} or {"success": False, "error": ..., "error_type": ...}.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import EmailError
from .providers.base import OutgoingEmail
from .registry import AccountRegistry

logger = logging.getLogger(__name__)


# ============ Argument Models ============

class ToolArguments(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='forbid')


class NoArguments(ToolArguments):
    pass


class FetchUnreadArgs(ToolArguments):
    max_results_per_account: int = Field(
        10, alias='maxResultsPerAccount', ge=1, le=500, description="Max emails per account"
    )
    account_id: Optional[str] = Field(
        None, alias='accountId', description="Fetch from this account only"
    )


class SearchArgs(ToolArguments):
    query: str = Field(..., description="Search query in the provider's own syntax")
    max_results: int = Field(10, alias='maxResults', ge=1, le=500, description="Max results per account")
    account_id: Optional[str] = Field(None, alias='accountId', description="Search this account only")
    folder: Optional[str] = Field(None, description="Folder/label to search in")


class MessageArgs(ToolArguments):
    account_id: str = Field(..., alias='accountId', description="Account the email belongs to")
    email_id: str = Field(..., alias='emailId', description="Email ID from a previous listing")


class MoveArgs(MessageArgs):
    folder_id: str = Field(..., alias='folderId', description="Destination folder ID")


class SendArgs(ToolArguments):
    account_id: Optional[str] = Field(
        None, alias='accountId', description="Account to send from (default account when omitted)"
    )
    to: List[str] = Field(..., min_length=1, description="Recipients")
    subject: str = Field(..., description="Subject")
    body: str = Field(..., description="Body")
    cc: List[str] = Field(default_factory=list, description="CC")
    bcc: List[str] = Field(default_factory=list, description="BCC")
    is_html: bool = Field(False, alias='isHtml', description="Send the body as HTML")
    reply_to: Optional[str] = Field(None, alias='replyTo', description="Reply-To address")


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    arguments: Type[ToolArguments]
    handler: Callable[['EmailToolSurface', Any], Awaitable[Any]]

    def describe(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'description': self.description,
            'inputSchema': self.arguments.model_json_schema(by_alias=True),
        }


class EmailToolSurface:
    """Dispatches named operations to the account registry."""

    def __init__(self, registry: AccountRegistry):
        self.registry = registry

    # ============ Handlers ============

    async def _list_accounts(self, args: NoArguments) -> List[Dict[str, Any]]:
        return self.registry.list_accounts()

    async def _fetch_unread(self, args: FetchUnreadArgs) -> List[Dict[str, Any]]:
        if args.account_id:
            emails = await self.registry.fetch_unread(args.account_id, args.max_results_per_account)
        else:
            emails = await self.registry.fetch_all_unread(args.max_results_per_account)
        return [email.to_summary() for email in emails]

    async def _search(self, args: SearchArgs) -> List[Dict[str, Any]]:
        if args.account_id:
            emails = await self.registry.search(
                args.query, account_id=args.account_id, max_results=args.max_results, folder=args.folder
            )
        else:
            emails = await self.registry.search_all(args.query, args.max_results, args.folder)
        return [email.to_summary() for email in emails]

    async def _get_email(self, args: MessageArgs) -> Optional[Dict[str, Any]]:
        email = await self.registry.get_message(args.account_id, args.email_id)
        return email.to_dict() if email else None

    async def _mark_as_read(self, args: MessageArgs) -> Dict[str, Any]:
        await self.registry.mark_as_read(args.account_id, args.email_id)
        return {'message': 'Email marked as read'}

    async def _mark_as_unread(self, args: MessageArgs) -> Dict[str, Any]:
        await self.registry.mark_as_unread(args.account_id, args.email_id)
        return {'message': 'Email marked as unread'}

    async def _send_email(self, args: SendArgs) -> Dict[str, Any]:
        envelope = OutgoingEmail(
            to=args.to,
            subject=args.subject,
            body=args.body,
            cc=args.cc,
            bcc=args.bcc,
            is_html=args.is_html,
            reply_to=args.reply_to,
        )
        message_id = await self.registry.send_message(envelope, args.account_id)
        return {'message': 'Email sent', 'messageId': message_id}

    async def _get_all_folders(self, args: NoArguments) -> List[Dict[str, Any]]:
        return await self.registry.get_all_folders()

    async def _delete_email(self, args: MessageArgs) -> Dict[str, Any]:
        await self.registry.delete_message(args.account_id, args.email_id)
        return {'message': 'Email deleted'}

    async def _move_email(self, args: MoveArgs) -> Dict[str, Any]:
        await self.registry.move_message(args.account_id, args.email_id, args.folder_id)
        return {'message': f"Email moved to {args.folder_id}"}

    # ============ Dispatch ============

    def list_tools(self) -> List[Dict[str, Any]]:
        return [tool.describe() for tool in TOOLS.values()]

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Validate arguments, run the tool, and wrap the outcome."""
        tool = TOOLS.get(name)
        if tool is None:
            return {'success': False, 'error': f"Unknown tool: {name}", 'error_type': 'UnknownTool'}

        logger.info(f"Tool: {name}")
        try:
            args = tool.arguments.model_validate(arguments or {})
        except ValidationError as e:
            details = '; '.join(
                f"{'.'.join(str(part) for part in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            return {'success': False, 'error': f"Invalid arguments for {name}: {details}",
                    'error_type': 'ValidationError'}

        try:
            result = await tool.handler(self, args)
        except EmailError as e:
            logger.error(f"Tool {name} failed: {e}")
            return {'success': False, 'error': str(e), 'error_type': type(e).__name__}
        except Exception as e:
            logger.exception(f"Tool {name} raised an unexpected error")
            return {'success': False, 'error': f"Unexpected error: {e}", 'error_type': type(e).__name__}

        response: Dict[str, Any] = {'success': True, 'result': result}
        if name == 'get_email':
            response['found'] = result is not None
        return response


TOOLS: Dict[str, ToolDefinition] = {
    tool.name: tool for tool in [
        ToolDefinition('list_accounts', "List all connected email accounts",
                       NoArguments, EmailToolSurface._list_accounts),
        ToolDefinition('fetch_unread_emails', "Fetch unread emails from ALL accounts (unified inbox)",
                       FetchUnreadArgs, EmailToolSurface._fetch_unread),
        ToolDefinition('search_emails', "Search emails across ALL accounts",
                       SearchArgs, EmailToolSurface._search),
        ToolDefinition('get_email', "Get full email content (requires accountId from list results)",
                       MessageArgs, EmailToolSurface._get_email),
        ToolDefinition('mark_as_read', "Mark email as read",
                       MessageArgs, EmailToolSurface._mark_as_read),
        ToolDefinition('mark_as_unread', "Mark email as unread",
                       MessageArgs, EmailToolSurface._mark_as_unread),
        ToolDefinition('send_email', "Send email from a specific account",
                       SendArgs, EmailToolSurface._send_email),
        ToolDefinition('get_all_folders', "Get folders from all accounts",
                       NoArguments, EmailToolSurface._get_all_folders),
        ToolDefinition('delete_email', "Delete/trash an email",
                       MessageArgs, EmailToolSurface._delete_email),
        ToolDefinition('move_email', "Move an email to another folder",
                       MoveArgs, EmailToolSurface._move_email),
    ]
}
