"""
FastAPI backend for the unified mail API.
Exposes email tools (list, search, read, send, delete, mark) across every configured account.
"""

import os
import logging
import configparser
from typing import Dict, Any, Optional
from contextlib import asynccontextmanager
from pathlib import Path

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).parent.parent / '.env'
if env_path.exists():
    load_dotenv(env_path, override=True)

from fastapi import FastAPI, HTTPException, Body

from api.email.registry import AccountRegistry
from api.email.tools import EmailToolSurface

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CONFIG_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config.ini")
DEFAULT_ACCOUNTS_PATH = os.path.join("credentials", "accounts.json")

# Global instances
config: Optional[configparser.ConfigParser] = None
account_registry: Optional[AccountRegistry] = None
email_tools: Optional[EmailToolSurface] = None


def load_config(config_path: str = None) -> configparser.ConfigParser:
    """Load configuration from file."""
    if config_path is None:
        config_path = CONFIG_PATH
    cfg = configparser.ConfigParser()
    if os.path.exists(config_path):
        cfg.read(config_path)
    return cfg


def get_email_settings(cfg: configparser.ConfigParser) -> Dict[str, Any]:
    """Resolve email settings from the environment, then config.ini, then defaults."""
    accounts_path = os.environ.get('ACCOUNTS_PATH') or cfg.get(
        'email', 'accounts_path', fallback=DEFAULT_ACCOUNTS_PATH
    )

    timeout_value = os.environ.get('EMAIL_CALL_TIMEOUT') or cfg.get('email', 'call_timeout', fallback='30')
    call_timeout = float(timeout_value) if timeout_value else None
    if call_timeout is not None and call_timeout <= 0:
        call_timeout = None

    concurrency_value = os.environ.get('EMAIL_MAX_CONCURRENCY') or cfg.get(
        'email', 'max_concurrency', fallback=''
    )
    max_concurrency = int(concurrency_value) if concurrency_value else None

    return {
        'accounts_path': accounts_path,
        'call_timeout': call_timeout,
        'max_concurrency': max_concurrency,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global config, account_registry, email_tools

    # Startup
    logger.info("Starting unified mail API (multi-account)...")
    config = load_config()
    settings = get_email_settings(config)

    registry = AccountRegistry(
        call_timeout=settings['call_timeout'],
        max_concurrency=settings['max_concurrency']
    )
    # ConfigValidationError is fatal: a manifest with plaintext or missing secrets must not start
    await registry.load_from_file(settings['accounts_path'])
    if len(registry) == 0:
        logger.warning("No email accounts connected")

    account_registry = registry
    email_tools = EmailToolSurface(registry)

    yield

    # Shutdown
    logger.info("Shutting down unified mail API...")
    await registry.disconnect()
    account_registry = None
    email_tools = None


app = FastAPI(
    title="Unified Mail API",
    description="One interface for Gmail, Outlook and IMAP accounts, with a merged multi-account inbox",
    version="2.0.0",
    lifespan=lifespan
)


def _require_tools() -> EmailToolSurface:
    if email_tools is None:
        raise HTTPException(status_code=503, detail="Email accounts not initialized")
    return email_tools


# ============ Health & Status Endpoints ============

@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "unified-mail-api",
        "accounts": len(account_registry) if account_registry else 0,
    }


# ============ Email API Endpoints ============

@app.get("/api/email/accounts")
async def list_email_accounts():
    """List connected accounts and any that failed to connect."""
    tools = _require_tools()
    return {
        "success": True,
        "accounts": tools.registry.list_accounts(),
        "failed": tools.registry.connection_failures,
    }


@app.get("/api/tools")
async def list_tools():
    """Describe every available tool with its argument schema."""
    tools = _require_tools()
    return {"tools": tools.list_tools()}


@app.post("/api/tools/{tool_name}")
async def call_tool(tool_name: str, arguments: Optional[Dict[str, Any]] = Body(default=None)):
    """Invoke a tool by name. Failures are reported as {success: false, error}."""
    tools = _require_tools()
    return await tools.call(tool_name, arguments)


if __name__ == "__main__":
    import uvicorn
    cfg = load_config()
    uvicorn.run(
        app,
        host=cfg.get('server', 'host', fallback="0.0.0.0"),
        port=cfg.getint('server', 'port', fallback=8000)
    )
