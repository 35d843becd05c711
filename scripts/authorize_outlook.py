#!/usr/bin/env python3
"""
Outlook authorization

Signs in through the Microsoft identity platform (authorization code flow)
and stores the delegated token that MicrosoftProvider refreshes at startup.
Client id and secret come from OUTLOOK_CLIENT_ID / OUTLOOK_CLIENT_SECRET
(a .env file at the repo root is honoured).

Usage:
    python scripts/authorize_outlook.py [--token credentials/outlook-token.json] [--port 3000]
"""

import argparse
import json
import os
import sys
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import msal
from dotenv import load_dotenv

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from api.email.providers.microsoft import MicrosoftProvider

env_path = Path(__file__).parent.parent / '.env'
if env_path.exists():
    load_dotenv(env_path)


class CallbackHandler(BaseHTTPRequestHandler):
    """Captures the query parameters of the OAuth redirect."""

    params = None

    def do_GET(self):
        parsed = urlparse(self.path)
        if parsed.path != "/callback":
            self.send_response(404)
            self.end_headers()
            return

        CallbackHandler.params = {key: values[0] for key, values in parse_qs(parsed.query).items()}
        self.send_response(200)
        self.send_header("Content-Type", "text/html")
        self.end_headers()
        self.wfile.write(b"<h1>Success! You can close this window.</h1>")

    def log_message(self, format, *args):
        pass


def main():
    parser = argparse.ArgumentParser(description="Authorize an Outlook / Microsoft 365 account")
    parser.add_argument("--token", default="credentials/outlook-token.json",
                        help="Where to write the delegated token")
    parser.add_argument("--port", type=int, default=3000,
                        help="Local port registered as the redirect URI")
    args = parser.parse_args()

    client_id = os.environ.get("OUTLOOK_CLIENT_ID", "")
    client_secret = os.environ.get("OUTLOOK_CLIENT_SECRET", "")
    tenant_id = os.environ.get("OUTLOOK_TENANT_ID") or "common"
    if not client_id or not client_secret:
        print("Set OUTLOOK_CLIENT_ID and OUTLOOK_CLIENT_SECRET environment variables")
        return 1

    app = msal.ConfidentialClientApplication(
        client_id,
        authority=f"https://login.microsoftonline.com/{tenant_id}",
        client_credential=client_secret
    )
    redirect_uri = f"http://localhost:{args.port}/callback"
    flow = app.initiate_auth_code_flow(MicrosoftProvider.DELEGATED_SCOPES, redirect_uri=redirect_uri)

    print("Opening browser for Microsoft login...")
    print(f"If it does not open, visit:\n  {flow['auth_uri']}")
    webbrowser.open(flow["auth_uri"])

    server = HTTPServer(("localhost", args.port), CallbackHandler)
    while CallbackHandler.params is None:
        server.handle_request()
    server.server_close()

    result = app.acquire_token_by_auth_code_flow(flow, CallbackHandler.params)
    if "access_token" not in result:
        print(f"Sign-in failed: {result.get('error_description', result.get('error', 'Unknown error'))}")
        return 1

    os.makedirs(os.path.dirname(args.token) or ".", exist_ok=True)
    with open(args.token, "w") as f:
        json.dump(MicrosoftProvider.token_record(result), f, indent=2)

    print(f"Outlook token saved to {args.token}")
    print(f'Reference it from the account manifest as "tokenPath": "{args.token}"')
    return 0


if __name__ == "__main__":
    sys.exit(main())
