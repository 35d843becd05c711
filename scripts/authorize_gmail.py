#!/usr/bin/env python3
"""
Gmail authorization

Runs the OAuth consent flow in a browser and stores the authorized-user token
that GmailProvider loads (and refreshes) at startup.

Usage:
    python scripts/authorize_gmail.py [--credentials credentials/gmail-credentials.json]
                                      [--token credentials/gmail-token.json]
"""

import argparse
import os
import sys
from pathlib import Path

from google_auth_oauthlib.flow import InstalledAppFlow

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from api.email.providers.gmail import GmailProvider


def main():
    parser = argparse.ArgumentParser(description="Authorize a Gmail account")
    parser.add_argument("--credentials", default="credentials/gmail-credentials.json",
                        help="OAuth client secrets downloaded from Google Cloud Console")
    parser.add_argument("--token", default="credentials/gmail-token.json",
                        help="Where to write the authorized-user token")
    parser.add_argument("--port", type=int, default=0,
                        help="Local port for the OAuth redirect (0 picks a free port)")
    args = parser.parse_args()

    if not os.path.exists(args.credentials):
        print(f"Credentials file not found: {args.credentials}")
        print("Download OAuth2 credentials from Google Cloud Console.")
        return 1

    print("Starting Gmail OAuth...")
    flow = InstalledAppFlow.from_client_secrets_file(args.credentials, GmailProvider.SCOPES)
    creds = flow.run_local_server(port=args.port)

    os.makedirs(os.path.dirname(args.token) or ".", exist_ok=True)
    with open(args.token, "w") as token:
        token.write(creds.to_json())

    print(f"Gmail token saved to {args.token}")
    print(f'Reference it from the account manifest as "tokenPath": "{args.token}"')
    return 0


if __name__ == "__main__":
    sys.exit(main())
