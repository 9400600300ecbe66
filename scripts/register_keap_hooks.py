#!/usr/bin/env python3
"""
Register the Keap REST hook for invoice payments.

Reads KEAP_CLIENT_ID, KEAP_CLIENT_SECRET and KEAP_REFRESH_TOKEN from .env,
plus KEAP_HOOK_URL (the public URL of /webhooks/keap/invoice-payment).
Run from project root: python scripts/register_keap_hooks.py
"""

import sys
import os

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

# Load .env file
from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from src.config import settings
from src.providers.keap.client import KeapClient, KeapProviderError, KeapTokenManager

EVENT_KEY = "invoice.payment.add"


def main():
    hook_url = os.getenv("KEAP_HOOK_URL")
    if not hook_url:
        print("Error: KEAP_HOOK_URL must be set in .env")
        sys.exit(1)

    tokens = KeapTokenManager(
        client_id=settings.keap_client_id,
        client_secret=settings.keap_client_secret,
        refresh_token=settings.keap_refresh_token,
    )
    client = KeapClient(tokens)

    try:
        hook = client.create_hook(EVENT_KEY, hook_url)
        print(f"Created hook:")
        print(f"  Key: {hook.get('key')}")
        print(f"  Event: {hook.get('eventKey')}")
        print(f"  Status: {hook.get('status')}")

        if hook.get("status") != "Verified" and hook.get("key"):
            verified = client.verify_hook(hook["key"])
            print(f"  Verified status: {verified.get('status')}")
    except KeapProviderError as exc:
        print(f"Error: {exc} (category={exc.category})")
        sys.exit(1)

    if tokens.refresh_token != settings.keap_refresh_token:
        print("Note: Keap rotated the refresh token; update KEAP_REFRESH_TOKEN:")
        print(f"  {tokens.refresh_token}")


if __name__ == "__main__":
    main()
