#!/usr/bin/env python3
"""
Manage the PIX webhook registration for the configured Efí key.

Usage:
    # Register (or replace) the webhook URL
    python register_pix_webhook.py --url https://billing.example.com/webhooks/pix

    # Show the URL currently registered for EFI_PIX_KEY
    python register_pix_webhook.py --show

    # List every webhook on the account
    python register_pix_webhook.py --list

    # Remove the registration
    python register_pix_webhook.py --delete
"""

import argparse
import os
import sys

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from beltbilling.core.config import settings
from beltbilling.core.errors import GatewayError
from beltbilling.services.gateways import close_adapters, get_adapter


def register(url: str):
    if not url.startswith("https://"):
        print("❌ Efí only delivers webhooks to https URLs")
        return False
    response = get_adapter("pix").register_webhook(url)
    print(f"✅ Webhook registered for key {settings.EFI_PIX_KEY}: {url}")
    if response:
        print(f"   Gateway response: {response}")
    return True


def show():
    webhook = get_adapter("pix").get_webhook()
    if webhook is None:
        print(f"ℹ️  No webhook registered for key {settings.EFI_PIX_KEY}")
    else:
        print(f"✅ {settings.EFI_PIX_KEY}: {webhook.get('webhookUrl')}")
    return True


def list_all():
    webhooks = get_adapter("pix").list_webhooks()
    if not webhooks:
        print("ℹ️  No webhooks registered")
    for webhook in webhooks:
        print(f"   {webhook.get('chave')}: {webhook.get('webhookUrl')}")
    return True


def delete():
    get_adapter("pix").delete_webhook()
    print(f"✅ Webhook removed for key {settings.EFI_PIX_KEY}")
    return True


def main():
    parser = argparse.ArgumentParser(description='Manage the Efí PIX webhook registration')
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument('--url', help='Register this public https URL of POST /webhooks/pix')
    action.add_argument('--show', action='store_true', help='Show the webhook registered for EFI_PIX_KEY')
    action.add_argument('--list', action='store_true', help='List every registered webhook')
    action.add_argument('--delete', action='store_true', help='Remove the webhook for EFI_PIX_KEY')
    args = parser.parse_args()

    if not settings.EFI_PIX_KEY and not args.list:
        print("❌ EFI_PIX_KEY is not set")
        sys.exit(1)

    try:
        if args.url:
            ok = register(args.url)
        elif args.show:
            ok = show()
        elif args.list:
            ok = list_all()
        else:
            ok = delete()
    except GatewayError as e:
        print(f"❌ Efí request failed: {e}")
        ok = False
    finally:
        close_adapters()

    sys.exit(0 if ok else 1)


if __name__ == '__main__':
    main()
