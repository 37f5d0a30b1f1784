#!/usr/bin/env python3
"""
Seed subscription plans and sync their card prices with Stripe.

Plans are upserted by slug. With --stripe, each plan gets a Stripe product and
a recurring BRL price found by lookup_key (created when missing); the price id
is stored on the plan so card checkout can reference it.

Usage:
    # Create/update plans in the database only
    python sync_plans.py

    # Also sync Stripe products and prices
    python sync_plans.py --stripe
"""

import argparse
import os
import sys
from typing import Any, Dict, List, Optional

import stripe

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from beltbilling.core.config import settings
from beltbilling.db.session import SessionLocal, init_db
from beltbilling.models.enums import PlanInterval
from beltbilling.models.plan import Plan

PLANS = {
    'academia-mensal': {
        'name': 'Academia Mensal',
        'price_cents': 19900,
        'interval': PlanInterval.MONTHLY,
        'trial_days': 14,
    },
    'academia-anual': {
        'name': 'Academia Anual',
        'price_cents': 199000,
        'interval': PlanInterval.YEARLY,
        'trial_days': 14,
    },
}

_STRIPE_INTERVAL = {PlanInterval.MONTHLY: 'month', PlanInterval.YEARLY: 'year'}


def find_or_create_price(product_id: str, slug: str, config: Dict[str, Any], existing_prices: List[Any]) -> Any:
    """Find the plan's active price by lookup_key and amount, or create it"""
    lookup_key = f"{slug}_price"
    interval = _STRIPE_INTERVAL[config['interval']]

    for price in existing_prices:
        if price.product != product_id or not price.active:
            continue
        if getattr(price, 'lookup_key', None) != lookup_key:
            continue
        if price.unit_amount == config['price_cents'] and getattr(price.recurring, 'interval', None) == interval:
            print(f"    ✓ Found price by lookup_key: {price.id} ({lookup_key})")
            return price

    print(f"    ➕ Creating price: {config['price_cents']} cents BRL every {interval} (lookup_key: {lookup_key})")
    # transfer_lookup_key moves the key off an outdated price
    return stripe.Price.create(
        product=product_id,
        currency='brl',
        unit_amount=config['price_cents'],
        recurring={'interval': interval},
        lookup_key=lookup_key,
        transfer_lookup_key=True,
    )


def sync_stripe_prices() -> Dict[str, str]:
    print(f"\n{'='*60}\nSyncing Stripe Products\n{'='*60}\n")
    stripe.api_key = settings.STRIPE_SECRET_KEY

    existing_products = {p.name: p for p in stripe.Product.list(limit=100).data if p.active}
    existing_prices = stripe.Price.list(limit=100, active=True).data

    price_ids = {}
    for slug, config in PLANS.items():
        print(f"Plan: {config['name']}")
        product = existing_products.get(config['name'])
        if not product:
            product = stripe.Product.create(name=config['name'], metadata={'plan_slug': slug})
            print(f"  ✓ Created product: {product.id}")
        price = find_or_create_price(product.id, slug, config, existing_prices)
        price_ids[slug] = price.id
    return price_ids


def upsert_plans(price_ids: Optional[Dict[str, str]] = None) -> bool:
    price_ids = price_ids or {}
    db = SessionLocal()
    try:
        for slug, config in PLANS.items():
            plan = db.query(Plan).filter(Plan.slug == slug).first()
            if plan is None:
                plan = Plan(slug=slug)
                db.add(plan)
                print(f"  ➕ Creating plan {slug}")
            else:
                print(f"  ✓ Updating plan {slug}")
            plan.name = config['name']
            plan.price_cents = config['price_cents']
            plan.currency = 'BRL'
            plan.interval = config['interval']
            plan.trial_days = config['trial_days']
            if slug in price_ids:
                plan.stripe_price_id = price_ids[slug]
        db.commit()
        return True
    except Exception as e:
        db.rollback()
        print(f"❌ Error saving plans: {e}")
        return False
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description='Seed plans and sync Stripe prices')
    parser.add_argument('--stripe', action='store_true', help='Create or reuse Stripe products and prices')
    args = parser.parse_args()

    init_db()

    price_ids = None
    if args.stripe:
        if not settings.STRIPE_SECRET_KEY:
            print("❌ STRIPE_SECRET_KEY not found in environment.")
            sys.exit(1)
        try:
            price_ids = sync_stripe_prices()
        except stripe.StripeError as e:
            print(f"❌ Stripe sync failed: {e}")
            sys.exit(1)

    if not upsert_plans(price_ids):
        sys.exit(1)
    print(f"\n{'='*60}\n✅ Plans synced\n{'='*60}")


if __name__ == '__main__':
    main()
