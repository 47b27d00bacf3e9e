#!/usr/bin/env python
"""
カードカタログの初期データ投入
金額レジストリ（config/verification.yml）から価格を逆算してカードを作成し、管理者ロールを付与する
"""

import argparse
import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from dotenv import load_dotenv

import purchase_store
from card_registry import AmountCardRegistry, find_catalog_mismatches
from config_loader import load_verification_config


def seed_cards(admin_username: str = None):
    load_dotenv()
    cfg = load_verification_config()
    registry = AmountCardRegistry.from_config(cfg)
    surcharge = Decimal(str(cfg.get("surcharge", "0.01")))

    purchase_store.init_db()
    existing = {c["title"].casefold() for c in purchase_store.list_cards()}

    print("=== カードカタログの投入 ===")
    created = 0
    for amount in registry.amounts():
        title = registry.expected_card_for(amount)
        if title.casefold() in existing:
            print(f"  ⏭️ 既存: {title}")
            continue
        price = float(Decimal(amount) - surcharge)
        purchase_store.create_card(title, price, description=f"{title} - unlock your referral code")
        print(f"  ✅ 作成: {title} (₹{price:.2f} → 支払額 ₹{amount})")
        created += 1
    print(f"\n✅ {created}件のカードを作成")

    mismatches = find_catalog_mismatches(registry, purchase_store.list_cards(), str(surcharge))
    for m in mismatches:
        print(f"  ⚠️ レジストリ不一致: {m['title']} ({m['expected_amount']}) {m['reason']}")

    if admin_username:
        admin = purchase_store.create_profile(admin_username)
        purchase_store.grant_role(admin["id"], "admin")
        print(f"\n👮 管理者を作成: {admin_username} (id={admin['id']})")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--admin", help="作成する管理者ユーザー名")
    args = parser.parse_args()

    seed_cards(args.admin)
