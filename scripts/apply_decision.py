#!/usr/bin/env python
"""
管理者による検証結果の手動適用（自動検証が手動レビューになった購入向け）
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from dotenv import load_dotenv

import purchase_store
from verification_errors import PaymentVerificationError


ACTION_TO_STATUS = {"approve": "approved", "reject": "rejected"}


def apply_decision(purchase_id: str, action: str, actor: str = "admin-cli") -> bool:
    print(f"🎯 決定適用処理: {purchase_id} → {action}")
    purchase_store.init_db()

    purchase = purchase_store.get_purchase(purchase_id)
    if not purchase:
        print(f"❌ 購入が見つかりません: {purchase_id}")
        return False

    status = ACTION_TO_STATUS[action]
    try:
        result = purchase_store.transition_verification_status(purchase_id, status, actor=actor)
    except PaymentVerificationError as e:
        print(f"❌ 適用エラー: {e}")
        purchase_store.write_audit("ERROR", actor, f"decision:{action}", [purchase_id], None, "error", str(e))
        return False

    if result["transitioned"]:
        print(f"✅ {purchase_id}: pending → {status}")
        if result["credited"]:
            print(f"💰 紹介報酬 ₹{result['credited']:.2f} を加算")
        return True

    if result["status"] == status:
        print(f"ℹ️ 既に {status} です（変更なし）")
        return True
    print(f"⚠️ 既に {result['status']} で確定済みのため適用できません")
    return False


if __name__ == "__main__":
    load_dotenv()
    parser = argparse.ArgumentParser()
    parser.add_argument("--purchase-id", required=True)
    parser.add_argument("--action", required=True, choices=sorted(ACTION_TO_STATUS))
    parser.add_argument("--actor", default="admin-cli")
    args = parser.parse_args()

    ok = apply_decision(args.purchase_id, args.action, args.actor)
    sys.exit(0 if ok else 1)
