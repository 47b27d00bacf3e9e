import os
from typing import Dict, Optional

import requests


class ManualReviewNotifier:
    """自動検証できなかった購入をSlackに通知する（管理者の手動レビュー用）"""

    def __init__(self, webhook_url: Optional[str] = None):
        self.webhook_url = webhook_url if webhook_url is not None else os.getenv("SLACK_WEBHOOK_URL")

    def notify_manual_review(self, purchase: Dict, reason: str, screenshot_url: Optional[str] = None) -> bool:
        if not self.webhook_url:
            print(f"⚠️ SLACK_WEBHOOK_URL未設定 - 手動レビュー通知をスキップ: {purchase.get('id')}")
            return False

        fields = [
            {"type": "mrkdwn", "text": f"*Purchase:* {purchase.get('id')}"},
            {"type": "mrkdwn", "text": f"*User:* {purchase.get('user_id')}"},
            {"type": "mrkdwn", "text": f"*Amount:* ₹{float(purchase.get('amount') or 0):.2f}"},
            {"type": "mrkdwn", "text": f"*Reason:* {reason}"},
        ]
        message = {
            "text": f"Payment needs manual review ({purchase.get('id')})",
            "blocks": [
                {"type": "section", "text": {"type": "mrkdwn", "text": "*手動レビューが必要な決済*"}},
                {"type": "section", "fields": fields},
            ],
        }
        if screenshot_url:
            message["blocks"].append(
                {"type": "section", "text": {"type": "mrkdwn", "text": f"<{screenshot_url}|スクリーンショットを開く>"}}
            )

        try:
            resp = requests.post(self.webhook_url, json=message, timeout=10)
        except requests.exceptions.RequestException as e:
            print(f"❌ Slack送信エラー: {e}")
            return False
        if resp.status_code != 200:
            print(f"❌ Slack送信失敗: {resp.status_code} {resp.text[:200]}")
            return False
        return True
