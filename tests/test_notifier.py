import os
import sys
from unittest.mock import Mock, patch

import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from notifier import ManualReviewNotifier


PURCHASE = {"id": "p-1", "user_id": "u-1", "amount": 300}


def test_skips_without_webhook():
    assert ManualReviewNotifier(webhook_url="").notify_manual_review(PURCHASE, "ClassifierUnavailable") is False


@patch('notifier.requests.post')
def test_posts_blocks_with_screenshot_link(mock_post):
    mock_post.return_value = Mock(status_code=200)
    sent = ManualReviewNotifier("https://hooks.slack.com/services/T/B/X").notify_manual_review(
        PURCHASE, "not_found", screenshot_url="http://localhost/p.png")

    assert sent is True
    message = mock_post.call_args.kwargs["json"]
    assert "p-1" in message["text"]
    assert "<http://localhost/p.png|" in message["blocks"][-1]["text"]["text"]
    assert mock_post.call_args.kwargs["timeout"] == 10


@patch('notifier.requests.post')
def test_failure_is_reported_not_raised(mock_post):
    mock_post.side_effect = requests.exceptions.ConnectionError("down")
    assert ManualReviewNotifier("https://hooks.slack.com/x").notify_manual_review(PURCHASE, "x") is False
