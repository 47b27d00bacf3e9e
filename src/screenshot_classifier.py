#!/usr/bin/env python
"""
決済スクリーンショット分類器アダプタ
外部の画像理解モデルに金額とカード名を抽出させ、ExtractionResultに正規化する
"""

import json
import re
import time
from typing import Dict, List, Optional

import requests
from anthropic import Anthropic, APIConnectionError, APIStatusError

from payment_models import ExtractionResult, NOT_FOUND
from verification_errors import ClassifierUnavailable, ExtractionFormatError


RETRYABLE_STATUS = (429, 500, 502, 503, 504)


def build_extraction_prompt(amounts: List[str], titles: List[str]) -> str:
    """抽出指示プロンプトを組み立てる（金額例とカード名はレジストリから）"""
    amount_examples = ", ".join(f"₹{a}" for a in amounts[:2]) or "₹100.01"
    title_list = ", ".join(f'"{t}"' for t in titles)
    sample_amount = amounts[0] if amounts else "100.01"
    sample_title = titles[0] if titles else "Starter Card"
    return f"""Analyze this payment screenshot and extract:
1. The exact payment amount (look for ₹ symbol followed by numbers, could be like {amount_examples}, etc.)
2. The payment description/note/remark that mentions the card name (could be {title_list})

Return ONLY a JSON object with this exact format:
{{
  "amount": "{sample_amount}",
  "cardName": "{sample_title}"
}}

If you cannot find the amount or card name clearly, return:
{{
  "amount": "{NOT_FOUND}",
  "cardName": "{NOT_FOUND}"
}}"""


def strip_code_fences(content: str) -> str:
    """```json ... ``` のようなMarkdownコードブロックを取り除く"""
    cleaned = re.sub(r"```json\n?", "", content or "")
    cleaned = re.sub(r"```\n?", "", cleaned)
    return cleaned.strip()


def parse_extraction_response(content: str) -> ExtractionResult:
    cleaned = strip_code_fences(content)
    try:
        data = json.loads(cleaned)
    except (json.JSONDecodeError, ValueError) as e:
        print(f"❌ AI応答のJSON解析に失敗: {content!r}")
        raise ExtractionFormatError(f"Invalid AI response format: {e}")

    if not isinstance(data, dict):
        raise ExtractionFormatError("Invalid AI response format: not a JSON object")
    amount = data.get("amount")
    card_name = data.get("cardName")
    if not isinstance(amount, str) or not isinstance(card_name, str):
        raise ExtractionFormatError("Invalid AI response format: amount/cardName must be strings")
    return ExtractionResult(amount=amount, card_name=card_name)


class _TransientError(Exception):
    pass


class _RetryingClassifier:
    """一時的な通信エラーに対して上限付きで再試行する共通部分"""

    def __init__(self, prompt: str, timeout: float = 30, max_retries: int = 1, retry_backoff: float = 1.0):
        self.prompt = prompt
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self.retry_backoff = retry_backoff

    def classify(self, image_url: str) -> ExtractionResult:
        attempts = self.max_retries + 1
        last_error: Optional[ClassifierUnavailable] = None
        for attempt in range(1, attempts + 1):
            try:
                content = self._request(image_url)
            except _TransientError as e:
                last_error = ClassifierUnavailable(str(e))
                print(f"⚠️ 分類器呼び出し失敗 ({attempt}/{attempts}): {e}")
                if attempt < attempts:
                    time.sleep(self.retry_backoff)
                continue
            print(f"🤖 AI Response: {content}")
            return parse_extraction_response(content)
        raise last_error

    def _request(self, image_url: str) -> str:
        raise NotImplementedError


class GatewayScreenshotClassifier(_RetryingClassifier):
    """OpenAI互換の chat/completions ゲートウェイ経由でマルチモーダルモデルを呼ぶ"""

    def __init__(self, api_key: str, endpoint: str, model: str, prompt: str,
                 max_tokens: int = 200, **kwargs):
        super().__init__(prompt, **kwargs)
        self.endpoint = endpoint
        self.model = model
        self.max_tokens = max_tokens
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _request(self, image_url: str) -> str:
        body = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self.prompt},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
            "max_tokens": self.max_tokens,
        }
        try:
            response = requests.post(self.endpoint, headers=self.headers, json=body, timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise _TransientError(f"classifier transport error: {e}")
        except requests.exceptions.RequestException as e:
            raise ClassifierUnavailable(f"classifier request failed: {e}")

        if response.status_code in RETRYABLE_STATUS:
            raise _TransientError(f"classifier returned {response.status_code}")
        if not 200 <= response.status_code < 300:
            print(f"❌ AI API error: {response.status_code} - {response.text[:200]}")
            raise ClassifierUnavailable(f"classifier returned {response.status_code}")

        try:
            return response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionFormatError(f"Invalid AI response format: {e}")


class ClaudeScreenshotClassifier(_RetryingClassifier):
    """Anthropic Messages API（SDK）で画像URLを解析する"""

    def __init__(self, api_key: str, model: str, prompt: str, max_tokens: int = 200,
                 client: Optional[Anthropic] = None, **kwargs):
        super().__init__(prompt, **kwargs)
        self.model = model
        self.max_tokens = max_tokens
        # 再試行はこちらで管理するのでSDK側は0回
        self.client = client or Anthropic(api_key=api_key, timeout=self.timeout, max_retries=0)

    def _request(self, image_url: str) -> str:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "image", "source": {"type": "url", "url": image_url}},
                        {"type": "text", "text": self.prompt},
                    ],
                }],
            )
        except APIConnectionError as e:
            raise _TransientError(f"classifier transport error: {e}")
        except APIStatusError as e:
            if e.status_code in RETRYABLE_STATUS:
                raise _TransientError(f"classifier returned {e.status_code}")
            print(f"❌ Claude API エラー: {e.status_code} - {e}")
            raise ClassifierUnavailable(f"classifier returned {e.status_code}")

        try:
            return response.content[0].text
        except (AttributeError, IndexError) as e:
            raise ExtractionFormatError(f"Invalid AI response format: {e}")


def create_classifier(cfg: Dict, api_key: str, amounts: List[str], titles: List[str]):
    """設定(classifier.provider)に応じて分類器を生成"""
    c = cfg.get("classifier", {})
    prompt = build_extraction_prompt(amounts, titles)
    common = {
        "timeout": c.get("timeout_seconds", 30),
        "max_retries": c.get("max_retries", 1),
    }
    provider = c.get("provider", "gateway")
    if provider == "anthropic":
        return ClaudeScreenshotClassifier(
            api_key=api_key,
            model=c.get("anthropic_model", "claude-3-5-sonnet-20241022"),
            prompt=prompt,
            max_tokens=c.get("max_tokens", 200),
            **common,
        )
    if provider == "gateway":
        return GatewayScreenshotClassifier(
            api_key=api_key,
            endpoint=c["endpoint"],
            model=c.get("model", "google/gemini-2.5-flash"),
            prompt=prompt,
            max_tokens=c.get("max_tokens", 200),
            **common,
        )
    raise ValueError(f"unknown classifier provider: {provider}")
