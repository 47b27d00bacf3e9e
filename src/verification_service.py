#!/usr/bin/env python
"""
決済スクリーンショット検証フロー
リクエスト検証 → 購入ごとのロック → 分類器 → 判定 → pending からのガード付き遷移

分類器が使えない・応答が壊れている場合は pending のまま手動レビューに回す。
"""

import os
import re
from typing import Dict, Optional, Tuple
from urllib.parse import quote

from dotenv import load_dotenv

import purchase_store
from card_registry import AmountCardRegistry, expected_amount_for
from config_loader import load_verification_config
from execution_lock import PurchaseVerificationLock
from notifier import ManualReviewNotifier
from payment_models import (
    APPROVED,
    PENDING,
    TERMINAL_STATUSES,
    ExtractionResult,
    VerificationRequest,
)
from screenshot_classifier import create_classifier
from screenshot_storage import ScreenshotStorage
from verification_decision import decide_verification
from verification_errors import (
    BadRequest,
    ClassifierUnavailable,
    ExtractionFormatError,
    InvalidTransition,
    PurchaseNotFound,
)


APPROVED_MESSAGE = "Payment verified successfully! Your referral code is now unlocked."
MANUAL_REVIEW_MESSAGE = "Payment submitted but auto-verification failed. Admin will review manually."
NOT_FOUND_REVIEW_MESSAGE = "Payment details could not be read from the screenshot. Admin will review manually."

AMOUNT_FORMAT = re.compile(r"^\d+\.\d{2}$")
REQUIRED_FIELDS = ("screenshotUrl", "purchaseId", "cardTitle", "expectedAmount")


def parse_verification_request(payload: Optional[Dict]) -> VerificationRequest:
    payload = payload or {}
    if not isinstance(payload, dict) or any(not payload.get(k) for k in REQUIRED_FIELDS):
        raise BadRequest("Missing required fields")
    values = {k: payload[k] for k in REQUIRED_FIELDS}
    if not all(isinstance(v, str) for v in values.values()):
        raise BadRequest("Required fields must be strings")
    if not AMOUNT_FORMAT.match(values["expectedAmount"]):
        raise BadRequest("expectedAmount must be formatted as ddd.dd")
    return VerificationRequest(
        screenshot_url=values["screenshotUrl"],
        purchase_id=values["purchaseId"],
        card_title=values["cardTitle"],
        expected_amount=values["expectedAmount"],
    )


def build_upi_link(payee: Dict, card_title: str, amount: str) -> str:
    """UPIアプリを開く upi:// リンク（金額はサーチャージ込み）"""
    return (
        f"upi://pay?pa={payee.get('upi_id', '')}"
        f"&pn={quote(str(payee.get('account_holder', '')))}"
        f"&am={amount}&cu=INR"
        f"&tn={quote(f'Payment for {card_title}')}"
    )


class PaymentVerificationService:
    """購入の検証・手動上書き・手動決済の受付をまとめたサービス"""

    def __init__(self, registry: AmountCardRegistry, classifier, store=purchase_store,
                 notifier: Optional[ManualReviewNotifier] = None,
                 storage: Optional[ScreenshotStorage] = None,
                 cfg: Optional[Dict] = None, lock_dir: str = ".locks"):
        self.registry = registry
        self.classifier = classifier
        self.store = store
        self.notifier = notifier or ManualReviewNotifier()
        self.storage = storage
        self.cfg = cfg or load_verification_config()
        self.lock_dir = lock_dir

    # --- 自動検証 ---------------------------------------------------------

    def verify(self, payload: Optional[Dict]) -> Tuple[int, Dict]:
        """検証リクエストを処理して (HTTPステータス, レスポンス本文) を返す"""
        req = parse_verification_request(payload)
        purchase = self._load_purchase(req.purchase_id)
        if purchase["verification_status"] in TERMINAL_STATUSES:
            print(f"ℹ️ 検証済みの購入: {req.purchase_id} ({purchase['verification_status']})")
            return 200, self._final_body(req, purchase["verification_status"], None, already_final=True)

        timeout = self.cfg.get("verification", {}).get("lock_timeout_seconds", 120)
        with PurchaseVerificationLock(req.purchase_id, self.lock_dir, timeout=timeout):
            # ロック待ちの間に他の経路で確定していないか再確認
            purchase = self._load_purchase(req.purchase_id)
            if purchase["verification_status"] in TERMINAL_STATUSES:
                return 200, self._final_body(req, purchase["verification_status"], None, already_final=True)

            try:
                extraction = self.classifier.classify(req.screenshot_url)
            except (ClassifierUnavailable, ExtractionFormatError) as e:
                return self._manual_review(purchase, req, e)

            if extraction.is_not_found and self._not_found_policy() == "manual_review":
                self._record_manual_review(purchase, req, "not_found")
                body = self._final_body(req, PENDING, extraction, message=NOT_FOUND_REVIEW_MESSAGE)
                body["manualReview"] = True
                return 202, body

            decision = decide_verification(
                extraction.amount,
                extraction.card_name,
                req.card_title,
                req.expected_amount,
                self.registry,
            )
            result = self.store.transition_verification_status(req.purchase_id, decision.status, actor="verifier")

        if not result["transitioned"]:
            # 並行して管理者が確定させた場合は保存済みの状態を返す
            print(f"⚠️ 遷移済みのため判定を破棄: {req.purchase_id} (stored={result['status']})")
            return 200, self._final_body(req, result["status"], extraction, already_final=True)

        print(f"✅ 検証完了: {req.purchase_id} → {decision.status} {decision.reason}")
        message = APPROVED_MESSAGE if decision.approved else decision.reason
        return 200, self._final_body(req, decision.status, extraction, message=message)

    def _not_found_policy(self) -> str:
        return self.cfg.get("verification", {}).get("not_found_policy", "reject")

    def _load_purchase(self, purchase_id: str) -> Dict:
        purchase = self.store.get_purchase(purchase_id)
        if not purchase:
            raise PurchaseNotFound(f"Purchase not found: {purchase_id}")
        return purchase

    def _final_body(self, req: VerificationRequest, status: str, extraction: Optional[ExtractionResult],
                    message: Optional[str] = None, already_final: bool = False) -> Dict:
        verified = status == APPROVED
        if message is None:
            message = APPROVED_MESSAGE if verified else f"Payment {status}."
        body = {
            "success": True,
            "verified": verified,
            "status": status,
            "message": message,
            "details": {
                "extractedAmount": extraction.amount if extraction else None,
                "extractedCardName": extraction.card_name if extraction else None,
                "expectedAmount": req.expected_amount,
                "expectedCardName": self.registry.get(req.expected_amount),
            },
        }
        if already_final:
            body["alreadyFinal"] = True
        return body

    def _manual_review(self, purchase: Dict, req: VerificationRequest, error: Exception) -> Tuple[int, Dict]:
        print(f"❌ 自動検証不可（手動レビューへ）: {req.purchase_id} {error}")
        self._record_manual_review(purchase, req, type(error).__name__, str(error))
        return error.status_code, {
            "success": False,
            "verified": False,
            "status": PENDING,
            "manualReview": True,
            "message": MANUAL_REVIEW_MESSAGE,
            "error": str(error),
        }

    def _record_manual_review(self, purchase: Dict, req: VerificationRequest, result: str, error: Optional[str] = None):
        self.store.write_audit("WARNING", "verifier", "verification:manual_review", [req.purchase_id], None, result, error)
        self.notifier.notify_manual_review(purchase, error or result, screenshot_url=req.screenshot_url)

    # --- 管理者による上書き -------------------------------------------------

    def override_verification(self, purchase_id: str, status: str, actor: str = "admin") -> Dict:
        """管理者が approved/rejected を強制する（pending の間のみ。同じ状態の再指定は冪等）"""
        if status not in TERMINAL_STATUSES:
            raise BadRequest(f"status must be one of {', '.join(TERMINAL_STATUSES)}")
        result = self.store.transition_verification_status(purchase_id, status, actor=actor)
        if not result["transitioned"] and result["status"] != status:
            raise InvalidTransition(f"Purchase already {result['status']}")
        print(f"👮 管理者判定: {purchase_id} → {status} (transitioned={result['transitioned']})")
        return {"purchaseId": purchase_id, **result}

    # --- 手動決済の受付 -----------------------------------------------------

    def expected_amount_for_card(self, card: Dict) -> str:
        return expected_amount_for(card["price"], self.cfg.get("surcharge", "0.01"))

    def payment_instructions(self, card: Dict) -> Dict:
        payee = self.cfg.get("payee", {})
        amount = self.expected_amount_for_card(card)
        return {
            "cardId": card["id"],
            "cardTitle": card["title"],
            "price": card["price"],
            "amountToPay": amount,
            "upiLink": build_upi_link(payee, card["title"], amount),
            "upiId": payee.get("upi_id"),
            "bankName": payee.get("bank_name"),
            "accountNumber": payee.get("account_number"),
            "accountHolder": payee.get("account_holder"),
        }

    def submit_manual_payment(self, user_id: str, card_id: str, filename: str, data: bytes) -> Tuple[int, Dict]:
        """スクリーンショット保存 → 購入作成 → パス記録 → 自動検証"""
        if self.storage is None:
            raise RuntimeError("screenshot storage is not configured")
        card = self.store.get_card(card_id)
        if not card or not card["is_active"]:
            raise BadRequest("Card is not available for purchase")
        try:
            path = self.storage.save(user_id, filename or "", data)
        except ValueError as e:
            raise BadRequest(str(e))

        rate = self.cfg.get("ledger", {}).get("commission_rate", 0.5)
        created = self.store.process_purchase(card_id, user_id, commission_rate=rate)
        purchase_id = created["purchase_id"]
        self.store.attach_screenshot(purchase_id, path)

        code, body = self.verify({
            "screenshotUrl": self.storage.public_url(path),
            "purchaseId": purchase_id,
            "cardTitle": card["title"],
            "expectedAmount": self.expected_amount_for_card(card),
        })
        body["purchaseId"] = purchase_id
        if body.get("manualReview"):
            return 202, body
        return (201 if code == 200 else code), body

    # --- 紹介コード ---------------------------------------------------------

    def referral_status(self, user_id: str) -> Dict:
        """承認済みの購入がある場合のみ紹介コードを返す"""
        profile = self.store.get_profile(user_id)
        if not profile:
            raise BadRequest(f"unknown user: {user_id}")
        unlocked = self.store.has_approved_purchase(user_id)
        base = self.cfg.get("site", {}).get("public_base_url", "").rstrip("/")
        code = profile["referral_code"] if unlocked else None
        return {
            "unlocked": unlocked,
            "referralCode": code,
            "referralLink": f"{base}/auth?ref={code}" if code else None,
        }


def create_service_from_env() -> PaymentVerificationService:
    """環境変数と設定ファイルからサービスを組み立てる"""
    load_dotenv()
    cfg = load_verification_config()
    if os.getenv("CLASSIFIER_PROVIDER"):
        cfg["classifier"] = {**cfg.get("classifier", {}), "provider": os.getenv("CLASSIFIER_PROVIDER")}
    registry = AmountCardRegistry.from_config(cfg)
    classifier = create_classifier(
        cfg,
        api_key=os.getenv("CLASSIFIER_API_KEY", ""),
        amounts=registry.amounts(),
        titles=registry.titles(),
    )
    storage = ScreenshotStorage(
        os.getenv("SCREENSHOT_DIR", os.path.join("storage", "payment-proofs")),
        os.getenv("SCREENSHOT_PUBLIC_BASE_URL", cfg.get("storage", {}).get("public_base_url", "")),
    )
    purchase_store.init_db()
    return PaymentVerificationService(
        registry,
        classifier,
        storage=storage,
        cfg=cfg,
        lock_dir=os.getenv("VERIFICATION_LOCK_DIR", ".locks"),
    )
