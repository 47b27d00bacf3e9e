"""
検証フローのテスト（分類器はスタブ、永続化は一時ディレクトリのSQLite）
"""

import copy
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

import purchase_store
from card_registry import AmountCardRegistry
from config_loader import DEFAULTS
from execution_lock import PurchaseVerificationLock
from notifier import ManualReviewNotifier
from payment_models import ExtractionResult
from screenshot_storage import ScreenshotStorage
from verification_decision import INVALID_AMOUNT_REASON, MISMATCH_REASON
from verification_errors import (
    BadRequest,
    ClassifierUnavailable,
    ExtractionFormatError,
    InvalidTransition,
    PersistenceFailure,
    PurchaseNotFound,
    VerificationInProgress,
)
from verification_service import (
    APPROVED_MESSAGE,
    MANUAL_REVIEW_MESSAGE,
    PaymentVerificationService,
    build_upi_link,
    parse_verification_request,
)


class StubClassifier:
    def __init__(self, amount="100.01", card_name="Starter Card", error=None, before_return=None):
        self.result = ExtractionResult(amount, card_name)
        self.error = error
        self.before_return = before_return
        self.calls = []

    def classify(self, image_url):
        self.calls.append(image_url)
        if self.error:
            raise self.error
        if self.before_return:
            self.before_return()
        return self.result


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("PAYMENT_STATE_DB", str(tmp_path / "state.db"))
    monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
    purchase_store.init_db()


@pytest.fixture
def world():
    referrer = purchase_store.create_profile("alice")
    buyer = purchase_store.create_profile("bob", referral_code=referrer["referral_code"])
    cards = {title: purchase_store.create_card(title, price) for title, price in (
        ("Starter Card", 100), ("Silver Card", 200), ("Gold Card", 300))}
    return {"referrer": referrer, "buyer": buyer, "cards": cards}


def make_service(tmp_path, classifier, **cfg_overrides):
    cfg = copy.deepcopy(DEFAULTS)
    for section, values in cfg_overrides.items():
        cfg[section].update(values)
    return PaymentVerificationService(
        AmountCardRegistry.from_config(cfg),
        classifier,
        notifier=ManualReviewNotifier(webhook_url=""),
        storage=ScreenshotStorage(str(tmp_path / "proofs"), "http://localhost:5000/storage/payment-proofs"),
        cfg=cfg,
        lock_dir=str(tmp_path / "locks"),
    )


def new_purchase(world, title="Starter Card"):
    return purchase_store.process_purchase(world["cards"][title]["id"], world["buyer"]["id"])["purchase_id"]


def payload(purchase_id, card_title="Starter Card", expected="100.01"):
    return {
        "screenshotUrl": "https://example.com/proof.png",
        "purchaseId": purchase_id,
        "cardTitle": card_title,
        "expectedAmount": expected,
    }


def test_scenario_A_approved_and_referrer_credited(tmp_path, world):
    pid = new_purchase(world)
    service = make_service(tmp_path, StubClassifier("100.01", "starter card "))

    code, body = service.verify(payload(pid))

    assert code == 200
    assert body["success"] is True
    assert body["verified"] is True
    assert body["status"] == "approved"
    assert body["message"] == APPROVED_MESSAGE
    assert body["details"] == {
        "extractedAmount": "100.01",
        "extractedCardName": "starter card ",
        "expectedAmount": "100.01",
        "expectedCardName": "Starter Card",
    }
    assert purchase_store.get_purchase(pid)["verification_status"] == "approved"
    assert purchase_store.get_profile(world["referrer"]["id"])["withdrawable_balance"] == 50.0


def test_scenario_B_unregistered_amount_rejected(tmp_path, world):
    pid = new_purchase(world)
    code, body = make_service(tmp_path, StubClassifier("250.01", "Starter Card")).verify(payload(pid))

    assert code == 200
    assert body["verified"] is False
    assert body["status"] == "rejected"
    assert body["message"] == INVALID_AMOUNT_REASON
    assert purchase_store.get_profile(world["referrer"]["id"])["total_earnings"] == 0


def test_scenario_C_card_mismatch_rejected(tmp_path, world):
    pid = new_purchase(world, "Silver Card")
    service = make_service(tmp_path, StubClassifier("300.01", "Gold Card"))

    code, body = service.verify(payload(pid, "Silver Card", "200.01"))

    assert body["status"] == "rejected"
    assert body["message"] == MISMATCH_REASON
    assert body["details"]["expectedCardName"] == "Silver Card"


def test_scenario_D_not_found_rejected_by_default(tmp_path, world):
    pid = new_purchase(world)
    code, body = make_service(tmp_path, StubClassifier("not_found", "not_found")).verify(payload(pid))

    assert code == 200
    assert body["status"] == "rejected"
    assert body["message"] == INVALID_AMOUNT_REASON


def test_not_found_goes_to_manual_review_when_configured(tmp_path, world):
    pid = new_purchase(world)
    service = make_service(tmp_path, StubClassifier("not_found", "not_found"),
                           verification={"not_found_policy": "manual_review"})

    code, body = service.verify(payload(pid))

    assert code == 202
    assert body["manualReview"] is True
    assert body["status"] == "pending"
    assert purchase_store.get_purchase(pid)["verification_status"] == "pending"


@pytest.mark.parametrize("error", [
    ClassifierUnavailable("gateway timeout"),
    ExtractionFormatError("not json"),
])
def test_scenario_E_classifier_failure_leaves_pending(tmp_path, world, error):
    pid = new_purchase(world)
    code, body = make_service(tmp_path, StubClassifier(error=error)).verify(payload(pid))

    assert code == 503
    assert body["success"] is False
    assert body["manualReview"] is True
    assert body["status"] == "pending"
    assert body["message"] == MANUAL_REVIEW_MESSAGE
    assert purchase_store.get_purchase(pid)["verification_status"] == "pending"
    audit = purchase_store.list_audit(action="verification:manual_review")
    assert audit[0]["target_ids"] == [pid]
    assert audit[0]["result"] == type(error).__name__
    referrer = purchase_store.get_profile(world["referrer"]["id"])
    assert referrer["total_earnings"] == 0
    assert referrer["withdrawable_balance"] == 0
    assert purchase_store.get_purchase(pid)["credited_at"] is None


def test_final_purchase_is_not_reclassified_or_recredited(tmp_path, world):
    pid = new_purchase(world)
    make_service(tmp_path, StubClassifier()).verify(payload(pid))

    classifier = StubClassifier("250.01", "Starter Card")
    code, body = make_service(tmp_path, classifier).verify(payload(pid))

    assert code == 200
    assert body["status"] == "approved"
    assert body["alreadyFinal"] is True
    assert classifier.calls == []
    assert purchase_store.get_profile(world["referrer"]["id"])["total_earnings"] == 50.0


def test_concurrent_override_wins_over_late_decision(tmp_path, world):
    pid = new_purchase(world)
    classifier = StubClassifier(before_return=lambda: purchase_store.transition_verification_status(pid, "rejected", actor="admin"))

    code, body = make_service(tmp_path, classifier).verify(payload(pid))

    assert code == 200
    assert body["status"] == "rejected"
    assert body["alreadyFinal"] is True
    assert purchase_store.get_profile(world["referrer"]["id"])["total_earnings"] == 0


def test_held_lock_rejects_second_verification(tmp_path, world):
    pid = new_purchase(world)
    lock = PurchaseVerificationLock(pid, str(tmp_path / "locks"))
    assert lock.acquire_lock()
    classifier = StubClassifier()

    with pytest.raises(VerificationInProgress):
        make_service(tmp_path, classifier).verify(payload(pid))
    assert classifier.calls == []
    lock.release_lock()


def test_persistence_failure_propagates_and_releases_lock(tmp_path, world, monkeypatch):
    pid = new_purchase(world)

    def broken(*args, **kwargs):
        raise PersistenceFailure("disk I/O error")

    monkeypatch.setattr(purchase_store, "transition_verification_status", broken)
    with pytest.raises(PersistenceFailure):
        make_service(tmp_path, StubClassifier()).verify(payload(pid))
    assert PurchaseVerificationLock(pid, str(tmp_path / "locks")).get_lock_info() is None


@pytest.mark.parametrize("bad", [
    None,
    {},
    {"screenshotUrl": "u", "purchaseId": "p", "cardTitle": "Starter Card"},
    {"screenshotUrl": "u", "purchaseId": "p", "cardTitle": "Starter Card", "expectedAmount": 100.01},
    {"screenshotUrl": "u", "purchaseId": "p", "cardTitle": "Starter Card", "expectedAmount": "100.1"},
])
def test_invalid_request_rejected_before_classifier(bad):
    with pytest.raises(BadRequest):
        parse_verification_request(bad)


def test_unknown_purchase(tmp_path):
    classifier = StubClassifier()
    with pytest.raises(PurchaseNotFound):
        make_service(tmp_path, classifier).verify(payload("missing"))
    assert classifier.calls == []


def test_override_is_idempotent_and_refuses_conflicts(tmp_path, world):
    pid = new_purchase(world)
    service = make_service(tmp_path, StubClassifier())

    first = service.override_verification(pid, "approved", actor="admin-1")
    assert first["transitioned"] is True
    assert first["credited"] == 50.0
    again = service.override_verification(pid, "approved", actor="admin-1")
    assert again["transitioned"] is False
    with pytest.raises(InvalidTransition):
        service.override_verification(pid, "rejected")
    with pytest.raises(BadRequest):
        service.override_verification(pid, "pending")
    assert purchase_store.get_profile(world["referrer"]["id"])["total_earnings"] == 50.0


def test_submit_manual_payment_stores_screenshot_and_verifies(tmp_path, world):
    classifier = StubClassifier("200.01", "Silver Card")
    service = make_service(tmp_path, classifier)
    card = world["cards"]["Silver Card"]

    code, body = service.submit_manual_payment(world["buyer"]["id"], card["id"], "proof.PNG", b"\x89PNG")

    assert code == 201
    assert body["status"] == "approved"
    purchase = purchase_store.get_purchase(body["purchaseId"])
    assert purchase["payment_screenshot_url"].startswith(world["buyer"]["id"] + "/")
    assert purchase["payment_screenshot_url"].endswith(".png")
    assert purchase["payment_method"] == "manual"
    assert classifier.calls == ["http://localhost:5000/storage/payment-proofs/" + purchase["payment_screenshot_url"]]
    assert os.path.exists(service.storage.local_path(purchase["payment_screenshot_url"]))


def test_submit_manual_payment_manual_review_is_accepted(tmp_path, world):
    service = make_service(tmp_path, StubClassifier(error=ClassifierUnavailable("down")))
    code, body = service.submit_manual_payment(world["buyer"]["id"], world["cards"]["Gold Card"]["id"], "p.jpg", b"x")

    assert code == 202
    assert body["manualReview"] is True
    assert purchase_store.get_purchase(body["purchaseId"])["verification_status"] == "pending"


def test_submit_manual_payment_rejects_bad_upload(tmp_path, world):
    service = make_service(tmp_path, StubClassifier())
    with pytest.raises(BadRequest):
        service.submit_manual_payment(world["buyer"]["id"], world["cards"]["Gold Card"]["id"], "p.exe", b"x")
    assert purchase_store.list_purchases() == []


def test_payment_instructions(tmp_path, world):
    service = make_service(tmp_path, StubClassifier())
    info = service.payment_instructions(world["cards"]["Gold Card"])

    assert info["amountToPay"] == "300.01"
    assert info["upiId"] == DEFAULTS["payee"]["upi_id"]
    assert "am=300.01" in info["upiLink"]
    assert info["upiLink"] == build_upi_link(DEFAULTS["payee"], "Gold Card", "300.01")


def test_referral_code_unlocked_after_approval(tmp_path, world):
    service = make_service(tmp_path, StubClassifier())
    buyer_id = world["buyer"]["id"]
    assert service.referral_status(buyer_id) == {"unlocked": False, "referralCode": None, "referralLink": None}

    service.verify(payload(new_purchase(world)))
    status = service.referral_status(buyer_id)
    assert status["unlocked"] is True
    assert status["referralCode"] == world["buyer"]["referral_code"]
    assert status["referralLink"].endswith(f"/auth?ref={world['buyer']['referral_code']}")
