"""
HTTP API（Flask）
- 検証関数: POST /functions/verify-payment-screenshot
- ユーザー: サインアップ、カード一覧、手動決済、出金、分析
- 管理者: 購入の承認/却下、ユーザーBAN、出金処理、カード管理

呼び出し元のユーザーIDは X-User-Id ヘッダーで受け取る（認証基盤は外部）。
"""

import os

from flask import Flask, current_app, jsonify, request, send_from_directory

import purchase_store
from card_registry import find_catalog_mismatches
from verification_errors import BadRequest, PaymentVerificationError


class Unauthorized(PaymentVerificationError):
    status_code = 401


class Forbidden(PaymentVerificationError):
    status_code = 403


def _service():
    return current_app.config["VERIFICATION_SERVICE"]


def _store():
    return _service().store


def _current_user_id() -> str:
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        raise Unauthorized("Sign in required")
    if not _store().get_profile(user_id):
        raise Unauthorized("Unknown user")
    return user_id


def _require_admin() -> str:
    user_id = _current_user_id()
    if not _store().has_role(user_id, "admin"):
        raise Forbidden("Access denied. Admin privileges required.")
    return user_id


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def create_app(service=None) -> Flask:
    app = Flask(__name__)
    if service is None:
        from verification_service import create_service_from_env

        service = create_service_from_env()
    app.config["VERIFICATION_SERVICE"] = service

    @app.errorhandler(PaymentVerificationError)
    def handle_domain_error(e):
        if e.status_code >= 500:
            print(f"❌ Verification error: {e}")
        return jsonify({"success": False, "verified": False, "error": e.message}), e.status_code

    # --- 検証関数 ---------------------------------------------------------

    @app.route("/functions/verify-payment-screenshot", methods=["POST"])
    def verify_payment_screenshot():
        status_code, body = _service().verify(request.get_json(silent=True))
        return jsonify(body), status_code

    # --- ユーザー ---------------------------------------------------------

    @app.route("/signup", methods=["POST"])
    def signup():
        body = _json_body()
        profile = _store().create_profile(body.get("username", ""), referral_code=body.get("referralCode"))
        return jsonify({"id": profile["id"], "username": profile["username"], "referredBy": profile["referred_by"]}), 201

    @app.route("/profile", methods=["GET"])
    def profile():
        user_id = _current_user_id()
        p = _store().get_profile(user_id)
        referral = _service().referral_status(user_id)
        return jsonify({
            "id": p["id"],
            "username": p["username"],
            "totalEarnings": p["total_earnings"],
            "withdrawableBalance": p["withdrawable_balance"],
            "isBanned": p["is_banned"],
            **referral,
        })

    @app.route("/analytics", methods=["GET"])
    def analytics():
        return jsonify(_store().user_analytics(_current_user_id()))

    @app.route("/cards", methods=["GET"])
    def cards():
        service = _service()
        return jsonify([{**c, "payment": service.payment_instructions(c)} for c in _store().list_cards(active_only=True)])

    @app.route("/purchases", methods=["GET"])
    def my_purchases():
        return jsonify(_store().list_purchases(user_id=_current_user_id()))

    @app.route("/purchases", methods=["POST"])
    def submit_purchase():
        user_id = _current_user_id()
        card_id = request.form.get("card_id", "")
        upload = request.files.get("screenshot")
        if not card_id or upload is None:
            raise BadRequest("Please upload payment screenshot")
        status_code, body = _service().submit_manual_payment(user_id, card_id, upload.filename or "", upload.read())
        return jsonify(body), status_code

    @app.route("/withdrawals", methods=["GET"])
    def my_withdrawals():
        return jsonify(_store().list_withdrawals(user_id=_current_user_id()))

    @app.route("/withdrawals", methods=["POST"])
    def request_withdrawal():
        user_id = _current_user_id()
        body = _json_body()
        minimum = _service().cfg.get("ledger", {}).get("min_withdrawal", 100)
        withdrawal = _store().request_withdrawal(
            user_id,
            body.get("amount"),
            body.get("method", ""),
            body.get("accountDetails") or {},
            min_withdrawal=minimum,
        )
        return jsonify(withdrawal), 201

    @app.route("/storage/payment-proofs/<path:path>", methods=["GET"])
    def screenshot_file(path):
        storage = _service().storage
        return send_from_directory(os.fspath(storage.root), path)

    # --- 管理者 -----------------------------------------------------------

    @app.route("/admin/purchases", methods=["GET"])
    def admin_purchases():
        _require_admin()
        storage = _service().storage
        purchases = []
        for p in _store().list_purchases():
            if storage is not None:
                p["payment_screenshot_url"] = storage.public_url(p["payment_screenshot_url"])
            purchases.append(p)
        return jsonify({"purchases": purchases, "stats": _store().purchase_stats()})

    @app.route("/admin/purchases/<purchase_id>/status", methods=["POST"])
    def admin_purchase_status(purchase_id):
        admin_id = _require_admin()
        result = _service().override_verification(purchase_id, _json_body().get("status", ""), actor=admin_id)
        return jsonify({"success": True, **result})

    @app.route("/admin/users", methods=["GET"])
    def admin_users():
        _require_admin()
        return jsonify(_store().list_profiles())

    @app.route("/admin/users/<user_id>/ban", methods=["POST"])
    def admin_toggle_ban(user_id):
        _require_admin()
        current = _store().get_profile(user_id)
        if not current:
            raise BadRequest(f"unknown user: {user_id}")
        banned = _json_body().get("banned", not current["is_banned"])
        if not isinstance(banned, bool):
            raise BadRequest("banned must be true or false")
        return jsonify(_store().set_banned(user_id, banned))

    @app.route("/admin/withdrawals", methods=["GET"])
    def admin_withdrawals():
        _require_admin()
        return jsonify(_store().list_withdrawals())

    @app.route("/admin/withdrawals/<withdrawal_id>/status", methods=["POST"])
    def admin_withdrawal_status(withdrawal_id):
        admin_id = _require_admin()
        return jsonify(_store().update_withdrawal_status(withdrawal_id, _json_body().get("status", ""), actor=admin_id))

    @app.route("/admin/cards", methods=["GET"])
    def admin_cards():
        _require_admin()
        service = _service()
        cards = _store().list_cards()
        mismatches = find_catalog_mismatches(service.registry, cards, service.cfg.get("surcharge", "0.01"))
        return jsonify({"cards": cards, "registryMismatches": mismatches})

    @app.route("/admin/cards", methods=["POST"])
    def admin_create_card():
        _require_admin()
        body = _json_body()
        card = _store().create_card(
            body.get("title"),
            body.get("price"),
            description=body.get("description"),
            is_active=bool(body.get("is_active", True)),
        )
        return jsonify(card), 201

    @app.route("/admin/cards/<card_id>", methods=["PUT"])
    def admin_update_card(card_id):
        _require_admin()
        body = _json_body()
        card = _store().update_card(
            card_id,
            title=body.get("title"),
            price=body.get("price"),
            description=body.get("description"),
            is_active=body.get("is_active"),
        )
        return jsonify(card)

    return app


if __name__ == "__main__":
    from dotenv import load_dotenv
    from environment_validator import validate_environment_quick

    load_dotenv()
    ok, missing = validate_environment_quick()
    if not ok:
        print(f"⚠️ 必須環境変数が未設定です: {', '.join(missing)}")
    purchase_store.init_db()
    create_app().run(port=int(os.getenv("PORT", "5000")))
