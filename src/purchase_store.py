"""
SQLiteによる永続化（プロフィール・カード・購入・報酬・出金・監査ログ）
購入の検証ステータス更新は pending からのみ許可し、紹介報酬の加算も同じトランザクションで1回だけ行う
"""

import json
import math
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from payment_models import APPROVED, PENDING, TERMINAL_STATUSES, WITHDRAWAL_METHODS
from verification_errors import (
    BadRequest,
    InvalidTransition,
    PersistenceFailure,
    PurchaseNotFound,
)


def _get_db_path() -> str:
    """環境変数から毎回DBパスを取得（テストでの monkeypatch に追従するため）。"""
    return os.getenv("PAYMENT_STATE_DB", "payment_state.db")


def _now() -> str:
    return datetime.utcnow().isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


@contextmanager
def _conn():
    try:
        con = sqlite3.connect(_get_db_path(), timeout=10)
    except sqlite3.Error as e:
        raise PersistenceFailure(f"database unavailable: {e}") from e
    con.row_factory = sqlite3.Row
    try:
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA foreign_keys=ON;")
        yield con
        con.commit()
    except sqlite3.Error as e:
        con.rollback()
        raise PersistenceFailure(str(e)) from e
    finally:
        con.close()


@contextmanager
def _tx():
    """書き込みロックを先に取る明示トランザクション（残高の読み書き用）"""
    try:
        con = sqlite3.connect(_get_db_path(), timeout=10, isolation_level=None)
    except sqlite3.Error as e:
        raise PersistenceFailure(f"database unavailable: {e}") from e
    con.row_factory = sqlite3.Row
    try:
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute("BEGIN IMMEDIATE")
        try:
            yield con
        except BaseException:
            con.execute("ROLLBACK")
            raise
        con.execute("COMMIT")
    except sqlite3.Error as e:
        if con.in_transaction:
            con.execute("ROLLBACK")
        raise PersistenceFailure(str(e)) from e
    finally:
        con.close()


def init_db():
    with _conn() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS profiles (
              id TEXT PRIMARY KEY,
              username TEXT NOT NULL,
              referral_code TEXT NOT NULL UNIQUE,
              referred_by TEXT REFERENCES profiles(id),
              total_earnings REAL NOT NULL DEFAULT 0,
              withdrawable_balance REAL NOT NULL DEFAULT 0,
              is_banned INTEGER NOT NULL DEFAULT 0,
              created_at TEXT
            );
            CREATE TABLE IF NOT EXISTS user_roles (
              user_id TEXT REFERENCES profiles(id),
              role TEXT,
              PRIMARY KEY (user_id, role)
            );
            CREATE TABLE IF NOT EXISTS cards (
              id TEXT PRIMARY KEY,
              title TEXT NOT NULL,
              price REAL NOT NULL,
              description TEXT,
              is_active INTEGER NOT NULL DEFAULT 1,
              created_at TEXT
            );
            CREATE TABLE IF NOT EXISTS purchases (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL REFERENCES profiles(id),
              card_id TEXT NOT NULL REFERENCES cards(id),
              amount REAL NOT NULL,
              commission_to_referrer REAL NOT NULL DEFAULT 0,
              referrer_id TEXT REFERENCES profiles(id),
              payment_screenshot_url TEXT,
              payment_method TEXT,
              verification_status TEXT NOT NULL DEFAULT 'pending'
                CHECK (verification_status IN ('pending', 'approved', 'rejected')),
              credited_at TEXT,
              created_at TEXT
            );
            CREATE TABLE IF NOT EXISTS earnings (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL REFERENCES profiles(id),
              from_user_id TEXT REFERENCES profiles(id),
              purchase_id TEXT NOT NULL UNIQUE REFERENCES purchases(id),
              amount REAL NOT NULL,
              created_at TEXT
            );
            CREATE TABLE IF NOT EXISTS withdrawals (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL REFERENCES profiles(id),
              amount REAL NOT NULL,
              method TEXT NOT NULL,
              account_details TEXT,
              status TEXT NOT NULL DEFAULT 'pending',
              created_at TEXT
            );
            CREATE TABLE IF NOT EXISTS audit_log (
              ts TEXT,
              level TEXT,
              actor TEXT,
              action TEXT,
              target_ids TEXT,
              score INTEGER,
              result TEXT,
              error TEXT
            );
            """
        )


# --- 監査ログ ---------------------------------------------------------------

def _insert_audit(con, level: str, actor: str, action: str, target_ids: list, score, result: str, error: str | None = None):
    con.execute(
        "INSERT INTO audit_log(ts, level, actor, action, target_ids, score, result, error) VALUES (?,?,?,?,?,?,?,?)",
        (_now(), level, actor, action, json.dumps(target_ids), score, result, error),
    )


def write_audit(level: str, actor: str, action: str, target_ids: list, score, result: str, error: str | None = None):
    with _conn() as con:
        _insert_audit(con, level, actor, action, target_ids, score, result, error)


def list_audit(action: Optional[str] = None, limit: int = 100) -> List[Dict]:
    with _conn() as con:
        if action:
            cur = con.execute("SELECT * FROM audit_log WHERE action=? ORDER BY rowid DESC LIMIT ?", (action, limit))
        else:
            cur = con.execute("SELECT * FROM audit_log ORDER BY rowid DESC LIMIT ?", (limit,))
        rows = []
        for r in cur.fetchall():
            row = dict(r)
            row["target_ids"] = json.loads(row["target_ids"] or "[]")
            rows.append(row)
        return rows


# --- プロフィール -----------------------------------------------------------

def _profile_dict(row) -> Dict:
    d = dict(row)
    d["is_banned"] = bool(d["is_banned"])
    return d


def _generate_referral_code() -> str:
    return uuid.uuid4().hex[:8].upper()


def create_profile(username: str, referral_code: Optional[str] = None, user_id: Optional[str] = None) -> Dict:
    """プロフィール作成。紹介コードが既存ユーザーのものなら referred_by を設定する（不明なコードは無視）"""
    if not username or not str(username).strip():
        raise BadRequest("username is required")
    user_id = user_id or _new_id()
    with _conn() as con:
        referred_by = None
        if referral_code:
            cur = con.execute("SELECT id FROM profiles WHERE referral_code=?", (referral_code.strip().upper(),))
            row = cur.fetchone()
            if row:
                referred_by = row["id"]
        for _ in range(5):
            code = _generate_referral_code()
            try:
                con.execute(
                    "INSERT INTO profiles(id, username, referral_code, referred_by, created_at) VALUES (?,?,?,?,?)",
                    (user_id, username.strip(), code, referred_by, _now()),
                )
                break
            except sqlite3.IntegrityError:
                # コード衝突時は再生成（ID重複はそのまま失敗させる）
                if con.execute("SELECT 1 FROM profiles WHERE id=?", (user_id,)).fetchone():
                    raise BadRequest(f"profile already exists: {user_id}")
        else:
            raise PersistenceFailure("could not allocate a unique referral code")
        cur = con.execute("SELECT * FROM profiles WHERE id=?", (user_id,))
        return _profile_dict(cur.fetchone())


def get_profile(user_id: str) -> Optional[Dict]:
    with _conn() as con:
        cur = con.execute("SELECT * FROM profiles WHERE id=?", (user_id,))
        row = cur.fetchone()
        return _profile_dict(row) if row else None


def list_profiles() -> List[Dict]:
    with _conn() as con:
        cur = con.execute("SELECT * FROM profiles ORDER BY created_at DESC")
        return [_profile_dict(r) for r in cur.fetchall()]


def set_banned(user_id: str, banned: bool) -> Dict:
    with _conn() as con:
        cur = con.execute("UPDATE profiles SET is_banned=? WHERE id=?", (1 if banned else 0, user_id))
        if cur.rowcount == 0:
            raise BadRequest(f"unknown user: {user_id}")
        _insert_audit(con, "INFO", "admin", "ban" if banned else "unban", [user_id], None, "updated")
        row = con.execute("SELECT * FROM profiles WHERE id=?", (user_id,)).fetchone()
        return _profile_dict(row)


def grant_role(user_id: str, role: str):
    with _conn() as con:
        con.execute("INSERT OR IGNORE INTO user_roles(user_id, role) VALUES (?,?)", (user_id, role))


def has_role(user_id: str, role: str) -> bool:
    if not user_id:
        return False
    with _conn() as con:
        cur = con.execute("SELECT 1 FROM user_roles WHERE user_id=? AND role=?", (user_id, role))
        return cur.fetchone() is not None


def has_approved_purchase(user_id: str) -> bool:
    with _conn() as con:
        cur = con.execute(
            "SELECT 1 FROM purchases WHERE user_id=? AND verification_status=? LIMIT 1",
            (user_id, APPROVED),
        )
        return cur.fetchone() is not None


# --- カード -----------------------------------------------------------------

def _card_dict(row) -> Dict:
    d = dict(row)
    d["is_active"] = bool(d["is_active"])
    return d


def _validate_card_fields(title, price):
    if title is not None and not str(title).strip():
        raise BadRequest("title is required")
    if price is not None:
        try:
            price = float(price)
        except (TypeError, ValueError):
            raise BadRequest("price must be a number")
        if not math.isfinite(price) or price <= 0:
            raise BadRequest("price must be a positive number")
    return price


def create_card(title: str, price, description: Optional[str] = None, is_active: bool = True) -> Dict:
    if title is None or price is None:
        raise BadRequest("title and price are required")
    price = _validate_card_fields(title, price)
    card_id = _new_id()
    with _conn() as con:
        con.execute(
            "INSERT INTO cards(id, title, price, description, is_active, created_at) VALUES (?,?,?,?,?,?)",
            (card_id, title.strip(), price, description, 1 if is_active else 0, _now()),
        )
        _insert_audit(con, "INFO", "admin", "card_create", [card_id], None, "created")
        return _card_dict(con.execute("SELECT * FROM cards WHERE id=?", (card_id,)).fetchone())


def update_card(card_id: str, title=None, price=None, description=None, is_active=None) -> Dict:
    price = _validate_card_fields(title, price)
    fields = {}
    if title is not None:
        fields["title"] = title.strip()
    if price is not None:
        fields["price"] = price
    if description is not None:
        fields["description"] = description
    if is_active is not None:
        fields["is_active"] = 1 if is_active else 0
    with _conn() as con:
        if fields:
            assignments = ", ".join(f"{k}=?" for k in fields)
            cur = con.execute(f"UPDATE cards SET {assignments} WHERE id=?", (*fields.values(), card_id))
            if cur.rowcount == 0:
                raise BadRequest(f"unknown card: {card_id}")
            _insert_audit(con, "INFO", "admin", "card_update", [card_id], None, json.dumps(sorted(fields)))
        row = con.execute("SELECT * FROM cards WHERE id=?", (card_id,)).fetchone()
        if not row:
            raise BadRequest(f"unknown card: {card_id}")
        return _card_dict(row)


def get_card(card_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM cards WHERE id=?", (card_id,)).fetchone()
        return _card_dict(row) if row else None


def list_cards(active_only: bool = False) -> List[Dict]:
    with _conn() as con:
        if active_only:
            cur = con.execute("SELECT * FROM cards WHERE is_active=1 ORDER BY price ASC")
        else:
            cur = con.execute("SELECT * FROM cards ORDER BY price ASC")
        return [_card_dict(r) for r in cur.fetchall()]


# --- 購入 -------------------------------------------------------------------

def process_purchase(card_id: str, user_id: str, commission_rate: float = 0.5) -> Dict:
    """購入レコードを pending で作成する

    紹介者がいれば commission_to_referrer = 価格 × commission_rate を記録する。
    """
    with _tx() as con:
        card = con.execute("SELECT * FROM cards WHERE id=?", (card_id,)).fetchone()
        if not card or not card["is_active"]:
            raise BadRequest("Card is not available for purchase")
        profile = con.execute("SELECT * FROM profiles WHERE id=?", (user_id,)).fetchone()
        if not profile:
            raise BadRequest(f"unknown user: {user_id}")
        if profile["is_banned"]:
            raise BadRequest("User is banned")

        referrer_id = profile["referred_by"]
        commission = round(card["price"] * commission_rate, 2) if referrer_id else 0.0
        purchase_id = _new_id()
        con.execute(
            "INSERT INTO purchases(id, user_id, card_id, amount, commission_to_referrer, referrer_id, verification_status, created_at)"
            " VALUES (?,?,?,?,?,?,?,?)",
            (purchase_id, user_id, card_id, card["price"], commission, referrer_id, PENDING, _now()),
        )
        _insert_audit(con, "INFO", user_id, "purchase_create", [purchase_id, card_id], None, PENDING)
    return {"purchase_id": purchase_id, "amount": card["price"], "commission": commission}


def attach_screenshot(purchase_id: str, screenshot_path: str, payment_method: str = "manual") -> Dict:
    """スクリーンショットのストレージパスを記録（ステータスは pending のまま）"""
    with _conn() as con:
        cur = con.execute(
            "UPDATE purchases SET payment_screenshot_url=?, payment_method=? WHERE id=? AND verification_status=?",
            (screenshot_path, payment_method, purchase_id, PENDING),
        )
        if cur.rowcount == 0:
            row = con.execute("SELECT verification_status FROM purchases WHERE id=?", (purchase_id,)).fetchone()
            if not row:
                raise PurchaseNotFound(f"Purchase not found: {purchase_id}")
            raise InvalidTransition(f"Purchase already {row['verification_status']}")
        return dict(con.execute("SELECT * FROM purchases WHERE id=?", (purchase_id,)).fetchone())


def get_purchase(purchase_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM purchases WHERE id=?", (purchase_id,)).fetchone()
        return dict(row) if row else None


def list_purchases(user_id: Optional[str] = None) -> List[Dict]:
    query = (
        "SELECT p.*, pr.username AS username, c.title AS card_title"
        " FROM purchases p"
        " LEFT JOIN profiles pr ON pr.id = p.user_id"
        " LEFT JOIN cards c ON c.id = p.card_id"
    )
    params: tuple = ()
    if user_id:
        query += " WHERE p.user_id=?"
        params = (user_id,)
    query += " ORDER BY p.created_at DESC"
    with _conn() as con:
        return [dict(r) for r in con.execute(query, params).fetchall()]


def purchase_stats() -> Dict:
    with _conn() as con:
        row = con.execute(
            "SELECT COUNT(*) AS total, COALESCE(SUM(amount), 0) AS total_amount,"
            " COALESCE(SUM(commission_to_referrer), 0) AS total_commission FROM purchases"
        ).fetchone()
        return {
            "total": row["total"],
            "totalAmount": round(row["total_amount"], 2),
            "totalCommission": round(row["total_commission"], 2),
        }


def transition_verification_status(purchase_id: str, new_status: str, actor: str = "system") -> Dict:
    """pending からのみ approved/rejected へ遷移させる

    approved への遷移時、紹介者がいれば同一トランザクション内で報酬を1回だけ加算する。

    Returns:
        dict: transitioned（今回遷移したか）, previous_status, status, credited（加算額）
    """
    if new_status not in TERMINAL_STATUSES:
        raise BadRequest(f"invalid verification status: {new_status}")

    with _tx() as con:
        row = con.execute("SELECT * FROM purchases WHERE id=?", (purchase_id,)).fetchone()
        if not row:
            raise PurchaseNotFound(f"Purchase not found: {purchase_id}")
        previous = row["verification_status"]
        if previous != PENDING:
            return {"transitioned": False, "previous_status": previous, "status": previous, "credited": 0.0}

        cur = con.execute(
            "UPDATE purchases SET verification_status=? WHERE id=? AND verification_status=?",
            (new_status, purchase_id, PENDING),
        )
        if cur.rowcount != 1:
            current = con.execute("SELECT verification_status FROM purchases WHERE id=?", (purchase_id,)).fetchone()
            return {"transitioned": False, "previous_status": previous, "status": current["verification_status"], "credited": 0.0}

        credited = 0.0
        if new_status == APPROVED:
            credited = _apply_referral_credit(con, row)
        _insert_audit(con, "INFO", actor, f"verification:{new_status}", [purchase_id], None, "transitioned")
    return {"transitioned": True, "previous_status": previous, "status": new_status, "credited": credited}


def _apply_referral_credit(con, purchase) -> float:
    referrer_id = purchase["referrer_id"]
    commission = purchase["commission_to_referrer"] or 0
    if not referrer_id or commission <= 0 or purchase["credited_at"]:
        return 0.0
    try:
        con.execute(
            "INSERT INTO earnings(id, user_id, from_user_id, purchase_id, amount, created_at) VALUES (?,?,?,?,?,?)",
            (_new_id(), referrer_id, purchase["user_id"], purchase["id"], commission, _now()),
        )
    except sqlite3.IntegrityError:
        # earnings.purchase_id はUNIQUE：既に加算済み
        _insert_audit(con, "WARNING", "system", "ledger_credit", [purchase["id"], referrer_id], None, "already_credited")
        return 0.0
    con.execute(
        "UPDATE profiles SET total_earnings = total_earnings + ?, withdrawable_balance = withdrawable_balance + ? WHERE id=?",
        (commission, commission, referrer_id),
    )
    con.execute("UPDATE purchases SET credited_at=? WHERE id=?", (_now(), purchase["id"]))
    _insert_audit(con, "INFO", "system", "ledger_credit", [purchase["id"], referrer_id], None, f"credited:{commission}")
    return float(commission)


# --- 出金 -------------------------------------------------------------------

def _validate_account_details(method: str, details: Dict) -> Dict:
    details = details or {}
    if method == "bank":
        required = ("accountNumber", "ifscCode", "accountName")
    else:
        required = ("upiId",)
    missing = [k for k in required if not str(details.get(k, "")).strip()]
    if missing:
        raise BadRequest(f"missing account details: {', '.join(missing)}")
    return {k: str(details[k]).strip() for k in required}


def request_withdrawal(user_id: str, amount, method: str, account_details: Dict, min_withdrawal: float = 100) -> Dict:
    """出金申請を作成し、同じトランザクションで出金可能残高から差し引く"""
    try:
        amount = round(float(amount), 2)
    except (TypeError, ValueError):
        raise BadRequest("amount must be a number")
    if not math.isfinite(amount):
        raise BadRequest("amount must be a number")
    if method not in WITHDRAWAL_METHODS:
        raise BadRequest(f"method must be one of {', '.join(WITHDRAWAL_METHODS)}")
    if amount < min_withdrawal:
        raise BadRequest(f"Minimum withdrawal amount is ₹{min_withdrawal:g}")
    details = _validate_account_details(method, account_details)

    withdrawal_id = _new_id()
    with _tx() as con:
        profile = con.execute("SELECT * FROM profiles WHERE id=?", (user_id,)).fetchone()
        if not profile:
            raise BadRequest(f"unknown user: {user_id}")
        if profile["is_banned"]:
            raise BadRequest("User is banned")
        if amount > profile["withdrawable_balance"]:
            raise BadRequest("Insufficient balance")
        con.execute(
            "INSERT INTO withdrawals(id, user_id, amount, method, account_details, status, created_at) VALUES (?,?,?,?,?,?,?)",
            (withdrawal_id, user_id, amount, method, json.dumps(details), "pending", _now()),
        )
        con.execute("UPDATE profiles SET withdrawable_balance = withdrawable_balance - ? WHERE id=?", (amount, user_id))
        _insert_audit(con, "INFO", user_id, "withdrawal_request", [withdrawal_id], None, "pending")
    return get_withdrawal(withdrawal_id)


def _withdrawal_dict(row) -> Dict:
    d = dict(row)
    d["account_details"] = json.loads(d.get("account_details") or "{}")
    return d


def get_withdrawal(withdrawal_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM withdrawals WHERE id=?", (withdrawal_id,)).fetchone()
        return _withdrawal_dict(row) if row else None


def list_withdrawals(user_id: Optional[str] = None) -> List[Dict]:
    query = "SELECT w.*, p.username AS username FROM withdrawals w LEFT JOIN profiles p ON p.id = w.user_id"
    params: tuple = ()
    if user_id:
        query += " WHERE w.user_id=?"
        params = (user_id,)
    query += " ORDER BY w.created_at DESC"
    with _conn() as con:
        return [_withdrawal_dict(r) for r in con.execute(query, params).fetchall()]


def update_withdrawal_status(withdrawal_id: str, status: str, actor: str = "admin") -> Dict:
    """pending の出金を completed / rejected にする。rejected は残高へ戻す"""
    if status not in ("completed", "rejected"):
        raise BadRequest(f"invalid withdrawal status: {status}")
    with _tx() as con:
        row = con.execute("SELECT * FROM withdrawals WHERE id=?", (withdrawal_id,)).fetchone()
        if not row:
            raise BadRequest(f"unknown withdrawal: {withdrawal_id}")
        if row["status"] == status:
            return _withdrawal_dict(row)
        if row["status"] != "pending":
            raise InvalidTransition(f"Withdrawal already {row['status']}")
        con.execute("UPDATE withdrawals SET status=? WHERE id=? AND status='pending'", (status, withdrawal_id))
        if status == "rejected":
            con.execute(
                "UPDATE profiles SET withdrawable_balance = withdrawable_balance + ? WHERE id=?",
                (row["amount"], row["user_id"]),
            )
        _insert_audit(con, "INFO", actor, f"withdrawal:{status}", [withdrawal_id, row["user_id"]], None, "updated")
    return get_withdrawal(withdrawal_id)


# --- 分析 -------------------------------------------------------------------

def user_analytics(user_id: str) -> Dict:
    with _conn() as con:
        referrals = con.execute("SELECT COUNT(*) FROM profiles WHERE referred_by=?", (user_id,)).fetchone()[0]
        purchases = con.execute("SELECT COUNT(*) FROM purchases WHERE referrer_id=?", (user_id,)).fetchone()[0]
        profile = con.execute("SELECT total_earnings FROM profiles WHERE id=?", (user_id,)).fetchone()
        cur = con.execute(
            "SELECT e.*, p.username AS from_username FROM earnings e"
            " LEFT JOIN profiles p ON p.id = e.from_user_id"
            " WHERE e.user_id=? ORDER BY e.created_at DESC LIMIT 10",
            (user_id,),
        )
        recent = [dict(r) for r in cur.fetchall()]
    return {
        "totalReferrals": referrals,
        "totalPurchases": purchases,
        "totalEarnings": profile["total_earnings"] if profile else 0,
        "recentEarnings": recent,
    }
