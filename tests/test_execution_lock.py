import json
import os
import sys
from datetime import datetime, timedelta

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from execution_lock import PurchaseVerificationLock
from verification_errors import VerificationInProgress


def test_second_lock_for_same_purchase_is_refused(tmp_path):
    first = PurchaseVerificationLock("p-1", str(tmp_path))
    second = PurchaseVerificationLock("p-1", str(tmp_path))

    assert first.acquire_lock({"worker": 1})
    assert not second.acquire_lock()
    assert first.get_lock_info()["metadata"] == {"worker": 1}

    assert first.release_lock()
    assert second.acquire_lock()
    second.release_lock()


def test_locks_are_per_purchase(tmp_path):
    a = PurchaseVerificationLock("p-1", str(tmp_path))
    b = PurchaseVerificationLock("p-2", str(tmp_path))
    assert a.acquire_lock()
    assert b.acquire_lock()
    a.release_lock()
    b.release_lock()


def test_release_without_holding_does_not_remove_others_lock(tmp_path):
    holder = PurchaseVerificationLock("p-1", str(tmp_path))
    other = PurchaseVerificationLock("p-1", str(tmp_path))
    holder.acquire_lock()

    assert other.release_lock() is False
    assert holder.get_lock_info() is not None
    holder.release_lock()


def test_stale_lock_is_taken_over(tmp_path):
    lock = PurchaseVerificationLock("p-1", str(tmp_path), timeout=60)
    stale = {"purchase_id": "p-1", "timestamp": (datetime.now() - timedelta(seconds=120)).isoformat()}
    with open(lock.lock_file, "w", encoding="utf-8") as f:
        json.dump(stale, f)

    assert lock.acquire_lock()
    assert lock.get_lock_info()["timestamp"] != stale["timestamp"]
    lock.release_lock()


def test_release_after_takeover_keeps_new_holders_lock(tmp_path):
    original = PurchaseVerificationLock("p-1", str(tmp_path), timeout=60)
    assert original.acquire_lock()

    # タイムアウト後に別プロセスが引き継いだ状態
    takeover = {"purchase_id": "p-1", "pid": os.getpid() + 1, "timestamp": datetime.now().isoformat()}
    with open(original.lock_file, "w", encoding="utf-8") as f:
        json.dump(takeover, f)

    assert original.release_lock() is False
    assert original.get_lock_info()["pid"] == takeover["pid"]
    assert original.release_lock() is False


def test_context_manager_raises_when_busy_and_cleans_up(tmp_path):
    with PurchaseVerificationLock("p/../1", str(tmp_path)) as lock:
        assert os.path.dirname(lock.lock_file) == str(tmp_path)
        with pytest.raises(VerificationInProgress):
            with PurchaseVerificationLock("p/../1", str(tmp_path)):
                pass
    assert not os.path.exists(lock.lock_file)
