#!/usr/bin/env python
"""
購入ごとの検証ロック
同じ購入に対する検証の同時実行を防ぐ（ワーカープロセスをまたいでも有効なロックファイル方式）
"""

import json
import os
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from verification_errors import VerificationInProgress


class PurchaseVerificationLock:
    """購入IDごとの実行ロック管理クラス"""

    def __init__(self, purchase_id: str, lock_dir: str = ".locks", timeout: int = 120):
        """
        Args:
            purchase_id: 購入ID
            lock_dir: ロックファイルを置くディレクトリ
            timeout: ロックのタイムアウト時間（秒）。これを過ぎたロックは放棄されたものとみなす
        """
        self.purchase_id = purchase_id
        self.timeout = timeout
        self.lock_dir = lock_dir
        safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", str(purchase_id))
        self.lock_file = os.path.join(lock_dir, f".verify_{safe_name}_lock.json")
        self._held = False
        self._timestamp = None

    def acquire_lock(self, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """ロックを取得する

        Returns:
            bool: ロック取得成功時True
        """
        os.makedirs(self.lock_dir, exist_ok=True)
        if self._try_create(metadata or {}):
            return True

        # 既存のロックを確認
        existing_lock = self._load_lock()
        if existing_lock is not None:
            lock_time = self._lock_time(existing_lock)
            if datetime.now() - lock_time < timedelta(seconds=self.timeout):
                # まだ有効なロック
                return False
            print(f"⏰ 検証ロックがタイムアウトしました: {self.purchase_id}")
        self._remove_lock()
        return self._try_create(metadata or {})

    def release_lock(self) -> bool:
        if not self._held:
            print(f"⚠️ ロックを保持していません: {self.purchase_id}")
            return False
        current = self._load_lock() or {}
        if current.get("pid") != os.getpid() or current.get("timestamp") != self._timestamp:
            # タイムアウト後に他のプロセスへ引き継がれたロックは消さない
            print(f"⚠️ ロックは既に他の実行に引き継がれています: {self.purchase_id}")
            self._held = False
            return False
        self._remove_lock()
        self._held = False
        print(f"🔓 検証ロックを解除しました: {self.purchase_id}")
        return True

    def get_lock_info(self) -> Optional[Dict[str, Any]]:
        """現在のロック情報を取得"""
        return self._load_lock()

    def __enter__(self):
        if not self.acquire_lock({"pid": os.getpid()}):
            raise VerificationInProgress(f"Verification already in progress for purchase {self.purchase_id}")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release_lock()
        return False

    def _try_create(self, metadata: Dict[str, Any]) -> bool:
        lock_data = {
            "purchase_id": self.purchase_id,
            "pid": os.getpid(),
            "timestamp": datetime.now().isoformat(),
            "timeout": self.timeout,
            "metadata": metadata,
        }
        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(lock_data, f, ensure_ascii=False, indent=2)
        self._held = True
        self._timestamp = lock_data["timestamp"]
        print(f"🔒 検証ロックを取得しました: {self.purchase_id}")
        return True

    def _load_lock(self) -> Optional[Dict[str, Any]]:
        """ロックファイルを読み込み"""
        try:
            with open(self.lock_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            # 書き込み途中。時刻はファイルの更新時刻で判断する
            return {}

    def _lock_time(self, lock_data: Dict[str, Any]) -> datetime:
        try:
            return datetime.fromisoformat(lock_data["timestamp"])
        except (KeyError, ValueError):
            pass
        try:
            return datetime.fromtimestamp(os.path.getmtime(self.lock_file))
        except OSError:
            return datetime.min

    def _remove_lock(self):
        """ロックファイルを削除"""
        try:
            os.remove(self.lock_file)
        except FileNotFoundError:
            pass
