"""
決済スクリーンショットの保存先（payment-proofs バケット相当のローカルディレクトリ）
DBにはパスのみを保存し、公開URLは都度組み立てる
"""

import os
import re
import time
from pathlib import Path
from typing import Optional


ALLOWED_EXTENSIONS = {"png", "jpg", "jpeg", "webp", "gif", "heic"}


class ScreenshotStorage:
    def __init__(self, root_dir: str, public_base_url: str):
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def save(self, user_id: str, original_filename: str, data: bytes) -> str:
        """{user_id}/{epoch_ms}.{ext} に保存してストレージパスを返す"""
        ext = (original_filename.rsplit(".", 1)[-1] if "." in original_filename else "").lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise ValueError(f"unsupported screenshot type: .{ext}")
        if not data:
            raise ValueError("empty screenshot upload")
        safe_user = re.sub(r"[^A-Za-z0-9_-]", "_", str(user_id))
        path = f"{safe_user}/{int(time.time() * 1000)}.{ext}"
        target = self.root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as f:
            f.write(data)
        print(f"📷 スクリーンショット保存: {path} ({len(data)} bytes)")
        return path

    def public_url(self, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        return f"{self.public_base_url}/{path}"

    def local_path(self, path: str) -> str:
        return os.fspath(self.root / path)
