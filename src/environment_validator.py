"""
環境変数検証 - 決済スクリーンショット検証サービス用

起動時に必須/オプションの環境変数をチェックし、結果をレポートする。
"""

import json
import os
import re
from datetime import datetime
from typing import Dict, List, Tuple


class EnvironmentValidator:
    """環境変数の完全性チェックと検証を行うクラス"""

    # 必須環境変数の定義
    REQUIRED_VARS = {
        "CLASSIFIER_API_KEY": {
            "description": "画像解析モデルのAPIキー（ゲートウェイ or Anthropic）",
            "pattern": r"^\S{16,}$",
            "example": "sk-ant-REDACTED",
        },
    }

    # オプション環境変数
    OPTIONAL_VARS = {
        "CLASSIFIER_PROVIDER": {
            "description": "分類器の種類 (gateway/anthropic)",
            "pattern": r"^(gateway|anthropic)$",
        },
        "PAYMENT_STATE_DB": {
            "description": "SQLiteデータベースのパス",
            "pattern": r"^.+\.db$",
        },
        "SCREENSHOT_DIR": {
            "description": "スクリーンショット保存ディレクトリ",
            "pattern": r"^.+$",
        },
        "SCREENSHOT_PUBLIC_BASE_URL": {
            "description": "スクリーンショット公開URLのプレフィックス",
            "pattern": r"^https?://\S+$",
        },
        "SLACK_WEBHOOK_URL": {
            "description": "手動レビュー通知用 Slack Webhook",
            "pattern": r"^https://hooks\.slack\.com/\S+$",
        },
        "VERIFICATION_CONFIG": {
            "description": "verification.yml のパス",
            "pattern": r"^.+\.ya?ml$",
        },
    }

    def __init__(self):
        self.validation_results = {}
        self.missing_vars = []
        self.invalid_vars = []
        self.warnings = []

    def validate_all(self) -> Dict:
        """全環境変数の検証を実行"""
        print("\n" + "=" * 60)
        print("🔍 環境変数チェック開始")
        print("=" * 60)

        self._validate_required_vars()
        self._validate_optional_vars()
        results = self._compile_results()
        self._display_report(results)
        return results

    def _validate_required_vars(self):
        print("\n📋 必須環境変数の確認:")
        for var_name, config in self.REQUIRED_VARS.items():
            value = os.getenv(var_name)
            if not value:
                self.missing_vars.append(var_name)
                print(f"  ❌ {var_name}: 未設定")
                continue

            if not re.match(config["pattern"], value):
                self.invalid_vars.append({
                    "name": var_name,
                    "issue": "フォーマット不正",
                    "expected": config["example"],
                })
                print(f"  ⚠️  {var_name}: 設定済み (⚠️フォーマット検証失敗)")
            else:
                print(f"  ✅ {var_name}: 設定済み・検証OK")

            self.validation_results[var_name] = {
                "status": "ok" if re.match(config["pattern"], value) else "invalid",
                "length": len(value),
                "description": config["description"],
            }

    def _validate_optional_vars(self):
        print("\n🔧 オプション環境変数の確認:")
        for var_name, config in self.OPTIONAL_VARS.items():
            value = os.getenv(var_name)
            if not value:
                print(f"  ⚪ {var_name}: 未設定 (オプション)")
                self.validation_results[var_name] = {
                    "status": "optional_missing",
                    "description": config["description"],
                }
                continue

            ok = bool(re.match(config["pattern"], value))
            if not ok:
                self.warnings.append({
                    "name": var_name,
                    "issue": "フォーマット警告",
                    "description": config["description"],
                })
                print(f"  ⚠️  {var_name}: 設定済み (⚠️フォーマット警告)")
            else:
                print(f"  ✅ {var_name}: 設定済み・検証OK")

            self.validation_results[var_name] = {
                "status": "ok" if ok else "warning",
                "length": len(value),
                "description": config["description"],
            }

    def _compile_results(self) -> Dict:
        return {
            "timestamp": datetime.now().isoformat(),
            "status": "pass" if not self.missing_vars and not self.invalid_vars else "fail",
            "missing_required": self.missing_vars,
            "invalid_format": self.invalid_vars,
            "warnings": self.warnings,
            "details": self.validation_results,
            "summary": {
                "required_ok": len([v for v in self.REQUIRED_VARS
                                    if self.validation_results.get(v, {}).get("status") == "ok"]),
                "required_total": len(self.REQUIRED_VARS),
                "optional_set": len([v for v in self.OPTIONAL_VARS
                                     if self.validation_results.get(v, {}).get("status") in ["ok", "warning"]]),
            },
        }

    def _display_report(self, results: Dict):
        print("\n" + "=" * 60)
        print("📊 検証結果サマリー")
        print("=" * 60)

        summary = results["summary"]
        print(f"✅ 必須変数: {summary['required_ok']}/{summary['required_total']} 正常")
        print(f"🔧 オプション変数: {summary['optional_set']} 設定済み")

        if results["status"] == "pass":
            print("\n🎉 環境変数検証: 合格")
            return

        print("\n❌ 環境変数検証: 失敗")
        for var in self.missing_vars:
            config = self.REQUIRED_VARS[var]
            print(f"\n  {var}:")
            print(f"    説明: {config['description']}")
            print(f"    例: {config['example']}")
            print(f"    設定方法: export {var}=\"実際の値\" または .env に記載")
        for var_info in self.invalid_vars:
            print(f"\n  {var_info['name']}: {var_info['issue']} (期待値例: {var_info['expected']})")

    def save_report(self, file_path: str = "environment_validation_report.json"):
        results = self._compile_results()
        with open(file_path, "w", encoding="utf-8") as f:
            json.dump(results, f, indent=2, ensure_ascii=False)
        print(f"\n💾 検証レポートを {file_path} に保存しました")
        return file_path


def validate_environment_quick() -> Tuple[bool, List[str]]:
    """他のモジュールから呼び出すためのクイック検証関数"""
    missing = [name for name in EnvironmentValidator.REQUIRED_VARS if not os.getenv(name)]
    return len(missing) == 0, missing


def validate_environment_full() -> Dict:
    return EnvironmentValidator().validate_all()


if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    print("🚀 決済検証サービス - 環境変数検証ツール")
    validator = EnvironmentValidator()
    results = validator.validate_all()
    validator.save_report()
    raise SystemExit(0 if results["status"] == "pass" else 1)
