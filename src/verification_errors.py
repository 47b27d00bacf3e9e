"""
決済検証で使う例外クラス
HTTP層ではstatus_codeをそのままレスポンスに使う
"""


class PaymentVerificationError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class BadRequest(PaymentVerificationError):
    """入力不備（外部呼び出し前に拒否）"""
    status_code = 400


class PurchaseNotFound(PaymentVerificationError):
    status_code = 404


class InvalidTransition(PaymentVerificationError):
    status_code = 409


class VerificationInProgress(PaymentVerificationError):
    status_code = 409


class ClassifierUnavailable(PaymentVerificationError):
    """通信エラー・タイムアウト・2xx以外 → 手動レビュー扱い"""
    status_code = 503


class ExtractionFormatError(PaymentVerificationError):
    """分類器の応答がJSON契約に沿っていない → 手動レビュー扱い"""
    status_code = 503


class UnknownAmount(PaymentVerificationError):
    status_code = 400

    def __init__(self, amount: str):
        super().__init__(f"Unknown amount: {amount}")
        self.amount = amount


class PersistenceFailure(PaymentVerificationError):
    """状態の書き込み失敗。握りつぶさずに呼び出し元へ返す"""
    status_code = 500
