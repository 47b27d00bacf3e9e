from card_registry import AmountCardRegistry
from payment_models import APPROVED, REJECTED, VerificationDecision


INVALID_AMOUNT_REASON = "Payment not verified - invalid amount."
MISMATCH_REASON = "Card name or amount mismatch."


def normalize_card_name(text) -> str:
    if not text:
        return ""
    return str(text).strip().casefold()


def decide_verification(
    extracted_amount: str,
    extracted_card_name: str,
    user_selected_card_title: str,
    expected_amount: str,
    registry: AmountCardRegistry,
) -> VerificationDecision:
    """抽出結果・レジストリ・ユーザー選択の3者一致で承認/却下を決める

    expected_amount はレスポンスに返すだけで、照合には使わない。
    金額の正否は抽出金額がレジストリにあるかどうかだけで判定する。
    """
    if not registry.is_valid_amount(extracted_amount):
        return VerificationDecision(approved=False, status=REJECTED, reason=INVALID_AMOUNT_REASON)

    extracted = normalize_card_name(extracted_card_name)
    expected = normalize_card_name(registry.expected_card_for(extracted_amount))
    selected = normalize_card_name(user_selected_card_title)

    if extracted == expected and extracted == selected:
        return VerificationDecision(approved=True, status=APPROVED, reason="")
    return VerificationDecision(approved=False, status=REJECTED, reason=MISMATCH_REASON)
