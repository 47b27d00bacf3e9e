from dataclasses import dataclass


PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

TERMINAL_STATUSES = (APPROVED, REJECTED)

NOT_FOUND = "not_found"

WITHDRAWAL_METHODS = ("bank", "upi", "paytm")


@dataclass
class ExtractionResult:
    amount: str
    card_name: str

    @property
    def is_not_found(self) -> bool:
        return self.amount == NOT_FOUND


@dataclass
class VerificationDecision:
    approved: bool
    status: str  # approved|rejected
    reason: str


@dataclass
class VerificationRequest:
    screenshot_url: str
    purchase_id: str
    card_title: str
    expected_amount: str
