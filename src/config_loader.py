import copy
import os
import yaml


DEFAULTS = {
    "card_amounts": {
        "100.01": "Starter Card",
        "200.01": "Silver Card",
        "300.01": "Gold Card",
        "400.01": "Premium Card",
        "500.01": "Platinum Card",
    },
    "surcharge": "0.01",
    "classifier": {
        "provider": "gateway",
        "endpoint": "https://ai.gateway.lovable.dev/v1/chat/completions",
        "model": "google/gemini-2.5-flash",
        "anthropic_model": "claude-3-5-sonnet-20241022",
        "max_tokens": 200,
        "timeout_seconds": 30,
        "max_retries": 1,
    },
    "verification": {"not_found_policy": "reject", "lock_timeout_seconds": 120},
    "ledger": {"commission_rate": 0.5, "min_withdrawal": 100},
    "payee": {"upi_id": "", "account_holder": "", "bank_name": "", "account_number": ""},
    "storage": {"public_base_url": "http://localhost:5000/storage/payment-proofs"},
    "site": {"public_base_url": "http://localhost:5000"},
}


def _config_path() -> str:
    default = os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "verification.yml")
    return os.getenv("VERIFICATION_CONFIG", default)


def load_verification_config() -> dict:
    path = _config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return copy.deepcopy(DEFAULTS)

    # shallow merge defaults (card_amounts is replaced, not merged)
    merged = copy.deepcopy(DEFAULTS)
    for k, v in (cfg or {}).items():
        if k != "card_amounts" and isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged
