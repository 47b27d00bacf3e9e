import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from card_registry import AmountCardRegistry, expected_amount_for, find_catalog_mismatches
from config_loader import DEFAULTS, load_verification_config
from verification_errors import UnknownAmount


REGISTRY = AmountCardRegistry(DEFAULTS["card_amounts"])

CATALOG = [
    {"id": "c1", "title": "Starter Card", "price": 100},
    {"id": "c2", "title": "Silver Card", "price": 200},
    {"id": "c3", "title": "Gold Card", "price": 300},
    {"id": "c4", "title": "Premium Card", "price": 400},
    {"id": "c5", "title": "Platinum Card", "price": 500},
]


@pytest.mark.parametrize("price, expected", [
    (100, "100.01"),
    (500, "500.01"),
    (99.99, "100.00"),
    ("250", "250.01"),
    (0.1, "0.11"),
])
def test_expected_amount_is_price_plus_surcharge_two_decimals(price, expected):
    assert expected_amount_for(price) == expected


def test_every_catalog_card_maps_to_its_own_title():
    for card in CATALOG:
        amount = expected_amount_for(card["price"])
        assert REGISTRY.is_valid_amount(amount)
        assert REGISTRY.expected_card_for(amount) == card["title"]


def test_examples_from_catalog():
    assert REGISTRY.expected_card_for(expected_amount_for(100)) == "Starter Card"
    assert REGISTRY.expected_card_for(expected_amount_for(500)) == "Platinum Card"


def test_unknown_amount_raises():
    with pytest.raises(UnknownAmount):
        REGISTRY.expected_card_for("250.01")
    assert REGISTRY.get("250.01") is None


def test_membership_is_exact_string_equality():
    assert not REGISTRY.is_valid_amount("100.1")
    assert not REGISTRY.is_valid_amount("100.010")
    assert not REGISTRY.is_valid_amount(100.01)
    assert not REGISTRY.is_valid_amount("not_found")
    assert "300.01" in REGISTRY


def test_registry_is_immutable_and_ordered():
    table = REGISTRY.as_dict()
    table["999.01"] = "Hacked Card"
    assert "999.01" not in REGISTRY
    assert REGISTRY.amounts() == ["100.01", "200.01", "300.01", "400.01", "500.01"]
    assert REGISTRY.titles()[0] == "Starter Card"
    assert len(REGISTRY) == 5


def test_from_cards_builds_same_table():
    assert AmountCardRegistry.from_cards(CATALOG).as_dict() == REGISTRY.as_dict()


def test_numeric_yaml_keys_are_normalized():
    reg = AmountCardRegistry({100.01: "Starter Card", 200.1: "Odd Card"})
    assert reg.is_valid_amount("100.01")
    assert reg.is_valid_amount("200.10")


def test_catalog_mismatches_reported():
    cards = CATALOG + [
        {"id": "c6", "title": "Diamond Card", "price": 600},
        {"id": "c7", "title": "Renamed Card", "price": 300},
    ]
    mismatches = find_catalog_mismatches(REGISTRY, cards)
    assert [m["card_id"] for m in mismatches] == ["c6", "c7"]
    assert mismatches[0]["reason"] == "amount_not_registered"
    assert mismatches[1]["reason"] == "registered_as:Gold Card"


def test_config_defaults_when_file_missing(tmp_path, monkeypatch):
    monkeypatch.setenv("VERIFICATION_CONFIG", str(tmp_path / "missing.yml"))
    cfg = load_verification_config()
    assert cfg["card_amounts"]["100.01"] == "Starter Card"
    assert cfg["classifier"]["max_retries"] == 1


def test_config_merges_sections_and_replaces_registry(tmp_path, monkeypatch):
    path = tmp_path / "verification.yml"
    path.write_text(
        'card_amounts:\n  "50.01": Mini Card\nclassifier:\n  timeout_seconds: 5\n',
        encoding="utf-8",
    )
    monkeypatch.setenv("VERIFICATION_CONFIG", str(path))
    cfg = load_verification_config()
    assert cfg["card_amounts"] == {"50.01": "Mini Card"}
    assert cfg["classifier"]["timeout_seconds"] == 5
    assert cfg["classifier"]["provider"] == "gateway"
    assert DEFAULTS["classifier"]["timeout_seconds"] == 30


def test_shipped_config_matches_defaults(monkeypatch):
    monkeypatch.delenv("VERIFICATION_CONFIG", raising=False)
    cfg = load_verification_config()
    assert AmountCardRegistry.from_config(cfg).as_dict() == REGISTRY.as_dict()
    assert cfg["ledger"]["commission_rate"] == 0.5
