"""
金額→カード名レジストリ
価格に検証用の0.01を加えた金額文字列と、カード名を1対1で対応させる
"""

from decimal import Decimal, ROUND_HALF_UP
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from verification_errors import UnknownAmount


TWO_PLACES = Decimal("0.01")


def expected_amount_for(price, surcharge: str = "0.01") -> str:
    """価格 + 検証用サーチャージを小数点以下2桁の文字列で返す

    >>> expected_amount_for(100)
    '100.01'
    """
    total = Decimal(str(price)) + Decimal(str(surcharge))
    return str(total.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


class AmountCardRegistry:
    """金額文字列 → カード名 の閉じたテーブル（生成後は変更不可）"""

    def __init__(self, entries: Mapping[str, str]):
        table: Dict[str, str] = {}
        for amount, title in entries.items():
            # YAMLで数値として書かれても2桁表記に揃える
            key = amount if isinstance(amount, str) else str(Decimal(str(amount)).quantize(TWO_PLACES))
            if key in table:
                raise ValueError(f"duplicate amount in registry: {key}")
            table[key] = str(title)
        self._table = MappingProxyType(table)

    @classmethod
    def from_config(cls, cfg: Dict) -> "AmountCardRegistry":
        return cls(cfg.get("card_amounts") or {})

    @classmethod
    def from_cards(cls, cards: Iterable[Dict], surcharge: str = "0.01") -> "AmountCardRegistry":
        return cls({expected_amount_for(c["price"], surcharge): c["title"] for c in cards})

    def is_valid_amount(self, amount) -> bool:
        return isinstance(amount, str) and amount in self._table

    def expected_card_for(self, amount: str) -> str:
        if not self.is_valid_amount(amount):
            raise UnknownAmount(str(amount))
        return self._table[amount]

    def get(self, amount) -> Optional[str]:
        if not self.is_valid_amount(amount):
            return None
        return self._table[amount]

    def amounts(self) -> List[str]:
        return sorted(self._table, key=Decimal)

    def titles(self) -> List[str]:
        return [self._table[a] for a in self.amounts()]

    def as_dict(self) -> Dict[str, str]:
        return dict(self._table)

    def __len__(self):
        return len(self._table)

    def __contains__(self, amount):
        return self.is_valid_amount(amount)


def find_catalog_mismatches(registry: AmountCardRegistry, cards: Iterable[Dict], surcharge: str = "0.01") -> List[Dict]:
    """カタログの価格がレジストリと食い違うカードを列挙する

    自動検証で承認され得ないカードを管理者に知らせるために使う。
    """
    mismatches: List[Dict] = []
    for card in cards:
        amount = expected_amount_for(card["price"], surcharge)
        registered = registry.get(amount)
        if registered is None:
            mismatches.append({"card_id": card.get("id"), "title": card["title"], "expected_amount": amount, "reason": "amount_not_registered"})
        elif registered.strip().casefold() != str(card["title"]).strip().casefold():
            mismatches.append({
                "card_id": card.get("id"),
                "title": card["title"],
                "expected_amount": amount,
                "reason": f"registered_as:{registered}",
            })
    return mismatches
