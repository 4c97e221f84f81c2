"""
Item Normalizer
===============

Turns the raw name the extractor reported for a line into a display name:

1. strip bracketed / parenthetical codes ("[SKU 0042]", "(2@0.59)")
2. expand known produce lookup codes when the text beside them is too short
   to mean anything on its own ("4011 BAN" -> "Yellow Banana")
3. expand store abbreviations ("ORG CHK BRST" -> "Organic Chicken Breast")
4. title-case the result

`source_text` is never touched: it is the verbatim receipt text that chunk
merging and OCR matching rely on. Reference data is injected through
`NormalizerTables` so tests can run against their own tables.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import logging
import re

from pantry_scanner.schemas.receipt import ItemCategory, ReceiptItem

logger = logging.getLogger(__name__)


# ============================================================================
# REFERENCE DATA
# ============================================================================

DEFAULT_PRODUCE_CODES: Dict[str, str] = {
    "4011": "Yellow Banana",
    "94011": "Organic Yellow Banana",
    "4012": "Navel Orange",
    "4015": "Red Delicious Apple",
    "4017": "Granny Smith Apple",
    "4131": "Fuji Apple",
    "3283": "Honeycrisp Apple",
    "4046": "Small Hass Avocado",
    "4225": "Hass Avocado",
    "4048": "Lime",
    "4053": "Lemon",
    "4060": "Broccoli",
    "4062": "Cucumber",
    "4065": "Green Bell Pepper",
    "4072": "Russet Potato",
    "4082": "Red Onion",
    "4087": "Roma Tomato",
    "4166": "Yellow Onion",
    "4562": "Carrots",
    "4608": "Garlic",
    "4612": "Ginger Root",
    "4664": "Tomatoes On The Vine",
}

DEFAULT_ABBREVIATIONS: Dict[str, str] = {
    "ORG": "Organic",
    "CHK": "Chicken",
    "CHKN": "Chicken",
    "BRST": "Breast",
    "BNLS": "Boneless",
    "SKNLS": "Skinless",
    "GRD": "Ground",
    "WHL": "Whole",
    "MLK": "Milk",
    "CHS": "Cheese",
    "YGRT": "Yogurt",
    "BRD": "Bread",
    "VEG": "Vegetable",
    "GRN": "Green",
    "FRZ": "Frozen",
    "BF": "Beef",
    "TKY": "Turkey",
    "PNUT": "Peanut",
    "BTR": "Butter",
    "CRM": "Cream",
    "SHRD": "Shredded",
    "OJ": "Orange Juice",
}

DEFAULT_CATEGORY_KEYWORDS: List[Tuple[ItemCategory, Tuple[str, ...]]] = [
    (ItemCategory.PRODUCE, (
        "apple", "banana", "orange", "lettuce", "tomato", "carrot", "onion", "garlic",
        "pepper", "fruit", "vegetable", "spinach", "kale", "broccoli", "cauliflower",
        "potato", "celery", "cucumber", "zucchini", "mushroom", "avocado", "lemon", "lime",
        "cabbage", "eggplant",
    )),
    (ItemCategory.DAIRY, ("milk", "buttermilk", "cheese", "yogurt", "butter", "cream", "dairy", "egg")),
    (ItemCategory.MEAT, (
        "chicken", "beef", "pork", "fish", "salmon", "meat", "turkey", "lamb", "shrimp",
        "bacon", "sausage", "steak", "salami", "hotdog", "hot dog", "ham", "ribs",
        "brisket", "tuna", "cod", "tilapia", "pepperoni", "chorizo", "prosciutto",
    )),
    (ItemCategory.FROZEN, ("frozen", "ice cream")),
    (ItemCategory.NON_FOOD, (
        "bag", "gift wrap", "paper towel", "toilet paper", "detergent", "soap",
        "foil", "napkin", "battery", "batteries", "bleach",
    )),
]


@dataclass
class NormalizerTables:
    """Lookup tables the normalizer depends on."""
    produce_codes: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PRODUCE_CODES))
    abbreviations: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ABBREVIATIONS))
    category_keywords: List[Tuple[ItemCategory, Tuple[str, ...]]] = field(
        default_factory=lambda: list(DEFAULT_CATEGORY_KEYWORDS)
    )
    # Letters left beside a produce code at or below this count are "ambiguous"
    max_ambiguous_letters: int = 6


_BRACKETED = re.compile(r"\[[^\]]*\]|\([^)]*\)|\{[^}]*\}")
_CODE = re.compile(r"\b(\d{4,5})\b")
_LETTERS = re.compile(r"[A-Za-z]")
_WHITESPACE = re.compile(r"\s+")
_PRICE_TOKEN = re.compile(r"\$?\d+\.\d{2}\b")


def title_case(text: str) -> str:
    """Capitalize each whitespace-separated word; idempotent."""
    return " ".join(word[:1].upper() + word[1:].lower() for word in text.split())


class ItemNormalizer:
    """Canonicalizes raw extracted item names. Pure: no I/O, no shared state."""

    def __init__(self, tables: Optional[NormalizerTables] = None):
        self.tables = tables or NormalizerTables()
        self._abbreviations = {k.upper(): v for k, v in self.tables.abbreviations.items()}
        # Whole words only, with an optional plural ending: "bag" must not match "Cabbage"
        self._category_patterns = [
            (category, re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")(?:s|es)?\b", re.IGNORECASE))
            for category, keywords in self.tables.category_keywords
        ]

    # ========================================================================
    # NAME RULES
    # ========================================================================

    def strip_codes(self, text: str) -> str:
        return _WHITESPACE.sub(" ", _BRACKETED.sub(" ", text)).strip()

    def expand_produce_code(self, text: str, source_text: Optional[str] = None) -> Optional[str]:
        """
        Return the produce name for a lookup code, or None.

        Only fires when the text contains a known code and the remaining
        letters are too few to be a real name.
        """
        for candidate in (text, source_text):
            if not candidate:
                continue
            match = next(
                (m for m in _CODE.finditer(candidate) if m.group(1) in self.tables.produce_codes),
                None,
            )
            if match is None:
                continue
            remainder = _PRICE_TOKEN.sub(" ", text.replace(match.group(1), " "))
            letters = len(_LETTERS.findall(remainder))
            if letters <= self.tables.max_ambiguous_letters:
                return self.tables.produce_codes[match.group(1)]
        return None

    def expand_abbreviations(self, text: str) -> str:
        words = []
        for word in text.split():
            expansion = self._abbreviations.get(word.upper().strip(".,"))
            words.append(expansion if expansion else word)
        return " ".join(words)

    def normalize_name(self, raw: str, source_text: Optional[str] = None) -> str:
        if not raw:
            return raw
        text = self.strip_codes(raw)
        produce_name = self.expand_produce_code(text, source_text)
        if produce_name:
            text = produce_name
        else:
            text = self.expand_abbreviations(text)
        normalized = title_case(text)
        # Nothing but a code: keep the raw text rather than an empty name
        return normalized or title_case(raw)

    # ========================================================================
    # CATEGORIES
    # ========================================================================

    def categorize(self, name: str) -> ItemCategory:
        """Keyword fallback for items the extractor left uncategorized."""
        for category, pattern in self._category_patterns:
            if pattern.search(name):
                return category
        return ItemCategory.PANTRY

    # ========================================================================
    # ITEMS
    # ========================================================================

    def normalize_item(self, item: ReceiptItem) -> ReceiptItem:
        source_text = item.source_text if item.source_text else item.name
        name = self.normalize_name(item.name, source_text)
        category = item.category or self.categorize(name)
        is_food = item.is_food if item.is_food is not None else category != ItemCategory.NON_FOOD
        if name != item.name:
            logger.debug(f"Normalized '{item.name}' -> '{name}'")
        return item.model_copy(update={
            "name": name,
            "source_text": source_text,
            "category": category,
            "is_food": is_food,
        })

    def normalize_items(self, items: List[ReceiptItem]) -> List[ReceiptItem]:
        return [self.normalize_item(item) for item in items]
