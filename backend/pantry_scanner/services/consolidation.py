"""
Consolidation Engine

The extraction prompt asks the model to fold repeated lines for the same
product into one entry. This module sanity-checks those merges:

- the consolidated price must equal the sum of the source line prices
- the quantity must be the valid combination of the source quantities
- source lines that differ in a distinguishing token (pack size, flavor,
  variant) must not have been merged; such merges are split back apart

Optionally it also merges exact repeats the model left as separate lines.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple
import logging
import re

from pantry_scanner.schemas.receipt import ConsolidatedSource, ReceiptItem

logger = logging.getLogger(__name__)

PRICE_TOLERANCE = 0.02

# Container sizes distinguish products. Weights (lb, kg) are summed instead
SIZE_UNITS = {"oz", "floz", "ml", "l", "ltr", "g", "ct", "pk", "pack", "gal", "qt", "pt", "count"}

VARIANT_WORDS = {
    "whole", "skim", "nonfat", "lowfat", "reduced", "2%", "1%",
    "organic", "unsalted", "salted", "sweetened", "unsweetened",
    "vanilla", "chocolate", "strawberry", "plain", "original", "greek",
    "red", "green", "yellow", "white", "brown", "wheat",
    "diet", "zero", "decaf", "regular", "light", "lite", "large", "small", "medium", "jumbo",
    "mild", "hot", "spicy", "sharp",
    "boneless", "skinless", "ground", "sliced", "shredded", "grated",
}

_SIZE_TOKEN = re.compile(r"(\d+(?:\.\d+)?)\s*(fl\.?\s*oz|[a-z]+)", re.IGNORECASE)
_QUANTITY = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-z][a-z .]*)?\s*$", re.IGNORECASE)
_WORD = re.compile(r"[a-z0-9%]+", re.IGNORECASE)
_PRICE_IN_TEXT = re.compile(r"\$?\d+\.\d{2}\b")


@dataclass
class ConsolidationReport:
    items: List[ReceiptItem]
    validated: int = 0
    demoted: int = 0
    merged_repeats: int = 0
    warnings: List[str] = field(default_factory=list)


# ============== TOKENS ==============

_UNIT_ALIASES = {"lbs": "lb", "pound": "lb", "pounds": "lb", "ounce": "oz", "ounces": "oz"}


def _normalize_unit(unit: str) -> str:
    unit = re.sub(r"[\s.]", "", unit.lower())
    return _UNIT_ALIASES.get(unit, unit)


def distinguishing_tokens(text: Optional[str]) -> Set[str]:
    """Size and variant tokens that make two otherwise similar lines different products."""
    if not text:
        return set()
    cleaned = _PRICE_IN_TEXT.sub(" ", text)
    tokens = set()
    for number, unit in _SIZE_TOKEN.findall(cleaned):
        unit = _normalize_unit(unit)
        if unit in SIZE_UNITS:
            tokens.add(f"{float(number):g}{unit}")
    for word in _WORD.findall(cleaned.lower()):
        if word in VARIANT_WORDS:
            tokens.add(word)
    return tokens


def _parse_quantity(quantity: Optional[str]) -> Optional[Tuple[float, str]]:
    if quantity is None or not str(quantity).strip():
        return (1.0, "")
    match = _QUANTITY.match(str(quantity))
    if not match:
        return None
    return float(match.group(1)), _normalize_unit(match.group(2) or "")


def _format_quantity(amount: float, unit: str) -> str:
    text = f"{round(amount, 3):g}"
    return f"{text} {unit}" if unit else text


def combine_quantities(quantities: List[Optional[str]]) -> Optional[str]:
    """
    Sum quantities that share a unit: ["2 lb", "1.5 lb"] -> "3.5 lb",
    [None, None] -> "2". Returns None when the units differ or a quantity
    is unreadable.
    """
    parsed = [_parse_quantity(q) for q in quantities]
    if not parsed or any(p is None for p in parsed):
        return None
    units = {unit for _, unit in parsed}
    if len(units) != 1:
        return None
    return _format_quantity(sum(amount for amount, _ in parsed), units.pop())


def _quantities_equal(a: Optional[str], b: Optional[str]) -> bool:
    pa, pb = _parse_quantity(a), _parse_quantity(b)
    if pa is None or pb is None:
        return (a or "").strip().lower() == (b or "").strip().lower()
    return abs(pa[0] - pb[0]) < 1e-6 and pa[1] == pb[1]


# ============== MERGING ==============

def merge_duplicate_group(items: List[ReceiptItem]) -> ReceiptItem:
    """Fold repeated lines of one product into the first entry."""
    first = items[0]
    if len(items) == 1:
        return first

    sources = []
    for item in items:
        if item.consolidated_sources:
            sources.extend(item.consolidated_sources)
        else:
            sources.append(ConsolidatedSource(
                source_text=item.source_text or item.name,
                quantity=item.quantity,
                price=item.price,
            ))

    count = sum(item.consolidated_count or 1 for item in items)
    quantity = combine_quantities([item.quantity for item in items])
    if quantity is None:
        quantity = " + ".join(item.quantity or "1" for item in items)

    details = "; ".join(
        f"{s.source_text}" + (f" {s.quantity}" if s.quantity and s.quantity not in s.source_text else "")
        + (f" ${s.price:.2f}" if s.price is not None else "")
        for s in sources
    )
    return first.model_copy(update={
        "price": round(sum(item.price for item in items), 2),
        "quantity": quantity,
        "unit_price": None,
        "consolidated_count": count,
        "consolidated_details": f"Combined {count} entries: {details}",
        "consolidated_sources": sources,
    })


def _repeat_key(item: ReceiptItem) -> Tuple[str, frozenset, Optional[str]]:
    category = item.category.value if item.category else None
    tokens = distinguishing_tokens(item.name) | distinguishing_tokens(item.source_text)
    return (item.name.strip().lower(), frozenset(tokens), category)


def merge_exact_repeats(items: List[ReceiptItem]) -> Tuple[List[ReceiptItem], int]:
    """Merge lines with the same canonical name, category and distinguishing tokens."""
    groups: Dict[Tuple, List[ReceiptItem]] = {}
    order: List[Tuple] = []
    for item in items:
        key = _repeat_key(item)
        if key not in groups:
            groups[key] = []
            order.append(key)
        groups[key].append(item)

    merged = []
    merged_count = 0
    for key in order:
        group = groups[key]
        if len(group) > 1:
            merged_count += len(group) - 1
            logger.info(f"Merging {len(group)} repeated lines of '{group[0].name}'")
        merged.append(merge_duplicate_group(group))
    return merged, merged_count


# ============== VALIDATION ==============

def _split_back(item: ReceiptItem) -> List[ReceiptItem]:
    parts = []
    for source in item.consolidated_sources:
        parts.append(item.model_copy(update={
            "source_text": source.source_text,
            "quantity": source.quantity,
            "price": source.price if source.price is not None else 0.0,
            "unit_price": None,
            "consolidated_count": None,
            "consolidated_details": None,
            "consolidated_sources": [],
        }))
    return parts


def validate_consolidation(item: ReceiptItem) -> Tuple[List[ReceiptItem], Optional[str]]:
    """
    Check one model-consolidated item.
    Returns (replacement items, warning). A valid merge comes back as a
    single item; a merge of different products is split into its sources.
    """
    if not item.consolidated_count or item.consolidated_count < 2:
        return [item], None

    sources = item.consolidated_sources
    if len(sources) < 2:
        # Nothing to check against; the details string is all the model gave
        return [item], None

    token_sets = [distinguishing_tokens(s.source_text) for s in sources]
    if any(tokens != token_sets[0] for tokens in token_sets[1:]):
        differing = sorted(set().union(*token_sets) - set.intersection(*token_sets))
        logger.warning(
            f"Splitting consolidated '{item.name}': sources differ in {differing}"
        )
        return _split_back(item), (
            f"Un-merged '{item.name}': its receipt lines differ ({', '.join(differing)})"
        )

    warning = None
    prices = [s.price for s in sources]
    if all(p is not None for p in prices):
        expected = round(sum(prices), 2)
        if abs(expected - item.price) > PRICE_TOLERANCE:
            logger.warning(
                f"Consolidated '{item.name}' price {item.price:.2f} != sum of lines {expected:.2f}, corrected"
            )
            item = item.model_copy(update={"price": expected})
            warning = f"Corrected combined price for '{item.name}' to ${expected:.2f}"

    combined = combine_quantities([s.quantity for s in sources])
    if combined is not None and not _quantities_equal(combined, item.quantity):
        logger.warning(f"Consolidated '{item.name}' quantity {item.quantity!r} != {combined!r}, corrected")
        item = item.model_copy(update={"quantity": combined})

    if item.consolidated_count != len(sources):
        item = item.model_copy(update={"consolidated_count": len(sources)})
    return [item], warning


def consolidate_items(items: List[ReceiptItem], merge_repeats: bool = True) -> ConsolidationReport:
    """Validate model merges, then optionally merge remaining exact repeats."""
    report = ConsolidationReport(items=[])
    for item in items:
        replacement, warning = validate_consolidation(item)
        if item.consolidated_count and item.consolidated_count >= 2:
            if len(replacement) > 1:
                report.demoted += 1
            else:
                report.validated += 1
        if warning:
            report.warnings.append(warning)
        report.items.extend(replacement)

    if merge_repeats:
        report.items, report.merged_repeats = merge_exact_repeats(report.items)

    logger.info(
        f"Consolidation: {report.validated} merges validated, {report.demoted} split back, "
        f"{report.merged_repeats} repeated lines merged"
    )
    return report
