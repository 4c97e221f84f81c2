"""
Verification Pass

A second, smaller extraction request scoped to the gaps the gap detector
found. Recovered items are spliced back between their bounding line numbers
and the list is renumbered. Any failure here yields "nothing recovered":
the first-pass result is always returned.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from pantry_scanner.schemas.receipt import ReceiptItem
from pantry_scanner.services.gap_detector import Gap, format_gaps_for_prompt
from pantry_scanner.services.results import CallResult
from pantry_scanner.services.vision_client import (
    InvalidResponseError,
    VisionExtractor,
    parse_items,
    parse_json_response,
    request_json,
)

logger = logging.getLogger(__name__)

VERIFICATION_MAX_TOKENS = 2048


@dataclass
class VerificationResult:
    missed_items: List[ReceiptItem] = field(default_factory=list)
    total_visible_count: Optional[int] = None
    input_tokens: int = 0
    output_tokens: int = 0
    error: Optional[str] = None


def build_verification_prompt(items: List[ReceiptItem], gaps: List[Gap]) -> str:
    found = "\n".join(
        f"{item.line_number if item.line_number is not None else '?'}. {item.name}"
        + (f" ({item.source_text})" if item.source_text and item.source_text != item.name else "")
        for item in items
    )
    return f"""You already extracted these {len(items)} items from this receipt:
{found}

The line numbering has gaps, which usually means items were skipped:
{format_gaps_for_prompt(gaps)}

Look ONLY at those regions of the receipt. For every purchased item that is visible there but missing from the list above, return it with full detail.

Return ONLY a JSON object:
{{
  "missed_items": [
    {{
      "name": "Item name",
      "quantity": "quantity if shown",
      "price": 0.00,
      "category": "produce|dairy|meat|pantry|frozen|non_food",
      "is_food": true,
      "source_text": "EXACT text from the receipt",
      "after_line_number": line number of the item it comes right after,
      "position_percent": vertical position 0-100
    }}
  ],
  "total_visible_count": total number of purchased item lines visible on the whole receipt
}}

If nothing was missed, return {{"missed_items": [], "total_visible_count": N}}."""


def parse_verification_response(data: Dict[str, Any]) -> VerificationResult:
    """Tolerant parse: a missing or malformed item list means nothing was recovered."""
    missed_items, rejected = parse_items(data.get("missed_items"))
    for reason in rejected:
        logger.warning(f"Verification: {reason}")

    total = data.get("total_visible_count")
    try:
        total_visible_count = int(total) if total is not None and not isinstance(total, bool) else None
    except (TypeError, ValueError):
        total_visible_count = None
    return VerificationResult(missed_items=missed_items, total_visible_count=total_visible_count)


def parse_verification_text(text: str) -> VerificationResult:
    try:
        data = parse_json_response(text)
    except InvalidResponseError as e:
        logger.warning(f"Verification response was not valid JSON: {e}")
        return VerificationResult(error=str(e))
    return parse_verification_response(data)


async def run_verification(
    extractor: VisionExtractor,
    image: bytes,
    media_type: str,
    items: List[ReceiptItem],
    gaps: List[Gap],
) -> VerificationResult:
    """Run the targeted re-extraction. Never raises; failures return an empty result."""
    call: CallResult[Dict[str, Any]] = await request_json(
        extractor, image, media_type, build_verification_prompt(items, gaps),
        max_tokens=VERIFICATION_MAX_TOKENS,
    )
    if not call.ok:
        logger.warning(f"Verification pass failed, keeping first-pass items: {call.error}")
        return VerificationResult(
            error=call.error, input_tokens=call.input_tokens, output_tokens=call.output_tokens
        )

    result = parse_verification_response(call.value)
    result.input_tokens = call.input_tokens
    result.output_tokens = call.output_tokens
    logger.info(
        f"Verification found {len(result.missed_items)} missed items "
        f"(model counts {result.total_visible_count} visible)"
    )
    return result


def _splice_key(item: ReceiptItem, order: int, recovered: bool):
    if recovered:
        if item.after_line_number is not None:
            anchor = item.after_line_number + 0.5
        elif item.line_number is not None:
            anchor = item.line_number - 0.5
        else:
            anchor = float("inf")
    else:
        anchor = item.line_number if item.line_number is not None else float("inf")
    # Ties: existing items before recovered ones, then original order
    return (anchor, recovered, order)


def splice_missed_items(items: List[ReceiptItem], missed_items: List[ReceiptItem]) -> List[ReceiptItem]:
    """
    Insert recovered items between their bounding line numbers and renumber
    the combined list 1..N. Returns a new list; `items` is not modified.
    """
    if not missed_items:
        return list(items)

    keyed = [(_splice_key(item, i, False), item) for i, item in enumerate(items)]
    keyed += [(_splice_key(item, i, True), item) for i, item in enumerate(missed_items)]
    keyed.sort(key=lambda pair: pair[0])

    return [
        item.model_copy(update={"line_number": idx, "after_line_number": None})
        for idx, (_, item) in enumerate(keyed, start=1)
    ]
