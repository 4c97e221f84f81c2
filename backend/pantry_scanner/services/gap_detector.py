"""
Receipt Gap Detection

Finds breaks in the claimed line-number sequence of extracted items and
rates how likely each break is a genuinely missed item. The result only
scopes the verification request; the item list itself is never modified.
"""

from dataclasses import dataclass
from statistics import median
from typing import List, Optional
import logging

from pantry_scanner.schemas.receipt import ReceiptItem

logger = logging.getLogger(__name__)

HIGH = "high"
MEDIUM = "medium"
LOW = "low"

# Receipts with fewer items than this rarely have misses
MIN_ITEMS_FOR_CONFIDENT_GAPS = 5
# Bounding items count as "far apart" when their position delta is at least
# this fraction of the room the missing lines would normally take up
FAR_APART_FACTOR = 0.75


@dataclass
class Gap:
    after_line_number: int
    before_line_number: int
    expected_count: int
    confidence: str
    after_item: str = ""
    before_item: str = ""
    position_hint: str = ""

    @property
    def missing_lines(self) -> List[int]:
        return list(range(self.after_line_number + 1, self.before_line_number))


def _typical_spacing(items: List[ReceiptItem]) -> Optional[float]:
    """Median position delta between consecutive numbered items that both have positions."""
    deltas = []
    for prev, curr in zip(items, items[1:]):
        if prev.position_percent is None or curr.position_percent is None:
            continue
        step = curr.line_number - prev.line_number
        if step <= 0:
            continue
        deltas.append((curr.position_percent - prev.position_percent) / step)
    positive = [d for d in deltas if d > 0]
    return median(positive) if positive else None


def _far_apart(prev: ReceiptItem, curr: ReceiptItem, expected_count: int, spacing: Optional[float]) -> bool:
    if spacing is None or prev.position_percent is None or curr.position_percent is None:
        return False
    delta = curr.position_percent - prev.position_percent
    return delta >= FAR_APART_FACTOR * spacing * (expected_count + 1)


def _position_hint(prev: ReceiptItem, curr: ReceiptItem) -> str:
    prev_pos = f"{prev.position_percent:.0f}%" if prev.position_percent is not None else "?"
    curr_pos = f"{curr.position_percent:.0f}%" if curr.position_percent is not None else "?"
    return f"between {prev_pos} and {curr_pos}"


def find_line_number_gaps(items: List[ReceiptItem], expected_last_line: Optional[int] = None) -> List[Gap]:
    """
    Find gaps in the line-number sequence with a confidence tier.

    Tiers:
    - medium: the gap touches the first or last item, where a missing
      header/footer line is as likely as a missed product
    - high: an interior gap on a receipt with enough items, whose bounding
      items sit far enough apart on the image to hold the missing lines
    - low: everything else; few items overall, or a one-slot gap without
      positional room for it, which usually means the model miscounted

    `expected_last_line` is the line number the receipt should reach, e.g.
    when the bottom chunk of a chunked read failed. Lines beyond the last
    extracted item up to it are reported as a medium gap.
    """
    numbered = sorted(
        (item for item in items if item.line_number is not None),
        key=lambda item: item.line_number,
    )
    if not numbered:
        return []
    first_line = numbered[0].line_number
    last_line = numbered[-1].line_number
    trailing = expected_last_line is not None and expected_last_line > last_line
    if len(numbered) < 2 and not trailing:
        return []

    spacing = _typical_spacing(numbered)
    gaps: List[Gap] = []

    if first_line > 1:
        # Nothing extracted for the opening lines, e.g. the top chunk failed
        gaps.append(Gap(
            after_line_number=0,
            before_line_number=first_line,
            expected_count=first_line - 1,
            confidence=MEDIUM,
            after_item="(top of receipt)",
            before_item=numbered[0].name,
            position_hint="above the first extracted item",
        ))

    for prev, curr in zip(numbered, numbered[1:]):
        expected_count = curr.line_number - prev.line_number - 1
        if expected_count <= 0:
            continue

        far_apart = _far_apart(prev, curr, expected_count, spacing)
        if prev.line_number == first_line or curr.line_number == last_line:
            confidence = MEDIUM
        elif len(numbered) < MIN_ITEMS_FOR_CONFIDENT_GAPS:
            confidence = LOW
        elif far_apart:
            confidence = HIGH
        else:
            confidence = LOW

        gaps.append(Gap(
            after_line_number=prev.line_number,
            before_line_number=curr.line_number,
            expected_count=expected_count,
            confidence=confidence,
            after_item=prev.name,
            before_item=curr.name,
            position_hint=_position_hint(prev, curr),
        ))

    if trailing:
        # Nothing extracted for the closing lines, e.g. the bottom chunk failed
        gaps.append(Gap(
            after_line_number=last_line,
            before_line_number=expected_last_line + 1,
            expected_count=expected_last_line - last_line,
            confidence=MEDIUM,
            after_item=numbered[-1].name,
            before_item="(end of receipt)",
            position_hint="below the last extracted item",
        ))

    if gaps:
        logger.info(
            f"Found {len(gaps)} line number gaps "
            f"(high={sum(g.confidence == HIGH for g in gaps)}, "
            f"medium={sum(g.confidence == MEDIUM for g in gaps)}, "
            f"low={sum(g.confidence == LOW for g in gaps)})"
        )
    return gaps


def format_gaps_for_prompt(gaps: List[Gap]) -> str:
    """Human-readable gap list for the verification prompt, highest priority first."""
    if not gaps:
        return "No gaps detected in line number sequence. Please verify that all visible items were extracted."

    sections = []
    titles = {
        HIGH: "HIGH PRIORITY GAPS (likely missing items):",
        MEDIUM: "MEDIUM PRIORITY GAPS (check carefully):",
        LOW: "LOW PRIORITY GAPS (may be a miscount or section break):",
    }
    for tier in (HIGH, MEDIUM, LOW):
        tier_gaps = [g for g in gaps if g.confidence == tier]
        if not tier_gaps:
            continue
        lines = [titles[tier]]
        for gap in tier_gaps:
            count = "1 item" if gap.expected_count == 1 else f"{gap.expected_count} items"
            lines.append(
                f"  - Look between item {gap.after_line_number} (\"{gap.after_item}\") and "
                f"item {gap.before_line_number} (\"{gap.before_item}\"): up to {count} missing, "
                f"{gap.position_hint} of the receipt"
            )
        sections.append("\n".join(lines))
    return "\n\n".join(sections)
