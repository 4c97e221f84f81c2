"""
Receipt Position Calibration

The extractor's raw position estimates drift, mostly toward the bottom of
long receipts. Calibration trusts a handful of anchor items (first, last and
a few distinctive middle items), maps their raw positions onto the item-list
region (first anchor -> 0%, last anchor -> 100%, middle anchors rescaled in
between) and places every other item by linear interpolation on its line
number between the two nearest anchors.

Run this once, after the item list is final: calibrating before verification
splices would anchor against a sequence that is about to be renumbered.
"""

from dataclasses import dataclass
from typing import List, Optional
import logging

from pantry_scanner.schemas.receipt import ReceiptItem

logger = logging.getLogger(__name__)

SINGLE_ITEM_POSITION = 50.0


@dataclass
class Anchor:
    line_number: int
    raw_percent: float
    target_percent: float = 0.0


def collect_anchors(items: List[ReceiptItem]) -> List[Anchor]:
    """Anchors sorted by line number, one per line, with raw positions forced non-decreasing."""
    by_line = {}
    for item in items:
        flagged = item.is_first_item or item.is_last_item or item.is_anchor_mid
        if not flagged or item.line_number is None or item.position_percent is None:
            continue
        by_line.setdefault(item.line_number, item.position_percent)

    anchors = []
    highest = None
    for line_number in sorted(by_line):
        raw = by_line[line_number]
        if highest is not None and raw < highest:
            # Out-of-order anchor: the model contradicted itself, trust the earlier one
            logger.debug(f"Anchor at line {line_number} raw {raw:.1f}% below {highest:.1f}%, clamped")
            raw = highest
        highest = raw
        anchors.append(Anchor(line_number=line_number, raw_percent=raw))
    return anchors


def rescale_anchors(anchors: List[Anchor]) -> Optional[List[Anchor]]:
    """Map anchor raw positions onto 0-100. None if the anchors span no distance."""
    low = anchors[0].raw_percent
    high = anchors[-1].raw_percent
    if high <= low:
        return None
    for anchor in anchors:
        anchor.target_percent = (anchor.raw_percent - low) / (high - low) * 100.0
    return anchors


def interpolate(line_number: int, anchors: List[Anchor]) -> float:
    """Piecewise-linear position for a line; clamps outside the anchor range."""
    if line_number <= anchors[0].line_number:
        return anchors[0].target_percent
    if line_number >= anchors[-1].line_number:
        return anchors[-1].target_percent

    for lower, upper in zip(anchors, anchors[1:]):
        if lower.line_number <= line_number <= upper.line_number:
            fraction = (line_number - lower.line_number) / (upper.line_number - lower.line_number)
            return lower.target_percent + fraction * (upper.target_percent - lower.target_percent)
    return anchors[-1].target_percent


def uniform_position(line_number: int, total: int) -> float:
    if total <= 1:
        return SINGLE_ITEM_POSITION
    return (line_number - 1) / (total - 1) * 100.0


def calibrate_positions(items: List[ReceiptItem]) -> List[ReceiptItem]:
    """
    Return copies of `items` ordered by line number with calibrated
    `position_percent`. Positions are non-decreasing in line number.
    """
    if not items:
        return []

    ordered = sorted(items, key=lambda item: (item.line_number is None, item.line_number or 0))
    if any(item.line_number is None for item in ordered):
        ordered = [item.model_copy(update={"line_number": idx}) for idx, item in enumerate(ordered, start=1)]

    total = len(ordered)
    anchors = collect_anchors(ordered)
    scaled = rescale_anchors(anchors) if len(anchors) >= 2 else None

    if scaled is None:
        logger.warning(
            f"Insufficient anchors ({len(anchors)}) for {total} items, using uniform positions"
        )
        return [
            item.model_copy(update={"position_percent": round(uniform_position(idx, total), 2)})
            for idx, item in enumerate(ordered, start=1)
        ]

    logger.info(
        f"Calibrating {total} positions against {len(scaled)} anchors: "
        + ", ".join(f"line {a.line_number} @ {a.raw_percent:.1f}%" for a in scaled)
    )
    return [
        item.model_copy(update={"position_percent": round(interpolate(item.line_number, scaled), 2)})
        for item in ordered
    ]
