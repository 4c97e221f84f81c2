"""
Receipt Scanning Analytics

Confidence scoring, receipt math checks and per-scan capture metrics used
to monitor position calibration and item capture.
"""

from statistics import mean, pstdev
from typing import List, Optional
import logging

from pantry_scanner.schemas.receipt import ExtractedReceipt, ReceiptItem, ScanAnalytics

logger = logging.getLogger(__name__)

# Use a strict $1.00 tolerance for the line items vs subtotal check
ITEMS_SUBTOTAL_TOLERANCE = 1.00
TOTAL_TOLERANCE = 0.10

HIGH_GAP_PENALTY = 5.0
FAILED_CHUNK_PENALTY = 10.0
MATH_WARNING_PENALTY = 5.0


# ============== MATH VALIDATION ==============

def validate_receipt_math(receipt: ExtractedReceipt) -> List[str]:
    """Cross-check line items, subtotal, tax and total. Returns warning strings."""
    issues = []
    items_sum = round(sum(item.price for item in receipt.items), 2)

    if receipt.subtotal is not None and items_sum > 0:
        difference = abs(items_sum - receipt.subtotal)
        if difference > ITEMS_SUBTOTAL_TOLERANCE:
            issues.append(
                f"MATH ERROR: Line items sum to ${items_sum:.2f}, but subtotal is ${receipt.subtotal:.2f} "
                f"(difference: ${difference:.2f}). Missing items, discount or wrong price?"
            )
            logger.warning(f"Receipt math error: items sum ${items_sum:.2f} vs subtotal ${receipt.subtotal:.2f}")

    if receipt.subtotal is not None and receipt.total is not None:
        expected_total = receipt.subtotal + (receipt.tax or 0)
        if abs(expected_total - receipt.total) > TOTAL_TOLERANCE:
            issues.append(
                f"Tax math issue: ${receipt.subtotal:.2f} + ${receipt.tax or 0:.2f} = ${expected_total:.2f}, "
                f"but total shown is ${receipt.total:.2f}"
            )

    if receipt.total is None:
        issues.append("Receipt total not found; could not verify that all items were captured")
    return issues


# ============== CONFIDENCE ==============

def calculate_confidence(
    receipt: ExtractedReceipt,
    unresolved_high_gaps: int = 0,
    failed_chunks: int = 0,
    math_warnings: int = 0,
) -> float:
    """Completeness-weighted 0-100 score, lowered for known extraction problems."""
    score = 0.0
    if receipt.store_name:
        score += 10
    if receipt.purchase_date:
        score += 20
    if receipt.items:
        score += 40
    if receipt.total is not None:
        score += 20

    if receipt.items:
        detailed = sum(1 for item in receipt.items if item.price > 0 and item.category is not None)
        score += 10 * detailed / len(receipt.items)

    score -= HIGH_GAP_PENALTY * unresolved_high_gaps
    score -= FAILED_CHUNK_PENALTY * failed_chunks
    score -= MATH_WARNING_PENALTY * math_warnings
    return round(max(0.0, min(100.0, score)), 1)


# ============== ANALYTICS ==============

def analyze_position_distribution(items: List[ReceiptItem]) -> str:
    """Classify item spacing by its coefficient of variation."""
    if len(items) < 3:
        return "uniform"
    positions = sorted(item.position_percent for item in items if item.position_percent is not None)
    if len(positions) < 3:
        return "irregular"

    spacings = [b - a for a, b in zip(positions, positions[1:])]
    avg_spacing = mean(spacings)
    if avg_spacing <= 0:
        return "clustered"
    variation = pstdev(spacings) / avg_spacing
    if variation < 0.3:
        return "uniform"
    if variation > 0.8:
        return "irregular"
    return "clustered"


def receipt_length_category(item_count: int) -> str:
    if item_count <= 10:
        return "short"
    if item_count <= 20:
        return "medium"
    if item_count <= 35:
        return "long"
    return "very_long"


def estimate_capture_rate(
    initial_count: int,
    verification_found_count: int,
    gap_count: int,
    high_confidence_gaps: int,
) -> float:
    """Rough share of the receipt's items that were captured, in percent."""
    final_count = initial_count + verification_found_count
    if final_count <= 0:
        return 0.0

    if verification_found_count > 0:
        # Assume low-confidence gaps hide about half as many again
        estimated_missed = verification_found_count + (gap_count - high_confidence_gaps) * 0.5
        return round(final_count / (final_count + estimated_missed) * 100, 1)

    if high_confidence_gaps > 0:
        return round(final_count / (final_count + high_confidence_gaps) * 100, 1)

    return 100.0 if gap_count == 0 else 98.0


def count_anchors(items: List[ReceiptItem]) -> int:
    return sum(1 for item in items if item.is_first_item or item.is_last_item or item.is_anchor_mid)


def build_analytics(
    receipt: ExtractedReceipt,
    initial_item_count: int,
    verification_found_count: int,
    gap_count: int,
    high_confidence_gap_count: int,
    anchor_count: int,
    strategy: str = "single_pass",
    chunk_count: int = 0,
    failed_chunk_count: int = 0,
    processing_time_ms: Optional[int] = None,
) -> ScanAnalytics:
    return ScanAnalytics(
        initial_item_count=initial_item_count,
        verification_found_count=verification_found_count,
        final_item_count=len(receipt.items),
        gap_count=gap_count,
        high_confidence_gap_count=high_confidence_gap_count,
        capture_rate_estimate=estimate_capture_rate(
            initial_item_count, verification_found_count, gap_count, high_confidence_gap_count
        ),
        anchor_count=anchor_count,
        position_distribution=analyze_position_distribution(receipt.items),
        receipt_length_category=receipt_length_category(len(receipt.items)),
        strategy=strategy,
        chunk_count=chunk_count,
        failed_chunk_count=failed_chunk_count,
        processing_time_ms=processing_time_ms,
    )


def log_analytics(analytics: ScanAnalytics, store_name: Optional[str] = None, cost_usd: Optional[float] = None) -> None:
    gaps = (
        f"{analytics.gap_count} ({analytics.high_confidence_gap_count} high confidence)"
        if analytics.gap_count else "none"
    )
    cost = f"${cost_usd:.4f}" if cost_usd is not None else "unknown"
    logger.info(
        f"Receipt scan complete: store={store_name or 'unknown'} items={analytics.final_item_count} "
        f"category={analytics.receipt_length_category} strategy={analytics.strategy} "
        f"capture_rate={analytics.capture_rate_estimate}% anchors={analytics.anchor_count} "
        f"distribution={analytics.position_distribution} gaps={gaps} "
        f"recovered={analytics.verification_found_count} cost={cost} "
        f"time={analytics.processing_time_ms}ms"
    )
