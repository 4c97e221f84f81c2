"""
Receipt Scanner Learning System

Improves extraction accuracy over time by recording what users corrected
during review and feeding the most relevant past corrections back into the
next extraction prompt as few-shot examples.
"""

from typing import Dict, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from pantry_scanner.models.receipt_scan import ReceiptScan, ReceiptItemCorrection
from pantry_scanner.schemas.receipt import LearningStats, ReviewedItem
from pantry_scanner.services.similarity import name_similarity

logger = logging.getLogger(__name__)

PRICE_EPSILON = 0.005


# ============== WRITE PATH ==============

def _match_corrected_items(
    original_items: List[ReviewedItem],
    corrected_items: List[ReviewedItem],
) -> Dict[int, Optional[ReviewedItem]]:
    """
    Pair each original item (by index) with its reviewed version.

    Reviewed items that carry `original_index` are matched on it exclusively.
    Otherwise every original first claims a reviewed item with the same name;
    originals still unmatched then take the reviewed item at their own index,
    if no other original claimed it. Deleting an item never shifts a later
    item onto it.
    """
    matches: Dict[int, Optional[ReviewedItem]] = {}

    if any(item.original_index is not None for item in corrected_items):
        by_index = {item.original_index: item for item in corrected_items if item.original_index is not None}
        for i in range(len(original_items)):
            matches[i] = by_index.get(i)
        return matches

    claimed = set()
    for i, original in enumerate(original_items):
        matches[i] = None
        for j, candidate in enumerate(corrected_items):
            if j not in claimed and candidate.name == original.name:
                claimed.add(j)
                matches[i] = candidate
                break

    for i in range(len(original_items)):
        if matches[i] is None and i < len(corrected_items) and i not in claimed:
            claimed.add(i)
            matches[i] = corrected_items[i]
    return matches


def _text_differs(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().lower() != (b or "").strip().lower()


def _price_differs(a: Optional[float], b: Optional[float]) -> bool:
    if a is None or b is None:
        return (a is None) != (b is None)
    return abs(a - b) > PRICE_EPSILON


def item_was_modified(original: ReviewedItem, corrected: ReviewedItem) -> bool:
    return (
        original.name != corrected.name
        or _text_differs(original.quantity, corrected.quantity)
        or _price_differs(original.price, corrected.price)
        or _text_differs(original.category, corrected.category)
    )


def save_receipt_corrections(
    db: Session,
    scan: ReceiptScan,
    original_items: List[ReviewedItem],
    corrected_items: List[ReviewedItem],
) -> List[ReceiptItemCorrection]:
    """Persist one correction row per originally extracted item."""
    matches = _match_corrected_items(original_items, corrected_items)
    corrections = []

    for i, original in enumerate(original_items):
        corrected = matches.get(i)
        was_removed = corrected is None
        was_modified = not was_removed and item_was_modified(original, corrected)
        final = corrected or original

        correction = ReceiptItemCorrection(
            receipt_scan_id=scan.id,
            household_id=scan.household_id,
            ai_extracted_name=original.name,
            ai_extracted_quantity=original.quantity,
            ai_extracted_price=original.price,
            ai_extracted_category=original.category,
            corrected_name=final.name,
            corrected_quantity=final.quantity,
            corrected_price=final.price,
            corrected_category=final.category,
            was_corrected=was_modified or was_removed,
            was_removed=was_removed,
        )
        db.add(correction)
        corrections.append(correction)

    db.commit()
    for correction in corrections:
        db.refresh(correction)

    logger.info(
        f"Saved {len(corrections)} corrections for scan {scan.id}: "
        f"{sum(c.was_corrected and not c.was_removed for c in corrections)} corrected, "
        f"{sum(c.was_removed for c in corrections)} removed"
    )
    return corrections


# ============== READ PATH ==============

def _learning_query(db: Session, household_id: int):
    return db.query(ReceiptItemCorrection).filter(
        ReceiptItemCorrection.household_id == household_id,
        ReceiptItemCorrection.was_corrected == True,
        ReceiptItemCorrection.was_removed == False,
    ).order_by(ReceiptItemCorrection.created_at.desc(), ReceiptItemCorrection.id.desc())


def matching_vendor_names(
    db: Session,
    household_id: int,
    store_name: str,
    threshold: float = 0.8,
) -> List[str]:
    """Stored store names for the household that fuzzily match `store_name`."""
    rows = db.query(ReceiptScan.store_name).filter(
        ReceiptScan.household_id == household_id,
        ReceiptScan.store_name.isnot(None),
    ).distinct().all()
    return [name for (name,) in rows if name_similarity(name, store_name) >= threshold]


def get_vendor_learning_examples(
    db: Session,
    household_id: int,
    store_name: Optional[str],
    limit: int = 10,
    threshold: float = 0.8,
) -> List[ReceiptItemCorrection]:
    """Most recent corrections made on receipts from the same vendor."""
    if not store_name:
        return []
    vendors = matching_vendor_names(db, household_id, store_name, threshold)
    if not vendors:
        return []
    return _learning_query(db, household_id).join(
        ReceiptScan, ReceiptItemCorrection.receipt_scan_id == ReceiptScan.id
    ).filter(ReceiptScan.store_name.in_(vendors)).limit(limit).all()


def get_general_learning_examples(
    db: Session,
    household_id: int,
    limit: int = 5,
) -> List[ReceiptItemCorrection]:
    """Most recent corrections regardless of vendor, for stores not seen before."""
    return _learning_query(db, household_id).limit(limit).all()


def get_learning_examples(
    db: Session,
    household_id: int,
    store_name: Optional[str],
    vendor_limit: int = 10,
    general_limit: int = 5,
    threshold: float = 0.8,
) -> List[ReceiptItemCorrection]:
    examples = get_vendor_learning_examples(db, household_id, store_name, vendor_limit, threshold)
    if examples:
        logger.info(f"Using {len(examples)} vendor learning examples for '{store_name}'")
        return examples
    examples = get_general_learning_examples(db, household_id, general_limit)
    if examples:
        logger.info(f"No vendor examples for '{store_name}', using {len(examples)} general examples")
    return examples


def format_examples_for_prompt(examples: List[ReceiptItemCorrection], store_name: Optional[str] = None) -> str:
    if not examples:
        return ""
    lines = "\n".join(
        f"- model saw \"{ex.ai_extracted_name}\" → user corrected to \"{ex.corrected_name}\""
        + (
            f" (quantity \"{ex.corrected_quantity}\")"
            if ex.corrected_quantity and ex.corrected_quantity != ex.ai_extracted_quantity else ""
        )
        + (
            f" (category {ex.corrected_category})"
            if ex.corrected_category and ex.corrected_category != ex.ai_extracted_category else ""
        )
        for ex in examples
    )
    source = f"receipts from {store_name}" if store_name else "earlier receipts"
    return (
        f"PREVIOUS CORRECTIONS from {source}:\n{lines}\n\n"
        "Use these examples to improve your extraction accuracy."
    )


def get_learning_stats(db: Session, household_id: int) -> LearningStats:
    total_scans = db.query(func.count(ReceiptScan.id)).filter(
        ReceiptScan.household_id == household_id
    ).scalar() or 0
    total_corrections = db.query(func.count(ReceiptItemCorrection.id)).filter(
        ReceiptItemCorrection.household_id == household_id,
        ReceiptItemCorrection.was_corrected == True,
    ).scalar() or 0
    unique_vendors = db.query(func.count(func.distinct(ReceiptScan.store_name))).filter(
        ReceiptScan.household_id == household_id,
        ReceiptScan.store_name.isnot(None),
    ).scalar() or 0
    return LearningStats(
        total_scans=total_scans,
        total_corrections=total_corrections,
        unique_vendors=unique_vendors,
    )
