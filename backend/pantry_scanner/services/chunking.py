"""
Receipt Chunking for Long Receipts

Long receipts (~30+ lines) lose items in a single extraction pass. The
planner splits the image into overlapping vertical bands that are extracted
independently and concurrently; the merger stitches the per-chunk item lists
back together, dropping the duplicates that both neighbours saw in their
shared overlap band.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import asyncio
import io
import logging
import math

from PIL import Image, UnidentifiedImageError

from pantry_scanner.schemas.receipt import ExtractedReceipt, ReceiptItem
from pantry_scanner.services.results import CallResult
from pantry_scanner.services.similarity import name_similarity
from pantry_scanner.services.vision_client import VisionExtractor, parse_extracted_receipt, request_json

logger = logging.getLogger(__name__)

# Positions drift, so overlap candidates are searched a little beyond the band
OVERLAP_TOLERANCE_PERCENT = 5.0


@dataclass
class Chunk:
    id: str
    section: str  # top | middle | bottom, middle_N for very long receipts
    y_start_percent: float
    y_end_percent: float
    expected_item_range: str
    start_item: int
    end_item: int

    @property
    def span(self) -> float:
        return max(self.y_end_percent - self.y_start_percent, 1e-6)

    @property
    def is_full(self) -> bool:
        return self.y_start_percent <= 0 and self.y_end_percent >= 100


@dataclass
class ChunkOutcome:
    chunk: Chunk
    result: CallResult[ExtractedReceipt]
    cropped: bool = False


@dataclass
class MergeResult:
    receipt: ExtractedReceipt
    failed_chunks: List[Chunk] = field(default_factory=list)
    duplicates_removed: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    # Last line number the plan accounts for, including holes left by failed chunks
    expected_last_line: int = 0


# ============== PLANNING ==============

def should_use_chunking(estimated_item_count: Optional[int], min_items: int = 30) -> bool:
    return bool(estimated_item_count) and estimated_item_count >= min_items


def _section_name(index: int, count: int) -> str:
    if index == 0:
        return "top"
    if index == count - 1:
        return "bottom"
    if count == 3:
        return "middle"
    return f"middle_{index}"


def plan_chunks(
    estimated_item_count: int,
    chunk_size_items: int = 15,
    overlap_percent: float = 0.15,
) -> List[Chunk]:
    """
    Divide the receipt into overlapping bands of roughly `chunk_size_items`
    lines each. Every pair of neighbouring bands shares at least one line,
    so no item falls outside all chunks.
    """
    num_chunks = math.ceil(estimated_item_count / chunk_size_items) if estimated_item_count > 0 else 1

    if num_chunks <= 1:
        return [Chunk(
            id="full",
            section="top",
            y_start_percent=0,
            y_end_percent=100,
            expected_item_range=f"items 1-{max(estimated_item_count, 1)}",
            start_item=1,
            end_item=max(estimated_item_count, 1),
        )]

    overlap_items = max(1, math.floor(chunk_size_items * overlap_percent))
    chunks = []
    for i in range(num_chunks):
        start_item = max(1, i * chunk_size_items - (overlap_items if i > 0 else 0) + 1)
        end_item = min(
            estimated_item_count,
            (i + 1) * chunk_size_items + (overlap_items if i < num_chunks - 1 else 0),
        )
        start_percent = max(0, round((start_item - 1) / estimated_item_count * 100))
        end_percent = min(100, round(end_item / estimated_item_count * 100))
        chunks.append(Chunk(
            id=f"chunk_{i + 1}",
            section=_section_name(i, num_chunks),
            y_start_percent=start_percent,
            y_end_percent=end_percent,
            expected_item_range=f"items {start_item}-{end_item}",
            start_item=start_item,
            end_item=end_item,
        ))

    logger.info(
        f"Planned {len(chunks)} chunks for ~{estimated_item_count} items: "
        + ", ".join(f"{c.id} {c.expected_item_range} ({c.y_start_percent}%-{c.y_end_percent}%)" for c in chunks)
    )
    return chunks


def crop_image_to_chunk(image: bytes, chunk: Chunk) -> Tuple[bytes, bool]:
    """
    Crop the image to the chunk's vertical band.
    Returns (image bytes, cropped). Images Pillow cannot decode are sent
    whole; the chunk prompt then names the band to focus on.
    """
    if chunk.is_full:
        return image, False
    try:
        with Image.open(io.BytesIO(image)) as img:
            width, height = img.size
            top = round(chunk.y_start_percent / 100 * height)
            bottom = max(top + 1, round(chunk.y_end_percent / 100 * height))
            band = img.crop((0, top, width, bottom))
            if band.mode in ("RGBA", "P") and img.format != "PNG":
                band = band.convert("RGB")
            buffer = io.BytesIO()
            band.save(buffer, format=img.format or "JPEG")
            return buffer.getvalue(), True
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"Could not crop image for {chunk.id}, sending full image: {e}")
        return image, False


def build_chunk_prompt(chunk: Chunk, base_prompt: str, cropped: bool) -> str:
    if cropped:
        view = (
            f"You are viewing ONLY the {chunk.section.upper()} SECTION of a longer receipt, "
            f"cropped from {chunk.y_start_percent}% to {chunk.y_end_percent}% of the full image."
        )
        position_rule = "position_percent is relative to THIS SECTION (0 = top of the section, 100 = bottom)"
    else:
        view = (
            f"Focus ONLY on the {chunk.section.upper()} SECTION of this receipt, "
            f"from {chunk.y_start_percent}% to {chunk.y_end_percent}% of the image height."
        )
        position_rule = "position_percent is relative to the FULL receipt"

    return f"""IMPORTANT - CHUNK-SPECIFIC INSTRUCTIONS:
{view}
Expected content: roughly {chunk.expected_item_range} of the receipt.

EXTRACTION RULES FOR THIS CHUNK:
1. Extract ONLY items that are more than 50% visible in this section
2. Items cut off at the top/bottom edge should still be extracted if most of the item is visible (duplicates are removed later)
3. Number line_number sequentially within this section, starting at 1
4. {position_rule}
5. Only report store details and totals if they are visible in this section

{base_prompt}"""


async def _extract_chunk(
    extractor: VisionExtractor,
    image: bytes,
    media_type: str,
    chunk: Chunk,
    base_prompt: str,
) -> ChunkOutcome:
    chunk_image, cropped = await asyncio.to_thread(crop_image_to_chunk, image, chunk)
    call = await request_json(extractor, chunk_image, media_type, build_chunk_prompt(chunk, base_prompt, cropped))
    if not call.ok:
        return ChunkOutcome(chunk=chunk, result=CallResult.failure(
            call.error, call.error_type, call.input_tokens, call.output_tokens
        ), cropped=cropped)
    receipt = parse_extracted_receipt(call.value)
    return ChunkOutcome(
        chunk=chunk,
        result=CallResult.success(receipt, call.input_tokens, call.output_tokens),
        cropped=cropped,
    )


async def extract_chunks(
    extractor: VisionExtractor,
    image: bytes,
    media_type: str,
    chunks: List[Chunk],
    base_prompt: str,
) -> List[ChunkOutcome]:
    """Run every chunk concurrently; a failing chunk never cancels its siblings."""
    settled = await asyncio.gather(
        *(_extract_chunk(extractor, image, media_type, chunk, base_prompt) for chunk in chunks),
        return_exceptions=True,
    )
    outcomes = []
    for chunk, result in zip(chunks, settled):
        if isinstance(result, Exception):
            logger.warning(f"Chunk {chunk.id} raised during extraction: {result}")
            result = ChunkOutcome(chunk=chunk, result=CallResult.failure(str(result)))
        outcomes.append(result)
    return outcomes


# ============== MERGING ==============

@dataclass
class _Entry:
    chunk_index: int
    local_index: int
    item: ReceiptItem
    global_percent: float
    margin: float
    removed: bool = False


def _match_score(a: ReceiptItem, b: ReceiptItem) -> float:
    scores = [name_similarity(a.name, b.name)]
    if a.source_text and b.source_text:
        scores.append(name_similarity(a.source_text, b.source_text))
    return max(scores)


def _entries_for(index: int, outcome: ChunkOutcome) -> List[_Entry]:
    chunk = outcome.chunk
    items = sorted(
        enumerate(outcome.result.value.items),
        key=lambda pair: (pair[1].line_number is None, pair[1].line_number or 0, pair[0]),
    )
    count = len(items)
    entries = []
    for local_index, (_, item) in enumerate(items):
        fallback = (local_index + 0.5) / count * 100
        if outcome.cropped:
            local = item.position_percent if item.position_percent is not None else fallback
            global_percent = chunk.y_start_percent + local / 100 * chunk.span
        elif item.position_percent is not None:
            global_percent = item.position_percent
        else:
            global_percent = chunk.y_start_percent + fallback / 100 * chunk.span
        global_percent = max(0.0, min(100.0, global_percent))
        margin = min(global_percent - chunk.y_start_percent, chunk.y_end_percent - global_percent)
        entries.append(_Entry(index, local_index, item, global_percent, margin))
    return entries


def _dedupe_overlap(upper: List[_Entry], lower: List[_Entry], band_start: float, band_end: float, threshold: float) -> int:
    """Greedy one-to-one matching of near-identical items in the shared band."""
    upper_candidates = [e for e in upper if e.global_percent >= band_start - OVERLAP_TOLERANCE_PERCENT]
    lower_candidates = [e for e in lower if e.global_percent <= band_end + OVERLAP_TOLERANCE_PERCENT]

    pairs = []
    for a in upper_candidates:
        for b in lower_candidates:
            score = _match_score(a.item, b.item)
            if score >= threshold:
                pairs.append((score, a, b))
    pairs.sort(key=lambda p: p[0], reverse=True)

    removed = 0
    matched = set()
    for score, a, b in pairs:
        if id(a) in matched or id(b) in matched:
            continue
        matched.update((id(a), id(b)))
        # Keep the copy that sits deeper inside its own chunk
        loser = b if a.margin >= b.margin else a
        loser.removed = True
        removed += 1
        logger.info(
            f"Deduplicated '{loser.item.name}' found in two chunks "
            f"(similarity {score:.2f}, kept copy from chunk {(a if loser is b else b).chunk_index + 1})"
        )
    return removed


def _merge_header(receipts: List[ExtractedReceipt]) -> ExtractedReceipt:
    merged = ExtractedReceipt()
    for field_name in ("store_name", "store_location", "purchase_date", "payment_method", "receipt_number"):
        merged_value = next((getattr(r, field_name) for r in receipts if getattr(r, field_name)), None)
        setattr(merged, field_name, merged_value)
    # Totals are printed at the bottom: prefer the lowest chunk that saw them
    for field_name in ("subtotal", "tax", "total"):
        merged_value = next((getattr(r, field_name) for r in reversed(receipts) if getattr(r, field_name) is not None), None)
        setattr(merged, field_name, merged_value)
    for receipt in receipts:
        for warning in receipt.quality_warnings:
            if warning not in merged.quality_warnings:
                merged.quality_warnings.append(warning)
    return merged


def merge_chunk_results(outcomes: List[ChunkOutcome], match_threshold: float = 0.75) -> MergeResult:
    """
    Merge per-chunk extractions into one receipt.

    Items are ordered top chunk first and numbered sequentially. A failed
    chunk contributes no items but leaves a hole in the numbering the size
    of its unshared item range, which the gap detector then reports. A failed
    bottom chunk has no item after its hole, so `expected_last_line` records
    how far the numbering should have reached.
    """
    outcomes = sorted(outcomes, key=lambda o: o.chunk.start_item)
    entries_by_chunk: List[Optional[List[_Entry]]] = []
    failed: List[Chunk] = []
    input_tokens = output_tokens = 0

    for index, outcome in enumerate(outcomes):
        input_tokens += outcome.result.input_tokens
        output_tokens += outcome.result.output_tokens
        if outcome.result.ok and outcome.result.value is not None:
            entries_by_chunk.append(_entries_for(index, outcome))
        else:
            logger.warning(f"Chunk {outcome.chunk.id} contributed no items: {outcome.result.error}")
            failed.append(outcome.chunk)
            entries_by_chunk.append(None)

    duplicates = 0
    for i in range(len(outcomes) - 1):
        upper, lower = entries_by_chunk[i], entries_by_chunk[i + 1]
        if upper is None or lower is None:
            continue
        duplicates += _dedupe_overlap(
            upper, lower,
            band_start=outcomes[i + 1].chunk.y_start_percent,
            band_end=outcomes[i].chunk.y_end_percent,
            threshold=match_threshold,
        )

    items: List[ReceiptItem] = []
    line = 0
    for i, entries in enumerate(entries_by_chunk):
        if entries is None:
            prev_end = outcomes[i - 1].chunk.end_item if i > 0 else 0
            next_start = outcomes[i + 1].chunk.start_item if i + 1 < len(outcomes) else outcomes[i].chunk.end_item + 1
            line += max(1, next_start - prev_end - 1)
            continue
        for entry in entries:
            if entry.removed:
                continue
            line += 1
            items.append(entry.item.model_copy(update={
                "line_number": line,
                "position_percent": round(entry.global_percent, 2),
                # Chunk-local anchors mean nothing globally; re-derived below
                "is_first_item": False,
                "is_last_item": False,
                "is_anchor_mid": entry.item.is_anchor_mid,
            }))

    if items:
        items[0] = items[0].model_copy(update={"is_first_item": True})
        items[-1] = items[-1].model_copy(update={"is_last_item": True})

    receipt = _merge_header([o.result.value for o in outcomes if o.result.ok and o.result.value is not None])
    receipt.items = items

    logger.info(
        f"Merged {len(outcomes)} chunks: {len(items)} items, "
        f"{duplicates} overlap duplicates removed, {len(failed)} chunks failed"
    )
    return MergeResult(
        receipt=receipt,
        failed_chunks=failed,
        duplicates_removed=duplicates,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        expected_last_line=line,
    )
