"""
Receipt scan pipeline.

Sequences one scan: optional OCR pre-pass, prescan (store + item estimate),
single-pass or chunked extraction, normalization, gap detection, the
verification pass, consolidation, renumbering and position calibration.

Only the first extraction can fail a scan. Every later stage degrades: its
failure is logged and recorded as a quality warning, and the scan returns
whatever the earlier stages produced.
"""

from dataclasses import dataclass
from typing import Any, Callable, List, Optional
import logging
import time

from pantry_scanner.schemas.receipt import ExtractedReceipt, ReceiptExtractionResult, ReceiptItem
from pantry_scanner.services.chunking import extract_chunks, merge_chunk_results, plan_chunks, should_use_chunking
from pantry_scanner.services.consolidation import consolidate_items
from pantry_scanner.services.gap_detector import HIGH, Gap, find_line_number_gaps
from pantry_scanner.services.item_normalizer import ItemNormalizer
from pantry_scanner.services.ocr import OCRProvider, OCRResult, apply_ocr_positions, format_ocr_for_prompt, run_ocr
from pantry_scanner.services.position_calibrator import calibrate_positions, uniform_position
from pantry_scanner.services.prompts import PRESCAN_PROMPT, build_extraction_prompt
from pantry_scanner.services.receipt_analytics import (
    build_analytics,
    calculate_confidence,
    count_anchors,
    log_analytics,
    validate_receipt_math,
)
from pantry_scanner.services.verification import run_verification, splice_missed_items
from pantry_scanner.services.vision_client import (
    VisionExtractor,
    detect_media_type,
    parse_extracted_receipt,
    request_json,
)

logger = logging.getLogger(__name__)

PRESCAN_MAX_TOKENS = 200


@dataclass
class PipelineConfig:
    chunking_enabled: bool = True
    chunking_min_items: int = 30
    chunk_size_items: int = 15
    chunk_overlap_percent: float = 0.15
    chunk_match_threshold: float = 0.75
    verification_enabled: bool = True
    ocr_enabled: bool = False
    consolidate_exact_repeats: bool = True
    input_cost_per_million: float = 2.50
    output_cost_per_million: float = 10.00

    @classmethod
    def from_settings(cls, settings) -> "PipelineConfig":
        return cls(
            chunking_enabled=settings.CHUNKING_ENABLED,
            chunking_min_items=settings.CHUNKING_MIN_ITEMS,
            chunk_size_items=settings.CHUNK_SIZE_ITEMS,
            chunk_overlap_percent=settings.CHUNK_OVERLAP_PERCENT,
            chunk_match_threshold=settings.CHUNK_MATCH_THRESHOLD,
            verification_enabled=settings.VERIFICATION_ENABLED,
            ocr_enabled=settings.OCR_ENABLED,
            consolidate_exact_repeats=settings.CONSOLIDATE_EXACT_REPEATS,
            input_cost_per_million=settings.INPUT_COST_PER_MILLION,
            output_cost_per_million=settings.OUTPUT_COST_PER_MILLION,
        )


class CostTracker:
    """Token and USD totals across every model call of one scan."""

    def __init__(self, input_cost_per_million: float, output_cost_per_million: float):
        self.input_cost_per_million = input_cost_per_million
        self.output_cost_per_million = output_cost_per_million
        self.input_tokens = 0
        self.output_tokens = 0
        self.calls = 0

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.calls += 1
        self.input_tokens += input_tokens or 0
        self.output_tokens += output_tokens or 0

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def cost_usd(self) -> float:
        cost = (
            self.input_tokens / 1_000_000 * self.input_cost_per_million
            + self.output_tokens / 1_000_000 * self.output_cost_per_million
        )
        return round(cost, 6)


def renumber_items(items: List[ReceiptItem]) -> List[ReceiptItem]:
    """Order by line number (unnumbered items last, stable) and number 1..N."""
    ordered = sorted(
        enumerate(items),
        key=lambda pair: (pair[1].line_number is None, pair[1].line_number or 0, pair[0]),
    )
    return [
        item.model_copy(update={"line_number": idx})
        for idx, (_, item) in enumerate(ordered, start=1)
    ]


def _uniform_positions(items: List[ReceiptItem]) -> List[ReceiptItem]:
    total = len(items)
    return [
        item.model_copy(update={"position_percent": round(uniform_position(idx, total), 2)})
        for idx, item in enumerate(items, start=1)
    ]


@dataclass
class _FirstPass:
    receipt: Optional[ExtractedReceipt] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    strategy: str = "single_pass"
    chunk_count: int = 0
    failed_chunk_count: int = 0
    expected_last_line: Optional[int] = None


class ReceiptScanPipeline:
    def __init__(
        self,
        extractor: VisionExtractor,
        config: Optional[PipelineConfig] = None,
        normalizer: Optional[ItemNormalizer] = None,
        ocr_provider: Optional[OCRProvider] = None,
    ):
        self.extractor = extractor
        self.config = config or PipelineConfig()
        self.normalizer = normalizer or ItemNormalizer()
        self.ocr_provider = ocr_provider

    def _stage(self, name: str, warnings: List[str], default: Any, func: Callable, *args, **kwargs):
        """Run a non-fatal stage; on error log it, record a warning and return `default`."""
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.warning(f"Receipt scan stage '{name}' failed, continuing without it: {e}", exc_info=True)
            warnings.append(f"Processing step '{name}' failed; results may be less accurate")
            return default

    # ============== EXTRACTION CALLS ==============

    async def prescan(self, image: bytes, media_type: str, tracker: CostTracker):
        """Cheap call for the store name and an item-count estimate. Returns (store_name, estimate)."""
        call = await request_json(self.extractor, image, media_type, PRESCAN_PROMPT, max_tokens=PRESCAN_MAX_TOKENS)
        tracker.add(call.input_tokens, call.output_tokens)
        if not call.ok:
            logger.warning(f"Prescan failed: {call.error}")
            return None, None

        store_name = call.value.get("store_name")
        if not isinstance(store_name, str) or not store_name.strip() or store_name.strip().lower() in ("null", "unknown"):
            store_name = None
        try:
            estimate = int(call.value.get("estimated_item_count"))
        except (TypeError, ValueError):
            estimate = None
        logger.info(f"Prescan: store={store_name!r}, estimated items={estimate}")
        return (store_name.strip() if store_name else None), estimate

    async def _single_pass(self, image: bytes, media_type: str, prompt: str, tracker: CostTracker) -> _FirstPass:
        call = await request_json(self.extractor, image, media_type, prompt)
        tracker.add(call.input_tokens, call.output_tokens)
        if not call.ok:
            return _FirstPass(error=call.error, error_type=call.error_type)
        return _FirstPass(receipt=parse_extracted_receipt(call.value))

    async def _chunked_pass(
        self,
        image: bytes,
        media_type: str,
        prompt: str,
        estimate: int,
        tracker: CostTracker,
        warnings: List[str],
    ) -> _FirstPass:
        chunks = plan_chunks(estimate, self.config.chunk_size_items, self.config.chunk_overlap_percent)
        outcomes = await extract_chunks(self.extractor, image, media_type, chunks, prompt)
        for outcome in outcomes:
            tracker.add(outcome.result.input_tokens, outcome.result.output_tokens)
        merged = merge_chunk_results(outcomes, self.config.chunk_match_threshold)

        if len(merged.failed_chunks) == len(chunks):
            logger.warning("Every chunk failed, falling back to single-pass extraction")
            warnings.append("Sectioned reading of this long receipt failed; read it in one pass instead")
            first = await self._single_pass(image, media_type, prompt, tracker)
            first.chunk_count = len(chunks)
            first.failed_chunk_count = len(chunks)
            return first

        for chunk in merged.failed_chunks:
            warnings.append(
                f"The {chunk.section} section of the receipt ({chunk.expected_item_range}) could not be read; "
                "items there may be missing"
            )
        return _FirstPass(
            receipt=merged.receipt,
            strategy="chunked",
            chunk_count=len(chunks),
            failed_chunk_count=len(merged.failed_chunks),
            expected_last_line=merged.expected_last_line,
        )

    # ============== SCAN ==============

    async def scan(
        self,
        image: bytes,
        media_type: Optional[str] = None,
        store_name: Optional[str] = None,
        learning_lookup: Optional[Callable[[Optional[str]], str]] = None,
    ) -> ReceiptExtractionResult:
        """
        Run the whole pipeline for one receipt image.

        `store_name` overrides the prescan's vendor guess. `learning_lookup`
        receives the vendor name and returns few-shot correction context for
        the extraction prompt.
        """
        started = time.monotonic()
        media_type = media_type or detect_media_type(image)
        tracker = CostTracker(self.config.input_cost_per_million, self.config.output_cost_per_million)
        warnings: List[str] = []

        ocr_result: Optional[OCRResult] = None
        if self.config.ocr_enabled and self.ocr_provider is not None:
            ocr_call = await run_ocr(self.ocr_provider, image)
            if ocr_call.ok:
                ocr_result = ocr_call.value
            else:
                warnings.append("Text recognition pre-pass failed; positions rely on the vision model only")

        detected_store, estimate = await self.prescan(image, media_type, tracker)
        vendor = store_name or detected_store

        learning_context = ""
        if learning_lookup is not None:
            learning_context = self._stage("learning examples", warnings, "", learning_lookup, vendor)
        ocr_context = format_ocr_for_prompt(ocr_result) if ocr_result and ocr_result.lines else ""
        prompt = build_extraction_prompt(learning_context, ocr_context)

        if self.config.chunking_enabled and should_use_chunking(estimate, self.config.chunking_min_items):
            logger.info(f"Long receipt (~{estimate} items), using chunked extraction")
            first = await self._chunked_pass(image, media_type, prompt, estimate, tracker, warnings)
        else:
            first = await self._single_pass(image, media_type, prompt, tracker)

        if first.receipt is None:
            logger.error(f"Receipt extraction failed ({first.error_type}): {first.error}")
            return ReceiptExtractionResult(
                success=False,
                error=first.error,
                error_type=first.error_type,
                tokens_used=tracker.tokens_used,
                cost_usd=tracker.cost_usd,
            )

        receipt = first.receipt
        receipt.quality_warnings = list(receipt.quality_warnings) + warnings
        if not receipt.store_name:
            receipt.store_name = vendor

        items = self._stage(
            "normalization", receipt.quality_warnings, list(receipt.items),
            self.normalizer.normalize_items, receipt.items,
        )
        if ocr_result is not None:
            items = self._stage("OCR positions", receipt.quality_warnings, items, apply_ocr_positions, items, ocr_result)
        initial_count = len(items)
        anchor_count = count_anchors(items)

        # Gap detection and the verification pass
        gaps: List[Gap] = self._stage(
            "gap detection", receipt.quality_warnings, [],
            find_line_number_gaps, items, first.expected_last_line,
        )
        high_gaps = sum(1 for gap in gaps if gap.confidence == HIGH)
        recovered = 0
        unresolved_high_gaps = high_gaps
        if gaps and self.config.verification_enabled:
            verification = await run_verification(self.extractor, image, media_type, items, gaps)
            tracker.add(verification.input_tokens, verification.output_tokens)
            if verification.error:
                receipt.quality_warnings.append(
                    "Could not double-check the gaps in the item list; some items may be missing"
                )
            elif verification.missed_items:
                missed = self._stage(
                    "normalization", receipt.quality_warnings, verification.missed_items,
                    self.normalizer.normalize_items, verification.missed_items,
                )
                items = splice_missed_items(items, missed)
                recovered = len(missed)
                receipt.quality_warnings.append(
                    f"Verification pass recovered {recovered} missed item{'s' if recovered != 1 else ''}"
                )
            if verification.error is None:
                unresolved_high_gaps = max(0, high_gaps - recovered)
            if verification.total_visible_count and verification.total_visible_count > len(items):
                receipt.quality_warnings.append(
                    f"The receipt appears to show {verification.total_visible_count} items "
                    f"but only {len(items)} were extracted"
                )

        consolidation = self._stage(
            "consolidation", receipt.quality_warnings, None,
            consolidate_items, items, self.config.consolidate_exact_repeats,
        )
        if consolidation is not None:
            items = consolidation.items
            receipt.quality_warnings.extend(consolidation.warnings)

        items = renumber_items(items)
        items = self._stage(
            "position calibration", receipt.quality_warnings, None, calibrate_positions, items,
        ) or _uniform_positions(items)
        receipt.items = items

        math_warnings = validate_receipt_math(receipt)
        receipt.quality_warnings.extend(math_warnings)

        confidence = calculate_confidence(
            receipt,
            unresolved_high_gaps=unresolved_high_gaps,
            failed_chunks=first.failed_chunk_count,
            math_warnings=len(math_warnings),
        )
        receipt.confidence = confidence

        analytics = build_analytics(
            receipt,
            initial_item_count=initial_count,
            verification_found_count=recovered,
            gap_count=len(gaps),
            high_confidence_gap_count=high_gaps,
            anchor_count=anchor_count,
            strategy=first.strategy,
            chunk_count=first.chunk_count,
            failed_chunk_count=first.failed_chunk_count,
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )
        log_analytics(analytics, receipt.store_name, tracker.cost_usd)

        return ReceiptExtractionResult(
            success=True,
            receipt=receipt,
            confidence=confidence,
            tokens_used=tracker.tokens_used,
            cost_usd=tracker.cost_usd,
            analytics=analytics,
        )
