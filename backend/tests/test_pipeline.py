"""
End-to-end tests for the receipt scan pipeline with a scripted vision model.
"""
import asyncio

import pytest

from pantry_scanner.services.pipeline import CostTracker, PipelineConfig, ReceiptScanPipeline, renumber_items
from pantry_scanner.schemas.receipt import ReceiptItem

from conftest import ScriptedExtractor, is_chunk, is_prescan, is_verification


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def line(name, number, position, price=1.0, **extra):
    return {
        "name": name,
        "price": price,
        "source_text": name.upper(),
        "line_number": number,
        "position_percent": position,
        **extra,
    }


def receipt_json(items, **header):
    return {"store_name": "Fresh Market", "purchase_date": "2024-03-02", "items": items, **header}


def prescan_json(estimate, store_name="Fresh Market"):
    return {"store_name": store_name, "estimated_item_count": estimate}


SHORT_RECEIPT = receipt_json([
    line("Bananas", 1, 10, 1.18, is_first_item=True),
    line("Whole Milk", 2, 50, 3.49),
    line("Bread", 3, 90, 2.99, is_last_item=True),
], subtotal=7.66, tax=0, total=7.66)

RECEIPT_WITH_GAP = receipt_json([
    line("Bananas", 1, 10, is_first_item=True),
    line("Whole Milk", 2, 30),
    line("Eggs", 4, 70),
    line("Bread", 5, 90, is_last_item=True),
], subtotal=5.0, tax=0, total=5.0)


def scripted(extraction, verification=None, prescan=None):
    """Handler answering the prescan, extraction and verification prompts."""
    def handler(prompt, image):
        if is_prescan(prompt):
            return prescan if prescan is not None else prescan_json(5)
        if is_verification(prompt):
            return verification if verification is not None else {"missed_items": []}
        return extraction(prompt) if callable(extraction) else extraction
    return handler


def run_scan(handler, config=None, **kwargs):
    extractor = ScriptedExtractor(handler)
    pipeline = ReceiptScanPipeline(extractor, config or PipelineConfig())
    return asyncio.run(pipeline.scan(b"img", "image/jpeg", **kwargs)), extractor


def positions(result):
    return [item.position_percent for item in result.receipt.items]


class TestSinglePass:
    """Tests for short receipts read in one pass."""

    def test_successful_scan(self):
        result, extractor = run_scan(scripted(SHORT_RECEIPT))
        assert result.success
        assert [i.name for i in result.receipt.items] == ["Bananas", "Whole Milk", "Bread"]
        assert [i.line_number for i in result.receipt.items] == [1, 2, 3]
        assert positions(result) == [0.0, 50.0, 100.0]
        assert result.receipt.store_name == "Fresh Market"
        assert result.analytics.strategy == "single_pass"
        # Prescan and extraction only; no gaps means no verification call
        assert len(extractor.prompts) == 2

    def test_tokens_and_cost_summed(self):
        result, _ = run_scan(scripted(SHORT_RECEIPT))
        assert result.tokens_used == 300
        assert result.cost_usd == pytest.approx(200 / 1e6 * 2.50 + 100 / 1e6 * 10.00)

    def test_confidence_reported(self):
        result, _ = run_scan(scripted(SHORT_RECEIPT))
        assert result.confidence == 100.0
        assert result.receipt.confidence == 100.0

    def test_items_categorized(self):
        result, _ = run_scan(scripted(SHORT_RECEIPT))
        assert [i.category.value for i in result.receipt.items] == ["produce", "dairy", "pantry"]

    def test_prescan_failure_is_not_fatal(self):
        result, _ = run_scan(scripted(SHORT_RECEIPT, prescan="no idea"))
        assert result.success
        assert len(result.receipt.items) == 3

    def test_store_name_override_used_when_receipt_has_none(self):
        receipt = dict(SHORT_RECEIPT, store_name=None)
        result, _ = run_scan(scripted(receipt, prescan=prescan_json(3, store_name=None)), store_name="Corner Shop")
        assert result.receipt.store_name == "Corner Shop"

    def test_math_warning(self):
        receipt = dict(SHORT_RECEIPT, subtotal=20.0, total=20.0)
        result, _ = run_scan(scripted(receipt))
        assert any(w.startswith("MATH ERROR") for w in result.receipt.quality_warnings)
        assert result.confidence < 100.0

    def test_exact_repeats_consolidated(self):
        receipt = receipt_json([
            line("Greek Yogurt", 1, 10, 1.25, is_first_item=True),
            line("Greek Yogurt", 2, 50, 1.25),
            line("Bread", 3, 90, 2.99, is_last_item=True),
        ], total=5.49)
        result, _ = run_scan(scripted(receipt))
        assert [i.name for i in result.receipt.items] == ["Greek Yogurt", "Bread"]
        assert result.receipt.items[0].price == 2.50
        assert [i.line_number for i in result.receipt.items] == [1, 2]


class TestFatalErrors:
    """Only the first extraction call can fail a scan."""

    @pytest.mark.parametrize("status,error_type", [(401, "auth"), (429, "rate_limit"), (400, "invalid_image")])
    def test_classified_api_errors(self, status, error_type):
        result, _ = run_scan(scripted(StatusError(status)))
        assert not result.success
        assert result.error_type == error_type
        assert result.error
        assert result.receipt is None

    def test_unparseable_extraction(self):
        result, _ = run_scan(scripted("Sorry, I can't help with that."))
        assert not result.success
        assert result.error_type == "invalid_response"

    def test_tokens_reported_on_failure(self):
        result, _ = run_scan(scripted(StatusError(500)))
        assert result.tokens_used == 150


class TestVerificationStage:
    """Tests for gap-driven verification inside a scan."""

    def test_missed_item_recovered(self):
        verification = {
            "missed_items": [{"name": "Butter", "price": 4.29, "after_line_number": 2, "source_text": "BUTTER"}],
            "total_visible_count": 5,
        }
        result, extractor = run_scan(scripted(RECEIPT_WITH_GAP, verification))
        items = result.receipt.items
        assert [i.name for i in items] == ["Bananas", "Whole Milk", "Butter", "Eggs", "Bread"]
        assert [i.line_number for i in items] == [1, 2, 3, 4, 5]
        assert positions(result) == sorted(positions(result))
        assert "Verification pass recovered 1 missed item" in result.receipt.quality_warnings
        assert result.analytics.verification_found_count == 1
        assert len(extractor.prompts) == 3

    def test_malformed_verification_keeps_items(self):
        """A broken verification answer leaves the extracted items as they were."""
        result, _ = run_scan(scripted(RECEIPT_WITH_GAP, '{"missed_items": [{"name": "But'))
        assert result.success
        assert [i.name for i in result.receipt.items] == ["Bananas", "Whole Milk", "Eggs", "Bread"]
        assert [i.line_number for i in result.receipt.items] == [1, 2, 3, 4]
        assert any("Could not double-check" in w for w in result.receipt.quality_warnings)

    def test_verification_error_is_not_fatal(self):
        result, _ = run_scan(scripted(RECEIPT_WITH_GAP, TimeoutError("timed out")))
        assert result.success
        assert len(result.receipt.items) == 4

    def test_visible_count_warning(self):
        result, _ = run_scan(scripted(RECEIPT_WITH_GAP, {"missed_items": [], "total_visible_count": 9}))
        assert any("appears to show 9 items" in w for w in result.receipt.quality_warnings)

    def test_verification_can_be_disabled(self):
        config = PipelineConfig(verification_enabled=False)
        result, extractor = run_scan(scripted(RECEIPT_WITH_GAP), config=config)
        assert len(extractor.prompts) == 2
        assert [i.line_number for i in result.receipt.items] == [1, 2, 3, 4]


class TestChunkedScan:
    """Tests for long receipts read in overlapping sections."""

    TOP = receipt_json([line("Bananas", 1, 5), line("Whole Milk", 2, 15), line("Eggs", 3, 25)])
    BOTTOM = {"items": [line("Coffee", 1, 75), line("Tea", 2, 85), line("Bread", 3, 95)], "total": 6.0}

    def extraction(self, failing_sections=()):
        def answer(prompt):
            if any(is_chunk(prompt, section) for section in failing_sections):
                return RuntimeError("connection reset")
            if is_chunk(prompt, "top"):
                return self.TOP
            if is_chunk(prompt, "bottom"):
                return self.BOTTOM
            if is_chunk(prompt):
                return {"items": []}
            return SHORT_RECEIPT
        return answer

    def test_failed_middle_chunk_keeps_other_items(self):
        result, _ = run_scan(scripted(self.extraction(["middle"]), prescan=prescan_json(40)))
        assert result.success
        items = result.receipt.items
        assert [i.name for i in items] == ["Bananas", "Whole Milk", "Eggs", "Coffee", "Tea", "Bread"]
        assert [i.line_number for i in items] == [1, 2, 3, 4, 5, 6]
        assert positions(result) == sorted(positions(result))
        assert any("middle section" in w for w in result.receipt.quality_warnings)
        assert result.analytics.strategy == "chunked"
        assert result.analytics.chunk_count == 3
        assert result.analytics.failed_chunk_count == 1

    def test_failed_bottom_chunk_sent_to_verification(self):
        """The unread bottom band becomes a trailing gap that verification searches."""
        middle = {"items": [line("Apples", 1, 45), line("Pears", 2, 50), line("Rice", 3, 55)]}

        def answer(prompt):
            if is_chunk(prompt, "bottom"):
                return RuntimeError("connection reset")
            if is_chunk(prompt, "middle"):
                return middle
            return self.TOP

        verification = {
            "missed_items": [{"name": "Coffee", "price": 1.0, "after_line_number": 6, "source_text": "COFFEE"}],
        }
        result, extractor = run_scan(scripted(answer, verification, prescan=prescan_json(40)))
        assert result.success
        verification_prompts = [p for p in extractor.prompts if is_verification(p)]
        assert len(verification_prompts) == 1
        assert "(end of receipt)" in verification_prompts[0]
        assert result.analytics.gap_count == 1
        items = result.receipt.items
        assert [i.name for i in items] == ["Bananas", "Whole Milk", "Eggs", "Apples", "Pears", "Rice", "Coffee"]
        assert [i.line_number for i in items] == [1, 2, 3, 4, 5, 6, 7]
        assert any("bottom section" in w for w in result.receipt.quality_warnings)

    def test_header_from_chunks(self):
        result, _ = run_scan(scripted(self.extraction(), prescan=prescan_json(40)))
        assert result.receipt.store_name == "Fresh Market"
        assert result.receipt.total == 6.0

    def test_all_chunks_failing_falls_back_to_single_pass(self):
        failing = ["top", "middle", "bottom"]
        result, _ = run_scan(scripted(self.extraction(failing), prescan=prescan_json(40)))
        assert result.success
        assert [i.name for i in result.receipt.items] == ["Bananas", "Whole Milk", "Bread"]
        assert result.analytics.strategy == "single_pass"
        assert any("Sectioned reading" in w for w in result.receipt.quality_warnings)

    def test_chunking_can_be_disabled(self):
        config = PipelineConfig(chunking_enabled=False)
        result, extractor = run_scan(scripted(self.extraction(), prescan=prescan_json(40)), config=config)
        assert result.analytics.strategy == "single_pass"
        assert not any(is_chunk(p) for p in extractor.prompts)

    def test_chunk_tokens_counted(self):
        result, extractor = run_scan(scripted(self.extraction(), prescan=prescan_json(40)))
        assert result.tokens_used == 150 * len(extractor.prompts)


class TestLearningLookup:
    """Tests for feeding past corrections into the extraction prompt."""

    def test_lookup_receives_vendor_and_context_reaches_prompt(self):
        seen = []

        def lookup(vendor):
            seen.append(vendor)
            return 'PREVIOUS CORRECTIONS from receipts from Fresh Market:\n- model saw "BNNA" → user corrected to "Banana"'

        result, extractor = run_scan(scripted(SHORT_RECEIPT), learning_lookup=lookup)
        assert seen == ["Fresh Market"]
        assert result.success
        assert any('model saw "BNNA"' in p for p in extractor.prompts)

    def test_failing_lookup_is_a_warning(self):
        def lookup(vendor):
            raise RuntimeError("database is locked")

        result, _ = run_scan(scripted(SHORT_RECEIPT), learning_lookup=lookup)
        assert result.success
        assert "Processing step 'learning examples' failed; results may be less accurate" in result.receipt.quality_warnings


class TestHelpers:
    """Tests for renumbering and cost tracking."""

    def test_renumber_items(self):
        items = [
            ReceiptItem(name="C", price=1.0),
            ReceiptItem(name="B", price=1.0, line_number=7),
            ReceiptItem(name="A", price=1.0, line_number=2),
        ]
        renumbered = renumber_items(items)
        assert [(i.name, i.line_number) for i in renumbered] == [("A", 1), ("B", 2), ("C", 3)]

    def test_cost_tracker(self):
        tracker = CostTracker(input_cost_per_million=2.50, output_cost_per_million=10.00)
        tracker.add(1_000_000, 0)
        tracker.add(0, 100_000)
        assert tracker.tokens_used == 1_100_000
        assert tracker.cost_usd == pytest.approx(3.50)
        assert tracker.calls == 2
