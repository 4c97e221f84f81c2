"""
Tests for the verification pass.
"""
import asyncio

from pantry_scanner.schemas.receipt import ReceiptItem
from pantry_scanner.services.gap_detector import find_line_number_gaps
from pantry_scanner.services.verification import (
    build_verification_prompt, parse_verification_response, parse_verification_text,
    run_verification, splice_missed_items,
)

from conftest import ScriptedExtractor


def make_items(lines):
    return [ReceiptItem(name=f"Item {line}", price=1.0, line_number=line) for line in lines]


def verify(handler, items):
    gaps = find_line_number_gaps(items)
    return asyncio.run(run_verification(ScriptedExtractor(handler), b"img", "image/jpeg", items, gaps))


class TestRunVerification:
    """Tests for run_verification."""

    def test_recovers_missed_items(self):
        items = make_items([1, 2, 4, 5])
        result = verify(lambda prompt, image: {
            "missed_items": [{"name": "Butter", "price": 4.29, "after_line_number": 2}],
            "total_visible_count": 5,
        }, items)
        assert [i.name for i in result.missed_items] == ["Butter"]
        assert result.total_visible_count == 5
        assert result.input_tokens == 100

    def test_malformed_json_returns_empty_and_leaves_items(self):
        """Unparseable output means nothing recovered; the input list is untouched."""
        items = make_items([1, 2, 4, 5])
        before = [item.model_dump() for item in items]
        result = verify(lambda prompt, image: '{"missed_items": [ {"name": "Butter",', items)
        assert result.missed_items == []
        assert result.error is not None
        assert [item.model_dump() for item in items] == before

    def test_call_error_returns_empty(self):
        result = verify(lambda prompt, image: TimeoutError("timed out"), make_items([1, 3]))
        assert result.missed_items == []
        assert result.error is not None

    def test_fenced_json_accepted(self):
        text = '```json\n{"missed_items": [{"name": "Jam", "price": 2.5, "after_line_number": 1}]}\n```'
        result = verify(lambda prompt, image: text, make_items([1, 3]))
        assert [i.name for i in result.missed_items] == ["Jam"]

    def test_prompt_lists_found_items_and_gaps(self):
        items = make_items([1, 2, 4, 5])
        prompt = build_verification_prompt(items, find_line_number_gaps(items))
        assert "1. Item 1" in prompt
        assert "Look between item 2" in prompt
        assert "total_visible_count" in prompt


class TestParseVerificationResponse:
    """Tests for tolerant response parsing."""

    def test_missing_list(self):
        assert parse_verification_response({}).missed_items == []

    def test_non_list_items(self):
        assert parse_verification_response({"missed_items": "none"}).missed_items == []

    def test_drops_malformed_entries(self):
        result = parse_verification_response({"missed_items": [
            {"name": "Jam", "price": 2.5},
            {"name": "", "price": 1.0},
            "Butter",
        ]})
        assert [i.name for i in result.missed_items] == ["Jam"]

    def test_bad_total_count(self):
        assert parse_verification_response({"total_visible_count": "lots"}).total_visible_count is None

    def test_plain_text(self):
        assert parse_verification_text("nothing to add").missed_items == []


class TestSpliceMissedItems:
    """Tests for splice_missed_items."""

    def test_inserted_between_bounding_lines(self):
        items = make_items([1, 2, 4, 5])
        missed = [ReceiptItem(name="Butter", price=4.29, after_line_number=2)]
        spliced = splice_missed_items(items, missed)
        assert [i.name for i in spliced] == ["Item 1", "Item 2", "Butter", "Item 4", "Item 5"]
        assert [i.line_number for i in spliced] == [1, 2, 3, 4, 5]

    def test_recovered_item_with_line_number_only(self):
        items = make_items([1, 2, 4])
        missed = [ReceiptItem(name="Butter", price=4.29, line_number=3)]
        spliced = splice_missed_items(items, missed)
        assert [i.name for i in spliced] == ["Item 1", "Item 2", "Butter", "Item 4"]

    def test_unplaced_item_goes_last(self):
        spliced = splice_missed_items(make_items([1, 2]), [ReceiptItem(name="Gum", price=0.99)])
        assert spliced[-1].name == "Gum"
        assert spliced[-1].line_number == 3

    def test_leading_recovery(self):
        """Items recovered above the first extracted line go first."""
        spliced = splice_missed_items(make_items([3, 4]), [ReceiptItem(name="Top", price=1.0, after_line_number=0)])
        assert [i.name for i in spliced] == ["Top", "Item 3", "Item 4"]

    def test_input_not_mutated(self):
        items = make_items([1, 3])
        splice_missed_items(items, [ReceiptItem(name="Mid", price=1.0, after_line_number=1)])
        assert [i.line_number for i in items] == [1, 3]

    def test_no_missed_items(self):
        items = make_items([1, 3])
        assert splice_missed_items(items, []) == items
