"""
Tests for consolidation of repeated receipt lines.
"""
import pytest

from pantry_scanner.schemas.receipt import ReceiptItem
from pantry_scanner.services.consolidation import (
    combine_quantities, consolidate_items, distinguishing_tokens,
    merge_duplicate_group, validate_consolidation,
)


def banana_lines():
    return [
        ReceiptItem(name="Bananas", quantity="2 lb", price=1.18, category="produce",
                    source_text="BANANAS 2 lb $1.18", line_number=3),
        ReceiptItem(name="Bananas", quantity="1.5 lb", price=0.89, category="produce",
                    source_text="BANANAS 1.5 lb $0.89", line_number=7),
    ]


def consolidated(name, price, quantity, sources, category="dairy"):
    return ReceiptItem(
        name=name, price=price, quantity=quantity, category=category,
        consolidated_count=len(sources),
        consolidated_details=f"Combined {len(sources)} separate entries",
        consolidated_sources=sources,
    )


class TestMergeDuplicateGroup:
    """Tests for folding duplicate lines together."""

    def test_bananas_combined(self):
        """2 lb at $1.18 plus 1.5 lb at $0.89 is one 3.5 lb item at $2.07."""
        merged = merge_duplicate_group(banana_lines())
        assert merged.quantity == "3.5 lb"
        assert merged.price == pytest.approx(2.07, abs=0.01)
        assert merged.consolidated_count == 2
        assert merged.consolidated_details.startswith("Combined 2 entries")
        assert [s.source_text for s in merged.consolidated_sources] == [
            "BANANAS 2 lb $1.18", "BANANAS 1.5 lb $0.89"
        ]

    def test_keeps_first_line_number(self):
        assert merge_duplicate_group(banana_lines()).line_number == 3

    def test_single_item_unchanged(self):
        item = banana_lines()[0]
        assert merge_duplicate_group([item]) is item


class TestCombineQuantities:
    """Tests for combine_quantities."""

    def test_same_unit(self):
        assert combine_quantities(["2 lb", "1.5 lb"]) == "3.5 lb"

    def test_unit_aliases(self):
        assert combine_quantities(["2 lbs", "1 lb"]) == "3 lb"

    def test_missing_quantities_count_as_one(self):
        assert combine_quantities([None, None]) == "2"

    def test_different_units(self):
        assert combine_quantities(["1 gal", "2 lb"]) is None

    def test_unreadable(self):
        assert combine_quantities(["a few", "1"]) is None


class TestDistinguishingTokens:
    """Tests for size and variant token detection."""

    def test_container_sizes(self):
        assert "12oz" in distinguishing_tokens("COKE 12 OZ")
        assert "2l" in distinguishing_tokens("COKE 2 L")

    def test_weights_are_not_distinguishing(self):
        assert distinguishing_tokens("BANANAS 2 lb $1.18") == set()

    def test_variant_words(self):
        assert distinguishing_tokens("YOGURT VANILLA") == {"vanilla"}

    def test_prices_ignored(self):
        assert distinguishing_tokens("BREAD $3.49") == set()


class TestValidateConsolidation:
    """Tests for checking merges made by the extractor."""

    def test_valid_merge_kept(self):
        item = consolidated("Bananas", 2.07, "3.5 lb", [
            {"source_text": "BANANAS 2 lb $1.18", "quantity": "2 lb", "price": 1.18},
            {"source_text": "BANANAS 1.5 lb $0.89", "quantity": "1.5 lb", "price": 0.89},
        ], category="produce")
        items, warning = validate_consolidation(item)
        assert items == [item]
        assert warning is None

    def test_wrong_price_corrected(self):
        item = consolidated("Bananas", 2.50, "3.5 lb", [
            {"source_text": "BANANAS 2 lb", "quantity": "2 lb", "price": 1.18},
            {"source_text": "BANANAS 1.5 lb", "quantity": "1.5 lb", "price": 0.89},
        ], category="produce")
        items, warning = validate_consolidation(item)
        assert items[0].price == pytest.approx(2.07)
        assert "2.07" in warning

    def test_wrong_quantity_corrected(self):
        item = consolidated("Bananas", 2.07, "2 lb", [
            {"source_text": "BANANAS", "quantity": "2 lb", "price": 1.18},
            {"source_text": "BANANAS", "quantity": "1.5 lb", "price": 0.89},
        ], category="produce")
        items, _ = validate_consolidation(item)
        assert items[0].quantity == "3.5 lb"

    def test_different_pack_sizes_split_back(self):
        """Lines that differ in size are different products and are un-merged."""
        item = consolidated("2% Milk", 7.98, "2", [
            {"source_text": "2% MILK 1 GAL", "quantity": "1", "price": 4.99},
            {"source_text": "2% MILK 0.5 GAL", "quantity": "1", "price": 2.99},
        ])
        items, warning = validate_consolidation(item)
        assert len(items) == 2
        assert [i.price for i in items] == [4.99, 2.99]
        assert all(i.consolidated_count is None for i in items)
        assert "Un-merged" in warning

    def test_different_flavors_split_back(self):
        item = consolidated("Yogurt", 2.50, "2", [
            {"source_text": "YOGURT VANILLA", "price": 1.25},
            {"source_text": "YOGURT STRAWBERRY", "price": 1.25},
        ])
        items, _ = validate_consolidation(item)
        assert len(items) == 2

    def test_unconsolidated_item_untouched(self):
        item = ReceiptItem(name="Bread", price=3.49)
        assert validate_consolidation(item) == ([item], None)


class TestConsolidateItems:
    """Tests for the full consolidation pass."""

    def test_exact_repeats_merged(self):
        items = [
            ReceiptItem(name="Greek Yogurt", price=1.25, category="dairy", source_text="GRK YGRT 5.3OZ"),
            ReceiptItem(name="Bread", price=3.49, category="pantry"),
            ReceiptItem(name="Greek Yogurt", price=1.25, category="dairy", source_text="GRK YGRT 5.3OZ"),
        ]
        report = consolidate_items(items)
        assert [i.name for i in report.items] == ["Greek Yogurt", "Bread"]
        assert report.items[0].price == 2.50
        assert report.items[0].consolidated_count == 2
        assert report.merged_repeats == 1

    def test_repeats_with_different_sizes_not_merged(self):
        items = [
            ReceiptItem(name="Coca Cola", price=1.99, category="pantry", source_text="COKE 12 OZ"),
            ReceiptItem(name="Coca Cola", price=2.49, category="pantry", source_text="COKE 2 L"),
        ]
        assert len(consolidate_items(items).items) == 2

    def test_repeat_merging_can_be_disabled(self):
        items = banana_lines()
        report = consolidate_items(items, merge_repeats=False)
        assert len(report.items) == 2
        assert report.merged_repeats == 0

    def test_demoted_merge_counted(self):
        item = consolidated("2% Milk", 7.98, "2", [
            {"source_text": "2% MILK 1 GAL", "quantity": "1", "price": 4.99},
            {"source_text": "2% MILK 0.5 GAL", "quantity": "1", "price": 2.99},
        ])
        report = consolidate_items([item])
        assert report.demoted == 1
        assert len(report.items) == 2
        assert report.warnings
