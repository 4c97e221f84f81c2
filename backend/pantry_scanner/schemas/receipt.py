from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Any
from datetime import date, datetime
import enum
import re


class ItemCategory(str, enum.Enum):
    PRODUCE = "produce"
    DAIRY = "dairy"
    MEAT = "meat"
    PANTRY = "pantry"
    FROZEN = "frozen"
    NON_FOOD = "non_food"


_MONEY_CHARS = re.compile(r"[^0-9.\-]")


def _coerce_money(value: Any) -> Any:
    """Accept "$1.18", "1,299.00" or plain numbers from model output."""
    if isinstance(value, str):
        cleaned = _MONEY_CHARS.sub("", value.replace(",", ""))
        if not cleaned:
            return None
        return float(cleaned)
    return value


class ConsolidatedSource(BaseModel):
    """One raw receipt line folded into a consolidated item."""
    source_text: str
    quantity: Optional[str] = None
    price: Optional[float] = None

    @field_validator("price", mode="before")
    @classmethod
    def parse_price(cls, v):
        return _coerce_money(v)

    @field_validator("quantity", mode="before")
    @classmethod
    def quantity_to_str(cls, v):
        if isinstance(v, (int, float)):
            return f"{v:g}"
        return v


class ReceiptItem(BaseModel):
    """A purchased line item as reported by the extractor and refined by the pipeline."""
    name: str = Field(min_length=1)
    quantity: Optional[str] = None  # "2 lb", "1 dozen", "3 cans"
    price: float = Field(ge=0)
    unit_price: Optional[float] = Field(default=None, ge=0)
    category: Optional[ItemCategory] = None
    is_food: Optional[bool] = None
    source_text: Optional[str] = None  # Verbatim receipt text, never rewritten
    line_number: Optional[int] = None
    position_percent: Optional[float] = None

    # Anchors for position calibration
    is_first_item: bool = False
    is_last_item: bool = False
    is_anchor_mid: bool = False

    # Verification pass: line number the recovered item follows
    after_line_number: Optional[int] = None
    ocr_line_id: Optional[int] = None

    consolidated_count: Optional[int] = None
    consolidated_details: Optional[str] = None
    consolidated_sources: List[ConsolidatedSource] = []

    model_config = {"extra": "ignore"}

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("price", "unit_price", mode="before")
    @classmethod
    def parse_money(cls, v):
        return _coerce_money(v)

    @field_validator("quantity", mode="before")
    @classmethod
    def quantity_to_str(cls, v):
        if isinstance(v, (int, float)):
            return f"{v:g}"
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("category", mode="before")
    @classmethod
    def parse_category(cls, v):
        # Unknown categories are left for keyword fallback categorization
        if isinstance(v, str):
            key = v.strip().lower().replace("-", "_").replace(" ", "_")
            if key in {c.value for c in ItemCategory}:
                return key
            return None
        return v

    @field_validator("line_number", "after_line_number", mode="before")
    @classmethod
    def parse_line_number(cls, v, info):
        if v is None or isinstance(v, bool):
            return None
        try:
            number = int(float(v))
        except (TypeError, ValueError):
            return None
        # after_line_number 0 means "above the first item"
        lowest = 0 if info.field_name == "after_line_number" else 1
        return number if number >= lowest else None

    @field_validator("position_percent", mode="before")
    @classmethod
    def clamp_position(cls, v):
        if v is None:
            return None
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        return max(0.0, min(100.0, value))


class ExtractedReceipt(BaseModel):
    store_name: Optional[str] = None
    store_location: Optional[str] = None
    purchase_date: Optional[date] = None
    items: List[ReceiptItem] = []
    subtotal: Optional[float] = None
    tax: Optional[float] = None
    total: Optional[float] = None
    payment_method: Optional[str] = None
    receipt_number: Optional[str] = None
    quality_warnings: List[str] = []
    confidence: Optional[float] = None  # 0-100

    model_config = {"extra": "ignore"}

    @field_validator("subtotal", "tax", "total", mode="before")
    @classmethod
    def parse_money(cls, v):
        return _coerce_money(v)

    @field_validator("purchase_date", mode="before")
    @classmethod
    def parse_date(cls, v):
        if isinstance(v, str):
            try:
                return datetime.fromisoformat(v.strip()[:10]).date()
            except ValueError:
                return None
        return v

    @field_validator("quality_warnings", mode="before")
    @classmethod
    def parse_warnings(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(w) for w in v]


class ScanAnalytics(BaseModel):
    initial_item_count: int
    verification_found_count: int = 0
    final_item_count: int
    gap_count: int = 0
    high_confidence_gap_count: int = 0
    capture_rate_estimate: float
    anchor_count: int = 0
    position_distribution: str = "uniform"  # uniform | clustered | irregular
    receipt_length_category: str = "short"  # short | medium | long | very_long
    strategy: str = "single_pass"  # single_pass | chunked
    chunk_count: int = 0
    failed_chunk_count: int = 0
    processing_time_ms: Optional[int] = None


class ReceiptExtractionResult(BaseModel):
    success: bool
    receipt: Optional[ExtractedReceipt] = None
    error: Optional[str] = None
    error_type: Optional[str] = None  # auth | rate_limit | invalid_image | invalid_response | generic
    confidence: Optional[float] = None
    tokens_used: Optional[int] = None
    cost_usd: Optional[float] = None
    analytics: Optional[ScanAnalytics] = None


# ============== API SCHEMAS ==============

class ScanResponse(ReceiptExtractionResult):
    scan_id: Optional[int] = None


class ReceiptScanResponse(BaseModel):
    id: int
    household_id: int
    store_name: Optional[str] = None
    store_location: Optional[str] = None
    purchase_date: Optional[date] = None
    confidence_score: Optional[float] = None
    tokens_used: Optional[int] = None
    cost_usd: Optional[float] = None
    item_count: Optional[int] = None
    quality_warnings: Optional[List[str]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReviewedItem(BaseModel):
    """An item as shown in (or returned from) the review screen."""
    name: str
    quantity: Optional[str] = None
    price: Optional[float] = None
    category: Optional[str] = None
    original_index: Optional[int] = None  # Stable index into the extracted list

    @field_validator("price", mode="before")
    @classmethod
    def parse_price(cls, v):
        return _coerce_money(v)


class CorrectionSubmission(BaseModel):
    original_items: List[ReviewedItem]
    corrected_items: List[ReviewedItem]


class CorrectionSummary(BaseModel):
    scan_id: int
    corrections_saved: int
    corrected_count: int
    removed_count: int


class LearningStats(BaseModel):
    total_scans: int
    total_corrections: int
    unique_vendors: int
