from pantry_scanner.schemas.user import UserResponse, UserWithHousehold, Token
from pantry_scanner.schemas.receipt import (
    ItemCategory, ConsolidatedSource, ReceiptItem, ExtractedReceipt,
    ScanAnalytics, ReceiptExtractionResult, ScanResponse, ReceiptScanResponse,
    ReviewedItem, CorrectionSubmission, CorrectionSummary, LearningStats
)

__all__ = [
    # User
    "UserResponse", "UserWithHousehold", "Token",
    # Receipt
    "ItemCategory", "ConsolidatedSource", "ReceiptItem", "ExtractedReceipt",
    "ScanAnalytics", "ReceiptExtractionResult", "ScanResponse", "ReceiptScanResponse",
    "ReviewedItem", "CorrectionSubmission", "CorrectionSummary", "LearningStats",
]
