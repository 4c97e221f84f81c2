from pantry_scanner.models.household import Household
from pantry_scanner.models.user import User
from pantry_scanner.models.receipt_scan import ReceiptScan, ReceiptItemCorrection

__all__ = [
    "Household",
    "User",
    "ReceiptScan",
    "ReceiptItemCorrection",
]
