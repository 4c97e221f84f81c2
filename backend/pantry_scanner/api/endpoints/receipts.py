from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, File, Form
from sqlalchemy.orm import Session
from typing import List, Optional
import io
import logging

import pillow_heif
from PIL import Image

from pantry_scanner.core.database import get_db
from pantry_scanner.core.config import settings
from pantry_scanner.core.limiter import limiter
from pantry_scanner.core.security import require_household_member
from pantry_scanner.models.user import User
from pantry_scanner.models.receipt_scan import ReceiptScan
from pantry_scanner.schemas.receipt import (
    ScanResponse, ReceiptScanResponse, CorrectionSubmission, CorrectionSummary, LearningStats
)
from pantry_scanner.services.learning import (
    format_examples_for_prompt, get_learning_examples, get_learning_stats, save_receipt_corrections
)
from pantry_scanner.services.ocr import TesseractOCRProvider
from pantry_scanner.services.pipeline import PipelineConfig, ReceiptScanPipeline
from pantry_scanner.services.vision_client import OpenAIVisionExtractor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/receipts", tags=["Receipts"])

pillow_heif.register_heif_opener()

HEIC_EXTENSIONS = ('.heic', '.heif')
STANDARD_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.webp')

# Fatal scan errors surfaced as HTTP errors
ERROR_STATUS_CODES = {
    "rate_limit": 429,
    "invalid_image": 400,
}


# ============== HELPER FUNCTIONS ==============

def get_pipeline() -> ReceiptScanPipeline:
    if not settings.OPENAI_API_KEY:
        raise HTTPException(
            status_code=500,
            detail="OpenAI API key not configured. Please set OPENAI_API_KEY in environment."
        )
    extractor = OpenAIVisionExtractor(
        api_key=settings.OPENAI_API_KEY,
        model=settings.VISION_MODEL,
        max_tokens=settings.VISION_MAX_TOKENS,
        temperature=settings.VISION_TEMPERATURE,
        timeout=settings.VISION_TIMEOUT_SECONDS,
    )
    ocr_provider = TesseractOCRProvider() if settings.OCR_ENABLED else None
    return ReceiptScanPipeline(extractor, PipelineConfig.from_settings(settings), ocr_provider=ocr_provider)


def convert_heic_to_jpeg(content: bytes) -> bytes:
    try:
        heif_image = Image.open(io.BytesIO(content))
        # HEIC can have an alpha channel
        if heif_image.mode in ('RGBA', 'P'):
            heif_image = heif_image.convert('RGB')
        jpeg_buffer = io.BytesIO()
        heif_image.save(jpeg_buffer, format='JPEG', quality=95)
        return jpeg_buffer.getvalue()
    except Exception as e:
        logger.error(f"Error converting HEIC image: {e}")
        raise HTTPException(
            status_code=400,
            detail=f"Failed to convert HEIC image: {str(e)}"
        )


# ============== SCAN ENDPOINTS ==============

@router.post("/scan", response_model=ScanResponse)
@limiter.limit(settings.SCAN_RATE_LIMIT)
async def scan_receipt(
    request: Request,
    file: UploadFile = File(...),
    store_name: Optional[str] = Form(None),
    current_user: User = Depends(require_household_member),
    db: Session = Depends(get_db),
    pipeline: ReceiptScanPipeline = Depends(get_pipeline)
):
    """
    Scan a grocery receipt image and return the reconciled item list.
    The items are reviewed on the client; corrections are posted back separately.
    """
    filename_lower = file.filename.lower() if file.filename else ""
    is_heic = filename_lower.endswith(HEIC_EXTENSIONS)
    is_standard = filename_lower.endswith(STANDARD_EXTENSIONS)

    if not is_heic and not is_standard:
        raise HTTPException(
            status_code=400,
            detail="Only JPG, PNG, WebP, and HEIC images are supported"
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=400,
            detail=f"File size exceeds {settings.MAX_UPLOAD_BYTES // (1024 * 1024)}MB limit"
        )

    if is_heic:
        content = convert_heic_to_jpeg(content)

    household_id = current_user.household_id

    def learning_lookup(vendor: Optional[str]) -> str:
        examples = get_learning_examples(
            db, household_id, vendor,
            vendor_limit=settings.LEARNING_VENDOR_LIMIT,
            general_limit=settings.LEARNING_GENERAL_LIMIT,
            threshold=settings.VENDOR_MATCH_THRESHOLD,
        )
        return format_examples_for_prompt(examples, vendor)

    result = await pipeline.scan(content, store_name=store_name, learning_lookup=learning_lookup)

    if not result.success:
        raise HTTPException(
            status_code=ERROR_STATUS_CODES.get(result.error_type, 500),
            detail=result.error or "Failed to scan receipt"
        )

    receipt = result.receipt
    scan = ReceiptScan(
        household_id=household_id,
        scanned_by=current_user.id,
        store_name=receipt.store_name,
        store_location=receipt.store_location,
        purchase_date=receipt.purchase_date,
        confidence_score=result.confidence,
        tokens_used=result.tokens_used,
        cost_usd=result.cost_usd,
        item_count=len(receipt.items),
        quality_warnings=receipt.quality_warnings,
    )
    db.add(scan)
    db.commit()
    db.refresh(scan)

    logger.info(f"Saved receipt scan {scan.id} for household {household_id}: {len(receipt.items)} items")
    return ScanResponse(**result.model_dump(), scan_id=scan.id)


@router.get("/scans", response_model=List[ReceiptScanResponse])
def list_scans(
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_household_member),
    db: Session = Depends(get_db)
):
    """Recent scans for the current user's household"""
    return db.query(ReceiptScan).filter(
        ReceiptScan.household_id == current_user.household_id
    ).order_by(ReceiptScan.created_at.desc(), ReceiptScan.id.desc()).limit(limit).all()


# ============== LEARNING ENDPOINTS ==============

@router.post("/scans/{scan_id}/corrections", response_model=CorrectionSummary)
def submit_corrections(
    scan_id: int,
    submission: CorrectionSubmission,
    current_user: User = Depends(require_household_member),
    db: Session = Depends(get_db)
):
    """Record what the user changed during review so future scans learn from it"""
    scan = db.query(ReceiptScan).filter(
        ReceiptScan.id == scan_id,
        ReceiptScan.household_id == current_user.household_id
    ).first()
    if not scan:
        raise HTTPException(status_code=404, detail="Receipt scan not found")

    corrections = save_receipt_corrections(
        db, scan, submission.original_items, submission.corrected_items
    )
    return CorrectionSummary(
        scan_id=scan.id,
        corrections_saved=len(corrections),
        corrected_count=sum(1 for c in corrections if c.was_corrected and not c.was_removed),
        removed_count=sum(1 for c in corrections if c.was_removed),
    )


@router.get("/learning-stats", response_model=LearningStats)
def learning_stats(
    current_user: User = Depends(require_household_member),
    db: Session = Depends(get_db)
):
    return get_learning_stats(db, current_user.household_id)
