from sqlalchemy import Column, Integer, String, DateTime, Date, Float, ForeignKey, Boolean, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from pantry_scanner.core.database import Base


class ReceiptScan(Base):
    """
    One receipt scan session.
    Holds the metadata of a pipeline run; the extracted items themselves
    live on the client until the user finishes reviewing them.
    """
    __tablename__ = "receipt_scans"

    id = Column(Integer, primary_key=True, index=True)
    household_id = Column(Integer, ForeignKey("households.id"), nullable=False, index=True)
    scanned_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    store_name = Column(String(255), nullable=True, index=True)
    store_location = Column(String(500), nullable=True)
    purchase_date = Column(Date, nullable=True)

    # Pipeline outcome
    confidence_score = Column(Float, nullable=True)  # 0-100
    tokens_used = Column(Integer, nullable=True)
    cost_usd = Column(Float, nullable=True)
    item_count = Column(Integer, default=0)
    quality_warnings = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    household = relationship("Household", back_populates="receipt_scans")
    scanned_by_user = relationship("User", back_populates="receipt_scans", foreign_keys=[scanned_by])
    corrections = relationship("ReceiptItemCorrection", back_populates="receipt_scan")


class ReceiptItemCorrection(Base):
    """
    What the model extracted for one item versus what the user kept after review.
    Read back as few-shot examples for later scans of the same vendor.
    """
    __tablename__ = "receipt_item_corrections"

    id = Column(Integer, primary_key=True, index=True)
    receipt_scan_id = Column(Integer, ForeignKey("receipt_scans.id"), nullable=False, index=True)
    household_id = Column(Integer, ForeignKey("households.id"), nullable=False, index=True)

    # Original AI extraction
    ai_extracted_name = Column(String(255), nullable=False)
    ai_extracted_quantity = Column(String(100), nullable=True)
    ai_extracted_price = Column(Float, nullable=True)
    ai_extracted_category = Column(String(50), nullable=True)

    # User-approved final version
    corrected_name = Column(String(255), nullable=False)
    corrected_quantity = Column(String(100), nullable=True)
    corrected_price = Column(Float, nullable=True)
    corrected_category = Column(String(50), nullable=True)

    was_corrected = Column(Boolean, default=False, index=True)
    was_removed = Column(Boolean, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    receipt_scan = relationship("ReceiptScan", back_populates="corrections")
