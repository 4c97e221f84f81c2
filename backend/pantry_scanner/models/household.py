from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from pantry_scanner.core.database import Base


class Household(Base):
    """
    A household sharing one pantry.
    Receipt scans and the corrections learned from them belong to a household.
    """
    __tablename__ = "households"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    users = relationship("User", back_populates="household")
    receipt_scans = relationship("ReceiptScan", back_populates="household")
