from sqlalchemy import Column, Integer, Numeric, ForeignKey

from .base import BaseModel


class TaxConfig(BaseModel):
    """Append-only tax/fee configuration; the newest row wins."""

    __tablename__ = "tax_configs"

    id = Column(Integer, primary_key=True, index=True)
    tax_percentage = Column(Numeric(5, 2), nullable=False)
    platform_fee_percentage = Column(Numeric(5, 2), nullable=False)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
