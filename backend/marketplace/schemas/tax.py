from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TaxConfigCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tax_percentage: Decimal = Field(alias="taxPercentage", ge=0, le=100)
    platform_fee_percentage: Decimal = Field(alias="platformFeePercentage", ge=0, le=100)


class TaxConfigResponse(BaseModel):
    tax_percentage: float = Field(serialization_alias="taxPercentage")
    platform_fee_percentage: float = Field(serialization_alias="platformFeePercentage")
    source_id: Optional[int] = Field(default=None, serialization_alias="id")
    effective_at: Optional[datetime] = Field(default=None, serialization_alias="effectiveAt")

    model_config = {"from_attributes": True}
