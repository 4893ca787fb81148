"""Schemas for curtailment observations from the settlement API."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CurtailmentObservation(BaseModel):
    """One item of the bid/offer settlement stack for a period."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    farm_id: str = Field(..., alias="id", min_length=1, description="BM Unit ID")
    volume: float = Field(..., description="Accepted volume in MWh, negative for curtailment")
    original_price: float = Field(0.0, alias="originalPrice")
    final_price: float = Field(0.0, alias="finalPrice")
    so_flag: bool = Field(False, alias="soFlag")
    cadl_flag: bool = Field(False, alias="cadlFlag")
    lead_party_name: Optional[str] = Field(None, alias="leadPartyName")

    @field_validator("so_flag", "cadl_flag", mode="before")
    @classmethod
    def coerce_flag(cls, v):
        """The API returns null for unset flags."""
        return bool(v) if v is not None else False

    @field_validator("original_price", "final_price", mode="before")
    @classmethod
    def coerce_price(cls, v):
        return 0.0 if v is None else v

    @property
    def payment(self) -> float:
        """Compensation cost; positive for the usual negative bid price."""
        return abs(self.volume) * self.original_price * -1
