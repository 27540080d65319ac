from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class PartnerResponse(BaseModel):
    partner_id: Optional[str] = None


class LinkPartnerRequest(BaseModel):
    partner_id: Optional[str] = Field(default=None, max_length=255, description="User id of the partner to link.")

    @field_validator("partner_id")
    @classmethod
    def strip_partner_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return value.strip() or None


class LinkPartnerResponse(BaseModel):
    ok: bool = True
    partner_id: Optional[str] = None
