from __future__ import annotations

import logging
import sqlite3

from fastapi import APIRouter, Depends, HTTPException, status

from src.server.auth import get_current_user_id
from src.server.dependencies import get_partner_store

from .schemas import LinkPartnerRequest, LinkPartnerResponse, PartnerResponse
from .store import PartnerLinkError, SQLitePartnerStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/partners", tags=["partners"])


@router.get("", response_model=PartnerResponse)
async def get_partner(
    user_id: str = Depends(get_current_user_id),
    store: SQLitePartnerStore = Depends(get_partner_store),
) -> PartnerResponse:
    try:
        partner_id = await store.get_partner(user_id)
    except sqlite3.Error:
        logger.exception("Failed to read partner of %s", user_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to read partner")
    return PartnerResponse(partner_id=partner_id)


@router.post("", response_model=LinkPartnerResponse)
async def link_partner(
    request: LinkPartnerRequest,
    user_id: str = Depends(get_current_user_id),
    store: SQLitePartnerStore = Depends(get_partner_store),
) -> LinkPartnerResponse:
    if request.partner_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing partner_id")

    try:
        await store.link_partners(user_id, request.partner_id)
    except PartnerLinkError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except sqlite3.Error:
        logger.exception("Failed to link %s with %s", user_id, request.partner_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to link partner")
    return LinkPartnerResponse(partner_id=request.partner_id)


@router.delete("", response_model=LinkPartnerResponse)
async def unlink_partner(
    user_id: str = Depends(get_current_user_id),
    store: SQLitePartnerStore = Depends(get_partner_store),
) -> LinkPartnerResponse:
    try:
        former = await store.unlink_partner(user_id)
    except sqlite3.Error:
        logger.exception("Failed to unlink partner of %s", user_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to unlink partner")
    if former is not None:
        logger.info("Unlinked partners %s and %s", user_id, former)
    return LinkPartnerResponse()
