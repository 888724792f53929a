"""
Pull-based state read surface for late joiners and polling clients
"""
from fastapi import APIRouter

from fightcard.services.cards import get_card_or_error


router = APIRouter(tags=["state"])


@router.get("/state")
async def get_default_state():
    """Full snapshot envelope of the default card"""
    return get_card_or_error().processor.snapshot()


@router.get("/c/{slug}/state")
async def get_card_state(slug: str):
    """Full snapshot envelope of one card"""
    return get_card_or_error(slug).processor.snapshot()
