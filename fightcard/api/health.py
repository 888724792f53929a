"""
Health check and broadcast diagnostics endpoints
"""
from fastapi import APIRouter

from fightcard import state
from fightcard.services.cards import get_card_or_error


router = APIRouter(tags=["health"])


@router.get("/")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "ok",
        "message": "Fight Card Live Server",
        "version": "1.0.0",
        "cards": len(state.REGISTRY.entries) if state.REGISTRY else 0,
        "mirror": bool(state.MIRROR and state.MIRROR.primary_ready),
    }


def _card_health(slug: str = None) -> dict:
    entry = get_card_or_error(slug)
    report = {"card": entry.slug, **entry.channel.health()}
    if state.MIRROR is not None:
        last = state.MIRROR.last_result.get(entry.slug)
        report["lastPersist"] = last.model_dump() if last else None
    return report


@router.get("/health")
async def default_card_health():
    """
    Broadcast diagnostics for the default card

    Response:
        {
            "card": "default",
            "sessions": 4,          # open viewer sessions (admins included)
            "admins": 1,
            "lastBroadcastId": 17,
            "pending": 1,           # sessions that have not acked lastBroadcastId
            "lastPersist": {...}
        }
    """
    return _card_health()


@router.get("/c/{slug}/health")
async def card_health(slug: str):
    """Broadcast diagnostics for one card"""
    return _card_health(slug)
