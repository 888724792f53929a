"""Card lookup and provisioning helpers shared by the routers"""
import logging
from typing import Dict, Optional
from urllib.parse import quote

from fastapi import HTTPException

from fightcard import state
from fightcard.core.errors import FightCardError
from fightcard.core.registry import CardEntry
from fightcard.models import CardOwner, CardRequest, SetEventMeta


logger = logging.getLogger(__name__)


def resolve_card(slug: Optional[str] = None) -> CardEntry:
    """
    Find a live card (default card when slug is None)

    Raises:
        CardNotFound / CardGone from the registry
    """
    if state.REGISTRY is None:
        raise HTTPException(status_code=503, detail="Server is starting")
    if slug is None:
        return state.REGISTRY.default()
    return state.REGISTRY.get(slug)


def get_card_or_error(slug: Optional[str] = None) -> CardEntry:
    """resolve_card for HTTP routes: registry errors become 404 / 410"""
    try:
        return resolve_card(slug)
    except FightCardError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


def card_urls(slug: str) -> Dict[str, str]:
    base = state.SETTINGS.public_base_url.rstrip("/")
    token = quote(state.SETTINGS.admin_token, safe="")
    return {
        "viewerUrl": f"{base}/c/{slug}",
        "adminUrl": f"{base}/c/{slug}/admin?token={token}",
        "stateUrl": f"{base}/c/{slug}/state",
    }


async def provision_card(request: CardRequest) -> Dict:
    """
    Register a new card for a club and persist its registry entry

    The slug is derived from the event name (or club) when friendly_slug is set.
    """
    owner = CardOwner(
        club=request.club.strip(),
        contact=request.contact.strip(),
        email=request.email.strip(),
        event_name=request.event_name.strip(),
    )
    friendly_name = (owner.event_name or owner.club) if request.friendly_slug else None
    ttl_hours = request.ttl_hours if request.ttl_hours is not None else state.SETTINGS.default_ttl_hours
    entry = state.REGISTRY.create_card(owner, friendly_name=friendly_name, ttl_hours=ttl_hours)

    if owner.event_name:
        # seed the title so the viewer page is not blank
        await entry.processor.submit(SetEventMeta(name=owner.event_name), actor="provisioning")

    if state.MIRROR is not None:
        result = await state.MIRROR.save_entry(entry.info)
        if not result.ok:
            logger.warning(f"⚠️ Card {entry.slug} registered in memory only: {result.error}")

    return {
        "slug": entry.slug,
        "createdAt": entry.info.created_at,
        "expiresAt": entry.info.expires_at,
        **card_urls(entry.slug),
    }
