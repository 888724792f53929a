"""
Card provisioning and token introspection endpoints
"""
from fastapi import APIRouter, Depends, Request

from fightcard.models import CardRequest
from fightcard.services.auth import extract_token, is_admin_token, require_admin
from fightcard.services.cards import provision_card


router = APIRouter(tags=["cards"])


@router.post("/cards", dependencies=[Depends(require_admin)])
async def create_card(payload: CardRequest):
    """
    Provision an ephemeral card for a club

    Request:
        {
            "club": "Loyalty Muay Thai",
            "contact": "Anna",
            "email": "anna@example.com",
            "eventName": "Spring Gala",
            "friendlySlug": true,
            "ttlHours": 48          # clamped to 24..72
        }

    Response:
        {"slug": "spring-gala", "viewerUrl": "...", "adminUrl": "...?token=...", ...}
    """
    return await provision_card(payload)


@router.get("/whoami")
async def whoami(request: Request):
    """Tell a console whether its token grants admin rights"""
    return {"admin": is_admin_token(extract_token(request))}
