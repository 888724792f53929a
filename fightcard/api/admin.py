"""
Admin endpoints: command transport over HTTP
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from fightcard import state
from fightcard.core.commands import parse_command
from fightcard.core.errors import CommandValidationError
from fightcard.core.mirror import SqlMirror
from fightcard.services.auth import require_admin
from fightcard.services.cards import get_card_or_error


logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"], dependencies=[Depends(require_admin)])


async def _run_command(request: Request, slug: str = None) -> dict:
    entry = get_card_or_error(slug)
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")

    try:
        command = parse_command(body)
        result = await entry.processor.submit(command, actor="http")
    except CommandValidationError as e:
        client_ip = request.client.host if request.client else "unknown"
        logger.info(f"❌ [{entry.slug}] Rejected command from {client_ip}: {e.message}")
        raise HTTPException(status_code=e.status_code, detail={"error": e.message, "field": e.field})

    return result.model_dump(by_alias=True, exclude_none=True)


@router.post("/admin/action")
async def admin_action(request: Request):
    """
    Admin: apply a command to the default card

    Request (token via ?token=, Authorization: Bearer or x-admin-password):
        {"type": "setCurrent", "index": 2}
        {"type": "createFight", "data": {"a": "Smith", "b": "Jones", "weight": "70kg"}, "rid": "c-17"}

    Response:
        {"ok": true, "duplicate": false, "broadcastId": 12, "fight": {...}}
    """
    return await _run_command(request)


@router.post("/c/{slug}/admin/action")
async def card_admin_action(slug: str, request: Request):
    """Admin: apply a command to one card"""
    return await _run_command(request, slug)


async def _audit(slug: str = None, limit: int = 50) -> dict:
    entry = get_card_or_error(slug)
    mirror = state.MIRROR
    if mirror is None or not isinstance(mirror.primary, SqlMirror) or not mirror.primary_ready:
        raise HTTPException(status_code=503, detail="Audit log requires the database mirror")
    events = await mirror.primary.audit_log(entry.slug, limit=max(1, min(limit, 500)))
    return {"card": entry.slug, "events": events}


@router.get("/admin/audit")
async def admin_audit(limit: int = 50):
    """Admin: most recent applied commands on the default card"""
    return await _audit(limit=limit)


@router.get("/c/{slug}/admin/audit")
async def card_admin_audit(slug: str, limit: int = 50):
    """Admin: most recent applied commands on one card"""
    return await _audit(slug, limit)
