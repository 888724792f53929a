"""
Live push channel (WebSocket): state broadcasts, acks and admin commands

Client -> server messages:
    {"type": "ack", "broadcastId": 12}
    {"type": "ping"}
    {"type": "requestState"}
    {"type": "auth", "token": "..."}                         # become admin
    {"type": "admin", "token": "...", "payload": {...cmd}}   # command envelope
    {...cmd}                                                 # bare command, admin sessions only

Server -> client messages:
    {"type": "state", "state": {...}, "broadcastId": 12}
    {"type": "result", "ok": true, "duplicate": false, "broadcastId": 13, "rid": "..."}
    {"type": "error", "status": 400, "error": "...", "rid": "..."}
    {"type": "pong"} / {"type": "auth", "admin": true}
"""
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from fightcard.core.broadcast import ViewerSession
from fightcard.core.commands import parse_command
from fightcard.core.errors import FightCardError, Unauthorized
from fightcard.core.registry import CardEntry
from fightcard.services.auth import check_admin, extract_token, is_admin_token
from fightcard.services.cards import resolve_card


logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])

# Close codes for refused connections
CLOSE_CODES = {404: 4404, 410: 4410}


async def _handle_command(entry: CardEntry, session: ViewerSession, raw: Any, token: Optional[str]) -> None:
    rid = raw.get("rid") if isinstance(raw, dict) else None
    try:
        if not session.is_admin:
            check_admin(token)
            await entry.channel.promote(session)
        command = parse_command(raw)
        result = await entry.processor.submit(command, actor="ws")
    except FightCardError as e:
        entry.channel.reply(session, {"type": "error", "status": e.status_code, "error": e.message, "rid": rid})
        return
    reply = {"type": "result", **result.model_dump(by_alias=True, exclude_none=True)}
    if rid is not None:
        reply["rid"] = rid
    entry.channel.reply(session, reply)


async def _handle_message(entry: CardEntry, session: ViewerSession, msg: Dict[str, Any]) -> None:
    msg_type = msg.get("type")
    channel = entry.channel

    if msg_type == "ack":
        channel.ack(session, msg.get("broadcastId"))
    elif msg_type == "ping":
        channel.reply(session, {"type": "pong"})
    elif msg_type == "requestState":
        channel.resend(session)
    elif msg_type == "auth":
        if is_admin_token(msg.get("token")):
            await channel.promote(session)
            channel.reply(session, {"type": "auth", "admin": True})
        else:
            error = Unauthorized("unauthorized")
            channel.reply(session, {"type": "error", "status": error.status_code, "error": error.message})
    elif msg_type == "admin":
        await _handle_command(entry, session, msg.get("payload"), msg.get("token"))
    else:
        await _handle_command(entry, session, msg, msg.get("token"))


async def _serve(ws: WebSocket, slug: Optional[str]) -> None:
    try:
        entry = resolve_card(slug)
    except FightCardError as e:
        logger.warning(f"WS connect refused for card {slug!r}: {e.message}")
        await ws.close(code=CLOSE_CODES.get(e.status_code, 1008), reason=e.message)
        return

    await ws.accept()
    session = await entry.channel.attach(ws, is_admin=is_admin_token(extract_token(ws)))

    try:
        while True:
            try:
                data = await ws.receive_text()
            except WebSocketDisconnect:
                break
            except Exception as e:
                logger.warning(f"WebSocket receive error for card {entry.slug}: {e}")
                break

            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"Invalid JSON from WS card {entry.slug}")
                continue
            if isinstance(msg, dict):
                await _handle_message(entry, session, msg)
    finally:
        await entry.channel.detach(session)


@router.websocket("/ws")
async def default_card_socket(ws: WebSocket):
    await _serve(ws, None)


@router.websocket("/")
async def root_socket(ws: WebSocket):
    """Same as /ws, for viewers that connect to the bare origin"""
    await _serve(ws, None)


@router.websocket("/c/{slug}/ws")
async def card_socket(ws: WebSocket, slug: str):
    await _serve(ws, slug)
