"""
Broadcast & acknowledgement channel for one card

Every committed command publishes the full card snapshot tagged with a
strictly increasing broadcast id. Viewers apply it and answer with
{"type": "ack", "broadcastId": n}. Each session has its own outbox and writer
task, so pushes reach a viewer in id order and a slow viewer never blocks the
command path or the other viewers.
"""
import asyncio
import json
import logging
import uuid
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from fightcard.core.errors import TransportFailure


logger = logging.getLogger(__name__)

# Ack sets kept for this many most recent broadcast ids
ACK_HISTORY = 50


class ViewerSession:
    """One connected viewer (admins are viewers that presented the token)"""

    def __init__(self, socket, is_admin: bool = False, outbox_size: int = 64):
        self.session_id = uuid.uuid4().hex
        self.socket = socket
        self.is_admin = is_admin
        self.is_open = True
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self.writer: Optional[asyncio.Task] = None

    def enqueue(self, payload: Dict[str, Any]) -> None:
        try:
            self.outbox.put_nowait(payload)
        except asyncio.QueueFull:
            raise TransportFailure(f"Outbox full for session {self.session_id}")

    async def send(self, payload: Dict[str, Any]) -> None:
        await self.socket.send_text(json.dumps(payload, ensure_ascii=False))


class BroadcastChannel:
    """
    Fan-out of card snapshots to all open sessions of a card

    Args:
        slug: Card slug (logging only)
        snapshot_fn: Returns the current full snapshot (used for the initial push)
        send_timeout: Seconds before a stuck send drops the session
        outbox_size: Max queued pushes per session before it is dropped
    """

    def __init__(self, slug: str, snapshot_fn: Callable[[], Dict[str, Any]],
                 send_timeout: float = 5.0, outbox_size: int = 64):
        self.slug = slug
        self.snapshot_fn = snapshot_fn
        self.send_timeout = send_timeout
        self.outbox_size = outbox_size
        self.sessions: Dict[str, ViewerSession] = {}
        self.last_broadcast_id = 0
        self.acks: "OrderedDict[int, Set[str]]" = OrderedDict([(0, set())])
        # Called when the admin count drops to zero
        self.on_admins_gone: Optional[Callable[[], Awaitable[Any]]] = None

    # ==================== SESSIONS ====================

    @property
    def admin_count(self) -> int:
        return sum(1 for s in self.sessions.values() if s.is_admin)

    async def attach(self, socket, is_admin: bool = False) -> ViewerSession:
        """Register a session and queue a full-state push (no new broadcast id)"""
        session = ViewerSession(socket, is_admin=is_admin, outbox_size=self.outbox_size)
        self.sessions[session.session_id] = session
        session.writer = asyncio.create_task(self._write_loop(session))
        self._push(session, self.snapshot_fn(), self.last_broadcast_id)
        logger.info(
            f"🔌 [{self.slug}] {'Admin' if is_admin else 'Viewer'} connected "
            f"(sessions={len(self.sessions)}, admins={self.admin_count})"
        )
        return session

    async def detach(self, session: ViewerSession) -> None:
        """Drop a session; leaving as the last admin triggers standby"""
        if self.sessions.pop(session.session_id, None) is None:
            return
        session.is_open = False
        if session.writer is not None and session.writer is not asyncio.current_task():
            session.writer.cancel()
        logger.info(f"👋 [{self.slug}] Session left (sessions={len(self.sessions)}, admins={self.admin_count})")
        if session.is_admin:
            await self._admin_left()

    async def promote(self, session: ViewerSession) -> None:
        """Mark a session as admin after it presented the token at message time"""
        if session.is_admin or session.session_id not in self.sessions:
            return
        session.is_admin = True
        logger.info(f"🔑 [{self.slug}] Session promoted to admin (admins={self.admin_count})")

    async def _admin_left(self) -> None:
        if self.admin_count == 0 and self.on_admins_gone is not None:
            logger.info(f"💤 [{self.slug}] Last admin left, entering standby")
            await self.on_admins_gone()

    # ==================== PUSH ====================

    def publish(self, snapshot: Dict[str, Any]) -> int:
        """
        Allocate the next broadcast id and queue the snapshot for every session

        Returns:
            The new broadcast id
        """
        self.last_broadcast_id += 1
        broadcast_id = self.last_broadcast_id
        self.acks[broadcast_id] = set()
        while len(self.acks) > ACK_HISTORY:
            self.acks.popitem(last=False)
        for session in list(self.sessions.values()):
            self._push(session, snapshot, broadcast_id)
        return broadcast_id

    def resend(self, session: ViewerSession) -> None:
        """Push the current state to one session (on request), reusing the last id"""
        self._push(session, self.snapshot_fn(), self.last_broadcast_id)

    def _push(self, session: ViewerSession, snapshot: Dict[str, Any], broadcast_id: int) -> None:
        self.reply(session, {"type": "state", "state": snapshot, "broadcastId": broadcast_id})

    def reply(self, session: ViewerSession, payload: Dict[str, Any]) -> None:
        """Queue a message for one session, in order with its state pushes"""
        try:
            session.enqueue(payload)
        except TransportFailure as e:
            logger.warning(f"⚠️ [{self.slug}] {e.message}, dropping session")
            self._drop(session)

    def _drop(self, session: ViewerSession) -> None:
        """Drop a failed session without blocking the caller"""
        if session.session_id in self.sessions:
            asyncio.get_running_loop().create_task(self._close(session))

    async def _close(self, session: ViewerSession) -> None:
        await self.detach(session)
        try:
            await session.socket.close(code=1011)
        except Exception as e:
            logger.debug(f"[{self.slug}] Close after transport failure: {e}")

    async def _write_loop(self, session: ViewerSession) -> None:
        while session.is_open:
            payload = await session.outbox.get()
            try:
                await asyncio.wait_for(session.send(payload), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"⚠️ [{self.slug}] Send timeout, dropping session {session.session_id}")
                await self._close(session)
                return
            except Exception as e:
                logger.warning(f"⚠️ [{self.slug}] Send failed ({type(e).__name__}: {e}), dropping session")
                await self._close(session)
                return

    # ==================== ACKS / HEALTH ====================

    def ack(self, session: ViewerSession, broadcast_id: Any) -> bool:
        """Record that a session applied a broadcast. Unknown ids are ignored."""
        try:
            broadcast_id = int(broadcast_id)
        except (TypeError, ValueError):
            return False
        acked = self.acks.get(broadcast_id)
        if acked is None:
            return False
        acked.add(session.session_id)
        return True

    def pending(self, broadcast_id: Optional[int] = None) -> int:
        """Open sessions that have not acked the given (default: last) broadcast"""
        if broadcast_id is None:
            broadcast_id = self.last_broadcast_id
        acked = self.acks.get(broadcast_id, set())
        return sum(1 for sid in self.sessions if sid not in acked)

    def health(self) -> Dict[str, Any]:
        return {
            "sessions": len(self.sessions),
            "admins": self.admin_count,
            "lastBroadcastId": self.last_broadcast_id,
            "pending": self.pending(),
        }

    async def close_all(self) -> None:
        for session in list(self.sessions.values()):
            session.is_open = False
            if session.writer is not None:
                session.writer.cancel()
        self.sessions.clear()
