"""Session registry: who is connected right now, and through which sockets.

The registry is a multi-map: a user may hold several live connections (tabs,
devices). They count as online while at least one remains. Presence is
persisted to ``users.is_online`` / ``users.last_seen`` on each transition, off
the connection's path.
"""
import asyncio
import json
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from bson import ObjectId

from .models import utcnow

log = logging.getLogger(__name__)


class Connection:
    """One live WebSocket owned by an authenticated user."""

    def __init__(self, websocket, user: dict):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user = user
        self.user_id: ObjectId = user["_id"]
        self.connected_at: datetime = utcnow()
        self.closed = False
        self._send_lock = asyncio.Lock()

    @property
    def username(self) -> str:
        return self.user.get("username", "")

    async def send(self, event: str, data: dict) -> bool:
        """Returns False when the socket is gone; closed connections are a no-op."""
        if self.closed:
            return False
        text = json.dumps({"type": event, "data": data}, default=str)
        try:
            async with self._send_lock:
                await self.websocket.send_text(text)
            return True
        except Exception as e:
            log.warning("Send of %s to %s (%s) failed: %s", event, self.username, self.id, e)
            return False

    def close(self):
        self.closed = True

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        return isinstance(other, Connection) and other.id == self.id

    def __repr__(self):
        return f"<Connection {self.id} user={self.user_id}>"


class PresenceWriter:
    """Applies presence updates to the store one at a time, in submission order.

    A single worker thread keeps a connect quickly followed by a disconnect
    from landing in the opposite order.
    """

    def __init__(self, db_factory: Callable):
        self._db_factory = db_factory
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="presence")

    def __call__(self, user_id: ObjectId, online: bool):
        future = self._executor.submit(self._write, user_id, online)
        future.add_done_callback(self._report)
        return future

    def _write(self, user_id: ObjectId, online: bool):
        self._db_factory().users.update_one(
            {"_id": user_id},
            {"$set": {"is_online": online, "last_seen": utcnow()}},
        )

    @staticmethod
    def _report(future):
        exc = future.exception()
        if exc is not None:
            log.error("Failed to persist presence: %s", exc)

    def flush(self, timeout: Optional[float] = None):
        self._executor.submit(lambda: None).result(timeout)


class SessionRegistry:
    def __init__(self, presence_writer: Optional[Callable] = None):
        self._sessions: Dict[ObjectId, Set[Connection]] = {}
        self._rooms: Dict[str, Set[Connection]] = {}
        self._lock = threading.Lock()
        self._persist = presence_writer

    # -- mutations --------------------------------------------------------

    async def register(self, conn: Connection) -> bool:
        """Add a session. Returns True when the user just came online."""
        with self._lock:
            sessions = self._sessions.setdefault(conn.user_id, set())
            came_online = not sessions
            sessions.add(conn)
        log.info("Session %s connected for %s (%s)", conn.id, conn.username, conn.user_id)

        self._write_presence(conn.user_id, True)
        if came_online:
            await self.broadcast_except(conn.user_id, "user_online", {
                "userId": str(conn.user_id),
                "username": conn.username,
                "avatar": conn.user.get("avatar", ""),
            })
        return came_online

    def remove(self, conn: Connection) -> bool:
        """Synchronously drop a session and its room subscriptions.

        Returns True when it was the user's last session.
        """
        with self._lock:
            sessions = self._sessions.get(conn.user_id)
            if sessions is None or conn not in sessions:
                return False
            sessions.discard(conn)
            for chat_id in [c for c, members in self._rooms.items() if conn in members]:
                self._discard_from_room(chat_id, conn)
            went_offline = not sessions
            if went_offline:
                del self._sessions[conn.user_id]
        conn.close()
        return went_offline

    async def unregister(self, conn: Connection) -> bool:
        went_offline = self.remove(conn)
        log.info("Session %s disconnected for %s", conn.id, conn.username)
        if went_offline:
            self._write_presence(conn.user_id, False)
            await self.broadcast_except(conn.user_id, "user_offline", {
                "userId": str(conn.user_id),
                "username": conn.username,
            })
        return went_offline

    def join_room(self, chat_id: str, conn: Connection):
        with self._lock:
            if conn.user_id in self._sessions and conn in self._sessions[conn.user_id]:
                self._rooms.setdefault(str(chat_id), set()).add(conn)

    def leave_room(self, chat_id: str, conn: Connection):
        with self._lock:
            self._discard_from_room(str(chat_id), conn)

    def _discard_from_room(self, chat_id: str, conn: Connection):
        members = self._rooms.get(chat_id)
        if members is not None:
            members.discard(conn)
            if not members:
                del self._rooms[chat_id]

    # -- queries ----------------------------------------------------------

    def is_online(self, user_id) -> bool:
        with self._lock:
            return bool(self._sessions.get(_oid(user_id)))

    def route(self, user_id) -> Set[Connection]:
        with self._lock:
            return set(self._sessions.get(_oid(user_id), ()))

    def room(self, chat_id) -> Set[Connection]:
        with self._lock:
            return set(self._rooms.get(str(chat_id), ()))

    def connections(self) -> List[Connection]:
        with self._lock:
            return [c for sessions in self._sessions.values() for c in sessions]

    # -- delivery helpers -------------------------------------------------

    async def send_all(self, conns, event: str, data: dict) -> int:
        delivered = 0
        dead = []
        for conn in conns:
            if await conn.send(event, data):
                delivered += 1
            elif not conn.closed:
                dead.append(conn)
        for conn in dead:
            await self.unregister(conn)
        return delivered

    async def broadcast_except(self, user_id: ObjectId, event: str, data: dict) -> int:
        targets = [c for c in self.connections() if c.user_id != user_id]
        return await self.send_all(targets, event, data)

    def _write_presence(self, user_id: ObjectId, online: bool):
        if self._persist is None:
            return
        try:
            self._persist(user_id, online)
        except Exception:
            log.exception("Could not schedule presence update for %s", user_id)


def _oid(user_id) -> ObjectId:
    return user_id if isinstance(user_id, ObjectId) else ObjectId(str(user_id))
