"""
Real-time chat delivery over WebSocket

Frames are JSON objects of the form {"event": <name>, "data": <payload>} in
both directions. Room membership lives behind the ChatHub interface; the
in-memory hub below only fans out to sockets held by this process.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from bson import ObjectId
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from starlette.concurrency import run_in_threadpool

import chat as chat_engine
from auth import TokenError, decode_access_token, parse_bearer
from config import Config
from database import isoformat, now

logger = logging.getLogger(__name__)

GENERAL_ROOM = "general-chat"

CONNECTING = "connecting"
AUTHENTICATED = "authenticated"
JOINED = "joined"
DISCONNECTED = "disconnected"


def chat_room(chat_key: str) -> str:
    return f"chat-{chat_key}"


def user_room(user_id: str) -> str:
    return f"user-{user_id}"


def chat_key_of(room: str) -> str:
    return room[len("chat-"):]


def _stamp() -> str:
    return isoformat(now())


class Connection:
    def __init__(self, websocket: WebSocket, user: Dict[str, Any]):
        self.websocket = websocket
        self.user_id = str(user["id"])
        self.username = user.get("username")
        self.role = user.get("role", "user")
        self.rooms: Set[str] = set()
        self.state = CONNECTING

    @property
    def current_chat_room(self) -> Optional[str]:
        for room in self.rooms:
            if room.startswith("chat-"):
                return room
        return None

    def identity(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "username": self.username}

    async def send(self, event: str, data: Any):
        await self.websocket.send_json({"event": event, "data": jsonable_encoder(data)})


class ChatHub:
    """Room membership and fan-out.

    Swap in another implementation (e.g. one backed by a shared pub/sub) to
    deliver across several server processes.
    """

    async def register(self, conn: Connection):
        raise NotImplementedError

    async def unregister(self, conn: Connection):
        raise NotImplementedError

    async def join(self, conn: Connection, room: str):
        raise NotImplementedError

    async def leave(self, conn: Connection, room: str):
        raise NotImplementedError

    async def broadcast(self, room: str, event: str, data: Any, exclude: Optional[Connection] = None) -> int:
        raise NotImplementedError

    def members(self, room: str) -> List[Connection]:
        raise NotImplementedError

    def online_user_ids(self) -> List[str]:
        raise NotImplementedError

    async def start_typing(self, conn: Connection, chat_key: str):
        raise NotImplementedError

    async def stop_typing(self, conn: Connection, chat_key: str):
        raise NotImplementedError

    async def send_to_user(self, user_id: str, event: str, data: Any) -> int:
        return await self.broadcast(user_room(user_id), event, data)

    async def broadcast_to_chat(self, chat_key: str, event: str, data: Any) -> int:
        return await self.broadcast(chat_room(chat_key), event, data)

    def users_in_chat(self, chat_key: str) -> Set[str]:
        return {c.user_id for c in self.members(chat_room(chat_key))}

    async def notify_participants(self, chat_key: str, participant_ids: Iterable[str], sender_id: str, message: Dict[str, Any]) -> int:
        """Ping participants who are online but not looking at the chat."""
        viewing = self.users_in_chat(chat_key)
        sent = 0
        payload = {
            "chatId": chat_key,
            "message": {
                "id": message.get("id"),
                "content": message.get("content"),
                "sender": message.get("sender") or message.get("sender_id"),
                "timestamp": message.get("created_at"),
            },
        }
        for user_id in set(participant_ids):
            if user_id == sender_id or user_id in viewing:
                continue
            sent += await self.send_to_user(user_id, "messageNotification", payload)
        return sent


class InMemoryHub(ChatHub):
    def __init__(self, typing_timeout: Optional[float] = None):
        self.typing_timeout = Config.TYPING_TIMEOUT_SECONDS if typing_timeout is None else typing_timeout
        self.rooms: Dict[str, Set[Connection]] = {}
        self.connections: Dict[str, Set[Connection]] = {}
        self.typing_users: Dict[str, Set[str]] = {}
        self._typing_timers: Dict[Tuple[str, str], asyncio.Task] = {}

    async def register(self, conn: Connection):
        self.connections.setdefault(conn.user_id, set()).add(conn)
        await self.join(conn, user_room(conn.user_id))
        await self.join(conn, GENERAL_ROOM)
        conn.state = AUTHENTICATED

    async def unregister(self, conn: Connection):
        for room in list(conn.rooms):
            if room.startswith("chat-"):
                await self._clear_typing(conn, room)
            await self.leave(conn, room)
        sockets = self.connections.get(conn.user_id)
        if sockets is not None:
            sockets.discard(conn)
            if not sockets:
                del self.connections[conn.user_id]
        conn.state = DISCONNECTED

    async def join(self, conn: Connection, room: str):
        self.rooms.setdefault(room, set()).add(conn)
        conn.rooms.add(room)
        if room.startswith("chat-"):
            conn.state = JOINED

    async def leave(self, conn: Connection, room: str):
        members = self.rooms.get(room)
        if members is not None:
            members.discard(conn)
            if not members:
                del self.rooms[room]
        conn.rooms.discard(room)
        if conn.state == JOINED and conn.current_chat_room is None:
            conn.state = AUTHENTICATED

    def members(self, room: str) -> List[Connection]:
        return list(self.rooms.get(room, ()))

    def online_user_ids(self) -> List[str]:
        return list(self.connections)

    async def broadcast(self, room: str, event: str, data: Any, exclude: Optional[Connection] = None) -> int:
        sent = 0
        for conn in self.members(room):
            if conn is exclude:
                continue
            try:
                await conn.send(event, data)
                sent += 1
            except Exception:
                logger.warning(f"Dropping socket for user {conn.user_id} after failed send", exc_info=True)
                await self.unregister(conn)
        return sent

    async def start_typing(self, conn: Connection, chat_key: str):
        room = chat_room(chat_key)
        self.typing_users.setdefault(room, set()).add(conn.user_id)
        await self.broadcast(room, "userTyping", {**conn.identity(), "chatId": chat_key}, exclude=conn)

        key = (room, conn.user_id)
        timer = self._typing_timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._typing_timers[key] = asyncio.create_task(self._expire_typing(conn, chat_key))

    async def _expire_typing(self, conn: Connection, chat_key: str):
        await asyncio.sleep(self.typing_timeout)
        self._typing_timers.pop((chat_room(chat_key), conn.user_id), None)
        await self.stop_typing(conn, chat_key)

    async def stop_typing(self, conn: Connection, chat_key: str):
        room = chat_room(chat_key)
        timer = self._typing_timers.pop((room, conn.user_id), None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        typing = self.typing_users.get(room)
        if typing is None or conn.user_id not in typing:
            return
        typing.discard(conn.user_id)
        if not typing:
            del self.typing_users[room]
        await self.broadcast(room, "userStoppedTyping", {**conn.identity(), "chatId": chat_key}, exclude=conn)

    async def _clear_typing(self, conn: Connection, room: str):
        timer = self._typing_timers.pop((room, conn.user_id), None)
        if timer is not None:
            timer.cancel()
        typing = self.typing_users.get(room)
        if typing is not None:
            typing.discard(conn.user_id)
            if not typing:
                del self.typing_users[room]


hub = InMemoryHub()


def get_hub() -> ChatHub:
    return hub


# ---------- Presence ----------

def set_presence(db, user_id: str, online: bool):
    if db is None or not ObjectId.is_valid(user_id):
        return
    try:
        db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": {"is_online": online, "last_seen": now()}})
    except Exception:
        logger.exception(f"Error updating presence for user {user_id}")


async def announce_presence(hub: ChatHub, conn: Connection, online: bool):
    await hub.broadcast(
        GENERAL_ROOM,
        "userStatusChanged",
        {**conn.identity(), "isOnline": online, "timestamp": _stamp()},
        exclude=conn,
    )


# ---------- Client events ----------

def _chat_key(data: Any) -> Optional[str]:
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        return data.get("chatId") or data.get("chat_id")
    return None


async def on_join_chat(db, hub: ChatHub, conn: Connection, data: Any):
    chat_key = _chat_key(data)
    if not chat_key:
        await conn.send("error", {"message": "chatId is required"})
        return
    chat = await run_in_threadpool(chat_engine.find_chat, db, chat_key)
    if chat is None:
        await conn.send("error", {"message": "Chat not found", "chatId": chat_key})
        return
    if not chat_engine.can_access_chat(chat, {"id": conn.user_id, "role": conn.role}):
        await conn.send("error", {"message": "Access denied to this chat", "chatId": chat_key})
        return

    room = chat_room(chat["chat_id"])
    previous = conn.current_chat_room
    if previous and previous != room:
        await hub.stop_typing(conn, chat_key_of(previous))
        await hub.leave(conn, previous)
        await hub.broadcast(previous, "userLeftChat", {**conn.identity(), "timestamp": _stamp()})
    await hub.join(conn, room)
    await conn.send("joinedChat", {"chatId": chat["chat_id"]})
    await hub.broadcast(room, "userJoinedChat", {**conn.identity(), "timestamp": _stamp()}, exclude=conn)


async def on_leave_chat(db, hub: ChatHub, conn: Connection, data: Any):
    chat_key = _chat_key(data)
    if not chat_key:
        return
    room = chat_room(chat_key)
    if room not in conn.rooms:
        return
    await hub.stop_typing(conn, chat_key)
    await hub.leave(conn, room)
    await hub.broadcast(room, "userLeftChat", {**conn.identity(), "timestamp": _stamp()})


async def on_typing(db, hub: ChatHub, conn: Connection, data: Any):
    chat_key = _chat_key(data)
    if chat_key and chat_room(chat_key) in conn.rooms:
        await hub.start_typing(conn, chat_key)


async def on_stop_typing(db, hub: ChatHub, conn: Connection, data: Any):
    chat_key = _chat_key(data)
    if chat_key:
        await hub.stop_typing(conn, chat_key)


async def on_new_message(db, hub: ChatHub, conn: Connection, data: Any):
    chat_key = _chat_key(data)
    message = data.get("message") if isinstance(data, dict) else None
    if not chat_key or not isinstance(message, dict):
        await conn.send("error", {"message": "chatId and message are required"})
        return
    if chat_room(chat_key) not in conn.rooms:
        await conn.send("error", {"message": "Join the chat before sending", "chatId": chat_key})
        return
    await hub.broadcast_to_chat(chat_key, "messageReceived", {"chatId": chat_key, "message": {**message, "isNew": True}})
    chat = await run_in_threadpool(chat_engine.find_chat, db, chat_key)
    if chat is not None:
        await hub.notify_participants(chat["chat_id"], chat.get("participants", []), conn.user_id, message)


async def on_message_deleted(db, hub: ChatHub, conn: Connection, data: Any):
    chat_key = _chat_key(data)
    message_id = data.get("messageId") if isinstance(data, dict) else None
    if chat_key and message_id and chat_room(chat_key) in conn.rooms:
        await hub.broadcast_to_chat(chat_key, "messageDeleted", {"chatId": chat_key, "messageId": message_id})


async def on_update_status(db, hub: ChatHub, conn: Connection, data: Any):
    status = data.get("status") if isinstance(data, dict) else data
    online = status == "online"
    await run_in_threadpool(set_presence, db, conn.user_id, online)
    await hub.broadcast(
        GENERAL_ROOM,
        "userStatusChanged",
        {**conn.identity(), "isOnline": online, "timestamp": _stamp()},
    )


HANDLERS = {
    "joinChat": on_join_chat,
    "leaveChat": on_leave_chat,
    "typing": on_typing,
    "stopTyping": on_stop_typing,
    "newMessage": on_new_message,
    "messageDeleted": on_message_deleted,
    "updateStatus": on_update_status,
}


def _handshake_token(websocket: WebSocket) -> str:
    token = websocket.query_params.get("token")
    if token:
        return token
    return parse_bearer(websocket.headers.get("authorization"))


async def websocket_session(websocket: WebSocket, db, hub: ChatHub):
    try:
        user = decode_access_token(_handshake_token(websocket))
    except TokenError as e:
        logger.info(f"WebSocket handshake rejected: {e.message}")
        await websocket.close(code=1008)
        return

    conn = Connection(websocket, user)
    await websocket.accept()
    await hub.register(conn)
    await run_in_threadpool(set_presence, db, conn.user_id, True)
    await announce_presence(hub, conn, True)
    logger.info(f"User {conn.user_id} connected")

    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                await conn.send("error", {"message": "Frames must be JSON objects"})
                continue
            if not isinstance(frame, dict):
                await conn.send("error", {"message": "Frames must be JSON objects"})
                continue
            handler = HANDLERS.get(frame.get("event"))
            if handler is None:
                await conn.send("error", {"message": f"Unknown event: {frame.get('event')}"})
                continue
            try:
                await handler(db, hub, conn, frame.get("data"))
            except WebSocketDisconnect:
                raise
            except Exception:
                logger.exception(f"Error handling {frame.get('event')} from user {conn.user_id}")
    except WebSocketDisconnect:
        pass
    finally:
        await hub.unregister(conn)
        # Another tab may still hold a socket for this user
        if conn.user_id not in hub.online_user_ids():
            await run_in_threadpool(set_presence, db, conn.user_id, False)
            await announce_presence(hub, conn, False)
        logger.info(f"User {conn.user_id} disconnected")
