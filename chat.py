"""
Chat rooms and messages

Rooms are addressed by a deterministic key rather than their document id:
"general-chat", "support-<userId>" or "booking-<bookingId>". Creating a room
is therefore idempotent per key.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError
from starlette.concurrency import run_in_threadpool

from auth import is_admin
from database import create_document, isoformat, now, serialize_doc, to_object_id
from schemas import CHAT_TYPES, Chat, Message

logger = logging.getLogger(__name__)

GENERAL_CHAT_KEY = "general-chat"
ONLINE_USERS_LIMIT = 50
USER_FIELDS = {"username": 1, "email": 1, "profile_image": 1}


def chat_key_for(chat_type: str, user_id: str, booking_id: Optional[str] = None) -> str:
    if chat_type == "general":
        return GENERAL_CHAT_KEY
    if chat_type == "support":
        return f"support-{user_id}"
    return f"booking-{booking_id}"


def find_chat(db, chat_key: str) -> Optional[Dict[str, Any]]:
    chat = db["chat"].find_one({"chat_id": chat_key})
    if chat is None and ObjectId.is_valid(chat_key):
        chat = db["chat"].find_one({"_id": ObjectId(chat_key)})
    return chat


def can_access_chat(chat: Dict[str, Any], user: Dict[str, Any]) -> bool:
    if chat.get("type") == "general":
        return True
    return str(user["id"]) in chat.get("participants", [])


def _get_accessible_chat(db, chat_key: str, user: Dict[str, Any]) -> Dict[str, Any]:
    chat = find_chat(db, chat_key)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    if not can_access_chat(chat, user):
        raise HTTPException(status_code=403, detail="Access denied to this chat")
    return chat


def _users(db, ids) -> Dict[str, Dict[str, Any]]:
    oids = [ObjectId(i) for i in set(ids) if i and ObjectId.is_valid(i)]
    if not oids:
        return {}
    return {str(u["_id"]): serialize_doc(u) for u in db["user"].find({"_id": {"$in": oids}}, USER_FIELDS)}


def serialize_chat(db, chat: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(chat)
    users = _users(db, chat.get("participants", []))
    out["participants"] = [users.get(p, {"id": p}) for p in chat.get("participants", [])]
    return out


def serialize_message(msg: Dict[str, Any], sender: Optional[Dict[str, Any]] = None, reply: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = serialize_doc(msg)
    out["read_by"] = [
        {"user_id": r.get("user_id"), "read_at": isoformat(r["read_at"]) if r.get("read_at") else None}
        for r in msg.get("read_by", [])
    ]
    if msg.get("is_deleted"):
        # Kept in the thread, but the text is no longer served
        out["content"] = None
    out["sender"] = sender or {"id": msg.get("sender_id")}
    if reply is not None:
        out["reply_to"] = {
            "id": str(reply["_id"]),
            "content": None if reply.get("is_deleted") else reply.get("content"),
            "sender_id": reply.get("sender_id"),
        }
    return out


def _serialize_messages(db, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    senders = _users(db, [d["sender_id"] for d in docs])
    reply_ids = [ObjectId(d["reply_to"]) for d in docs if d.get("reply_to") and ObjectId.is_valid(d["reply_to"])]
    replies = {str(r["_id"]): r for r in db["message"].find({"_id": {"$in": reply_ids}})} if reply_ids else {}
    return [serialize_message(d, senders.get(d["sender_id"]), replies.get(d.get("reply_to"))) for d in docs]


def create_or_get_chat(
    db,
    user: Dict[str, Any],
    chat_type: str,
    participant_ids: Optional[List[str]] = None,
    booking_id: Optional[str] = None,
    title: Optional[str] = None,
) -> Dict[str, Any]:
    if chat_type not in CHAT_TYPES:
        raise HTTPException(status_code=400, detail="Invalid chat type")
    user_id = str(user["id"])

    if chat_type == "booking":
        if not booking_id:
            raise HTTPException(status_code=400, detail="Booking ID required for booking chats")
        booking = db["booking"].find_one({"_id": to_object_id(booking_id, "booking id")})
        if not booking:
            raise HTTPException(status_code=404, detail="Booking not found")
        if booking.get("user_id") != user_id and not is_admin(user):
            raise HTTPException(status_code=403, detail="Access denied to this chat")
        participants = [user_id] + [p for p in (participant_ids or []) if p != user_id]
    elif chat_type == "general":
        # Members are added as they open the room, access stays open regardless
        participants = []
    else:
        participants = [user_id]

    chat_key = chat_key_for(chat_type, user_id, booking_id)
    chat = db["chat"].find_one({"chat_id": chat_key})
    if chat is None:
        record = Chat(
            chat_id=chat_key,
            type=chat_type,
            participants=participants,
            booking_id=booking_id if chat_type == "booking" else None,
            title=title or f"{chat_type.capitalize()} Chat",
            last_activity=now(),
        )
        try:
            create_document(db, "chat", record)
            logger.info(f"Created chat {chat_key}")
        except DuplicateKeyError:
            # Lost the race to another first caller for this key
            chat = db["chat"].find_one({"chat_id": chat_key})
    if chat is not None and user_id not in chat.get("participants", []):
        db["chat"].update_one({"_id": chat["_id"]}, {"$addToSet": {"participants": user_id}})
    return serialize_chat(db, db["chat"].find_one({"chat_id": chat_key}))


def get_user_chats(db, user: Dict[str, Any], chat_type: Optional[str] = None) -> List[Dict[str, Any]]:
    user_id = str(user["id"])
    query: Dict[str, Any] = {"participants": user_id, "is_active": True}
    if chat_type:
        query["type"] = chat_type

    chats = []
    for chat in db["chat"].find(query).sort([("last_activity", -1)]):
        item = serialize_chat(db, chat)
        item["unread_count"] = db["message"].count_documents({
            "chat_id": str(chat["_id"]),
            "sender_id": {"$ne": user_id},
            "is_deleted": False,
            "read_by.user_id": {"$ne": user_id},
        })
        chats.append(item)
    return chats


def get_chat_messages(db, user: Dict[str, Any], chat_key: str, page: int = 1, limit: int = 50) -> Dict[str, Any]:
    if page < 1 or limit < 1:
        raise HTTPException(status_code=400, detail="page and limit must be positive")
    chat = _get_accessible_chat(db, chat_key, user)
    chat_oid = str(chat["_id"])
    user_id = str(user["id"])

    docs = list(
        db["message"].find({"chat_id": chat_oid}).sort([("created_at", -1), ("_id", -1)]).skip((page - 1) * limit).limit(limit)
    )

    stamp = now()
    db["message"].update_many(
        {"chat_id": chat_oid, "sender_id": {"$ne": user_id}, "read_by.user_id": {"$ne": user_id}},
        {"$push": {"read_by": {"user_id": user_id, "read_at": stamp}}},
    )
    db["chat"].update_one({"_id": chat["_id"]}, {"$set": {"last_activity": stamp}})

    docs.reverse()
    return {"messages": _serialize_messages(db, docs), "has_more": len(docs) == limit}


async def _publish(hub, chat: Dict[str, Any], event: str, data: Dict[str, Any], notify: Optional[Dict[str, Any]] = None):
    if hub is None:
        return
    try:
        await hub.broadcast_to_chat(chat["chat_id"], event, data)
        if notify is not None:
            await hub.notify_participants(chat["chat_id"], chat.get("participants", []), notify["sender_id"], notify)
    except Exception:
        logger.exception(f"Real-time delivery of {event} to {chat['chat_id']} failed")


def store_message(
    db,
    user: Dict[str, Any],
    chat_key: str,
    content: Optional[str],
    message_type: str = "text",
    reply_to: Optional[str] = None,
    file_url: Optional[str] = None,
    file_name: Optional[str] = None,
    file_size: Optional[int] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    chat = _get_accessible_chat(db, chat_key, user)
    if not content or not content.strip():
        raise HTTPException(status_code=400, detail="Message content is required")
    content = content.strip()
    if len(content) > 1000:
        raise HTTPException(status_code=400, detail="Message must be 1000 characters or fewer")

    reply = None
    if reply_to:
        reply = db["message"].find_one({"_id": to_object_id(reply_to, "reply_to id"), "chat_id": str(chat["_id"])})
        if reply is None:
            raise HTTPException(status_code=404, detail="Replied-to message not found")

    message = Message(
        chat_id=str(chat["_id"]),
        sender_id=str(user["id"]),
        content=content,
        message_type=message_type,
        file_url=file_url,
        file_name=file_name,
        file_size=file_size,
        reply_to=reply_to,
    )
    message_id = create_document(db, "message", message)
    db["chat"].update_one({"_id": chat["_id"]}, {"$set": {"last_activity": now()}})

    doc = db["message"].find_one({"_id": ObjectId(message_id)})
    sender = _users(db, [str(user["id"])]).get(str(user["id"]))
    return chat, serialize_message(doc, sender, reply)


async def send_message(db, hub, user: Dict[str, Any], chat_key: str, content: Optional[str], **fields) -> Dict[str, Any]:
    """Persist a message, then fan it out to the room.

    Store calls run in the threadpool so a slow database never stalls the
    sockets served by the event loop.
    """
    chat, out = await run_in_threadpool(store_message, db, user, chat_key, content, **fields)
    await _publish(hub, chat, "messageReceived", {"chatId": chat["chat_id"], "message": {**out, "isNew": True}}, notify=out)
    return out


def soft_delete_message(db, user: Dict[str, Any], message_id: str) -> Optional[Dict[str, Any]]:
    message = db["message"].find_one({"_id": to_object_id(message_id, "message id")})
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    if message.get("sender_id") != str(user["id"]) and not is_admin(user):
        raise HTTPException(status_code=403, detail="Cannot delete this message")

    db["message"].update_one({"_id": message["_id"]}, {"$set": {"is_deleted": True, "updated_at": now()}})
    logger.info(f"Message {message_id} deleted by {user['id']}")
    return db["chat"].find_one({"_id": to_object_id(message["chat_id"], "chat id")})


async def delete_message(db, hub, user: Dict[str, Any], message_id: str) -> None:
    chat = await run_in_threadpool(soft_delete_message, db, user, message_id)
    if chat is not None:
        await _publish(hub, chat, "messageDeleted", {"chatId": chat["chat_id"], "messageId": message_id})


def get_online_users(db) -> List[Dict[str, Any]]:
    cursor = db["user"].find(
        {"is_online": True},
        {"username": 1, "email": 1, "profile_image": 1, "last_seen": 1},
    ).sort([("last_seen", -1)]).limit(ONLINE_USERS_LIMIT)
    return [serialize_doc(u) for u in cursor]
