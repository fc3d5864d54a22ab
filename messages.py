"""
Support chat between users and admins.

Messages are persisted in the `message` collection and pushed live through
the Socket.IO rooms in `realtime`.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, field_validator

import realtime
from database import db, parse_object_id, serialize_doc
from schemas import Message as MessageSchema, MessageType, conversation_id
from security import get_current_user, public_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messages", tags=["messages"])

USER_FIELDS = {"name": 1, "email": 1, "role": 1}


class MessageIn(BaseModel):
    message_body: str

    @field_validator("message_body")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Message body is required")
        return v.strip()


class AdminMessageIn(MessageIn):
    user_id: str


# Helpers

def _pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _user_summaries(ids) -> Dict[ObjectId, dict]:
    ids = [i for i in set(ids) if i is not None]
    if not ids:
        return {}
    users = db["user"].find({"_id": {"$in": ids}}, USER_FIELDS)
    return {u["_id"]: serialize_doc(u) for u in users}


def message_out(doc: dict, users: Optional[Dict[ObjectId, dict]] = None) -> dict:
    """Serialize a message with its conversation key and populated participants."""
    if users is None:
        users = _user_summaries([doc.get("sender_id"), doc.get("receiver_id")])
    out = serialize_doc(doc)
    out["conversation_id"] = conversation_id(doc)
    out["sender"] = users.get(doc.get("sender_id"))
    out["receiver"] = users.get(doc.get("receiver_id"))
    return out


def _messages_out(docs: List[dict]) -> List[dict]:
    users = _user_summaries([d.get("sender_id") for d in docs] + [d.get("receiver_id") for d in docs])
    return [message_out(d, users) for d in docs]


def _find_page(query: dict, page: int, limit: int) -> List[dict]:
    cursor = db["message"].find(query).sort("timestamp", -1).skip((page - 1) * limit).limit(limit)
    return list(cursor)


def _store_message(sender_id: ObjectId, receiver_id: Optional[ObjectId], body: str, message_type: str) -> dict:
    message = MessageSchema(sender_id=sender_id, receiver_id=receiver_id, message_body=body, message_type=message_type)
    doc = message.model_dump()
    now = datetime.utcnow()
    doc.update({"created_at": now, "updated_at": now})
    doc["_id"] = db["message"].insert_one(doc).inserted_id
    return doc


# User endpoints

@router.post("/user-to-admin", status_code=201)
async def send_message_to_admin(payload: MessageIn, user: dict = Depends(get_current_user)):
    admin = db["user"].find_one({"role": "admin"}, sort=[("created_at", 1)])
    if not admin:
        raise HTTPException(status_code=404, detail="No admin available")
    doc = _store_message(user["_id"], admin["_id"], payload.message_body, "private")
    data = message_out(doc)
    await realtime.emit_to_user(admin["_id"], "new_message_to_admin", {"message": data, "sender": public_user(user)})
    return {"message": "Message sent successfully", "data": data}


@router.get("/history")
async def get_my_chat_history(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                              user: dict = Depends(get_current_user)):
    query = {"$or": [{"sender_id": user["_id"]}, {"receiver_id": user["_id"]}], "message_type": "private"}
    docs = _find_page(query, page, limit)
    total = db["message"].count_documents(query)
    return {"messages": _messages_out(docs), "pagination": _pagination(page, limit, total)}


@router.get("/me")
async def get_all_my_messages(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                              message_type: Optional[MessageType] = None, is_read: Optional[bool] = None,
                              user: dict = Depends(get_current_user)):
    uid = user["_id"]
    mine = {"$or": [{"sender_id": uid}, {"receiver_id": uid}, {"message_type": "broadcast"}]}
    query: Dict[str, Any] = dict(mine)
    if message_type:
        query["message_type"] = message_type
    if is_read is not None:
        query["is_read"] = is_read

    docs = _find_page(query, page, limit)
    total = db["message"].count_documents(query)

    stats = list(db["message"].aggregate([
        {"$match": mine},
        {"$group": {
            "_id": None,
            "total_messages": {"$sum": 1},
            "unread_messages": {"$sum": {"$cond": [
                {"$and": [{"$eq": ["$receiver_id", uid]}, {"$eq": ["$is_read", False]}]}, 1, 0]}},
            "private_messages": {"$sum": {"$cond": [{"$eq": ["$message_type", "private"]}, 1, 0]}},
            "broadcast_messages": {"$sum": {"$cond": [{"$eq": ["$message_type", "broadcast"]}, 1, 0]}},
        }},
    ]))
    statistics = {"total_messages": 0, "unread_messages": 0, "private_messages": 0, "broadcast_messages": 0}
    if stats:
        statistics.update({k: v for k, v in stats[0].items() if k != "_id"})

    return {"messages": _messages_out(docs), "statistics": statistics, "pagination": _pagination(page, limit, total)}


@router.patch("/{message_id}/read")
async def mark_message_as_read(message_id: str, user: dict = Depends(get_current_user)):
    oid = parse_object_id(message_id, "message id")
    message = db["message"].find_one({"_id": oid})
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    if message.get("receiver_id") != user["_id"]:
        raise HTTPException(status_code=403, detail="Not authorized to mark this message as read")
    if message.get("is_read"):
        return {"message": "Message already marked as read", "data": message_out(message)}

    db["message"].update_one({"_id": oid}, {"$set": {"is_read": True, "updated_at": datetime.utcnow()}})
    message["is_read"] = True
    await realtime.emit_to_user(message["sender_id"], "message_read", {
        "message_id": str(oid),
        "reader_id": str(user["_id"]),
    })
    return {"message": "Message marked as read", "data": message_out(message)}


# Admin endpoints

@router.post("/admin-to-user", status_code=201)
async def send_message_to_user(payload: AdminMessageIn, admin: dict = Depends(require_admin)):
    target_id = parse_object_id(payload.user_id, "user id")
    target = db["user"].find_one({"_id": target_id})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    doc = _store_message(admin["_id"], target_id, payload.message_body, "private")
    data = message_out(doc)
    await realtime.emit_to_user(target_id, "new_message_from_admin", {"message": data, "sender": public_user(admin)})
    return {"message": "Message sent successfully", "data": data}


@router.post("/broadcast", status_code=201)
async def send_broadcast_message(payload: MessageIn, admin: dict = Depends(require_admin)):
    doc = _store_message(admin["_id"], None, payload.message_body, "broadcast")
    data = message_out(doc)
    await realtime.emit_to_all("new_broadcast_message", {"message": data, "sender": public_user(admin)})
    return {"message": "Broadcast message sent successfully", "data": data}


@router.get("/admin/conversations")
async def get_admin_conversations(unread_only: bool = False,
                                  sort_by: Literal["timestamp", "unread_count", "total_messages"] = "timestamp",
                                  page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                                  admin: dict = Depends(require_admin)):
    admin_id = admin["_id"]
    match: Dict[str, Any] = {"message_type": "private"}
    if unread_only:
        match["is_read"] = False

    # Ties on counts fall back to the most recent conversation first
    sort_keys = {"last_message.timestamp": -1}
    if sort_by != "timestamp":
        sort_keys = {sort_by: -1, "last_message.timestamp": -1}

    other_party = {"$cond": [{"$eq": ["$sender_id", admin_id]}, "$receiver_id", "$sender_id"]}
    grouped = [
        {"$match": match},
        {"$sort": {"timestamp": 1}},
        {"$group": {
            "_id": other_party,
            "last_message": {"$last": "$$ROOT"},
            "unread_count": {"$sum": {"$cond": [
                {"$and": [{"$eq": ["$receiver_id", admin_id]}, {"$eq": ["$is_read", False]}]}, 1, 0]}},
            "total_messages": {"$sum": 1},
        }},
    ]
    conversations = list(db["message"].aggregate(grouped + [
        {"$sort": sort_keys},
        {"$skip": (page - 1) * limit},
        {"$limit": limit},
    ]))
    counted = list(db["message"].aggregate(grouped + [{"$count": "total"}]))
    total = counted[0]["total"] if counted else 0

    users = _user_summaries([c["_id"] for c in conversations])
    result = []
    for conv in conversations:
        result.append({
            "user_id": str(conv["_id"]) if conv["_id"] is not None else None,
            "user": users.get(conv["_id"]),
            "last_message": message_out(conv["last_message"]),
            "unread_count": conv["unread_count"],
            "total_messages": conv["total_messages"],
        })
    return {"conversations": result, "pagination": _pagination(page, limit, total)}


@router.get("/admin/all")
async def get_all_messages(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                           message_type: Optional[MessageType] = None, is_read: Optional[bool] = None,
                           sender_id: Optional[str] = None, receiver_id: Optional[str] = None,
                           start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                           admin: dict = Depends(require_admin)):
    query: Dict[str, Any] = {}
    if message_type:
        query["message_type"] = message_type
    if is_read is not None:
        query["is_read"] = is_read
    if sender_id:
        query["sender_id"] = parse_object_id(sender_id, "sender id")
    if receiver_id:
        query["receiver_id"] = parse_object_id(receiver_id, "receiver id")
    if start_date or end_date:
        query["timestamp"] = {}
        if start_date:
            query["timestamp"]["$gte"] = _naive_utc(start_date)
        if end_date:
            query["timestamp"]["$lte"] = _naive_utc(end_date)

    docs = _find_page(query, page, limit)
    total = db["message"].count_documents(query)

    admin_id = admin["_id"]
    stats = list(db["message"].aggregate([
        {"$match": query},
        {"$group": {
            "_id": None,
            "total_messages": {"$sum": 1},
            "unread_messages": {"$sum": {"$cond": [{"$eq": ["$is_read", False]}, 1, 0]}},
            "private_messages": {"$sum": {"$cond": [{"$eq": ["$message_type", "private"]}, 1, 0]}},
            "broadcast_messages": {"$sum": {"$cond": [{"$eq": ["$message_type", "broadcast"]}, 1, 0]}},
            "messages_from_users": {"$sum": {"$cond": [{"$ne": ["$sender_id", admin_id]}, 1, 0]}},
            "messages_to_users": {"$sum": {"$cond": [{"$ne": ["$receiver_id", admin_id]}, 1, 0]}},
        }},
    ]))
    statistics = {
        "total_messages": 0,
        "unread_messages": 0,
        "private_messages": 0,
        "broadcast_messages": 0,
        "messages_from_users": 0,
        "messages_to_users": 0,
    }
    if stats:
        statistics.update({k: v for k, v in stats[0].items() if k != "_id"})

    # Last 30 days with activity, for charts
    by_date = db["message"].aggregate([
        {"$match": query},
        {"$group": {"_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$timestamp"}}, "count": {"$sum": 1}}},
        {"$sort": {"_id": -1}},
        {"$limit": 30},
    ])
    messages_by_date = [{"date": d["_id"], "count": d["count"]} for d in by_date]

    return {
        "messages": _messages_out(docs),
        "statistics": statistics,
        "messages_by_date": messages_by_date,
        "pagination": _pagination(page, limit, total),
    }


@router.get("/user/{user_id}")
async def get_specific_user_chat_history(user_id: str, page: int = Query(1, ge=1),
                                         limit: int = Query(20, ge=1, le=100), admin: dict = Depends(require_admin)):
    target_id = parse_object_id(user_id, "user id")
    target = db["user"].find_one({"_id": target_id})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    query = {
        "$or": [
            {"sender_id": admin["_id"], "receiver_id": target_id},
            {"sender_id": target_id, "receiver_id": admin["_id"]},
        ],
        "message_type": "private",
    }
    docs = _find_page(query, page, limit)
    total = db["message"].count_documents(query)
    return {"messages": _messages_out(docs), "user": public_user(target), "pagination": _pagination(page, limit, total)}
