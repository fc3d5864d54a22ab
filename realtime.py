"""
Real-time chat transport

Socket.IO server mounted next to the HTTP API. A connection authenticates by
sending its JWT in an `authenticate` event, after which it sits in a room
named after the user id and, for admins, in the `admins` room. HTTP handlers
push chat events through the emit helpers below; delivery is fire-and-forget.
"""
import logging
from typing import Any, Optional

import socketio
from fastapi import HTTPException

from security import user_from_token

logger = logging.getLogger(__name__)

ADMIN_ROOM = "admins"

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")


async def emit_to_user(user_id: Any, event: str, data: dict) -> None:
    await sio.emit(event, data, room=str(user_id))


async def emit_to_admins(event: str, data: dict) -> None:
    await sio.emit(event, data, room=ADMIN_ROOM)


async def emit_to_all(event: str, data: dict) -> None:
    await sio.emit(event, data)


@sio.event
async def connect(sid, environ, auth=None):
    logger.info("socket %s connected", sid)


@sio.event
async def authenticate(sid, data):
    token = (data or {}).get("token") if isinstance(data, dict) else None
    if not token:
        await sio.emit("authentication_error", {"message": "No token provided"}, to=sid)
        return
    try:
        user = user_from_token(token)
    except HTTPException as exc:
        logger.warning("socket %s failed authentication: %s", sid, exc.detail)
        await sio.emit("authentication_error", {"message": "Invalid token"}, to=sid)
        return

    user_id = str(user["_id"])
    await sio.save_session(sid, {"user_id": user_id, "role": user.get("role", "user")})
    await sio.enter_room(sid, user_id)
    if user.get("role") == "admin":
        await sio.enter_room(sid, ADMIN_ROOM)

    await sio.emit("authenticated", {
        "message": "Successfully authenticated",
        "user": {
            "id": user_id,
            "name": user.get("name"),
            "email": user.get("email"),
            "role": user.get("role", "user"),
        },
    }, to=sid)
    logger.info("user %s (%s) authenticated and joined rooms", user.get("name"), user_id)


async def _session_user_id(sid) -> Optional[str]:
    try:
        session = await sio.get_session(sid)
    except KeyError:
        return None
    return (session or {}).get("user_id")


async def _relay_typing(sid, data, event: str) -> None:
    data = data if isinstance(data, dict) else {}
    receiver_id = data.get("receiver_id")
    sender_id = await _session_user_id(sid) or data.get("sender_id")
    if not receiver_id or not sender_id:
        return
    await sio.emit(event, {"sender_id": sender_id}, room=str(receiver_id), skip_sid=sid)


@sio.event
async def typing(sid, data):
    await _relay_typing(sid, data, "user_typing")


@sio.event
async def stop_typing(sid, data):
    await _relay_typing(sid, data, "user_stop_typing")


@sio.event
async def disconnect(sid, reason=None):
    logger.info("socket %s (user %s) disconnected", sid, await _session_user_id(sid))
