"""WebSocket endpoint streaming channel events to live subscribers."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, WebSocket, status
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_chat_runtime
from app.core.errors import AuthenticationError, NotFoundError
from app.database import get_db
from app.services import channels
from app.services.accounts import resolve_session
from app.services.runtime import ChatRuntime
from huddle.realtime import Subscription, Topic

router = APIRouter(prefix="/ws", tags=["ws"])

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through the websocket; returns False once the peer is gone."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


def _extract_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        if not await safe_send_json(websocket, {"type": event.topic.value, **event.to_dict()}):
            break


@router.websocket("/channels/{channel_id}")
async def subscribe_channel(
    websocket: WebSocket,
    channel_id: int,
    topic: str = Query(...),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> None:
    """Stream events of one topic for ``channel_id`` until the client disconnects."""

    token = _extract_token(websocket)
    if token is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return

    try:
        session = await resolve_session(db, runtime, token)
        await channels.get_single_channel(db, runtime, channel_id)
    except AuthenticationError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return
    except NotFoundError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Channel not found")
        return
    finally:
        await db.close()

    try:
        selected = Topic(topic)
    except ValueError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Unknown topic")
        return

    subscription = runtime.bus.subscribe(selected, channel_id)
    await websocket.accept()
    logger.info(
        "Channel subscriber connected",
        extra={"user_id": session.user_id, "channel_id": channel_id, "topic": selected.value},
    )

    async with subscription:
        forwarder = asyncio.create_task(_forward(websocket, subscription))
        try:
            while True:
                raw_message = await websocket.receive_text()
                if raw_message.strip().lower() == "ping":
                    await safe_send_json(websocket, {"type": "pong"})
                    continue
                try:
                    payload = json.loads(raw_message)
                except json.JSONDecodeError:
                    await safe_send_json(websocket, {"type": "error", "detail": "Invalid payload"})
                    continue
                if isinstance(payload, dict) and payload.get("type") == "ping":
                    await safe_send_json(websocket, {"type": "pong"})
        except (WebSocketDisconnect, RuntimeError):
            pass
        finally:
            forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await forwarder
            logger.info(
                "Channel subscriber disconnected",
                extra={"user_id": session.user_id, "channel_id": channel_id},
            )
