"""Live order updates over a WebSocket.

Each connection authenticates with ``?token=``, starts the user's debounced
refetch and receives one message per coalesced batch of committed changes.
"""

from typing import Dict, List

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from orderflow.auth_local import actor_for_token
from orderflow.core.logging_config import get_logger, set_request_context
from orderflow.infrastructure.change_feed import ChangeEvent
from orderflow.infrastructure.db import session_scope

logger = get_logger(__name__)

router = APIRouter()

# Store active websocket connections with user info
active_connections: Dict[WebSocket, Dict] = {}


def _load_actor(session_factory, token: str):
    with session_scope(session_factory) as session:
        return actor_for_token(session, token)


@router.websocket("/ws/changes")
async def changes_websocket(websocket: WebSocket):
    registry = websocket.app.state.registry
    actor = await run_in_threadpool(_load_actor, registry.session_factory, websocket.query_params.get("token"))
    if actor is None:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    set_request_context(user_id=actor.user_id)
    await registry.reap()
    service = registry.for_actor(actor)
    active_connections[websocket] = {"user_id": actor.user_id, "role": actor.role}

    async def push(batch: List[ChangeEvent]) -> None:
        await websocket.send_json({
            "type": "orders_changed",
            "events": [change.to_dict() for change in batch],
            "order_count": len(service.orders_for_viewer()),
        })

    service.add_listener(push)
    service.start_realtime()
    logger.info("Realtime client connected", extra={'extra_fields': {'user_id': actor.user_id}})
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Realtime client disconnected", extra={'extra_fields': {'user_id': actor.user_id}})
    finally:
        service.remove_listener(push)
        active_connections.pop(websocket, None)
        if not service.has_listeners:
            await service.stop_realtime()
