"""
Structure WebSocket route
One persistent connection per viewer; the server pushes structure,
fileChange and error messages, the viewer may ask for a fresh structure.
"""

from fastapi import APIRouter, WebSocket
import json
import logging

from services.broadcast_hub import Client, error_message

logger = logging.getLogger(__name__)

structure_bp = APIRouter(tags=['structure'])


async def handle_client_message(raw: str, client_id: str, hub, root_manager):
    """Process one inbound text frame from a viewer."""
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning(f"[WS] Malformed message from {client_id}")
        hub.send_to(client_id, error_message('Failed to process request'))
        return

    if not isinstance(data, dict):
        hub.send_to(client_id, error_message('Failed to process request'))
        return

    if data.get('type') == 'getStructure':
        try:
            await root_manager.send_snapshot(client_id)
        except Exception as e:
            logger.error(f"[WS] Error handling getStructure for {client_id}: {e}")
            hub.send_to(client_id, error_message('Failed to process request'))
    else:
        logger.debug(f"[WS] Ignoring message type {data.get('type')!r} from {client_id}")


@structure_bp.websocket('/')
@structure_bp.websocket('/ws')
async def structure_socket(websocket: WebSocket):
    """WebSocket endpoint for live directory structure updates"""
    hub = websocket.app.state.hub
    root_manager = websocket.app.state.root_manager

    await websocket.accept()
    client = Client(websocket)
    await hub.register(client)

    try:
        while True:
            message = await websocket.receive()
            if message['type'] == 'websocket.disconnect':
                break
            raw = message.get('text')
            if raw is None:
                raw = (message.get('bytes') or b'').decode('utf-8', errors='replace')
            await handle_client_message(raw, client.id, hub, root_manager)
    except Exception as e:
        logger.warning(f"[WS] Connection error for {client.id}: {e}")
    finally:
        await hub.unregister(client.id)
