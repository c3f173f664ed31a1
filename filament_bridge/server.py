"""
WebSocket front end for the presentation layer.

Client requests:
    {"type": "read"}
    {"type": "write", "materialCode": 5, "colorCode": 2, "manufacturerCode": 1}
    {"type": "status"}
    {"type": "auto", "enable": true}
"enable" must be a JSON boolean; anything else disables. An optional "id"
is echoed back in the reply. Auto-detect notifications are broadcast to
every client as {"type": "auto_status", ...}.
"""

import asyncio
import json
import logging

import websockets

from . import config
from .bridge import Bridge

log = logging.getLogger(__name__)


class BridgeServer:
    def __init__(self, bridge_factory=Bridge):
        self.clients = set()
        self.bridge = bridge_factory(self.notify_auto_status)
        self._pending: set[asyncio.Task] = set()

    # -----------------------------------------------------------------------
    # Outgoing
    # -----------------------------------------------------------------------

    async def broadcast(self, message: dict):
        """Send a JSON message to all connected clients."""
        if not self.clients:
            return
        text = json.dumps(message)
        disconnected = set()
        for ws in list(self.clients):
            try:
                await ws.send(text)
            except websockets.ConnectionClosed:
                disconnected.add(ws)
        self.clients -= disconnected

    def notify_auto_status(self, payload: dict):
        """Auto-detect consumer: push the payload to every client."""
        task = asyncio.get_running_loop().create_task(
            self.broadcast({"type": "auto_status", **payload})
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # -----------------------------------------------------------------------
    # Incoming
    # -----------------------------------------------------------------------

    async def dispatch(self, msg: dict) -> dict:
        coordinator = self.bridge.coordinator
        msg_type = msg.get("type")

        if msg_type == "read":
            reply = {"type": "read_result", **await coordinator.read()}

        elif msg_type == "write":
            result = await coordinator.write(
                msg.get("materialCode"),
                msg.get("colorCode"),
                msg.get("manufacturerCode", config.DEFAULT_MANUFACTURER),
            )
            reply = {"type": "write_result", **result}

        elif msg_type == "status":
            reply = {"type": "status", **coordinator.status()}

        elif msg_type == "auto":
            result = await coordinator.set_auto_detect(msg.get("enable") is True)
            reply = {"type": "auto_result", **result}

        else:
            log.debug("Unknown request type: %r", msg_type)
            reply = {"type": "error", "messageKey": "unknownRequest"}

        if "id" in msg:
            reply["id"] = msg["id"]
        return reply

    async def handle_client(self, websocket):
        """Handle a single client WebSocket connection."""
        self.clients.add(websocket)
        log.info("Client connected (%d total)", len(self.clients))

        try:
            await websocket.send(json.dumps({"type": "status", **self.bridge.coordinator.status()}))

            async for raw in websocket:
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(msg, dict):
                    continue

                reply = await self.dispatch(msg)
                await websocket.send(json.dumps(reply))

        except websockets.ConnectionClosed:
            pass
        finally:
            self.clients.discard(websocket)
            log.info("Client disconnected (%d remaining)", len(self.clients))

    async def close(self):
        await self.bridge.close()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


async def main():
    server = BridgeServer()
    log.info("Starting Filament Bridge on ws://%s:%d", config.WS_HOST, config.WS_PORT)
    try:
        async with websockets.serve(server.handle_client, config.WS_HOST, config.WS_PORT):
            await asyncio.Future()
    finally:
        await server.close()
