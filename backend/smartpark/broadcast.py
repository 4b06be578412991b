# backend/smartpark/broadcast.py
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Set

logger = logging.getLogger(__name__)


def lot_channel(lot_id: Any) -> str:
    return f"lot:{lot_id}"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SubscriptionRegistry:
    """
    Connection <-> channel membership for this process.
    Swap for a shared pub/sub backend when running several server replicas.
    """

    def __init__(self):
        self._members: Dict[str, Set[str]] = {}
        self._channels_of: Dict[str, Set[str]] = {}

    def insert(self, connection_id: str, channel: str) -> None:
        self._members.setdefault(channel, set()).add(connection_id)
        self._channels_of.setdefault(connection_id, set()).add(channel)

    def remove(self, connection_id: str, channel: str) -> None:
        members = self._members.get(channel)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._members[channel]
        channels = self._channels_of.get(connection_id)
        if channels is not None:
            channels.discard(channel)
            if not channels:
                del self._channels_of[connection_id]

    def remove_connection(self, connection_id: str) -> None:
        for channel in list(self._channels_of.get(connection_id, ())):
            self.remove(connection_id, channel)

    def lookup(self, channel: str) -> Set[str]:
        return set(self._members.get(channel, ()))

    def channels_for(self, connection_id: str) -> Set[str]:
        return set(self._channels_of.get(connection_id, ()))


class BroadcastHub:
    """
    Fans slot and lot events out to WebSocket connections.

    Slot-level events go only to the subscribers of the slot's lot channel;
    lot aggregate events go to every connected client. Delivery is best effort:
    a connection that fails to receive is dropped, and nothing is replayed.
    """

    def __init__(self, registry: SubscriptionRegistry = None):
        self.active_connections: Dict[str, Any] = {}
        self.registry = registry if registry is not None else SubscriptionRegistry()
        self._lock = asyncio.Lock()

    async def connect(self, connection_id: str, ws: Any) -> None:
        """Register an already-accepted connection."""
        async with self._lock:
            self.active_connections[connection_id] = ws
        logger.info(f"HUB: Connected {connection_id} ({len(self.active_connections)} active)")

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            self.active_connections.pop(connection_id, None)
            self.registry.remove_connection(connection_id)
        logger.info(f"HUB: Disconnected {connection_id}")

    async def subscribe(self, connection_id: str, lot_id: Any) -> str:
        channel = lot_channel(lot_id)
        async with self._lock:
            if connection_id not in self.active_connections:
                raise KeyError(connection_id)
            self.registry.insert(connection_id, channel)
        logger.info(f"HUB: {connection_id} subscribed to {channel}")
        return channel

    async def unsubscribe(self, connection_id: str, lot_id: Any) -> str:
        channel = lot_channel(lot_id)
        async with self._lock:
            self.registry.remove(connection_id, channel)
        logger.info(f"HUB: {connection_id} unsubscribed from {channel}")
        return channel

    def subscribers(self, lot_id: Any) -> Set[str]:
        return self.registry.lookup(lot_channel(lot_id))

    async def publish(self, lot_id: Any, event: str, data: Dict[str, Any]) -> int:
        """Deliver to the lot's channel only. Returns the number of deliveries."""
        async with self._lock:
            targets = [(cid, self.active_connections[cid])
                       for cid in self.registry.lookup(lot_channel(lot_id))
                       if cid in self.active_connections]
        return await self._deliver(targets, event, data)

    async def broadcast(self, event: str, data: Dict[str, Any]) -> int:
        """Deliver to every connected client."""
        async with self._lock:
            targets = list(self.active_connections.items())
        return await self._deliver(targets, event, data)

    async def publish_transition(self, transition) -> None:
        timestamp = _timestamp()
        slot_event = {
            "type": "slot.status_changed",
            "slotId": transition.slot_id,
            "lotId": transition.lot_id,
            "updates": transition.updates,
            "timestamp": timestamp,
        }
        lot_event = {"lotId": transition.lot_id, "delta": transition.delta, "timestamp": timestamp}
        delivered = await self.publish(transition.lot_id, "slot:updated", slot_event)
        reached = await self.broadcast("lot:updated", lot_event)
        logger.debug(f"HUB: Slot {transition.slot_id} event -> {delivered} subscribers, lot event -> {reached} clients")

    async def handle_message(self, connection_id: str, raw: str) -> Dict[str, Any]:
        """Apply one client frame and return the reply frame."""
        try:
            message = json.loads(raw)
        except ValueError:
            return {"event": "error", "data": {"message": "Malformed message"}}
        if not isinstance(message, dict):
            return {"event": "error", "data": {"message": "Malformed message"}}

        event = message.get("event")
        data = message.get("data")
        if not isinstance(data, dict):
            data = {}
        if event == "ping":
            return {"event": "pong", "data": {"timestamp": _timestamp()}}
        if event in ("subscribe", "unsubscribe"):
            sub_type, sub_id = data.get("type"), data.get("id")
            if sub_type != "lot" or sub_id in (None, ""):
                return {"event": "error", "data": {"message": "Subscriptions need type 'lot' and an id"}}
            if event == "subscribe":
                channel = await self.subscribe(connection_id, sub_id)
                return {"event": "subscribed", "data": {"type": sub_type, "id": sub_id, "message": f"Subscribed to {channel}"}}
            channel = await self.unsubscribe(connection_id, sub_id)
            return {"event": "unsubscribed", "data": {"type": sub_type, "id": sub_id, "message": f"Unsubscribed from {channel}"}}
        return {"event": "error", "data": {"message": f"Unknown event '{event}'"}}

    async def _deliver(self, targets: List, event: str, data: Dict[str, Any]) -> int:
        msg = json.dumps({"event": event, "data": data}, default=str)
        bad_conns = []
        sent = 0
        for cid, conn in targets:
            try:
                await conn.send_text(msg)
                sent += 1
            except Exception as e:
                logger.warning(f"HUB: Dropping connection {cid} after send failure: {e}")
                bad_conns.append(cid)
        if bad_conns:
            async with self._lock:
                dropped = [(cid, self.active_connections.pop(cid, None)) for cid in bad_conns]
                for cid in bad_conns:
                    self.registry.remove_connection(cid)
            # a closed socket tells the client to reconnect and re-fetch
            for cid, conn in dropped:
                if conn is not None:
                    await self._close(cid, conn)
        return sent

    async def _close(self, connection_id: str, conn) -> None:
        try:
            await conn.close(code=1011)
        except Exception as e:
            logger.debug(f"HUB: Close of dropped connection {connection_id} failed: {e}")
