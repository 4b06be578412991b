#!/usr/bin/env python3
"""Subscribe to lot channels and print every slot / lot event.

    python -m smartpark.listener --token <JWT> --lot 1 --lot 2
"""
import argparse
import asyncio
import json
import logging
import os
from typing import Iterable, List
from urllib.parse import quote

import websockets

logger = logging.getLogger(__name__)

# Configuration
WS_URI = os.getenv("WS_URI", "ws://localhost:8000/ws")


def subscribe_frames(lot_ids: Iterable) -> List[str]:
    return [json.dumps({"event": "subscribe", "data": {"type": "lot", "id": lot_id}}) for lot_id in lot_ids]


def describe(raw: str) -> str:
    """One human-readable line for a server frame."""
    try:
        frame = json.loads(raw)
    except ValueError:
        return f"?? {raw}"
    event, data = frame.get("event"), frame.get("data") or {}
    if event == "slot:updated":
        updates = data.get("updates", {})
        return (f"🅿️  lot {data.get('lotId')} slot {data.get('slotId')}: "
                f"{updates.get('status', '(unchanged)')} conf={updates.get('confidence', '-')}")
    if event == "lot:updated":
        return f"📊 lot {data.get('lotId')} availability {data.get('delta', 0):+d}"
    return f"📡 {event}: {data}"


# WebSocket listener (async)
async def ws_listener(uri: str, token: str, lot_ids: List[int]):
    url = f"{uri}?token={quote(token)}"
    logger.info(f"🔗 Connecting to WebSocket at {uri} …")
    async with websockets.connect(url) as ws:
        for frame in subscribe_frames(lot_ids):
            await ws.send(frame)
        logger.info(f"✅ WebSocket connected, listening on lots {lot_ids} …")
        async for msg in ws:
            print(describe(msg))


def main(argv=None):
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Print live parking events for one or more lots.")
    parser.add_argument("--uri", default=WS_URI)
    parser.add_argument("--token", default=os.getenv("API_TOKEN"), required=os.getenv("API_TOKEN") is None)
    parser.add_argument("--lot", dest="lots", type=int, action="append", required=True)
    args = parser.parse_args(argv)
    try:
        asyncio.run(ws_listener(args.uri, args.token, args.lots))
    except KeyboardInterrupt:
        logger.info("🛑 Listener stopped.")
    except (OSError, websockets.exceptions.WebSocketException) as e:
        logger.error(f"⚠️  WebSocket error: {e}")


if __name__ == "__main__":
    main()
