import asyncio
import json
import sys

import websockets

URI = "ws://127.0.0.1:4001/ws/store"


async def main(token: str, path: str) -> None:
    async with websockets.connect(URI) as websocket:
        await websocket.send(json.dumps({"token": token}))
        ready = json.loads(await websocket.recv())
        print(f"Connected as {ready.get('uid')}, listening on /{path}")
        await websocket.send(json.dumps({"op": "subscribe", "id": 1, "path": path}))
        try:
            while True:
                payload = json.loads(await asyncio.wait_for(websocket.recv(), timeout=300))
                if payload.get("type") == "event":
                    print(f"{payload['event']}: {payload['key']} = {payload['value']}")
                else:
                    print(f"Frame: {payload}")
        except asyncio.TimeoutError:
            print("No events for 5 minutes, closing")


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print("usage: ws_store_listener.py TOKEN PATH")
        sys.exit(1)
    asyncio.run(main(sys.argv[1], sys.argv[2]))
