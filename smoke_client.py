"""Manual smoke client for a locally running realtime server.

    uvicorn app.main:app --app-dir backend
    python smoke_client.py <token> <room-id>

Tokens can be minted with ``IdentityResolver(secret).issue_token(user_id, name)``
using the secret from realtime.secrets.yaml.
"""
import asyncio
import json
import sys

import websockets


async def run(token: str, room_id: str) -> None:
    async with websockets.connect(f"ws://localhost:8000/ws?token={token}") as ws:
        # First frame is always the connection greeting
        connected = json.loads(await ws.recv())
        print(f"Connected: {connected}")

        await ws.send(json.dumps({"type": "join_room", "roomId": room_id}))
        joined = json.loads(await ws.recv())
        while joined.get("type") not in ("room_joined", "error"):
            joined = json.loads(await ws.recv())
        print(f"Joined: {joined.get('type')} ({len(joined.get('messages', []))} messages in backlog)")

        await ws.send(json.dumps({
            "type": "send_message",
            "roomId": room_id,
            "content": "Hello from Python!",
            "clientId": "smoke-1",
        }))

        # Print whatever arrives until the send is acknowledged
        while True:
            frame = json.loads(await ws.recv())
            print(f"Received: {frame}")
            if frame.get("type") in ("message_sent", "error"):
                break


if __name__ == "__main__":
    if len(sys.argv) != 3:
        sys.exit("usage: smoke_client.py <token> <room-id>")
    asyncio.run(run(sys.argv[1], sys.argv[2]))
