"""Python client for RoomCast.

Connects to the chat endpoint, joins a room, prints incoming events and
sends every line typed on stdin as a message.

    pip install "roomcast-server[client]"
    python examples/client_python.py --url ws://localhost:8000/chat --token <JWT> --room general
"""

import argparse
import asyncio
import json
import sys

import websockets


async def read_lines(ws, room: str):
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return
        text = line.strip()
        if not text:
            continue
        await ws.send(json.dumps({"t": "typingStart", "p": {"roomId": room}}))
        await ws.send(json.dumps({"t": "sendMessage", "p": {"roomId": room, "content": text}}))


async def print_events(ws):
    async for raw in ws:
        frame = json.loads(raw)
        if frame["t"] == "heartbeat":
            await ws.send(json.dumps({"t": "pong", "p": {"timestamp": frame["p"]["timestamp"]}}))
            continue
        print(f"[{frame['t']}] {frame['p']}")


async def main(url: str, token: str, room: str):
    async with websockets.connect(f"{url}?token={token}") as ws:
        await ws.send(json.dumps({"t": "joinRoom", "p": {"roomId": room}}))
        print(f"Connected to {url}, room #{room}")
        print("Type a line to send it (Ctrl+D to stop)\n")

        reader = asyncio.create_task(print_events(ws))
        try:
            await read_lines(ws, room)
        finally:
            reader.cancel()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="RoomCast Python client")
    parser.add_argument("--url", default="ws://localhost:8000/chat")
    parser.add_argument("--token", required=True, help="JWT token from server output")
    parser.add_argument("--room", default="general")
    args = parser.parse_args()

    try:
        asyncio.run(main(args.url, args.token, args.room))
    except KeyboardInterrupt:
        pass
