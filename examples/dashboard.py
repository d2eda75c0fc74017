"""
examples/dashboard.py: terminal dashboard for AgentRelay

Prints the active agents, then follows the history ledger by polling
/api/messages with the last cursor it saw.

Usage:
    python -m examples.dashboard --interval 2

Run this AFTER starting the server:
    agentrelay
"""
import asyncio
import argparse

import httpx

from agentrelay.config import HOST, PORT

BASE_URL = f"http://{HOST}:{PORT}"


def _format(msg: dict) -> str:
    sender = msg["from"]
    ts = msg["timestamp"][11:19]
    if msg.get("channel"):
        return f"[{ts}] #{msg['channel']} {sender}: {msg['content']}"
    if msg.get("to"):
        return f"[{ts}] {sender} -> {msg['to']}: {msg['content']}"
    return f"[{ts}] {sender} (broadcast, {msg['priority']}): {msg['content']}"


async def main(interval: float, after: int):
    async with httpx.AsyncClient(base_url=BASE_URL, timeout=10) as client:
        r = await client.get("/api/agents")
        r.raise_for_status()
        agents = r.json()
        print(f"Active agents ({len(agents)}):")
        for a in agents:
            print(f"  {a['name']:<16} {a['agent_id']:<28} [{a['group']}] {a['description']}")

        cursor = after
        print(f"\nFollowing ledger from seq {cursor} (Ctrl+C to stop)…")
        while True:
            r = await client.get("/api/messages", params={"after": cursor, "limit": 100})
            if r.status_code == 409:
                print(f"Ledger unavailable: {r.json()['error']}")
                return
            r.raise_for_status()
            page = r.json()
            for msg in page["messages"]:
                print(_format(msg))
            cursor = page["cursor"]
            await asyncio.sleep(interval)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="AgentRelay terminal dashboard")
    parser.add_argument("--interval", type=float, default=2.0, help="Poll interval in seconds")
    parser.add_argument("--after", type=int, default=0, help="Start after this ledger seq")
    args = parser.parse_args()
    try:
        asyncio.run(main(args.interval, args.after))
    except KeyboardInterrupt:
        pass
