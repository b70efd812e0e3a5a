"""
examples/simulate_sensors.py: Simulated sensor fleet

1. Injects bursts of readings for a handful of rooms through the REST API
2. Prints the flattened topic tree
3. Diffs the two most recent readings of one topic

Usage:
    python -m examples.simulate_sensors --rooms 3 --bursts 5

Run this AFTER starting the server:
    python -m topicscope.main
"""
import asyncio
import argparse
import json
import random

import httpx

BASE_URL = "http://127.0.0.1:39780"


async def main(rooms: int, bursts: int):
    async with httpx.AsyncClient(base_url=BASE_URL, timeout=30) as client:

        # 1. Bursts of readings
        for burst in range(bursts):
            for room in range(1, rooms + 1):
                reading = {"temp": round(random.uniform(18, 24), 1), "burst": burst}
                await client.post("/api/messages", json={
                    "topic": f"building/floor1/room{room}/climate",
                    "payload": json.dumps(reading),
                    "qos": 1,
                    "properties": {"ContentType": "application/json"},
                })
                await client.post("/api/messages", json={
                    "topic": f"building/floor1/room{room}/status",
                    "payload": "online",
                    "retained": True,
                })
            await asyncio.sleep(0.05)
        await client.post("/api/flush")
        print(f"[sim] Published {bursts * rooms * 2} messages")

        # 2. Tree
        await client.post("/api/tree/expand")
        for item in (await client.get("/api/tree")).json():
            marker = "R" if item["retained"] else " "
            print(f"{marker} {'  ' * item['depth']}{item['name']}")

        # 3. Diff the two latest readings
        history = (await client.get("/api/topics/messages",
                                    params={"topic": "building/floor1/room1/climate", "limit": 2})).json()
        if len(history) == 2:
            newest, previous = history
            diff = (await client.get("/api/diff",
                                     params={"old_id": previous["id"], "new_id": newest["id"]})).json()
            for change in (diff["json"] or {}).get("changes", []):
                print(f"[diff] {change['label']}: {change['old_value']} -> {change['new_value']}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--rooms", default=3, type=int)
    parser.add_argument("--bursts", default=5, type=int)
    args = parser.parse_args()
    asyncio.run(main(args.rooms, args.bursts))
