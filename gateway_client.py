#!/usr/bin/env python3
import asyncio
import base64
import json
import os
import sys
import uuid

import httpx
from dotenv import load_dotenv

load_dotenv()

SERVER_URL = os.getenv("SERVER_URL", "http://localhost:8787")
SEARCH_QUERY = os.getenv("SEARCH_QUERY", "airpods")


def _banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


async def main(query: str = SEARCH_QUERY) -> int:
    async with httpx.AsyncClient(base_url=SERVER_URL, timeout=60.0) as client:
        _banner("STEP 1: Search products")
        resp = await client.get("/products", params={"search": query, "limit": 3})
        print(f"Status: {resp.status_code}")
        if resp.status_code != 200:
            print(f"Body: {resp.text}")
            return 1
        products = resp.json().get("products") or []
        if not products:
            print("No products returned")
            return 1
        chosen = products[0]
        print(f"Chosen: {chosen['product']['title']} ({chosen['product']['asin']})")
        print(f"Price: {chosen['product']['price']}")

        purchase_body = {
            "productBlob": chosen["productBlob"],
            "signature": chosen["signature"],
            "quantity": 1,
        }

        _banner("STEP 2: Request quote (expect 402)")
        resp = await client.post("/purchase/quote", json=purchase_body)
        print(f"Status: {resp.status_code}")
        payment_required_b64 = resp.headers.get("payment-required")
        if resp.status_code != 402 or not payment_required_b64:
            print(f"Body: {resp.text}")
            print("Quote rejected; continuing with the direct purchase anyway")
        else:
            payment_required = json.loads(base64.b64decode(payment_required_b64))
            print("Decoded Payment-Required:")
            print(json.dumps(payment_required, indent=2))

        _banner("STEP 3: Purchase with an idempotency key")
        purchase_body["idempotencyKey"] = f"demo-{uuid.uuid4().hex}"
        first = await client.post("/purchase", json=purchase_body)
        print(f"Status: {first.status_code}")
        print(json.dumps(first.json(), indent=2))

        _banner("STEP 4: Replay the same key")
        second = await client.post("/purchase", json=purchase_body)
        print(f"Status: {second.status_code}")
        identical = first.content == second.content
        print(f"Replayed response identical: {identical}")

    _banner("FLOW COMPLETE")
    return 0 if identical else 2


if __name__ == "__main__":
    sys.exit(asyncio.run(main(*sys.argv[1:2])))
