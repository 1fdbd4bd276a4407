#!/usr/bin/env python3
"""Live smoke test: start the server over stdio and make two real calls.

Spends real sats from the bearer balance (one small text generation).

  ALBOM_BEARER_TOKEN=... python scripts/live_smoke.py

Requires: pip install -e .
"""

from __future__ import annotations

import asyncio
import json
import os
import sys

from fastmcp import Client
from fastmcp.client.transports import StdioTransport


async def run() -> dict:
    token = os.environ.get("ALBOM_BEARER_TOKEN")
    if not token:
        raise RuntimeError("ALBOM_BEARER_TOKEN is required for the live smoke test")

    transport = StdioTransport(
        command=sys.executable,
        args=["-m", "albom_mcp.server"],
        env={
            **os.environ,
            "ALBOM_BEARER_TOKEN": token,
            "ALBOM_TOOL_PROFILE": os.environ.get("ALBOM_TOOL_PROFILE", "compact"),
        },
    )

    async with Client(transport) as client:
        tool_names = sorted(tool.name for tool in await client.list_tools())
        for expected in ("albom_catalog_get", "albom_text_generate"):
            if expected not in tool_names:
                raise RuntimeError(f"Expected {expected} tool, got {tool_names}")

        catalog = await client.call_tool(
            "albom_catalog_get", {"refresh": True}, raise_on_error=False,
        )
        if not (catalog.structured_content or {}).get("ok"):
            raise RuntimeError(f"Catalog tool returned error: {catalog.structured_content}")

        text = await client.call_tool(
            "albom_text_generate",
            {"model": "gpt-4o-mini", "input": "Reply with OK only."},
            raise_on_error=False,
        )
        if not (text.structured_content or {}).get("ok"):
            raise RuntimeError(f"Text tool returned error: {text.structured_content}")

    return {
        "ok": True,
        "tools": tool_names,
        "catalog_status": catalog.structured_content.get("status"),
        "text_status": text.structured_content.get("status"),
    }


def main() -> None:
    try:
        summary = asyncio.run(run())
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
