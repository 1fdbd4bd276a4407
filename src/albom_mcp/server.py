"""ALBOM MCP server using FastMCP over stdio."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from typing import Any

from fastmcp import FastMCP
from fastmcp.exceptions import NotFoundError
from fastmcp.server.middleware import Middleware, MiddlewareContext
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import TextContent
from pydantic import Field

from albom_mcp import __version__
from albom_mcp.catalog import CatalogManager
from albom_mcp.config import AlbomConfig, load_config
from albom_mcp.constants import PaymentMode
from albom_mcp.http_client import AlbomHttpClient, L402Handler
from albom_mcp.l402 import L402TokenCache
from albom_mcp.tools.registration import ToolDefinition, ToolHandler, ToolServer
from albom_mcp.tools.registry import AlbomToolRegistry
from albom_mcp.wallet import NwcWallet, WalletL402Handler

logger = logging.getLogger(__name__)

SERVER_NAME = "alittlebitofmoney-mcp"

INSTRUCTIONS = (
    "Pay-per-call access to AI model endpoints sold by alittlebitofmoney.com "
    "for Lightning sats.\n\n"
    "Call `albom_catalog_get` to see endpoints, models and prices. When a "
    "tool returns `payment_required`, pay the `invoice` and call the same "
    "tool again with `payment_preimage`."
)


# ---------------------------------------------------------------------------
# FastMCP adapter
# ---------------------------------------------------------------------------


class HostedTool(Tool):
    """A FastMCP tool backed by a registry handler and a fixed JSON schema."""

    handler: ToolHandler = Field(exclude=True)

    async def run(self, arguments: dict[str, Any]) -> ToolResult:
        outcome = await self.handler(arguments)
        return ToolResult(
            content=[TextContent(type="text", text=outcome.text)],
            structured_content=outcome.structured,
        )


class _SessionTracker(Middleware):
    """Remembers the latest client session so notifications can reach it."""

    def __init__(self, owner: FastMCPToolServer) -> None:
        self._owner = owner

    async def on_message(self, context: MiddlewareContext, call_next: Any) -> Any:
        fastmcp_context = context.fastmcp_context
        if fastmcp_context is not None:
            with contextlib.suppress(RuntimeError):
                self._owner.session = fastmcp_context.session
        return await call_next(context)


class _FastMCPHandle:
    def __init__(self, mcp: FastMCP, name: str) -> None:
        self._mcp = mcp
        self._name = name

    def remove(self) -> None:
        try:
            self._mcp.remove_tool(self._name)
        except NotFoundError:
            logger.debug("Tool %s was already removed.", self._name)


class FastMCPToolServer:
    """Adapts a ``FastMCP`` instance to the registry's ``ToolServer`` protocol."""

    def __init__(self, mcp: FastMCP) -> None:
        self.mcp = mcp
        self.session: Any | None = None
        mcp.add_middleware(_SessionTracker(self))

    def register_tool(self, definition: ToolDefinition, handler: ToolHandler) -> _FastMCPHandle:
        self.mcp.add_tool(HostedTool(
            name=definition.name,
            title=definition.title,
            description=definition.description,
            parameters=definition.input_schema,
            annotations=definition.annotations,
            handler=handler,
        ))
        return _FastMCPHandle(self.mcp, definition.name)

    async def send_tool_list_changed(self) -> None:
        session = self.session
        if session is None:
            return
        try:
            await session.send_tool_list_changed()
        except Exception as exc:
            # A closed transport stays closed; wait for the next client message.
            logger.warning("Dropping client session after failed notification: %s", exc)
            if self.session is session:
                self.session = None

    def is_connected(self) -> bool:
        return self.session is not None


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class AlbomServer:
    """Owns every long-lived component and the periodic catalog refresh."""

    def __init__(self, config: AlbomConfig, tool_server: ToolServer) -> None:
        self.config = config
        self.catalog = CatalogManager(
            config.base_url, config.http_timeout_secs, config.catalog_ttl_secs,
        )
        self.token_cache = L402TokenCache()

        self.wallet: NwcWallet | None = None
        l402_handler: L402Handler | None = None
        if config.payment_mode is PaymentMode.NWC and config.nwc_url:
            self.wallet = NwcWallet(config.nwc_url)
            l402_handler = WalletL402Handler(self.wallet)

        self.http_client = AlbomHttpClient(
            config.base_url,
            config.http_timeout_secs,
            config.max_retries,
            bearer_token=config.bearer_token,
            l402_handler=l402_handler,
        )
        self.registry = AlbomToolRegistry(
            config, tool_server, self.catalog, self.http_client, self.token_cache,
        )
        self._refresh_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        logger.info("Payment mode: %s.", self.config.payment_mode.value)
        await self.registry.initialize()
        self.token_cache.start_cleanup()
        self._refresh_task = asyncio.get_running_loop().create_task(self.refresh_loop())

    async def refresh_loop(self) -> None:
        """Re-sync tools every catalog TTL until cancelled. Failures are logged."""
        try:
            while True:
                await asyncio.sleep(self.config.catalog_ttl_secs)
                try:
                    await self.registry.sync_tools(force_refresh=True, emit_notification=True)
                except Exception as exc:
                    logger.warning("Catalog refresh failed: %s", exc)
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None
        self.registry.dispose()
        self.token_cache.dispose()
        if self.wallet is not None:
            await self.wallet.close()
        await self.http_client.close()
        await self.catalog.close()


async def serve(config: AlbomConfig) -> None:
    mcp = FastMCP(SERVER_NAME, instructions=INSTRUCTIONS, version=__version__)
    server = AlbomServer(config, FastMCPToolServer(mcp))
    await server.start()

    loop = asyncio.get_running_loop()
    serve_task = loop.create_task(mcp.run_async(transport="stdio"))
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, serve_task.cancel)

    try:
        await serve_task
    except asyncio.CancelledError:
        logger.info("Shutting down.")
    finally:
        await server.stop()


def main() -> None:
    """Main entry point for the server."""
    logging.basicConfig(
        stream=sys.stderr,
        level=os.environ.get("ALBOM_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = load_config()
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(2)
    asyncio.run(serve(config))


if __name__ == "__main__":
    main()
