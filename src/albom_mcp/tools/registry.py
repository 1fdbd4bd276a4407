"""Keeps the host's registered tools in step with the catalog."""

from __future__ import annotations

import logging
from typing import Protocol

from albom_mcp.config import AlbomConfig
from albom_mcp.dedup import build_tool_state
from albom_mcp.http_client import AlbomHttpClient
from albom_mcp.l402 import L402TokenCache
from albom_mcp.models import CatalogState, ToolState
from albom_mcp.tools.executor import AlbomToolExecutor
from albom_mcp.tools.registration import RegisteredToolHandle, ToolServer, register_planned_tool
from albom_mcp.uploads import ReadFile

logger = logging.getLogger(__name__)


class CatalogProvider(Protocol):
    async def get_state(self, refresh: bool = False) -> CatalogState: ...

    def snapshot(self) -> CatalogState | None: ...


class AlbomToolRegistry:
    """Reconciles registered tools against the latest ``ToolState``.

    - ``initialize()`` registers the first tool set without notifying.
    - ``sync_tools()`` re-registers only when the tool signature changes,
      replacing every handle at once, and notifies a live host only when a
      previous tool set existed.
    - ``dispose()`` unregisters everything.
    """

    def __init__(
        self,
        config: AlbomConfig,
        server: ToolServer,
        catalog_provider: CatalogProvider,
        http_client: AlbomHttpClient,
        token_cache: L402TokenCache | None = None,
        read_file: ReadFile | None = None,
    ) -> None:
        self._config = config
        self._server = server
        self._catalog_provider = catalog_provider
        self._http_client = http_client
        self._token_cache = token_cache
        self._read_file = read_file
        self._tool_state: ToolState | None = None
        self._catalog_state: CatalogState | None = None
        self._handles: list[RegisteredToolHandle] = []

    def current_tool_state(self) -> ToolState | None:
        return self._tool_state

    async def initialize(self) -> None:
        await self.sync_tools(force_refresh=True, emit_notification=False)

    async def sync_tools(self, force_refresh: bool, emit_notification: bool) -> bool:
        """Recompute the tool set. Returns True when it changed."""
        catalog_state = await self._catalog_provider.get_state(refresh=force_refresh)
        self._catalog_state = catalog_state

        next_state = build_tool_state(catalog_state, self._config)
        previous = self._tool_state
        # No handles means the last registration failed; retry even on a match.
        if previous is not None and self._handles and previous.signature == next_state.signature:
            return False

        self._replace_registered_tools(next_state)
        self._tool_state = next_state
        logger.info(
            "Registered %d tool(s) (profile %s, signature %s).",
            len(next_state.tools), next_state.profile.value, next_state.signature[:12],
        )

        if emit_notification and previous is not None and self._server.is_connected():
            await self._server.send_tool_list_changed()
            logger.info("Sent tools/list_changed notification.")
        return True

    def dispose(self) -> None:
        for handle in self._handles:
            handle.remove()
        self._handles = []

    # -- internals ------------------------------------------------------------

    def _current_catalog(self) -> CatalogState:
        if self._catalog_state is None:
            raise RuntimeError("Catalog state is not initialized")
        return self._catalog_state

    async def _refresh_catalog(self) -> CatalogState:
        refreshed = await self._catalog_provider.get_state(refresh=True)
        self._catalog_state = refreshed
        return refreshed

    def _replace_registered_tools(self, tool_state: ToolState) -> None:
        self.dispose()

        executor = AlbomToolExecutor(
            config=self._config,
            http_client=self._http_client,
            get_catalog_state=self._current_catalog,
            refresh_catalog=self._refresh_catalog,
            get_tool_state=self.current_tool_state,
            read_file=self._read_file,
        )
        handles: list[RegisteredToolHandle] = []
        try:
            for tool in tool_state.tools:
                handles.append(register_planned_tool(
                    self._server, tool, executor, self._config.payment_mode, self._token_cache,
                ))
        except Exception:
            logger.error("Tool registration failed; removing %d partial tool(s).", len(handles))
            for handle in handles:
                handle.remove()
            raise
        self._handles = handles
