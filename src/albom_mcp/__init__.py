"""ALBOM MCP: pay-per-call AI endpoints from alittlebitofmoney.com as MCP tools.

Payments are Bitcoin Lightning: a prepaid bearer balance, NWC auto-pay, or
L402 pass-through where the agent pays the invoice itself.
"""

__version__ = "0.1.0"

from albom_mcp.errors import AlbomRuntimeError, CatalogValidationError
from albom_mcp.config import AlbomConfig, load_config
from albom_mcp.constants import PaymentMode, ToolProfile
from albom_mcp.catalog import CatalogManager, normalize_catalog, parse_catalog
from albom_mcp.dedup import build_tool_state, is_duplicate_candidate
from albom_mcp.l402 import L402TokenCache, parse_l402_challenge
from albom_mcp.http_client import AlbomHttpClient, RequestOptions

__all__ = [
    "AlbomRuntimeError",
    "CatalogValidationError",
    "AlbomConfig",
    "load_config",
    "PaymentMode",
    "ToolProfile",
    "CatalogManager",
    "normalize_catalog",
    "parse_catalog",
    "build_tool_state",
    "is_duplicate_candidate",
    "L402TokenCache",
    "parse_l402_challenge",
    "AlbomHttpClient",
    "RequestOptions",
]
