"""Tool-call result envelopes.

Success: ``{ok: True, status, endpoint, model?, price_sats?, data}``.
Failure: ``{ok: False, status, endpoint, model?, error: {code, message, ...}}``.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from albom_mcp.constants import DEFAULT_MODEL_KEY, PriceType
from albom_mcp.errors import AlbomRuntimeError
from albom_mcp.l402 import extract_macaroon
from albom_mcp.models import EndpointDescriptor, NormalizedHttpResponse

_PAYMENT_FIELDS = (
    "amount_sats",
    "invoice",
    "payment_hash",
    "expires_in",
    "required_sats",
    "available_sats",
)

_STATUS_CODES = {
    401: "invalid_token",
    404: "endpoint_not_found",
    413: "request_too_large",
    429: "rate_limited",
}


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _nested_error(data: dict[str, Any]) -> dict[str, Any]:
    error = data.get("error")
    return error if isinstance(error, dict) else {}


def map_error_code(status: int, data: Any) -> str:
    if status in _STATUS_CODES:
        return _STATUS_CODES[status]
    if status >= 500:
        return "upstream_unavailable"

    record = data if isinstance(data, dict) else {}
    if status == 402:
        if record.get("status") == "insufficient_balance":
            return "insufficient_balance"
        return "payment_required"

    return (
        _as_str(_nested_error(record).get("code"))
        or _as_str(record.get("code"))
        or _as_str(record.get("status"))
        or "upstream_error"
    )


def pick_message(data: Any, fallback: str) -> str:
    if isinstance(data, str) and data:
        return data
    if not isinstance(data, dict):
        return fallback
    return (
        _as_str(_nested_error(data).get("message"))
        or _as_str(data.get("message"))
        or _as_str(data.get("status"))
        or fallback
    )


def extract_payment_metadata(data: Any, headers: dict[str, str]) -> dict[str, Any]:
    """Invoice, balance and L402 fields an agent needs to act on a failure."""
    if not isinstance(data, dict):
        return {}

    metadata = {field: data[field] for field in _PAYMENT_FIELDS if field in data}

    topup_url = headers.get("x-topup-url")
    if topup_url:
        metadata["topup_url"] = topup_url

    macaroon = extract_macaroon(headers.get("www-authenticate"))
    if macaroon:
        metadata["macaroon"] = macaroon
    return metadata


def _envelope(ok: bool, status: int, endpoint: str, model: str | None) -> dict[str, Any]:
    result: dict[str, Any] = {"ok": ok, "status": status, "endpoint": endpoint}
    if model is not None:
        result["model"] = model
    return result


def build_success_result(
    endpoint: str,
    status: int,
    data: Any,
    model: str | None = None,
    price_sats: float | None = None,
) -> dict[str, Any]:
    result = _envelope(True, status, endpoint, model)
    if price_sats is not None:
        result["price_sats"] = price_sats
    result["data"] = data
    return result


def build_error_result(
    endpoint: str,
    status: int,
    data: Any,
    headers: dict[str, str],
    model: str | None = None,
) -> dict[str, Any]:
    result = _envelope(False, status, endpoint, model)
    result["error"] = {
        "code": map_error_code(status, data),
        "message": pick_message(data, f"Upstream request failed with status {status}"),
        **extract_payment_metadata(data, headers),
    }
    return result


def from_http_response(
    endpoint: str,
    response: NormalizedHttpResponse,
    model: str | None = None,
    price_sats: float | None = None,
) -> dict[str, Any]:
    if 200 <= response.status < 300:
        return build_success_result(endpoint, response.status, response.data, model, price_sats)
    return build_error_result(endpoint, response.status, response.data, response.headers, model)


def from_runtime_error(endpoint: str, error: BaseException, model: str | None = None) -> dict[str, Any]:
    if isinstance(error, AlbomRuntimeError):
        result = _envelope(False, error.status, endpoint, model)
        result["error"] = {"code": error.code, "message": error.message, **error.details}
        return result

    result = _envelope(False, 500, endpoint, model)
    result["error"] = {"code": "internal_error", "message": str(error) or type(error).__name__}
    return result


def summarize_result(result: dict[str, Any]) -> str:
    """One-line text rendering for the host's text content block."""
    if result["ok"]:
        summary = f"OK {result['status']} endpoint={result['endpoint']}"
        if result.get("model"):
            summary += f" model={result['model']}"
        if result.get("price_sats") is not None:
            summary += f" price_sats={result['price_sats']}"
        return summary

    error = result["error"]
    return (
        f"ERROR {result['status']} endpoint={result['endpoint']} "
        f"code={error['code']} message={error['message']}"
    )


def resolve_price_sats(endpoint: EndpointDescriptor) -> Callable[[str | None], float | None]:
    """Price lookup for *endpoint*: flat price, model, ``_default``, default model, first model."""

    def price_for(model: str | None = None) -> float | None:
        if endpoint.price_type is PriceType.FLAT:
            return endpoint.flat_price_sats

        prices = endpoint.model_prices
        if model and model in prices:
            return prices[model].price_sats
        if DEFAULT_MODEL_KEY in prices:
            return prices[DEFAULT_MODEL_KEY].price_sats
        if endpoint.default_model and endpoint.default_model in prices:
            return prices[endpoint.default_model].price_sats
        first = next(iter(prices.values()), None)
        return first.price_sats if first else None

    return price_for
