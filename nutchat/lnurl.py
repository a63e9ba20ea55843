"""LNURL-pay resolution for Lightning addresses."""

from __future__ import annotations

import logging
import math
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import httpx

from .types import (
    AmountOutOfRange,
    InvalidAddress,
    InvoiceMissing,
    LNURLError,
    ProtocolError,
)

logger = logging.getLogger(__name__)

FetchJson = Callable[[str], Awaitable[Any]]


class HttpFetcher:
    """JSON-over-HTTP fetcher backed by a shared ``httpx.AsyncClient``."""

    def __init__(
        self, client: httpx.AsyncClient | None = None, *, timeout: float = 15.0
    ) -> None:
        self.client = client or httpx.AsyncClient(
            timeout=timeout, follow_redirects=True
        )

    async def __call__(self, url: str) -> Any:
        try:
            response = await self.client.get(url)
        except httpx.HTTPError as e:
            raise ProtocolError(f"Request to {url} failed: {e}") from e

        if not response.is_success:
            raise ProtocolError(f"{url} returned {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"{url} returned malformed JSON") from e

    async def aclose(self) -> None:
        await self.client.aclose()


def parse_lightning_address(address: str) -> tuple[str, str]:
    """Split ``user@domain`` into its parts.

    Raises:
        InvalidAddress: Unless there is exactly one ``@`` with text on both sides
    """
    raw = (address or "").strip()
    user, sep, domain = raw.partition("@")
    if not sep or not user or not domain or "@" in domain:
        raise InvalidAddress(f"Invalid lightning address: {address!r}")
    return user, domain


def get_lnurlp_url(address: str) -> str:
    """Well-known LNURL-pay endpoint for a Lightning address."""
    user, domain = parse_lightning_address(address)
    return f"https://{domain}/.well-known/lnurlp/{quote(user, safe='')}"


def _with_query(url: str, **params: str) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def _raise_for_error_status(data: dict[str, Any], default: str) -> None:
    if str(data.get("status") or "").upper() == "ERROR":
        reason = data.get("reason")
        raise ProtocolError(reason if isinstance(reason, str) and reason else default)


def _as_finite(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


async def _fetch(fetch_json: FetchJson, url: str) -> dict[str, Any]:
    try:
        data = await fetch_json(url)
    except LNURLError:
        raise
    except (httpx.HTTPError, ValueError) as e:
        raise ProtocolError(f"Request to {url} failed: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Invalid LNURL response")
    return data


async def get_lnurl_data(address: str, fetch_json: FetchJson) -> dict[str, Any]:
    """Fetch and validate the LNURL-pay metadata for a Lightning address.

    Returns:
        The metadata with ``callback``, ``minSendable`` and ``maxSendable``
        guaranteed present (the latter two as floats, in millisats).
    """
    url = get_lnurlp_url(address)
    data = await _fetch(fetch_json, url)
    _raise_for_error_status(data, "LNURL error")

    callback = data.get("callback")
    if not isinstance(callback, str) or not callback.strip():
        raise ProtocolError("LNURL callback missing")

    min_sendable = _as_finite(data.get("minSendable"))
    max_sendable = _as_finite(data.get("maxSendable"))
    if min_sendable is None or max_sendable is None:
        raise ProtocolError("LNURL min/max missing")

    return {
        **data,
        "callback": callback.strip(),
        "minSendable": min_sendable,
        "maxSendable": max_sendable,
    }


async def get_lnurl_invoice(
    lnurl_data: dict[str, Any],
    amount_msat: int,
    fetch_json: FetchJson,
    *,
    comment: str | None = None,
) -> str:
    """Request a BOLT-11 invoice from an LNURL-pay callback."""
    params = {"amount": str(amount_msat)}

    comment_allowed = _as_finite(lnurl_data.get("commentAllowed")) or 0
    comment = (comment or "").strip()
    if comment and comment_allowed > 0:
        params["comment"] = comment[: int(comment_allowed)]

    data = await _fetch(fetch_json, _with_query(lnurl_data["callback"], **params))
    _raise_for_error_status(data, "LNURL invoice error")

    for field in ("pr", "paymentRequest"):
        value = data.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise InvoiceMissing("Invoice missing")


async def resolve(
    address: str,
    amount_sat: int | float,
    fetch_json: FetchJson,
    *,
    comment: str | None = None,
) -> str:
    """Resolve a Lightning address to an invoice for ``amount_sat``.

    Args:
        address: Lightning address (``user@domain``)
        amount_sat: Amount to pay in satoshis
        fetch_json: Coroutine returning the parsed JSON body of a URL
        comment: Optional payer comment, sent only if the service allows one

    Raises:
        InvalidAddress: Malformed address (no request is made)
        ProtocolError: ERROR status, malformed response or failed request
        AmountOutOfRange: Amount outside the service's sendable range
        InvoiceMissing: Callback response carries no invoice
    """
    parse_lightning_address(address)

    lnurl_data = await get_lnurl_data(address, fetch_json)

    amount_msat = round(amount_sat * 1000)
    if not lnurl_data["minSendable"] <= amount_msat <= lnurl_data["maxSendable"]:
        raise AmountOutOfRange(
            f"Amount {amount_sat} sat outside LNURL range "
            f"{lnurl_data['minSendable'] / 1000:g}-{lnurl_data['maxSendable'] / 1000:g} sat"
        )

    invoice = await get_lnurl_invoice(
        lnurl_data, amount_msat, fetch_json, comment=comment
    )
    logger.debug("Resolved %s for %s sat", address, amount_sat)
    return invoice
