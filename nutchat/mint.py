"""
Melt / accept collaborator.

Blinded-signature cryptography is not done here. Tokens are redeemed by an
external Cashu wallet service; this module defines the interface the core
depends on and an HTTP client for such a service.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Protocol, TypedDict, cast

import httpx

from .types import MintError

logger = logging.getLogger(__name__)

WALLET_SERVICE_ENV_VAR = "CASHU_WALLET_SERVICE"


class MeltRequest(TypedDict):
    invoice: str
    mint: str
    tokens: list[str]
    unit: str


class MeltResult(TypedDict, total=False):
    """Outcome of a successful melt.

    ``remainingToken`` holds whatever value the mint handed back (unspent
    inputs plus fee change) and is None when nothing was left over.
    """

    mint: str
    unit: str | None
    remainingToken: str | None
    remainingAmount: int
    paidAmount: int
    feePaid: int


class AcceptResult(TypedDict):
    """A received token after it was swapped for fresh proofs."""

    token: str
    mint: str
    unit: str | None
    amount: int


class MeltClient(Protocol):
    async def melt(self, request: MeltRequest) -> MeltResult: ...


class TokenAcceptor(Protocol):
    async def accept(self, token: str) -> AcceptResult: ...


class WalletService(MeltClient, TokenAcceptor, Protocol):
    pass


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


class RemoteWalletService:
    """HTTP client for an external Cashu wallet service.

    The service exposes ``POST /v1/melt`` and ``POST /v1/accept`` and answers
    with JSON. Errors are reported as ``{"detail": "..."}`` with a non-2xx
    status.
    """

    def __init__(self, url: str, *, client: httpx.AsyncClient | None = None) -> None:
        # Normalize URL by removing trailing slashes
        self.url = url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=120.0)

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def _request(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        logger.debug("POST %s%s", self.url, path)
        try:
            response = await self.client.post(f"{self.url}{path}", json=body)
        except httpx.HTTPError as e:
            raise MintError(f"Wallet service unreachable: {e}") from e

        if response.status_code >= 400:
            raise MintError(self._error_detail(response))

        try:
            data = response.json()
        except ValueError as e:
            raise MintError("Wallet service returned malformed JSON") from e
        if not isinstance(data, dict):
            raise MintError("Wallet service returned an unexpected response")
        return data

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            for key in ("detail", "error", "reason"):
                if isinstance(data.get(key), str) and data[key]:
                    return data[key]
        return f"Wallet service returned {response.status_code}: {response.text}"

    async def melt(self, request: MeltRequest) -> MeltResult:
        """Pay ``request["invoice"]`` with the given tokens of one mint."""
        data = await self._request("/v1/melt", cast(dict[str, Any], request))
        remaining = data.get("remainingToken")
        return MeltResult(
            mint=str(data.get("mint") or request["mint"]),
            unit=data.get("unit") or request["unit"],
            remainingToken=remaining if isinstance(remaining, str) and remaining else None,
            remainingAmount=_as_int(data.get("remainingAmount")),
            paidAmount=_as_int(data.get("paidAmount")),
            feePaid=_as_int(data.get("feePaid")),
        )

    async def accept(self, token: str) -> AcceptResult:
        """Swap a received token for fresh proofs at its mint."""
        data = await self._request("/v1/accept", {"token": token})
        accepted = data.get("token")
        mint = data.get("mint")
        if not isinstance(accepted, str) or not accepted:
            raise MintError("Wallet service returned no token")
        if not isinstance(mint, str) or not mint:
            raise MintError("Token mint missing")
        return AcceptResult(
            token=accepted,
            mint=mint.rstrip("/"),
            unit=data.get("unit"),
            amount=_as_int(data.get("amount")),
        )


def get_wallet_service_from_env() -> str | None:
    """Wallet service base URL from ``CASHU_WALLET_SERVICE``, if set."""
    value = os.getenv(WALLET_SERVICE_ENV_VAR, "").strip().strip("\"'")
    return value or None

