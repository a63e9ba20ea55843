"""Unit tests for Lightning address resolution."""

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from unittest.mock import AsyncMock

from nutchat.lnurl import HttpFetcher, get_lnurlp_url, parse_lightning_address, resolve
from nutchat.types import AmountOutOfRange, InvalidAddress, InvoiceMissing, ProtocolError

METADATA_URL = "https://example.com/.well-known/lnurlp/alice"
CALLBACK = "https://example.com/lnurlp/alice/callback"


def make_fetch(metadata, invoice_response=None):
    """Fake fetch_json returning ``metadata`` then ``invoice_response``."""
    calls = []

    async def fetch(url):
        calls.append(url)
        if url == METADATA_URL:
            return metadata
        return invoice_response

    fetch.calls = calls
    return fetch


class TestLightningAddress:
    def test_parse(self):
        assert parse_lightning_address("alice@example.com") == ("alice", "example.com")

    @pytest.mark.parametrize("address", ["bob", "@example.com", "alice@", "a@b@c", ""])
    def test_invalid(self, address):
        with pytest.raises(InvalidAddress):
            parse_lightning_address(address)

    def test_well_known_url(self):
        assert get_lnurlp_url("alice@example.com") == METADATA_URL


class TestResolve:
    @pytest.mark.asyncio
    async def test_invalid_address_makes_no_request(self):
        fetch = AsyncMock()
        with pytest.raises(InvalidAddress) as exc:
            await resolve("bob", 10, fetch)
        assert exc.value.kind == "InvalidAddress"
        fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_returns_invoice(self):
        fetch = make_fetch(
            {"callback": CALLBACK, "minSendable": 1000, "maxSendable": 100_000_000},
            {"pr": "lnbc100n1invoice"},
        )
        invoice = await resolve("alice@example.com", 10, fetch)
        assert invoice == "lnbc100n1invoice"

        assert fetch.calls[0] == METADATA_URL
        query = parse_qs(urlsplit(fetch.calls[1]).query)
        assert query["amount"] == ["10000"]

    @pytest.mark.asyncio
    async def test_callback_query_is_preserved(self):
        fetch = make_fetch(
            {"callback": CALLBACK + "?k=v", "minSendable": 1000, "maxSendable": 10_000_000},
            {"pr": "lnbc1"},
        )
        await resolve("alice@example.com", 5, fetch)
        query = parse_qs(urlsplit(fetch.calls[1]).query)
        assert query == {"k": ["v"], "amount": ["5000"]}

    @pytest.mark.asyncio
    async def test_blank_callback_params_are_kept(self):
        fetch = make_fetch(
            {"callback": CALLBACK + "?k=&x=1", "minSendable": 1000, "maxSendable": 10_000_000},
            {"pr": "lnbc1"},
        )
        await resolve("alice@example.com", 5, fetch)
        query = parse_qs(urlsplit(fetch.calls[1]).query, keep_blank_values=True)
        assert query == {"k": [""], "x": ["1"], "amount": ["5000"]}

    @pytest.mark.asyncio
    async def test_payment_request_field(self):
        fetch = make_fetch(
            {"callback": CALLBACK, "minSendable": 1000, "maxSendable": 10_000_000},
            {"paymentRequest": "lnbc2"},
        )
        assert await resolve("alice@example.com", 1, fetch) == "lnbc2"

    @pytest.mark.asyncio
    async def test_comment_sent_when_allowed(self):
        fetch = make_fetch(
            {
                "callback": CALLBACK,
                "minSendable": 1000,
                "maxSendable": 10_000_000,
                "commentAllowed": 5,
            },
            {"pr": "lnbc1"},
        )
        await resolve("alice@example.com", 1, fetch, comment="thanks a lot")
        query = parse_qs(urlsplit(fetch.calls[1]).query)
        assert query["comment"] == ["thank"]

    @pytest.mark.asyncio
    async def test_comment_dropped_when_not_allowed(self):
        fetch = make_fetch(
            {"callback": CALLBACK, "minSendable": 1000, "maxSendable": 10_000_000},
            {"pr": "lnbc1"},
        )
        await resolve("alice@example.com", 1, fetch, comment="hi")
        assert "comment" not in parse_qs(urlsplit(fetch.calls[1]).query)

    @pytest.mark.asyncio
    async def test_error_status(self):
        fetch = make_fetch({"status": "ERROR", "reason": "no such user"})
        with pytest.raises(ProtocolError, match="no such user"):
            await resolve("alice@example.com", 10, fetch)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "metadata",
        [
            {"minSendable": 1000, "maxSendable": 2000},
            {"callback": "", "minSendable": 1000, "maxSendable": 2000},
            {"callback": CALLBACK, "maxSendable": 2000},
            {"callback": CALLBACK, "minSendable": "1000", "maxSendable": 2000},
            ["not", "an", "object"],
        ],
    )
    async def test_malformed_metadata(self, metadata):
        fetch = make_fetch(metadata)
        with pytest.raises(ProtocolError):
            await resolve("alice@example.com", 1, fetch)

    @pytest.mark.asyncio
    async def test_amount_out_of_range(self):
        fetch = make_fetch(
            {"callback": CALLBACK, "minSendable": 10_000, "maxSendable": 20_000},
        )
        with pytest.raises(AmountOutOfRange) as exc:
            await resolve("alice@example.com", 5, fetch)
        assert exc.value.kind == "AmountOutOfRange"
        assert len(fetch.calls) == 1

    @pytest.mark.asyncio
    async def test_range_is_inclusive(self):
        fetch = make_fetch(
            {"callback": CALLBACK, "minSendable": 10_000, "maxSendable": 20_000},
            {"pr": "lnbc1"},
        )
        assert await resolve("alice@example.com", 20, fetch) == "lnbc1"

    @pytest.mark.asyncio
    async def test_invoice_missing(self):
        fetch = make_fetch(
            {"callback": CALLBACK, "minSendable": 1000, "maxSendable": 10_000_000},
            {"pr": ""},
        )
        with pytest.raises(InvoiceMissing):
            await resolve("alice@example.com", 1, fetch)

    @pytest.mark.asyncio
    async def test_invoice_error_status(self):
        fetch = make_fetch(
            {"callback": CALLBACK, "minSendable": 1000, "maxSendable": 10_000_000},
            {"status": "ERROR"},
        )
        with pytest.raises(ProtocolError, match="LNURL invoice error"):
            await resolve("alice@example.com", 1, fetch)


class TestHttpFetcher:
    @pytest.mark.asyncio
    async def test_returns_json(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": 1}))
        fetcher = HttpFetcher(httpx.AsyncClient(transport=transport))
        try:
            assert await fetcher("https://example.com/x") == {"ok": 1}
        finally:
            await fetcher.aclose()

    @pytest.mark.asyncio
    async def test_http_error_is_protocol_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404, text="nope"))
        fetcher = HttpFetcher(httpx.AsyncClient(transport=transport))
        try:
            with pytest.raises(ProtocolError):
                await fetcher("https://example.com/x")
        finally:
            await fetcher.aclose()

    @pytest.mark.asyncio
    async def test_resolve_through_http(self):
        def handler(request):
            if request.url.path == "/.well-known/lnurlp/alice":
                return httpx.Response(
                    200,
                    json={"callback": CALLBACK, "minSendable": 1000, "maxSendable": 10_000_000},
                )
            return httpx.Response(200, json={"pr": "lnbc-from-http"})

        fetcher = HttpFetcher(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        try:
            assert await resolve("alice@example.com", 3, fetcher) == "lnbc-from-http"
        finally:
            await fetcher.aclose()
