"""Unit tests for token valuation."""

import base64
import json

import cbor2
import pytest

from nutchat.token import decode, decode_unit, extract_token
from utils import encode_v3, encode_v4


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def proof(amount, keyset="00ad268c4d1f5826"):
    return {"id": keyset, "amount": amount, "secret": f"s{amount}", "C": "02" + "ab" * 32}


MINT = "https://mint.example.com"


class TestDecodeV3:
    def test_single_mint(self):
        token = encode_v3(MINT, [proof(8), proof(2)])
        parsed = decode(token)
        assert parsed is not None
        assert parsed.amount == 10
        assert parsed.mint == MINT

    def test_surrounding_whitespace(self):
        token = encode_v3(MINT, [proof(4)])
        parsed = decode(f"  \n{token}\t ")
        assert parsed is not None
        assert parsed.amount == 4

    def test_multiple_mints_have_no_mint(self):
        payload = {
            "token": [
                {"mint": "https://a.example", "proofs": [proof(1)]},
                {"mint": "https://b.example", "proofs": [proof(2)]},
            ]
        }
        parsed = decode("cashuA" + b64url(json.dumps(payload).encode()))
        assert parsed is not None
        assert parsed.amount == 3
        assert parsed.mint is None

    def test_same_mint_in_two_entries(self):
        payload = {
            "token": [
                {"mint": MINT, "proofs": [proof(1)]},
                {"mint": MINT, "proofs": [proof(2)]},
            ]
        }
        parsed = decode("cashuA" + b64url(json.dumps(payload).encode()))
        assert parsed is not None
        assert parsed.mint == MINT

    def test_flat_proofs_form(self):
        payload = {"mint": MINT, "proofs": [proof(16), proof(4)]}
        parsed = decode("cashuA" + b64url(json.dumps(payload).encode()))
        assert parsed is not None
        assert parsed.amount == 20
        assert parsed.mint == MINT

    def test_non_integer_amounts_count_as_zero(self):
        payload = {
            "token": [
                {
                    "mint": MINT,
                    "proofs": [
                        {"amount": 4},
                        {"amount": "8"},
                        {"amount": 1.5},
                        {"amount": True},
                        {"amount": 2.0},
                    ],
                }
            ]
        }
        parsed = decode("cashuA" + b64url(json.dumps(payload).encode()))
        assert parsed is not None
        assert parsed.amount == 6

    def test_no_proofs_is_undecodable(self):
        payload = {"mint": MINT}
        assert decode("cashuA" + b64url(json.dumps(payload).encode())) is None

    def test_raw_json_object(self):
        raw = json.dumps({"token": [{"mint": MINT, "proofs": [proof(32)]}]})
        parsed = decode(raw)
        assert parsed is not None
        assert parsed.amount == 32


class TestDecodeV4:
    def test_cbor_token(self):
        token = encode_v4(MINT, [proof(8), proof(1), proof(1, keyset="009a1f293253e41e")])
        parsed = decode(token)
        assert parsed is not None
        assert parsed.amount == 10
        assert parsed.mint == MINT

    def test_cbor_without_mint(self):
        payload = {"u": "sat", "t": [{"i": b"\x00", "p": [{"a": 5, "s": "x", "c": b"\x02"}]}]}
        parsed = decode("cashuB" + b64url(cbor2.dumps(payload)))
        assert parsed is not None
        assert parsed.amount == 5
        assert parsed.mint is None

    def test_unit(self):
        token = encode_v4(MINT, [proof(1)], unit="usd")
        assert decode_unit(token) == "usd"


class TestUndecodable:
    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "   ",
            "hello",
            "cashuA",
            "cashuA!!!notbase64",
            "cashuA" + b64url(b"not json"),
            "cashuA" + b64url(b"[1, 2, 3]"),
            "cashuB" + b64url(b"\xff\xff"),
            "{not json",
        ],
    )
    def test_returns_none(self, raw):
        assert decode(raw) is None

    def test_unit_of_garbage(self):
        assert decode_unit("garbage") is None


def test_extract_token_from_text():
    token = encode_v3(MINT, [proof(1)])
    assert extract_token(f"here you go: {token} enjoy") == token
    assert extract_token("nothing here") is None
