"""Cashu token codec.

Values bearer tokens without contacting their mint. Three wire shapes are
understood:

* ``cashuA<base64url(json)>`` (V3)
* ``cashuB<base64url(cbor)>`` (V4)
* a raw JSON object

Decoding never raises: a token that cannot be valued yields ``None``. That
means "could not value this token", not "this token is worthless".
"""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
from typing import Any

import cbor2

from .types import ParsedToken

TOKEN_PREFIX = "cashu"
_TOKEN_RE = re.compile(r"cashu[AB][A-Za-z0-9_\-+/=]+")


def _b64url_to_bytes(payload: str) -> bytes | None:
    normalized = payload.replace("-", "+").replace("_", "/")
    normalized += "=" * ((-len(normalized)) % 4)
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError):
        return None


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def _load_cbor(data: bytes) -> Any:
    try:
        return cbor2.loads(data)
    except (cbor2.CBORDecodeError, ValueError, EOFError, TypeError):
        return None


def _as_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _as_amount(value: Any) -> int:
    """Integer amount of a proof, 0 for anything that is not a finite integer."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return 0


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _sum_proofs(proofs: list[Any], key: str) -> int:
    return sum(_as_amount(p.get(key)) for p in proofs if isinstance(p, dict))


def _decode_payload(raw: str) -> tuple[str, Any] | None:
    """Return ``(shape, payload)`` where shape is ``"json"`` or ``"cbor"``."""
    if raw.startswith(TOKEN_PREFIX) and len(raw) > len(TOKEN_PREFIX) + 1:
        variant = raw[len(TOKEN_PREFIX)]
        data = _b64url_to_bytes(raw[len(TOKEN_PREFIX) + 1 :])
        if data is None:
            return None
        if variant == "B":
            return "cbor", _load_cbor(data)
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return None
        return "json", _load_json(text)
    if raw.startswith("{"):
        return "json", _load_json(raw)
    return None


def _value_cbor(token: dict[Any, Any]) -> ParsedToken:
    # {m: <mint>, u: <unit>, t: [{i: <keyset>, p: [{a: <amount>, ...}]}]}
    total = 0
    for entry in _as_list(token.get("t")):
        if isinstance(entry, dict):
            total += _sum_proofs(_as_list(entry.get("p")), "a")
    return ParsedToken(amount=total, mint=_as_str(token.get("m")))


def _value_json(token: dict[str, Any]) -> ParsedToken | None:
    mints: set[str] = set()
    total = 0

    entries = _as_list(token.get("token"))
    if entries:
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            mint = _as_str(entry.get("mint"))
            if mint:
                mints.add(mint)
            total += _sum_proofs(_as_list(entry.get("proofs")), "amount")
    elif isinstance(token.get("proofs"), list):
        mint = _as_str(token.get("mint"))
        if mint:
            mints.add(mint)
        total += _sum_proofs(token["proofs"], "amount")
    else:
        return None

    return ParsedToken(amount=total, mint=mints.pop() if len(mints) == 1 else None)


def decode(raw_text: str) -> ParsedToken | None:
    """Value a token blob.

    Args:
        raw_text: Token as pasted by the user (surrounding whitespace allowed)

    Returns:
        ParsedToken with the summed proof amount and the single issuing mint
        (None when the token spans several mints), or None if the blob
        cannot be decoded.
    """
    raw = (raw_text or "").strip()
    if not raw:
        return None

    decoded = _decode_payload(raw)
    if decoded is None:
        return None
    shape, payload = decoded
    if not isinstance(payload, dict):
        return None

    if shape == "cbor":
        return _value_cbor(payload)
    return _value_json(payload)


def decode_unit(raw_text: str) -> str | None:
    """Currency unit carried by a token, if it declares one."""
    decoded = _decode_payload((raw_text or "").strip())
    if decoded is None or not isinstance(decoded[1], dict):
        return None
    shape, payload = decoded
    return _as_str(payload.get("u" if shape == "cbor" else "unit"))


def extract_token(text: str) -> str | None:
    """Find the first ``cashuA``/``cashuB`` blob inside free text."""
    match = _TOKEN_RE.search(text or "")
    return match.group(0) if match else None

