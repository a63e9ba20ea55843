"""Token builders shared by the unit tests."""

import base64
import json
from typing import Any

import cbor2


def encode_v3(
    mint_url: str,
    proofs: list[dict[str, Any]],
    unit: str = "sat",
    memo: str | None = None,
) -> str:
    """Serialize proofs into CashuA (V3) token format."""
    token_proofs = [
        {
            "id": proof["id"],
            "amount": proof["amount"],
            "secret": proof["secret"],
            "C": proof["C"],
        }
        for proof in proofs
    ]

    token_data: dict[str, Any] = {
        "token": [{"mint": mint_url, "proofs": token_proofs}],
        "unit": unit,
    }
    if memo:
        token_data["memo"] = memo
    json_str = json.dumps(token_data, separators=(",", ":"))
    encoded = base64.urlsafe_b64encode(json_str.encode()).decode().rstrip("=")
    return f"cashuA{encoded}"


def encode_v4(
    mint_url: str,
    proofs: list[dict[str, Any]],
    unit: str = "sat",
    memo: str | None = None,
) -> str:
    """Serialize proofs into CashuB (V4) token format using CBOR."""
    # V4 groups proofs by keyset id
    proofs_by_keyset: dict[str, list[dict[str, Any]]] = {}
    for proof in proofs:
        proofs_by_keyset.setdefault(proof["id"], []).append(proof)

    tokens = []
    for keyset_id, keyset_proofs in proofs_by_keyset.items():
        tokens.append(
            {
                "i": bytes.fromhex(keyset_id),
                "p": [
                    {
                        "a": proof["amount"],
                        "s": proof["secret"],
                        "c": bytes.fromhex(proof["C"]),
                    }
                    for proof in keyset_proofs
                ],
            }
        )

    token_data: dict[str, Any] = {"m": mint_url, "u": unit, "t": tokens}
    if memo:
        token_data["d"] = memo

    encoded = base64.urlsafe_b64encode(cbor2.dumps(token_data)).decode().rstrip("=")
    return f"cashuB{encoded}"
