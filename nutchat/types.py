"""Type definitions for the nutchat package."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, TypedDict


class WalletError(Exception):
    """Base class for wallet errors."""


class MintError(WalletError):
    """Raised when the melt/accept service rejects a request."""


class InvalidToken(WalletError):
    """Raised for input that is not a token at all."""


class RelayError(Exception):
    """Base exception for relay errors."""


class StoreError(Exception):
    """Raised when the persistence layer refuses a write."""


class LNURLError(Exception):
    """Base exception for LNURL errors."""

    kind = "ProtocolError"


class InvalidAddress(LNURLError):
    kind = "InvalidAddress"


class ProtocolError(LNURLError):
    kind = "ProtocolError"


class AmountOutOfRange(LNURLError):
    kind = "AmountOutOfRange"


class InvoiceMissing(LNURLError):
    kind = "InvoiceMissing"


TokenState = Literal["accepted", "error"]
Direction = Literal["in", "out"]


class TokenRow(TypedDict, total=False):
    """Persisted bearer token.

    ``amount`` is None when the token could not be valued; such rows count
    as zero towards the balance.
    """

    id: str
    token: str
    rawToken: str | None
    mint: str | None
    unit: str | None
    amount: int | None
    state: TokenState
    error: str | None
    isDeleted: bool
    createdAt: float


class MessageRow(TypedDict, total=False):
    """Persisted direct message. ``wrapId`` is unique per identity."""

    id: str
    contactId: str
    direction: Direction
    content: str
    wrapId: str
    rumorId: str | None
    clientId: str | None
    pubkey: str
    createdAtSec: int
    createdAt: float


class ReactionRow(TypedDict, total=False):
    """Emoji reaction to a stored message, keyed by the message's rumor id."""

    id: str
    contactId: str
    messageId: str
    reactorPubkey: str
    emoji: str
    wrapId: str
    rumorId: str | None
    clientId: str | None
    createdAtSec: int
    isDeleted: bool
    createdAt: float


class PaymentEventRow(TypedDict, total=False):
    """One entry of the payment history, in either direction."""

    id: str
    direction: Direction
    status: Literal["ok", "error"]
    amount: int | None
    fee: int | None
    mint: str | None
    unit: str | None
    error: str | None
    contactId: str | None
    createdAtSec: int
    createdAt: float


@dataclass
class Contact:
    """Someone the user can pay or message."""

    id: str
    name: str = ""
    ln_address: str | None = None
    npub: str | None = None


@dataclass
class ParsedToken:
    """Value extracted from a bearer token without contacting its mint."""

    amount: int
    mint: str | None


@dataclass
class MintGroup:
    """Spendable tokens held at one mint."""

    mint: str
    tokens: list[str]
    sum: int


@dataclass
class TokenMessageInfo:
    """A token found inside message text.

    ``is_new`` is False once the token is already in the wallet.
    """

    token: str
    amount: int | None
    mint: str | None
    mint_display: str | None
    is_new: bool


class EventKind:
    """Nostr event kinds used by the messaging layer."""

    Deletion = 5  # NIP-09 event deletion
    Reaction = 7  # NIP-25 reaction
    Seal = 13  # NIP-59 seal
    PrivateDirectMessage = 14  # NIP-17 chat message
    GiftWrap = 1059  # NIP-59 gift wrap

