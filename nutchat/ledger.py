"""Token ledger: the wallet's view over persisted token rows."""

from __future__ import annotations

import logging
import time
from typing import Literal, cast
from urllib.parse import urlsplit

from .mint import TokenAcceptor
from .store import PAYMENTS_TABLE, TOKENS_TABLE, Store
from .token import decode, decode_unit, extract_token
from .types import (
    Direction,
    InvalidToken,
    MintGroup,
    PaymentEventRow,
    StoreError,
    TokenMessageInfo,
    TokenRow,
    WalletError,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000
PAYMENT_HISTORY_LIMIT = 250


def _is_live(row: TokenRow) -> bool:
    return row.get("state") == "accepted" and not row.get("isDeleted")


def _mint_display(mint: str | None) -> str | None:
    if not mint:
        return None
    return urlsplit(mint).hostname or mint


class Ledger:
    """Balance and mint grouping over the token table.

    Nothing is cached: every read goes back to the store, so the balance
    always reflects the current row set.
    """

    def __init__(self, store: Store, acceptor: TokenAcceptor | None = None) -> None:
        self.store = store
        self.acceptor = acceptor

    # ───────────────────────────── Reads ─────────────────────────────────

    def tokens(self, *, include_deleted: bool = False) -> list[TokenRow]:
        """Token rows ordered by creation time."""
        rows = self.store.query(
            TOKENS_TABLE,
            None if include_deleted else (lambda row: not row.get("isDeleted")),
        )
        return cast(list[TokenRow], rows)

    def balance(self) -> int:
        """Sum of accepted, non-deleted token amounts (unvalued tokens count 0)."""
        rows = cast(list[TokenRow], self.store.query(TOKENS_TABLE, _is_live))
        return sum(row.get("amount") or 0 for row in rows)

    def balance_by_mint(self) -> dict[str, int]:
        return {group.mint: group.sum for group in self.spendable_groups_by_mint()}

    def spendable_groups_by_mint(self, min_sum: int = 0) -> list[MintGroup]:
        """Group spendable tokens by mint, largest holding first.

        Args:
            min_sum: Drop mints whose total is below this amount

        Returns:
            One MintGroup per mint with ``sum >= min_sum``, sorted by sum descending
        """
        groups: dict[str, MintGroup] = {}
        for row in cast(list[TokenRow], self.store.query(TOKENS_TABLE, _is_live)):
            mint = (row.get("mint") or "").strip()
            token = (row.get("token") or "").strip()
            if not mint or not token:
                continue
            group = groups.setdefault(mint, MintGroup(mint=mint, tokens=[], sum=0))
            group.tokens.append(token)
            group.sum += row.get("amount") or 0

        return sorted(
            (g for g in groups.values() if g.sum >= min_sum),
            key=lambda g: g.sum,
            reverse=True,
        )

    def find_stored(self, token_text: str) -> TokenRow | None:
        """Non-deleted row holding this exact token (as pasted or canonical)."""
        text = token_text.strip()
        for row in self.tokens():
            if text and text in (row.get("rawToken"), row.get("token")):
                return row
        return None

    def token_message_info(self, text: str) -> TokenMessageInfo | None:
        """Describe the first token carried by a chat message, if any."""
        token = extract_token(text)
        if token is None:
            return None
        parsed = decode(token)
        if parsed is None:
            return None
        return TokenMessageInfo(
            token=token,
            amount=parsed.amount if parsed.amount > 0 else None,
            mint=parsed.mint,
            mint_display=_mint_display(parsed.mint),
            is_new=self.find_stored(token) is None,
        )

    def payment_events(self, limit: int = PAYMENT_HISTORY_LIMIT) -> list[PaymentEventRow]:
        """Payment history, newest first."""
        rows = self.store.query(PAYMENTS_TABLE)
        return cast(list[PaymentEventRow], rows[::-1][:limit])

    # ───────────────────────────── Writes ────────────────────────────────

    def log_payment_event(
        self,
        direction: Direction,
        status: Literal["ok", "error"],
        *,
        amount: int | None = None,
        fee: int | None = None,
        mint: str | None = None,
        unit: str | None = None,
        error: str | None = None,
        contact_id: str | None = None,
    ) -> PaymentEventRow | None:
        """Append to the payment history. A failed write is logged, not raised."""
        row = PaymentEventRow(
            direction=direction,
            status=status,
            amount=amount if amount and amount > 0 else None,
            fee=fee if fee and fee > 0 else None,
            mint=(mint or "").strip() or None,
            unit=(unit or "").strip() or None,
            error=(error or "").strip()[:MAX_ERROR_LENGTH] or None,
            contactId=contact_id,
            createdAtSec=int(time.time()),
        )
        result = self.store.insert(PAYMENTS_TABLE, dict(row))
        if not result.get("ok"):
            logger.warning("Could not record payment event: %s", result.get("error"))
            return None
        row["id"] = result["id"]
        return row

    def _insert(self, row: TokenRow) -> TokenRow:
        result = self.store.insert(TOKENS_TABLE, dict(row))
        if not result.get("ok"):
            raise StoreError(result.get("error") or "Token insert failed")
        row["id"] = result["id"]
        return row

    def _soft_delete(self, row_id: str) -> None:
        result = self.store.update(TOKENS_TABLE, {"id": row_id, "isDeleted": True})
        if not result.get("ok"):
            raise StoreError(result.get("error") or f"Could not delete token {row_id}")

    def record_spend(
        self, mint: str, change_token: str | None, change_amount: int
    ) -> TokenRow | None:
        """Mark a whole mint group as spent and store the change.

        Every accepted row of ``mint`` is soft-deleted. A single change row is
        inserted when the melt returned a non-empty token with positive value.

        Returns:
            The inserted change row, if any
        """
        spent = [
            row
            for row in cast(list[TokenRow], self.store.query(TOKENS_TABLE, _is_live))
            if (row.get("mint") or "").strip() == mint
        ]
        for row in spent:
            self._soft_delete(row["id"])
        logger.info("Marked %d token(s) from %s as spent", len(spent), mint)

        change_token = (change_token or "").strip()
        if not change_token or change_amount <= 0:
            return None

        change = self._insert(
            TokenRow(
                token=change_token,
                mint=mint,
                unit=decode_unit(change_token) or "sat",
                amount=change_amount,
                state="accepted",
                isDeleted=False,
            )
        )
        logger.info("Stored %d sat change from %s", change_amount, mint)
        return change

    def remove_token(self, row_id: str) -> None:
        """Explicitly discard a single token row."""
        self._soft_delete(row_id)

    async def accept_token(self, raw_text: str) -> TokenRow:
        """Redeem a received token and persist the outcome.

        A token that the mint refuses is still stored, in ``error`` state, with
        whatever could be decoded locally, so the user can see why it failed.

        Raises:
            InvalidToken: Empty input
            WalletError: No acceptor configured
        """
        raw = (raw_text or "").strip()
        if not raw:
            raise InvalidToken("Empty token")
        if self.acceptor is None:
            raise WalletError("No token acceptor configured")

        existing = self.find_stored(raw)
        if existing is not None:
            logger.debug("Token already stored as %s", existing.get("id"))
            return existing

        parsed = decode(raw)
        parsed_mint = parsed.mint if parsed else None
        parsed_amount = parsed.amount if parsed and parsed.amount > 0 else None

        try:
            accepted = await self.acceptor.accept(raw)
        except Exception as e:
            message = str(e).strip() or e.__class__.__name__
            logger.warning("Token accept failed: %s", message)
            self.log_payment_event(
                "in",
                "error",
                amount=parsed_amount,
                mint=parsed_mint,
                unit=decode_unit(raw),
                error=message,
            )
            return self._insert(
                TokenRow(
                    token=raw,
                    rawToken=raw,
                    mint=parsed_mint,
                    unit=decode_unit(raw),
                    amount=parsed_amount,
                    state="error",
                    error=message[:MAX_ERROR_LENGTH],
                    isDeleted=False,
                )
            )

        amount = accepted.get("amount") or parsed_amount
        row = self._insert(
            TokenRow(
                token=accepted["token"],
                rawToken=raw,
                mint=accepted.get("mint") or parsed_mint,
                unit=accepted.get("unit") or decode_unit(raw),
                amount=amount if amount and amount > 0 else None,
                state="accepted",
                isDeleted=False,
            )
        )
        logger.info("Accepted %s sat from %s", row.get("amount"), row.get("mint"))
        self.log_payment_event(
            "in",
            "ok",
            amount=row.get("amount"),
            mint=row.get("mint"),
            unit=row.get("unit"),
        )
        return row
