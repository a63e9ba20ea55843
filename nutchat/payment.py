"""Pay a contact's Lightning address from the token ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from .ledger import Ledger
from .lnurl import FetchJson, resolve
from .mint import MeltClient, MeltRequest
from .types import Contact, LNURLError, MintGroup, StoreError

logger = logging.getLogger(__name__)

PaymentState = Literal[
    "idle", "resolving_invoice", "selecting_mint", "melting", "succeeded", "failed"
]

PaymentErrorKind = Literal[
    "InvalidAmount",
    "MissingAddress",
    "Insufficient",
    "Busy",
    "InvalidAddress",
    "ProtocolError",
    "AmountOutOfRange",
    "InvoiceMissing",
    "MeltFailed",
    "LedgerUpdateFailed",
]


@dataclass
class PaymentResult:
    """Terminal outcome of one payment attempt."""

    ok: bool
    amount: int = 0
    error_kind: PaymentErrorKind | None = None
    error: str | None = None
    invoice: str | None = None
    mint: str | None = None
    paid_amount: int = 0
    fee_paid: int = 0
    change_amount: int = 0
    change_token: str | None = None

    @classmethod
    def failure(
        cls, kind: PaymentErrorKind, message: str, **kwargs: object
    ) -> "PaymentResult":
        return cls(ok=False, error_kind=kind, error=message, **kwargs)  # type: ignore[arg-type]


def parse_amount(value: str | int) -> int | None:
    """Positive integer amount, or None if ``value`` is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    text = str(value or "").strip()
    if not (text.isascii() and text.isdigit()):
        return None
    amount = int(text)
    return amount if amount > 0 else None


def build_mint_candidates(
    groups: list[MintGroup], amount: int, preferred_mint: str | None = None
) -> list[MintGroup]:
    """Mints able to cover ``amount`` alone, in the order they should be tried.

    Largest holding first. A preferred mint is kept for last so other
    balances are drained before it.
    """
    preferred = (preferred_mint or "").strip().rstrip("/")
    candidates = [g for g in groups if g.sum >= amount]
    candidates.sort(key=lambda g: g.sum, reverse=True)
    if preferred:
        candidates.sort(key=lambda g: g.mint.rstrip("/") == preferred)
    return candidates


class PaymentOrchestrator:
    """Runs one payment at a time against a ledger.

    Each attempt goes idle -> resolving_invoice -> selecting_mint -> melting
    and ends succeeded or failed. Nothing is retried; a new attempt needs a
    new call.
    """

    def __init__(
        self,
        ledger: Ledger,
        melter: MeltClient,
        fetch_json: FetchJson,
        *,
        unit: str = "sat",
        preferred_mint: str | None = None,
    ) -> None:
        self.ledger = ledger
        self.melter = melter
        self.fetch_json = fetch_json
        self.unit = unit
        self.preferred_mint = preferred_mint
        self.state: PaymentState = "idle"
        self._in_flight = False

    @property
    def busy(self) -> bool:
        return self._in_flight

    async def pay(
        self, contact: Contact, amount: str | int, *, comment: str | None = None
    ) -> PaymentResult:
        """Pay ``amount`` sats to the contact's Lightning address.

        Exactly one mint's tokens are spent on success. Failures are returned,
        not raised.
        """
        if self._in_flight:
            return PaymentResult.failure("Busy", "A payment is already in progress")

        amount_sat = parse_amount(amount)
        if amount_sat is None:
            return PaymentResult.failure("InvalidAmount", f"Invalid amount: {amount!r}")

        address = (contact.ln_address or "").strip()
        if not address:
            return PaymentResult.failure(
                "MissingAddress", f"{contact.name or contact.id} has no lightning address"
            )

        balance = self.ledger.balance()
        if amount_sat > balance:
            return PaymentResult.failure(
                "Insufficient",
                f"Insufficient balance: need {amount_sat}, have {balance}",
                amount=amount_sat,
            )

        self._in_flight = True
        try:
            result = await self._run(address, amount_sat, comment)
        finally:
            self._in_flight = False

        self.state = "succeeded" if result.ok else "failed"
        self.ledger.log_payment_event(
            "out",
            "ok" if result.ok else "error",
            amount=result.paid_amount or result.amount,
            fee=result.fee_paid,
            mint=result.mint,
            unit=self.unit,
            error=result.error,
            contact_id=contact.id,
        )
        if result.ok:
            logger.info(
                "Paid %d sat to %s via %s (change %d)",
                amount_sat,
                address,
                result.mint,
                result.change_amount,
            )
        else:
            logger.warning("Payment to %s failed: %s", address, result.error)
        return result

    async def _run(
        self, address: str, amount_sat: int, comment: str | None
    ) -> PaymentResult:
        self.state = "resolving_invoice"
        try:
            invoice = await resolve(address, amount_sat, self.fetch_json, comment=comment)
        except LNURLError as e:
            return PaymentResult.failure(e.kind, str(e), amount=amount_sat)  # type: ignore[arg-type]

        self.state = "selecting_mint"
        candidates = build_mint_candidates(
            self.ledger.spendable_groups_by_mint(min_sum=amount_sat),
            amount_sat,
            self.preferred_mint,
        )
        if not candidates:
            return PaymentResult.failure(
                "Insufficient",
                f"No single mint holds {amount_sat} sat",
                amount=amount_sat,
                invoice=invoice,
            )

        self.state = "melting"
        last_error = "Payment failed"
        for candidate in candidates:
            logger.debug("Melting %d sat at %s", candidate.sum, candidate.mint)
            try:
                melted = await self.melter.melt(
                    MeltRequest(
                        invoice=invoice,
                        mint=candidate.mint,
                        tokens=list(candidate.tokens),
                        unit=self.unit,
                    )
                )
            except Exception as e:
                # Only the last mint's error is reported
                last_error = str(e) or e.__class__.__name__
                logger.warning("Melt at %s failed: %s", candidate.mint, last_error)
                continue

            change_token = melted.get("remainingToken") or None
            change_amount = melted.get("remainingAmount") or 0
            paid = {
                "amount": amount_sat,
                "invoice": invoice,
                "mint": candidate.mint,
                "paid_amount": melted.get("paidAmount") or amount_sat,
                "fee_paid": melted.get("feePaid") or 0,
                "change_amount": change_amount if change_token else 0,
                "change_token": change_token,
            }
            try:
                self.ledger.record_spend(candidate.mint, change_token, change_amount)
            except StoreError as e:
                # The invoice is paid; keep the change token so it can be re-imported
                logger.error(
                    "Paid at %s but could not update the ledger: %s", candidate.mint, e
                )
                return PaymentResult.failure(
                    "LedgerUpdateFailed",
                    f"Payment sent but the ledger could not be updated: {e}",
                    **paid,
                )
            return PaymentResult(ok=True, **paid)  # type: ignore[arg-type]

        return PaymentResult.failure(
            "MeltFailed", last_error, amount=amount_sat, invoice=invoice
        )
