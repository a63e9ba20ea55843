"""nutchat - Cashu ecash payments and NIP-17 private messages.

Holds bearer tokens, pays Lightning addresses by melting them at their mint,
and chats with contacts over gift-wrapped Nostr events.
"""

from .ledger import Ledger
from .messages import Conversation, SendResult
from .payment import PaymentOrchestrator, PaymentResult
from .token import decode
from .types import Contact, ParsedToken, PaymentEventRow, ReactionRow, TokenMessageInfo

__all__ = [
    # Tokens and balance
    "decode",
    "ParsedToken",
    "Ledger",
    "TokenMessageInfo",
    # Payments
    "PaymentOrchestrator",
    "PaymentResult",
    "PaymentEventRow",
    # Messaging
    "Conversation",
    "SendResult",
    "ReactionRow",
    "Contact",
]
