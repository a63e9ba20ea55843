"""Private direct messages (NIP-17) over gift-wrapped relay events.

A :class:`Conversation` keeps one contact's thread in sync. Envelopes can
arrive from history queries and the live subscription, from several relays,
in any order and more than once; each envelope id is processed at most once.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, cast
from uuid import uuid4

from coincurve import PrivateKey

from .crypto import create_rumor, get_pubkey, normalize_pubkey, unwrap_event, wrap_event
from .relay import NostrEvent, NostrFilter, RelayPoolProtocol, SubscriptionHandle
from .store import MESSAGES_TABLE, REACTIONS_TABLE, Store
from .types import Contact, Direction, EventKind, MessageRow, ReactionRow

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50
HISTORY_MAX_WAIT = 5.0

ConversationState = Literal["idle", "subscription_active"]


@dataclass
class SendResult:
    ok: bool
    wrap_id: str | None = None
    published_to: list[str] = field(default_factory=list)
    error: str | None = None


def _tag_values(tags: Any, name: str) -> list[str]:
    if not isinstance(tags, list):
        return []
    values = (
        str(tag[1]).strip()
        for tag in tags
        if isinstance(tag, list) and len(tag) >= 2 and tag[0] == name
    )
    return [value for value in values if value]


def _first_tag(tags: Any, name: str) -> str | None:
    values = _tag_values(tags, name)
    return values[0] if values else None


def _client_tag(tags: Any) -> str | None:
    return _first_tag(tags, "client")


def _created_at_sec(value: Any) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if math.isfinite(value) and value > 0:
            return int(value)
    return math.ceil(time.time())


class Conversation:
    """Encrypted chat with one contact.

    The seen-set of envelope ids belongs to this instance and lives as long
    as it does. It is seeded from stored rows on :meth:`open`.
    """

    def __init__(
        self,
        privkey: PrivateKey,
        contact: Contact,
        pool: RelayPoolProtocol,
        store: Store,
        relays: list[str],
        *,
        on_message: Callable[[MessageRow], None] | None = None,
        on_reaction: Callable[[ReactionRow], None] | None = None,
    ) -> None:
        if not contact.npub:
            raise ValueError(f"Contact {contact.id} has no nostr public key")
        self._privkey = privkey
        self.pubkey = get_pubkey(privkey)
        self.contact = contact
        self.contact_pubkey = normalize_pubkey(contact.npub)
        self.pool = pool
        self.store = store
        self.relays = list(relays)
        self.on_message = on_message
        self.on_reaction = on_reaction

        self.state: ConversationState = "idle"
        self.seen_wrap_ids: set[str] = set()
        self._subscription: SubscriptionHandle | None = None
        self._cancelled = False
        self._opening = False

    # ─────────────────────────────── Reads ────────────────────────────────────

    def messages(self) -> list[MessageRow]:
        """Stored messages of this conversation, oldest first."""
        rows = self.store.query(
            MESSAGES_TABLE,
            lambda row: row.get("contactId") == self.contact.id,
            order_by="createdAtSec",
        )
        return cast(list[MessageRow], rows)

    def reactions(self, *, include_deleted: bool = False) -> list[ReactionRow]:
        """Reactions to this conversation's messages, oldest first."""
        rows = self.store.query(
            REACTIONS_TABLE,
            lambda row: row.get("contactId") == self.contact.id
            and (include_deleted or not row.get("isDeleted")),
            order_by="createdAtSec",
        )
        return cast(list[ReactionRow], rows)

    @property
    def inbox_filter(self) -> NostrFilter:
        return cast(
            NostrFilter, {"kinds": [EventKind.GiftWrap], "#p": [self.pubkey]}
        )

    # ───────────────────────────── Lifecycle ──────────────────────────────────

    async def open(self) -> SubscriptionHandle | None:
        """Replay history then follow the live inbox.

        Relay failures yield no events rather than an error. Calling this
        again while opening or open is a no-op.
        """
        if self._opening or self.state == "subscription_active":
            return self._subscription
        self._opening = True
        self._cancelled = False
        try:
            return await self._open()
        finally:
            self._opening = False

    async def _open(self) -> SubscriptionHandle | None:
        for row in [*self.messages(), *self.reactions(include_deleted=True)]:
            if row.get("wrapId"):
                self.seen_wrap_ids.add(row["wrapId"])

        history_filter = cast(NostrFilter, {**self.inbox_filter, "limit": HISTORY_LIMIT})
        try:
            history = await self.pool.query_sync(
                self.relays, history_filter, max_wait=HISTORY_MAX_WAIT
            )
        except Exception as e:
            logger.warning("History query failed: %s", e)
            history = []

        for wrap in history:
            if self._cancelled:
                return None
            self.process_envelope(wrap)

        if self._cancelled:
            return None

        try:
            subscription = await self.pool.subscribe(
                self.relays, self.inbox_filter, self.process_envelope
            )
        except Exception as e:
            logger.warning("Live subscription failed: %s", e)
            return None

        if self._cancelled:
            # closed while the subscription was being set up
            await subscription.close()
            return None

        self._subscription = subscription
        self.state = "subscription_active"
        return subscription

    async def close(self) -> None:
        """Stop the live subscription; later envelopes are ignored."""
        self._cancelled = True
        subscription, self._subscription = self._subscription, None
        self.state = "idle"
        if subscription is not None:
            await subscription.close()

    async def __aenter__(self) -> Conversation:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        await self.close()

    # ───────────────────────────── Receive ────────────────────────────────────

    def process_envelope(self, wrap: NostrEvent) -> MessageRow | ReactionRow | None:
        """Decrypt one gift wrap and apply it if it belongs to this thread.

        Chat messages and reactions are stored; deletions retract reactions.

        Returns:
            The inserted row, or None if nothing was stored
        """
        if self._cancelled:
            return None
        wrap_id = str(wrap.get("id") or "") if isinstance(wrap, dict) else ""
        if not wrap_id or wrap_id in self.seen_wrap_ids:
            return None
        self.seen_wrap_ids.add(wrap_id)

        try:
            inner = unwrap_event(cast(dict[str, Any], wrap), self._privkey)
        except Exception as e:
            logger.debug("Skipping envelope %s: %s", wrap_id, e)
            return None

        sender = str(inner.get("pubkey") or "").strip()
        direction = self._direction(sender, inner.get("tags"))
        if direction is None:
            return None

        kind = inner.get("kind")
        if kind == EventKind.PrivateDirectMessage:
            return self._receive_message(wrap_id, direction, sender, inner)
        if kind == EventKind.Reaction:
            return self._receive_reaction(wrap_id, sender, inner)
        if kind == EventKind.Deletion:
            self._receive_deletion(sender, inner)
        return None

    def _direction(self, sender: str, tags: Any) -> Direction | None:
        if sender == self.contact_pubkey:
            return "in"
        # our own copy must actually be addressed to this contact
        if sender == self.pubkey and self.contact_pubkey in _tag_values(tags, "p"):
            return "out"
        return None

    def _receive_message(
        self, wrap_id: str, direction: Direction, sender: str, inner: dict[str, Any]
    ) -> MessageRow | None:
        content = str(inner.get("content") or "")
        if not content.strip():
            return None

        rumor_id = str(inner.get("id") or "").strip() or None
        row = MessageRow(
            contactId=self.contact.id,
            direction=direction,
            content=content,
            wrapId=wrap_id,
            rumorId=rumor_id,
            clientId=_client_tag(inner.get("tags")),
            pubkey=sender,
            createdAtSec=_created_at_sec(inner.get("created_at")),
        )
        return self._insert(row)

    def _receive_reaction(
        self, wrap_id: str, sender: str, inner: dict[str, Any]
    ) -> ReactionRow | None:
        tags = inner.get("tags")
        message_id = _first_tag(tags, "e")
        if not message_id:
            return None
        target_kind = _first_tag(tags, "k")
        if target_kind and target_kind != str(EventKind.PrivateDirectMessage):
            return None
        if message_id not in {row.get("rumorId") for row in self.messages()}:
            logger.debug("Reaction %s targets an unknown message", wrap_id)
            return None

        emoji = str(inner.get("content") or "").strip()
        if not emoji:
            return None

        rumor_id = str(inner.get("id") or "").strip() or None
        for existing in self.reactions(include_deleted=True):
            # the other copy of the same reaction, possibly already retracted
            if rumor_id and existing.get("rumorId") == rumor_id:
                return None
            if (
                not existing.get("isDeleted")
                and existing.get("messageId") == message_id
                and existing.get("reactorPubkey") == sender
                and existing.get("emoji") == emoji
            ):
                return None

        row = ReactionRow(
            contactId=self.contact.id,
            messageId=message_id,
            reactorPubkey=sender,
            emoji=emoji,
            wrapId=wrap_id,
            rumorId=rumor_id,
            clientId=_client_tag(tags),
            createdAtSec=_created_at_sec(inner.get("created_at")),
            isDeleted=False,
        )
        return self._insert_reaction(row)

    def _receive_deletion(self, sender: str, inner: dict[str, Any]) -> None:
        referenced = set(_tag_values(inner.get("tags"), "e"))
        if not referenced:
            return
        for reaction in self.reactions():
            if reaction.get("reactorPubkey") != sender:
                continue
            if referenced & {reaction.get("rumorId"), reaction.get("wrapId")}:
                self._retract(reaction)

    def _insert(self, row: MessageRow) -> MessageRow | None:
        result = self.store.insert(MESSAGES_TABLE, dict(row))
        if not result.get("ok"):
            logger.warning("Could not store message %s: %s", row.get("wrapId"), result.get("error"))
            return None
        row["id"] = result["id"]
        logger.debug("Stored %s message %s", row["direction"], row["wrapId"])
        if self.on_message is not None:
            self.on_message(row)
        return row

    def _insert_reaction(self, row: ReactionRow) -> ReactionRow | None:
        result = self.store.insert(REACTIONS_TABLE, dict(row))
        if not result.get("ok"):
            logger.warning("Could not store reaction %s: %s", row.get("wrapId"), result.get("error"))
            return None
        row["id"] = result["id"]
        logger.debug("Stored reaction %s to %s", row["emoji"], row["messageId"])
        if self.on_reaction is not None:
            self.on_reaction(row)
        return row

    def _retract(self, reaction: ReactionRow) -> None:
        result = self.store.update(REACTIONS_TABLE, {"id": reaction["id"], "isDeleted": True})
        if not result.get("ok"):
            logger.warning("Could not retract reaction %s: %s", reaction["id"], result.get("error"))
            return
        reaction["isDeleted"] = True
        if self.on_reaction is not None:
            self.on_reaction(reaction)

    # ─────────────────────────────── Send ─────────────────────────────────────

    async def _publish_rumor(self, rumor: dict[str, Any]) -> tuple[str, list[str]]:
        """Wrap ``rumor`` for us and for the contact and publish both.

        Returns:
            The id of our own envelope and the relays that accepted either one
        """
        wrap_for_me = wrap_event(rumor, self._privkey, self.pubkey)
        wrap_for_contact = wrap_event(rumor, self._privkey, self.contact_pubkey)

        # the live subscription will echo our own copy back
        self.seen_wrap_ids.add(wrap_for_me["id"])

        published_to: set[str] = set()
        for wrap in (wrap_for_me, wrap_for_contact):
            try:
                outcomes = await self.pool.publish(self.relays, cast(NostrEvent, wrap))
            except Exception as e:
                logger.warning("Publish of %s failed: %s", wrap["id"], e)
                continue
            published_to.update(o.relay for o in outcomes if o.ok)
        return wrap_for_me["id"], sorted(published_to)

    async def send(self, text: str) -> SendResult:
        """Publish ``text`` to the contact and record it as sent.

        Two envelopes carry the same inner message: one for the contact and
        one for ourselves, so other devices of ours see it too. The send
        succeeds if any relay accepts either envelope.
        """
        if not text.strip():
            return SendResult(ok=False, error="Empty message")

        client_id = uuid4().hex
        rumor = create_rumor(
            self._privkey,
            text,
            [["p", self.contact_pubkey], ["p", self.pubkey], ["client", client_id]],
        )
        wrap_id, published_to = await self._publish_rumor(rumor)
        if not published_to:
            return SendResult(ok=False, wrap_id=wrap_id, error="No relay accepted the message")

        row = MessageRow(
            contactId=self.contact.id,
            direction="out",
            content=text,
            wrapId=wrap_id,
            rumorId=rumor["id"],
            clientId=client_id,
            pubkey=self.pubkey,
            createdAtSec=rumor["created_at"],
        )
        if self._insert(row) is None:
            return SendResult(
                ok=False,
                wrap_id=wrap_id,
                published_to=published_to,
                error="Message was published but could not be stored",
            )
        return SendResult(ok=True, wrap_id=wrap_id, published_to=published_to)

    async def react(self, message_rumor_id: str, emoji: str) -> SendResult:
        """Toggle our reaction on a stored message.

        We keep at most one reaction per message: any previous one is
        retracted first, and reacting again with the same emoji only
        retracts it.
        """
        emoji = emoji.strip()
        if not emoji:
            return SendResult(ok=False, error="Empty reaction")
        target = next(
            (row for row in self.messages() if row.get("rumorId") == message_rumor_id),
            None,
        )
        if target is None:
            return SendResult(ok=False, error=f"Unknown message {message_rumor_id}")

        mine = [
            reaction
            for reaction in self.reactions()
            if reaction.get("messageId") == message_rumor_id
            and reaction.get("reactorPubkey") == self.pubkey
        ]
        if mine:
            for reaction in mine:
                self._retract(reaction)
            tags = [["p", self.contact_pubkey], ["p", self.pubkey]]
            tags += [["e", r["rumorId"]] for r in mine if r.get("rumorId")]
            tags.append(["client", uuid4().hex])
            wrap_id, published_to = await self._publish_rumor(
                create_rumor(self._privkey, "", tags, kind=EventKind.Deletion)
            )
            if not published_to:
                logger.warning("No relay accepted the retraction %s", wrap_id)
            if any(r.get("emoji") == emoji for r in mine):
                return SendResult(ok=bool(published_to), wrap_id=wrap_id, published_to=published_to)

        client_id = uuid4().hex
        rumor = create_rumor(
            self._privkey,
            emoji,
            [
                ["p", target.get("pubkey") or self.contact_pubkey],
                ["p", self.contact_pubkey],
                ["p", self.pubkey],
                ["e", message_rumor_id],
                ["k", str(EventKind.PrivateDirectMessage)],
                ["client", client_id],
            ],
            kind=EventKind.Reaction,
        )
        wrap_id, published_to = await self._publish_rumor(rumor)
        if not published_to:
            return SendResult(ok=False, wrap_id=wrap_id, error="No relay accepted the reaction")

        row = ReactionRow(
            contactId=self.contact.id,
            messageId=message_rumor_id,
            reactorPubkey=self.pubkey,
            emoji=emoji,
            wrapId=wrap_id,
            rumorId=rumor["id"],
            clientId=client_id,
            createdAtSec=rumor["created_at"],
            isDeleted=False,
        )
        if self._insert_reaction(row) is None:
            return SendResult(
                ok=False,
                wrap_id=wrap_id,
                published_to=published_to,
                error="Reaction was published but could not be stored",
            )
        return SendResult(ok=True, wrap_id=wrap_id, published_to=published_to)
