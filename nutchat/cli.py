"""nutchat CLI - pay with Cashu tokens and chat over Nostr."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Annotated, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .crypto import decode_nsec, encode_npub, get_pubkey, normalize_pubkey
from .ledger import Ledger
from .lnurl import HttpFetcher
from .messages import Conversation
from .mint import RemoteWalletService, WALLET_SERVICE_ENV_VAR, get_wallet_service_from_env
from .payment import PaymentOrchestrator
from .relay import RelayPool, get_relays_from_env
from .store import JsonFileStore
from .token import decode, decode_unit, extract_token
from .types import Contact, MessageRow, ReactionRow, WalletError

__version__ = "0.1.0"

DB_ENV_VAR = "NUTCHAT_DB"
DEFAULT_DB_PATH = "~/.nutchat/db.json"

app = typer.Typer(
    name="nutchat",
    help="nutchat - Cashu payments and private Nostr messages",
    rich_markup_mode="markdown",
)
console = Console()


def get_nsec() -> str:
    """Private key from ``NSEC`` (environment or .env file)."""
    nsec = os.getenv("NSEC", "").strip().strip("\"'")
    if not nsec:
        console.print("[red]No private key configured. Set NSEC in the environment or .env[/red]")
        raise typer.Exit(1)
    return nsec


def get_store() -> JsonFileStore:
    return JsonFileStore(os.getenv(DB_ENV_VAR) or Path(DEFAULT_DB_PATH).expanduser())


def get_wallet_service() -> RemoteWalletService:
    url = get_wallet_service_from_env()
    if not url:
        console.print(f"[red]No wallet service configured. Set {WALLET_SERVICE_ENV_VAR}[/red]")
        raise typer.Exit(1)
    return RemoteWalletService(url)


def handle_wallet_error(e: Exception) -> None:
    """Print an error and exit with a non-zero status."""
    console.print(f"[red]Error: {e}[/red]")
    raise typer.Exit(1)


def print_message(row: MessageRow, ledger: Ledger | None = None) -> None:
    style = "cyan" if row.get("direction") == "out" else "green"
    who = "me" if row.get("direction") == "out" else "them"
    console.print(f"[{style}]{who}[/{style}]: {row.get('content', '')}")
    info = ledger.token_message_info(row.get("content", "")) if ledger else None
    if info is not None:
        status = "new" if info.is_new else "already received"
        console.print(
            f"  [yellow]Cashu token: {info.amount or '?'} sat from "
            f"{info.mint_display or 'unknown mint'} ({status})[/yellow]"
        )


def print_reaction(row: ReactionRow, my_pubkey: str) -> None:
    who = "me" if row.get("reactorPubkey") == my_pubkey else "them"
    verb = "retracted" if row.get("isDeleted") else "reacted"
    console.print(f"[dim]{who} {verb} {row.get('emoji', '')}[/dim]")


def version_callback(value: bool) -> None:
    if value:
        console.print(f"nutchat {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show debug logging")
    ] = False,
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, is_eager=True),
    ] = None,
) -> None:
    """nutchat - Cashu payments and private Nostr messages."""
    load_dotenv(Path.cwd() / ".env")
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@app.command("decode")
def decode_token(
    text: Annotated[str, typer.Argument(help="Cashu token, or text containing one")],
) -> None:
    """Show the value of a token without redeeming it."""
    token = extract_token(text) or text.strip()
    parsed = decode(token)
    if parsed is None:
        console.print("[yellow]Could not decode this token[/yellow]")
        raise typer.Exit(1)
    unit = decode_unit(token) or "sat"
    console.print(
        Panel(
            f"Amount: [bold]{parsed.amount}[/bold] {unit}\n"
            f"Mint: {parsed.mint or '[dim]unknown / several mints[/dim]'}",
            title="Cashu token",
        )
    )


@app.command()
def receive(
    token: Annotated[str, typer.Argument(help="Cashu token to redeem")],
) -> None:
    """Redeem a token into the wallet."""

    async def _receive() -> None:
        service = get_wallet_service()
        try:
            ledger = Ledger(get_store(), service)
            row = await ledger.accept_token(token)
        except WalletError as e:
            handle_wallet_error(e)
            return
        finally:
            await service.aclose()

        if row.get("state") == "accepted":
            console.print(
                f"[green]Received {row.get('amount') or 0} {row.get('unit') or 'sat'} "
                f"from {row.get('mint')}[/green]"
            )
        else:
            console.print(f"[red]Token rejected: {row.get('error')}[/red]")
            raise typer.Exit(1)

    asyncio.run(_receive())


@app.command()
def balance() -> None:
    """Show spendable balance, per mint."""
    ledger = Ledger(get_store())
    table = Table(title="Balance by mint")
    table.add_column("Mint")
    table.add_column("Sats", justify="right")
    for mint, amount in ledger.balance_by_mint().items():
        table.add_row(mint, str(amount))
    console.print(table)
    console.print(f"[bold]Total: {ledger.balance()} sat[/bold]")


@app.command()
def tokens(
    all_: Annotated[
        bool, typer.Option("--all", help="Include spent and removed tokens")
    ] = False,
) -> None:
    """List stored tokens, including rejected ones."""
    ledger = Ledger(get_store())
    table = Table()
    for column in ("Id", "State", "Mint", "Amount", "Error"):
        table.add_column(column)
    for row in ledger.tokens(include_deleted=all_):
        state = row.get("state", "")
        if row.get("isDeleted"):
            state = f"{state} (deleted)"
        table.add_row(
            str(row.get("id", ""))[:8],
            state,
            row.get("mint") or "-",
            str(row.get("amount") or "-"),
            (row.get("error") or "")[:60],
        )
    console.print(table)


@app.command()
def history(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Entries to show")] = 20,
) -> None:
    """Show recent incoming and outgoing payments."""
    table = Table(title="Payment history")
    for column in ("When", "Direction", "Status", "Amount", "Fee", "Mint", "Error"):
        table.add_column(column)
    for event in Ledger(get_store()).payment_events(limit=limit):
        when = datetime.fromtimestamp(event.get("createdAtSec") or 0)
        table.add_row(
            when.strftime("%Y-%m-%d %H:%M"),
            event.get("direction", ""),
            event.get("status", ""),
            str(event.get("amount") or "-"),
            str(event.get("fee") or "-"),
            event.get("mint") or "-",
            (event.get("error") or "")[:60],
        )
    console.print(table)


@app.command()
def pay(
    address: Annotated[str, typer.Argument(help="Lightning address (user@domain)")],
    amount: Annotated[str, typer.Argument(help="Amount in sats")],
    comment: Annotated[
        Optional[str], typer.Option("--comment", "-c", help="Note for the payee")
    ] = None,
) -> None:
    """Pay a Lightning address from a single mint's tokens."""

    async def _pay() -> None:
        service = get_wallet_service()
        fetcher = HttpFetcher()
        try:
            ledger = Ledger(get_store(), service)
            orchestrator = PaymentOrchestrator(ledger, service, fetcher)
            contact = Contact(id=address, name=address, ln_address=address)
            with console.status(f"Paying {amount} sat to {address}..."):
                result = await orchestrator.pay(contact, amount, comment=comment)
        finally:
            await fetcher.aclose()
            await service.aclose()

        if not result.ok:
            console.print(f"[red]{result.error_kind}: {result.error}[/red]")
            raise typer.Exit(1)
        console.print(f"[green]Paid {result.amount} sat via {result.mint}[/green]")
        if result.change_amount:
            console.print(f"Change kept: {result.change_amount} sat")
        console.print(f"Balance: {ledger.balance()} sat")

    asyncio.run(_pay())


def _conversation(npub: str, pool: RelayPool, **kwargs) -> Conversation:
    try:
        privkey = decode_nsec(get_nsec())
        pubkey = normalize_pubkey(npub)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e
    contact = Contact(id=pubkey, npub=pubkey)
    return Conversation(privkey, contact, pool, get_store(), get_relays_from_env(), **kwargs)


@app.command()
def send(
    npub: Annotated[str, typer.Argument(help="Recipient npub or hex pubkey")],
    text: Annotated[str, typer.Argument(help="Message text")],
) -> None:
    """Send a private message."""

    async def _send() -> None:
        pool = RelayPool()
        try:
            result = await _conversation(npub, pool).send(text)
        finally:
            await pool.close()
        if not result.ok:
            handle_wallet_error(WalletError(result.error or "Send failed"))
        console.print(f"[green]Sent via {', '.join(result.published_to)}[/green]")

    asyncio.run(_send())


@app.command()
def react(
    npub: Annotated[str, typer.Argument(help="Contact npub or hex pubkey")],
    emoji: Annotated[str, typer.Argument(help="Reaction, e.g. 👍")],
    message: Annotated[
        Optional[str],
        typer.Option("--message", "-m", help="Message id (or prefix); defaults to their latest"),
    ] = None,
) -> None:
    """React to a message. Reacting again with the same emoji removes it."""

    async def _react() -> None:
        pool = RelayPool()
        try:
            conversation = _conversation(npub, pool)
            rows = [row for row in conversation.messages() if row.get("rumorId")]
            if message:
                rows = [row for row in rows if row["rumorId"].startswith(message)]
            else:
                rows = [row for row in rows if row.get("direction") == "in"][-1:]
            if len(rows) != 1:
                handle_wallet_error(WalletError("No single matching message to react to"))
            result = await conversation.react(rows[-1]["rumorId"], emoji)
        finally:
            await pool.close()
        if not result.ok:
            handle_wallet_error(WalletError(result.error or "Reaction failed"))
        console.print(f"[green]Reaction sent via {', '.join(result.published_to)}[/green]")

    asyncio.run(_react())


@app.command()
def chat(
    npub: Annotated[str, typer.Argument(help="Contact npub or hex pubkey")],
) -> None:
    """Show a conversation and follow new messages until Ctrl-C."""

    async def _chat() -> None:
        pool = RelayPool()
        conversation = _conversation(npub, pool)
        ledger = Ledger(conversation.store)
        for row in conversation.messages():
            print_message(row, ledger)
        conversation.on_message = lambda row: print_message(row, ledger)
        conversation.on_reaction = lambda row: print_reaction(row, conversation.pubkey)
        try:
            async with conversation:
                console.print("[dim]Listening for messages, Ctrl-C to stop[/dim]")
                await asyncio.Event().wait()
        finally:
            await pool.close()

    try:
        asyncio.run(_chat())
    except KeyboardInterrupt:
        pass


@app.command()
def whoami() -> None:
    """Show this identity's npub."""
    try:
        pubkey = get_pubkey(decode_nsec(get_nsec()))
    except ValueError as e:
        handle_wallet_error(e)
        return
    console.print(encode_npub(pubkey))


def cli() -> None:
    app()


if __name__ == "__main__":
    cli()
