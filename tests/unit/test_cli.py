"""Tests for the nutchat command line."""

import pytest
from typer.testing import CliRunner

from nutchat.cli import app
from nutchat.crypto import encode_npub, get_pubkey, decode_nsec, generate_privkey
from nutchat.ledger import Ledger
from nutchat.store import TOKENS_TABLE, JsonFileStore
from utils import encode_v3

MINT = "https://mint.example.com"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Run each command from an empty directory with a throwaway database."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("NUTCHAT_DB", str(tmp_path / "db.json"))
    for name in ("NSEC", "CASHU_WALLET_SERVICE", "NOSTR_RELAYS"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def test_decode(runner):
    token = encode_v3(MINT, [{"id": "00", "amount": 21, "secret": "s", "C": "c"}])
    result = runner.invoke(app, ["decode", token])
    assert result.exit_code == 0
    assert "21" in result.output
    assert MINT in result.output


def test_decode_garbage(runner):
    result = runner.invoke(app, ["decode", "not-a-token"])
    assert result.exit_code == 1


def test_balance(runner, isolated_env):
    store = JsonFileStore(isolated_env / "db.json")
    store.insert(TOKENS_TABLE, {"token": "t1", "mint": MINT, "amount": 10, "state": "accepted"})
    store.insert(TOKENS_TABLE, {"token": "t2", "mint": MINT, "amount": 5, "state": "accepted"})
    store.insert(TOKENS_TABLE, {"token": "t3", "mint": MINT, "amount": 9, "state": "error"})

    result = runner.invoke(app, ["balance"])
    assert result.exit_code == 0
    assert "Total: 15 sat" in result.output


def test_receive_requires_wallet_service(runner):
    result = runner.invoke(app, ["receive", "cashuAxyz"])
    assert result.exit_code == 1
    assert "CASHU_WALLET_SERVICE" in result.output


def test_whoami(runner, monkeypatch):
    secret = generate_privkey()
    monkeypatch.setenv("NSEC", secret)
    result = runner.invoke(app, ["whoami"])
    assert result.exit_code == 0
    assert encode_npub(get_pubkey(decode_nsec(secret))) in result.output


def test_send_requires_key(runner):
    result = runner.invoke(app, ["send", "npub1xyz", "hello"])
    assert result.exit_code == 1
    assert "NSEC" in result.output


def test_whoami_invalid_key(runner, monkeypatch):
    monkeypatch.setenv("NSEC", "not-a-key")
    result = runner.invoke(app, ["whoami"])
    assert result.exit_code == 1
    assert "Error" in result.output


def test_decode_token_inside_text(runner):
    token = encode_v3(MINT, [{"id": "00", "amount": 21, "secret": "s", "C": "c"}])
    result = runner.invoke(app, ["decode", f"here you go {token} enjoy"])
    assert result.exit_code == 0
    assert "21" in result.output


def test_history(runner, isolated_env):
    ledger = Ledger(JsonFileStore(isolated_env / "db.json"))
    ledger.log_payment_event("in", "ok", amount=21)
    result = runner.invoke(app, ["history"])
    assert result.exit_code == 0
    assert "Payment history" in result.output
    assert "21" in result.output


def test_react_without_messages(runner, monkeypatch):
    monkeypatch.setenv("NSEC", generate_privkey())
    contact = encode_npub(get_pubkey(decode_nsec(generate_privkey())))
    result = runner.invoke(app, ["react", contact, "👍"])
    assert result.exit_code == 1
    assert "No single matching message" in result.output
