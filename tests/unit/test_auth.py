"""Unit tests for channel auth helpers."""

from __future__ import annotations

import pytest

from clawloop.auth import ChannelKeyVerifier
from clawloop.auth import create_channel_auth
from clawloop.auth import get_allowed_senders
from clawloop.auth import get_channel_keys
from clawloop.auth import is_sender_allowed


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "CLAWLOOP_CHANNEL_KEY",
        "CLAWLOOP_CHANNEL_KEYS",
        "CLAWLOOP_CHANNEL_SCOPES",
        "CLAWLOOP_ALLOWED_SENDERS",
    ):
        monkeypatch.delenv(name, raising=False)


class TestChannelKeyVerifier:
    def test_requires_keys(self) -> None:
        with pytest.raises(ValueError, match="at least one"):
            ChannelKeyVerifier({})

    def test_rejects_blank_key(self) -> None:
        with pytest.raises(ValueError, match="non-empty"):
            ChannelKeyVerifier({"cli": "   "})

    async def test_token_resolves_channel(self) -> None:
        verifier = ChannelKeyVerifier({"cli": "k-cli", "chat": "k-chat"})

        result = await verifier.verify_token("k-chat")

        assert result is not None
        assert result.client_id == "clawloop-chat"
        assert result.claims == {"channel": "chat"}
        assert result.scopes == ["clawloop:all"]
        assert result.expires_at is None

    async def test_unknown_token_rejected(self) -> None:
        verifier = ChannelKeyVerifier({"cli": "k-cli"})

        assert await verifier.verify_token("wrong-key") is None
        assert await verifier.verify_token("") is None


class TestChannelKeyEnv:
    def test_single_key_is_default_channel(self, monkeypatch) -> None:
        monkeypatch.setenv("CLAWLOOP_CHANNEL_KEY", " env-key ")

        assert get_channel_keys() == {"default": "env-key"}

    def test_named_keys_and_malformed_entries(self, monkeypatch) -> None:
        monkeypatch.setenv("CLAWLOOP_CHANNEL_KEYS", "chat=a, broken, cli = b ,=c")

        assert get_channel_keys() == {"chat": "a", "cli": "b"}

    def test_blank_values_mean_no_auth(self, monkeypatch) -> None:
        monkeypatch.setenv("CLAWLOOP_CHANNEL_KEY", "   ")

        assert get_channel_keys() == {}
        assert create_channel_auth() is None

    async def test_create_applies_scopes(self, monkeypatch) -> None:
        monkeypatch.setenv("CLAWLOOP_CHANNEL_KEY", "k")
        monkeypatch.setenv("CLAWLOOP_CHANNEL_KEYS", "chat=c")
        monkeypatch.setenv("CLAWLOOP_CHANNEL_SCOPES", "a, b")

        verifier = create_channel_auth()

        assert isinstance(verifier, ChannelKeyVerifier)
        assert verifier.channels == ["chat", "default"]
        token = await verifier.verify_token("k")
        assert token is not None
        assert token.scopes == ["a", "b"]


class TestSenderAllowlist:
    def test_unset_allows_everyone(self) -> None:
        assert get_allowed_senders() is None
        assert is_sender_allowed("anyone")
        assert is_sender_allowed(None)

    def test_wildcard_allows_everyone(self, monkeypatch) -> None:
        monkeypatch.setenv("CLAWLOOP_ALLOWED_SENDERS", "alice,*")

        assert is_sender_allowed("mallory")

    def test_list_is_case_insensitive(self, monkeypatch) -> None:
        monkeypatch.setenv("CLAWLOOP_ALLOWED_SENDERS", "Alice@example.com, bob")

        assert is_sender_allowed("alice@EXAMPLE.com")
        assert is_sender_allowed("bob")
        assert not is_sender_allowed("mallory")
        assert not is_sender_allowed(None)
