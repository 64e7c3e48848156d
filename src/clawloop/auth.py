"""Channel authentication and sender allowlisting.

Each channel adapter (chat bridge, CLI, webhook relay) presents its own
static bearer key.  Keys come from the environment:

- ``CLAWLOOP_CHANNEL_KEY``: one key, registered as channel ``default``
- ``CLAWLOOP_CHANNEL_KEYS``: ``name=key`` pairs separated by commas
- ``CLAWLOOP_CHANNEL_SCOPES``: scopes granted to every channel
- ``CLAWLOOP_ALLOWED_SENDERS``: sender ids accepted by ``submit_message``
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from collections.abc import Mapping

from fastmcp.server.auth import AccessToken
from fastmcp.server.auth import TokenVerifier

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "default"
DEFAULT_SCOPE = "clawloop:all"


def _env_list(name: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


class ChannelKeyVerifier(TokenVerifier):
    """Maps static bearer keys to the channel that owns them."""

    def __init__(self, keys: Mapping[str, str], *, scopes: list[str] | None = None) -> None:
        if not keys:
            raise ValueError("at least one channel key is required")
        self._keys: dict[str, str] = {}
        for channel, key in keys.items():
            channel, key = channel.strip(), key.strip()
            if not channel or not key:
                raise ValueError("channel names and keys must be non-empty strings")
            self._keys[channel] = key
        super().__init__()
        self._scopes = list(scopes) if scopes else [DEFAULT_SCOPE]

    @property
    def channels(self) -> list[str]:
        return sorted(self._keys)

    async def verify_token(self, token: str) -> AccessToken | None:
        matched = None
        # Compare against every key so timing does not reveal which one matched
        for channel, key in self._keys.items():
            if hmac.compare_digest(token.encode("utf-8"), key.encode("utf-8")):
                matched = channel
        if matched is not None:
            return AccessToken(
                token=token,
                client_id=f"clawloop-{matched}",
                scopes=self._scopes,
                expires_at=None,
                claims={"channel": matched},
            )
        logger.debug(
            "rejected channel token (len=%d, fp=%s)",
            len(token),
            hashlib.sha256(token.encode("utf-8")).hexdigest()[:12],
        )
        return None


def get_channel_keys() -> dict[str, str]:
    """Channel name to key, from the environment.

    Malformed ``CLAWLOOP_CHANNEL_KEYS`` entries are skipped with a warning.
    """
    keys: dict[str, str] = {}
    single = os.getenv("CLAWLOOP_CHANNEL_KEY", "").strip()
    if single:
        keys[DEFAULT_CHANNEL] = single
    for entry in _env_list("CLAWLOOP_CHANNEL_KEYS"):
        channel, sep, key = entry.partition("=")
        if not sep or not channel.strip() or not key.strip():
            logger.warning("ignoring malformed CLAWLOOP_CHANNEL_KEYS entry")
            continue
        keys[channel.strip()] = key.strip()
    return keys


def create_channel_auth() -> ChannelKeyVerifier | None:
    """Verifier for the configured keys, or ``None`` when auth is off."""
    keys = get_channel_keys()
    if not keys:
        return None
    return ChannelKeyVerifier(keys, scopes=_env_list("CLAWLOOP_CHANNEL_SCOPES"))


def get_allowed_senders() -> frozenset[str] | None:
    """``None`` means any sender (unset, empty or containing ``*``)."""
    senders = frozenset(s.lower() for s in _env_list("CLAWLOOP_ALLOWED_SENDERS"))
    if not senders or "*" in senders:
        return None
    return senders


def is_sender_allowed(sender: str | None) -> bool:
    allowed = get_allowed_senders()
    if allowed is None:
        return True
    return sender is not None and sender.strip().lower() in allowed
