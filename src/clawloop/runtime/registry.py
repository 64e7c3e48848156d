"""Explicit string-key registries resolved once at startup."""

from __future__ import annotations

from collections.abc import Callable
from collections.abc import Iterator
from typing import Generic
from typing import TypeVar

from clawloop.config import ProviderConfig
from clawloop.engine.llm_adapters import NoopProvider
from clawloop.engine.llm_adapters import OpenAICompatibleProvider
from clawloop.engine.llm_adapters import Provider

T = TypeVar("T")
C = TypeVar("C")


class Registry(Generic[C, T]):
    """Maps a kind name to a factory taking a config object.

    Registration is only possible until ``freeze()``; lookups after that
    see a fixed set, so no component is discovered at call time.
    """

    def __init__(self, label: str) -> None:
        self._label = label
        self._factories: dict[str, Callable[[C], T]] = {}
        self._frozen = False

    def register(self, key: str, factory: Callable[[C], T]) -> None:
        if self._frozen:
            raise RuntimeError(f"{self._label} registry is frozen")
        normalized = key.strip().lower()
        if normalized in self._factories:
            raise ValueError(f"{self._label} '{normalized}' is already registered")
        self._factories[normalized] = factory

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def create(self, key: str, config: C) -> T:
        factory = self._factories.get(key.strip().lower())
        if factory is None:
            raise ValueError(
                f"Unsupported {self._label} '{key}'. "
                f"Supported: {', '.join(sorted(self._factories))}."
            )
        return factory(config)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.strip().lower() in self._factories

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._factories))


def _openai_provider(config: ProviderConfig) -> Provider:
    if not config.api_key:
        raise ValueError(f"provider '{config.id}' requires an api_key when kind='openai'")
    return OpenAICompatibleProvider(
        model=config.model,
        api_key=config.api_key,
        base_url=config.base_url,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
    )


def _noop_provider(config: ProviderConfig) -> Provider:
    del config
    return NoopProvider()


def default_provider_registry() -> Registry[ProviderConfig, Provider]:
    """A fresh, unfrozen registry with the built-in provider kinds."""
    registry: Registry[ProviderConfig, Provider] = Registry("provider")
    registry.register("openai", _openai_provider)
    registry.register("noop", _noop_provider)
    return registry
