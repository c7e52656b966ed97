"""
Provider-wide transport defaults shared by every action.

The defaults are built once, then only read: each action takes a snapshot
under a short lock and merges its own ``transport`` block on top of it.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Mapping, Optional

from outpost.embedded.container import ClientFactory, EmbeddedTransport, merge
from outpost.errors import ConfigurationError
from outpost.values import loads_wire

LOGGER = logging.getLogger(__name__)


class ProviderDefaults:
    def __init__(
        self,
        transport: Optional[EmbeddedTransport] = None,
        *,
        client_factory: Optional[ClientFactory] = None,
        client_options: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._transport = transport or EmbeddedTransport()
        self.client_factory = client_factory
        self.client_options = dict(client_options or {})

    @classmethod
    def from_wire(cls, raw: Any, **kwargs: Any) -> "ProviderDefaults":
        """Build from a provider block, ``{"transport": {...}}``."""
        if raw is None:
            return cls(**kwargs)
        if not isinstance(raw, Mapping):
            raise ConfigurationError((), "provider configuration must be a mapping")
        unexpected = set(raw) - {"transport"}
        if unexpected:
            name = sorted(unexpected)[0]
            raise ConfigurationError(
                (name,), f'unsupported argument, an argument named "{name}" is not expected here'
            )
        try:
            transport = EmbeddedTransport.from_wire(raw.get("transport"))
        except ConfigurationError as exc:
            raise exc.under("provider") from exc
        return cls(transport, **kwargs)

    @classmethod
    def from_file(cls, path: Path, **kwargs: Any) -> "ProviderDefaults":
        path = Path(path).expanduser()
        try:
            raw = loads_wire(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(
                ("provider_config",), f"unable to load provider configuration {path}: {exc}"
            ) from exc
        LOGGER.info("Loaded provider defaults from %s", path)
        return cls.from_wire(raw, **kwargs)

    @classmethod
    def from_settings(cls, settings, **kwargs: Any) -> "ProviderDefaults":
        kwargs.setdefault("client_options", settings.client_options())
        if settings.provider_config is None:
            return cls(**kwargs)
        return cls.from_file(settings.provider_config, **kwargs)

    def snapshot(self) -> EmbeddedTransport:
        with self._lock:
            return self._transport.copy()

    def resolve(self, override: EmbeddedTransport) -> EmbeddedTransport:
        """Merge an action's transport block over the defaults."""
        base = self.snapshot()
        result = merge(base, override)
        if self.client_factory is not None:
            result.client_factory = self.client_factory
        options = dict(self.client_options)
        options.update(override.client_options)
        result.client_options = options
        return result

    def describe(self) -> str:
        with self._lock:
            return self._transport.describe()


__all__ = ["ProviderDefaults"]
