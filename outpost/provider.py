"""
Process-level entry point.

``Provider`` turns :class:`OutpostSettings` into the pieces every action
shares: logging, the provider transport defaults and the state store.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from outpost.actions import ACTIONS, Action, ActionState
from outpost.config.provider import ProviderDefaults
from outpost.config.settings import OutpostSettings, get_settings
from outpost.errors import ConfigurationError
from outpost.logging_config import init_logging
from outpost.state import StateStore

LOGGER = logging.getLogger(__name__)


class Provider:
    def __init__(
        self,
        settings: Optional[OutpostSettings] = None,
        *,
        defaults: Optional[ProviderDefaults] = None,
        store: Optional[StateStore] = None,
        configure_logging: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.log_path: Optional[Path] = None
        if configure_logging:
            self.log_path = init_logging(self.settings)
        self.defaults = defaults or ProviderDefaults.from_settings(self.settings)
        self.store = store or StateStore.from_settings(self.settings)
        LOGGER.info("Provider ready, state under %s", self.store.root)

    @staticmethod
    def names() -> List[str]:
        return sorted(ACTIONS)

    def action(self, name: str) -> Action:
        try:
            cls = ACTIONS[name]
        except KeyError as exc:
            raise ConfigurationError(
                (), f'unknown action "{name}", expected one of {", ".join(self.names())}'
            ) from exc
        return cls(self.defaults, settings=self.settings, store=self.store)

    def stored_state(self, name: str, action_id: str) -> Optional[ActionState]:
        """Load the last applied state of an action, if any was saved."""
        action = self.action(name)
        raw = self.store.load(action.name, action_id)
        if raw is None:
            return None
        return action.load(raw)


__all__ = ["Provider"]
