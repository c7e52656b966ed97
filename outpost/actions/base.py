"""
Plan/apply scaffolding shared by every action.

An action's state is a fixed set of tri-state attributes plus an optional
``transport`` block.  Planning never touches the target: it validates what
is known, computes what can be computed, and marks everything that apply
will produce as unknown.  Apply does the remote work through a client built
from the provider defaults merged with the action's own transport block.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type

from outpost.config.provider import ProviderDefaults
from outpost.config.settings import OutpostSettings, get_settings
from outpost.context import ActionContext
from outpost.embedded.container import EmbeddedTransport
from outpost.errors import ConfigurationError
from outpost.logging_config import action_scope
from outpost.retry import RetryPolicy
from outpost.state import StateStore
from outpost.transport.base import Transport
from outpost.values import TriState, TriString

LOGGER = logging.getLogger(__name__)


class ActionState:
    ATTRIBUTES: ClassVar[Tuple[Tuple[str, Type[TriState]], ...]] = (("id", TriString),)
    # Attributes produced by apply rather than supplied by the caller.
    COMPUTED: ClassVar[Tuple[str, ...]] = ("id",)
    HAS_TRANSPORT: ClassVar[bool] = True

    def __init__(self) -> None:
        self._values: Dict[str, TriState] = {name: cls() for name, cls in self.ATTRIBUTES}
        self.transport = EmbeddedTransport()

    @classmethod
    def from_wire(cls, raw: Optional[Mapping[str, Any]]) -> "ActionState":
        state = cls()
        state.load_wire(raw)
        return state

    def load_wire(self, raw: Optional[Mapping[str, Any]]) -> None:
        for name, value in (raw or {}).items():
            if name == "transport" and self.HAS_TRANSPORT:
                self.transport.load_wire(value)
                continue
            if name not in self._values:
                raise ConfigurationError(
                    (name,), f'unsupported argument, an argument named "{name}" is not expected here'
                )
            try:
                self._values[name].from_wire(value)
            except TypeError as exc:
                raise ConfigurationError((name,), str(exc)) from exc

    def to_wire(self) -> Dict[str, Any]:
        out = {name: value.to_wire() for name, value in self._values.items()}
        if self.HAS_TRANSPORT:
            out["transport"] = self.transport.to_wire()
        return out

    def __getitem__(self, name: str) -> TriState:
        return self._values[name]

    def get(self, name: str) -> Optional[Any]:
        value, ok = self._values[name].get()
        return value if ok else None

    def copy(self) -> "ActionState":
        clone = type(self)()
        for name, value in self._values.items():
            clone._values[name].from_wire(value.to_wire())
        clone.transport = self.transport.copy()
        return clone

    def inputs(self) -> List[str]:
        return [name for name, _ in self.ATTRIBUTES if name not in self.COMPUTED]

    def has_unknown_attributes(self) -> bool:
        if any(not self._values[name].fully_known() for name in self.inputs()):
            return True
        return self.HAS_TRANSPORT and not self.transport.fully_known()

    def carry_computed(self, prior: "ActionState") -> None:
        """Copy computed values from ``prior`` where this state has none."""
        for name in self.COMPUTED:
            if self._values[name].null and not prior[name].null:
                self._values[name].from_wire(prior[name].to_wire())

    def mark_unknown(self, *names: str) -> None:
        for name in names:
            self._values[name].set_unknown()

    def validate(self, ctx: ActionContext) -> None:
        """Check the known inputs; unknown inputs are skipped."""
        ctx.check()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self._values['id']}>"


class Action:
    name: ClassVar[str] = ""
    state_class: ClassVar[Type[ActionState]] = ActionState

    def __init__(
        self,
        defaults: Optional[ProviderDefaults] = None,
        *,
        settings: Optional[OutpostSettings] = None,
        store: Optional[StateStore] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.defaults = defaults or ProviderDefaults(client_options=self.settings.client_options())
        self.store = store

    # ---------------------------------------------------------------- states
    def new_state(self) -> ActionState:
        return self.state_class()

    def load(self, raw: Optional[Mapping[str, Any]]) -> ActionState:
        return self.state_class.from_wire(raw)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_settings(self.settings)

    def sensitive_values(self, state: ActionState) -> List[str]:
        """Credentials among the action's own attributes, scrubbed from logs."""
        return []

    # ------------------------------------------------------------- transport
    def resolve_transport(self, state: ActionState) -> EmbeddedTransport:
        return self.defaults.resolve(state.transport)

    def client(self, ctx: ActionContext, state: ActionState) -> Transport:
        transport = self.resolve_transport(state)
        transport.validate(ctx)
        return transport.client(ctx)

    def requires_replace(self, prior: ActionState, proposed: ActionState) -> List[Tuple[str, ...]]:
        if not self.state_class.HAS_TRANSPORT:
            return []
        return prior.transport.replace_triggers(proposed.transport)

    # ------------------------------------------------------------ lifecycle
    def validate(self, ctx: ActionContext, state: ActionState) -> None:
        state.validate(ctx)
        if state.HAS_TRANSPORT and state.transport.fully_known():
            self.resolve_transport(state).validate(ctx)

    def plan(self, ctx: ActionContext, prior: ActionState, proposed: ActionState) -> ActionState:
        planned = proposed.copy()
        planned.carry_computed(prior)
        self.validate(ctx, planned)
        self._plan(ctx, prior, planned)
        return planned

    def apply(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> ActionState:
        if planned.has_unknown_attributes():
            raise ConfigurationError((), f"cannot apply {self.name} while inputs are unknown")
        self.validate(ctx, planned)
        kind, secrets = None, self.sensitive_values(planned)
        if planned.HAS_TRANSPORT:
            resolved = self.resolve_transport(planned)
            kind = resolved.kind
            secrets = secrets + resolved.secret_values()
        with action_scope(
            self.name,
            planned.get("id") or prior.get("id"),
            transport=kind,
            secrets=secrets,
        ):
            LOGGER.info("Applying %s", self.name)
            new = self._apply(ctx, prior, planned.copy())
        action_id = new.get("id")
        if self.store is not None and action_id:
            self.store.save(self.name, action_id, new.to_wire())
        return new

    def destroy(self, ctx: ActionContext, prior: ActionState) -> None:
        ctx.check()
        self._destroy(ctx, prior)
        action_id = prior.get("id")
        if self.store is not None and action_id:
            self.store.delete(self.name, action_id)

    def _plan(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> None:
        if not prior["id"].is_set:
            planned.mark_unknown("id")

    def _apply(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> ActionState:
        raise NotImplementedError

    def _destroy(self, ctx: ActionContext, prior: ActionState) -> None:
        LOGGER.debug("Nothing to destroy for %s", self.name)


__all__ = ["Action", "ActionState"]
