from __future__ import annotations

import logging
from dataclasses import fields

from outpost.actions.base import Action, ActionState
from outpost.context import ActionContext
from outpost.errors import RemoteExecutionError, TransportError
from outpost.remote.target import HostInfo as RemoteHostInfo
from outpost.remote.target import TargetFacts
from outpost.retry import RetryPolicy
from outpost.values import TriString

LOGGER = logging.getLogger(__name__)

FACTS = tuple(f.name for f in fields(RemoteHostInfo))


class HostInfoState(ActionState):
    ATTRIBUTES = (("id", TriString),) + tuple((name, TriString) for name in FACTS)
    COMPUTED = ("id",) + FACTS

    def absorb(self, info: RemoteHostInfo) -> None:
        for name, value in info.to_dict().items():
            if value is None:
                self[name].set_unknown()
            else:
                self[name].set(value)


class HostInfo(Action):
    """Gather facts about the target host."""

    name = "host_info"
    state_class = HostInfoState

    def _plan(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> None:
        super()._plan(ctx, prior, planned)
        if not prior["id"].is_set:
            planned.mark_unknown(*FACTS)

    def _apply(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> ActionState:
        planned["id"].set("static")
        return self.read(ctx, planned)

    def fact_policy(self) -> RetryPolicy:
        # A fresh host may still be booting, so failed commands are retried too.
        return self.retry_policy().with_retry_on(TransportError, RemoteExecutionError)

    def read(self, ctx: ActionContext, state: HostInfoState) -> HostInfoState:
        current = state.copy()
        with self.client(ctx, state) as client:
            info = TargetFacts(client, self.fact_policy()).host_info(ctx)
        current.absorb(info)
        return current


__all__ = ["HostInfo", "HostInfoState"]
