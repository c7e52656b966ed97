from __future__ import annotations

import logging

from outpost.actions.base import Action, ActionState
from outpost.context import ActionContext
from outpost.errors import ConfigurationError
from outpost.remote.user import User as RemoteUser
from outpost.remote.user import ensure_user, find_user
from outpost.values import TriString

LOGGER = logging.getLogger(__name__)

_PROPERTIES = ("home_dir", "shell", "uid", "gid")


class UserState(ActionState):
    ATTRIBUTES = (
        ("id", TriString),
        ("name", TriString),
        ("home_dir", TriString),
        ("shell", TriString),
        ("uid", TriString),
        ("gid", TriString),
    )
    # Optional, and filled in from the target when not given.
    COMPUTED = ("id",) + _PROPERTIES

    def validate(self, ctx: ActionContext) -> None:
        ctx.check()
        if self["name"].null:
            raise ConfigurationError(("name",), "you must provide a user name")

    def remote_user(self) -> RemoteUser:
        return RemoteUser(
            name=self.get("name"),
            home_dir=self.get("home_dir"),
            shell=self.get("shell"),
            uid=self.get("uid"),
            gid=self.get("gid"),
        )

    def absorb(self, user: RemoteUser) -> None:
        if user.name:
            self["name"].set(user.name)
        for name in _PROPERTIES:
            self[name].set(getattr(user, name) or "")


class User(Action):
    """Create or update a user account on the target."""

    name = "user"
    state_class = UserState

    def _plan(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> None:
        if not prior["id"].is_set:
            planned.mark_unknown("id")
        for name in _PROPERTIES:
            if not planned[name].is_set:
                planned.mark_unknown(name)

    def _apply(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> ActionState:
        planned["id"].set("static")
        with self.client(ctx, planned) as client:
            user = ensure_user(ctx, client, planned.remote_user())
        planned.absorb(user)
        return planned

    def read(self, ctx: ActionContext, state: UserState) -> UserState:
        """Refresh ``state`` from the target; properties go unknown if the user is gone."""
        current = state.copy()
        name = state.get("name")
        if name is None or not state.transport.fully_known():
            return current
        with self.client(ctx, state) as client:
            user = find_user(ctx, client, name)
        if user is None:
            LOGGER.info("User %s not found on target", name)
            current.mark_unknown(*_PROPERTIES)
            return current
        current.absorb(user)
        return current


__all__ = ["User", "UserState"]
