"""
Install and start a systemd service.

The action provisions the service user, its directories and files, writes
the unit file, then restarts the service and waits for it to come up.  The
reported ``status`` is the last status systemd returned.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from outpost.actions.base import Action, ActionState
from outpost.context import ActionContext
from outpost.errors import ConfigurationError
from outpost.fingerprint import compute_fingerprint
from outpost.remote.files import RemoteOperationRequest
from outpost.remote.service import ServiceStartRequest, start_service
from outpost.remote.systemd import ServiceUnit
from outpost.remote.user import User as RemoteUser
from outpost.transport.content import Content
from outpost.values import UNKNOWN, TriInt, TriState, TriString, TriStringList, TriStringMap, wire_fully_known

LOGGER = logging.getLogger(__name__)

SERVICE_SHELL = "/bin/false"


class TriSections(TriState[Dict[str, Dict[str, Any]]]):
    """Unit file sections: ``{"Unit": {"Description": "..."}, ...}``."""

    def _coerce(self, value: Any) -> Dict[str, Dict[str, Any]]:
        if not isinstance(value, dict):
            raise TypeError(f"expected a mapping of sections, got {type(value).__name__}")
        sections: Dict[str, Dict[str, Any]] = {}
        for section, entries in value.items():
            if not isinstance(entries, dict):
                raise TypeError(f"section {section} must be a mapping")
            sections[str(section)] = dict(entries)
        return sections

    def _encode(self, value: Any) -> Any:
        return {section: dict(entries) for section, entries in value.items()}

    def fully_known(self) -> bool:
        return wire_fully_known(self.to_wire())


class ServiceStartState(ActionState):
    ATTRIBUTES = (
        ("id", TriString),
        ("unit_name", TriString),
        ("unit", TriSections),
        ("unit_path", TriString),
        ("username", TriString),
        ("home_dir", TriString),
        ("directories", TriStringList),
        ("files", TriStringMap),
        ("file_mode", TriString),
        ("timeout", TriInt),
        ("sum", TriString),
        ("status", TriInt),
    )
    COMPUTED = ("id", "sum", "status")

    def validate(self, ctx: ActionContext) -> None:
        ctx.check()
        if self["unit_name"].null:
            raise ConfigurationError(("unit_name",), "you must provide a unit name")
        if self["unit"].null:
            raise ConfigurationError(("unit",), "you must provide the unit sections")
        timeout = self.get("timeout")
        if timeout is not None and timeout <= 0:
            raise ConfigurationError(("timeout",), "timeout must be positive")

    def fingerprint(self) -> Any:
        document = {name: self[name].to_wire() for name in self.inputs() if name != "timeout"}
        if not wire_fully_known(document):
            return UNKNOWN
        return compute_fingerprint(content=json.dumps(document, sort_keys=True))

    def request(self, *, timeout: float, interval: float, tmp_dir: str, retry_policy) -> ServiceStartRequest:
        username = self.get("username")
        user = None
        if username:
            user = RemoteUser(name=username, home_dir=self.get("home_dir"), shell=SERVICE_SHELL)
        directories, _ = self["directories"].get_strings()
        files, _ = self["files"].get_strings()
        return ServiceStartRequest(
            name=self.get("unit_name"),
            unit=ServiceUnit.from_mapping(self.get("unit") or {}),
            user=user,
            directories=[(path, username) for path in directories],
            files=[
                RemoteOperationRequest(
                    destination=destination,
                    content=Content(content),
                    mode=self.get("file_mode") or "0644",
                    owner=username,
                    tmp_dir=tmp_dir,
                    retry_policy=retry_policy,
                )
                for destination, content in sorted(files.items())
            ],
            unit_path=self.get("unit_path"),
            timeout=float(self.get("timeout") or timeout),
            interval=interval,
            retry_policy=retry_policy,
        )


class ServiceStart(Action):
    name = "service_start"
    state_class = ServiceStartState

    def _plan(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> None:
        planned["sum"].from_wire(planned.fingerprint())
        if not prior["id"].is_set:
            planned.mark_unknown("id", "status")
        elif prior["sum"] != planned["sum"]:
            planned.mark_unknown("status")

    def _apply(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> ActionState:
        planned["sum"].set(planned.fingerprint())
        if prior["id"].is_set and prior["sum"] == planned["sum"]:
            planned["id"].from_wire(prior["id"].to_wire())
            planned["status"].from_wire(prior["status"].to_wire())
            return planned

        planned["id"].set(planned.get("unit_name"))
        request = planned.request(
            timeout=self.settings.status_timeout,
            interval=self.settings.status_poll_interval,
            tmp_dir=self.settings.remote_tmp_dir,
            retry_policy=self.retry_policy(),
        )
        with self.client(ctx, planned) as client:
            result = start_service(ctx, client, request)
        planned["status"].set(int(result.status))
        return planned


__all__ = ["ServiceStart", "ServiceStartState", "TriSections"]
