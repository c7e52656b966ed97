from __future__ import annotations

import logging
from pathlib import Path

from outpost.actions.base import Action, ActionState
from outpost.context import ActionContext
from outpost.errors import ConfigurationError
from outpost.remote.files import DEFAULT_TMP_DIR, RemoteOperationRequest, copy_file
from outpost.transport.content import Content
from outpost.values import TriString

LOGGER = logging.getLogger(__name__)


class FileState(ActionState):
    ATTRIBUTES = (
        ("id", TriString),
        ("source", TriString),
        ("destination", TriString),
        ("content", TriString),
        ("tmp_dir", TriString),
        ("chmod", TriString),
        ("chown", TriString),
        ("sum", TriString),
    )
    COMPUTED = ("id", "sum")

    def validate(self, ctx: ActionContext) -> None:
        ctx.check()
        if self["source"].null and self["content"].null:
            raise ConfigurationError((), "you must provide either the source location or file content")
        if not self["source"].null and not self["content"].null:
            raise ConfigurationError((), "you must provide only one of the source location or file content")
        if self["destination"].null:
            raise ConfigurationError(("destination",), "you must provide a destination path")
        source = self.get("source")
        if source is not None and not Path(source).expanduser().is_file():
            raise ConfigurationError(("source",), f"unable to open source file: [{source}]")

    def open_source(self) -> Content:
        source = self.get("source")
        if source is not None:
            try:
                return Content.from_path(source)
            except OSError as exc:
                raise ConfigurationError(("source",), f"unable to open source file: {exc}") from exc
        content = self.get("content")
        if content is None:
            raise ConfigurationError((), "you must provide either a source file or content")
        return Content(content)


class File(Action):
    """Copy a local file or literal content to the target."""

    name = "file"
    state_class = FileState

    def _plan(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> None:
        if not planned["sum"].is_set:
            planned.mark_unknown("sum")
        if not planned["id"].is_set:
            planned.mark_unknown("id")
        if planned["source"].unknown or planned["content"].unknown:
            planned.mark_unknown("sum")
            return
        planned["sum"].set(planned.open_source().sha256())

    def _apply(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> ActionState:
        planned["id"].set("static")
        source = planned.open_source()
        planned["sum"].set(source.sha256())
        if prior["id"].is_set and prior["sum"] == planned["sum"]:
            LOGGER.debug("%s is up to date", planned.get("destination"))
            return planned

        with self.client(ctx, planned) as client:
            copy_file(
                ctx,
                client,
                RemoteOperationRequest(
                    destination=planned.get("destination"),
                    content=source,
                    mode=planned.get("chmod"),
                    owner=planned.get("chown"),
                    tmp_dir=planned.get("tmp_dir") or self.settings.remote_tmp_dir or DEFAULT_TMP_DIR,
                    retry_policy=self.retry_policy(),
                ),
            )
        return planned


__all__ = ["File", "FileState"]
