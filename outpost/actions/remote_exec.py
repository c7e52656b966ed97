"""
Run inline commands, script files and a content blob on the target.

Work is gated on the content fingerprint: apply only runs anything when the
action is new or when the fingerprint differs from the stored one, otherwise
the previous output is kept as is.
"""

from __future__ import annotations

import logging
import posixpath
from pathlib import Path
from typing import Dict

from outpost.actions.base import Action, ActionState
from outpost.context import ActionContext
from outpost.errors import ConfigurationError, RemoteExecutionError
from outpost.fingerprint import compute_fingerprint, read_script
from outpost.remote.files import random_id
from outpost.remote.output import OutputBuffer
from outpost.remote.script import RunScriptRequest, run_script
from outpost.transport.base import Transport
from outpost.transport.content import Content
from outpost.values import TriString, TriStringList, TriStringMap

LOGGER = logging.getLogger(__name__)

OUTPUTS = ("stdout", "stderr")


class RemoteExecState(ActionState):
    ATTRIBUTES = (
        ("id", TriString),
        ("content", TriString),
        ("inline", TriStringList),
        ("scripts", TriStringList),
        ("environment", TriStringMap),
        ("sum", TriString),
        ("stdout", TriString),
        ("stderr", TriString),
    )
    COMPUTED = ("id", "sum", "stdout", "stderr")

    def validate(self, ctx: ActionContext) -> None:
        ctx.check()
        if all(self[name].null for name in ("content", "inline", "scripts")):
            raise ConfigurationError(
                (), "you must provide one or more of content, inline commands or scripts"
            )
        scripts, ok = self["scripts"].get_strings()
        if ok:
            for path in scripts:
                if not Path(path).expanduser().is_file():
                    raise ConfigurationError(
                        ("scripts",), f"unable to open script file: [{path}]"
                    )

    def fingerprint(self):
        return compute_fingerprint(
            content=self["content"],
            inline=self["inline"],
            scripts=self["scripts"],
            environment=self["environment"],
        )

    def environment(self) -> Dict[str, str]:
        env, _ = self["environment"].get_strings()
        return env


class RemoteExec(Action):
    name = "remote_exec"
    state_class = RemoteExecState

    def _plan(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> None:
        if not planned.has_unknown_attributes():
            planned["sum"].set(planned.fingerprint())
        elif not planned["sum"].is_set:
            planned.mark_unknown("sum")

        if not prior["id"].is_set:
            planned.mark_unknown("id", *OUTPUTS)
            return
        if planned.has_unknown_attributes():
            planned.mark_unknown("sum", *OUTPUTS)
            return
        prior_sum, prior_ok = prior["sum"].get()
        planned_sum, planned_ok = planned["sum"].get()
        if prior_ok and planned_ok and prior_sum != planned_sum:
            planned.mark_unknown(*OUTPUTS)

    def _apply(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> ActionState:
        created = not prior["id"].is_set
        if created:
            planned["id"].set(random_id())

        prior_sum, prior_ok = prior["sum"].get()
        planned_sum, planned_ok = planned["sum"].get()
        if not created and prior_ok and planned_ok and prior_sum == planned_sum:
            LOGGER.debug("Fingerprint unchanged, nothing to run")
            for name in OUTPUTS:
                if planned[name].unknown:
                    planned[name].from_wire(prior[name].to_wire())
            return planned

        with self.client(ctx, planned) as client:
            buffer = OutputBuffer()
            self.execute(ctx, planned, client, buffer)
        planned["stdout"].set(buffer.stdout_text())
        planned["stderr"].set(buffer.stderr_text())

        if not planned_ok:
            planned["sum"].set(planned.fingerprint())
        return planned

    def execute(
        self, ctx: ActionContext, state: RemoteExecState, client: Transport, buffer: OutputBuffer
    ) -> None:
        """Run inline commands, then scripts, then content, in that order."""
        inline, ok = state["inline"].get_strings()
        for cmd in inline if ok else []:
            ctx.check()
            if cmd == "":
                continue
            self._copy_and_run(ctx, state, client, Content(cmd), "inline command", buffer)

        scripts, ok = state["scripts"].get_strings()
        for path in scripts if ok else []:
            ctx.check()
            self._copy_and_run(ctx, state, client, Content(read_script(path)), f"script [{path}]", buffer)

        content = state.get("content")
        if content is not None:
            ctx.check()
            self._copy_and_run(ctx, state, client, Content(content), "content", buffer)

    def _copy_and_run(
        self,
        ctx: ActionContext,
        state: RemoteExecState,
        client: Transport,
        source: Content,
        what: str,
        buffer: OutputBuffer,
    ) -> None:
        destination = posixpath.join(
            self.settings.remote_tmp_dir, f"{state.get('id')}-{source.sha256()}.sh"
        )
        try:
            res = run_script(
                ctx,
                client,
                RunScriptRequest(
                    content=source,
                    destination=destination,
                    env=state.environment(),
                    mode="0777",
                    tmp_dir=self.settings.remote_tmp_dir,
                    retry_policy=self.retry_policy(),
                ),
            )
        except RemoteExecutionError as exc:
            buffer.extend_from(exc)
            raise RemoteExecutionError(
                f"running {what} failed",
                command=exc.command,
                exit_code=exc.exit_code,
                stdout=buffer.stdout_text(),
                stderr=buffer.stderr_text(),
            ) from exc
        buffer.append(res.stdout, res.stderr)


__all__ = ["RemoteExec", "RemoteExecState"]
