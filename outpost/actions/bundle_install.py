from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from outpost.actions.base import Action, ActionState
from outpost.context import ActionContext
from outpost.errors import ConfigurationError
from outpost.remote.files import DEFAULT_TMP_DIR
from outpost.remote.install import BundleRequest, DownloadRequest, install_bundle, valid_sha256
from outpost.transport.content import Content
from outpost.values import TriBool, TriString, TriStringList

LOGGER = logging.getLogger(__name__)


class BundleInstallState(ActionState):
    ATTRIBUTES = (
        ("id", TriString),
        ("path", TriString),
        ("url", TriString),
        ("sha256", TriString),
        ("auth_user", TriString),
        ("auth_password", TriString),
        ("auth_token", TriString),
        ("local_fetch", TriBool),
        ("destination", TriString),
        ("mode", TriString),
        ("sudo", TriBool),
        ("sum", TriString),
        ("files", TriStringList),
    )
    COMPUTED = ("id", "sum", "files")

    def validate(self, ctx: ActionContext) -> None:
        ctx.check()
        sources = [name for name in ("path", "url") if not self[name].null]
        if not sources:
            raise ConfigurationError(
                (), 'no install source configured, you must configure one of ["path", "url"]'
            )
        if len(sources) > 1:
            raise ConfigurationError((), 'only one of the install sources ["path", "url"] can be configured')
        if self["destination"].null:
            raise ConfigurationError(("destination",), "you must set a destination directory")

        path = self.get("path")
        if path is not None:
            if Path(path).expanduser().is_dir():
                raise ConfigurationError(("path",), "path must not be a directory")
            if not Path(path).expanduser().is_file():
                raise ConfigurationError(("path",), f"unable to open bundle: [{path}]")
        if not self["url"].null:
            if self["sha256"].null:
                raise ConfigurationError(("sha256",), "you must supply the sha256 sum of the bundle URL")
            sha = self.get("sha256")
            if sha is not None and not valid_sha256(sha):
                raise ConfigurationError(("sha256",), f"invalid sha256 sum {sha!r}")

    def open_bundle(self) -> Content:
        path = self.get("path")
        try:
            return Content.from_path(path)
        except (OSError, TypeError) as exc:
            raise ConfigurationError(("path",), f"unable to open bundle: {exc}") from exc

    def digest(self) -> str:
        """The artifact digest that gates reinstalls."""
        if self.get("path") is not None:
            return self.open_bundle().sha256()
        return self.get("sha256").lower()


class BundleInstall(Action):
    """Install a zip bundle from a local path or a URL into a target directory."""

    name = "bundle_install"
    state_class = BundleInstallState

    def sensitive_values(self, state: ActionState) -> List[str]:
        return [v for v in (state.get("auth_password"), state.get("auth_token")) if v]

    def _plan(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> None:
        super()._plan(ctx, prior, planned)
        if any(planned[name].unknown for name in ("path", "url", "sha256")):
            planned.mark_unknown("sum", "files")
            return
        planned["sum"].set(planned.digest())
        if not self._up_to_date(prior, planned):
            planned.mark_unknown("files")

    @staticmethod
    def _up_to_date(prior: ActionState, planned: ActionState) -> bool:
        return (
            prior["id"].is_set
            and prior["sum"] == planned["sum"]
            and prior["destination"] == planned["destination"]
        )

    def _apply(self, ctx: ActionContext, prior: ActionState, planned: ActionState) -> ActionState:
        planned["id"].set("static")
        planned["sum"].set(planned.digest())
        if self._up_to_date(prior, planned):
            LOGGER.debug("Bundle %s already installed in %s", planned.get("sum"), planned.get("destination"))
            planned["files"].from_wire(prior["files"].to_wire())
            return planned

        request = BundleRequest(
            destination=planned.get("destination"),
            mode=planned.get("mode") or "0755",
            sudo=bool(planned.get("sudo")),
            tmp_dir=self.settings.remote_tmp_dir or DEFAULT_TMP_DIR,
            retry_policy=self.retry_policy(),
        )
        if planned.get("path") is not None:
            request.content = planned.open_bundle()
        else:
            request.download = DownloadRequest(
                url=planned.get("url"),
                destination=request.destination,
                sha256=planned.get("sha256"),
                auth_user=planned.get("auth_user"),
                auth_password=planned.get("auth_password"),
                auth_token=planned.get("auth_token"),
                local=bool(planned.get("local_fetch")),
            )

        with self.client(ctx, planned) as client:
            files = install_bundle(ctx, client, request)
        LOGGER.info("Installed %d files into %s", len(files), request.destination)
        planned["files"].set(files)
        return planned


__all__ = ["BundleInstall", "BundleInstallState"]
