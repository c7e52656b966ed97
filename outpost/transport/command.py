from __future__ import annotations

import hashlib
import shlex
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class Command:
    """A shell command plus the environment it should run with.

    The environment is rendered as ``KEY='value'`` assignments in front of
    the command, sorted by key so the rendered form is stable.
    """

    cmd: str
    env: Mapping[str, str] = field(default_factory=dict)

    def with_env(self, env: Optional[Mapping[str, str]]) -> "Command":
        merged: Dict[str, str] = dict(self.env)
        merged.update(env or {})
        return Command(self.cmd, merged)

    def render(self) -> str:
        prefix = "".join(
            f"{key}={shlex.quote(str(self.env[key]))} " for key in sorted(self.env)
        )
        return prefix + self.cmd

    def sha256(self) -> str:
        return hashlib.sha256(self.render().encode("utf-8")).hexdigest()

    def __str__(self) -> str:
        return self.render()
