from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, fields
from typing import List, Optional

from outpost.context import ActionContext
from outpost.errors import ConfigurationError, RemoteExecutionError
from outpost.transport.base import Transport

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class User:
    name: Optional[str] = None
    home_dir: Optional[str] = None
    shell: Optional[str] = None
    uid: Optional[str] = None
    gid: Optional[str] = None

    def has_same_set_properties(self, other: Optional["User"]) -> bool:
        """True when every property set on ``self`` matches ``other``."""
        if other is None:
            return False
        for f in fields(self):
            want = getattr(self, f.name)
            if want is not None and want != getattr(other, f.name):
                return False
        return True


def decode_passwd_line(line: str) -> User:
    line = line.strip()
    if not line:
        raise ValueError("cannot decode blank /etc/passwd line")
    parts = line.split(":")
    if len(parts) < 7:
        raise ValueError(f"malformed /etc/passwd entry: expected 7 fields, got {len(parts)}")
    return User(
        name=parts[0],
        uid=parts[2],
        gid=parts[3],
        home_dir=parts[5],
        shell=parts[6],
    )


def _find_getent(ctx: ActionContext, transport: Transport, name: str) -> User:
    stdout, _ = transport.run(ctx, f"getent passwd {shlex.quote(name)}")
    return decode_passwd_line(stdout)


def _find_passwd(ctx: ActionContext, transport: Transport, name: str) -> User:
    stdout, _ = transport.run(ctx, "cat /etc/passwd")
    for line in stdout.splitlines():
        if line.startswith(f"{name}:"):
            return decode_passwd_line(line)
    raise LookupError(f"could not find user {name} in /etc/passwd")


def _find_id(ctx: ActionContext, transport: Transport, name: str) -> User:
    quoted = shlex.quote(name)
    uid, _ = transport.run(ctx, f"id -u {quoted}")
    gid, _ = transport.run(ctx, f"id -g {quoted}")
    return User(name=name, uid=uid.strip(), gid=gid.strip())


def find_user(ctx: ActionContext, transport: Transport, name: str) -> Optional[User]:
    """Look ``name`` up on the target; ``None`` when no strategy finds it."""
    failures: List[str] = []
    for strategy in (_find_getent, _find_passwd, _find_id):
        try:
            return strategy(ctx, transport, name)
        except (RemoteExecutionError, LookupError, ValueError) as exc:
            failures.append(f"{strategy.__name__}: {exc}")
    LOGGER.debug("User %s not found: %s", name, "; ".join(failures))
    return None


def create_user(ctx: ActionContext, transport: Transport, user: User) -> User:
    if not user.name:
        raise ConfigurationError(("name",), "invalid user: you must supply a username")
    parts = ["sudo useradd -m --system"]
    if user.home_dir:
        parts.append(f"--home {shlex.quote(user.home_dir)}")
    if user.shell:
        parts.append(f"--shell {shlex.quote(user.shell)}")
    if user.uid:
        parts.append(f"--uid {shlex.quote(user.uid)}")
    if user.gid:
        parts.append(f"--gid {shlex.quote(user.gid)}")
    else:
        parts.append("-U")
    parts.append(shlex.quote(user.name))
    LOGGER.info("Creating user %s", user.name)
    transport.run(ctx, " ".join(parts))
    created = find_user(ctx, transport, user.name)
    if created is None:
        raise RemoteExecutionError(f"user {user.name} was not found after creation")
    return created


def ensure_user(ctx: ActionContext, transport: Transport, want: User) -> User:
    """Create the user, or update only the properties that differ."""
    if not want.name:
        raise ConfigurationError(("name",), "update user: invalid update specification")

    have = find_user(ctx, transport, want.name)
    if have is None:
        return create_user(ctx, transport, want)
    if want.has_same_set_properties(have):
        return have

    name = shlex.quote(want.name)
    for flag, attr in (("-d", "home_dir"), ("-s", "shell"), ("-u", "uid"), ("-g", "gid")):
        value = getattr(want, attr)
        if value is not None and value != getattr(have, attr):
            LOGGER.info("Updating user %s %s", want.name, attr)
            transport.run(ctx, f"sudo usermod {flag} {shlex.quote(value)} {name}")

    updated = find_user(ctx, transport, want.name)
    if updated is None:
        raise RemoteExecutionError(f"user {want.name} disappeared while updating it")
    return updated


__all__ = ["User", "create_user", "decode_passwd_line", "ensure_user", "find_user"]
