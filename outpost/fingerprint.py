"""
Content fingerprints that decide whether remote work has to be redone.

The digest covers, in this order: the uploaded content, every inline
command, the contents of every script file, and every environment variable
rendered as ``key:value`` sorted by key.  Each component is hashed on its
own, the hex digests are concatenated, and the concatenation is hashed once
more.  Nothing incidental (paths, timestamps, dict order) feeds the digest,
so equal inputs produce equal fingerprints across processes.

If any input is unknown the result is :data:`~outpost.values.UNKNOWN`, never
a digest of the known remainder.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Union

from outpost.errors import ConfigurationError
from outpost.transport.command import Command
from outpost.values import UNKNOWN, TriString, TriStringList, TriStringMap, wire_fully_known

LOGGER = logging.getLogger(__name__)

Input = Union[None, Any]


def sha256_hex(data: Union[str, bytes]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _raw(value: Any) -> Any:
    if isinstance(value, (TriString, TriStringList, TriStringMap)):
        return value.to_wire()
    return value


def compute_fingerprint(
    *,
    content: Input = None,
    inline: Input = None,
    scripts: Input = None,
    environment: Input = None,
) -> Any:
    """Return the hex fingerprint of the inputs, or ``UNKNOWN``.

    Each argument accepts either a tri-state value or its wire form.
    Script paths are read here; a missing file is a configuration error.
    """

    content = _raw(content)
    inline = _raw(inline)
    scripts = _raw(scripts)
    environment = _raw(environment)

    for component in (content, inline, scripts, environment):
        if not wire_fully_known(component):
            return UNKNOWN

    parts: List[str] = []
    if content is not None:
        parts.append(sha256_hex(content))

    for cmd in inline or []:
        if cmd is None:
            continue
        parts.append(Command(cmd).sha256())

    for path in scripts or []:
        if path is None:
            continue
        parts.append(sha256_hex(read_script(path)))

    env: Mapping[str, Optional[str]] = environment or {}
    for key in sorted(env):
        value = env[key]
        parts.append(sha256_hex(f"{key}:{'' if value is None else value}"))

    return sha256_hex("".join(parts))


def read_script(path: str) -> bytes:
    try:
        return Path(path).expanduser().read_bytes()
    except OSError as exc:
        raise ConfigurationError(
            ("scripts",), f"unable to read script file {path}: {exc}"
        ) from exc


def fingerprint_changed(previous: Any, current: Any) -> bool:
    """True when stored and freshly computed fingerprints differ."""
    if current is UNKNOWN or previous is UNKNOWN:
        return True
    return previous != current


__all__ = ["compute_fingerprint", "fingerprint_changed", "read_script", "sha256_hex"]
