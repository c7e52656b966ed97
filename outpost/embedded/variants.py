"""
Transport variants: one configuration type per execution channel.

A variant is a fixed set of named tri-state attributes plus the rules for
validating them and for building the concrete :class:`Transport`.  Which
attributes were explicitly supplied is tracked by the owning container, not
here; a variant only knows values.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Mapping, Optional, Tuple, Type

from outpost.context import ActionContext
from outpost.errors import ConfigurationError
from outpost.transport.base import Transport
from outpost.values import TriInt, TriState, TriString

LOGGER = logging.getLogger(__name__)

REDACTED = "[redacted]"


class Variant:
    kind: ClassVar[str] = ""
    ATTRIBUTES: ClassVar[Tuple[Tuple[str, Type[TriState]], ...]] = ()
    REQUIRED: ClassVar[Tuple[str, ...]] = ()
    # Each group needs at least one known member.
    ONE_OF: ClassVar[Tuple[Tuple[str, ...], ...]] = ()
    REPLACE_TRIGGERS: ClassVar[Tuple[str, ...]] = ()
    SENSITIVE: ClassVar[frozenset] = frozenset()
    TITLE: ClassVar[str] = ""

    def __init__(self) -> None:
        self._values: Dict[str, TriState] = {name: cls() for name, cls in self.ATTRIBUTES}

    # ------------------------------------------------------------ attributes
    @classmethod
    def attribute_names(cls) -> List[str]:
        return [name for name, _ in cls.ATTRIBUTES]

    def attributes(self) -> Dict[str, TriState]:
        return dict(self._values)

    def __getitem__(self, name: str) -> TriState:
        return self._values[name]

    def get(self, name: str) -> Optional[Any]:
        value, ok = self._values[name].get()
        return value if ok else None

    def set_wire(self, name: str, raw: Any) -> None:
        if name not in self._values:
            raise ConfigurationError(
                ("transport", self.kind, name),
                f'unsupported argument, an argument named "{name}" is not expected here',
            )
        try:
            self._values[name].from_wire(raw)
        except TypeError as exc:
            raise ConfigurationError(("transport", self.kind, name), str(exc)) from exc

    def secret_values(self) -> List[str]:
        """Known values of the sensitive attributes, for log scrubbing."""
        values = []
        for name in sorted(self.SENSITIVE):
            value = self.get(name)
            if isinstance(value, str) and value:
                values.append(value)
        return values

    def is_configured(self) -> bool:
        """True when at least one attribute is not null."""
        return any(not value.null for value in self._values.values())

    def fully_known(self) -> bool:
        return all(value.fully_known() for value in self._values.values())

    def copy(self) -> "Variant":
        clone = type(self)()
        for name, value in self._values.items():
            clone._values[name].from_wire(value.to_wire())
        return clone

    # ------------------------------------------------------------ validation
    def missing(self) -> List[Tuple[str, str]]:
        """Return ``(attribute, reason)`` pairs that block validation."""
        problems: List[Tuple[str, str]] = []
        for name in self.REQUIRED:
            value = self._values[name]
            if value.unknown:
                problems.append((name, f"the {self.kind} transport {name} is not known yet"))
            elif not value.is_set:
                problems.append((name, f"you must provide the {self.kind} transport {name}"))
        for group in self.ONE_OF:
            if any(self._values[name].is_set for name in group):
                continue
            if any(self._values[name].unknown for name in group):
                problems.append((group[0], f"the {self.kind} transport {group[0]} is not known yet"))
            else:
                problems.append((group[0], f"you must provide either the {' or '.join(group)}"))
        return problems

    def validate(self) -> None:
        """Check required attributes; never touches the network."""
        problems = self.missing()
        if problems:
            name, reason = problems[0]
            raise ConfigurationError(("transport", self.kind, name), reason)

    def build_client(self, ctx: ActionContext, **options: Any) -> Transport:
        raise NotImplementedError

    # --------------------------------------------------------------- replace
    def replace_triggers(self, proposed: "Variant", supplied: Iterable[str]) -> List[str]:
        changed: List[str] = []
        supplied = set(supplied)
        for name in self.REPLACE_TRIGGERS:
            if name not in supplied:
                continue
            if self._values[name] != proposed._values[name]:
                changed.append(name)
        return changed

    # ----------------------------------------------------------------- debug
    def describe(self) -> str:
        width = max(len(name) for name, _ in self.ATTRIBUTES)
        lines = []
        for name, _ in self.ATTRIBUTES:
            value = self._values[name]
            if value.null:
                rendered = "null"
            elif name in self.SENSITIVE and value.is_set:
                rendered = REDACTED
            else:
                rendered = str(value)
            lines.append(f"{name:>{width}} : {rendered}")
        return f"{self.TITLE} Transport Config:\n" + "\n".join(lines)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Variant):
            return NotImplemented
        return type(self) is type(other) and self._values == other._values

    def __repr__(self) -> str:
        return f"<{type(self).__name__} configured={self.is_configured()}>"


class SSHVariant(Variant):
    kind = "ssh"
    TITLE = "SSH"
    ATTRIBUTES = (
        ("user", TriString),
        ("host", TriString),
        ("private_key", TriString),
        ("private_key_path", TriString),
        ("passphrase", TriString),
        ("passphrase_path", TriString),
        ("port", TriInt),
    )
    REQUIRED = ("user", "host")
    ONE_OF = (("private_key", "private_key_path"),)
    REPLACE_TRIGGERS = ("host",)
    SENSITIVE = frozenset({"private_key", "passphrase"})

    def passphrase(self) -> Optional[str]:
        value = self.get("passphrase")
        if value is not None:
            return value
        path = self.get("passphrase_path")
        if path is None:
            return None
        try:
            return Path(path).expanduser().read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigurationError(
                ("transport", "ssh", "passphrase_path"),
                f"unable to read passphrase file {path}: {exc}",
            ) from exc

    def build_client(
        self,
        ctx: ActionContext,
        *,
        connect_timeout: float = 10.0,
        default_port: int = 22,
        **_: Any,
    ) -> Transport:
        from outpost.transport.ssh import SSHOptions, SSHTransport

        key_path = self.get("private_key_path")
        if key_path is not None:
            key_path = str(Path(key_path).expanduser())
        options = SSHOptions(
            host=self.get("host"),
            user=self.get("user"),
            port=self.get("port") or default_port,
            private_key=self.get("private_key"),
            private_key_path=key_path,
            passphrase=self.passphrase(),
            connect_timeout=connect_timeout,
        )
        return SSHTransport.connect(ctx, options)


class KubernetesVariant(Variant):
    kind = "kubernetes"
    TITLE = "K8S"
    ATTRIBUTES = (
        ("kubeconfig_base64", TriString),
        ("context_name", TriString),
        ("namespace", TriString),
        ("pod", TriString),
        ("container", TriString),
    )
    REQUIRED = ("kubeconfig_base64", "context_name", "pod")
    REPLACE_TRIGGERS = ("kubeconfig_base64", "context_name")
    SENSITIVE = frozenset({"kubeconfig_base64"})

    def build_client(self, ctx: ActionContext, **_: Any) -> Transport:
        from outpost.transport.k8s import DEFAULT_NAMESPACE, KubernetesOptions, KubernetesTransport

        options = KubernetesOptions(
            kubeconfig_base64=self.get("kubeconfig_base64"),
            context_name=self.get("context_name"),
            pod=self.get("pod"),
            namespace=self.get("namespace") or DEFAULT_NAMESPACE,
            container=self.get("container"),
        )
        return KubernetesTransport.connect(ctx, options)


class NomadVariant(Variant):
    kind = "nomad"
    TITLE = "Nomad"
    ATTRIBUTES = (
        ("host", TriString),
        ("secret_id", TriString),
        ("allocation_id", TriString),
        ("task_name", TriString),
    )
    REQUIRED = ("host", "allocation_id", "task_name")
    SENSITIVE = frozenset({"secret_id"})

    def build_client(self, ctx: ActionContext, **_: Any) -> Transport:
        from outpost.transport.nomad import NomadOptions, NomadTransport

        options = NomadOptions(
            host=self.get("host"),
            allocation_id=self.get("allocation_id"),
            task_name=self.get("task_name"),
            secret_id=self.get("secret_id"),
        )
        return NomadTransport.connect(ctx, options)


VARIANTS: Dict[str, Type[Variant]] = {
    SSHVariant.kind: SSHVariant,
    KubernetesVariant.kind: KubernetesVariant,
    NomadVariant.kind: NomadVariant,
}

# Block keys accepted on the wire that name another kind.
ALIASES: Mapping[str, str] = {"k8s": KubernetesVariant.kind}


def canonical_kind(key: str) -> str:
    kind = ALIASES.get(key, key)
    if kind not in VARIANTS:
        raise ConfigurationError(
            ("transport", key),
            f"unknown transport {key!r}, expected one of {', '.join(VARIANTS)}",
        )
    return kind


def new_variant(kind: str) -> Variant:
    return VARIANTS[canonical_kind(kind)]()


ClientBuilder = Callable[[ActionContext, Variant], Transport]

__all__ = [
    "ALIASES",
    "KubernetesVariant",
    "NomadVariant",
    "REDACTED",
    "SSHVariant",
    "VARIANTS",
    "Variant",
    "canonical_kind",
    "new_variant",
]
