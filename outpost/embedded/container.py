"""
The embedded transport container.

A container holds the ``transport`` block of one action (or of the provider
defaults).  Besides the attribute values it remembers exactly which
attributes arrived on the wire and under which block key, because the
output must mirror the input attribute-for-attribute: a supplied key may
carry an unknown or null value and still has to be echoed back, while values
filled in from the provider defaults must not appear in the output at all.

Lifecycle::

    UNCONFIGURED -> PARTIALLY_CONFIGURED -> CONFIGURED -> VALIDATED

Any mutation drops a validated container back to the state its values
imply.  :meth:`EmbeddedTransport.client` is only available once validated
and builds a new client on every call.
"""

from __future__ import annotations

import enum
import logging
import threading
from contextlib import ExitStack
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from outpost.context import ActionContext
from outpost.embedded.variants import VARIANTS, Variant, canonical_kind
from outpost.errors import ConfigurationError
from outpost.transport.base import Transport
from outpost.values import UNKNOWN

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[..., Transport]


class TransportState(enum.Enum):
    UNCONFIGURED = "unconfigured"
    PARTIALLY_CONFIGURED = "partially_configured"
    CONFIGURED = "configured"
    VALIDATED = "validated"


def default_client_factory(ctx: ActionContext, variant: Variant, **options: Any) -> Transport:
    return variant.build_client(ctx, **options)


class EmbeddedTransport:
    def __init__(
        self,
        *,
        client_factory: Optional[ClientFactory] = None,
        client_options: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._variants: Dict[str, Variant] = {}
        # Attribute names received on the wire, in arrival order, per kind.
        self._supplied: Dict[str, List[str]] = {}
        # Block key each kind arrived under ("k8s" or "kubernetes").
        self._block_keys: Dict[str, str] = {}
        self._unknown_blocks: Set[str] = set()
        self._wire_unknown = False
        self._wire_null = True
        self._validated = False
        self.client_factory: ClientFactory = client_factory or default_client_factory
        self.client_options: Dict[str, Any] = dict(client_options or {})

    # ------------------------------------------------------------------ wire
    @classmethod
    def from_wire(cls, raw: Any, **kwargs: Any) -> "EmbeddedTransport":
        container = cls(**kwargs)
        container.load_wire(raw)
        return container

    def load_wire(self, raw: Any) -> None:
        with self._lock:
            self._reset()
            if raw is UNKNOWN:
                self._wire_unknown = True
                return
            if raw is None:
                return
            if not isinstance(raw, Mapping):
                raise ConfigurationError(("transport",), "transport must be a mapping")
            self._wire_null = False
            for key, block in raw.items():
                kind = canonical_kind(key)
                if kind in self._variants:
                    raise ConfigurationError(
                        ("transport", key), f"the {kind} transport is configured more than once"
                    )
                variant = VARIANTS[kind]()
                supplied: List[str] = []
                if block is UNKNOWN:
                    self._unknown_blocks.add(kind)
                elif block is not None:
                    if not isinstance(block, Mapping):
                        raise ConfigurationError(
                            ("transport", key), f"the {kind} transport must be a mapping"
                        )
                    if not block:
                        raise ConfigurationError(
                            ("transport", key),
                            f"{kind} transport configuration cannot be empty",
                        )
                    for name, value in block.items():
                        variant.set_wire(name, value)
                        supplied.append(name)
                self._variants[kind] = variant
                self._supplied[kind] = supplied
                self._block_keys[kind] = key

    def to_wire(self) -> Any:
        """Return the block in exactly the shape it was received."""
        with self._lock:
            if self._wire_unknown:
                return UNKNOWN
            if self._wire_null and not self._block_keys:
                return None
            out: Dict[str, Any] = {}
            for kind, key in self._block_keys.items():
                if kind in self._unknown_blocks:
                    out[key] = UNKNOWN
                    continue
                variant = self._variants[kind]
                out[key] = {name: variant[name].to_wire() for name in self._supplied[kind]}
            return out

    def _reset(self) -> None:
        self._variants.clear()
        self._supplied.clear()
        self._block_keys.clear()
        self._unknown_blocks.clear()
        self._wire_unknown = False
        self._wire_null = True
        self._validated = False

    # ------------------------------------------------------------ inspection
    @property
    def kinds(self) -> List[str]:
        return list(self._variants)

    def supplied(self, kind: str) -> List[str]:
        return list(self._supplied.get(canonical_kind(kind), ()))

    def variant(self, kind: Optional[str] = None) -> Optional[Variant]:
        if kind is not None:
            return self._variants.get(canonical_kind(kind))
        if len(self._variants) == 1:
            return next(iter(self._variants.values()))
        return None

    @property
    def kind(self) -> Optional[str]:
        variant = self.variant()
        return variant.kind if variant is not None else None

    def secret_values(self) -> List[str]:
        with self._lock:
            return [s for v in self._variants.values() for s in v.secret_values()]

    def fully_known(self) -> bool:
        if self._wire_unknown or self._unknown_blocks:
            return False
        return all(variant.fully_known() for variant in self._variants.values())

    @property
    def state(self) -> TransportState:
        if self._validated:
            return TransportState.VALIDATED
        if not self._variants and not self._wire_unknown:
            return TransportState.UNCONFIGURED
        variant = self.variant()
        if (
            variant is None
            or not self.fully_known()
            or variant.missing()
        ):
            return TransportState.PARTIALLY_CONFIGURED
        return TransportState.CONFIGURED

    def configured_variant(self) -> Variant:
        """Return the single configured variant or raise a configuration error."""
        if self._wire_unknown:
            raise ConfigurationError(("transport",), "the transport is not known yet")
        if len(self._variants) > 1:
            raise ConfigurationError(
                ("transport",),
                "invalid transport configuration, only one transport can be configured, "
                f"{sorted(self._variants)} were configured",
            )
        if not self._variants:
            raise ConfigurationError(
                ("transport",),
                "invalid transport configuration, no transport configured, one of "
                f"{list(VARIANTS)} must be configured",
            )
        return next(iter(self._variants.values()))

    # --------------------------------------------------------------- mutation
    def set_attribute(self, kind: str, name: str, value: Any, *, supplied: bool = True) -> None:
        """Set one attribute programmatically, optionally recording it as supplied."""
        kind = canonical_kind(kind)
        with self._lock:
            self._check_exclusive(kind, self)
            variant = self._variants.setdefault(kind, VARIANTS[kind]())
            variant.set_wire(name, value)
            if supplied:
                names = self._supplied.setdefault(kind, [])
                if name not in names:
                    names.append(name)
                self._block_keys.setdefault(kind, kind)
                self._wire_null = False
            self._validated = False

    @staticmethod
    def _check_exclusive(kind: str, target: "EmbeddedTransport") -> None:
        for other, variant in target._variants.items():
            if other != kind and (variant.is_configured() or other in target._block_keys):
                raise ConfigurationError(
                    ("transport", kind),
                    f"cannot configure a {kind} transport, the {other} transport is "
                    "already configured; a single action may not mix transport kinds",
                )

    def merge_into(self, target: "EmbeddedTransport") -> None:
        """Copy the attributes supplied to this container into ``target``.

        Attributes this container did not receive leave the target's values
        untouched.  Merging into a target configured for another kind fails.
        """

        with _locked(self, target):
            for kind, variant in self._variants.items():
                self._check_exclusive(kind, target)
                dest = target._variants.setdefault(kind, VARIANTS[kind]())
                names = target._supplied.setdefault(kind, [])
                if kind in self._unknown_blocks:
                    target._unknown_blocks.add(kind)
                for name in self._supplied.get(kind, ()):
                    dest[name].from_wire(variant[name].to_wire())
                    if name not in names:
                        names.append(name)
                target._block_keys.setdefault(kind, self._block_keys.get(kind, kind))
                target._wire_null = False
            target._validated = False

    def apply_defaults(self, defaults: "EmbeddedTransport") -> Variant:
        """Fill gaps in this container from provider ``defaults``.

        With one variant configured, its null attributes take the default's
        known values; unknown attributes are left unknown.  With none
        configured, the defaults' single variant is adopted wholesale without
        changing this container's output shape.
        """

        with _locked(self, defaults):
            self._validated = False
            if len(self._variants) == 1:
                kind, variant = next(iter(self._variants.items()))
                base = defaults._variants.get(kind)
                if base is not None:
                    for name in variant.attribute_names():
                        mine = variant[name]
                        theirs = base[name]
                        if mine.null and theirs.is_set:
                            mine.from_wire(theirs.to_wire())
                return variant
            if not self._variants:
                base = defaults.configured_variant()
                adopted = base.copy()
                self._variants[base.kind] = adopted
                self._supplied.setdefault(base.kind, [])
                LOGGER.debug("Using provider default %s transport", base.kind)
                return adopted
            return self.configured_variant()

    def copy(self) -> "EmbeddedTransport":
        with self._lock:
            clone = EmbeddedTransport(
                client_factory=self.client_factory, client_options=self.client_options
            )
            clone._variants = {kind: v.copy() for kind, v in self._variants.items()}
            clone._supplied = {kind: list(names) for kind, names in self._supplied.items()}
            clone._block_keys = dict(self._block_keys)
            clone._unknown_blocks = set(self._unknown_blocks)
            clone._wire_unknown = self._wire_unknown
            clone._wire_null = self._wire_null
            return clone

    # ------------------------------------------------------------- lifecycle
    def validate(self, ctx: Optional[ActionContext] = None) -> Variant:
        if ctx is not None:
            ctx.check()
        with self._lock:
            variant = self.configured_variant()
            if variant.kind in self._unknown_blocks:
                raise ConfigurationError(
                    ("transport", variant.kind), f"the {variant.kind} transport is not known yet"
                )
            variant.validate()
            self._validated = True
            return variant

    def client(self, ctx: ActionContext) -> Transport:
        """Build a fresh client for the validated transport."""
        ctx.check()
        with self._lock:
            if not self._validated:
                raise ConfigurationError(
                    ("transport",), "the transport must be validated before a client is built"
                )
            variant = self.configured_variant().copy()
        LOGGER.debug("Building %s transport client", variant.kind)
        return self.client_factory(ctx, variant, **self.client_options)

    # ---------------------------------------------------------------- replace
    def replace_triggers(self, proposed: "EmbeddedTransport") -> List[Tuple[str, ...]]:
        """Attribute paths whose change forces the action to be recreated."""
        paths: List[Tuple[str, ...]] = []
        for kind, prior in self._variants.items():
            candidate = proposed._variants.get(kind)
            if candidate is None or not prior.is_configured() or not candidate.is_configured():
                continue
            for name in prior.replace_triggers(candidate, self._supplied.get(kind, ())):
                paths.append(("transport", kind, name))
        return paths

    # ------------------------------------------------------------------ debug
    def describe(self) -> str:
        with self._lock:
            if not self._variants:
                return "No Transport Config"
            return "\n\n".join(v.describe() for v in self._variants.values())

    def __repr__(self) -> str:
        return f"<EmbeddedTransport kinds={self.kinds} state={self.state.value}>"


class _locked:
    """Acquire the locks of several containers in a stable order."""

    def __init__(self, *containers: EmbeddedTransport) -> None:
        unique = {id(c): c for c in containers}
        self._ordered = [unique[key] for key in sorted(unique)]
        self._stack = ExitStack()

    def __enter__(self) -> None:
        for container in self._ordered:
            self._stack.enter_context(container._lock)

    def __exit__(self, *exc_info) -> None:
        self._stack.close()


def merge(base: EmbeddedTransport, override: EmbeddedTransport) -> EmbeddedTransport:
    """Return a new container: ``override`` per key, gaps filled from ``base``."""
    result = override.copy()
    if base.kinds:
        result.apply_defaults(base)
    return result


__all__ = [
    "ClientFactory",
    "EmbeddedTransport",
    "TransportState",
    "default_client_factory",
    "merge",
]
