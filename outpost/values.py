"""
Tri-state values exchanged with the plan/apply protocol.

Every attribute an action receives is either concretely known, explicitly
null, or not yet known ("unknown").  Unknown shows up while planning, when a
value depends on something that has not been applied yet, and it must never
be mistaken for an empty value.  The wire form used here is plain Python data
(``str``/``list``/``dict``/``None``) with the :data:`UNKNOWN` sentinel standing
in for a not-yet-known value.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

T = TypeVar("T")

_UNKNOWN_MARKER = "__outpost_unknown__"


class _Unknown:
    """Singleton placeholder for a value that is not known yet."""

    _instance: Optional["_Unknown"] = None

    def __new__(cls) -> "_Unknown":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<unknown>"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "_Unknown":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_Unknown":
        return self

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()


def is_unknown(value: Any) -> bool:
    return value is UNKNOWN


class TriState(Generic[T]):
    """A value plus its known/null flags.

    Exactly one of three things holds: the value is set, the value is
    unknown, or the value is null.  A fresh instance is null.
    """

    __slots__ = ("_value", "_unknown", "_null")

    def __init__(self, value: Any = None) -> None:
        self._value: Optional[T] = None
        self._unknown = False
        self._null = True
        if value is UNKNOWN:
            self.set_unknown()
        elif value is not None:
            self.set(value)

    # ------------------------------------------------------------------ state
    def get(self) -> Tuple[Optional[T], bool]:
        """Return ``(value, ok)``; ``ok`` is false when null or unknown."""
        if self._unknown or self._null:
            return None, False
        return self._value, True

    @property
    def value(self) -> Optional[T]:
        return self._value if self.is_set else None

    def set(self, value: T) -> None:
        self._value = self._coerce(value)
        self._unknown = False
        self._null = False

    def set_unknown(self) -> None:
        self._value = None
        self._unknown = True
        self._null = False

    def set_null(self) -> None:
        self._value = None
        self._unknown = False
        self._null = True

    @property
    def unknown(self) -> bool:
        return self._unknown

    @property
    def null(self) -> bool:
        return self._null

    @property
    def known(self) -> bool:
        return not self._unknown

    @property
    def is_set(self) -> bool:
        return not self._unknown and not self._null

    def fully_known(self) -> bool:
        return not self._unknown

    # ------------------------------------------------------------------- wire
    def from_wire(self, raw: Any) -> None:
        if raw is UNKNOWN:
            self.set_unknown()
        elif raw is None:
            self.set_null()
        else:
            self.set(raw)

    def to_wire(self) -> Any:
        if self._unknown:
            return UNKNOWN
        if self._null:
            return None
        return self._encode(self._value)

    def copy(self) -> "TriState[T]":
        clone = type(self)()
        clone.from_wire(self.to_wire())
        return clone

    def _coerce(self, value: Any) -> T:
        return value

    def _encode(self, value: Any) -> Any:
        return value

    # ---------------------------------------------------------------- dunders
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TriState):
            return NotImplemented
        return type(self) is type(other) and _wire_equal(
            self.to_wire(), other.to_wire()
        )

    def __hash__(self) -> int:  # pragma: no cover - mutable, identity hashing
        return id(self)

    def __repr__(self) -> str:
        if self._unknown:
            return f"{type(self).__name__}(<unknown>)"
        if self._null:
            return f"{type(self).__name__}(<null>)"
        return f"{type(self).__name__}({self._value!r})"

    def __str__(self) -> str:
        if self._unknown:
            return "<unknown>"
        if self._null:
            return "<null>"
        return str(self._value)


class TriString(TriState[str]):
    def _coerce(self, value: Any) -> str:
        if not isinstance(value, str):
            raise TypeError(f"expected a string value, got {type(value).__name__}")
        return value


class TriBool(TriState[bool]):
    def _coerce(self, value: Any) -> bool:
        if not isinstance(value, bool):
            raise TypeError(f"expected a bool value, got {type(value).__name__}")
        return value


class TriInt(TriState[int]):
    def _coerce(self, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"expected an int value, got {type(value).__name__}")
        return value


class TriStringList(TriState[List[Any]]):
    """A list of strings whose elements may individually be unknown.

    The list can be known while some of its elements are not; use
    :meth:`fully_known` before trusting the contents.
    """

    def _coerce(self, value: Any) -> List[Any]:
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
            raise TypeError(f"expected a list value, got {type(value).__name__}")
        items: List[Any] = []
        for item in value:
            if item is UNKNOWN or item is None or isinstance(item, str):
                items.append(item)
            else:
                raise TypeError(
                    f"expected string list elements, got {type(item).__name__}"
                )
        return items

    def _encode(self, value: Any) -> Any:
        return list(value)

    def fully_known(self) -> bool:
        if self._unknown:
            return False
        if self._null:
            return True
        return all(item is not UNKNOWN for item in self._value or [])

    def get_strings(self) -> Tuple[List[str], bool]:
        """Return the elements when the list is set and every element is known."""
        items, ok = self.get()
        if not ok or not self.fully_known():
            return [], False
        return [item for item in items or [] if item is not None], True


class TriStringMap(TriState[Dict[str, Any]]):
    """A string-keyed map whose values may individually be unknown."""

    def _coerce(self, value: Any) -> Dict[str, Any]:
        if not isinstance(value, dict):
            raise TypeError(f"expected a mapping value, got {type(value).__name__}")
        items: Dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError("map keys must be strings")
            if item is UNKNOWN or item is None or isinstance(item, str):
                items[key] = item
            else:
                raise TypeError(
                    f"expected string map values, got {type(item).__name__}"
                )
        return items

    def _encode(self, value: Any) -> Any:
        return dict(value)

    def fully_known(self) -> bool:
        if self._unknown:
            return False
        if self._null:
            return True
        return all(item is not UNKNOWN for item in (self._value or {}).values())

    def get_strings(self) -> Tuple[Dict[str, str], bool]:
        items, ok = self.get()
        if not ok or not self.fully_known():
            return {}, False
        return {k: v for k, v in (items or {}).items() if v is not None}, True


def _wire_equal(left: Any, right: Any) -> bool:
    if left is UNKNOWN or right is UNKNOWN:
        return left is right
    if isinstance(left, dict) and isinstance(right, dict):
        if left.keys() != right.keys():
            return False
        return all(_wire_equal(left[k], right[k]) for k in left)
    if isinstance(left, list) and isinstance(right, list):
        if len(left) != len(right):
            return False
        return all(_wire_equal(a, b) for a, b in zip(left, right))
    return left == right


def wire_equal(left: Any, right: Any) -> bool:
    """Structural equality for wire values, treating ``UNKNOWN`` as distinct."""
    return _wire_equal(left, right)


def wire_fully_known(raw: Any) -> bool:
    if raw is UNKNOWN:
        return False
    if isinstance(raw, dict):
        return all(wire_fully_known(v) for v in raw.values())
    if isinstance(raw, list):
        return all(wire_fully_known(v) for v in raw)
    return True


# ---------------------------------------------------------------------- JSON
def _to_jsonable(raw: Any) -> Any:
    if raw is UNKNOWN:
        return {_UNKNOWN_MARKER: True}
    if isinstance(raw, dict):
        return {str(k): _to_jsonable(v) for k, v in raw.items()}
    if isinstance(raw, (list, tuple)):
        return [_to_jsonable(v) for v in raw]
    return raw


def _from_jsonable(raw: Any) -> Any:
    if isinstance(raw, dict):
        if raw.keys() == {_UNKNOWN_MARKER}:
            return UNKNOWN
        return {k: _from_jsonable(v) for k, v in raw.items()}
    if isinstance(raw, list):
        return [_from_jsonable(v) for v in raw]
    return raw


def dumps_wire(raw: Any, **kwargs: Any) -> str:
    """Serialise a wire value to JSON, encoding unknown values explicitly."""
    return json.dumps(_to_jsonable(raw), **kwargs)


def loads_wire(text: str) -> Any:
    return _from_jsonable(json.loads(text))


__all__ = [
    "UNKNOWN",
    "TriBool",
    "TriInt",
    "TriState",
    "TriString",
    "TriStringList",
    "TriStringMap",
    "dumps_wire",
    "is_unknown",
    "loads_wire",
    "wire_equal",
    "wire_fully_known",
]
