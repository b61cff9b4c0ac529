#!/usr/bin/env python3
"""
jstrace value domain.

Abstract values produced by the Value Resolver. A value is one of:

    Literal(scalar)          a string, number, boolean or null
    ListValue(items)         an array literal with resolved items
    MapValue(entries)        an object literal with resolved, ordered entries
    Unknown(label, template) nothing concrete; may carry a placeholder name and a
                             best-effort rendering such as "/users/{id}"
    Many(options)            several concrete alternatives (branches, callers)

All values are immutable and hashable so they can be deduplicated while keeping
first-seen order, which keeps every report deterministic.
"""

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple, Union

Scalar = Union[str, int, float, bool, None]

_PLACEHOLDER_RE = re.compile(r'\{[^{}]*\}')


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Literal:
    value: Scalar

    def _ident(self):
        # Keep 1, 1.0 and True apart.
        return (type(self.value).__name__, self.value)

    def __eq__(self, other):
        return isinstance(other, Literal) and self._ident() == other._ident()

    def __hash__(self):
        return hash(('lit',) + self._ident())


@dataclass(frozen=True)
class ListValue:
    items: Tuple['ResolvedValue', ...] = ()


@dataclass(frozen=True)
class MapValue:
    entries: Tuple[Tuple[str, 'ResolvedValue'], ...] = ()

    def get(self, key: str) -> Optional['ResolvedValue']:
        found = None
        for k, v in self.entries:
            if k == key:
                found = v
        return found

    def keys(self) -> List[str]:
        seen = []
        for k, _ in self.entries:
            if k not in seen:
                seen.append(k)
        return seen

    def merged(self, extra: Iterable[Tuple[str, 'ResolvedValue']]) -> 'MapValue':
        return MapValue(self.entries + tuple(extra))


@dataclass(frozen=True)
class Unknown:
    label: Optional[str] = None
    template: Optional[str] = None
    circular: bool = False


@dataclass(frozen=True)
class Many:
    options: Tuple['ResolvedValue', ...] = ()


ResolvedValue = Union[Literal, ListValue, MapValue, Unknown, Many]

UNKNOWN = Unknown()
CIRCULAR = Unknown(circular=True)


# ---------------------------------------------------------------------------
# Construction helpers
# ---------------------------------------------------------------------------

def options(value: ResolvedValue) -> Tuple[ResolvedValue, ...]:
    if isinstance(value, Many):
        return value.options
    return (value,)


def many(values: Iterable[ResolvedValue], limit: int = 64) -> ResolvedValue:
    """Join alternatives into one value, flattening and deduplicating in order."""
    out: List[ResolvedValue] = []
    seen = set()
    for v in values:
        for opt in options(v):
            if opt in seen:
                continue
            seen.add(opt)
            out.append(opt)
            if len(out) >= limit:
                break
        if len(out) >= limit:
            break
    concrete = [v for v in out if not isinstance(v, Unknown)]
    if not concrete:
        # Prefer an unknown that still carries a best-effort rendering.
        for v in out:
            if v.template or v.label:
                return v
        return out[0] if out else UNKNOWN
    if len(concrete) == 1 and len(out) == 1:
        return concrete[0]
    if len(out) == 1:
        return out[0]
    return Many(tuple(out))


def is_unknown(value: ResolvedValue) -> bool:
    if isinstance(value, Many):
        return all(is_unknown(o) for o in value.options)
    return isinstance(value, Unknown)


def is_concrete(value: ResolvedValue) -> bool:
    """True when no alternative is unknown."""
    return all(not isinstance(o, Unknown) for o in options(value))


def scalar(value: ResolvedValue) -> Optional[Scalar]:
    if isinstance(value, Literal):
        return value.value
    return None


# ---------------------------------------------------------------------------
# JavaScript semantics
# ---------------------------------------------------------------------------

def parse_number(text: str) -> Optional[Union[int, float]]:
    """Parse a JavaScript numeric literal."""
    t = text.replace('_', '').lower()
    if t.endswith('n'):
        t = t[:-1]
    try:
        if t.startswith('0x'):
            return int(t[2:], 16)
        if t.startswith('0o'):
            return int(t[2:], 8)
        if t.startswith('0b'):
            return int(t[2:], 2)
        if re.fullmatch(r'0[0-7]+', t):
            return int(t, 8)
        if re.fullmatch(r'\d+', t):
            return int(t)
        f = float(t)
        return int(f) if f.is_integer() and 'e' not in t and '.' not in t else f
    except ValueError:
        return None


def js_string(value: Scalar) -> str:
    """String conversion as performed by JavaScript's String()."""
    if value is None:
        return 'null'
    if value is True:
        return 'true'
    if value is False:
        return 'false'
    if isinstance(value, float):
        if value != value:
            return 'NaN'
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    return str(value)


def render(value: ResolvedValue) -> str:
    """Best-effort text of a value; unresolved parts become {placeholders}."""
    if isinstance(value, Literal):
        return js_string(value.value)
    if isinstance(value, ListValue):
        return ','.join(render(i) for i in value.items)
    if isinstance(value, MapValue):
        return '[object Object]'
    if isinstance(value, Many):
        return render(value.options[0]) if value.options else '{param}'
    if value.template is not None:
        return value.template
    return '{%s}' % (value.label or 'param')


def has_literal_text(text: str) -> bool:
    """True when a rendering contains anything besides placeholders."""
    return bool(_PLACEHOLDER_RE.sub('', text).strip())


def placeholders(text: str) -> List[str]:
    return [m.group(0)[1:-1] for m in _PLACEHOLDER_RE.finditer(text)]


def _concat_one(left: ResolvedValue, right: ResolvedValue) -> ResolvedValue:
    lv, rv = scalar(left), scalar(right)
    if (isinstance(left, Literal) and isinstance(right, Literal)
            and isinstance(lv, (int, float)) and isinstance(rv, (int, float))
            and not isinstance(lv, bool) and not isinstance(rv, bool)):
        return Literal(lv + rv)
    if isinstance(left, Unknown) or isinstance(right, Unknown):
        return Unknown(template=render(left) + render(right))
    return Literal(render(left) + render(right))


def concat(left: ResolvedValue, right: ResolvedValue, limit: int = 64) -> ResolvedValue:
    """JavaScript `+` over abstract values; alternatives are combined pairwise."""
    results = []
    for l in options(left):
        for r in options(right):
            results.append(_concat_one(l, r))
            if len(results) >= limit:
                return many(results, limit)
    return many(results, limit)


def value_type(value: ResolvedValue) -> str:
    """JSON-ish type name used for parameter descriptors."""
    if isinstance(value, Many):
        kinds = {value_type(o) for o in value.options}
        return kinds.pop() if len(kinds) == 1 else 'unknown'
    if isinstance(value, Literal):
        v = value.value
        if v is None:
            return 'null'
        if isinstance(v, bool):
            return 'boolean'
        if isinstance(v, (int, float)):
            return 'number'
        return 'string'
    if isinstance(value, ListValue):
        return 'array'
    if isinstance(value, MapValue):
        return 'object'
    return 'unknown'


def to_python(value: ResolvedValue) -> Any:
    """Convert to plain JSON-serializable data; unknown parts become None."""
    if isinstance(value, Literal):
        return value.value
    if isinstance(value, ListValue):
        return [to_python(i) for i in value.items]
    if isinstance(value, MapValue):
        out = {}
        for k, v in value.entries:
            out[k] = to_python(v)
        return out
    if isinstance(value, Many):
        return to_python(value.options[0]) if value.options else None
    return None
