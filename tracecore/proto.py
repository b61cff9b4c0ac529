#!/usr/bin/env python3
"""
jstrace Proto/Enum Miner

Recovers protobuf-style metadata from compiled bundles.

Enums come in four shapes:
    {A: 0, B: 1, C: 2}                      forward (values are exactly 0..N-1)
    {0: "A", 1: "B"}                        reverse map (keys are exactly 0..N-1)
    {A: 0, B: 1, 0: "A", 1: "B"}            bidirectional
    E[E["A"] = 0] = "A"; E[E["B"] = 1] = "B"   TypeScript-compiled enum

Field maps come from generated accessors:
    X.prototype.getName = function () { return jspb.Message.getField(this, 3) }
    X.prototype.ab = function () { return this.array[7] }
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .ts_adapter import TSNode, FUNCTION_TYPES
from .scope import ScopeTree, property_key
from .rule_engine import Settings
from .values import parse_number

logger = logging.getLogger(__name__)

ACCESSOR_PREFIXES = ('get', 'set', 'has', 'clear')


@dataclass
class ProtoEnum:
    values: Dict[str, int] = field(default_factory=dict)
    is_reverse_map: bool = False

    def to_dict(self) -> dict:
        out = {'values': dict(self.values)}
        if self.is_reverse_map:
            out['isReverseMap'] = True
        return out


@dataclass
class ProtoField:
    field_number: int
    field_name: str
    accessor_name: str
    minified: bool

    def to_dict(self) -> dict:
        return {'fieldNumber': self.field_number, 'fieldName': self.field_name,
                'accessorName': self.accessor_name, 'minified': self.minified}


def _integer(node: Optional[TSNode]) -> Optional[int]:
    if node is None:
        return None
    node = node.unwrap()
    negative = False
    if node.type == 'unary_expression' and node.operator() == '-':
        node = node.child_by_field('argument')
        negative = True
        if node is None:
            return None
    if node.type != 'number':
        return None
    n = parse_number(node.text)
    if not isinstance(n, int) or isinstance(n, bool):
        return None
    return -n if negative else n


def _is_sequence(numbers: List[int]) -> bool:
    return sorted(numbers) == list(range(len(numbers)))


def field_name(accessor: str) -> str:
    """``getUserName`` -> ``userName``; names without an accessor prefix are kept."""
    for prefix in ACCESSOR_PREFIXES:
        rest = accessor[len(prefix):]
        if accessor.startswith(prefix) and rest[:1].isupper():
            return rest[0].lower() + rest[1:]
    return accessor


class ProtoMiner:
    """Collects enum objects and accessor field numbers from one program."""

    def __init__(self, tree: ScopeTree, settings: Optional[Settings] = None):
        self.tree = tree
        self.settings = settings or Settings()
        self.enums: List[ProtoEnum] = []
        self.fields: List[ProtoField] = []
        self._ts_enums: Dict[tuple, ProtoEnum] = {}

    def mine(self) -> 'ProtoMiner':
        for node in self.tree.root.walk_descendants():
            if node.type == 'object':
                self._object_enum(node)
            elif node.type == 'assignment_expression':
                if not self._ts_enum_member(node):
                    self._field_accessor(node)
        for enum in self._ts_enums.values():
            if len(enum.values) >= self.settings.enum_min_props:
                self.enums.append(enum)
        logger.debug("Proto: %d enums, %d field accessors", len(self.enums), len(self.fields))
        return self

    # ------------------------------------------------------------------
    # Enums
    # ------------------------------------------------------------------

    def _object_enum(self, node: TSNode):
        props = node.named_children
        if not (self.settings.enum_min_props <= len(props) <= self.settings.enum_max_props):
            return
        forward: List[Tuple[str, int]] = []
        reverse: List[Tuple[int, str]] = []
        for prop in props:
            if prop.type != 'pair':
                return
            key_node = prop.child_by_field('key')
            if key_node is None or key_node.type == 'computed_property_name':
                return
            key = property_key(key_node)
            value = prop.child_by_field('value')
            number = _integer(value)
            text = value.unwrap().string_value() if value is not None else None
            if key_node.type == 'number':
                index = _integer(key_node)
                if index is None or text is None:
                    return
                reverse.append((index, text))
            elif number is not None and key is not None:
                forward.append((key, number))
            else:
                return
        if forward and not reverse:
            if _is_sequence([n for _, n in forward]):
                self.enums.append(ProtoEnum(dict(forward)))
        elif reverse and not forward:
            if _is_sequence([i for i, _ in reverse]):
                self.enums.append(ProtoEnum({name: i for i, name in reverse}, is_reverse_map=True))
        elif forward and reverse:
            names = dict(forward)
            if all(names.get(name) == i for i, name in reverse):
                self.enums.append(ProtoEnum(names))

    def _ts_enum_member(self, node: TSNode) -> bool:
        """``E[E["A"] = 0] = "A"``"""
        left = node.child_by_field('left').unwrap()
        if left.type != 'subscript_expression':
            return False
        inner = left.child_by_field('index')
        inner = inner.unwrap() if inner is not None else None
        if inner is None or inner.type != 'assignment_expression':
            return False
        target = inner.child_by_field('left').unwrap()
        if target.type != 'subscript_expression':
            return False
        outer_obj = left.child_by_field('object').unwrap()
        inner_obj = target.child_by_field('object').unwrap()
        if outer_obj.type != 'identifier' or outer_obj.text != inner_obj.text:
            return False
        index = target.child_by_field('index')
        name = index.unwrap().string_value() if index is not None else None
        number = _integer(inner.child_by_field('right'))
        label = node.child_by_field('right').unwrap().string_value()
        if name is None or number is None or label != name:
            return False
        binding = self.tree.lookup(outer_obj.text, outer_obj)
        key = binding.key if binding is not None else (0, outer_obj.text)
        enum = self._ts_enums.setdefault(key, ProtoEnum())
        if len(enum.values) < self.settings.enum_max_props:
            enum.values[name] = number
        return True

    # ------------------------------------------------------------------
    # Field accessors
    # ------------------------------------------------------------------

    def _field_accessor(self, node: TSNode):
        left = node.child_by_field('left').unwrap()
        right = node.child_by_field('right')
        if left.type != 'member_expression' or right is None or \
                right.unwrap().type not in FUNCTION_TYPES:
            return
        owner = left.child_by_field('object').unwrap()
        if owner.type not in ('member_expression', 'subscript_expression'):
            return
        proto = owner.child_by_field('property') if owner.type == 'member_expression' \
            else owner.child_by_field('index')
        proto_name = proto.text if proto is not None and proto.type != 'string' else \
            (proto.string_value() if proto is not None else None)
        if proto_name != 'prototype':
            return
        accessor = left.child_by_field('property').text
        number = self._field_number(right.unwrap())
        if number is None:
            return
        self.fields.append(ProtoField(number, field_name(accessor), accessor, len(accessor) <= 2))

    def _in_range(self, n: Optional[int]) -> bool:
        return n is not None and self.settings.proto_min_field <= n <= self.settings.proto_max_field

    def _field_number(self, func: TSNode) -> Optional[int]:
        """First ``f(this, N)`` / ``o.m(this, N)`` / ``this.arr[N]`` in the accessor body."""
        for node in func.walk_descendants(skip_functions=True):
            if node.type == 'call_expression':
                args = node.get_arguments()
                callee = node.child_by_field('function').unwrap()
                if len(args) >= 2 and callee.type in ('identifier', 'member_expression') \
                        and args[0].unwrap().type == 'this':
                    n = _integer(args[1])
                    if self._in_range(n):
                        return n
            elif node.type == 'subscript_expression':
                obj = node.child_by_field('object').unwrap()
                if obj.type == 'member_expression' and \
                        obj.child_by_field('object').unwrap().type == 'this':
                    n = _integer(node.child_by_field('index'))
                    if self._in_range(n):
                        return n
        return None

    def enums_to_list(self) -> List[dict]:
        return [e.to_dict() for e in self.enums]

    def fields_to_list(self) -> List[dict]:
        return [f.to_dict() for f in self.fields]
