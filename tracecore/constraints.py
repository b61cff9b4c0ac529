#!/usr/bin/env python3
"""
jstrace Value-Constraint Miner

Collects finite literal sets a variable is compared against:

    switch (action) { case "a": ... case "b": ... }     -> switch
    x === "a" || x === "b"                              -> equality-chain
    ["a", "b"].includes(x)  /  ALLOWED.includes(x)      -> includes
    x in { a: 1, b: 2 }  /  x in TABLE                  -> in-object

Records are keyed by the scope that binds the variable (program scope for
globals) so two unrelated ``action`` variables do not share a table.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from .ts_adapter import TSNode
from .scope import ScopeTree, property_key
from .rule_engine import Settings
from .values import parse_number

Scalar = Union[str, int, float]

_EQUALITY_OPS = ('===', '==', '!==', '!=')


@dataclass
class ValueConstraint:
    variable: str
    values: List[Scalar] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)

    def add(self, values: List[Scalar], source: str):
        for v in values:
            if not any(type(v) is type(e) and v == e for e in self.values):
                self.values.append(v)
        if source not in self.sources:
            self.sources.append(source)

    def to_dict(self) -> dict:
        return {'variable': self.variable, 'values': list(self.values),
                'sources': list(self.sources)}


def literal_scalar(node: Optional[TSNode]) -> Optional[Scalar]:
    """String or number literal value; booleans, null and '' do not count."""
    if node is None:
        return None
    node = node.unwrap()
    if node.type in ('string', 'template_string'):
        value = node.string_value()
        return value if value else None
    if node.type == 'number':
        return parse_number(node.text)
    if node.type == 'unary_expression' and node.operator() == '-':
        arg = node.child_by_field('argument')
        if arg is not None and arg.type == 'number':
            n = parse_number(arg.text)
            return -n if n is not None else None
    return None


class ConstraintMiner:
    """Builds ``{(scope, variable) -> ValueConstraint}`` for one program."""

    def __init__(self, tree: ScopeTree, settings: Optional[Settings] = None):
        self.tree = tree
        self.settings = settings or Settings()
        self.records: Dict[Tuple[int, str], ValueConstraint] = {}

    def mine(self) -> 'ConstraintMiner':
        for node in self.tree.root.walk_descendants():
            t = node.type
            if t == 'switch_statement':
                self._switch(node)
            elif t == 'binary_expression':
                op = node.operator()
                if op in ('||', '&&') and not self._inside_chain(node):
                    self._equality_chain(node)
                elif op == 'in':
                    self._in_object(node)
            elif t == 'call_expression':
                self._includes(node)
        return self

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _key(self, ident: TSNode) -> Tuple[int, str]:
        binding = self.tree.lookup(ident.text, ident)
        return (binding.scope_id if binding is not None else 0, ident.text)

    def _record(self, ident: TSNode, values: List[Scalar], source: str):
        distinct = []
        for v in values:
            if v is None or isinstance(v, bool):
                continue
            if not any(type(v) is type(e) and v == e for e in distinct):
                distinct.append(v)
        if len(distinct) < self.settings.constraint_min_values:
            return
        key = self._key(ident)
        record = self.records.get(key)
        if record is None:
            record = self.records[key] = ValueConstraint(ident.text)
        record.add(distinct, source)

    # ------------------------------------------------------------------
    # Shapes
    # ------------------------------------------------------------------

    def _switch(self, node: TSNode):
        subject = node.child_by_field('value')
        subject = subject.unwrap() if subject is not None else None
        if subject is None or subject.type != 'identifier':
            return
        body = node.child_by_field('body')
        values = []
        for case in body.named_children if body is not None else []:
            if case.type == 'switch_case':
                values.append(literal_scalar(case.child_by_field('value')))
        self._record(subject, values, 'switch')

    @staticmethod
    def _inside_chain(node: TSNode) -> bool:
        parent = node.parent
        while parent is not None and parent.type == 'parenthesized_expression':
            parent = parent.parent
        return parent is not None and parent.type == 'binary_expression' and \
            parent.operator() in ('||', '&&')

    def _equality_chain(self, node: TSNode):
        leaves = []
        stack = [node]
        while stack:
            cur = stack.pop().unwrap()
            if cur.type == 'binary_expression' and cur.operator() in ('||', '&&'):
                stack.append(cur.child_by_field('right'))
                stack.append(cur.child_by_field('left'))
            else:
                leaves.append(cur)
        grouped: Dict[str, Tuple[TSNode, List[Scalar]]] = {}
        for leaf in leaves:
            if leaf.type != 'binary_expression' or leaf.operator() not in _EQUALITY_OPS:
                continue
            left = leaf.child_by_field('left').unwrap()
            right = leaf.child_by_field('right').unwrap()
            if left.type != 'identifier':
                left, right = right, left
            if left.type != 'identifier':
                continue
            value = literal_scalar(right)
            if value is None:
                continue
            entry = grouped.setdefault(left.text, (left, []))
            entry[1].append(value)
        for ident, values in grouped.values():
            self._record(ident, values, 'equality-chain')

    def _array_values(self, node: TSNode) -> Optional[List[Scalar]]:
        node = node.unwrap()
        if node.type == 'identifier':
            binding = self.tree.lookup(node.text, node)
            if binding is None or binding.init is None or binding.assignments or binding.path:
                return None
            node = binding.init.unwrap()
        if node.type != 'array':
            return None
        return [literal_scalar(item) for item in node.named_children]

    def _includes(self, node: TSNode):
        callee = node.child_by_field('function')
        if callee is None or callee.type != 'member_expression':
            return
        prop = callee.child_by_field('property')
        if prop is None or prop.text != 'includes':
            return
        args = node.get_arguments()
        if not args or args[0].unwrap().type != 'identifier':
            return
        values = self._array_values(callee.child_by_field('object'))
        if values is not None:
            self._record(args[0].unwrap(), values, 'includes')

    def _in_object(self, node: TSNode):
        left = node.child_by_field('left').unwrap()
        right = node.child_by_field('right').unwrap()
        if left.type != 'identifier':
            return
        if right.type == 'identifier':
            binding = self.tree.lookup(right.text, right)
            if binding is None or binding.init is None or binding.path:
                return
            right = binding.init.unwrap()
        if right.type != 'object':
            return
        keys = []
        for child in right.named_children:
            if child.type == 'pair':
                keys.append(property_key(child.child_by_field('key')))
            elif child.type in ('shorthand_property_identifier', 'method_definition'):
                name = child if child.type != 'method_definition' else child.child_by_field('name')
                keys.append(property_key(name))
        keys = [k for k in keys if k]
        if len(keys) >= 2:
            self._record(left, keys, 'in-object')

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def lookup(self, name: str, node: TSNode) -> Optional[ValueConstraint]:
        """Constraint for the variable ``name`` as seen from ``node``."""
        binding = self.tree.lookup(name, node)
        key = (binding.scope_id if binding is not None else 0, name)
        return self.records.get(key)

    def valid_values(self, name: str, node: TSNode) -> Optional[List[str]]:
        record = self.lookup(name, node)
        if record is None:
            return None
        if not (self.settings.constraint_min_values <= len(record.values)
                <= self.settings.constraint_max_values):
            return None
        return [v if isinstance(v, str) else str(v) for v in record.values]

    def to_list(self) -> List[dict]:
        """Constraints merged by variable name, in discovery order."""
        merged: Dict[str, ValueConstraint] = {}
        for record in self.records.values():
            target = merged.get(record.variable)
            if target is None:
                target = merged[record.variable] = ValueConstraint(record.variable)
            for source in record.sources:
                target.add(record.values, source)
        return [c.to_dict() for c in merged.values()]
