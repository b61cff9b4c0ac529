#!/usr/bin/env python3
"""
jstrace Call-Graph Tracer

Answers "who calls this function, and with which arguments?" for a single
program, without executing it.

Algorithm:
  1. Index every call/new expression by callee shape (identifier name,
     property name, computed subscript, immediately-invoked function).
  2. Build two auxiliary graphs over object identities ("owners"):
       - property-copy graph: owner <- object literals whose properties a
         mixin helper copies onto it.  Helpers are found structurally: a
         function whose body runs ``for (k in src) dst[k] = ...`` or calls
         ``Object.assign``.  ``X.extend({...})`` with one argument copies
         onto X itself.
       - stored-callback graph: registry owner -> expressions pushed into it
         (``R.push(fn)``), invoked later through ``R[i](...)``,
         ``R.forEach(h => h(...))`` or ``for (const h of R) h(...)``.
  3. For a function, collect the names and property names it is reachable
     under (declaration, variable, assignment, object key, aliases), pick the
     candidate call sites from the index and keep those whose callee really
     denotes the function.  Callbacks handed to user functions or built-ins
     (array iteration, ``.then``, ``addEventListener``, timers) become
     synthetic call sites whose arguments describe what the callee passes.

Results are ordered by source position and cached per function.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple, Union

from .ts_adapter import TSNode, FUNCTION_TYPES
from .scope import ScopeTree, Binding, member_path, property_key
from .rule_engine import Settings


ITERATION_METHODS = frozenset({
    'forEach', 'map', 'filter', 'find', 'findIndex', 'findLast', 'findLastIndex',
    'some', 'every', 'flatMap',
})
REDUCE_METHODS = frozenset({'reduce', 'reduceRight'})
TIMER_FUNCTIONS = frozenset({'setTimeout', 'setInterval', 'setImmediate'})
PUSH_METHODS = frozenset({'push', 'unshift'})


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ElementsOf:
    """Argument standing for the elements of an iterable expression."""
    node: TSNode


@dataclass(frozen=True)
class EventOf:
    """Argument standing for a DOM event object of the given type."""
    event: str


Argument = Union[TSNode, ElementsOf, EventOf, None]


@dataclass(frozen=True)
class CallerBinding:
    """One static call site of a function and the arguments it passes."""
    site: TSNode
    function: TSNode
    args: Tuple[Argument, ...] = ()
    via: str = 'direct'
    receiver: Optional[TSNode] = None

    def argument(self, index: int) -> Argument:
        if 0 <= index < len(self.args):
            return self.args[index]
        return None


@dataclass(frozen=True)
class Owner:
    """Identity of an object that carries properties."""
    kind: str  # binding, global, literal, instance, member
    ident: tuple
    target: object = field(default=None, compare=False, hash=False)


def is_function(node: Optional[TSNode]) -> bool:
    return node is not None and node.type in FUNCTION_TYPES


def function_body_nodes(func: TSNode):
    """Descendants of a function body, not entering nested functions."""
    body = func.child_by_field('body')
    if body is None:
        return
    yield body
    yield from body.walk_descendants(skip_functions=True)


def returned_expressions(func: TSNode) -> List[TSNode]:
    body = func.child_by_field('body')
    if body is None:
        return []
    if body.type != 'statement_block':
        return [body]
    out = []
    for node in body.walk_descendants(skip_functions=True):
        if node.type == 'return_statement':
            values = node.named_children
            if values:
                out.append(values[0])
    return out


def _assign_target(node: TSNode) -> Optional[TSNode]:
    """Left side of the assignment chain that ``node`` is the value of."""
    cur = node
    parent = cur.parent
    while parent is not None and parent.type == 'parenthesized_expression':
        cur, parent = parent, parent.parent
    if parent is not None and parent.type == 'assignment_expression':
        right = parent.child_by_field('right')
        if right is not None and right.key == cur.key:
            return parent.child_by_field('left')
    return None


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Static call index plus property-copy and stored-callback graphs."""

    def __init__(self, tree: ScopeTree, settings: Optional[Settings] = None,
                 global_aliases=('window', 'self', 'globalThis')):
        self.tree = tree
        self.settings = settings or Settings()
        self.global_aliases = tuple(global_aliases)
        self.calls: List[TSNode] = []
        self.calls_by_name: Dict[str, List[TSNode]] = {}
        self.calls_by_prop: Dict[str, List[TSNode]] = {}
        self.subscript_calls: List[TSNode] = []
        self.iifes: Dict[tuple, TSNode] = {}
        self.loops_of: List[TSNode] = []
        self.value_refs: Dict[str, List[TSNode]] = {}
        self.copy_edges: Dict[Owner, List[TSNode]] = {}
        self.registries: Dict[Owner, List[TSNode]] = {}
        self._callers_cache: Dict[tuple, List[CallerBinding]] = {}
        self._functions_cache: Dict[tuple, List[TSNode]] = {}
        self._active: Set[tuple] = set()
        self._index()
        self._build_graphs()

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    def _index(self):
        for node in self.tree.root.walk_descendants():
            t = node.type
            if t in ('call_expression', 'new_expression'):
                self.calls.append(node)
                callee = self.callee_of(node)
                if callee is None:
                    continue
                ct = callee.type
                if ct == 'identifier':
                    self.calls_by_name.setdefault(callee.text, []).append(node)
                elif ct == 'member_expression':
                    prop = callee.child_by_field('property')
                    if prop is not None:
                        self.calls_by_prop.setdefault(prop.text, []).append(node)
                elif ct == 'subscript_expression':
                    index = callee.child_by_field('index')
                    key = index.string_value() if index is not None else None
                    if key is not None:
                        self.calls_by_prop.setdefault(key, []).append(node)
                    else:
                        self.subscript_calls.append(node)
                elif ct in FUNCTION_TYPES:
                    self.iifes[callee.key] = node
            elif t == 'for_in_statement':
                op = node.child_by_field('operator')
                if op is not None and op.text == 'of':
                    self.loops_of.append(node)
            elif t in ('identifier', 'shorthand_property_identifier'):
                parent = node.parent
                if parent is not None and parent.type in (
                        'variable_declarator', 'pair', 'assignment_expression',
                        'arguments', 'array', 'object'):
                    if parent.type == 'variable_declarator' and parent.child_by_field('name') == node:
                        continue
                    if parent.type == 'assignment_expression' and parent.child_by_field('left') == node:
                        continue
                    if parent.type == 'pair' and parent.child_by_field('key') == node:
                        continue
                    self.value_refs.setdefault(node.text, []).append(node)

    @staticmethod
    def callee_of(call: TSNode) -> Optional[TSNode]:
        field_name = 'constructor' if call.type == 'new_expression' else 'function'
        callee = call.child_by_field(field_name)
        return callee.unwrap() if callee is not None else None

    def _build_graphs(self):
        self._build_copy_graph()
        self._build_registries()
        # Resolution done while the graphs were incomplete must not leak.
        self._callers_cache.clear()
        self._functions_cache.clear()

    def _is_copier(self, func: TSNode) -> bool:
        for node in function_body_nodes(func):
            if node.type == 'for_in_statement':
                op = node.child_by_field('operator')
                left = node.child_by_field('left')
                if op is None or op.text != 'in' or left is None:
                    continue
                var = left.text
                body = node.child_by_field('body')
                if body is None:
                    continue
                for inner in body.walk_descendants(skip_functions=True):
                    if inner.type != 'assignment_expression':
                        continue
                    target = inner.child_by_field('left').unwrap()
                    if target.type == 'subscript_expression':
                        index = target.child_by_field('index')
                        if index is not None and index.text == var:
                            return True
            elif node.type == 'call_expression':
                callee = self.callee_of(node)
                if callee is not None and callee.text == 'Object.assign' and \
                        self.tree.is_global('Object', callee):
                    params = func.child_by_field('parameters')
                    names = {p.text for p in params.named_children} if params is not None else set()
                    args = node.get_arguments()
                    if len(args) >= 2 and args[0].text in names:
                        return True
        return False

    def _build_copy_graph(self):
        sites: List[Tuple[TSNode, List[TSNode]]] = []
        for func in self.tree.functions:
            if not self._is_copier(func):
                continue
            for cb in self.trace_callers(func):
                if cb.via in ('direct', 'method', 'call'):
                    sites.append((cb.site, [a for a in cb.args if isinstance(a, TSNode)]))
        for call in self.calls_by_prop.get('assign', []):
            callee = self.callee_of(call)
            obj = callee.child_by_field('object') if callee.type == 'member_expression' else None
            if obj is not None and obj.text == 'Object' and self.tree.is_global('Object', obj):
                sites.append((call, call.get_arguments()))

        for call, args in sites:
            if args and args[0].type in ('true', 'false'):
                args = args[1:]
            callee = self.callee_of(call)
            if len(args) == 1 and callee is not None and callee.type == 'member_expression':
                target = self.owner_of(callee.child_by_field('object'))
                sources = args
            elif len(args) >= 2:
                target = self.owner_of(args[0])
                sources = args[1:]
            else:
                continue
            if target is None:
                continue
            for src in sources:
                literal = self.object_literal_of(src)
                if literal is not None:
                    self.copy_edges.setdefault(target, []).append(literal)

    def _build_registries(self):
        for prop in PUSH_METHODS:
            for call in self.calls_by_prop.get(prop, []):
                callee = self.callee_of(call)
                if callee.type != 'member_expression':
                    continue
                owner = self.owner_of(callee.child_by_field('object'))
                if owner is None:
                    continue
                for arg in call.get_arguments():
                    self.registries.setdefault(owner, []).append(arg)

    # ------------------------------------------------------------------
    # Object identities
    # ------------------------------------------------------------------

    def _guard(self, key: tuple) -> bool:
        if key in self._active or len(self._active) > self.settings.max_depth * 4:
            return False
        self._active.add(key)
        return True

    def object_literal_of(self, expr: Optional[TSNode]) -> Optional[TSNode]:
        """Object literal an expression evaluates to, following const-like bindings."""
        seen = 0
        while expr is not None and seen < self.settings.max_depth:
            seen += 1
            expr = expr.unwrap()
            if expr.type == 'object':
                return expr
            if expr.type != 'identifier':
                return None
            binding = self.tree.lookup(expr.text, expr)
            if binding is None or binding.path or binding.init is None:
                return None
            expr = binding.init
        return None

    def literal_owner(self, literal: TSNode) -> Owner:
        parent = literal.parent
        while parent is not None and parent.type == 'parenthesized_expression':
            parent = parent.parent
        if parent is not None and parent.type == 'variable_declarator':
            name = parent.child_by_field('name')
            if name is not None and name.type == 'identifier':
                binding = self.tree.declared_by(name)
                if binding is not None:
                    return Owner('binding', binding.key, binding)
        target = _assign_target(literal)
        if target is not None:
            owner = self.owner_of(target)
            if owner is not None:
                return owner
        return Owner('literal', literal.key, literal)

    def owner_of(self, expr: Optional[TSNode], depth: int = 0) -> Optional[Owner]:
        if expr is None or depth > self.settings.max_depth:
            return None
        expr = expr.unwrap()
        t = expr.type
        if t == 'identifier':
            binding = self.tree.lookup(expr.text, expr)
            if binding is None:
                return self.global_owner(expr.text, depth)
            return self._binding_owner(binding, depth)
        if t == 'this':
            return self.this_owner(expr)
        if t == 'object':
            return self.literal_owner(expr)
        if t == 'assignment_expression':
            return self.owner_of(expr.child_by_field('right'), depth + 1)
        if t == 'new_expression':
            classes = self.functions_of(expr.child_by_field('constructor'))
            if classes:
                return Owner('instance', classes[0].key, classes[0])
            return None
        if t in ('member_expression', 'subscript_expression'):
            split = member_path(expr)
            if split is None:
                return None
            root, props = split
            if (root.type == 'identifier' and root.text in self.global_aliases
                    and self.tree.is_global(root.text, root)):
                if not props:
                    return None
                owner = self.global_owner(props[0], depth)
                props = props[1:]
            else:
                owner = self.owner_of(root, depth + 1)
            for prop in props:
                if owner is None:
                    return None
                owner = self._member_owner(owner, prop, depth)
            return owner
        if t in ('class', 'class_declaration'):
            return Owner('binding', expr.key, expr)
        return None

    def _binding_owner(self, binding: Binding, depth: int) -> Owner:
        key = ('owner', binding.key)
        if not self._guard(key):
            return Owner('binding', binding.key, binding)
        try:
            if binding.kind in ('var', 'let', 'const') and not binding.path \
                    and binding.init is not None and not binding.assignments:
                init = binding.init.unwrap()
                if init.type in ('identifier', 'member_expression', 'assignment_expression',
                                 'new_expression', 'subscript_expression', 'this'):
                    inner = self.owner_of(init, depth + 1)
                    if inner is not None:
                        return inner
            elif binding.kind == 'param' and not binding.path and not binding.rest:
                for cb in self.trace_callers(binding.function)[:self.settings.max_callers]:
                    arg = cb.argument(binding.param_index)
                    if isinstance(arg, TSNode):
                        inner = self.owner_of(arg, depth + 1)
                        if inner is not None:
                            return inner
            return Owner('binding', binding.key, binding)
        finally:
            self._active.discard(key)

    def global_owner(self, name: str, depth: int = 0) -> Owner:
        key = ('global', name)
        if self._guard(key):
            try:
                for value in self.global_values(name):
                    inner = self.owner_of(value, depth + 1)
                    if inner is not None and inner.kind != 'global':
                        return inner
            finally:
                self._active.discard(key)
        return Owner('global', (name,), name)

    def global_values(self, name: str) -> List[TSNode]:
        values = list(self.tree.global_assignments.get(name, []))
        for alias in self.global_aliases:
            values.extend(self.tree.global_members.get((alias, name), []))
        return values

    def _member_owner(self, owner: Owner, prop: str, depth: int) -> Owner:
        for value in self.member_values(owner, prop):
            inner = self.owner_of(value, depth + 1)
            if inner is not None:
                return inner
        return Owner('member', (owner, prop), None)

    def this_owner(self, node: TSNode) -> Optional[Owner]:
        func = self.this_function(node)
        if func is None:
            return None
        literal = self.method_literal(func)
        if literal is not None:
            return self.literal_owner(literal)
        cls = self.class_of_method(func) or func
        return Owner('instance', cls.key, cls)

    @staticmethod
    def this_function(node: TSNode) -> Optional[TSNode]:
        """Function whose ``this`` is visible at node (arrows are transparent)."""
        cur = node.parent
        while cur is not None:
            if cur.type in FUNCTION_TYPES and cur.type != 'arrow_function':
                return cur
            cur = cur.parent
        return None

    @staticmethod
    def method_literal(func: TSNode) -> Optional[TSNode]:
        parent = func.parent
        if func.type == 'method_definition' and parent is not None and parent.type == 'object':
            return parent
        if parent is not None and parent.type == 'pair' and parent.parent is not None \
                and parent.parent.type == 'object':
            return parent.parent
        return None

    def class_of_method(self, func: TSNode) -> Optional[TSNode]:
        """Class node or constructor function that a method belongs to."""
        parent = func.parent
        if func.type == 'method_definition' and parent is not None and parent.type == 'class_body':
            return parent.parent
        target = _assign_target(func)
        if target is None:
            literal = self.method_literal(func)
            if literal is not None:
                target = _assign_target(literal)
                if target is not None:
                    split = member_path(target)
                    if split and split[1] and split[1][-1] == 'prototype':
                        funcs = self.functions_of(self._path_prefix(target, 1))
                        return funcs[0] if funcs else None
            return None
        split = member_path(target)
        if split is None or len(split[1]) < 2 or split[1][-2] != 'prototype':
            return None
        funcs = self.functions_of(self._path_prefix(target, 2))
        return funcs[0] if funcs else None

    @staticmethod
    def _path_prefix(member: TSNode, drop: int) -> TSNode:
        node = member.unwrap()
        for _ in range(drop):
            node = node.child_by_field('object').unwrap()
        return node

    def constructor_of(self, cls: TSNode) -> Optional[TSNode]:
        if cls.type in ('class', 'class_declaration'):
            body = cls.child_by_field('body')
            if body is None:
                return None
            for member in body.named_children:
                if member.type == 'method_definition':
                    name = member.child_by_field('name')
                    if name is not None and name.text == 'constructor':
                        return member
            return None
        return cls if is_function(cls) else None

    def class_fields(self, cls: TSNode, prop: str) -> List[TSNode]:
        """Values stored on instances: class fields and ``this.prop =`` in the constructor."""
        out = []
        if cls.type in ('class', 'class_declaration'):
            body = cls.child_by_field('body')
            for member in body.named_children if body is not None else []:
                if member.type == 'field_definition':
                    name = member.child_by_field('property')
                    value = member.child_by_field('value')
                    if name is not None and value is not None and name.text == prop:
                        out.append(value)
        ctor = self.constructor_of(cls)
        if ctor is not None:
            for node in function_body_nodes(ctor):
                if node.type != 'assignment_expression':
                    continue
                left = node.child_by_field('left').unwrap()
                if left.type != 'member_expression':
                    continue
                obj = left.child_by_field('object')
                name = left.child_by_field('property')
                if obj is not None and obj.type == 'this' and name is not None and name.text == prop:
                    out.append(node.child_by_field('right'))
        return out

    def literal_members(self, literal: TSNode, prop: str) -> List[TSNode]:
        out = []
        for child in literal.named_children:
            if child.type == 'pair':
                if property_key(child.child_by_field('key')) == prop:
                    out.append(child.child_by_field('value'))
            elif child.type == 'method_definition':
                if property_key(child.child_by_field('name')) == prop:
                    out.append(child)
            elif child.type == 'shorthand_property_identifier':
                if child.text == prop:
                    out.append(child)
        return out

    def member_values(self, owner: Owner, prop: str) -> List[TSNode]:
        """Expressions that may be stored in ``owner.prop``."""
        out: List[TSNode] = []
        kind = owner.kind
        if kind == 'binding':
            target = owner.target
            if isinstance(target, Binding):
                init = target.init.unwrap() if target.init is not None else None
                if init is not None and init.type == 'object' and not target.path:
                    out.extend(self.literal_members(init, prop))
                out.extend(target.member_assignments.get(prop, []))
        elif kind == 'literal':
            out.extend(self.literal_members(owner.target, prop))
        elif kind == 'global':
            name = owner.target
            out.extend(self.tree.global_members.get((name, prop), []))
            for alias in self.global_aliases:
                out.extend(self.tree.global_members.get((alias, f'{name}.{prop}'), []))
        elif kind == 'instance':
            cls = owner.target
            if cls.type in ('class', 'class_declaration'):
                body = cls.child_by_field('body')
                for member in body.named_children if body is not None else []:
                    if member.type == 'method_definition':
                        name = member.child_by_field('name')
                        if name is not None and name.text == prop:
                            out.append(member)
            else:
                binding = self._function_binding(cls)
                if binding is not None:
                    out.extend(binding.member_assignments.get(f'prototype.{prop}', []))
                    for proto in binding.member_assignments.get('prototype', []):
                        literal = self.object_literal_of(proto)
                        if literal is not None:
                            out.extend(self.literal_members(literal, prop))
            out.extend(self.class_fields(cls, prop))
        elif kind == 'member':
            parent, parent_prop = owner.ident
            for value in self.member_values(parent, parent_prop):
                inner = self.owner_of(value)
                if inner is not None and inner != owner:
                    out.extend(self.member_values(inner, prop))
        for literal in self.copy_edges.get(owner, []):
            out.extend(self.literal_members(literal, prop))
        return out

    def _function_binding(self, func: TSNode) -> Optional[Binding]:
        name = func.child_by_field('name')
        if name is not None and name.type == 'identifier':
            binding = self.tree.declared_by(name)
            if binding is not None:
                return binding
        parent = func.parent
        while parent is not None and parent.type == 'parenthesized_expression':
            parent = parent.parent
        if parent is not None and parent.type == 'variable_declarator':
            declared = parent.child_by_field('name')
            if declared is not None:
                return self.tree.declared_by(declared)
        target = _assign_target(func)
        if target is not None and target.type == 'identifier':
            return self.tree.lookup(target.text, target)
        return None

    # ------------------------------------------------------------------
    # Function values
    # ------------------------------------------------------------------

    def functions_of(self, expr: Optional[TSNode], depth: int = 0) -> List[TSNode]:
        """Function (or class) nodes an expression may evaluate to."""
        if expr is None or depth > self.settings.max_depth:
            return []
        expr = expr.unwrap()
        cached = self._functions_cache.get(expr.key)
        if cached is not None:
            return cached
        key = ('fn', expr.key)
        if not self._guard(key):
            return []
        try:
            result = self._functions_of(expr, depth)
        finally:
            self._active.discard(key)
        if depth == 0:
            self._functions_cache[expr.key] = result
        return result

    def _functions_of(self, expr: TSNode, depth: int) -> List[TSNode]:
        t = expr.type
        if t in FUNCTION_TYPES or t in ('class', 'class_declaration'):
            return [expr]
        if t == 'identifier':
            binding = self.tree.lookup(expr.text, expr)
            if binding is None:
                out = []
                for value in self.global_values(expr.text):
                    out.extend(self.functions_of(value, depth + 1))
                return _dedupe(out)
            return self._binding_functions(binding, depth)
        if t == 'assignment_expression':
            return self.functions_of(expr.child_by_field('right'), depth + 1)
        if t in ('member_expression', 'subscript_expression'):
            prop_node = expr.child_by_field('property') if t == 'member_expression' \
                else expr.child_by_field('index')
            if prop_node is None:
                return []
            prop = prop_node.text if t == 'member_expression' else prop_node.string_value()
            if prop is None:
                return []
            owner = self.owner_of(expr.child_by_field('object'), depth + 1)
            if owner is None:
                return []
            out = []
            for value in self.member_values(owner, prop):
                out.extend(self.functions_of(value, depth + 1))
            return _dedupe(out)
        if t == 'call_expression':
            callee = self.callee_of(expr)
            if callee is not None and callee.type == 'member_expression':
                prop = callee.child_by_field('property')
                if prop is not None and prop.text == 'bind':
                    return self.functions_of(callee.child_by_field('object'), depth + 1)
            return []
        if t in ('binary_expression', 'ternary_expression'):
            out = []
            fields = ('left', 'right') if t == 'binary_expression' else ('consequence', 'alternative')
            for name in fields:
                out.extend(self.functions_of(expr.child_by_field(name), depth + 1))
            return _dedupe(out)
        if t == 'shorthand_property_identifier':
            binding = self.tree.lookup(expr.text, expr)
            return self._binding_functions(binding, depth) if binding is not None else []
        return []

    def _binding_functions(self, binding: Binding, depth: int) -> List[TSNode]:
        if binding.kind in ('function', 'class'):
            return [binding.init] if binding.init is not None else []
        if binding.kind == 'param':
            out = []
            if binding.path or binding.rest:
                return out
            for cb in self.trace_callers(binding.function)[:self.settings.max_callers]:
                arg = cb.argument(binding.param_index)
                if isinstance(arg, TSNode):
                    out.extend(self.functions_of(arg, depth + 1))
            if binding.default is not None:
                out.extend(self.functions_of(binding.default, depth + 1))
            return _dedupe(out)
        if binding.path:
            return []
        out = []
        if binding.init is not None:
            out.extend(self.functions_of(binding.init, depth + 1))
        for value in binding.assignments:
            if value.type != 'augmented_assignment_expression':
                out.extend(self.functions_of(value, depth + 1))
        return _dedupe(out)

    # ------------------------------------------------------------------
    # Callers
    # ------------------------------------------------------------------

    def reference_names(self, func: TSNode) -> Tuple[Set[str], Set[str]]:
        """Identifier names and property names a function is reachable under."""
        names: Set[str] = set()
        props: Set[str] = set()
        name = func.child_by_field('name')
        if name is not None:
            if func.type == 'method_definition':
                key = property_key(name)
                if key:
                    props.add(key)
            elif name.type == 'identifier':
                names.add(name.text)
        self._holder_names(func, names, props)
        if func.type in ('class', 'class_declaration') and name is not None:
            names.add(name.text)

        frontier = list(names | props)
        seen = set(frontier)
        while frontier and len(seen) < 64:
            ref_name = frontier.pop()
            for ref in self.value_refs.get(ref_name, []):
                before = names | props
                self._holder_names(ref, names, props)
                for new in (names | props) - before:
                    if new not in seen:
                        seen.add(new)
                        frontier.append(new)
        return names, props

    def _holder_names(self, node: TSNode, names: Set[str], props: Set[str]):
        parent = node.parent
        while parent is not None and parent.type == 'parenthesized_expression':
            parent = parent.parent
        if parent is None:
            return
        if parent.type == 'variable_declarator':
            declared = parent.child_by_field('name')
            if declared is not None and declared.type == 'identifier':
                names.add(declared.text)
        elif parent.type == 'pair':
            key = property_key(parent.child_by_field('key'))
            if key:
                props.add(key)
        elif node.type == 'shorthand_property_identifier':
            props.add(node.text)
        cur = node
        target = _assign_target(cur)
        while target is not None:
            target = target.unwrap()
            if target.type == 'identifier':
                names.add(target.text)
            else:
                split = member_path(target)
                if split is not None and split[1]:
                    props.add(split[1][-1])
                    if split[0].type == 'identifier' and len(split[1]) == 1 and \
                            split[0].text in self.global_aliases:
                        names.add(split[1][0])
            cur = target.parent
            target = _assign_target(cur) if cur is not None else None

    def trace_callers(self, func: Optional[TSNode]) -> List[CallerBinding]:
        """Ordered list of static call sites of ``func`` with their arguments."""
        if func is None:
            return []
        cached = self._callers_cache.get(func.key)
        if cached is not None:
            return cached
        key = ('callers', func.key)
        if not self._guard(key):
            return []
        try:
            result = self._trace(func)
        finally:
            self._active.discard(key)
        result.sort(key=lambda b: (b.site.start_byte, b.site.end_byte, b.via))
        self._callers_cache[func.key] = result
        return result

    def _trace(self, func: TSNode) -> List[CallerBinding]:
        out: List[CallerBinding] = []
        seen = set()

        def add(binding: CallerBinding):
            ident = (binding.site.key, binding.via)
            if ident not in seen:
                seen.add(ident)
                out.append(binding)

        names, props = self.reference_names(func)

        # Direct calls through names and property paths.
        candidates: List[TSNode] = []
        for name in sorted(names):
            candidates.extend(self.calls_by_name.get(name, []))
        for prop in sorted(props):
            candidates.extend(self.calls_by_prop.get(prop, []))
        for call in candidates:
            callee = self.callee_of(call)
            if func in self.functions_of(callee):
                via = 'new' if call.type == 'new_expression' else (
                    'direct' if callee.type == 'identifier' else 'method')
                receiver = callee.child_by_field('object') if callee.type != 'identifier' else None
                add(CallerBinding(call, func, tuple(call.get_arguments()), via, receiver))

        # f.call(thisArg, ...) / f.apply(thisArg, [...])
        for method in ('call', 'apply'):
            for call in self.calls_by_prop.get(method, []):
                callee = self.callee_of(call)
                target = callee.child_by_field('object')
                if target is None or target.unwrap().type in ('subscript_expression',):
                    continue
                if func not in self.functions_of(target):
                    continue
                args = call.get_arguments()
                add(CallerBinding(call, func, self._spread_call_args(method, args), method))

        # (function () { ... })(...)
        iife = self.iifes.get(func.key)
        if iife is not None:
            add(CallerBinding(iife, func, tuple(iife.get_arguments()), 'iife'))

        # Callbacks: the function (or a name for it) passed as an argument.
        for site, index in self._argument_positions(func, names):
            for binding in self._callback_bindings(func, site, index):
                add(binding)

        # onmessage = fn
        target = _assign_target(func)
        if target is not None:
            split = member_path(target)
            prop = split[1][-1] if split and split[1] else (target.text if target.type == 'identifier' else '')
            if prop.startswith('on') and len(prop) > 2:
                add(CallerBinding(target.parent, func, (EventOf(prop[2:]),), 'event'))

        # Stored callbacks.
        for owner, pushed in self.registries.items():
            if any(func in self.functions_of(expr) for expr in pushed):
                for binding in self._registry_invocations(func, owner):
                    add(binding)
        return out

    @staticmethod
    def _spread_call_args(method: str, args: List[TSNode]) -> Tuple[Argument, ...]:
        if method == 'call':
            return tuple(args[1:])
        if len(args) < 2:
            return ()
        arr = args[1].unwrap()
        if arr.type == 'array':
            return tuple(arr.named_children)
        return (ElementsOf(arr),)

    def _argument_positions(self, func: TSNode, names: Set[str]) -> List[Tuple[TSNode, int]]:
        refs = [func]
        for name in sorted(names):
            for ref in self.value_refs.get(name, []):
                if ref.parent is not None and ref.parent.type == 'arguments':
                    refs.append(ref)
        out = []
        for ref in refs:
            node = ref
            parent = node.parent
            while parent is not None and parent.type == 'parenthesized_expression':
                node, parent = parent, parent.parent
            if parent is None or parent.type != 'arguments':
                continue
            if ref is not func and func not in self.functions_of(ref):
                continue
            call = parent.parent
            args = parent.named_children
            index = next((i for i, a in enumerate(args) if a.key == node.key), -1)
            if call is not None and index >= 0:
                out.append((call, index))
        return out

    def _callback_bindings(self, func: TSNode, site: TSNode, index: int) -> List[CallerBinding]:
        callee = self.callee_of(site)
        if callee is None:
            return []
        args = site.get_arguments()
        if callee.type == 'member_expression':
            prop = callee.child_by_field('property').text
            receiver = callee.child_by_field('object')
            if prop in ITERATION_METHODS and index == 0:
                return [CallerBinding(site, func, (ElementsOf(receiver), None, receiver), 'builtin')]
            if prop in REDUCE_METHODS and index == 0:
                first = args[1] if len(args) > 1 else ElementsOf(receiver)
                return [CallerBinding(site, func, (first, ElementsOf(receiver)), 'builtin')]
            if prop == 'then' and index == 0:
                return [CallerBinding(site, func, (receiver,), 'then', receiver)]
            if prop in ('addEventListener', 'on') and index == 1 and args:
                event = args[0].string_value()
                if event:
                    return [CallerBinding(site, func, (EventOf(event),), 'event', receiver)]
        elif callee.type == 'identifier' and callee.text in TIMER_FUNCTIONS \
                and self.tree.is_global(callee.text, callee):
            return [CallerBinding(site, func, tuple(args[2:]), 'timer')]

        out = []
        for holder in self.functions_of(callee):
            param = self._param_binding(holder, index)
            if param is None:
                continue
            for invocation in self._param_invocations(param):
                out.append(CallerBinding(invocation.site, func, invocation.args, 'callback'))
        return out

    def _param_binding(self, func: TSNode, index: int) -> Optional[Binding]:
        sid = self.tree.function_scope(func)
        if sid is None:
            return None
        for binding in self.tree.scopes[sid].bindings.values():
            if binding.kind == 'param' and binding.param_index == index and not binding.path:
                return binding
        return None

    def _param_invocations(self, binding: Binding) -> List[CallerBinding]:
        """Calls made through a variable holding a function value."""
        out = []
        for call in self.calls_by_name.get(binding.name, []):
            callee = self.callee_of(call)
            if self.tree.lookup(binding.name, callee) == binding:
                out.append(CallerBinding(call, binding.function, tuple(call.get_arguments()), 'callback'))
        for method in ('call', 'apply'):
            for call in self.calls_by_prop.get(method, []):
                target = self.callee_of(call).child_by_field('object').unwrap()
                if target.type == 'identifier' and target.text == binding.name and \
                        self.tree.lookup(binding.name, target) == binding:
                    out.append(CallerBinding(call, binding.function,
                                             self._spread_call_args(method, call.get_arguments()),
                                             'callback'))
        return out

    def _registry_invocations(self, func: TSNode, owner: Owner) -> List[CallerBinding]:
        out = []
        for call in self.subscript_calls:
            callee = self.callee_of(call)
            if self.owner_of(callee.child_by_field('object')) == owner:
                out.append(CallerBinding(call, func, tuple(call.get_arguments()), 'registry'))
        for method in ('call', 'apply'):
            for call in self.calls_by_prop.get(method, []):
                target = self.callee_of(call).child_by_field('object').unwrap()
                if target.type == 'subscript_expression' and \
                        self.owner_of(target.child_by_field('object')) == owner:
                    out.append(CallerBinding(call, func,
                                             self._spread_call_args(method, call.get_arguments()),
                                             'registry'))
        for prop in sorted(ITERATION_METHODS):
            for call in self.calls_by_prop.get(prop, []):
                callee = self.callee_of(call)
                if self.owner_of(callee.child_by_field('object')) != owner:
                    continue
                args = call.get_arguments()
                for handler in self.functions_of(args[0]) if args else []:
                    param = self._param_binding(handler, 0)
                    if param is None:
                        continue
                    for inv in self._param_invocations(param):
                        out.append(CallerBinding(inv.site, func, inv.args, 'registry'))
        for loop in self.loops_of:
            if self.owner_of(loop.child_by_field('right')) != owner:
                continue
            left = loop.child_by_field('left')
            binding = self.tree.declared_by(left) if left is not None else None
            if binding is None and left is not None:
                binding = self.tree.lookup(left.text, left)
            if binding is None:
                continue
            for call in self.calls_by_name.get(binding.name, []):
                if self.tree.lookup(binding.name, self.callee_of(call)) == binding:
                    out.append(CallerBinding(call, func, tuple(call.get_arguments()), 'registry'))
        return out

    # ------------------------------------------------------------------
    # Built-ins
    # ------------------------------------------------------------------

    def global_path(self, node: Optional[TSNode]) -> Optional[Tuple[str, ...]]:
        """Dotted path of a member chain rooted at an unbound global, aliases stripped.

        ``window.location.hash`` -> ('location', 'hash'); a shadowed root gives None.
        """
        if node is None:
            return None
        node = node.unwrap()
        if node.type == 'identifier':
            return (node.text,) if self.tree.is_global(node.text, node) else None
        split = member_path(node)
        if split is None:
            return None
        root, props = split
        if root.type != 'identifier' or not self.tree.is_global(root.text, root):
            return None
        path = (root.text,) + props
        if path[0] in self.global_aliases and len(path) > 1:
            path = path[1:]
        return path

    def is_builtin(self, node: Optional[TSNode], *names: str) -> bool:
        """``node`` denotes one of the global built-ins ``names`` (optionally via window/self)."""
        path = self.global_path(node)
        return path is not None and len(path) == 1 and path[0] in names

    def is_jquery(self, node: TSNode, depth: int = 0) -> bool:
        node = node.unwrap()
        if self.is_builtin(node, '$', 'jQuery'):
            return True
        if node.type != 'identifier' or depth > 4:
            return False
        binding = self.tree.lookup(node.text, node)
        if binding is None or binding.path:
            return False
        if binding.kind == 'param':
            for cb in self.trace_callers(binding.function)[:self.settings.max_callers]:
                arg = cb.argument(binding.param_index)
                if isinstance(arg, TSNode) and self.is_jquery(arg, depth + 1):
                    return True
            return False
        if binding.init is not None and not binding.assignments:
            return self.is_jquery(binding.init, depth + 1)
        return False

    def is_jquery_collection(self, node: TSNode) -> bool:
        """``$(sel)`` or a method chain starting from it."""
        node = node.unwrap()
        while node.type == 'call_expression':
            callee = node.child_by_field('function').unwrap()
            if self.is_jquery(callee):
                return True
            if callee.type != 'member_expression':
                return False
            node = callee.child_by_field('object').unwrap()
        return False

    def is_instance_of(self, node: Optional[TSNode], name: str, depth: int = 0) -> bool:
        """``node`` holds ``new name(...)`` (directly or through a local variable)."""
        if node is None or depth > 4:
            return False
        node = node.unwrap()
        if node.type == 'new_expression':
            return self.is_builtin(node.child_by_field('constructor'), name)
        if node.type == 'identifier':
            binding = self.tree.lookup(node.text, node)
            if binding is None or binding.path or binding.kind not in ('var', 'let', 'const'):
                return False
            values = ([binding.init] if binding.init is not None else []) + binding.assignments
            return bool(values) and any(self.is_instance_of(v, name, depth + 1) for v in values)
        return False

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def instantiations(self, receiver: Optional[TSNode]) -> List[TSNode]:
        """``new X(...)`` expressions a receiver expression may hold."""
        if receiver is None:
            return []
        receiver = receiver.unwrap()
        if receiver.type == 'new_expression':
            return [receiver]
        if receiver.type != 'identifier':
            return []
        binding = self.tree.lookup(receiver.text, receiver)
        if binding is None or binding.path:
            return []
        values = ([binding.init] if binding.init is not None else []) + binding.assignments
        return [v.unwrap() for v in values if v.unwrap().type == 'new_expression']


def _dedupe(nodes: List[TSNode]) -> List[TSNode]:
    seen = set()
    out = []
    for n in nodes:
        if n.key not in seen:
            seen.add(n.key)
            out.append(n)
    return out
