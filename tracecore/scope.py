#!/usr/bin/env python3
"""
Scope resolution for JavaScript syntax trees.

Builds every lexical scope of a program in one iterative top-down traversal.
Scopes live in an arena (``ScopeTree.scopes``) and refer to their parent by
index. Hoisting follows the language: ``var`` and function declarations bind in
the nearest function (or program) scope, ``let``/``const``/``class`` in the
enclosing block, parameters and a named function expression's own name in the
function scope. Every ``name = value`` and ``name.prop = value`` assignment is
attached to the binding it targets, so later passes can merge assigned values.

Anything not bound anywhere is an implicit global; lookups return None for it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .ts_adapter import TSNode, FUNCTION_TYPES

_HOIST_KINDS = ('function', 'program')
_DECLARATION_FUNCTIONS = ('function_declaration', 'generator_function_declaration')
_NAMED_FUNCTION_EXPRESSIONS = ('function_expression', 'function', 'generator_function')
_LOOPS = ('for_statement', 'for_in_statement')


@dataclass
class Binding:
    """A declared name.

    ``path`` locates the name inside a destructuring pattern, as a tuple of
    steps: ``('key', name)``, ``('index', i)``, ``('rest',)``, ``('slice', i)``,
    ``('element',)`` for ``for...of`` and ``('keys',)`` for ``for...in``.
    """
    name: str
    kind: str  # param, var, let, const, function, class, import, catch-param
    scope_id: int
    node: TSNode
    init: Optional[TSNode] = None
    path: Tuple = ()
    default: Optional[TSNode] = None
    function: Optional[TSNode] = None
    param_index: int = -1
    rest: bool = False
    assignments: List[TSNode] = field(default_factory=list)
    member_assignments: Dict[str, List[TSNode]] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[int, str]:
        return (self.scope_id, self.name)

    @property
    def is_param(self) -> bool:
        return self.kind == 'param'

    def __hash__(self):
        return hash(self.key)

    def __eq__(self, other):
        return isinstance(other, Binding) and self.key == other.key


@dataclass
class Scope:
    id: int
    parent: Optional[int]
    kind: str  # program, function, block, for, catch
    node: TSNode
    bindings: Dict[str, Binding] = field(default_factory=dict)


def member_path(node: TSNode) -> Optional[Tuple[TSNode, Tuple[str, ...]]]:
    """Split ``a.b["c"].d`` into its root node and property names."""
    props: List[str] = []
    cur = node.unwrap()
    while True:
        if cur.type == 'member_expression':
            prop = cur.child_by_field('property')
            if prop is None:
                return None
            props.append(prop.text)
            cur = cur.child_by_field('object').unwrap()
        elif cur.type == 'subscript_expression':
            index = cur.child_by_field('index')
            key = index.string_value() if index is not None else None
            if key is None:
                return None
            props.append(key)
            cur = cur.child_by_field('object').unwrap()
        else:
            break
    if cur.type not in ('identifier', 'this'):
        return None
    return cur, tuple(reversed(props))


def enclosing_function(node: TSNode) -> Optional[TSNode]:
    cur = node.parent
    while cur is not None:
        if cur.type in FUNCTION_TYPES:
            return cur
        cur = cur.parent
    return None


def property_key(node: Optional[TSNode]) -> Optional[str]:
    """Static name of an object key / pattern key node."""
    if node is None:
        return None
    t = node.type
    if t in ('property_identifier', 'identifier', 'shorthand_property_identifier',
             'shorthand_property_identifier_pattern', 'private_property_identifier'):
        return node.text
    if t == 'number':
        return node.text
    if t == 'string':
        return node.string_value()
    if t == 'computed_property_name':
        inner = node.named_children
        if inner:
            return inner[0].string_value()
    return None


class ScopeTree:
    """Arena of scopes plus assignment bookkeeping for one program."""

    def __init__(self, root: TSNode):
        self.root = root
        self.scopes: List[Scope] = []
        self.functions: List[TSNode] = []
        self.global_assignments: Dict[str, List[TSNode]] = {}
        self.global_members: Dict[Tuple[str, str], List[TSNode]] = {}
        self._node_scope: Dict[tuple, int] = {}
        self._ident_scope: Dict[tuple, int] = {}
        self._declared: Dict[tuple, Binding] = {}
        self._pending_assignments: List[Tuple[TSNode, int]] = []
        self._build()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def scope_of(self, node: TSNode) -> int:
        cached = self._ident_scope.get(node.key)
        if cached is not None:
            return cached
        cur = node
        while cur is not None:
            sid = self._node_scope.get(cur.key)
            if sid is not None and cur.key != node.key:
                return sid
            cur = cur.parent
        return 0

    def scope_for_node(self, node: TSNode) -> Optional[int]:
        """Scope created by ``node`` itself (function, block, loop, catch)."""
        return self._node_scope.get(node.key)

    def lookup(self, name: str, node: TSNode) -> Optional[Binding]:
        """Nearest binding of ``name`` visible at ``node``; None means global."""
        return self.lookup_in(name, self.scope_of(node))

    def lookup_in(self, name: str, scope_id: Optional[int]) -> Optional[Binding]:
        while scope_id is not None:
            scope = self.scopes[scope_id]
            binding = scope.bindings.get(name)
            if binding is not None:
                return binding
            scope_id = scope.parent
        return None

    def is_global(self, name: str, node: TSNode) -> bool:
        return self.lookup(name, node) is None

    def declared_by(self, identifier: TSNode) -> Optional[Binding]:
        """Binding introduced by a declaring identifier node."""
        return self._declared.get(identifier.key)

    def ancestors(self, scope_id: int):
        while scope_id is not None:
            yield scope_id
            scope_id = self.scopes[scope_id].parent

    def function_scope(self, func: TSNode) -> Optional[int]:
        return self._node_scope.get(func.key)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _new_scope(self, kind: str, node: TSNode, parent: Optional[int]) -> int:
        sid = len(self.scopes)
        self.scopes.append(Scope(sid, parent, kind, node))
        self._node_scope[node.key] = sid
        return sid

    def _hoist_target(self, scope_id: int) -> int:
        for sid in self.ancestors(scope_id):
            if self.scopes[sid].kind in _HOIST_KINDS:
                return sid
        return 0

    def _declare(self, ident: TSNode, kind: str, scope_id: int, **info) -> Binding:
        name = ident.text
        scope = self.scopes[scope_id]
        existing = scope.bindings.get(name)
        if existing is not None:
            # Redeclaration (var x twice, var after function): treat as assignment.
            if info.get('init') is not None and not info.get('path'):
                existing.assignments.append(info['init'])
            self._declared[ident.key] = existing
            return existing
        binding = Binding(name=name, kind=kind, scope_id=scope_id, node=ident, **info)
        scope.bindings[name] = binding
        self._declared[ident.key] = binding
        self._ident_scope[ident.key] = scope_id
        return binding

    def _declare_pattern(self, pattern: TSNode, kind: str, scope_id: int,
                         path: Tuple = (), default: Optional[TSNode] = None, **info):
        t = pattern.type
        if t in ('identifier', 'shorthand_property_identifier_pattern'):
            self._declare(pattern, kind, scope_id, path=path, default=default, **info)
        elif t == 'assignment_pattern':
            left = pattern.child_by_field('left')
            if left is not None:
                self._declare_pattern(left, kind, scope_id, path,
                                      pattern.child_by_field('right'), **info)
        elif t == 'object_pattern':
            for child in pattern.named_children:
                ct = child.type
                if ct == 'shorthand_property_identifier_pattern':
                    self._declare(child, kind, scope_id, path=path + (('key', child.text),), **info)
                elif ct == 'pair_pattern':
                    key = property_key(child.child_by_field('key'))
                    value = child.child_by_field('value')
                    if value is not None:
                        self._declare_pattern(value, kind, scope_id, path + (('key', key),), **info)
                elif ct == 'object_assignment_pattern':
                    left = child.child_by_field('left')
                    if left is not None:
                        step = path + (('key', left.text),) if left.type.startswith('shorthand') else path
                        self._declare_pattern(left, kind, scope_id, step,
                                              child.child_by_field('right'), **info)
                elif ct == 'rest_pattern':
                    inner = child.named_children
                    if inner:
                        self._declare_pattern(inner[0], kind, scope_id, path + (('rest',),), **info)
        elif t == 'array_pattern':
            index = 0
            for child in pattern.children:
                if child.type == ',':
                    index += 1
                elif child.type == 'rest_pattern':
                    inner = child.named_children
                    if inner:
                        self._declare_pattern(inner[0], kind, scope_id, path + (('slice', index),), **info)
                elif child.is_named and child.type != 'comment':
                    self._declare_pattern(child, kind, scope_id, path + (('index', index),), **info)
        elif t == 'rest_pattern':
            inner = pattern.named_children
            if inner:
                info['rest'] = True
                self._declare_pattern(inner[0], kind, scope_id, path, default, **info)

    def _declare_function(self, node: TSNode, scope_id: int) -> int:
        fscope = self._new_scope('function', node, scope_id)
        self.functions.append(node)
        name = node.child_by_field('name')
        if name is not None and name.type == 'identifier':
            if node.type in _DECLARATION_FUNCTIONS:
                self._declare(name, 'function', self._hoist_target(scope_id), init=node)
            elif node.type in _NAMED_FUNCTION_EXPRESSIONS:
                self._declare(name, 'function', fscope, init=node)
        single = node.child_by_field('parameter')
        if single is not None:
            self._declare_pattern(single, 'param', fscope, function=node, param_index=0)
        params = node.child_by_field('parameters')
        if params is not None:
            for i, p in enumerate(params.named_children):
                self._declare_pattern(p, 'param', fscope, function=node, param_index=i)
        return fscope

    def _declare_variables(self, node: TSNode, scope_id: int):
        if node.type == 'variable_declaration':
            kind = 'var'
        else:
            kind_node = node.child_by_field('kind')
            kind = kind_node.text if kind_node is not None else node.children[0].type
        target = self._hoist_target(scope_id) if kind == 'var' else scope_id
        for decl in node.named_children:
            if decl.type != 'variable_declarator':
                continue
            name = decl.child_by_field('name')
            if name is not None:
                self._declare_pattern(name, kind, target, init=decl.child_by_field('value'))

    def _declare_loop_variable(self, node: TSNode, scope_id: int):
        kind_node = node.child_by_field('kind')
        left = node.child_by_field('left')
        if kind_node is None or left is None:
            return
        kind = kind_node.text
        target = self._hoist_target(scope_id) if kind == 'var' else scope_id
        op = node.child_by_field('operator')
        step = ('keys',) if op is not None and op.text == 'in' else ('element',)
        self._declare_pattern(left, kind, target, path=(step,), init=node.child_by_field('right'))

    def _declare_imports(self, node: TSNode):
        for child in node.walk_descendants():
            if child.type == 'import_specifier':
                alias = child.child_by_field('alias') or child.child_by_field('name')
                if alias is not None and alias.type == 'identifier':
                    self._declare(alias, 'import', 0, init=node)
            elif child.type == 'namespace_import':
                for ident in child.named_children:
                    if ident.type == 'identifier':
                        self._declare(ident, 'import', 0, init=node)
            elif child.type == 'import_clause':
                for ident in child.named_children:
                    if ident.type == 'identifier':
                        self._declare(ident, 'import', 0, init=node)

    def _build(self):
        self._new_scope('program', self.root, None)
        stack: List[Tuple[TSNode, int]] = [(c, 0) for c in reversed(self.root.children)]
        while stack:
            node, sid = stack.pop()
            t = node.type
            child_scope = sid

            if t in ('identifier', 'this', 'shorthand_property_identifier'):
                self._ident_scope.setdefault(node.key, sid)
                continue
            if t in FUNCTION_TYPES:
                child_scope = self._declare_function(node, sid)
            elif t == 'statement_block':
                parent = node.parent
                if parent is None or parent.type not in FUNCTION_TYPES:
                    child_scope = self._new_scope('block', node, sid)
            elif t in _LOOPS:
                child_scope = self._new_scope('for', node, sid)
                if t == 'for_in_statement':
                    self._declare_loop_variable(node, child_scope)
            elif t == 'catch_clause':
                child_scope = self._new_scope('catch', node, sid)
                param = node.child_by_field('parameter')
                if param is not None:
                    self._declare_pattern(param, 'catch-param', child_scope)
            elif t == 'switch_body':
                child_scope = self._new_scope('block', node, sid)
            elif t in ('variable_declaration', 'lexical_declaration'):
                self._declare_variables(node, sid)
            elif t == 'class_declaration':
                name = node.child_by_field('name')
                if name is not None:
                    self._declare(name, 'class', sid, init=node)
            elif t == 'import_statement':
                self._declare_imports(node)
                continue
            elif t in ('assignment_expression', 'augmented_assignment_expression'):
                self._pending_assignments.append((node, sid))

            for child in reversed(node.children):
                if child.is_named:
                    stack.append((child, child_scope))

        for node, sid in self._pending_assignments:
            self._record_assignment(node, sid)
        self._pending_assignments = []

    def _record_assignment(self, node: TSNode, scope_id: int):
        left = node.child_by_field('left')
        if left is None:
            return
        left = left.unwrap()
        value = node.child_by_field('right') if node.type == 'assignment_expression' else node
        if value is None:
            return
        if left.type == 'identifier':
            binding = self.lookup_in(left.text, scope_id)
            if binding is not None:
                binding.assignments.append(value)
            else:
                self.global_assignments.setdefault(left.text, []).append(value)
            return
        if node.type != 'assignment_expression':
            return
        split = member_path(left)
        if split is None:
            return
        root, props = split
        if root.type != 'identifier' or not props:
            return
        prop_key = '.'.join(props)
        binding = self.lookup_in(root.text, scope_id)
        if binding is not None:
            binding.member_assignments.setdefault(prop_key, []).append(value)
        else:
            self.global_members.setdefault((root.text, prop_key), []).append(value)
