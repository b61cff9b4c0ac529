#!/usr/bin/env python3
"""
jstrace Dangerous-Pattern Detectors

Structural checks that are not plain source-to-sink flows:

    postmessage-no-origin         message handler never checks event.origin
    postmessage-weak-origin       ...checks it only with indexOf/includes/startsWith/endsWith
    postmessage-wildcard-target   x.postMessage(data, "*")
    prototype-pollution           obj[userKey] = v, obj.__proto__ = userValue
    prototype-pollution-define    Object.defineProperty / Reflect.set with a computed key
    prototype-pollution-merge     Object.assign(target, userObject)
    regex-dynamic                 new RegExp(userValue)
    regex-implicit                str.match(userValue) / str.search(userValue)
    trusted-types-passthrough     trustedTypes.createPolicy(name, {createHTML: s => s})

User control is decided by the taint tracker, so these detectors see the
same sources, sanitizers and call contexts the sink findings do.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Set

from .ts_adapter import TSNode
from .scope import ScopeTree, Binding
from .callgraph import CallGraph, returned_expressions
from .taint import TaintTracker

logger = logging.getLogger(__name__)

STRICT_COMPARISONS = ('===', '!==', '==', '!=')
WEAK_ORIGIN_METHODS = ('indexOf', 'includes', 'startsWith', 'endsWith', 'search', 'match', 'test')
POLICY_METHODS = ('createHTML', 'createScript', 'createScriptURL')
DEFINE_CALLS = (('Object', 'defineProperty'), ('Reflect', 'set'), ('Reflect', 'defineProperty'))

DESCRIPTIONS = {
    'postmessage-no-origin': 'message event handler does not verify event.origin',
    'postmessage-weak-origin': 'message event handler checks event.origin with a substring match',
    'postmessage-wildcard-target': 'postMessage sends data to any origin ("*")',
    'prototype-pollution': 'property write with a user-controlled key or __proto__ value',
    'prototype-pollution-define': 'property definition with a computed key',
    'prototype-pollution-merge': 'Object.assign merges a user-controlled object',
    'regex-dynamic': 'regular expression built from user-controlled input',
    'regex-implicit': 'user-controlled input used as an implicit regular expression',
    'trusted-types-passthrough': 'Trusted Types policy returns its input unchanged',
}


@dataclass
class PatternFinding:
    type: str
    severity: str
    description: str
    line: int
    column: int

    def to_dict(self) -> dict:
        return {'type': self.type, 'severity': self.severity,
                'description': self.description,
                'location': {'line': self.line, 'column': self.column}}


class PatternDetector:
    """Runs every detector over one program."""

    def __init__(self, tree: ScopeTree, graph: CallGraph, tracker: TaintTracker):
        self.tree = tree
        self.graph = graph
        self.tracker = tracker
        self.findings: List[PatternFinding] = []
        self._handlers: Set[tuple] = set()

    def _add(self, kind: str, severity: str, node: TSNode, detail: str = ''):
        description = DESCRIPTIONS[kind] + (f': {detail}' if detail else '')
        for f in self.findings:
            if (f.type, f.line, f.column) == (kind, node.line, node.column):
                return
        self.findings.append(PatternFinding(kind, severity, description, node.line, node.column))

    def run(self) -> List[PatternFinding]:
        for node in self.tree.root.walk_descendants():
            t = node.type
            if t == 'call_expression':
                self._call(node)
            elif t == 'new_expression':
                if self.graph.is_builtin(node.child_by_field('constructor'), 'RegExp'):
                    self._regex(node)
            elif t == 'assignment_expression':
                self._assignment(node)
        logger.debug("Patterns: %d findings", len(self.findings))
        return self.findings

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _call(self, node: TSNode):
        callee = node.child_by_field('function')
        if callee is None:
            return
        callee = callee.unwrap()
        args = node.get_arguments()
        path = self.graph.global_path(callee)
        if path == ('RegExp',):
            self._regex(node)
        elif path == ('addEventListener',):
            self._listener(node, args)
        elif path == ('postMessage',):
            self._wildcard(node, args)
        elif path == ('Object', 'assign'):
            self._merge(node, args)
        elif path in DEFINE_CALLS:
            self._define(node, args, '.'.join(path))
        elif path == ('trustedTypes', 'createPolicy'):
            self._policy(node, args)
        elif callee.type == 'member_expression':
            prop = callee.child_by_field('property').text
            if prop == 'postMessage':
                self._wildcard(node, args)
            elif prop in ('match', 'search') and args:
                if self.tracker.is_user_controlled(args[0]):
                    self._add('regex-implicit', 'low', node, f'.{prop}()')

    def _assignment(self, node: TSNode):
        left = node.child_by_field('left').unwrap()
        right = node.child_by_field('right')
        if self.graph.global_path(left) == ('onmessage',):
            for func in self.graph.functions_of(right):
                self._handler(node, func)
            return
        if left.type == 'subscript_expression':
            index = left.child_by_field('index')
            if index is not None and index.type != 'string' and \
                    self.tracker.is_user_controlled(index):
                self._add('prototype-pollution', 'high', node, index.text)
                return
        if left.type in ('member_expression', 'subscript_expression'):
            prop = left.child_by_field('property') if left.type == 'member_expression' \
                else left.child_by_field('index')
            name = prop.text if prop is not None and prop.type != 'string' else \
                (prop.string_value() if prop is not None else None)
            if name == '__proto__' and self.tracker.is_user_controlled(right):
                self._add('prototype-pollution', 'high', node, '__proto__')

    # ------------------------------------------------------------------
    # postMessage
    # ------------------------------------------------------------------

    def _listener(self, node: TSNode, args: List[TSNode]):
        if len(args) < 2 or args[0].unwrap().string_value() != 'message':
            return
        for func in self.graph.functions_of(args[1]):
            self._handler(node, func)

    def _handler(self, node: TSNode, func: TSNode):
        if func.key in self._handlers:
            return
        self._handlers.add(func.key)
        check = self._origin_check(func)
        if check == 'strict':
            return
        kind = 'postmessage-weak-origin' if check == 'weak' else 'postmessage-no-origin'
        severity = 'high' if self._reaches_sink(func) else 'medium'
        self._add(kind, severity, node)

    def _event_param(self, func: TSNode) -> Optional[Binding]:
        sid = self.tree.function_scope(func)
        if sid is None:
            return None
        for binding in self.tree.scopes[sid].bindings.values():
            if binding.kind == 'param' and binding.param_index == 0 and not binding.path:
                return binding
        return None

    def _is_event(self, node: TSNode, event: Optional[Binding]) -> bool:
        node = node.unwrap()
        return event is not None and node.type == 'identifier' and \
            self.tree.lookup(node.text, node) == event

    def _is_origin(self, node: Optional[TSNode], func: TSNode, event: Optional[Binding]) -> bool:
        """``event.origin``, a destructured ``origin`` or a local copy of either."""
        if node is None:
            return False
        node = node.unwrap()
        if node.type == 'member_expression':
            prop = node.child_by_field('property')
            return prop is not None and prop.text == 'origin' and \
                self._is_event(node.child_by_field('object'), event)
        if node.type != 'identifier':
            return False
        binding = self.tree.lookup(node.text, node)
        if binding is None or binding.assignments:
            return False
        if binding.path == (('key', 'origin'),):
            if binding.kind == 'param':
                return binding.function is not None and binding.function.key == func.key \
                    and binding.param_index == 0
            return binding.init is not None and self._is_event(binding.init, event)
        if binding.kind in ('var', 'let', 'const') and not binding.path and binding.init is not None:
            init = binding.init.unwrap()
            return init.type == 'member_expression' and self._is_origin(init, func, event)
        return False

    def _origin_check(self, func: TSNode) -> Optional[str]:
        event = self._event_param(func)
        weak = False
        for node in func.walk_descendants():
            if node.type == 'binary_expression' and node.operator() in STRICT_COMPARISONS:
                if self._is_origin(node.child_by_field('left'), func, event) or \
                        self._is_origin(node.child_by_field('right'), func, event):
                    return 'strict'
            elif node.type == 'call_expression':
                callee = node.child_by_field('function').unwrap()
                if callee.type != 'member_expression':
                    continue
                prop = callee.child_by_field('property').text
                args = node.get_arguments()
                if prop in WEAK_ORIGIN_METHODS and \
                        self._is_origin(callee.child_by_field('object'), func, event):
                    weak = True
                elif prop in ('includes', 'indexOf', 'has') and args and \
                        self._is_origin(args[0], func, event):
                    # Allow-list lookup: ALLOWED.includes(event.origin)
                    return 'strict'
            elif node.type == 'switch_statement':
                if self._is_origin(node.child_by_field('value'), func, event):
                    return 'strict'
        return 'weak' if weak else None

    def _reaches_sink(self, func: TSNode) -> bool:
        if self.tracker.sinks_within(func):
            return True
        for node in func.walk_descendants():
            if node.type != 'call_expression':
                continue
            for callee in self.graph.functions_of(node.child_by_field('function')):
                if callee.key != func.key and self.tracker.sinks_within(callee):
                    return True
        return False

    def _wildcard(self, node: TSNode, args: List[TSNode]):
        if len(args) < 2:
            return
        target = args[1].unwrap()
        if target.string_value() == '*':
            self._add('postmessage-wildcard-target', 'medium', node)
            return
        literal = self.graph.object_literal_of(target)
        if literal is None:
            return
        for value in self.graph.literal_members(literal, 'targetOrigin'):
            if value.unwrap().string_value() == '*':
                self._add('postmessage-wildcard-target', 'medium', node)
                return

    # ------------------------------------------------------------------
    # Prototype pollution
    # ------------------------------------------------------------------

    def _define(self, node: TSNode, args: List[TSNode], name: str):
        if len(args) < 2:
            return
        key = args[1].unwrap()
        if key.type == 'number' or key.string_value() is not None:
            return
        severity = 'high' if self.tracker.is_user_controlled(key) else 'low'
        self._add('prototype-pollution-define', severity, node, name)

    def _merge(self, node: TSNode, args: List[TSNode]):
        for source in args[1:]:
            if self.tracker.is_user_controlled(source):
                self._add('prototype-pollution-merge', 'medium', node)
                return

    # ------------------------------------------------------------------
    # Regular expressions and Trusted Types
    # ------------------------------------------------------------------

    def _regex(self, node: TSNode):
        args = node.get_arguments()
        if args and self.tracker.is_user_controlled(args[0]):
            self._add('regex-dynamic', 'medium', node)

    def _policy(self, node: TSNode, args: List[TSNode]):
        if len(args) < 2:
            return
        literal = self.graph.object_literal_of(args[1])
        if literal is None:
            return
        for method in POLICY_METHODS:
            for value in self.graph.literal_members(literal, method):
                for func in self.graph.functions_of(value) or [value]:
                    if self._is_identity(func):
                        self._add('trusted-types-passthrough', 'medium', node, method)

    def _is_identity(self, func: TSNode) -> bool:
        returns = returned_expressions(func)
        if len(returns) != 1:
            return False
        ret = returns[0].unwrap()
        if ret.type != 'identifier':
            return False
        binding = self.tree.lookup(ret.text, ret)
        return binding is not None and binding.kind == 'param' and not binding.path \
            and binding.param_index == 0 and binding.function is not None \
            and binding.function.key == func.key
