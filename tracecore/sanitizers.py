#!/usr/bin/env python3
"""
jstrace Sanitizer/CFG Pass

Two jobs:
  * recognize catalog sanitizer calls (``encodeURIComponent``, ``DOMPurify.sanitize``,
    numeric coercions, ...) and mark the taint state that flows through them;
  * give the taint evaluator flow-sensitive definitions for reassigned locals,
    so ``x = encodeURIComponent(x)`` before a sink hides the earlier tainted
    definition, while a sanitizer on only one branch does not.

A finding is graded ``info``/sanitized only when every contributing definition
was sanitized for the sink's class; the taint join keeps the intersection of
``sanitized_for`` across tainted contributors, so one raw path wins.
"""

from dataclasses import replace
from typing import List, Optional, Tuple

from .ts_adapter import TSNode
from .scope import ScopeTree, Binding, member_path
from .cfg import ReachingDefinitions
from .rule_engine import RuleEngine


class SanitizerPass:
    """Sanitizer catalog lookups plus reaching-definition queries."""

    def __init__(self, tree: ScopeTree, rules: RuleEngine):
        self.tree = tree
        self.rules = rules
        self.flow = ReachingDefinitions(tree)
        self._aliases = tuple(rules.global_aliases)

    def sanitizer_name(self, callee: TSNode) -> Optional[str]:
        """Catalog name of a call's callee, or None when it is not a sanitizer."""
        callee = callee.unwrap()
        if callee.type == 'identifier':
            if not self.tree.is_global(callee.text, callee):
                return None
            return callee.text if self.rules.is_sanitizer(callee.text) else None
        split = member_path(callee)
        if split is None:
            return None
        root, props = split
        if root.type != 'identifier' or not self.tree.is_global(root.text, root):
            return None
        path = (root.text,) + props
        if path[0] in self._aliases and len(path) > 1:
            path = path[1:]
        name = '.'.join(path)
        return name if self.rules.is_sanitizer(name) else None

    def apply(self, state, name: str):
        """State after passing through sanitizer ``name``."""
        protections = frozenset(self.rules.get_sanitizer_protections(name))
        if not state.tainted:
            return state
        return replace(state,
                       sanitized_for=state.sanitized_for | protections,
                       sanitizers=state.sanitizers + ((name,) if name not in state.sanitizers else ()))

    def reaching(self, binding: Binding, use: TSNode) -> Optional[List]:
        """Reaching definitions of a reassigned local, or None to stay flow-insensitive."""
        if binding.path or not binding.assignments:
            return None
        if binding.kind not in ('var', 'let', 'const', 'param'):
            return None
        return self.flow.reaching(binding, use)

    @staticmethod
    def grade(vuln_type: str, state, severity: str) -> Tuple[str, bool]:
        """Final severity and sanitized flag for a tainted finding."""
        if state.tainted and vuln_type in state.sanitized_for:
            return 'info', True
        return severity, False
