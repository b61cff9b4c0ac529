#!/usr/bin/env python3
"""
jstrace Taint Tracker

Follows values read from attacker-influenced browser state (``location.*``,
``document.referrer``, ``window.name``, storage reads, ``message`` event data)
into XSS, eval, redirect and request-forgery sinks.

The evaluator reuses the ``FlowWalker`` traversal from resolver.py with a
taint lattice instead of concrete values, so it follows exactly the same
identifiers, destructuring, call frames, callbacks and returns the value
resolver does.  Reassigned locals are refined with reaching definitions
(sanitizers.py) so a sanitizer on every path downgrades a finding while a
sanitizer on one branch does not.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from .ts_adapter import TSNode, FUNCTION_TYPES
from .scope import ScopeTree, Binding, property_key
from .callgraph import CallGraph, ElementsOf, REDUCE_METHODS
from .resolver import FlowWalker
from .sanitizers import SanitizerPass
from .rule_engine import RuleEngine, SinkDef, Settings
from .values import parse_number

logger = logging.getLogger(__name__)

# Methods whose result carries the receiver's taint.
PROPAGATING_METHODS = frozenset({
    'slice', 'substring', 'substr', 'trim', 'trimStart', 'trimEnd', 'trimLeft', 'trimRight',
    'replace', 'replaceAll', 'split', 'toString', 'toLowerCase', 'toUpperCase', 'concat',
    'join', 'get', 'getAll', 'at', 'padStart', 'padEnd', 'normalize', 'repeat', 'valueOf',
    'filter', 'find', 'findLast', 'reverse', 'sort', 'flat', 'charAt', 'match',
})
MAPPING_METHODS = frozenset({'map', 'flatMap'})
# Global functions returning (a decoded form of) their first argument.
PASS_THROUGH = frozenset({
    ('decodeURIComponent',), ('decodeURI',), ('atob',), ('unescape',), ('String',),
    ('JSON', 'parse'), ('JSON', 'stringify'), ('Promise', 'resolve'), ('Array', 'from'),
    ('Object', 'freeze'), ('Object', 'seal'), ('structuredClone',),
})
JOINING = frozenset({('Promise', 'all'), ('Object', 'assign'), ('Object', 'values')})
WRAPPING_CONSTRUCTORS = frozenset({('URL',), ('URLSearchParams',), ('String',)})

_LOCATION_OBJECTS = (('location',), ('document', 'location'))
_WHITESPACE_RE = re.compile(r'\s+')


@dataclass(frozen=True)
class TaintState:
    """Abstract value of an expression.

    ``kind`` describes untainted values: ``literal`` (compile-time constant),
    ``function``, ``dynamic`` (computed at run time), ``none`` (a cut cycle,
    neutral in joins).
    """
    tainted: bool = False
    source_expr: Optional[str] = None
    sanitized_for: FrozenSet[str] = frozenset()
    sanitizers: Tuple[str, ...] = ()
    message_event: bool = False
    kind: str = 'dynamic'
    # Global member path of an untainted object that leads to a source, e.g. ("location",).
    root: Optional[Tuple[str, ...]] = None

    @property
    def source_type(self) -> str:
        if self.tainted:
            return 'user-controlled'
        return 'literal' if self.kind == 'literal' else 'dynamic'


DYNAMIC = TaintState()
LITERAL = TaintState(kind='literal')
FUNCTION = TaintState(kind='function')
CYCLE = TaintState(kind='none')
MESSAGE_EVENT = TaintState(message_event=True)


def source_state(name: str) -> TaintState:
    return TaintState(tainted=True, source_expr=name)


def join_states(states: Sequence[TaintState]) -> TaintState:
    """Taint dominates; sanitization survives only if every tainted contributor has it."""
    states = [s for s in states if s.tainted or s.kind != 'none']
    if not states:
        return CYCLE
    if len(states) == 1:
        return states[0]
    kinds = {s.kind for s in states}
    if len(kinds) == 1:
        kind = kinds.pop()
    else:
        kind = 'dynamic' if 'dynamic' in kinds else 'literal'
    message_event = any(s.message_event for s in states)
    tainted = [s for s in states if s.tainted]
    if not tainted:
        roots = {s.root for s in states}
        root = roots.pop() if len(roots) == 1 else None
        return TaintState(kind=kind, message_event=message_event, root=root)
    sanitized = frozenset.intersection(*[s.sanitized_for for s in tainted])
    names: List[str] = []
    for s in tainted:
        for n in s.sanitizers:
            if n not in names:
                names.append(n)
    return TaintState(tainted=True, source_expr=tainted[0].source_expr,
                      sanitized_for=sanitized, sanitizers=tuple(names),
                      message_event=message_event, kind='dynamic')


class TaintEvaluator(FlowWalker):
    """Computes the ``TaintState`` of expressions."""

    def __init__(self, tree: ScopeTree, graph: CallGraph, rules: RuleEngine,
                 sanitizers: SanitizerPass, settings: Optional[Settings] = None):
        self.rules = rules
        self.sanitizers = sanitizers
        self._member_sources = {'.'.join(s.path): s.name for s in rules.get_sources('member').values()}
        self._call_sources = {'.'.join(s.path): s.name for s in rules.get_sources('call').values()}
        self._aliases = tuple(rules.global_aliases)
        self._source_roots = self._root_paths(self._member_sources)
        super().__init__(tree, graph, settings)

    def _root_paths(self, catalog: Dict[str, str]) -> FrozenSet[Tuple[str, ...]]:
        """Proper prefixes of the catalog paths, with a leading global alias dropped."""
        roots = set()
        for joined in catalog:
            path = tuple(joined.split('.'))
            if path[0] in self._aliases:
                path = path[1:]
            for i in range(len(path)):
                roots.add(path[:i])
        return frozenset(roots)

    def handlers(self) -> dict:
        table = {
            'string': lambda n: LITERAL,
            'number': lambda n: LITERAL,
            'true': lambda n: LITERAL,
            'false': lambda n: LITERAL,
            'null': lambda n: LITERAL,
            'undefined': lambda n: LITERAL,
            'regex': lambda n: LITERAL,
            'template_string': self._template,
            'array': self._array,
            'object': self._object,
            'binary_expression': self._binary,
            'unary_expression': self._unary,
            'member_expression': self._member,
            'subscript_expression': self._subscript,
            'call_expression': self._call,
            'new_expression': self._new,
            'class': lambda n: FUNCTION,
        }
        for t in FUNCTION_TYPES:
            table[t] = self.function_value
        return table

    # -- domain hooks ------------------------------------------------------

    def bottom(self) -> TaintState:
        return DYNAMIC

    def cycle(self) -> TaintState:
        return CYCLE

    def undefined(self) -> TaintState:
        return LITERAL

    def join(self, values: Sequence[TaintState]) -> TaintState:
        return join_states(values) if values else DYNAMIC

    def function_value(self, node: Optional[TSNode]) -> TaintState:
        return FUNCTION

    def is_missing(self, value: TaintState) -> bool:
        return value.kind == 'literal' and not value.tainted

    def event_value(self, event: str) -> TaintState:
        return MESSAGE_EVENT if event == 'message' else DYNAMIC

    def project(self, value: TaintState, step: tuple) -> TaintState:
        if value.message_event:
            if step[0] == 'key' and step[1] in self.rules.event_properties('message'):
                return source_state(f'event.{step[1]}')
            return DYNAMIC
        if value.root is not None:
            if step[0] != 'key' or step[1] is None:
                return DYNAMIC
            return self._root_member(value.root + (step[1],))
        return value

    def _root_member(self, path: Tuple[str, ...]) -> TaintState:
        source = self._catalog_name(path, self._member_sources)
        if source is not None:
            return source_state(source)
        if path in self._source_roots:
            return TaintState(root=path)
        return DYNAMIC

    def elements(self, value: TaintState) -> TaintState:
        return replace(value, message_event=False) if value.message_event else value

    def augmented(self, node: TSNode) -> TaintState:
        return self.join([self.visit(node.child_by_field('left')),
                          self.visit(node.child_by_field('right'))])

    def global_identifier(self, node: TSNode) -> TaintState:
        values = self.graph.global_values(node.text)
        if not values:
            path = () if node.text in self._aliases else (node.text,)
            # A bare identifier is never a source by itself, only a way into one.
            return TaintState(root=path) if path in self._source_roots else DYNAMIC
        return self.join([self.visit(v) for v in values[:self.settings.max_reassignments + 1]])

    def definitions(self, binding: Binding, use: TSNode) -> List:
        reaching = self.sanitizers.reaching(binding, use)
        if reaching is not None:
            return reaching
        return super().definitions(binding, use)

    # -- sources -----------------------------------------------------------

    def _catalog_name(self, path: Optional[Tuple[str, ...]], catalog: Dict[str, str]) -> Optional[str]:
        if path is None:
            return None
        joined = '.'.join(path)
        if joined in catalog:
            return catalog[joined]
        for alias in self._aliases:
            name = catalog.get(f'{alias}.{joined}')
            if name is not None:
                return name
        return None

    def member_source(self, node: TSNode) -> Optional[str]:
        """Catalog name of a member chain that reads an untrusted global, else None."""
        return self._catalog_name(self.graph.global_path(node), self._member_sources)

    # -- literals and operators --------------------------------------------

    def _template(self, node: TSNode) -> TaintState:
        parts = [self.visit(p) for p in node.template_parts() if not isinstance(p, str)]
        return self.join(parts + [LITERAL])

    def _array(self, node: TSNode) -> TaintState:
        items = [self.visit(child) for child in node.named_children]
        return self.elements(self.join(items)) if items else LITERAL

    def _object(self, node: TSNode) -> TaintState:
        values = []
        for child in node.named_children:
            if child.type == 'pair':
                values.append(self.visit(child.child_by_field('value')))
            elif child.type in ('shorthand_property_identifier', 'spread_element'):
                values.append(self.visit(child))
        return self.elements(self.join(values)) if values else LITERAL

    def _binary(self, node: TSNode) -> TaintState:
        op = node.operator()
        left = self.visit(node.child_by_field('left'))
        right = self.visit(node.child_by_field('right'))
        if op in ('+', '||', '&&', '??'):
            return self.join([left, right])
        # Comparisons and arithmetic yield booleans or numbers.
        if left.kind == 'literal' and right.kind == 'literal':
            return LITERAL
        return DYNAMIC

    def _unary(self, node: TSNode) -> TaintState:
        if node.operator() in ('typeof', 'void', '!'):
            return LITERAL
        value = self.visit(node.child_by_field('argument'))
        return LITERAL if value.kind == 'literal' and not value.tainted else DYNAMIC

    # -- member access -----------------------------------------------------

    def _member(self, node: TSNode) -> TaintState:
        source = self.member_source(node)
        if source is not None:
            return source_state(source)
        obj = node.child_by_field('object')
        prop = node.child_by_field('property')
        if obj is None or prop is None:
            return DYNAMIC
        return self._property(obj, prop.text)

    def _subscript(self, node: TSNode) -> TaintState:
        obj = node.child_by_field('object')
        index = node.child_by_field('index')
        if obj is None or index is None:
            return DYNAMIC
        func = self.arguments_function(obj)
        if func is not None:
            position = parse_number(index.text) if index.type == 'number' else None
            if isinstance(position, int):
                return self.positional_argument(func, position)
            return DYNAMIC
        key = property_key(index) if index.type in ('string', 'number') else None
        if key is not None:
            source = self.member_source(node)
            if source is not None:
                return source_state(source)
            return self._property(obj, key)
        base = self.visit(obj)
        return self.elements(base) if base.tainted else DYNAMIC

    def _property(self, obj: TSNode, prop: str) -> TaintState:
        inner = obj.unwrap()
        if inner.type == 'this':
            return self._this_member(inner, prop)
        members = self._literal_members(inner, prop)
        if members is not None:
            return self.join([self.visit(v) for v in members]) if members else LITERAL
        base = self.visit(obj)
        if base.message_event or base.root is not None:
            return self.project(base, ('key', prop))
        if base.tainted:
            return base
        return DYNAMIC

    def _literal_members(self, obj: TSNode, prop: str) -> Optional[List[TSNode]]:
        """Stored values of ``obj.prop`` when ``obj`` is a known object literal."""
        binding = None
        if obj.type == 'identifier':
            binding = self.tree.lookup(obj.text, obj)
            if binding is None or binding.assignments or binding.kind not in ('var', 'let', 'const'):
                return None
        literal = self.graph.object_literal_of(obj)
        if literal is None:
            return None
        if any(c.type == 'spread_element' for c in literal.named_children):
            return None
        values = list(self.graph.literal_members(literal, prop))
        if binding is not None:
            values.extend(binding.member_assignments.get(prop, []))
        return values

    def _this_member(self, node: TSNode, prop: str) -> TaintState:
        owner = self.graph.this_owner(node)
        values = self.graph.member_values(owner, prop) if owner is not None else []
        if not values:
            return DYNAMIC
        return self.join([self.visit(v) for v in values[:self.settings.max_callers]])

    # -- calls -------------------------------------------------------------

    def _call(self, node: TSNode) -> TaintState:
        callee = node.child_by_field('function')
        if callee is None:
            return DYNAMIC
        callee = callee.unwrap()
        if callee.type == 'import':
            return DYNAMIC
        args = node.get_arguments()
        path = self.graph.global_path(callee)
        source = self._catalog_name(path, self._call_sources)
        if source is not None:
            return source_state(source)
        sanitizer = self.sanitizers.sanitizer_name(callee)
        if sanitizer is not None:
            value = self.visit(args[0]) if args else LITERAL
            return self.sanitizers.apply(replace(value, kind='dynamic', message_event=False),
                                         sanitizer)
        if path is not None:
            if path in PASS_THROUGH:
                return self._first(args)
            if path in JOINING:
                return self.elements(self.join([self.visit(a) for a in args])) if args else DYNAMIC
        if callee.type == 'member_expression':
            receiver = callee.child_by_field('object')
            funcs = self.graph.functions_of(callee)
            if funcs:
                return self.call_functions(node, funcs, args, 'method', receiver)
            return self._method_call(node, receiver, callee.child_by_field('property').text, args)
        funcs = self.graph.functions_of(callee)
        if funcs:
            return self.call_functions(node, funcs, args)
        return DYNAMIC

    def _first(self, args: List[TSNode]) -> TaintState:
        if not args:
            return DYNAMIC
        value = self.elements(self.visit(args[0]))
        return value if value.tainted else DYNAMIC

    def _method_call(self, node: TSNode, receiver: TSNode, prop: str,
                     args: List[TSNode]) -> TaintState:
        if prop == 'then':
            funcs = self.graph.functions_of(args[0]) if args else []
            if funcs:
                return self.call_functions(node, funcs, (receiver,), 'then', receiver)
            return DYNAMIC
        if prop in ('catch', 'finally'):
            return self.visit(receiver)
        if prop in PROPAGATING_METHODS:
            parts = [self.visit(receiver)]
            if prop in ('replace', 'replaceAll') and len(args) > 1:
                parts.append(self.visit(args[1]))
            elif prop == 'concat':
                parts.extend(self.visit(a) for a in args)
            return self.elements(self.join(parts))
        if prop in MAPPING_METHODS:
            funcs = self.graph.functions_of(args[0]) if args else []
            if funcs:
                return self.call_functions(node, funcs, (ElementsOf(receiver), None, receiver),
                                           'builtin', receiver)
            return DYNAMIC
        if prop in REDUCE_METHODS:
            funcs = self.graph.functions_of(args[0]) if args else []
            if funcs:
                initial = args[1] if len(args) > 1 else ElementsOf(receiver)
                return self.call_functions(node, funcs, (initial, ElementsOf(receiver)),
                                           'builtin', receiver)
            return DYNAMIC
        return DYNAMIC

    def _new(self, node: TSNode) -> TaintState:
        ctor = node.child_by_field('constructor')
        if ctor is None:
            return DYNAMIC
        path = self.graph.global_path(ctor)
        if path in WRAPPING_CONSTRUCTORS:
            args = node.get_arguments()
            return self.elements(self.join([self.visit(a) for a in args])) if args else DYNAMIC
        if path == ('Function',):
            return FUNCTION
        return DYNAMIC


# ---------------------------------------------------------------------------
# Sink matching
# ---------------------------------------------------------------------------

@dataclass
class SinkFinding:
    type: str
    sink: str
    severity: str
    source: Optional[str]
    source_type: str
    code_context: str
    line: int
    column: int
    sanitized: bool = False

    def to_dict(self) -> dict:
        out = {'type': self.type, 'sink': self.sink, 'severity': self.severity}
        if self.source is not None:
            out['source'] = self.source
        out['sourceType'] = self.source_type
        out['codeContext'] = self.code_context
        out['location'] = {'line': self.line, 'column': self.column}
        out['sanitized'] = self.sanitized
        return out


def code_context(node: TSNode, limit: int) -> str:
    text = _WHITESPACE_RE.sub(' ', node.text).strip()
    if len(text) > limit:
        text = text[:limit - 3] + '...'
    return text


class TaintTracker:
    """Finds catalog sinks and grades the taint of their arguments."""

    def __init__(self, tree: ScopeTree, graph: CallGraph, rules: RuleEngine,
                 settings: Optional[Settings] = None):
        self.tree = tree
        self.graph = graph
        self.rules = rules
        self.settings = settings or rules.settings
        self.sanitizers = SanitizerPass(tree, rules)
        self.evaluator = TaintEvaluator(tree, graph, rules, self.sanitizers, self.settings)
        # Every sink use, tainted or not: (statement node, sink, argument)
        self.occurrences: List[Tuple[TSNode, SinkDef, TSNode]] = []
        self.findings: List[SinkFinding] = []
        self._by_kind: Dict[str, Dict[object, SinkDef]] = {}
        for sink in rules.get_sinks():
            key = sink.path if sink.kind in ('assign', 'call', 'new') else sink.name
            self._by_kind.setdefault(sink.kind, {})[key] = sink

    def state_of(self, node: Optional[TSNode]) -> TaintState:
        return self.evaluator.visit(node)

    def is_user_controlled(self, node: Optional[TSNode]) -> bool:
        return node is not None and self.state_of(node).tainted

    def _sink(self, kind: str, key) -> Optional[SinkDef]:
        return self._by_kind.get(kind, {}).get(key)

    def run(self) -> List[SinkFinding]:
        for node in self.tree.root.walk_descendants():
            t = node.type
            if t in ('assignment_expression', 'augmented_assignment_expression'):
                self._assignment(node)
            elif t in ('call_expression', 'new_expression'):
                self._call(node)
            elif t == 'pair':
                if property_key(node.child_by_field('key')) == 'dangerouslySetInnerHTML':
                    self._html_prop(node, node.child_by_field('value'))
            elif t == 'jsx_attribute':
                parts = node.named_children
                if len(parts) == 2 and parts[0].text == 'dangerouslySetInnerHTML' \
                        and parts[1].type == 'jsx_expression' and parts[1].named_children:
                    self._html_prop(node, parts[1].named_children[0])
        logger.debug("Taint: %d sink uses, %d findings", len(self.occurrences), len(self.findings))
        return self.findings

    # -- shapes ------------------------------------------------------------

    def _assignment(self, node: TSNode):
        left = node.child_by_field('left').unwrap()
        right = node.child_by_field('right')
        if right is None:
            return
        path = self.graph.global_path(left)
        sink = self._sink('assign', path) if path is not None else None
        if sink is not None:
            self._check(node, sink, right)
            return
        if left.type != 'member_expression':
            return
        prop = left.child_by_field('property').text
        sink = self._sink('property', prop)
        if sink is None:
            sink = self._sink('element-property', prop)
            if sink is not None and self.graph.global_path(left.child_by_field('object')) in _LOCATION_OBJECTS:
                return
        if sink is not None:
            self._check(node, sink, right)

    def _call(self, node: TSNode):
        callee = self.graph.callee_of(node)
        if callee is None:
            return
        args = node.get_arguments()
        if callee.type == 'import':
            sink = self._sink('import', 'import')
            if sink is not None:
                self._check_args(node, sink, args)
            return
        path = self.graph.global_path(callee)
        if path is not None:
            kind = 'new' if node.type == 'new_expression' else 'call'
            sink = self._sink(kind, path)
            if sink is not None:
                self._check_args(node, sink, args)
                return
        if node.type != 'call_expression' or callee.type != 'member_expression':
            return
        prop = callee.child_by_field('property').text
        receiver = callee.child_by_field('object')
        sink = self._sink('method', prop)
        if sink is not None:
            if sink.attributes or sink.attribute_prefixes:
                name = args[0].unwrap().string_value() if args else None
                if name is None:
                    return
                name = name.lower()
                if name not in sink.attributes and \
                        not any(name.startswith(p) for p in sink.attribute_prefixes):
                    return
            self._check_args(node, sink, args)
            return
        sink = self._sink('jquery', prop)
        if sink is not None and self.graph.is_jquery_collection(receiver):
            self._check_args(node, sink, args)
            return
        if prop == 'open' and self.graph.is_instance_of(receiver, 'XMLHttpRequest'):
            for sink in self._by_kind.get('xhr', {}).values():
                self._check_args(node, sink, args)

    def _html_prop(self, node: TSNode, value: Optional[TSNode]):
        sink = self._sink('jsx', 'dangerouslySetInnerHTML')
        literal = self.graph.object_literal_of(value)
        if sink is None or literal is None:
            return
        for html in self.graph.literal_members(literal, '__html'):
            self._check(node, sink, html)

    # -- grading -----------------------------------------------------------

    def _check_args(self, node: TSNode, sink: SinkDef, args: List[TSNode]):
        if -1 in sink.arg_positions:
            chosen = args
        else:
            chosen = [args[i] for i in sink.arg_positions if i < len(args)]
        for arg in chosen:
            self._check(node, sink, arg)

    def _check(self, node: TSNode, sink: SinkDef, arg: TSNode):
        if arg.type == 'spread_element':
            arg = arg.named_children[0] if arg.named_children else arg
        self.occurrences.append((node, sink, arg))
        if sink.string_only and self.graph.functions_of(arg):
            return
        state = self.state_of(arg)
        severity = sink.severity
        if not state.tainted:
            if sink.vuln_type not in ('eval', 'redirect') or state.kind != 'dynamic':
                return
            severity = 'low'
        severity, sanitized = self.sanitizers.grade(sink.vuln_type, state, severity)
        finding = SinkFinding(
            type=sink.vuln_type,
            sink=sink.name,
            severity=severity,
            source=state.source_expr if state.tainted else None,
            source_type=state.source_type,
            code_context=code_context(node, self.settings.code_context_chars),
            line=node.line,
            column=node.column,
            sanitized=sanitized,
        )
        for existing in self.findings:
            if (existing.type, existing.sink, existing.line, existing.column, existing.source) == \
                    (finding.type, finding.sink, finding.line, finding.column, finding.source):
                return
        self.findings.append(finding)

    def sinks_within(self, func: TSNode) -> List[Tuple[TSNode, SinkDef, TSNode]]:
        """Sink uses lexically inside ``func``."""
        return [occ for occ in self.occurrences if func.contains(occ[0])]
