#!/usr/bin/env python3
"""
jstrace Value Resolver

``FlowWalker`` is the traversal shared by value resolution and taint
propagation: node dispatch by type string, identifier resolution through the
scope tree, parameter binding through call frames, return tracing and the
visited/depth guard.  Subclasses supply the abstract domain (``ValueResolver``
here, ``TaintEvaluator`` in taint.py).

A call frame records which call site a function body is being evaluated for,
so ``function rpc(svc) { return "/rpc/" + svc }`` evaluated for
``rpc("auth")`` yields ``"/rpc/auth"``.  Without a frame a parameter is
resolved from every static caller (see callgraph.py) and the results are
joined.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, List, Optional, Sequence
from urllib.parse import quote, unquote

from .ts_adapter import TSNode, FUNCTION_TYPES
from .scope import ScopeTree, Binding, member_path, property_key
from .callgraph import (
    CallGraph, CallerBinding, ElementsOf, EventOf, returned_expressions,
)
from .cfg import ENTRY
from .rule_engine import Settings
from .values import (
    ResolvedValue, Literal, ListValue, MapValue, Unknown, UNKNOWN, CIRCULAR,
    options, many, is_unknown, scalar, parse_number, js_string, concat,
)


# Characters left alone by encodeURIComponent / encodeURI.
_URI_COMPONENT_SAFE = "-_.!~*'()"
_URI_SAFE = ";,/?:@&=+$-_.!~*'()#"


def _uri_encode(value, safe: str) -> Optional[str]:
    """encodeURI/encodeURIComponent of a literal; None where JavaScript throws (lone surrogates)."""
    try:
        return quote(js_string(value), safe=safe)
    except UnicodeEncodeError:
        return None


class CallFrame:
    """Evaluation context: ``function`` is running for call site ``binding``."""
    __slots__ = ('function', 'binding', 'outer', 'key', 'depth')

    def __init__(self, function: TSNode, binding: CallerBinding,
                 outer: Optional['CallFrame'] = None):
        self.function = function
        self.binding = binding
        self.outer = outer
        self.depth = outer.depth + 1 if outer is not None else 1
        site = binding.site.key if binding.site is not None else None
        self.key = (function.key, site, binding.via) + (outer.key if outer is not None else ())


class FlowWalker:
    """Dispatch-table traversal over expressions with call-frame support."""

    def __init__(self, tree: ScopeTree, graph: CallGraph, settings: Optional[Settings] = None):
        self.tree = tree
        self.graph = graph
        self.settings = settings or Settings()
        self.frame: Optional[CallFrame] = None
        self._memo: Dict[tuple, object] = {}
        self._active = set()
        self._depth = 0
        self._cuts = 0
        self._dispatch = {
            'await_expression': self._inner,
            'spread_element': self._inner,
            'non_null_expression': self._inner,
            'sequence_expression': self._sequence,
            'ternary_expression': self._ternary,
            'assignment_expression': self._assignment,
            'augmented_assignment_expression': self.augmented,
            'identifier': self._identifier,
            'shorthand_property_identifier': self._identifier,
        }
        self._dispatch.update(self.handlers())

    # ------------------------------------------------------------------
    # Domain hooks
    # ------------------------------------------------------------------

    def handlers(self) -> dict:
        return {}

    def bottom(self):
        raise NotImplementedError

    def cycle(self):
        return self.bottom()

    def undefined(self):
        return self.bottom()

    def join(self, values: Sequence):
        raise NotImplementedError

    def fallback(self, node: TSNode):
        return self.bottom()

    def project(self, value, step: tuple):
        return value

    def elements(self, value):
        return value

    def event_value(self, event: str):
        return self.bottom()

    def rest_value(self, values: List):
        return self.join(values)

    def unbound_parameter(self, binding: Binding):
        return self.bottom()

    def global_identifier(self, node: TSNode):
        return self.bottom()

    def function_value(self, node: Optional[TSNode]):
        return self.bottom()

    def opaque(self, binding: Binding):
        return self.bottom()

    def is_missing(self, value) -> bool:
        return False

    def augmented(self, node: TSNode):
        return self.bottom()

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def visit(self, node: Optional[TSNode]):
        if node is None:
            return self.bottom()
        node = node.unwrap()
        key = (node.key, self.frame.key if self.frame is not None else None)
        cached = self._memo.get(key)
        if cached is not None:
            return cached
        if key in self._active or self._depth >= self.settings.max_depth:
            self._cuts += 1
            return self.cycle()
        self._active.add(key)
        self._depth += 1
        cuts = self._cuts
        try:
            handler = self._dispatch.get(node.type, self.fallback)
            result = handler(node)
        finally:
            self._active.discard(key)
            self._depth -= 1
        # Results computed under a cut cycle are partial; recompute next time.
        if self._cuts == cuts:
            self._memo[key] = result
        return result

    @contextmanager
    def enter(self, frame: Optional[CallFrame]):
        saved = self.frame
        self.frame = frame
        try:
            yield frame
        finally:
            self.frame = saved

    def _inner(self, node: TSNode):
        inner = node.named_children
        return self.visit(inner[-1]) if inner else self.bottom()

    def _sequence(self, node: TSNode):
        parts = node.named_children
        return self.visit(parts[-1]) if parts else self.bottom()

    def _assignment(self, node: TSNode):
        return self.visit(node.child_by_field('right'))

    def literal_condition(self, node: Optional[TSNode]) -> Optional[bool]:
        """Truthiness of a condition that is a literal, else None."""
        if node is None:
            return None
        node = node.unwrap()
        t = node.type
        if t == 'true':
            return True
        if t in ('false', 'null'):
            return False
        if t == 'number':
            n = parse_number(node.text)
            return None if n is None else n != 0
        if t == 'string':
            return bool(node.string_value())
        return None

    def _ternary(self, node: TSNode):
        cond = self.literal_condition(node.child_by_field('condition'))
        if cond is True:
            return self.visit(node.child_by_field('consequence'))
        if cond is False:
            return self.visit(node.child_by_field('alternative'))
        return self.join([self.visit(node.child_by_field('consequence')),
                          self.visit(node.child_by_field('alternative'))])

    # ------------------------------------------------------------------
    # Identifiers and bindings
    # ------------------------------------------------------------------

    def _identifier(self, node: TSNode):
        name = node.text
        binding = self.tree.lookup(name, node)
        if binding is None:
            if name == 'undefined':
                return self.undefined()
            return self.global_identifier(node)
        return self.binding_value(binding, node)

    def binding_value(self, binding: Binding, use: TSNode):
        kind = binding.kind
        if kind in ('function', 'class'):
            return self.function_value(binding.init)
        if kind in ('import', 'catch-param'):
            return self.opaque(binding)
        defs = self.definitions(binding, use)
        if not defs:
            return self.undefined()
        return self.join([self.definition_value(binding, d) for d in defs])

    def definitions(self, binding: Binding, use: TSNode) -> List:
        """Definition nodes that may supply the value at ``use``."""
        defs: List = []
        if binding.kind == 'param' or binding.init is not None:
            defs.append(ENTRY)
        defs.extend(binding.assignments[:self.settings.max_reassignments])
        return defs

    def definition_value(self, binding: Binding, definition):
        if definition is ENTRY or (isinstance(definition, TSNode) and
                                   definition.type == 'for_in_statement'):
            if binding.kind == 'param':
                return self.parameter_value(binding)
            if binding.init is None:
                return self.undefined()
            return self.project_path(binding.init, binding.path, binding.default)
        if binding.init is not None and definition.key == binding.init.key:
            return self.project_path(definition, binding.path, binding.default)
        return self.visit(definition)

    def project_path(self, source: Optional[TSNode], path: tuple,
                     default: Optional[TSNode] = None):
        """Value at a destructuring path inside ``source``."""
        node = source
        steps = list(path)
        # Walk literal structure syntactically while possible.
        while node is not None and steps:
            step = steps[0]
            unwrapped = node.unwrap()
            if step[0] == 'key' and step[1] is not None:
                literal = self.graph.object_literal_of(unwrapped)
                if literal is None:
                    break
                values = self.graph.literal_members(literal, step[1])
                if not values:
                    break
                node = values[-1]
            elif step[0] == 'index' and unwrapped.type == 'array':
                items = unwrapped.named_children
                if step[1] >= len(items) or items[step[1]].type == 'spread_element':
                    break
                node = items[step[1]]
            else:
                break
            steps.pop(0)
        value = self.visit(node) if node is not None else self.undefined()
        for step in steps:
            value = self.project(value, step)
        if default is not None and self.is_missing(value):
            return self.visit(default)
        return value

    def parameter_value(self, binding: Binding):
        frame = self.frame
        while frame is not None:
            if frame.function.key == binding.function.key:
                with self.enter(frame):
                    return self.argument_for(binding, frame.binding, frame.outer)
            frame = frame.outer
        callers = self.graph.trace_callers(binding.function)[:self.settings.max_callers]
        if not callers:
            if binding.default is not None:
                return self.visit(binding.default)
            return self.unbound_parameter(binding)
        values = []
        for cb in callers:
            frame = CallFrame(binding.function, cb, None)
            with self.enter(frame):
                values.append(self.argument_for(binding, cb, None))
        return self.join(values)

    def argument_for(self, binding: Binding, cb: CallerBinding, outer: Optional[CallFrame]):
        """Value passed at ``cb`` for a (possibly destructured) parameter.

        Runs with the callee frame active so defaults see the other parameters;
        the argument expression itself is evaluated in the caller's frame.
        """
        with self.enter(outer):
            if binding.rest and not binding.path:
                value = self.rest_value([self.argument_value(a)
                                         for a in cb.args[binding.param_index:]])
                arg_node = None
            else:
                arg = cb.argument(binding.param_index)
                value = self.argument_value(arg) if arg is not None else None
                arg_node = arg if isinstance(arg, TSNode) else None
            if binding.path:
                if arg_node is not None:
                    value = self.project_path(arg_node, binding.path)
                elif value is not None:
                    for step in binding.path:
                        value = self.project(value, step)
        if value is None or (binding.default is not None and self.is_missing(value)):
            if binding.default is not None:
                return self.visit(binding.default)
            return self.unbound_parameter(binding) if value is None else value
        return value

    def argument_value(self, arg):
        if isinstance(arg, ElementsOf):
            return self.elements(self.visit(arg.node))
        if isinstance(arg, EventOf):
            return self.event_value(arg.event)
        if arg is None:
            return self.undefined()
        return self.visit(arg)

    def arguments_function(self, obj: TSNode) -> Optional[TSNode]:
        """Function whose ``arguments`` object ``obj`` denotes."""
        obj = obj.unwrap()
        if obj.type != 'identifier' or obj.text != 'arguments' or \
                not self.tree.is_global('arguments', obj):
            return None
        return self.graph.this_function(obj)

    def positional_argument(self, func: TSNode, index: int):
        frame = self.frame
        while frame is not None:
            if frame.function.key == func.key:
                with self.enter(frame.outer):
                    return self.argument_value(frame.binding.argument(index))
            frame = frame.outer
        values = []
        for cb in self.graph.trace_callers(func)[:self.settings.max_callers]:
            with self.enter(None):
                values.append(self.argument_value(cb.argument(index)))
        return self.join(values) if values else self.bottom()

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def call_functions(self, site: TSNode, funcs: List[TSNode], args: Sequence,
                       via: str = 'direct', receiver: Optional[TSNode] = None):
        """Join of the return values of ``funcs`` invoked at ``site``."""
        results = []
        if self.frame is not None and self.frame.depth >= self.settings.max_depth // 2:
            return self.cycle()
        for func in funcs[:self.settings.max_callers]:
            if func.type not in FUNCTION_TYPES:
                continue
            binding = CallerBinding(site, func, tuple(args), via, receiver)
            with self.enter(CallFrame(func, binding, self.frame)):
                returns = returned_expressions(func)
                if not returns:
                    results.append(self.undefined())
                for expr in returns:
                    results.append(self.visit(expr))
        return self.join(results) if results else self.bottom()


# ---------------------------------------------------------------------------
# Value domain
# ---------------------------------------------------------------------------

def _truthy(value) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == value and value != 0
    if isinstance(value, str):
        return value != ''
    return True


def _label_of(node: TSNode) -> Optional[str]:
    node = node.unwrap()
    if node.type in ('identifier', 'shorthand_property_identifier'):
        return node.text
    if node.type == 'member_expression':
        prop = node.child_by_field('property')
        return prop.text if prop is not None else None
    if node.type == 'subscript_expression':
        index = node.child_by_field('index')
        return index.string_value() if index is not None else None
    return None


_NUMERIC_OPS = {
    '-': lambda a, b: a - b,
    '*': lambda a, b: a * b,
    '/': lambda a, b: a / b if b else None,
    '%': lambda a, b: a % b if b else None,
    '**': lambda a, b: a ** b if abs(b) < 64 else None,
}


class ValueResolver(FlowWalker):
    """Resolves expressions to ``ResolvedValue``s."""

    def handlers(self) -> dict:
        table = {
            'string': self._string,
            'template_string': self._template,
            'number': self._number,
            'true': lambda n: Literal(True),
            'false': lambda n: Literal(False),
            'null': lambda n: Literal(None),
            'undefined': lambda n: UNKNOWN,
            'regex': lambda n: Unknown(label='regex'),
            'array': self._array,
            'object': self._object,
            'binary_expression': self._binary,
            'unary_expression': self._unary,
            'member_expression': self._member,
            'subscript_expression': self._subscript,
            'call_expression': self._call,
            'new_expression': self._new,
            'this': lambda n: Unknown(label='this'),
            'class': lambda n: Unknown(label='class'),
        }
        for t in FUNCTION_TYPES:
            table[t] = self.function_value
        return table

    # -- domain hooks ------------------------------------------------------

    def bottom(self) -> ResolvedValue:
        return UNKNOWN

    def cycle(self) -> ResolvedValue:
        return CIRCULAR

    def undefined(self) -> ResolvedValue:
        return UNKNOWN

    def join(self, values: Sequence[ResolvedValue]) -> ResolvedValue:
        return many(values, self.settings.max_many)

    def fallback(self, node: TSNode) -> ResolvedValue:
        return UNKNOWN

    def is_missing(self, value: ResolvedValue) -> bool:
        return is_unknown(value)

    def function_value(self, node: Optional[TSNode]) -> ResolvedValue:
        return Unknown(label='function')

    def opaque(self, binding: Binding) -> ResolvedValue:
        return Unknown(label=binding.name)

    def unbound_parameter(self, binding: Binding) -> ResolvedValue:
        return Unknown(label=binding.name)

    def event_value(self, event: str) -> ResolvedValue:
        return Unknown(label='event')

    def rest_value(self, values: List[ResolvedValue]) -> ResolvedValue:
        return ListValue(tuple(values))

    def elements(self, value: ResolvedValue) -> ResolvedValue:
        out = []
        for opt in options(value):
            if isinstance(opt, ListValue):
                out.extend(opt.items)
            elif isinstance(opt, MapValue):
                out.extend(v for _, v in opt.entries)
            else:
                out.append(UNKNOWN)
        return self.join(out)

    def project(self, value: ResolvedValue, step: tuple) -> ResolvedValue:
        kind = step[0]
        if kind == 'key':
            if step[1] is None:
                return self.get_property(value, UNKNOWN)
            return self.get_property(value, Literal(step[1]))
        if kind == 'index':
            return self.get_property(value, Literal(step[1]))
        if kind == 'element':
            return self.elements(value)
        if kind == 'keys':
            out = []
            for opt in options(value):
                if isinstance(opt, MapValue):
                    out.extend(Literal(k) for k in opt.keys())
                elif isinstance(opt, ListValue):
                    out.extend(Literal(str(i)) for i in range(len(opt.items)))
                else:
                    out.append(UNKNOWN)
            return self.join(out)
        if kind == 'slice':
            out = []
            for opt in options(value):
                out.append(ListValue(opt.items[step[1]:]) if isinstance(opt, ListValue) else UNKNOWN)
            return self.join(out)
        return value

    def augmented(self, node: TSNode) -> ResolvedValue:
        if node.operator() != '+=':
            return UNKNOWN
        left = node.child_by_field('left').unwrap()
        base: ResolvedValue = UNKNOWN
        if left.type == 'identifier':
            binding = self.tree.lookup(left.text, left)
            if binding is not None and binding.init is not None:
                base = self.visit(binding.init)
        return concat(base, self.visit(node.child_by_field('right')), self.settings.max_many)

    def global_identifier(self, node: TSNode) -> ResolvedValue:
        name = node.text
        values = self.graph.global_values(name)
        if not values:
            return Unknown(label=name)
        return self.join([self.visit(v) for v in values[:self.settings.max_reassignments + 1]])

    def binding_value(self, binding: Binding, use: TSNode) -> ResolvedValue:
        value = super().binding_value(binding, use)
        extra = {k: v for k, v in binding.member_assignments.items() if '.' not in k}
        if not extra or not any(isinstance(o, MapValue) for o in options(value)):
            return value
        added = tuple((k, self.join([self.visit(n) for n in nodes]))
                      for k, nodes in extra.items())
        return self.join([o.merged(added) if isinstance(o, MapValue) else o
                          for o in options(value)])

    # -- literals ----------------------------------------------------------

    def _string(self, node: TSNode) -> ResolvedValue:
        value = node.string_value()
        return Literal(value) if value is not None else UNKNOWN

    def _number(self, node: TSNode) -> ResolvedValue:
        n = parse_number(node.text)
        return Literal(n) if n is not None else UNKNOWN

    def with_label(self, value: ResolvedValue, node: TSNode) -> ResolvedValue:
        """Name anonymous unknowns after the expression they came from."""
        if isinstance(value, Unknown) and value.label is None and value.template is None:
            label = _label_of(node)
            if label:
                return Unknown(label=label, circular=value.circular)
        return value

    def _template(self, node: TSNode) -> ResolvedValue:
        result: ResolvedValue = Literal('')
        for part in node.template_parts():
            if isinstance(part, str):
                piece: ResolvedValue = Literal(part)
            else:
                piece = self.with_label(self.visit(part), part)
            result = concat(result, piece, self.settings.max_many)
        return result

    def _array(self, node: TSNode) -> ResolvedValue:
        items: List[ResolvedValue] = []
        for child in node.named_children:
            if child.type == 'spread_element':
                spread = self.visit(child)
                if isinstance(spread, ListValue):
                    items.extend(spread.items)
                else:
                    items.append(UNKNOWN)
            else:
                items.append(self.visit(child))
        return ListValue(tuple(items))

    def _object(self, node: TSNode) -> ResolvedValue:
        entries = []
        for child in node.named_children:
            t = child.type
            if t == 'pair':
                key_node = child.child_by_field('key')
                key = property_key(key_node)
                if key is None and key_node is not None and key_node.type == 'computed_property_name':
                    inner = key_node.named_children
                    resolved = self.visit(inner[0]) if inner else UNKNOWN
                    key = js_string(resolved.value) if isinstance(resolved, Literal) else None
                if key is None:
                    continue
                entries.append((key, self.visit(child.child_by_field('value'))))
            elif t == 'shorthand_property_identifier':
                entries.append((child.text, self.visit(child)))
            elif t == 'method_definition':
                key = property_key(child.child_by_field('name'))
                if key is not None:
                    entries.append((key, Unknown(label='function')))
            elif t == 'spread_element':
                spread = self.visit(child)
                if isinstance(spread, MapValue):
                    entries.extend(spread.entries)
        return MapValue(tuple(entries))

    # -- operators ---------------------------------------------------------

    def _binary(self, node: TSNode) -> ResolvedValue:
        op = node.operator()
        left_node = node.child_by_field('left')
        right_node = node.child_by_field('right')
        if op == '+':
            left = self.with_label(self.visit(left_node), left_node)
            right = self.with_label(self.visit(right_node), right_node)
            return concat(left, right, self.settings.max_many)
        if op in ('||', '??', '&&'):
            left = self.visit(left_node)
            if isinstance(left, Literal):
                v = left.value
                if op == '||':
                    return left if _truthy(v) else self.visit(right_node)
                if op == '??':
                    return left if v is not None else self.visit(right_node)
                return self.visit(right_node) if _truthy(v) else left
            return self.join([left, self.visit(right_node)])
        fn = _NUMERIC_OPS.get(op)
        if fn is not None:
            a, b = scalar(self.visit(left_node)), scalar(self.visit(right_node))
            if isinstance(a, (int, float)) and isinstance(b, (int, float)) \
                    and not isinstance(a, bool) and not isinstance(b, bool):
                result = fn(a, b)
                if result is not None:
                    return Literal(result)
        return UNKNOWN

    def _unary(self, node: TSNode) -> ResolvedValue:
        op = node.operator()
        arg = node.child_by_field('argument')
        if op == 'void':
            return UNKNOWN
        value = self.visit(arg)
        if not isinstance(value, Literal):
            return UNKNOWN
        v = value.value
        if op == '!':
            return Literal(not _truthy(v))
        if op in ('-', '+') and isinstance(v, (int, float)) and not isinstance(v, bool):
            return Literal(-v if op == '-' else v)
        if op == 'typeof':
            if v is None:
                return Literal('object')
            if isinstance(v, bool):
                return Literal('boolean')
            return Literal('number' if isinstance(v, (int, float)) else 'string')
        return UNKNOWN

    # -- member access -----------------------------------------------------

    def get_property(self, base: ResolvedValue, key: ResolvedValue) -> ResolvedValue:
        results = []
        for b in options(base):
            for k in options(key):
                results.append(self._property_one(b, k))
        return self.join(results)

    def _property_one(self, base: ResolvedValue, key: ResolvedValue) -> ResolvedValue:
        name = js_string(key.value) if isinstance(key, Literal) else None
        if isinstance(base, MapValue):
            if name is None:
                return self.join([v for _, v in base.entries]) if base.entries else UNKNOWN
            found = base.get(name)
            return found if found is not None else Unknown(label=name)
        if isinstance(base, ListValue):
            if name == 'length':
                return Literal(len(base.items))
            if name is None:
                return self.join(list(base.items)) if base.items else UNKNOWN
            if name.isdigit() and int(name) < len(base.items):
                return base.items[int(name)]
            return UNKNOWN
        if isinstance(base, Literal) and isinstance(base.value, str):
            if name == 'length':
                return Literal(len(base.value))
            if name is not None and name.isdigit() and int(name) < len(base.value):
                return Literal(base.value[int(name)])
        return Unknown(label=name)

    def _member(self, node: TSNode) -> ResolvedValue:
        obj = node.child_by_field('object')
        prop = node.child_by_field('property')
        if obj is None or prop is None:
            return UNKNOWN
        if obj.unwrap().type == 'this':
            return self.this_member(node, prop.text)
        return self.get_property(self.visit(obj), Literal(prop.text))

    def _subscript(self, node: TSNode) -> ResolvedValue:
        obj = node.child_by_field('object')
        index = node.child_by_field('index')
        if obj is None or index is None:
            return UNKNOWN
        func = self.arguments_function(obj)
        key = self.visit(index)
        if func is not None:
            position = scalar(key)
            if isinstance(position, int) and not isinstance(position, bool):
                return self.positional_argument(func, position)
            return UNKNOWN
        if obj.unwrap().type == 'this' and isinstance(key, Literal):
            return self.this_member(node, js_string(key.value))
        return self.get_property(self.visit(obj), key)

    def this_member(self, node: TSNode, prop: str) -> ResolvedValue:
        """``this.prop`` through the enclosing literal or the constructor's assignments."""
        func = self.graph.this_function(node)
        if func is None:
            return Unknown(label=prop)
        literal = self.graph.method_literal(func)
        if literal is not None:
            return self.get_property(self.visit(literal), Literal(prop))
        cls = self.graph.class_of_method(func) or func
        values = self.graph.class_fields(cls, prop)
        if not values:
            return Unknown(label=prop)
        ctor = self.graph.constructor_of(cls)
        sites: List[TSNode] = []
        frame = self.frame
        if frame is not None and frame.function.key == func.key and ctor is not None \
                and ctor.key != func.key:
            sites = self.graph.instantiations(frame.binding.receiver)
        results = []
        for value in values:
            in_ctor = ctor is not None and ctor.contains(value)
            if in_ctor and sites:
                for site in sites[:self.settings.max_callers]:
                    binding = CallerBinding(site, ctor, tuple(site.get_arguments()), 'new')
                    with self.enter(CallFrame(ctor, binding, frame.outer)):
                        results.append(self.visit(value))
            elif in_ctor and ctor.key == func.key:
                results.append(self.visit(value))
            else:
                with self.enter(None):
                    results.append(self.visit(value))
        return self.join(results)

    # -- calls -------------------------------------------------------------

    def _call(self, node: TSNode) -> ResolvedValue:
        callee = node.child_by_field('function')
        if callee is None:
            return UNKNOWN
        callee = callee.unwrap()
        args = node.get_arguments()
        if callee.type == 'import':
            return Unknown(label='module')
        receiver = None
        if callee.type == 'member_expression':
            receiver = callee.child_by_field('object')
            prop = callee.child_by_field('property').text
            folded = self._global_call(callee, args)
            if folded is not None:
                return folded
            funcs = self.graph.functions_of(callee)
            if funcs:
                return self.call_functions(node, funcs, args, 'method', receiver)
            folded = self._method_call(node, receiver, prop, args)
            if folded is not None:
                return folded
            return Unknown(label=prop)
        if callee.type == 'identifier' and self.tree.is_global(callee.text, callee):
            folded = self._builtin_function(callee.text, args)
            if folded is not None:
                return folded
        funcs = self.graph.functions_of(callee)
        if funcs:
            return self.call_functions(node, funcs, args)
        return self.with_label(UNKNOWN, callee)

    def _global_call(self, callee: TSNode, args: List[TSNode]) -> Optional[ResolvedValue]:
        split = member_path(callee)
        if split is None or len(split[1]) != 1:
            return None
        root, props = split
        if root.type != 'identifier' or not self.tree.is_global(root.text, root):
            return None
        name = f'{root.text}.{props[0]}'
        first = args[0] if args else None
        if name in ('Promise.resolve', 'Object.freeze', 'Object.seal', 'Array.from'):
            return self.visit(first) if first is not None else UNKNOWN
        if name == 'Promise.all':
            return self.visit(first) if first is not None else UNKNOWN
        if name == 'JSON.stringify':
            return Unknown(label='json')
        if name == 'Object.assign':
            entries = []
            for arg in args:
                value = self.visit(arg)
                if isinstance(value, MapValue):
                    entries.extend(value.entries)
            return MapValue(tuple(entries))
        if name in ('Object.keys', 'Object.values'):
            value = self.visit(first) if first is not None else UNKNOWN
            if isinstance(value, MapValue):
                if props[0] == 'keys':
                    return ListValue(tuple(Literal(k) for k in value.keys()))
                return ListValue(tuple(value.get(k) for k in value.keys()))
            return UNKNOWN
        return None

    def _builtin_function(self, name: str, args: List[TSNode]) -> Optional[ResolvedValue]:
        first = args[0] if args else None
        if name == 'String':
            return self._map_literals(first, lambda v: js_string(v))
        if name == 'encodeURIComponent':
            return self._map_literals(first, lambda v: _uri_encode(v, _URI_COMPONENT_SAFE))
        if name == 'encodeURI':
            return self._map_literals(first, lambda v: _uri_encode(v, _URI_SAFE))
        if name in ('decodeURIComponent', 'decodeURI'):
            return self._map_literals(first, lambda v: unquote(js_string(v)))
        if name in ('Number', 'parseInt', 'parseFloat'):
            def to_number(v):
                n = parse_number(js_string(v).strip()) if not isinstance(v, (int, float)) else v
                if name == 'parseInt' and isinstance(n, float):
                    n = int(n)
                return n
            return self._map_literals(first, to_number)
        return None

    def _map_literals(self, arg: Optional[TSNode], fn) -> ResolvedValue:
        if arg is None:
            return UNKNOWN
        value = self.visit(arg)
        out = []
        for opt in options(value):
            if isinstance(opt, Literal):
                converted = fn(opt.value)
                out.append(Literal(converted) if converted is not None else UNKNOWN)
            else:
                out.append(self.with_label(opt, arg))
        return self.join(out)

    def _method_call(self, node: TSNode, receiver: TSNode, prop: str,
                     args: List[TSNode]) -> Optional[ResolvedValue]:
        if prop == 'then':
            funcs = self.graph.functions_of(args[0]) if args else []
            if funcs:
                return self.call_functions(node, funcs, (receiver,), 'then', receiver)
            return UNKNOWN
        if prop in ('catch', 'finally'):
            return self.visit(receiver)
        if prop in ('toLowerCase', 'toUpperCase', 'trim', 'trimStart', 'trimEnd',
                    'toString', 'valueOf', 'concat', 'join', 'slice', 'substring',
                    'split', 'find', 'filter', 'reverse'):
            base = self.visit(receiver)
            arg_values = [self.visit(a) for a in args]
            return self.join([self._fold_method(b, prop, arg_values) for b in options(base)])
        return None

    def _fold_method(self, base: ResolvedValue, prop: str,
                     args: List[ResolvedValue]) -> ResolvedValue:
        firsts = [scalar(a) if isinstance(a, Literal) else None for a in args]
        if isinstance(base, Literal) and isinstance(base.value, str):
            s = base.value
            if prop == 'toLowerCase':
                return Literal(s.lower())
            if prop == 'toUpperCase':
                return Literal(s.upper())
            if prop == 'trim':
                return Literal(s.strip())
            if prop == 'trimStart':
                return Literal(s.lstrip())
            if prop == 'trimEnd':
                return Literal(s.rstrip())
            if prop in ('toString', 'valueOf'):
                return base
            if prop == 'concat':
                result: ResolvedValue = base
                for a in args:
                    result = concat(result, a, self.settings.max_many)
                return result
            if prop == 'slice' and firsts and all(isinstance(f, int) for f in firsts):
                return Literal(s[firsts[0]:firsts[1]] if len(firsts) > 1 else s[firsts[0]:])
            if prop == 'substring' and firsts and all(isinstance(f, int) for f in firsts):
                # Bounds are clamped to [0, len] and swapped when reversed.
                start = min(max(firsts[0], 0), len(s))
                end = min(max(firsts[1], 0), len(s)) if len(firsts) > 1 else len(s)
                return Literal(s[min(start, end):max(start, end)])
            if prop == 'split' and firsts and isinstance(firsts[0], str) and firsts[0]:
                return ListValue(tuple(Literal(p) for p in s.split(firsts[0])))
            return UNKNOWN
        if isinstance(base, ListValue):
            if prop == 'join':
                sep = firsts[0] if firsts and isinstance(firsts[0], str) else ','
                if all(isinstance(i, Literal) for i in base.items):
                    return Literal(sep.join('' if i.value is None else js_string(i.value)
                                            for i in base.items))
                result = Literal('')
                for i, item in enumerate(base.items):
                    if i:
                        result = concat(result, Literal(sep), self.settings.max_many)
                    result = concat(result, item, self.settings.max_many)
                return result
            if prop == 'concat':
                items = list(base.items)
                for a in args:
                    items.extend(a.items if isinstance(a, ListValue) else (a,))
                return ListValue(tuple(items))
            if prop == 'find':
                return self.join(list(base.items))
            if prop == 'reverse':
                return ListValue(tuple(reversed(base.items)))
            if prop == 'slice':
                if not all(isinstance(f, int) for f in firsts):
                    return UNKNOWN
                items = base.items
                return ListValue(items[firsts[0]:firsts[1]] if len(firsts) > 1 else
                                 items[firsts[0]:] if firsts else items)
            if prop == 'filter':
                return base
            if prop == 'toString':
                return self._fold_method(base, 'join', [])
            return UNKNOWN
        if isinstance(base, Unknown) and prop in ('toLowerCase', 'toUpperCase', 'trim',
                                                    'toString', 'valueOf'):
            return base
        return UNKNOWN

    def _new(self, node: TSNode) -> ResolvedValue:
        ctor = node.child_by_field('constructor')
        if ctor is None:
            return UNKNOWN
        ctor = ctor.unwrap()
        args = node.get_arguments()
        if ctor.type == 'identifier' and self.tree.is_global(ctor.text, ctor):
            if ctor.text == 'String':
                return self._builtin_function('String', args) or UNKNOWN
            if ctor.text in ('Headers', 'Map') and args:
                return self.visit(args[0])
            return Unknown(label=ctor.text[:1].lower() + ctor.text[1:])
        return Unknown(label=ctor.text)

    # -- public API --------------------------------------------------------

    def resolve(self, node: Optional[TSNode]) -> ResolvedValue:
        return self.visit(node)
