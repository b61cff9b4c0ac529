#!/usr/bin/env python3
"""
jstrace Network Sink Synthesizer

Recognizes the network-triggering call shapes of a bundle and turns each into
``CallSite`` records (URL, method, headers, parameter descriptors).

When a sink's URL, method, headers or body depend on parameters of an
enclosing function, every caller of that function is evaluated as its own
context (recursively up to ``max_call_chain`` levels), so values passed
together by one caller stay together:

    rpc("auth", "login", "POST")      -> POST /rpc/auth/login
    rpc("billing", "invoice", "GET")  -> GET  /rpc/billing/invoice

and never ``GET /rpc/auth/login``.
"""

import itertools
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .ts_adapter import TSNode
from .scope import ScopeTree, member_path, property_key
from .callgraph import CallGraph
from .resolver import ValueResolver, CallFrame
from .constraints import ConstraintMiner
from .rule_engine import Settings
from .values import (
    ResolvedValue, Literal, MapValue, options, render, has_literal_text,
    placeholders, value_type,
)

logger = logging.getLogger(__name__)

HTTP_METHODS = ('GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD', 'OPTIONS')
JQUERY_AJAX = {'ajax': 'GET', 'get': 'GET', 'post': 'POST', 'getJSON': 'GET'}
JQUERY_DOM = ('html', 'append', 'prepend', 'before', 'after', 'replaceWith')

_RESOURCE_RE = re.compile(
    r'<(?:img|script|iframe|link|source|video|audio|embed)\b[^>]*?\b(?:src|href)\s*=\s*'
    r'["\']?([^"\'\s>]+)', re.IGNORECASE)
_UNNAMED = '{param}'


@dataclass
class ParamDescriptor:
    name: str
    type: str
    location: str  # path, query, body, header
    required: bool = True
    default_value: object = None
    valid_values: Optional[List[str]] = None
    spread: bool = False

    def to_dict(self) -> dict:
        out = {'name': self.name, 'type': self.type, 'location': self.location,
               'required': self.required}
        if self.default_value is not None:
            out['defaultValue'] = self.default_value
        if self.valid_values:
            out['validValues'] = list(self.valid_values)
        if self.spread:
            out['spread'] = True
        return out


@dataclass
class CallSite:
    type: str
    url: str
    method: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: List[ParamDescriptor] = field(default_factory=list)
    node: Optional[TSNode] = None
    id: str = ''

    def identity(self) -> tuple:
        params = json.dumps([p.to_dict() for p in self.params], sort_keys=True, default=str)
        return (self.type, self.url, self.method, tuple(sorted(self.headers.items())), params)

    def to_dict(self) -> dict:
        return {'id': self.id, 'type': self.type, 'url': self.url, 'method': self.method,
                'headers': dict(self.headers), 'params': [p.to_dict() for p in self.params]}


@dataclass
class _Sink:
    """One recognized network call before context expansion."""
    type: str
    node: TSNode
    url: Optional[TSNode] = None
    method: Optional[TSNode] = None
    default_method: str = 'GET'
    options: Optional[TSNode] = None
    headers: List[Tuple[TSNode, TSNode]] = field(default_factory=list)
    body: Optional[TSNode] = None
    url_value: Optional[str] = None


class NetworkSynthesizer:
    """Finds network sinks and expands them into CallSite records."""

    def __init__(self, tree: ScopeTree, graph: CallGraph, resolver: ValueResolver,
                 constraints: ConstraintMiner, settings: Optional[Settings] = None):
        self.tree = tree
        self.graph = graph
        self.resolver = resolver
        self.constraints = constraints
        self.settings = settings or Settings()

    def synthesize(self) -> List[CallSite]:
        sites: List[CallSite] = []
        seen = set()
        for sink in self._find_sinks():
            for site in self._expand(sink):
                ident = site.identity()
                if ident in seen:
                    continue
                seen.add(ident)
                sites.append(site)
        for i, site in enumerate(sites, 1):
            site.id = f'cs{i}'
        logger.debug("Synthesized %d call sites", len(sites))
        return sites

    # ------------------------------------------------------------------
    # Sink recognition
    # ------------------------------------------------------------------

    def _same_receiver(self, a: TSNode, b: TSNode) -> bool:
        a, b = a.unwrap(), b.unwrap()
        if a.type == 'identifier' and b.type == 'identifier':
            return a.text == b.text and \
                self.tree.lookup(a.text, a) == self.tree.lookup(b.text, b)
        return a.text == b.text and self.graph.this_function(a) == self.graph.this_function(b)

    def _receiver_calls(self, receiver: TSNode, method: str) -> List[TSNode]:
        out = []
        for call in self.graph.calls_by_prop.get(method, []):
            callee = self.graph.callee_of(call)
            if callee.type == 'member_expression' and \
                    self._same_receiver(callee.child_by_field('object'), receiver):
                out.append(call)
        return out

    def _find_sinks(self) -> List[_Sink]:
        sinks: List[_Sink] = []
        for call in self.graph.calls:
            callee = self.graph.callee_of(call)
            if callee is None:
                continue
            args = call.get_arguments()
            if call.type == 'new_expression':
                if self.graph.is_builtin(callee, 'EventSource') and args:
                    sinks.append(_Sink('eventsource', call, url=args[0]))
                elif self.graph.is_builtin(callee, 'WebSocket') and args:
                    sinks.append(_Sink('websocket', call, url=args[0]))
                continue
            if self.graph.is_builtin(callee, 'fetch'):
                sink = self._fetch_sink(call, args)
                if sink is not None:
                    sinks.append(sink)
                continue
            if callee.type != 'member_expression':
                continue
            prop = callee.child_by_field('property').text
            receiver = callee.child_by_field('object')
            if prop == 'open' and len(args) >= 2 and self.graph.is_instance_of(receiver, 'XMLHttpRequest'):
                sinks.append(self._xhr_sink(call, receiver, args))
            elif prop == 'sendBeacon' and args and self.graph.is_builtin(receiver, 'navigator'):
                sinks.append(_Sink('beacon', call, url=args[0], default_method='POST',
                                   body=args[1] if len(args) > 1 else None))
            elif prop in JQUERY_AJAX and args and self.graph.is_jquery(receiver):
                sinks.append(self._jquery_sink(call, prop, args))
            elif prop == 'load' and args and self.graph.is_jquery_collection(receiver):
                data = args[1] if len(args) > 1 else None
                method = 'POST' if data is not None and self.graph.object_literal_of(data) is not None else 'GET'
                sinks.append(_Sink('jquery', call, url=args[0], default_method=method, body=data))
            elif prop in JQUERY_DOM and args and self.graph.is_jquery_collection(receiver):
                sinks.extend(self._markup_sinks(call, args[0]))

        for node in self.tree.root.walk_descendants():
            if node.type != 'assignment_expression':
                continue
            left = node.child_by_field('left').unwrap()
            if left.type != 'member_expression':
                continue
            prop = left.child_by_field('property')
            if prop is not None and prop.text == 'src' and \
                    self.graph.is_instance_of(left.child_by_field('object'), 'Image'):
                sinks.append(_Sink('image', node, url=node.child_by_field('right')))
        sinks.sort(key=lambda s: (s.node.start_byte, s.type))
        return sinks

    def _fetch_sink(self, call: TSNode, args: List[TSNode]) -> Optional[_Sink]:
        if not args:
            return None
        url, opts = args[0], (args[1] if len(args) > 1 else None)
        inner = url.unwrap()
        if inner.type == 'new_expression' and self.graph.is_builtin(
                inner.child_by_field('constructor'), 'Request'):
            request_args = inner.get_arguments()
            if not request_args:
                return None
            url = request_args[0]
            opts = opts or (request_args[1] if len(request_args) > 1 else None)
        return _Sink('fetch', call, url=url, options=opts)

    def _xhr_sink(self, call: TSNode, receiver: TSNode, args: List[TSNode]) -> _Sink:
        sink = _Sink('xhr', call, url=args[1], method=args[0])
        for header_call in self._receiver_calls(receiver, 'setRequestHeader'):
            header_args = header_call.get_arguments()
            if len(header_args) >= 2:
                sink.headers.append((header_args[0], header_args[1]))
        for send in self._receiver_calls(receiver, 'send'):
            send_args = send.get_arguments()
            if send_args:
                sink.body = send_args[0]
                break
        return sink

    def _jquery_sink(self, call: TSNode, prop: str, args: List[TSNode]) -> _Sink:
        default = JQUERY_AJAX[prop]
        first = args[0]
        if self.graph.object_literal_of(first) is not None or first.unwrap().type == 'object':
            return _Sink('jquery', call, options=first, default_method=default)
        if prop == 'ajax':
            return _Sink('jquery', call, url=first, default_method=default,
                         options=args[1] if len(args) > 1 else None)
        data = args[1] if len(args) > 1 else None
        if data is not None and self.graph.functions_of(data):
            data = None
        return _Sink('jquery', call, url=first, default_method=default, body=data)

    def _markup_sinks(self, call: TSNode, arg: TSNode) -> List[_Sink]:
        value = self.resolver.resolve(arg)
        out = []
        for opt in options(value):
            for m in _RESOURCE_RE.finditer(render(opt)):
                out.append(_Sink('jquery-dom', call, url_value=m.group(1)))
        return out

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    def _param_functions(self, nodes: List[Optional[TSNode]]) -> List[TSNode]:
        """Functions whose parameters the given expressions depend on."""
        funcs: List[TSNode] = []
        seen = set()
        stack = [(n, 0) for n in nodes if n is not None]
        while stack:
            node, depth = stack.pop()
            for ident in itertools.chain((node,), node.walk_descendants()):
                if ident.type not in ('identifier', 'shorthand_property_identifier'):
                    continue
                binding = self.tree.lookup(ident.text, ident)
                if binding is None or binding.key in seen:
                    continue
                seen.add(binding.key)
                if binding.kind == 'param':
                    if binding.function not in funcs:
                        funcs.append(binding.function)
                elif binding.kind in ('var', 'let', 'const') and depth < 4:
                    for value in ([binding.init] if binding.init is not None else []) + \
                            binding.assignments:
                        stack.append((value, depth + 1))
        return funcs

    def _contexts(self, nodes: List[Optional[TSNode]], site: TSNode,
                  level: int = 1) -> List[Optional[CallFrame]]:
        funcs = [f for f in self._param_functions(nodes) if f.contains(site)]
        funcs.sort(key=lambda f: f.start_byte, reverse=True)
        for func in funcs:
            callers = self.graph.trace_callers(func)[:self.settings.max_callers]
            if not callers:
                continue
            frames: List[Optional[CallFrame]] = []
            for cb in callers:
                outers: List[Optional[CallFrame]] = [None]
                if level < self.settings.max_call_chain:
                    arg_nodes = [a for a in cb.args if isinstance(a, TSNode)]
                    outers = self._contexts(arg_nodes, cb.site, level + 1)
                for outer in outers:
                    frames.append(CallFrame(func, cb, outer))
                    if len(frames) >= self.settings.max_contexts:
                        return frames
            return frames
        return [None]

    # ------------------------------------------------------------------
    # Expansion
    # ------------------------------------------------------------------

    def _expand(self, sink: _Sink) -> List[CallSite]:
        if sink.url_value is not None:
            url = sink.url_value
            if not has_literal_text(url):
                return []
            return [CallSite(sink.type, url, sink.default_method, node=sink.node)]
        nodes = [sink.url, sink.method, sink.options, sink.body] + \
            [v for _, v in sink.headers]
        out = []
        for frame in self._contexts(nodes, sink.node):
            out.extend(self._sites_in_context(sink, frame))
        return out

    def _sites_in_context(self, sink: _Sink, frame: Optional[CallFrame]) -> List[CallSite]:
        resolver = self.resolver
        opts = _Options(self, sink.options, frame)
        url_node, url_frame = (sink.url, frame) if sink.url is not None else opts.node('url')
        if url_node is None:
            return []
        with resolver.enter(url_frame):
            url_value = resolver.with_label(resolver.resolve(url_node), url_node)

        method_values: List[Optional[ResolvedValue]] = [None]
        if sink.method is not None:
            with resolver.enter(frame):
                method_values = list(options(resolver.resolve(sink.method)))
        elif sink.options is not None:
            value = opts.value('method')
            if value is None:
                value = opts.value('type')
            if value is not None:
                method_values = list(options(value))

        headers, header_params = self._headers(sink, opts, frame)
        if sink.body is not None:
            body_params = self._body_params(sink.body, frame, sink.node)
        else:
            body_node, body_frame = opts.node('body')
            if body_node is None:
                body_node, body_frame = opts.node('data')
            body_params = self._body_params(body_node, body_frame, sink.node) \
                if body_node is not None else []

        sites = []
        for url_opt in options(url_value)[:self.settings.max_many]:
            url = self._name_placeholders(render(url_opt))
            if not has_literal_text(url):
                continue
            url_params = self._url_params(url, sink.node)
            for method_opt in method_values:
                method = self._method(method_opt, sink.default_method)
                sites.append(CallSite(sink.type, url, method, dict(headers),
                                      url_params + header_params + body_params, sink.node))
                if len(sites) >= self.settings.max_many:
                    return sites
        return sites

    @staticmethod
    def _method(value: Optional[ResolvedValue], default: str) -> str:
        if isinstance(value, Literal) and isinstance(value.value, str):
            verb = value.value.upper()
            if verb in HTTP_METHODS:
                return verb
        return default

    @staticmethod
    def _name_placeholders(url: str) -> str:
        count = itertools.count(1)
        while _UNNAMED in url:
            url = url.replace(_UNNAMED, '{param%d}' % next(count), 1)
        return url

    def _url_params(self, url: str, site: TSNode) -> List[ParamDescriptor]:
        path, _, query = url.partition('?')
        query = query.split('#', 1)[0]
        params: List[ParamDescriptor] = []
        names = set()
        for name in placeholders(path):
            if not name or name in names:
                continue
            names.add(name)
            required, default = self._param_default(name, site)
            params.append(ParamDescriptor(
                name, 'string', 'path', required, default,
                self.constraints.valid_values(name, site)))
        for pair in query.split('&'):
            if not pair:
                continue
            key, eq, raw = pair.partition('=')
            if not key or placeholders(key) or key in names:
                continue
            names.add(key)
            holes = placeholders(raw)
            if holes and raw == '{%s}' % holes[0]:
                required, default = self._param_default(holes[0], site)
                params.append(ParamDescriptor(
                    key, 'string', 'query', required, default,
                    self.constraints.valid_values(holes[0], site)))
            else:
                params.append(ParamDescriptor(key, 'string', 'query', False, raw if eq else None))
        return params

    def _param_default(self, name: str, site: TSNode) -> Tuple[bool, object]:
        binding = self.tree.lookup(name, site)
        if binding is None or binding.kind != 'param' or binding.default is None:
            return True, None
        with self.resolver.enter(None):
            value = self.resolver.resolve(binding.default)
        return False, value.value if isinstance(value, Literal) else None

    def _headers(self, sink: _Sink, opts: '_Options',
                 frame: Optional[CallFrame]) -> Tuple[Dict[str, str], List[ParamDescriptor]]:
        headers: Dict[str, str] = {}
        params: List[ParamDescriptor] = []

        def add(key: str, value: Optional[ResolvedValue]):
            if isinstance(value, Literal) and value.value is not None:
                headers[key] = render(value)
            else:
                headers[key] = '(dynamic)'
                if all(p.name != key for p in params):
                    params.append(ParamDescriptor(key, 'string', 'header'))

        # setRequestHeader names are lowercased; option headers keep their spelling.
        resolver = self.resolver
        for name_node, value_node in sink.headers:
            with resolver.enter(frame):
                name = resolver.resolve(name_node)
                value = resolver.resolve(value_node)
            if isinstance(name, Literal) and isinstance(name.value, str):
                add(name.value.lower(), value)
        value = opts.value('headers')
        for opt in options(value) if value is not None else ():
            if isinstance(opt, MapValue):
                for key in opt.keys():
                    add(key, opt.get(key))
                break
        return headers, params

    # ------------------------------------------------------------------
    # Body descriptors
    # ------------------------------------------------------------------

    def _object_source(self, node: Optional[TSNode], frame: Optional[CallFrame],
                       depth: int = 0) -> Tuple[Optional[TSNode], Optional[CallFrame]]:
        """Object literal an expression evaluates to, with the frame to read it in."""
        if node is None or depth > self.settings.max_call_chain + 4:
            return None, None
        node = node.unwrap()
        t = node.type
        if t == 'object':
            return node, frame
        if t == 'call_expression':
            callee = self.graph.callee_of(node)
            args = node.get_arguments()
            if callee is not None and args and self._is_json_stringify(callee):
                return self._object_source(args[0], frame, depth + 1)
            return None, None
        if t == 'new_expression':
            ctor = node.child_by_field('constructor')
            args = node.get_arguments()
            if ctor is not None and args and self.graph.is_builtin(ctor, 'URLSearchParams'):
                return self._object_source(args[0], frame, depth + 1)
            return None, None
        if t == 'binary_expression' and node.operator() in ('||', '??'):
            found = self._object_source(node.child_by_field('left'), frame, depth + 1)
            if found[0] is not None:
                return found
            return self._object_source(node.child_by_field('right'), frame, depth + 1)
        if t != 'identifier':
            return None, None
        binding = self.tree.lookup(node.text, node)
        if binding is None or binding.path:
            return None, None
        if binding.kind == 'param':
            cur = frame
            while cur is not None:
                if cur.function.key == binding.function.key:
                    arg = cur.binding.argument(binding.param_index)
                    if isinstance(arg, TSNode):
                        return self._object_source(arg, cur.outer, depth + 1)
                    break
                cur = cur.outer
            if binding.default is not None:
                return self._object_source(binding.default, frame, depth + 1)
            return None, None
        if binding.kind in ('var', 'let', 'const') and binding.init is not None \
                and not binding.assignments:
            return self._object_source(binding.init, frame, depth + 1)
        return None, None

    def _is_json_stringify(self, callee: TSNode) -> bool:
        split = member_path(callee)
        return split is not None and split[0].text == 'JSON' and split[1] == ('stringify',) \
            and self.tree.is_global('JSON', split[0])

    def _form_data(self, node: TSNode, frame: Optional[CallFrame]) -> Optional[List[ParamDescriptor]]:
        node = node.unwrap()
        if node.type != 'identifier' or not self.graph.is_instance_of(node, 'FormData'):
            return None
        params = []
        for method in ('append', 'set'):
            for call in self._receiver_calls(node, method):
                args = call.get_arguments()
                if len(args) < 2:
                    continue
                with self.resolver.enter(frame):
                    name = self.resolver.resolve(args[0])
                if isinstance(name, Literal) and isinstance(name.value, str):
                    params.append(self._field(name.value, args[1], frame, call))
        params.sort(key=lambda p: p.name)
        return params

    def _body_params(self, node: Optional[TSNode], frame: Optional[CallFrame],
                     site: TSNode) -> List[ParamDescriptor]:
        if node is None:
            return []
        form = self._form_data(node, frame)
        if form is not None:
            return form
        literal, literal_frame = self._object_source(node, frame)
        if literal is not None:
            return self._literal_fields(literal, literal_frame)
        with self.resolver.enter(frame):
            value = self.resolver.resolve(node)
        params: List[ParamDescriptor] = []
        for opt in options(value):
            if isinstance(opt, MapValue):
                for key in opt.keys():
                    params.append(self._value_field(key, opt.get(key)))
                break
            if isinstance(opt, Literal) and isinstance(opt.value, str) and '=' in opt.value:
                for pair in opt.value.split('&'):
                    key, _, raw = pair.partition('=')
                    if key:
                        params.append(ParamDescriptor(key, 'string', 'body', True, raw))
                break
        return params

    def _literal_fields(self, literal: TSNode, frame: Optional[CallFrame],
                        depth: int = 0) -> List[ParamDescriptor]:
        params: List[ParamDescriptor] = []
        for child in literal.named_children:
            t = child.type
            if t == 'pair':
                key = property_key(child.child_by_field('key'))
                if key is not None:
                    params.append(self._field(key, child.child_by_field('value'), frame, child))
            elif t == 'shorthand_property_identifier':
                params.append(self._field(child.text, child, frame, child))
            elif t == 'spread_element':
                inner = child.named_children[0] if child.named_children else None
                nested, nested_frame = self._object_source(inner, frame)
                if nested is not None and depth < 4:
                    for p in self._literal_fields(nested, nested_frame, depth + 1):
                        p.required = False
                        params.append(p)
                elif inner is not None:
                    params.append(ParamDescriptor('...' + inner.text, 'object', 'body',
                                                  False, spread=True))
        return params

    def _field(self, name: str, node: TSNode, frame: Optional[CallFrame],
               at: TSNode) -> ParamDescriptor:
        inner = node.unwrap()
        required = True
        default = None
        source = inner
        with self.resolver.enter(frame):
            value = self.resolver.resolve(inner)
            if inner.type == 'binary_expression' and inner.operator() in ('||', '??'):
                required = False
                fallback = self.resolver.resolve(inner.child_by_field('right'))
                if isinstance(fallback, Literal):
                    default = fallback.value
                source = inner.child_by_field('left').unwrap()
            elif inner.type == 'ternary_expression':
                required = False
        if default is None and isinstance(value, Literal):
            default = value.value
        kind = value_type(value)
        if kind == 'unknown' and default is not None:
            kind = value_type(Literal(default))
        valid = None
        if source.type in ('identifier', 'shorthand_property_identifier'):
            valid = self.constraints.valid_values(source.text, source)
        return ParamDescriptor(name, kind, 'body', required, default, valid)

    @staticmethod
    def _value_field(name: str, value: Optional[ResolvedValue]) -> ParamDescriptor:
        default = value.value if isinstance(value, Literal) else None
        kind = value_type(value) if value is not None else 'unknown'
        return ParamDescriptor(name, kind, 'body', True, default)


class _Options:
    """Read access to an options object (fetch init, $.ajax settings)."""

    def __init__(self, synth: NetworkSynthesizer, node: Optional[TSNode],
                 frame: Optional[CallFrame]):
        self.synth = synth
        self.frame = frame
        self.literal, self.literal_frame = synth._object_source(node, frame) \
            if node is not None else (None, None)
        self.value_map: Optional[ResolvedValue] = None
        if node is not None and self.literal is None:
            with synth.resolver.enter(frame):
                self.value_map = synth.resolver.resolve(node)

    def node(self, key: str) -> Tuple[Optional[TSNode], Optional[CallFrame]]:
        if self.literal is None:
            return None, None
        values = self.synth.graph.literal_members(self.literal, key)
        return (values[-1], self.literal_frame) if values else (None, None)

    def value(self, key: str) -> Optional[ResolvedValue]:
        node, frame = self.node(key)
        if node is not None:
            with self.synth.resolver.enter(frame):
                return self.synth.resolver.resolve(node)
        if self.value_map is not None:
            found = [o.get(key) for o in options(self.value_map) if isinstance(o, MapValue)]
            found = [f for f in found if f is not None]
            if found:
                return self.synth.resolver.join(found)
        return None
