#!/usr/bin/env python3
"""Tests for the value resolver."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tracecore.ts_adapter import parse_js_ts
from tracecore.scope import ScopeTree
from tracecore.callgraph import CallGraph
from tracecore.resolver import ValueResolver
from tracecore.values import Literal, ListValue, Unknown, Many, is_unknown


def resolve_decl(code, name='result'):
    """Resolve the initializer of the variable ``name``."""
    root = parse_js_ts(code)
    tree = ScopeTree(root)
    resolver = ValueResolver(tree, CallGraph(tree))
    for node in root.walk_descendants():
        if node.type == 'variable_declarator' and node.child_by_field('name').text == name:
            return resolver.resolve(node.child_by_field('value'))
    raise AssertionError(f"no declaration of {name}")


def test_string_concatenation():
    value = resolve_decl('const base = "/api"; const result = base + "/users";')
    assert value == Literal('/api/users'), f"Got {value}"
    print("  [PASS] string_concatenation")


def test_template_literal():
    value = resolve_decl('const id = 5; const result = `/users/${id}`;')
    assert value == Literal('/users/5'), f"Got {value}"
    print("  [PASS] template_literal")


def test_unresolved_template_keeps_placeholder():
    value = resolve_decl('function get(id) { const result = `/users/${id}`; return result; }')
    assert value == Unknown(template='/users/{id}'), f"Got {value}"
    print("  [PASS] unresolved_template_keeps_placeholder")


def test_computed_access_yields_all_values():
    """An unresolved key into a literal map gives every entry."""
    value = resolve_decl('''
        const ENDPOINTS = { users: "/api/users", posts: "/api/posts" };
        function pick(kind) { const result = ENDPOINTS[kind]; return result; }
    ''')
    assert value == Many((Literal('/api/users'), Literal('/api/posts'))), f"Got {value}"
    print("  [PASS] computed_access_yields_all_values")


def test_array_index():
    value = resolve_decl('const list = ["/a", "/b"]; const result = list[1];')
    assert value == Literal('/b')
    print("  [PASS] array_index")


def test_ternary_and_logical():
    assert resolve_decl('const result = flag ? "GET" : "POST";') == \
        Many((Literal('GET'), Literal('POST')))
    assert resolve_decl('const result = true ? "a" : "b";') == Literal('a')
    assert resolve_decl('const result = "" || "fallback";') == Literal('fallback')
    print("  [PASS] ternary_and_logical")


def test_branch_returns_merge():
    value = resolve_decl('''
        function pick(m) { if (m) { return "/get"; } else { return "/post"; } }
        const result = pick(x);
    ''')
    assert value == Many((Literal('/get'), Literal('/post'))), f"Got {value}"
    print("  [PASS] branch_returns_merge")


def test_call_binds_arguments():
    value = resolve_decl('function rpc(svc) { return "/rpc/" + svc; } const result = rpc("auth");')
    assert value == Literal('/rpc/auth'), f"Got {value}"
    print("  [PASS] call_binds_arguments")


def test_parameter_joins_all_callers():
    value = resolve_decl('''
        function rpc(svc) { const result = "/rpc/" + svc; return result; }
        rpc("auth");
        rpc("billing");
    ''')
    assert value == Many((Literal('/rpc/auth'), Literal('/rpc/billing'))), f"Got {value}"
    print("  [PASS] parameter_joins_all_callers")


def test_destructured_parameter():
    value = resolve_decl('''
        function req({ url }) { const result = url; return result; }
        req({ url: "/x" });
    ''')
    assert value == Literal('/x'), f"Got {value}"
    print("  [PASS] destructured_parameter")


def test_this_field_from_constructor():
    """this.base in a prototype method comes from every `new Api(...)`."""
    value = resolve_decl('''
        function Api(base) { this.base = base; }
        Api.prototype.url = function () { const result = this.base + "/v1"; return result; };
        new Api("https://x.test");
    ''')
    assert value == Literal('https://x.test/v1'), f"Got {value}"
    print("  [PASS] this_field_from_constructor")


def test_cycle_terminates():
    value = resolve_decl('var a = b; var b = a; const result = a;')
    assert is_unknown(value), f"Got {value}"
    print("  [PASS] cycle_terminates")


def test_string_and_array_methods():
    assert resolve_decl('const result = "ABC".toLowerCase();') == Literal('abc')
    assert resolve_decl('const result = ["a", "b"].join("/");') == Literal('a/b')
    assert resolve_decl('const result = "a,b".split(",");') == \
        ListValue((Literal('a'), Literal('b')))
    print("  [PASS] string_and_array_methods")


def test_builtin_functions():
    assert resolve_decl('const result = encodeURIComponent("a b&c");') == Literal('a%20b%26c')
    assert resolve_decl('const result = parseInt("42");') == Literal(42)
    assert resolve_decl('const result = Object.keys({ a: 1, b: 2 });') == \
        ListValue((Literal('a'), Literal('b')))
    print("  [PASS] builtin_functions")


def test_substring_and_list_folds():
    assert resolve_decl('const result = "abcdef".substring(4, 1);') == Literal('bcd')
    assert resolve_decl('const result = "abcdef".substring(-2, 2);') == Literal('ab')
    assert resolve_decl('const result = "abcdef".slice(-2);') == Literal('ef')
    assert resolve_decl('const result = [1, 2, 3].reverse()[0];') == Literal(3)
    assert resolve_decl('const result = ["a", "b", "c"].slice(1).join("");') == Literal('bc')
    print("  [PASS] substring_and_list_folds")


def test_invalid_code_points_do_not_raise():
    """A lone surrogate cannot be URI-encoded; an out-of-range escape is replaced."""
    value = resolve_decl('const result = encodeURIComponent("\\uD800");')
    assert is_unknown(value), f"Got {value}"
    assert resolve_decl('const result = "\\u{110000}";') == Literal('\ufffd')
    print("  [PASS] invalid_code_points_do_not_raise")


def test_unknown_global_is_labelled():
    assert resolve_decl('const result = someGlobal;') == Unknown(label='someGlobal')
    print("  [PASS] unknown_global_is_labelled")


def test_global_assignment_is_followed():
    value = resolve_decl('API_ROOT = "/v2"; const result = API_ROOT + "/me";')
    assert value == Literal('/v2/me'), f"Got {value}"
    print("  [PASS] global_assignment_is_followed")


if __name__ == '__main__':
    print("=== Value Resolver Tests ===\n")
    tests = [v for k, v in sorted(globals().items()) if k.startswith('test_')]
    passed = 0
    for t in tests:
        try:
            t()
            passed += 1
        except Exception as e:
            print(f"  [FAIL] {t.__name__}: {e}")
    print(f"\n{passed}/{len(tests)} passed")
