#!/usr/bin/env python3
"""Tests for scope construction and binding lookup."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tracecore.ts_adapter import parse_js_ts
from tracecore.scope import ScopeTree


def build(code):
    root = parse_js_ts(code)
    return root, ScopeTree(root)


def identifiers(root, name):
    return [n for n in root.walk_descendants() if n.type == 'identifier' and n.text == name]


def function_bindings(tree, root, index=0):
    funcs = [n for n in root.walk_descendants()
             if n.type in ('function_declaration', 'function_expression', 'arrow_function')]
    return tree.scopes[tree.function_scope(funcs[index])].bindings


def test_unbound_is_global():
    root, tree = build('fetch("/a");')
    ident = identifiers(root, 'fetch')[0]
    assert tree.lookup('fetch', ident) is None
    assert tree.is_global('fetch', ident)
    print("  [PASS] unbound_is_global")


def test_function_hoisting():
    """A function declared later in the body is visible at an earlier call."""
    root, tree = build('function outer() { helper(); function helper() {} }')
    use = identifiers(root, 'helper')[0]
    binding = tree.lookup('helper', use)
    assert binding is not None and binding.kind == 'function'
    assert tree.scopes[binding.scope_id].kind == 'function'
    print("  [PASS] function_hoisting")


def test_var_hoists_out_of_blocks():
    root, tree = build('function f() { if (a) { var x = 1; } return x; }')
    use = identifiers(root, 'x')[-1]
    binding = tree.lookup('x', use)
    assert binding is not None and binding.kind == 'var'
    assert tree.scopes[binding.scope_id].kind == 'function'
    print("  [PASS] var_hoists_out_of_blocks")


def test_let_is_block_scoped():
    root, tree = build('let a = 1; { let a = 2; use(a); } use(a);')
    inner_use, outer_use = identifiers(root, 'a')[2], identifiers(root, 'a')[3]
    inner = tree.lookup('a', inner_use)
    outer = tree.lookup('a', outer_use)
    assert inner is not outer
    assert inner.init.text == '2' and outer.init.text == '1'
    print("  [PASS] let_is_block_scoped")


def test_destructured_parameters():
    root, tree = build('function req({url, method = "GET"}, [first], ...rest) {}')
    bindings = function_bindings(tree, root)
    assert bindings['url'].kind == 'param'
    assert bindings['url'].path == (('key', 'url'),)
    assert bindings['method'].default is not None
    assert bindings['method'].default.text == '"GET"'
    assert bindings['first'].path == (('index', 0),)
    assert bindings['first'].param_index == 1
    assert bindings['rest'].rest and bindings['rest'].param_index == 2
    print("  [PASS] destructured_parameters")


def test_renamed_destructuring():
    root, tree = build('const { data: payload } = event;')
    use = identifiers(root, 'payload')[0]
    binding = tree.declared_by(use)
    assert binding.kind == 'const'
    assert binding.path == (('key', 'data'),)
    assert binding.init.text == 'event'
    print("  [PASS] renamed_destructuring")


def test_arrow_single_parameter():
    root, tree = build('items.forEach(item => send(item));')
    bindings = function_bindings(tree, root)
    assert bindings['item'].kind == 'param' and bindings['item'].param_index == 0
    print("  [PASS] arrow_single_parameter")


def test_assignments_recorded():
    root, tree = build('var x = 1; x = 2; y = 3; var o = {}; o.a = 4; z.b = 5;')
    x = tree.lookup('x', identifiers(root, 'x')[0])
    assert [a.text for a in x.assignments] == ['2']
    assert [a.text for a in tree.global_assignments['y']] == ['3']
    o = tree.lookup('o', identifiers(root, 'o')[0])
    assert [a.text for a in o.member_assignments['a']] == ['4']
    assert [a.text for a in tree.global_members[('z', 'b')]] == ['5']
    print("  [PASS] assignments_recorded")


def test_catch_and_class_and_import():
    root, tree = build('import { get as load } from "lib";\n'
                       'class Api {}\n'
                       'try { load(); } catch (err) { report(err); }')
    assert tree.lookup('load', identifiers(root, 'load')[-1]).kind == 'import'
    assert tree.lookup('Api', identifiers(root, 'Api')[0]).kind == 'class'
    assert tree.lookup('err', identifiers(root, 'err')[-1]).kind == 'catch-param'
    print("  [PASS] catch_and_class_and_import")


def test_for_of_variable():
    root, tree = build('for (const h of handlers) { h(); }')
    binding = tree.lookup('h', identifiers(root, 'h')[-1])
    assert binding.kind == 'const'
    assert binding.path == (('element',),)
    assert binding.init.text == 'handlers'
    print("  [PASS] for_of_variable")


def test_named_function_expression_is_local():
    root, tree = build('var f = function inner() { inner(); }; inner();')
    uses = identifiers(root, 'inner')
    assert tree.lookup('inner', uses[1]) is not None
    assert tree.lookup('inner', uses[2]) is None
    print("  [PASS] named_function_expression_is_local")


if __name__ == '__main__':
    print("=== Scope Tests ===\n")
    tests = [
        test_unbound_is_global,
        test_function_hoisting,
        test_var_hoists_out_of_blocks,
        test_let_is_block_scoped,
        test_destructured_parameters,
        test_renamed_destructuring,
        test_arrow_single_parameter,
        test_assignments_recorded,
        test_catch_and_class_and_import,
        test_for_of_variable,
        test_named_function_expression_is_local,
    ]
    passed = 0
    for t in tests:
        try:
            t()
            passed += 1
        except Exception as e:
            print(f"  [FAIL] {t.__name__}: {e}")
    print(f"\n{passed}/{len(tests)} passed")
