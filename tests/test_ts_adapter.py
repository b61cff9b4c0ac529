#!/usr/bin/env python3
"""Tests for the tree-sitter adapter."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from tracecore.ts_adapter import TSNode, ParseError, parse_js_ts


def first(root, node_type):
    for node in root.walk_descendants():
        if node.type == node_type:
            return node
    return None


def test_parse_basic():
    """Test basic JavaScript parsing."""
    root = parse_js_ts('console.log("hello");')
    assert root.type == 'program', f"Expected 'program', got '{root.type}'"
    assert isinstance(root, TSNode)
    print("  [PASS] parse_basic")


def test_parse_jsx():
    root = parse_js_ts('const el = <div className="a">{name}</div>;')
    types = [n.type for n in root.walk_descendants()]
    assert 'jsx_element' in types, f"Expected jsx_element, got: {types}"
    print("  [PASS] parse_jsx")


def test_node_text():
    """Test node text extraction."""
    root = parse_js_ts('var answer = 42;')
    ident = first(root, 'identifier')
    assert ident.text == 'answer', f"Expected 'answer', got '{ident.text}'"
    print("  [PASS] node_text")


def test_node_line_and_column():
    """Lines are 1-based, columns 0-based."""
    root = parse_js_ts('var x = 1;\n  var y = 2;')
    positions = {}
    for node in root.walk_descendants():
        if node.type == 'identifier':
            positions[node.text] = (node.line, node.column)
    assert positions['x'] == (1, 4), f"Got {positions['x']}"
    assert positions['y'] == (2, 6), f"Got {positions['y']}"
    print("  [PASS] node_line_and_column")


def test_child_by_field():
    root = parse_js_ts('fetch("/api", opts);')
    call = first(root, 'call_expression')
    assert call.child_by_field('function').text == 'fetch'
    args = call.get_arguments()
    assert [a.text for a in args] == ['"/api"', 'opts']
    print("  [PASS] child_by_field")


def test_unwrap_parentheses():
    root = parse_js_ts('var v = (((value)));')
    decl = first(root, 'variable_declarator')
    inner = decl.child_by_field('value').unwrap()
    assert inner.type == 'identifier' and inner.text == 'value'
    print("  [PASS] unwrap_parentheses")


def test_string_value_escapes():
    root = parse_js_ts(r'var s = "a\nbA\x42";')
    s = first(root, 'string')
    assert s.string_value() == 'a\nbAB', f"Got {s.string_value()!r}"
    print("  [PASS] string_value_escapes")


def test_template_parts():
    """Quasis are cooked strings, substitutions stay nodes."""
    root = parse_js_ts('var u = `/users/${id}/posts`;')
    tpl = first(root, 'template_string')
    parts = tpl.template_parts()
    assert parts[0] == '/users/'
    assert isinstance(parts[1], TSNode) and parts[1].text == 'id'
    assert parts[2] == '/posts'
    assert tpl.string_value() is None
    print("  [PASS] template_parts")


def test_plain_template_has_string_value():
    root = parse_js_ts('var u = `/health`;')
    assert first(root, 'template_string').string_value() == '/health'
    print("  [PASS] plain_template_has_string_value")


def test_walk_skips_functions():
    root = parse_js_ts('a(); function f() { b(); }')
    calls = [n.text for n in root.walk_descendants(skip_functions=True)
             if n.type == 'call_expression']
    assert calls == ['a()'], f"Got {calls}"
    print("  [PASS] walk_skips_functions")


def test_node_identity():
    root = parse_js_ts('x;')
    a = first(root, 'identifier')
    b = first(root, 'identifier')
    assert a == b and hash(a) == hash(b)
    assert a.key == (0, 1, 'identifier')
    print("  [PASS] node_identity")


# ---------- parse errors ----------

def test_garbage_raises():
    with pytest.raises(ParseError):
        parse_js_ts('}}}}}}}}}}')
    print("  [PASS] garbage_raises")


def test_small_error_is_tolerated():
    """Error recovery over a small part of a large input is not fatal."""
    code = 'var ok = 1;\n' * 50 + 'var = ;\n'
    root = parse_js_ts(code)
    assert root.type == 'program'
    print("  [PASS] small_error_is_tolerated")


def test_force_script_rejects_module_syntax():
    code = 'import x from "y";\nx();'
    assert parse_js_ts(code).type == 'program'
    with pytest.raises(ParseError) as info:
        parse_js_ts(code, force_script=True)
    assert info.value.line == 1
    assert 'module' in str(info.value)
    print("  [PASS] force_script_rejects_module_syntax")


def test_force_script_accepts_plain_script():
    assert parse_js_ts('var a = 1;', force_script=True).type == 'program'
    print("  [PASS] force_script_accepts_plain_script")


if __name__ == '__main__':
    print("=== Tree-sitter Adapter Tests ===\n")
    tests = [
        test_parse_basic,
        test_parse_jsx,
        test_node_text,
        test_node_line_and_column,
        test_child_by_field,
        test_unwrap_parentheses,
        test_string_value_escapes,
        test_template_parts,
        test_plain_template_has_string_value,
        test_walk_skips_functions,
        test_node_identity,
        test_garbage_raises,
        test_small_error_is_tolerated,
        test_force_script_rejects_module_syntax,
        test_force_script_accepts_plain_script,
    ]
    passed = 0
    for t in tests:
        try:
            t()
            passed += 1
        except Exception as e:
            print(f"  [FAIL] {t.__name__}: {e}")
    print(f"\n{passed}/{len(tests)} passed")
