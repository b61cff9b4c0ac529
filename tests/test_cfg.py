#!/usr/bin/env python3
"""Tests for the CFG builder and reaching definitions."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tracecore.ts_adapter import parse_js_ts
from tracecore.scope import ScopeTree
from tracecore.cfg import CFGBuilder, ReachingDefinitions, ENTRY


def get_function_body(code):
    """Parse JavaScript and return the body node of the first function."""
    root = parse_js_ts(code)
    for node in root.walk_descendants():
        if node.type == 'function_declaration':
            return node.child_by_field('body')
    return None


def last_use(root, name):
    """Last identifier node named ``name`` in the program."""
    found = None
    for node in root.walk_descendants():
        if node.type == 'identifier' and node.text == name:
            found = node
    return found


def reaching_texts(code, name):
    root = parse_js_ts(code)
    tree = ScopeTree(root)
    use = last_use(root, name)
    binding = tree.lookup(name, use)
    defs = ReachingDefinitions(tree).reaching(binding, use)
    return [d if d is ENTRY else d.text for d in defs]


def test_linear_cfg():
    """Test CFG for straight-line code."""
    body = get_function_body('function f() { var x = 1; let y = 2; const z = 3; }')
    assert body is not None
    builder = CFGBuilder()
    blocks = builder.build(body)

    entry_blocks = [b for b in blocks if b.is_entry]
    exit_blocks = [b for b in blocks if b.is_exit]
    assert len(entry_blocks) == 1, f"Expected 1 entry, got {len(entry_blocks)}"
    assert len(exit_blocks) == 1, f"Expected 1 exit, got {len(exit_blocks)}"

    entry = entry_blocks[0]
    assert len(entry.statements) == 3, f"Expected 3 statements, got {len(entry.statements)}"
    assert exit_blocks[0].id in entry.successors
    print("  [PASS] linear_cfg")


def test_if_cfg():
    """Test CFG for if/else branching."""
    body = get_function_body('function f(x) { if (x) { a = 1; } else { b = 2; } c = 3; }')
    blocks = CFGBuilder().build(body)

    # entry, then, join, else, exit
    assert len(blocks) >= 5, f"Expected >= 5 blocks, got {len(blocks)}"
    entry = [b for b in blocks if b.is_entry][0]
    assert len(entry.successors) >= 2, f"Expected >= 2 successors from entry, got {len(entry.successors)}"
    print("  [PASS] if_cfg")


def test_while_cfg():
    """Test CFG for while loop (back edge)."""
    body = get_function_body('function f() { while (x) { a = 1; } b = 2; }')
    blocks = CFGBuilder().build(body)

    has_back_edge = any(
        any(s_id < b.id for s_id in b.successors)
        for b in blocks if not b.is_entry and not b.is_exit
    )
    assert has_back_edge, "Expected back edge in while loop CFG"
    print("  [PASS] while_cfg")


def test_for_of_cfg():
    """for...of puts the loop statement itself in the header block."""
    body = get_function_body('function f(items) { for (const v of items) { use(v); } }')
    blocks = CFGBuilder().build(body)
    assert len(blocks) >= 4, f"Expected >= 4 blocks for for-of, got {len(blocks)}"
    headers = [b for b in blocks if any(s.type == 'for_in_statement' for s in b.statements)]
    assert len(headers) == 1
    print("  [PASS] for_of_cfg")


def test_return_terminates():
    """Test that return terminates the block."""
    body = get_function_body('function f() { return 42; dead = 1; }')
    blocks = CFGBuilder().build(body)

    entry = [b for b in blocks if b.is_entry][0]
    exit_block = [b for b in blocks if b.is_exit][0]
    assert exit_block.id in entry.successors, "Return should connect to exit"
    assert len(entry.statements) == 1, f"Dead code leaked into entry: {entry.statements}"
    print("  [PASS] return_terminates")


def test_try_catch_cfg():
    """Test CFG for try/catch."""
    body = get_function_body('''function f() {
        try { a = risky(); }
        catch (e) { b = handle(e); }
        c = after();
    }''')
    blocks = CFGBuilder().build(body)
    assert len(blocks) >= 5, f"Expected >= 5 blocks for try/catch, got {len(blocks)}"
    print("  [PASS] try_catch_cfg")


def test_switch_cfg():
    """Test CFG for switch/case."""
    body = get_function_body('''function f(x) {
        switch (x) {
            case 1: a = 1; break;
            case 2: b = 2; break;
            default: c = 3;
        }
    }''')
    blocks = CFGBuilder().build(body)
    assert len(blocks) >= 5, f"Expected >= 5 blocks for switch, got {len(blocks)}"
    print("  [PASS] switch_cfg")


def test_empty_function():
    """Test CFG for empty function body."""
    body = get_function_body('function f() { }')
    blocks = CFGBuilder().build(body)

    entry = [b for b in blocks if b.is_entry][0]
    exit_block = [b for b in blocks if b.is_exit][0]
    assert exit_block.id in entry.successors, "Empty function should connect entry to exit"
    print("  [PASS] empty_function")


def test_block_predecessors():
    """Every successor relationship has a matching predecessor."""
    body = get_function_body('function f(x) { if (x) { a = 1; } b = 2; }')
    blocks = CFGBuilder().build(body)

    for block in blocks:
        for succ_id in block.successors:
            succ = next((b for b in blocks if b.id == succ_id), None)
            assert succ is not None, f"Successor {succ_id} not found"
            assert block.id in succ.predecessors, \
                f"Block {block.id} is successor of {succ.id} but not in predecessors"
    print("  [PASS] block_predecessors")


# ---------- reaching definitions ----------

def test_reassignment_kills_init():
    """A straight-line reassignment hides the declaration value."""
    defs = reaching_texts('var x = location.hash; x = "safe"; sink(x);', 'x')
    assert defs == ['"safe"'], f"Got {defs}"
    print("  [PASS] reassignment_kills_init")


def test_one_branch_keeps_both():
    """Assigning in only one branch leaves the original definition reaching."""
    defs = reaching_texts('''function f() {
        var x = location.hash;
        if (cond) { x = encodeURIComponent(x); }
        sink(x);
    }''', 'x')
    assert defs == ['location.hash', 'encodeURIComponent(x)'], f"Got {defs}"
    print("  [PASS] one_branch_keeps_both")


def test_both_branches_replace_init():
    defs = reaching_texts('''function f() {
        var x = location.hash;
        if (cond) { x = "a"; } else { x = "b"; }
        sink(x);
    }''', 'x')
    assert defs == ['"a"', '"b"'], f"Got {defs}"
    print("  [PASS] both_branches_replace_init")


def test_short_circuit_assignment_keeps_previous():
    """An assignment behind && or a ternary arm runs on some paths only."""
    defs = reaching_texts('var x = location.hash;\n'
                          'c && (x = encodeURIComponent(x));\n'
                          'sink(x);', 'x')
    assert defs == ['location.hash', 'encodeURIComponent(x)'], f"Got {defs}"
    defs = reaching_texts('var x = a; c ? (x = b) : d; x ??= e; sink(x);', 'x')
    assert defs == ['x ??= e'], f"Got {defs}"
    defs = reaching_texts('var x = a; ok || (x = b); sink(x);', 'x')
    assert defs == ['a', 'b'], f"Got {defs}"
    print("  [PASS] short_circuit_assignment_keeps_previous")


def test_ternary_value_is_unconditional():
    defs = reaching_texts('var x = a; x = c ? 1 : 2; sink(x);', 'x')
    assert defs == ['c ? 1 : 2'], f"Got {defs}"
    print("  [PASS] ternary_value_is_unconditional")


def test_break_and_continue_leave_the_body():
    """A value assigned right before break/continue reaches the code after the loop."""
    defs = reaching_texts('function f() { var x = a; '
                          'while (c) { if (d) { x = b; break; } x = e; } sink(x); }', 'x')
    assert defs == ['a', 'b', 'e'], f"Got {defs}"
    defs = reaching_texts('function f() { var x = a; '
                          'while (c) { x = b; if (d) continue; x = e; } sink(x); }', 'x')
    assert defs == ['a', 'b', 'e'], f"Got {defs}"
    print("  [PASS] break_and_continue_leave_the_body")


def test_break_inside_switch_case_branch():
    defs = reaching_texts('function f(k) { var x = a; '
                          'switch (k) { case 1: if (d) { x = b; break; } x = e; } sink(x); }', 'x')
    assert defs == ['a', 'b', 'e'], f"Got {defs}"
    print("  [PASS] break_inside_switch_case_branch")


def test_parameter_entry():
    """A parameter reassigned on one path still reaches with its incoming value."""
    defs = reaching_texts('function f(p) { if (c) { p = 1; } sink(p); }', 'p')
    assert defs[0] is ENTRY
    assert defs[1:] == ['1']
    print("  [PASS] parameter_entry")


def test_use_in_nested_function_is_not_refined():
    root = parse_js_ts('var x = 1; x = 2; function g() { return x; }')
    tree = ScopeTree(root)
    use = last_use(root, 'x')
    binding = tree.lookup('x', use)
    assert ReachingDefinitions(tree).reaching(binding, use) is None
    print("  [PASS] use_in_nested_function_is_not_refined")


if __name__ == '__main__':
    print("=== CFG Builder Tests ===\n")
    tests = [
        test_linear_cfg,
        test_if_cfg,
        test_while_cfg,
        test_for_of_cfg,
        test_return_terminates,
        test_try_catch_cfg,
        test_switch_cfg,
        test_empty_function,
        test_block_predecessors,
        test_reassignment_kills_init,
        test_one_branch_keeps_both,
        test_both_branches_replace_init,
        test_short_circuit_assignment_keeps_previous,
        test_ternary_value_is_unconditional,
        test_break_and_continue_leave_the_body,
        test_break_inside_switch_case_branch,
        test_parameter_entry,
        test_use_in_nested_function_is_not_refined,
    ]
    passed = 0
    for t in tests:
        try:
            t()
            passed += 1
        except Exception as e:
            print(f"  [FAIL] {t.__name__}: {e}")
    print(f"\n{passed}/{len(tests)} passed")
