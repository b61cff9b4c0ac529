#!/usr/bin/env python3
"""Tests for the analysis entry points: analyze, analyze_batch, source maps."""

import sys
import os
import json
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from tracecore import ParseError, Severity, analyze, analyze_batch, extract_source_map_url


SAMPLE = '''
const ENDPOINTS = { users: "/api/users", posts: "/api/posts" };
function load(kind, page) {
    if (kind === "users" || kind === "posts") {
        return fetch(ENDPOINTS[kind] + "?page=" + page);
    }
}
load("users", 1);
document.getElementById("title").innerHTML = location.hash;
var Level = { LOW: 0, HIGH: 1 };
//# sourceMappingURL=app.js.map
'''


def test_result_keys():
    report = analyze(SAMPLE).to_dict()
    assert list(report) == ['fetchCallSites', 'valueConstraints', 'protoEnums',
                            'protoFieldMaps', 'securitySinks', 'dangerousPatterns',
                            'sourceMapUrl']
    print("  [PASS] result_keys")


def test_sample_contents():
    report = analyze(SAMPLE).to_dict()
    assert [s['url'] for s in report['fetchCallSites']] == ['/api/users?page=1']
    assert report['valueConstraints'] == [
        {'variable': 'kind', 'values': ['users', 'posts'], 'sources': ['equality-chain']},
    ]
    assert {'values': {'LOW': 0, 'HIGH': 1}} in report['protoEnums']
    assert [f['sink'] for f in report['securitySinks']] == ['innerHTML']
    assert report['sourceMapUrl'] == 'app.js.map'
    print("  [PASS] sample_contents")


def test_repeatable():
    """The same input always produces byte-identical output."""
    first = json.dumps(analyze(SAMPLE).to_dict())
    second = json.dumps(analyze(SAMPLE).to_dict())
    assert first == second
    print("  [PASS] repeatable")


def test_invalid_string_escapes_do_not_raise():
    code = ('fetch("/a?x=" + encodeURIComponent("\\uD800"));\n'
            'fetch("/b/" + "\\u{110000}");\n')
    sites = analyze(code).fetch_call_sites
    assert [s['url'] for s in sites][-1] == '/b/\ufffd'
    print("  [PASS] invalid_string_escapes_do_not_raise")


def test_max_severity():
    assert analyze(SAMPLE).max_severity() == Severity.HIGH
    assert analyze('eval(code);').max_severity() == Severity.LOW
    assert analyze('fetch("/a");').max_severity() is None
    print("  [PASS] max_severity")


def test_parse_error_propagates():
    with pytest.raises(ParseError):
        analyze('import a from "b";', force_script=True)
    print("  [PASS] parse_error_propagates")


# ---------- batch ----------

def test_batch_isolates_failures():
    results = analyze_batch([
        {'code': 'fetch("/a");', 'sourceUrl': 'a.js'},
        {'code': 'export const x = 1;', 'sourceUrl': 'b.js', 'forceScript': True},
        {'code': 'document.write(location.search);'},
    ])
    assert len(results) == 3
    assert results[0] == {'success': True, 'securitySinks': [], 'dangerousPatterns': []}
    assert results[1]['success'] is False
    assert 'module' in results[1]['error']
    assert 'ParseError' in results[1]['stack']
    assert results[2]['success'] is True
    assert [f['sink'] for f in results[2]['securitySinks']] == ['document.write']
    print("  [PASS] batch_isolates_failures")


# ---------- source maps ----------

def test_source_map_url():
    assert extract_source_map_url('x();\n//# sourceMappingURL=main.js.map\n') == 'main.js.map'
    assert extract_source_map_url('x();\n//@ sourceMappingURL=old.map') == 'old.map'
    assert extract_source_map_url('x();') is None
    print("  [PASS] source_map_url")


def test_source_map_last_one_wins():
    code = '//# sourceMappingURL=a.map\n//# sourceMappingURL=b.map\n'
    assert extract_source_map_url(code) == 'b.map'
    print("  [PASS] source_map_last_one_wins")


def test_source_map_only_in_tail():
    code = '//# sourceMappingURL=early.map\n' + 'var x = 1;\n' * 100
    assert extract_source_map_url(code) is None
    print("  [PASS] source_map_only_in_tail")


if __name__ == '__main__':
    print("=== Analyzer Tests ===\n")
    tests = [v for k, v in sorted(globals().items()) if k.startswith('test_')]
    passed = 0
    for t in tests:
        try:
            t()
            passed += 1
        except Exception as e:
            print(f"  [FAIL] {t.__name__}: {e}")
    print(f"\n{passed}/{len(tests)} passed")
