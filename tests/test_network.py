#!/usr/bin/env python3
"""Tests for network call-site synthesis (fetch, XHR, jQuery, beacons, sockets)."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tracecore.analyzer import analyze
from tracecore.network import ParamDescriptor


def call_sites(code):
    return analyze(code).fetch_call_sites


def summary(sites):
    return [(s['type'], s['method'], s['url']) for s in sites]


# ---------- per-caller contexts ----------

def test_caller_arguments_stay_paired():
    """Each caller is its own context: service, action and verb never cross."""
    sites = call_sites('''
        function rpc(service, action, verb) {
            return fetch("/rpc/" + service + "/" + action, { method: verb });
        }
        rpc("auth", "login", "POST");
        rpc("billing", "invoice", "GET");
        rpc("auth", "logout", "POST");
    ''')
    assert summary(sites) == [
        ('fetch', 'POST', '/rpc/auth/login'),
        ('fetch', 'GET', '/rpc/billing/invoice'),
        ('fetch', 'POST', '/rpc/auth/logout'),
    ], f"Got {summary(sites)}"
    assert [s['id'] for s in sites] == ['cs1', 'cs2', 'cs3']
    print("  [PASS] caller_arguments_stay_paired")


def test_varying_value_inside_one_caller():
    """Options inside one caller expand against that caller's other arguments only."""
    sites = call_sites('''
        function remove(path, verb) { return fetch("/items/" + path, { method: verb }); }
        remove("a", force ? "DELETE" : "POST");
        remove("b", "GET");
    ''')
    assert summary(sites) == [
        ('fetch', 'DELETE', '/items/a'),
        ('fetch', 'POST', '/items/a'),
        ('fetch', 'GET', '/items/b'),
    ], f"Got {summary(sites)}"
    print("  [PASS] varying_value_inside_one_caller")


def test_caller_without_concrete_url_is_dropped():
    sites = call_sites('''
        function load(u) { return fetch(u); }
        load(getUrl());
        load("/a");
    ''')
    assert summary(sites) == [('fetch', 'GET', '/a')], f"Got {summary(sites)}"
    print("  [PASS] caller_without_concrete_url_is_dropped")


def test_body_from_caller_object():
    sites = call_sites('''
        function apiRequest(method, path, body) {
            return fetch("/api/" + path, { method: method, body: JSON.stringify(body) });
        }
        apiRequest("POST", "orders", { item: "widget", qty: 3 });
    ''')
    assert len(sites) == 1, f"Got {sites}"
    site = sites[0]
    assert site['method'] == 'POST' and site['url'] == '/api/orders'
    assert site['params'] == [
        {'name': 'item', 'type': 'string', 'location': 'body', 'required': True,
         'defaultValue': 'widget'},
        {'name': 'qty', 'type': 'number', 'location': 'body', 'required': True,
         'defaultValue': 3},
    ]
    print("  [PASS] body_from_caller_object")


def test_duplicate_sites_collapse():
    sites = call_sites('fetch("/ping"); fetch("/ping");')
    assert summary(sites) == [('fetch', 'GET', '/ping')]
    print("  [PASS] duplicate_sites_collapse")


def test_alternative_urls():
    sites = call_sites('const url = flag ? "/a" : "/b"; fetch(url);')
    assert summary(sites) == [('fetch', 'GET', '/a'), ('fetch', 'GET', '/b')]
    print("  [PASS] alternative_urls")


def test_request_object():
    sites = call_sites('fetch(new Request("/items/7", { method: "delete" }));')
    assert summary(sites) == [('fetch', 'DELETE', '/items/7')]
    print("  [PASS] request_object")


# ---------- headers ----------

def test_xhr_headers_and_body():
    sites = call_sites('''
        var xhr = new XMLHttpRequest();
        xhr.open("PUT", "/api/profile");
        xhr.setRequestHeader("Content-Type", "application/json");
        xhr.setRequestHeader("X-Token", token);
        xhr.send(JSON.stringify({ name: "a" }));
    ''')
    assert len(sites) == 1, f"Got {sites}"
    site = sites[0]
    assert (site['type'], site['method'], site['url']) == ('xhr', 'PUT', '/api/profile')
    assert site['headers'] == {'content-type': 'application/json', 'x-token': '(dynamic)'}
    assert site['params'] == [
        {'name': 'x-token', 'type': 'string', 'location': 'header', 'required': True},
        {'name': 'name', 'type': 'string', 'location': 'body', 'required': True,
         'defaultValue': 'a'},
    ]
    print("  [PASS] xhr_headers_and_body")


def test_fetch_option_headers():
    sites = call_sites('fetch("/a", { headers: { "Content-Type": "text/plain", '
                       '"X-Token": "abc", Authorization: tok } });')
    assert sites[0]['headers'] == {'Content-Type': 'text/plain', 'X-Token': 'abc',
                                   'Authorization': '(dynamic)'}
    assert sites[0]['params'] == [
        {'name': 'Authorization', 'type': 'string', 'location': 'header', 'required': True},
    ]
    print("  [PASS] fetch_option_headers")


# ---------- URL parameters ----------

def test_unresolved_url_is_suppressed():
    """A URL that is nothing but a placeholder is not reported."""
    assert call_sites('function load(u) { return fetch(u); }') == []
    print("  [PASS] unresolved_url_is_suppressed")


def test_shadowed_fetch_is_ignored():
    assert call_sites('function fetch(u) {} fetch("/a");') == []
    print("  [PASS] shadowed_fetch_is_ignored")


def test_query_parameters():
    sites = call_sites('function search(term) { return fetch("/search?q=" + term + "&page=2"); }')
    assert sites[0]['url'] == '/search?q={term}&page=2', f"Got {sites[0]['url']}"
    assert sites[0]['params'] == [
        {'name': 'q', 'type': 'string', 'location': 'query', 'required': True},
        {'name': 'page', 'type': 'string', 'location': 'query', 'required': False,
         'defaultValue': '2'},
    ]
    print("  [PASS] query_parameters")


def test_path_parameter_valid_values():
    sites = call_sites('''
        function getItem(kind) {
            switch (kind) { case "book": break; case "film": break; }
            return fetch(`/items/${kind}`);
        }
    ''')
    assert sites[0]['url'] == '/items/{kind}'
    assert sites[0]['params'] == [
        {'name': 'kind', 'type': 'string', 'location': 'path', 'required': True,
         'validValues': ['book', 'film']},
    ]
    print("  [PASS] path_parameter_valid_values")


# ---------- other sink types ----------

def test_jquery_ajax_settings():
    sites = call_sites('$.ajax({ url: "/api/save", type: "POST", data: { id: 1 } });')
    assert sites == [{
        'id': 'cs1', 'type': 'jquery', 'url': '/api/save', 'method': 'POST', 'headers': {},
        'params': [{'name': 'id', 'type': 'number', 'location': 'body', 'required': True,
                    'defaultValue': 1}],
    }], f"Got {sites}"
    print("  [PASS] jquery_ajax_settings")


def test_jquery_markup_resources():
    sites = call_sites('$("#box").html(\'<img src="/static/logo.png">\');')
    assert summary(sites) == [('jquery-dom', 'GET', '/static/logo.png')]
    print("  [PASS] jquery_markup_resources")


def test_socket_beacon_and_image():
    sites = call_sites('''
        new WebSocket("wss://live.example.com/feed");
        navigator.sendBeacon("/collect", payload);
        var img = new Image();
        img.src = "/pixel.gif";
    ''')
    assert summary(sites) == [
        ('websocket', 'GET', 'wss://live.example.com/feed'),
        ('beacon', 'POST', '/collect'),
        ('image', 'GET', '/pixel.gif'),
    ], f"Got {summary(sites)}"
    print("  [PASS] socket_beacon_and_image")


def test_param_descriptor_to_dict():
    param = ParamDescriptor('opts', 'object', 'body', False, spread=True)
    assert param.to_dict() == {'name': 'opts', 'type': 'object', 'location': 'body',
                               'required': False, 'spread': True}
    print("  [PASS] param_descriptor_to_dict")


if __name__ == '__main__':
    print("=== Network Synthesizer Tests ===\n")
    tests = [v for k, v in sorted(globals().items()) if k.startswith('test_')]
    passed = 0
    for t in tests:
        try:
            t()
            passed += 1
        except Exception as e:
            print(f"  [FAIL] {t.__name__}: {e}")
    print(f"\n{passed}/{len(tests)} passed")
