#!/usr/bin/env python3
"""
jstrace - Static analysis for JavaScript bundles

Reports, per bundle:
- Network call sites (fetch, XHR, jQuery, WebSocket, EventSource, beacons)
  with URL, method, headers and parameter descriptors
- Value constraints (switch / includes / equality-chain / in-object)
- DOM XSS, eval, open-redirect and request-forgery sinks fed by
  attacker-influenced browser state
- Dangerous patterns (postMessage origin checks, prototype pollution,
  dynamic regular expressions, Trusted Types passthrough)
- Protobuf enums and field accessors

Usage:
    jstrace bundle.js                      # Text report
    jstrace ./dist -f json -o report.json  # JSON for every bundle in a directory
    jstrace app.js --force-script -v       # Classic-script semantics, debug logging
"""

import sys
import os
import argparse
import json
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

from tracecore import ParseError, analyze, __version__
from tracecore.rule_engine import get_rule_engine

logger = logging.getLogger('jstrace')

JS_EXTENSIONS = ('.js', '.mjs', '.cjs', '.jsx')

# ── Color helpers (auto-disable on non-TTY) ──────────────────────────────────

_COLOR_ENABLED = hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _c(code: str, text: str) -> str:
    if not _COLOR_ENABLED:
        return text
    return f"\033[{code}m{text}\033[0m"

def _red(t):    return _c("31", t)
def _green(t):  return _c("32", t)
def _yellow(t): return _c("33", t)
def _cyan(t):   return _c("36", t)
def _bold(t):   return _c("1", t)
def _dim(t):    return _c("2", t)

def _severity_color(sev: str) -> str:
    colors = {'HIGH': "31", 'MEDIUM': "33", 'LOW': "36", 'INFO': "2"}
    return _c(colors.get(sev, "0"), sev)


# ── Progress output (stderr) ─────────────────────────────────────────────────

_quiet = False

def _progress(msg: str, prefix: str = "[*]"):
    """Print progress/status to stderr (not mixed with results)."""
    if _quiet:
        return
    print(f"{_cyan(prefix)} {msg}", file=sys.stderr)

def _success(msg: str):
    _progress(msg, _green("[+]"))

def _warn(msg: str):
    _progress(msg, _yellow("[!]"))

def _error(msg: str):
    print(f"{_red('[ERROR]')} {msg}", file=sys.stderr)


# ── File collection ──────────────────────────────────────────────────────────

# Third-party and build-cache directories skipped unless --include-vendor
VENDOR_SKIP_DIRS = {
    'node_modules', 'bower_components', 'vendor', 'vendors',
    '.git', '.svn', '__pycache__', '.cache', 'coverage',
}


def _is_vendor_path(filepath: str) -> bool:
    return any(part.lower() in VENDOR_SKIP_DIRS for part in Path(filepath).parts)


def collect_files(target: str, skip_vendor: bool = True) -> List[str]:
    """JavaScript files under ``target`` (or the target itself), sorted."""
    if os.path.isfile(target):
        return [target]
    files = []
    for root, _dirs, names in os.walk(target):
        for name in names:
            if name.endswith(JS_EXTENSIONS):
                files.append(os.path.join(root, name))
    if skip_vendor:
        kept = [f for f in files if not _is_vendor_path(os.path.relpath(f, target))]
        if len(kept) != len(files):
            _progress(f"Skipped {len(files) - len(kept)} vendor/library files")
        files = kept
    return sorted(files)


# ── Analysis ─────────────────────────────────────────────────────────────────

def analyze_file(filepath: str, force_script: bool = False) -> Optional[Dict]:
    """Analyze one file; None when it cannot be read or parsed."""
    try:
        with open(filepath, 'r', encoding='utf-8', errors='replace') as f:
            code = f.read()
    except OSError as e:
        _error(f"Cannot read {filepath}: {e}")
        return None
    try:
        result = analyze(code, source_url=filepath, force_script=force_script)
    except ParseError as e:
        _warn(f"Parse error in {filepath}: {e}")
        logger.warning("Skipping %s: %s", filepath, e)
        return None
    report = result.to_dict()
    report['file'] = filepath
    return report


def count_severities(reports: List[Dict]) -> Dict[str, int]:
    counts = {'high': 0, 'medium': 0, 'low': 0, 'info': 0}
    for report in reports:
        for finding in report['securitySinks'] + report['dangerousPatterns']:
            sev = finding.get('severity', 'low')
            counts[sev] = counts.get(sev, 0) + 1
    return counts


# ── Results display (stdout only) ────────────────────────────────────────────

def print_results(reports: List[Dict], counts: Dict[str, int], verbose: bool = False):
    """Print analysis results to stdout."""
    print("\n" + "=" * 70)
    print(_bold("ANALYSIS RESULTS"))
    print("=" * 70)

    print(f"\nFiles analyzed: {len(reports)}")
    print(f"Call sites: {sum(len(r['fetchCallSites']) for r in reports)}")
    print(f"\n  {_severity_color('HIGH')}:   {counts['high']}")
    print(f"  {_severity_color('MEDIUM')}: {counts['medium']}")
    print(f"  {_severity_color('LOW')}:    {counts['low']}")
    print(f"  {_severity_color('INFO')}:   {counts['info']}")

    for report in reports:
        sites = report['fetchCallSites']
        findings = report['securitySinks'] + report['dangerousPatterns']
        if not sites and not findings and not verbose:
            continue
        print("\n" + "-" * 70)
        print(_bold(report['file']))
        print("-" * 70)

        for site in sites:
            params = ', '.join(f"{p['name']}({p['location']})" for p in site['params'])
            print(f"  {site['method']:7} {site['url']}  {_dim(site['type'])}")
            if params:
                print(f"          params: {params}")
            if verbose and site['headers']:
                for name, value in site['headers'].items():
                    print(f"          {name}: {value}")

        for finding in report['securitySinks']:
            sev = finding['severity'].upper()
            loc = finding.get('location', {})
            source = finding.get('source') or finding.get('sourceType', '')
            marker = _dim(" [sanitized]") if finding.get('sanitized') else ""
            print(f"\n  [{_severity_color(sev)}] {finding['type']} -> {finding['sink']}{marker}")
            print(f"    Line {loc.get('line', '?')}:{loc.get('column', '?')}  source: {source}")
            if verbose and finding.get('codeContext'):
                print(f"    Code: {finding['codeContext']}")

        for finding in report['dangerousPatterns']:
            sev = finding['severity'].upper()
            loc = finding.get('location', {})
            print(f"\n  [{_severity_color(sev)}] {finding['type']}")
            print(f"    Line {loc.get('line', '?')}:{loc.get('column', '?')}  {finding['description']}")

        if verbose:
            for c in report['valueConstraints']:
                print(f"  constraint {c['variable']}: {c['values']} ({', '.join(c['sources'])})")
            if report['protoEnums'] or report['protoFieldMaps']:
                print(f"  proto: {len(report['protoEnums'])} enums, "
                      f"{len(report['protoFieldMaps'])} field accessors")
            if report.get('sourceMapUrl'):
                print(f"  source map: {report['sourceMapUrl']}")


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    global _quiet

    parser = argparse.ArgumentParser(
        description='jstrace - static analysis for JavaScript bundles',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s bundle.js                          Text report
  %(prog)s ./dist -f json -o report.json      JSON report for a directory
  %(prog)s legacy.js --force-script           Reject import/export syntax

Exit status:
  2  at least one high-severity finding
  1  at least one medium-severity finding
  0  otherwise
        '''
    )

    parser.add_argument('target', help='JavaScript file or directory to analyze')
    parser.add_argument('-f', '--format', choices=['text', 'json'], default='text',
                        help='Output format (default: text)')
    parser.add_argument('-o', '--output', help='Output file path')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Verbose output with code context and debug logging')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='Suppress progress output (results only)')
    parser.add_argument('--force-script', action='store_true',
                        help='Parse as a classic script (import/export is an error)')
    parser.add_argument('--rules', metavar='DIR',
                        help='Directory with sources/sinks/sanitizers/settings YAML files')
    parser.add_argument('--include-vendor', action='store_true',
                        help='Include node_modules/vendor files (skipped by default)')
    parser.add_argument('--version', action='version', version=f'jstrace v{__version__}')

    args = parser.parse_args(argv)
    _quiet = args.quiet

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s', stream=sys.stderr)

    if not os.path.exists(args.target):
        _error(f"Target not found: {args.target}")
        return 1

    if args.rules:
        if not os.path.isdir(args.rules):
            _error(f"Rules directory not found: {args.rules}")
            return 1
        get_rule_engine(args.rules)
        _progress(f"Rules loaded from {args.rules}")

    files = collect_files(args.target, skip_vendor=not args.include_vendor)
    if not files:
        _warn(f"No JavaScript files found in {args.target}")

    start = time.time()
    reports = []
    for i, filepath in enumerate(files, 1):
        _progress(f"[{i}/{len(files)}] {filepath}")
        report = analyze_file(filepath, force_script=args.force_script)
        if report is not None:
            reports.append(report)
    elapsed = time.time() - start
    _success(f"Analyzed {len(reports)}/{len(files)} files in {elapsed:.1f}s")

    counts = count_severities(reports)

    if args.format == 'json':
        payload = json.dumps(reports, indent=2)
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                f.write(payload)
            _success(f"Results saved to: {args.output}")
        else:
            print(payload)
    else:
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                json.dump(reports, f, indent=2)
            _success(f"Results saved to: {args.output}")
        print_results(reports, counts, args.verbose)

    if counts['high'] > 0:
        return 2
    elif counts['medium'] > 0:
        return 1
    else:
        return 0


if __name__ == "__main__":
    sys.exit(main())
