#!/usr/bin/env python3
"""
jstrace Analyzer - runs every pass over one bundle and aggregates the result.

Pipeline per bundle:
    parse -> scopes -> call graph -> constraints -> network sinks
          -> taint sinks -> dangerous patterns -> proto/enums

Each call builds its own scope tree, call graph and resolvers, so analyses
share no state and the same input always produces the same output.
"""

import logging
import re
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .ts_adapter import parse_js_ts
from .scope import ScopeTree
from .callgraph import CallGraph
from .resolver import ValueResolver
from .constraints import ConstraintMiner
from .network import NetworkSynthesizer
from .taint import TaintTracker
from .patterns import PatternDetector
from .proto import ProtoMiner
from .rule_engine import RuleEngine, Settings, get_rule_engine

logger = logging.getLogger(__name__)

_SOURCE_MAP_RE = re.compile(r'[#@]\s*sourceMappingURL\s*=\s*(\S+)')
_SOURCE_MAP_TAIL = 500


class Severity(Enum):
    HIGH = 3
    MEDIUM = 2
    LOW = 1
    INFO = 0


@dataclass
class AnalysisResult:
    """Everything found in one bundle."""
    fetch_call_sites: List[dict] = field(default_factory=list)
    value_constraints: List[dict] = field(default_factory=list)
    proto_enums: List[dict] = field(default_factory=list)
    proto_field_maps: List[dict] = field(default_factory=list)
    security_sinks: List[dict] = field(default_factory=list)
    dangerous_patterns: List[dict] = field(default_factory=list)
    source_map_url: Optional[str] = None
    source_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fetchCallSites': self.fetch_call_sites,
            'valueConstraints': self.value_constraints,
            'protoEnums': self.proto_enums,
            'protoFieldMaps': self.proto_field_maps,
            'securitySinks': self.security_sinks,
            'dangerousPatterns': self.dangerous_patterns,
            'sourceMapUrl': self.source_map_url,
        }

    def max_severity(self) -> Optional[Severity]:
        levels = [Severity[f['severity'].upper()]
                  for f in self.security_sinks + self.dangerous_patterns]
        return max(levels, key=lambda s: s.value) if levels else None


def extract_source_map_url(code: str) -> Optional[str]:
    """Last ``sourceMappingURL=`` comment within the final 500 characters."""
    matches = _SOURCE_MAP_RE.findall(code[-_SOURCE_MAP_TAIL:])
    return matches[-1] if matches else None


def analyze(code: str, source_url: str = "", force_script: bool = False,
            settings: Optional[Settings] = None,
            rules: Optional[RuleEngine] = None) -> AnalysisResult:
    """Analyze one JavaScript bundle.

    Raises ParseError when the code cannot be parsed (or uses module syntax
    with ``force_script``).
    """
    rules = rules or get_rule_engine()
    settings = settings or rules.settings
    started = time.perf_counter()

    root = parse_js_ts(code, force_script=force_script,
                       max_error_ratio=settings.max_error_ratio)
    tree = ScopeTree(root)
    graph = CallGraph(tree, settings, global_aliases=rules.global_aliases)
    constraints = ConstraintMiner(tree, settings).mine()
    resolver = ValueResolver(tree, graph, settings)
    sites = NetworkSynthesizer(tree, graph, resolver, constraints, settings).synthesize()
    tracker = TaintTracker(tree, graph, rules, settings)
    sinks = tracker.run()
    patterns = PatternDetector(tree, graph, tracker).run()
    proto = ProtoMiner(tree, settings).mine()

    result = AnalysisResult(
        fetch_call_sites=[s.to_dict() for s in sites],
        value_constraints=constraints.to_list(),
        proto_enums=proto.enums_to_list(),
        proto_field_maps=proto.fields_to_list(),
        security_sinks=[f.to_dict() for f in sinks],
        dangerous_patterns=[p.to_dict() for p in patterns],
        source_map_url=extract_source_map_url(code),
        source_url=source_url,
    )
    logger.debug("Analyzed %s (%d bytes) in %.3fs: %d call sites, %d constraints, "
                 "%d sinks, %d patterns, %d enums, %d fields",
                 source_url or '<inline>', len(code), time.perf_counter() - started,
                 len(result.fetch_call_sites), len(result.value_constraints),
                 len(result.security_sinks), len(result.dangerous_patterns),
                 len(result.proto_enums), len(result.proto_field_maps))
    return result


def analyze_batch(items: Iterable[Mapping[str, Any]],
                  settings: Optional[Settings] = None) -> List[Dict[str, Any]]:
    """Analyze several bundles; one failure does not stop the rest."""
    out = []
    for i, item in enumerate(items):
        source_url = item.get('sourceUrl', '') or ''
        try:
            result = analyze(item.get('code', ''), source_url,
                             bool(item.get('forceScript', False)), settings)
        except Exception as e:
            logger.warning("Batch item %d (%s) failed: %s", i, source_url or '<inline>', e)
            out.append({'success': False, 'error': str(e), 'stack': traceback.format_exc()})
            continue
        out.append({'success': True,
                    'securitySinks': result.security_sinks,
                    'dangerousPatterns': result.dangerous_patterns})
    return out
