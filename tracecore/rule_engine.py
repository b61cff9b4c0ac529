#!/usr/bin/env python3
"""
jstrace Rule Engine - Single source of truth for the analysis catalogs.
Loads taint sources, security sinks, sanitizers and analysis limits from YAML.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple
from pathlib import Path

import yaml


@dataclass
class SourceDef:
    name: str
    path: Tuple[str, ...]
    kind: str  # member, call, event
    source_type: str = "user-controlled"
    category: str = "location"


@dataclass
class SinkDef:
    name: str
    kind: str  # property, call, method, new, jquery, jsx, import, xhr
    vuln_type: str
    severity: str = "high"
    path: Tuple[str, ...] = ()
    arg_positions: List[int] = field(default_factory=lambda: [0])
    attributes: List[str] = field(default_factory=list)
    attribute_prefixes: List[str] = field(default_factory=list)
    string_only: bool = False
    description: str = ""


@dataclass
class SanitizerDef:
    name: str
    path: Tuple[str, ...]
    protects_against: List[str]
    strength: str = "strong"  # strong, weak


@dataclass(frozen=True)
class Settings:
    """Analysis limits and thresholds (settings.yml)."""
    max_depth: int = 32
    max_many: int = 64
    max_callers: int = 64
    max_contexts: int = 64
    max_call_chain: int = 3
    max_reassignments: int = 5
    constraint_min_values: int = 2
    constraint_max_values: int = 50
    max_error_ratio: float = 0.5
    code_context_chars: int = 160
    enum_min_props: int = 2
    enum_max_props: int = 200
    proto_min_field: int = 1
    proto_max_field: int = 10000

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Settings':
        limits = data.get('limits', {}) or {}
        constraints = data.get('constraints', {}) or {}
        parser = data.get('parser', {}) or {}
        report = data.get('report', {}) or {}
        enums = data.get('enums', {}) or {}
        proto = data.get('proto', {}) or {}
        defaults = cls()
        return cls(
            max_depth=int(limits.get('max_depth', defaults.max_depth)),
            max_many=int(limits.get('max_many', defaults.max_many)),
            max_callers=int(limits.get('max_callers', defaults.max_callers)),
            max_contexts=int(limits.get('max_contexts', defaults.max_contexts)),
            max_call_chain=int(limits.get('max_call_chain', defaults.max_call_chain)),
            max_reassignments=int(limits.get('max_reassignments', defaults.max_reassignments)),
            constraint_min_values=int(constraints.get('min_values', defaults.constraint_min_values)),
            constraint_max_values=int(constraints.get('max_values', defaults.constraint_max_values)),
            max_error_ratio=float(parser.get('max_error_ratio', defaults.max_error_ratio)),
            code_context_chars=int(report.get('code_context_chars', defaults.code_context_chars)),
            enum_min_props=int(enums.get('min_props', defaults.enum_min_props)),
            enum_max_props=int(enums.get('max_props', defaults.enum_max_props)),
            proto_min_field=int(proto.get('min_field', defaults.proto_min_field)),
            proto_max_field=int(proto.get('max_field', defaults.proto_max_field)),
        )


def _split(name: str) -> Tuple[str, ...]:
    return tuple(p for p in name.split('.') if p)


class RuleEngine:
    """Loads and provides access to all YAML-defined rules."""

    def __init__(self, rules_dir: Optional[str] = None):
        if rules_dir is None:
            rules_dir = str(Path(__file__).parent / 'rules')
        self.rules_dir = rules_dir
        self.sources: Dict[str, SourceDef] = {}
        self.sinks: Dict[str, SinkDef] = {}
        self.sanitizers: Dict[str, SanitizerDef] = {}
        self.global_aliases: List[str] = []
        self.event_sources: Dict[str, List[str]] = {}
        self.settings = Settings()
        self._load_all()

    def _load_all(self):
        """Load all YAML rule files."""
        self._load_sources()
        self._load_sinks()
        self._load_sanitizers()
        self._load_settings()

    def _load_yaml(self, filename: str) -> Any:
        """Load a YAML file from the rules directory."""
        filepath = os.path.join(self.rules_dir, filename)
        if not os.path.exists(filepath):
            return {}
        with open(filepath, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}

    def _load_sources(self):
        data = self._load_yaml('sources.yml')
        self.global_aliases = [a for a in data.get('global_aliases', []) if isinstance(a, str)]
        for event, props in (data.get('event_sources') or {}).items():
            self.event_sources[event] = [p for p in props if isinstance(p, str)]
        for kind in ('member', 'call'):
            for category, names in (data.get(f'{kind}_sources') or {}).items():
                if not isinstance(names, list):
                    continue
                for name in names:
                    self.sources[name] = SourceDef(
                        name=name,
                        path=_split(name),
                        kind=kind,
                        category=category,
                    )

    def _load_sinks(self):
        data = self._load_yaml('sinks.yml')
        for vuln_type, sinks in data.items():
            if not isinstance(sinks, list):
                continue
            for sink in sinks:
                if not isinstance(sink, dict):
                    continue
                name = sink.get('name', '')
                # One display name may cover several shapes (property + call).
                key = f"{vuln_type}:{sink.get('kind', 'call')}:{name}"
                self.sinks[key] = SinkDef(
                    name=name,
                    kind=sink.get('kind', 'call'),
                    vuln_type=vuln_type,
                    severity=sink.get('severity', 'high'),
                    path=_split(sink.get('path', name)),
                    arg_positions=sink.get('arg_positions', [0]),
                    attributes=[a.lower() for a in sink.get('attributes', [])],
                    attribute_prefixes=[a.lower() for a in sink.get('attribute_prefixes', [])],
                    string_only=bool(sink.get('string_only', False)),
                    description=sink.get('description', ''),
                )

    def _load_sanitizers(self):
        data = self._load_yaml('sanitizers.yml')
        for category, sanitizers in data.items():
            if not isinstance(sanitizers, list):
                continue
            for san in sanitizers:
                name = san.get('name', '')
                self.sanitizers[name] = SanitizerDef(
                    name=name,
                    path=_split(name),
                    protects_against=san.get('protects_against', []),
                    strength=san.get('strength', 'strong'),
                )

    def _load_settings(self):
        self.settings = Settings.from_dict(self._load_yaml('settings.yml'))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_sources(self, kind: Optional[str] = None) -> Dict[str, SourceDef]:
        if kind is None:
            return self.sources
        return {k: v for k, v in self.sources.items() if v.kind == kind}

    def get_sinks(self, vuln_type: Optional[str] = None,
                  kind: Optional[str] = None) -> List[SinkDef]:
        return [s for s in self.sinks.values()
                if (vuln_type is None or s.vuln_type == vuln_type)
                and (kind is None or s.kind == kind)]

    def get_sanitizers(self, vuln_type: Optional[str] = None) -> Dict[str, SanitizerDef]:
        if vuln_type is None:
            return self.sanitizers
        return {k: v for k, v in self.sanitizers.items() if vuln_type in v.protects_against}

    def is_source(self, name: str) -> bool:
        return name in self.sources

    def is_sanitizer(self, name: str) -> bool:
        return name in self.sanitizers

    def get_sanitizer_protections(self, name: str) -> List[str]:
        san = self.sanitizers.get(name)
        return san.protects_against if san else []

    def event_properties(self, event: str) -> List[str]:
        return self.event_sources.get(event, [])


# Module-level singleton for convenience
_default_engine: Optional[RuleEngine] = None

def get_rule_engine(rules_dir: Optional[str] = None) -> RuleEngine:
    """Get or create the default RuleEngine singleton."""
    global _default_engine
    if _default_engine is None or rules_dir is not None:
        _default_engine = RuleEngine(rules_dir)
    return _default_engine
