from .ts_adapter import TSNode, ParseError, parse_js_ts
from .rule_engine import RuleEngine, Settings, get_rule_engine
from .scope import ScopeTree, Binding
from .values import Literal, ListValue, MapValue, Unknown, Many
from .callgraph import CallGraph, CallerBinding
from .resolver import ValueResolver
from .constraints import ConstraintMiner, ValueConstraint
from .network import NetworkSynthesizer, CallSite, ParamDescriptor
from .taint import TaintTracker, TaintState, SinkFinding
from .patterns import PatternDetector, PatternFinding
from .proto import ProtoMiner
from .analyzer import AnalysisResult, Severity, analyze, analyze_batch, extract_source_map_url

__version__ = '1.0.0'
