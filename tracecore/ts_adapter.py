#!/usr/bin/env python3
"""
Tree-sitter adapter for the jstrace analysis engine.
Wraps tree-sitter JavaScript nodes with a clean interface for dataflow analysis.
"""

import re
import tree_sitter_javascript as tsjs
from tree_sitter import Language, Parser
from typing import Optional, List, Tuple, Union


# Module-level parser (initialized once)
_language = Language(tsjs.language())
_parser = Parser(_language)

FUNCTION_TYPES = frozenset({
    'function_declaration', 'function_expression', 'function',
    'generator_function_declaration', 'generator_function',
    'arrow_function', 'method_definition',
})

_ESCAPE_RE = re.compile(r'\\(u\{[0-9a-fA-F]+\}|u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|\r\n|[\s\S])')
_SIMPLE_ESCAPES = {
    'n': '\n', 't': '\t', 'r': '\r', 'b': '\b', 'f': '\f', 'v': '\v', '0': '\0',
    '\n': '', '\r\n': '', '\u2028': '', '\u2029': '',
}


class ParseError(ValueError):
    """Raised when a bundle cannot be parsed into a usable syntax tree."""

    def __init__(self, message: str, line: int = 0, column: int = 0):
        super().__init__(message)
        self.line = line
        self.column = column


class TSNode:
    """Lightweight wrapper around a tree-sitter node."""

    __slots__ = ('_node', '_code')

    def __init__(self, ts_node, code_bytes: bytes):
        self._node = ts_node
        self._code = code_bytes

    @property
    def type(self) -> str:
        return self._node.type

    @property
    def text(self) -> str:
        return self._code[self._node.start_byte:self._node.end_byte].decode('utf8', errors='replace')

    @property
    def line(self) -> int:
        """1-based line number."""
        return self._node.start_point[0] + 1

    @property
    def column(self) -> int:
        return self._node.start_point[1]

    @property
    def start_byte(self) -> int:
        return self._node.start_byte

    @property
    def end_byte(self) -> int:
        return self._node.end_byte

    @property
    def key(self) -> Tuple[int, int, str]:
        """Stable identity of the node inside one tree."""
        return (self._node.start_byte, self._node.end_byte, self._node.type)

    @property
    def is_named(self) -> bool:
        return self._node.is_named

    @property
    def parent(self) -> Optional['TSNode']:
        p = self._node.parent
        if p is not None:
            return TSNode(p, self._code)
        return None

    @property
    def children(self) -> List['TSNode']:
        """All children, including punctuation."""
        return [TSNode(c, self._code) for c in self._node.children]

    @property
    def named_children(self) -> List['TSNode']:
        """Named children only (skip punctuation/anonymous tokens)."""
        return [TSNode(c, self._code) for c in self._node.children
                if c.is_named and c.type != 'comment']

    @property
    def child_count(self) -> int:
        return self._node.child_count

    def child_by_field(self, name: str) -> Optional['TSNode']:
        """Get child by tree-sitter field name."""
        c = self._node.child_by_field_name(name)
        if c is not None:
            return TSNode(c, self._code)
        return None

    def children_by_field(self, name: str) -> List['TSNode']:
        return [TSNode(c, self._code) for c in self._node.children_by_field_name(name)]

    def operator(self) -> str:
        """Operator token of a binary/unary/assignment expression."""
        op = self._node.child_by_field_name('operator')
        if op is not None:
            return self._code[op.start_byte:op.end_byte].decode('utf8', errors='replace')
        return ''

    def get_arguments(self) -> List['TSNode']:
        """Get argument nodes from a call or new expression."""
        args_node = self._node.child_by_field_name('arguments')
        if args_node is None or args_node.type != 'arguments':
            return []
        return [TSNode(c, self._code) for c in args_node.children
                if c.is_named and c.type != 'comment']

    def unwrap(self) -> 'TSNode':
        """Strip parentheses around an expression."""
        node = self
        while node.type == 'parenthesized_expression':
            inner = node.named_children
            if not inner:
                break
            node = inner[-1]
        return node

    def string_value(self) -> Optional[str]:
        """Decoded value of a string literal or a substitution-free template."""
        if self.type == 'string':
            return _unescape(self.text[1:-1])
        if self.type == 'template_string':
            parts = self.template_parts()
            if all(isinstance(p, str) for p in parts):
                return ''.join(parts)
        return None

    def template_parts(self) -> List[Union[str, 'TSNode']]:
        """Cooked quasi strings interleaved with substitution expressions."""
        parts: List[Union[str, TSNode]] = []
        pos = self._node.start_byte + 1
        end = self._node.end_byte - 1
        for child in self._node.children:
            if child.type != 'template_substitution':
                continue
            if child.start_byte > pos:
                parts.append(_unescape(self._code[pos:child.start_byte].decode('utf8', errors='replace')))
            inner = [c for c in child.children if c.is_named and c.type != 'comment']
            if inner:
                parts.append(TSNode(inner[0], self._code))
            pos = child.end_byte
        if end > pos:
            parts.append(_unescape(self._code[pos:end].decode('utf8', errors='replace')))
        return parts

    def walk_descendants(self, skip_functions: bool = False):
        """Yield all descendant nodes (depth-first)."""
        stack = list(reversed(self.children))
        while stack:
            node = stack.pop()
            yield node
            if skip_functions and node.type in FUNCTION_TYPES:
                continue
            stack.extend(reversed(node.children))

    def contains(self, other: 'TSNode') -> bool:
        return self.start_byte <= other.start_byte and other.end_byte <= self.end_byte

    def __eq__(self, other):
        return isinstance(other, TSNode) and self.key == other.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        text = self.text
        if len(text) > 40:
            text = text[:40] + '...'
        return f'TSNode({self.type}, line={self.line}, {repr(text)})'


def _unescape(raw: str) -> str:
    if '\\' not in raw:
        return raw

    def repl(m):
        esc = m.group(1)
        if esc in _SIMPLE_ESCAPES:
            return _SIMPLE_ESCAPES[esc]
        if esc.startswith('u{'):
            code = int(esc[2:-1], 16)
            return chr(code) if code <= 0x10FFFF else '\ufffd'
        if esc[0] in 'ux' and len(esc) > 1:
            return chr(int(esc[1:], 16))
        return esc

    return _ESCAPE_RE.sub(repl, raw)


def _first_error(root) -> Tuple[int, Optional[object]]:
    """Total bytes covered by error nodes, and the first one."""
    covered = 0
    first = None
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type == 'ERROR' or node.is_missing:
            covered += max(node.end_byte - node.start_byte, 1)
            if first is None or node.start_byte < first.start_byte:
                first = node
            continue
        if node.has_error:
            stack.extend(node.children)
    return covered, first


def parse_js_ts(code: str, force_script: bool = False,
                max_error_ratio: float = 0.5) -> TSNode:
    """Parse JavaScript/JSX with tree-sitter, return the wrapped program node.

    Raises ParseError when the tree is unusable: an error root, too much of the
    input swallowed by error recovery, or module syntax in forced script mode.
    """
    code_bytes = code.encode('utf8')
    tree = _parser.parse(code_bytes)
    root = tree.root_node

    if root.type == 'ERROR':
        raise ParseError('Unexpected token at start of input', 1, 0)

    if root.has_error:
        covered, first = _first_error(root)
        total = max(len(code_bytes), 1)
        if first is not None and covered / total > max_error_ratio:
            row, col = first.start_point
            raise ParseError(f'Unexpected token ({row + 1}:{col})', row + 1, col)

    if force_script:
        for child in root.children:
            if child.type in ('import_statement', 'export_statement'):
                row, col = child.start_point
                raise ParseError(
                    f"'{child.type.split('_')[0]}' may only appear in a module ({row + 1}:{col})",
                    row + 1, col)

    return TSNode(root, code_bytes)
