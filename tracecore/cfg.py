#!/usr/bin/env python3
"""
Control Flow Graph builder for the jstrace taint pass.
Constructs a statement-level CFG from tree-sitter JavaScript bodies and answers
reaching-definition queries for single bindings.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Tuple

from .ts_adapter import TSNode, FUNCTION_TYPES
from .scope import ScopeTree, Binding

# Placeholder definition: the value a binding holds when control enters the body
# (parameter value, or a variable declared outside the function).
ENTRY = 'entry'

_BLOCK_TYPES = ('statement_block', 'program', 'else_clause', 'finally_clause')
_LOOP_TYPES = ('while_statement', 'do_statement', 'for_statement', 'for_in_statement')
_SHORT_CIRCUIT = ('&&', '||', '??', '&&=', '||=', '??=')


@dataclass
class CFGBlock:
    """A basic block in the control flow graph."""
    id: int
    statements: List[TSNode] = field(default_factory=list)
    successors: List[int] = field(default_factory=list)
    predecessors: List[int] = field(default_factory=list)
    is_entry: bool = False
    is_exit: bool = False


class CFGBuilder:
    """Builds a CFG from a function body (statement_block) or a program node."""

    def __init__(self):
        self._counter = 0
        self._blocks: Dict[int, CFGBlock] = {}
        # Innermost break / continue targets.
        self._breaks: List[CFGBlock] = []
        self._continues: List[CFGBlock] = []

    def _new_block(self, **kwargs) -> CFGBlock:
        block = CFGBlock(id=self._counter, **kwargs)
        self._blocks[block.id] = block
        self._counter += 1
        return block

    def _link(self, src: CFGBlock, dst: CFGBlock):
        if dst.id not in src.successors:
            src.successors.append(dst.id)
        if src.id not in dst.predecessors:
            dst.predecessors.append(src.id)

    def build(self, body_node: TSNode) -> List[CFGBlock]:
        """Build CFG for a function body or program."""
        self._counter = 0
        self._blocks = {}
        self._breaks = []
        self._continues = []

        entry = self._new_block(is_entry=True)
        exit_block = self._new_block(is_exit=True)

        last = self._process_block(body_node, entry, exit_block)
        if last and last.id != exit_block.id:
            self._link(last, exit_block)

        return list(self._blocks.values())

    @staticmethod
    def _statements(node: TSNode) -> List[TSNode]:
        if node.type in _BLOCK_TYPES:
            return node.named_children
        return [node]

    def _process_block(self, node: TSNode, current: CFGBlock,
                       exit_block: CFGBlock) -> Optional[CFGBlock]:
        """Process statements in a block, splitting at control flow."""
        for child in self._statements(node):
            t = child.type
            if t == 'if_statement':
                current = self._handle_if(child, current, exit_block)
            elif t in _LOOP_TYPES:
                current = self._handle_loop(child, current, exit_block)
            elif t == 'try_statement':
                current = self._handle_try(child, current, exit_block)
            elif t == 'switch_statement':
                current = self._handle_switch(child, current, exit_block)
            elif t == 'statement_block':
                current = self._process_block(child, current, exit_block)
            elif t == 'labeled_statement':
                body = child.child_by_field('body')
                if body is not None:
                    current = self._process_block(body, current, exit_block)
            elif t in ('return_statement', 'throw_statement'):
                current.statements.append(child)
                self._link(current, exit_block)
                return None  # Unreachable after return
            elif t == 'break_statement' and self._breaks:
                self._link(current, self._breaks[-1])
                return None
            elif t == 'continue_statement' and self._continues:
                self._link(current, self._continues[-1])
                return None
            else:
                current.statements.append(child)
            if current is None:
                return None

        return current

    def _handle_if(self, node: TSNode, current: CFGBlock,
                   exit_block: CFGBlock) -> Optional[CFGBlock]:
        """if (cond) { then } else { else } -> branch + join"""
        cond = node.child_by_field('condition')
        if cond:
            current.statements.append(cond)

        then_block = self._new_block()
        self._link(current, then_block)

        join_block = self._new_block()

        body = node.child_by_field('consequence')
        if body:
            then_end = self._process_block(body, then_block, exit_block)
            if then_end:
                self._link(then_end, join_block)
        else:
            self._link(then_block, join_block)

        alt = node.child_by_field('alternative')
        if alt:
            else_block = self._new_block()
            self._link(current, else_block)
            else_end = self._process_block(alt, else_block, exit_block)
            if else_end:
                self._link(else_end, join_block)
        else:
            # No else - current can fall through to join
            self._link(current, join_block)

        return join_block

    def _handle_loop(self, node: TSNode, current: CFGBlock,
                     exit_block: CFGBlock) -> Optional[CFGBlock]:
        """while/do/for/for-in -> header + body + back edge + post-loop"""
        init = node.child_by_field('initializer')
        if init:
            current.statements.append(init)

        header = self._new_block()
        self._link(current, header)

        # for-in/of binds its variable in the header on every iteration
        if node.type == 'for_in_statement':
            header.statements.append(node)
        cond = node.child_by_field('condition')
        if cond:
            header.statements.append(cond)

        body_block = self._new_block()
        self._link(header, body_block)

        post_loop = self._new_block()
        self._link(header, post_loop)  # Loop can exit

        body = node.child_by_field('body')
        if body:
            self._breaks.append(post_loop)
            self._continues.append(header)
            body_end = self._process_block(body, body_block, exit_block)
            self._breaks.pop()
            self._continues.pop()
            if body_end:
                step = node.child_by_field('increment')
                if step:
                    body_end.statements.append(step)
                self._link(body_end, header)  # Back edge
        else:
            self._link(body_block, header)  # Back edge

        return post_loop

    def _handle_try(self, node: TSNode, current: CFGBlock,
                    exit_block: CFGBlock) -> Optional[CFGBlock]:
        """try { } catch { } finally { } -> try block + exception edge to catch + join"""
        try_block = self._new_block()
        self._link(current, try_block)

        join_block = self._new_block()

        try_body = node.child_by_field('body')
        if try_body:
            try_end = self._process_block(try_body, try_block, exit_block)
            if try_end:
                self._link(try_end, join_block)

        catch = node.child_by_field('handler')
        if catch:
            catch_block = self._new_block()
            self._link(try_block, catch_block)  # Exception edge
            catch_body = catch.child_by_field('body')
            if catch_body:
                catch_end = self._process_block(catch_body, catch_block, exit_block)
                if catch_end:
                    self._link(catch_end, join_block)
            else:
                self._link(catch_block, join_block)

        finally_clause = node.child_by_field('finalizer')
        if finally_clause:
            finally_block = self._new_block()
            self._link(join_block, finally_block)
            fin_body = finally_clause.child_by_field('body') or finally_clause
            fin_end = self._process_block(fin_body, finally_block, exit_block)
            if fin_end:
                new_join = self._new_block()
                self._link(fin_end, new_join)
                return new_join
            return None

        return join_block

    def _handle_switch(self, node: TSNode, current: CFGBlock,
                       exit_block: CFGBlock) -> Optional[CFGBlock]:
        """switch -> dispatch to cases + join"""
        value = node.child_by_field('value')
        if value:
            current.statements.append(value)

        post_switch = self._new_block()

        switch_body = node.child_by_field('body')
        if not switch_body:
            self._link(current, post_switch)
            return post_switch

        has_default = False
        prev_case_block = None
        self._breaks.append(post_switch)
        for case in switch_body.named_children:
            if case.type not in ('switch_case', 'switch_default'):
                continue
            has_default = has_default or case.type == 'switch_default'
            case_block = self._new_block()
            self._link(current, case_block)

            # Fall-through from previous case
            if prev_case_block:
                self._link(prev_case_block, case_block)

            block = case_block
            broke = False
            for stmt in case.children_by_field('body'):
                if stmt.type == 'break_statement':
                    self._link(block, post_switch)
                    broke = True
                    break
                block = self._process_block(stmt, block, exit_block)
                if block is None:
                    broke = True
                    break
            prev_case_block = None if broke else block
        self._breaks.pop()

        # Last case without break falls to post_switch
        if prev_case_block:
            self._link(prev_case_block, post_switch)
        if not has_default:
            self._link(current, post_switch)

        return post_switch


# ---------------------------------------------------------------------------
# Reaching definitions
# ---------------------------------------------------------------------------

class ReachingDefinitions:
    """Per-binding reaching definitions over lazily built function CFGs."""

    def __init__(self, tree: ScopeTree):
        self.tree = tree
        self._cfgs: Dict[tuple, Tuple[List[CFGBlock], Dict[tuple, Tuple[int, int]]]] = {}

    def _owner_function(self, scope_id: int) -> TSNode:
        for sid in self.tree.ancestors(scope_id):
            scope = self.tree.scopes[sid]
            if scope.kind in ('function', 'program'):
                return scope.node
        return self.tree.root

    def _cfg(self, func: TSNode):
        cached = self._cfgs.get(func.key)
        if cached is not None:
            return cached
        body = func if func.type == 'program' else func.child_by_field('body')
        if body is None or body.type not in ('statement_block', 'program'):
            result = ([], {})
        else:
            blocks = CFGBuilder().build(body)
            index = {}
            for block in blocks:
                for i, stmt in enumerate(block.statements):
                    index[stmt.key] = (block.id, i)
            result = (blocks, index)
        self._cfgs[func.key] = result
        return result

    @staticmethod
    def _is_conditional(node: TSNode, stmt: TSNode) -> bool:
        """True when ``node`` runs only on some paths through ``stmt`` (short-circuit or ternary arm)."""
        child = node
        parent = node.parent
        while parent is not None and child.key != stmt.key:
            t = parent.type
            if t in ('binary_expression', 'augmented_assignment_expression') and \
                    parent.operator() in _SHORT_CIRCUIT:
                right = parent.child_by_field('right')
                if right is not None and right.key == child.key:
                    return True
            elif t == 'ternary_expression':
                cond = parent.child_by_field('condition')
                if cond is None or cond.key != child.key:
                    return True
            child = parent
            parent = parent.parent
        return False

    def _definitions_in(self, stmt: TSNode, binding: Binding) -> List[Tuple[TSNode, bool]]:
        """``(value node, conditional)`` pairs a statement assigns to the binding, in source order."""
        found = []
        nodes = [stmt] if stmt.type == 'for_in_statement' else []
        if stmt.type != 'for_in_statement':
            nodes.append(stmt)
            nodes.extend(stmt.walk_descendants(skip_functions=True))
        for node in nodes:
            t = node.type
            value = None
            if t == 'variable_declarator':
                name = node.child_by_field('name')
                init = node.child_by_field('value')
                if name is not None and init is not None and \
                        self.tree.declared_by(name) == binding:
                    value = init
            elif t in ('assignment_expression', 'augmented_assignment_expression'):
                left = node.child_by_field('left')
                if left is None:
                    continue
                left = left.unwrap()
                if left.type == 'identifier' and left.text == binding.name and \
                        self.tree.lookup(left.text, left) == binding:
                    value = node.child_by_field('right') if t == 'assignment_expression' else node
            elif t == 'for_in_statement':
                left = node.child_by_field('left')
                if left is not None and left.type == 'identifier' and \
                        (self.tree.declared_by(left) or self.tree.lookup(left.text, left)) == binding:
                    value = node
            if value is not None:
                found.append((value, node.key != stmt.key and self._is_conditional(node, stmt)))
        return found

    @staticmethod
    def _transfer(state: Dict[tuple, object], defs: List[Tuple[TSNode, bool]]) -> Dict[tuple, object]:
        for value, conditional in defs:
            if conditional:
                state = dict(state)
                state[value.key] = value
            else:
                state = {value.key: value}
        return state

    def reaching(self, binding: Binding, use: TSNode) -> Optional[List]:
        """Definitions of ``binding`` that reach ``use``; ENTRY stands for the incoming value.

        Returns None when the use is not in the function that owns the binding
        or its statement is not part of the CFG.
        """
        func = self._owner_function(binding.scope_id)
        use_func = use.parent
        while use_func is not None and use_func.type not in FUNCTION_TYPES:
            use_func = use_func.parent
        if (use_func or self.tree.root).key != func.key:
            return None
        blocks, index = self._cfg(func)
        if not blocks:
            return None

        stmt = use
        while stmt is not None and stmt.key not in index:
            stmt = stmt.parent
        if stmt is None:
            return None
        use_block, use_pos = index[stmt.key]

        by_id = {b.id: b for b in blocks}
        defs_at: Dict[tuple, List[Tuple[TSNode, bool]]] = {}
        for block in blocks:
            for s in block.statements:
                defs = self._definitions_in(s, binding)
                if defs:
                    defs_at[s.key] = defs

        def block_in(block: CFGBlock) -> Dict[tuple, object]:
            incoming: Dict[tuple, object] = {}
            if block.id == entry_id:
                incoming[('entry',)] = ENTRY
            for pred in block.predecessors:
                incoming.update(out[pred])
            return incoming

        entry_id = next(b.id for b in blocks if b.is_entry)
        out: Dict[int, Dict[tuple, object]] = {b.id: {} for b in blocks}
        changed = True
        while changed:
            changed = False
            for block in blocks:
                new_out = block_in(block)
                for s in block.statements:
                    if s.key in defs_at:
                        new_out = self._transfer(new_out, defs_at[s.key])
                if new_out.keys() != out[block.id].keys():
                    out[block.id] = new_out
                    changed = True

        current = block_in(by_id[use_block])
        for s in by_id[use_block].statements[:use_pos]:
            if s.key in defs_at:
                current = self._transfer(current, defs_at[s.key])
        return sorted(current.values(), key=lambda d: -1 if d is ENTRY else d.start_byte)
