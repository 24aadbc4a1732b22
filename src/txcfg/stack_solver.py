"""
Indirect jump resolution

Jump targets are stack values, so a JUMP whose target is not pushed in the
same block has to be resolved by following stack contents across blocks.
This is a forward dataflow analysis run with a worklist:

  * the state of a block is its abstract entry stack, a tuple of slots
    (bottom to top) covering the top of the real stack; each slot is either
    a bounded set of constants or None (unknown);
  * a block's stack summary maps its entry state to its exit state;
  * states of a successor are joined slot by slot, aligned at the top.

Slots only ever grow or become unknown and stacks only get shorter, so the
analysis reaches a fixed point.
"""

import sys
from collections import deque
from typing import Dict, FrozenSet, Optional, Set, Tuple

from .cfg_graph import ContractGraph, EdgeKind, NodeKey
from .disassembler import JUMP, Const, EntrySlot, InstructionBlock

MAX_TRACKED_DEPTH = 64
MAX_VALUE_SET = 64

Slot = Optional[FrozenSet[int]]
AbstractStack = Tuple[Slot, ...]


def resolve_value(value, entry: AbstractStack) -> Slot:
    """Evaluate a symbolic stack value against an abstract entry stack."""
    if isinstance(value, Const):
        return frozenset({value.value})
    if isinstance(value, EntrySlot) and value.depth < len(entry):
        return entry[-1 - value.depth]
    return None


def transfer(block: InstructionBlock, entry: AbstractStack) -> AbstractStack:
    """Apply a block's stack summary to an abstract entry stack."""
    info = block.stack_info or block.analyze_stack_info()
    if info.consumed <= len(entry):
        base = entry[:len(entry) - info.consumed]
    else:
        base = ()
    result = base + tuple(resolve_value(value, entry) for value in info.outputs)
    return result[-MAX_TRACKED_DEPTH:]


def join(left: AbstractStack, right: AbstractStack) -> AbstractStack:
    """Merge two abstract stacks, keeping only the slots both know about."""
    depth = min(len(left), len(right))
    merged = []
    for a, b in zip(left[len(left) - depth:], right[len(right) - depth:]):
        if a is None or b is None:
            merged.append(None)
            continue
        union = a | b
        merged.append(union if len(union) <= MAX_VALUE_SET else None)
    return tuple(merged)


class StackSolver:
    """Worklist solver for the jump targets of one contract graph."""

    def __init__(self, graph: ContractGraph, link_unresolved: bool = False,
                 quiet_mode: bool = True):
        self.graph = graph
        self.link_unresolved = link_unresolved
        self.quiet_mode = quiet_mode
        self.states: Dict[NodeKey, AbstractStack] = {}
        self.iterations = 0

    def _log(self, message: str):
        if not self.quiet_mode:
            print(message, file=sys.stderr)

    def solve(self) -> Set[NodeKey]:
        """Resolve indirect jumps in place and return the ones left open."""
        graph = self.graph
        entry = graph.entry_node
        if entry is None:
            return set()
        if entry not in graph.cfg_dag:
            graph.cfg_dag.add_node(entry)

        self.states = {entry: ()}
        worklist = deque([entry])
        queued = {entry}
        linked: Set[NodeKey] = set()

        while True:
            self._propagate(worklist, queued)
            unresolved = {node for node in self.states if self._is_unresolved(node)}
            pending = unresolved - linked
            if not self.link_unresolved or not pending:
                break
            destinations = graph.jumpdest_nodes()
            for node in sorted(pending):
                for dest in destinations:
                    graph.get_node_from_pc(dest[0])
                    graph.add_edge(node, dest, EdgeKind.SYMBOLIC_JUMP)
                linked.add(node)
                if node not in queued:
                    worklist.append(node)
                    queued.add(node)

        graph.unresolved_jumps = unresolved
        self._log(f"Stack solver: {self.iterations} block visits, "
                  f"{len(unresolved)} unresolved jump(s)")
        return unresolved

    def _propagate(self, worklist: deque, queued: Set[NodeKey]):
        graph = self.graph
        while worklist:
            node = worklist.popleft()
            queued.discard(node)
            self.iterations += 1

            block = graph.map_to_instructionblock[node]
            entry_state = self.states[node]
            self._connect_targets(node, block, entry_state)
            exit_state = transfer(block, entry_state)

            for succ in list(graph.cfg_dag.successors(node)):
                old = self.states.get(succ)
                new = exit_state if old is None else join(old, exit_state)
                if new != old:
                    self.states[succ] = new
                    if succ not in queued:
                        worklist.append(succ)
                        queued.add(succ)

    def _connect_targets(self, node: NodeKey, block: InstructionBlock, entry_state: AbstractStack):
        if not block.ends_with_jump:
            return
        target = block.stack_info.jump_target
        # Literal targets were connected when the graph was built
        if isinstance(target, Const):
            return
        values = resolve_value(target, entry_state)
        if values is None:
            return

        kind = EdgeKind.JUMP if block.last_op.opcode == JUMP else EdgeKind.CONDITION_TRUE
        for pc in sorted(values):
            if pc not in self.graph.valid_jumpdests:
                continue
            dest = self.graph.block_at(pc)
            if dest is None:
                continue
            self.graph.get_node_from_pc(pc)
            self.graph.add_edge(node, dest.key, kind)

    def _is_unresolved(self, node: NodeKey) -> bool:
        block = self.graph.map_to_instructionblock[node]
        if not block.ends_with_jump or isinstance(block.stack_info.jump_target, Const):
            return False
        return resolve_value(block.stack_info.jump_target, self.states[node]) is None


def symbolic_cycle(graph: ContractGraph, link_unresolved: bool = False,
                   quiet_mode: bool = True) -> Set[NodeKey]:
    """Run the stack solver over a graph; returns the unresolved jump blocks."""
    return StackSolver(graph, link_unresolved, quiet_mode).solve()
