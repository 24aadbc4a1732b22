"""
Per-contract control flow graph

Nodes are instruction blocks keyed by (start_pc, end_pc); edges are
(from, to, kind) triples stored as networkx multigraph keys.
"""

from bisect import bisect_right
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

import networkx as nx

from .disassembler import JUMP, JUMPI, Const, InstructionBlock

NodeKey = Tuple[int, int]
EdgeKey = Tuple[NodeKey, NodeKey, "EdgeKind"]

MAX_PC = 0xFFFF


class EdgeKind(Enum):
    """Kind of a control flow transfer between two blocks."""
    JUMP = "Jump"
    CONDITION_TRUE = "ConditionTrue"
    CONDITION_FALSE = "ConditionFalse"
    SYMBOLIC_JUMP = "SymbolicJump"

    def __str__(self) -> str:
        return self.value


class ContractGraph:
    """
    Control flow graph over the instruction blocks of one contract.

    The block map is owned by the graph for the whole analysis run, so blocks
    removed from the graph can be brought back when a later stage (indirect
    jump resolution, trace replay) proves them reachable.
    """

    def __init__(self, bytecode: bytes, blocks: Iterable[InstructionBlock],
                 valid_jumpdests: Optional[Set[int]] = None):
        self.bytecode = bytes(bytecode)
        self.blocks: List[InstructionBlock] = sorted(blocks, key=lambda b: b.start_pc)
        self.map_to_instructionblock: Dict[NodeKey, InstructionBlock] = {
            block.key: block for block in self.blocks
        }
        self._starts = [block.start_pc for block in self.blocks]
        self.valid_jumpdests: Set[int] = set(valid_jumpdests or ())
        self.cfg_dag = nx.MultiDiGraph()
        self.executed_pcs: Set[int] = set()
        self.unresolved_jumps: Set[NodeKey] = set()
        # Edges decided from the blocks alone, kept so pruned nodes can be rebuilt
        self.static_successors: Dict[NodeKey, List[Tuple[NodeKey, EdgeKind]]] = {}

    # -- lookups -------------------------------------------------------------

    def block_containing(self, pc: int) -> Optional[InstructionBlock]:
        """Return the block whose pc range contains `pc`."""
        index = bisect_right(self._starts, pc) - 1
        if index >= 0 and self.blocks[index].contains_pc(pc):
            return self.blocks[index]
        return None

    def block_at(self, pc: int) -> Optional[InstructionBlock]:
        """Return the block starting exactly at `pc`."""
        block = self.block_containing(pc)
        if block is not None and block.start_pc == pc:
            return block
        return None

    def next_block(self, block: InstructionBlock) -> Optional[InstructionBlock]:
        return self.block_at(block.end_pc)

    def get_node_from_pc(self, pc: int) -> Optional[NodeKey]:
        """Map a pc to its block node, re-creating the node if it was pruned."""
        block = self.block_containing(pc)
        if block is None:
            return None
        if block.key not in self.cfg_dag:
            self._restore_node(block.key)
        return block.key

    def _restore_node(self, node: NodeKey):
        """Put a pruned node back together with the static edges leaving it."""
        self.cfg_dag.add_node(node)
        pending = [node]
        while pending:
            current = pending.pop()
            for succ, kind in self.static_successors.get(current, ()):
                if succ not in self.cfg_dag:
                    self.cfg_dag.add_node(succ)
                    pending.append(succ)
                self.add_edge(current, succ, kind)

    @property
    def entry_node(self) -> Optional[NodeKey]:
        block = self.block_at(0)
        return block.key if block else None

    def jumpdest_nodes(self) -> List[NodeKey]:
        """Blocks that start at a valid jump destination."""
        return [block.key for block in self.blocks if block.start_pc in self.valid_jumpdests]

    # -- edges ---------------------------------------------------------------

    def has_edge(self, from_node: NodeKey, to_node: NodeKey, kind: EdgeKind) -> bool:
        return self.cfg_dag.has_edge(from_node, to_node, key=kind)

    def add_edge(self, from_node: NodeKey, to_node: NodeKey, kind: EdgeKind) -> bool:
        """Add an edge; returns False if the same (from, to, kind) already exists."""
        if self.has_edge(from_node, to_node, kind):
            return False
        self.cfg_dag.add_edge(from_node, to_node, key=kind)
        return True

    def edges(self) -> Iterator[EdgeKey]:
        for from_node, to_node, kind in self.cfg_dag.edges(keys=True):
            yield from_node, to_node, kind

    def nodes(self) -> List[NodeKey]:
        return sorted(self.cfg_dag.nodes())

    def set_executed_pcs(self, executed_pcs: Set[int]):
        self.executed_pcs = set(executed_pcs)

    # -- construction --------------------------------------------------------

    def form_basic_connections(self):
        """Add every edge that can be decided by looking at one block."""
        for block in self.blocks:
            self.cfg_dag.add_node(block.key)

        for block in self.blocks:
            info = block.stack_info or block.analyze_stack_info()
            last = block.last_op
            following = self.next_block(block)

            if last.opcode == JUMP:
                self._connect_literal_jump(block, info.jump_target, EdgeKind.JUMP)
            elif last.opcode == JUMPI:
                self._connect_literal_jump(block, info.jump_target, EdgeKind.CONDITION_TRUE)
                if following is not None:
                    self._add_static_edge(block.key, following.key, EdgeKind.CONDITION_FALSE)
            elif block.falls_through and following is not None:
                self._add_static_edge(block.key, following.key, EdgeKind.JUMP)

    def _connect_literal_jump(self, block: InstructionBlock, target, kind: EdgeKind):
        if not isinstance(target, Const):
            self.unresolved_jumps.add(block.key)
            return
        # Outside the code, or into a block with no jump destination at its
        # head: the jump faults at runtime
        if target.value > MAX_PC:
            return
        dest = self.block_containing(target.value)
        if dest is None or not dest.starts_with_jumpdest or dest.start_pc not in self.valid_jumpdests:
            return
        self._add_static_edge(block.key, dest.key, kind)

    def _add_static_edge(self, from_node: NodeKey, to_node: NodeKey, kind: EdgeKind):
        self.static_successors.setdefault(from_node, []).append((to_node, kind))
        self.add_edge(from_node, to_node, kind)

    def remove_unreachable_instruction_blocks(self):
        """Drop every node that cannot be reached from the entry block."""
        entry = self.entry_node
        if entry is None or entry not in self.cfg_dag:
            self.cfg_dag.clear()
            self.unresolved_jumps.clear()
            return
        reachable = nx.descendants(self.cfg_dag, entry) | {entry}
        unreachable = [node for node in self.cfg_dag.nodes() if node not in reachable]
        self.cfg_dag.remove_nodes_from(unreachable)
        self.unresolved_jumps &= reachable
