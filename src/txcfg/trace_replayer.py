"""
Trace replay and edge numbering

Walks one contract's slice of the trace, works out where every JUMP/JUMPI
actually went, adds the edges static analysis missed and numbers each
distinct edge in the order it was first taken.
"""

import sys
from typing import Dict, List, Optional

from .cfg_graph import MAX_PC, ContractGraph, EdgeKey, EdgeKind
from .colors import dim, edge_kind, warning
from .trace_parser import TraceStep

EdgeNumbering = Dict[EdgeKey, int]


class TraceReplayer:
    """Replays a contract's trace steps against its CFG."""

    def __init__(self, quiet_mode: bool = False, verbose: bool = False):
        self.quiet_mode = quiet_mode
        self.verbose = verbose

    def _log(self, message: str):
        """Log a message to stderr if not in quiet mode."""
        if not self.quiet_mode:
            print(message, file=sys.stderr)

    @staticmethod
    def _parse_pc(value: Optional[int]) -> Optional[int]:
        if value is None or value > MAX_PC:
            return None
        return value

    @staticmethod
    def _fallthrough_pc(steps: List[TraceStep], index: int, current_pc: int) -> int:
        """Smallest pc above the JUMPI that shows up later in the trace."""
        later = [step.pc for step in steps[index + 1:] if step.pc > current_pc]
        return min(later) if later else current_pc + 1

    def number_edges(self, graph: ContractGraph, steps: List[TraceStep]) -> EdgeNumbering:
        """
        Replay `steps` against `graph`, adding the dynamic edges that were taken.

        Returns:
            Mapping of (from_node, to_node, kind) to first-seen sequence number
        """
        edge_numbering: EdgeNumbering = {}
        edge_counter = 0
        seen_indices = set()

        i = 0
        while i < len(steps):
            # A trace index can only be replayed once
            if i in seen_indices:
                self._log(warning(f"Trace index {i} visited twice, stopping replay for this contract"))
                break
            seen_indices.add(i)

            step = steps[i]
            if step.op not in ("JUMP", "JUMPI"):
                i += 1
                continue

            current_pc = step.pc
            if step.op == "JUMP":
                destination_pc = self._parse_pc(step.stack_value(0))
                kind = EdgeKind.JUMP
            else:
                condition = step.stack_value(1) or 0
                if condition != 0:
                    destination_pc = self._parse_pc(step.stack_value(0))
                    kind = EdgeKind.CONDITION_TRUE
                else:
                    destination_pc = self._fallthrough_pc(steps, i, current_pc)
                    kind = EdgeKind.CONDITION_FALSE

            if destination_pc is None:
                self._log(warning(f"{step.op} at pc 0x{current_pc:x} (step {i}) has no readable destination"))
                i += 1
                continue

            if self.verbose:
                self._log(dim(f"{step.op} at pc 0x{current_pc:x} (step {i}) -> pc 0x{destination_pc:x}") + f" [{edge_kind(kind)}]")

            from_node = graph.get_node_from_pc(current_pc)
            to_node = graph.get_node_from_pc(destination_pc)
            if from_node is None or to_node is None:
                self._log(warning(f"pc 0x{destination_pc:x} is outside the contract code, edge skipped"))
            else:
                graph.add_edge(from_node, to_node, kind)
                edge_key = (from_node, to_node, kind)
                if edge_key not in edge_numbering:
                    edge_numbering[edge_key] = edge_counter
                    edge_counter += 1

            # Continue from the next time the destination shows up
            next_index = i + 1
            for offset, later in enumerate(steps[i + 1:]):
                if later.pc == destination_pc:
                    next_index = i + 1 + offset
                    break

            if next_index <= i:
                self._log(warning("Replay did not move forward, forcing the next step"))
                next_index = i + 1
            i = next_index

        return edge_numbering


def process_trace_and_number_edges(graph: ContractGraph, steps: List[TraceStep],
                                   quiet_mode: bool = True) -> EdgeNumbering:
    return TraceReplayer(quiet_mode).number_edges(graph, steps)
