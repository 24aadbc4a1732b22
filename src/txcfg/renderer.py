"""
DOT rendering of execution graphs

Colour policy: blocks writing storage are pink, blocks with ADD/SUB are
orange, everything else green. Internal edges carry the sequence number the
replay gave them, external edges the call type.
"""

import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from .cfg_graph import ContractGraph, EdgeKind
from .disassembler import InstructionBlock
from .transaction_analyzer import ContractCFG, ExternalEdge, TransactionAnalyzer, TransactionNode

SSTORE_COLOR = "#f7768e"
ARITHMETIC_COLOR = "#ff9e64"
DEFAULT_COLOR = "#9ece6a"

GRAPH_HEADER = [
    '    rankdir=TB;',
    '    node [shape=box, style="filled, rounded", color="#565f89", fontcolor="#c0caf5", '
    'fontname="Helvetica", fillcolor="#24283b"];',
    '    edge [color="#414868", fontcolor="#c0caf5", fontname="Helvetica"];',
    '    bgcolor="#1a1b26";',
]


class RenderToolFailure(Exception):
    """Raised when the external graph layout tool fails."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


def fill_color(contains_sstore: bool, contains_add_or_sub: bool) -> str:
    """Node colour by priority: SSTORE > ADD/SUB > others."""
    if contains_sstore:
        return SSTORE_COLOR
    if contains_add_or_sub:
        return ARITHMETIC_COLOR
    return DEFAULT_COLOR


def escape_label(text: str) -> str:
    """Escape instruction text for a DOT label, one left-aligned line per instruction."""
    text = text.replace('\\', '\\\\').replace('"', '\\"')
    return "".join(f"{line}\\l" for line in text.split("\n"))


def edge_style(kind: EdgeKind, sequence: Optional[int]) -> str:
    """DOT attributes for an internal edge."""
    number = f"#{sequence}" if sequence is not None else ""
    if kind == EdgeKind.CONDITION_TRUE:
        suffix = f' - <font color="white">{number}</font>' if number else ""
        return f'color="#9ece6a", label=<True{suffix}>'
    if kind == EdgeKind.CONDITION_FALSE:
        suffix = f' - <font color="white">{number}</font>' if number else ""
        return f'color="#f7768e", label=<False{suffix}>'
    if kind == EdgeKind.SYMBOLIC_JUMP:
        suffix = f' - <font color="#333333">{number}</font>' if number else ""
        return f'color="#e0af68", style="dotted", label=<Symbolic{suffix}>'
    if sequence is None:
        return 'color="#414868"'
    return f'color="#414868", label=<#<font color="white">{sequence}</font>>'


def external_edge_style(call_type: str) -> str:
    return f'color="#7aa2f7", style="bold", penwidth=2, label=<<font color="#0000ff">{call_type}</font>>'


def _block_node_id(block: InstructionBlock) -> str:
    return f'"n{block.start_pc}"'


def cfg_dot_str(graph: ContractGraph, edge_numbering: Optional[Dict] = None,
                executed_only: bool = False, name: str = "CFG") -> str:
    """
    Render a contract graph.

    With `executed_only` the output is restricted to blocks whose first pc
    was executed and edges between such blocks.
    """
    edge_numbering = edge_numbering or {}
    lines = [f'digraph "{name}" {{'] + GRAPH_HEADER

    def included(node) -> bool:
        return not executed_only or node[0] in graph.executed_pcs

    for node in graph.nodes():
        if not included(node):
            continue
        block = graph.map_to_instructionblock[node]
        label = f"PC: {block.start_pc}\\n{escape_label(str(block))}"
        color = fill_color(block.contains_sstore, block.contains_add_or_sub)
        lines.append(f'    {_block_node_id(block)} [label="{label}", fillcolor="{color}", fontcolor="#1a1b26"];')

    for from_node, to_node, kind in sorted(graph.edges(), key=lambda e: (e[0], e[1], e[2].value)):
        if not (included(from_node) and included(to_node)):
            continue
        style = edge_style(kind, edge_numbering.get((from_node, to_node, kind)))
        lines.append(f'    "n{from_node[0]}" -> "n{to_node[0]}" [{style}];')

    lines.append("}")
    return "\n".join(lines) + "\n"


def cfg_dot_str_highlighted_only(contract_cfg: ContractCFG) -> str:
    """Render only the nodes and edges of a contract that the trace touched."""
    return cfg_dot_str(
        contract_cfg.cfg_runner,
        contract_cfg.edge_numbering,
        executed_only=True,
        name=contract_cfg.address,
    )


def convert_to_image(dot_path: str, output_path: str, dot_binary: str = "dot"):
    """Convert a DOT file to PNG, SVG, PDF... based on the output extension."""
    ext = Path(output_path).suffix.lstrip(".") or "png"
    try:
        result = subprocess.run(
            [dot_binary, f"-T{ext}", "-o", output_path, dot_path],
            capture_output=True, text=True,
        )
    except FileNotFoundError as e:
        raise RenderToolFailure(f"Graphviz '{dot_binary}' not found", str(e)) from e

    if result.returncode != 0:
        raise RenderToolFailure(f"Conversion failed: {result.stderr}", result.stderr)


class GraphRenderer:
    """Produces DOT artifacts for an analyzed transaction."""

    def __init__(self, analyzer: TransactionAnalyzer):
        self.analyzer = analyzer

    @staticmethod
    def _node_statement(node_idx: int, node: TransactionNode) -> str:
        label = f"{node.contract_address}\\nPC: {node.pc}\\n{escape_label(node.instruction)}"
        color = fill_color(node.contains_sstore, node.contains_add_or_sub)
        return f'    {node_idx} [label="{label}", fillcolor="{color}", fontcolor="#1a1b26"];'

    def export_global_graph_dot(self) -> str:
        """Export global transaction graph in DOT format."""
        lines = ["digraph G {"] + GRAPH_HEADER

        for node_idx, node in self.analyzer.global_nodes():
            lines.append(self._node_statement(node_idx, node))

        for from_idx, to_idx, edge in self.analyzer.global_edges():
            if isinstance(edge, ExternalEdge):
                style = external_edge_style(edge.call_type)
            else:
                style = edge_style(edge.kind, edge.sequence)
            lines.append(f"    {from_idx} -> {to_idx} [{style}];")

        lines.append("}")
        return "\n".join(lines) + "\n"

    def export_contract_highlighted_cfgs(self) -> Dict[str, str]:
        """Highlighted-only DOT text per contract address."""
        return {
            addr: cfg_dot_str_highlighted_only(contract_cfg)
            for addr, contract_cfg in sorted(self.analyzer.contract_cfgs.items())
        }

    def save_global_graph_dot(self, output_path: str) -> str:
        """Save global transaction graph to DOT file."""
        parent = os.path.dirname(output_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(self.export_global_graph_dot())
        return output_path

    def save_contract_highlighted_cfgs(self, output_dir: str) -> List[str]:
        """Save each contract's highlighted CFG as <address>.dot in output_dir."""
        os.makedirs(output_dir, exist_ok=True)
        saved_files = []
        for addr, dot_str in self.export_contract_highlighted_cfgs().items():
            output_path = os.path.join(output_dir, f"{addr.lower()[2:]}.dot")
            with open(output_path, "w") as f:
                f.write(dot_str)
            saved_files.append(output_path)
        return saved_files
