"""
JSON Serialization for txcfg analysis output

Turns a finished TransactionAnalyzer into a plain JSON document so graphs can
be consumed by a web app or other tooling without parsing DOT.
"""

import json
from typing import Any, Dict, List

from hexbytes import HexBytes

from .cfg_graph import EdgeKind
from .transaction_analyzer import ContractCFG, ExternalEdge, TransactionAnalyzer


class GraphSerializer:
    """Serializes transaction graphs to JSON format."""

    def _convert_to_serializable(self, obj: Any) -> Any:
        """Convert non-serializable objects to JSON-serializable format."""
        if isinstance(obj, HexBytes):
            return obj.to_0x_hex()
        elif isinstance(obj, bytes):
            return '0x' + obj.hex()
        elif isinstance(obj, EdgeKind):
            return obj.value
        elif isinstance(obj, dict):
            return {k: self._convert_to_serializable(v) for k, v in obj.items()}
        elif isinstance(obj, (list, tuple, set, frozenset)):
            items = sorted(obj) if isinstance(obj, (set, frozenset)) else obj
            return [self._convert_to_serializable(item) for item in items]
        else:
            return obj

    def serialize_contract(self, contract_cfg: ContractCFG) -> Dict[str, Any]:
        """Executed blocks and numbered edges of one contract."""
        graph = contract_cfg.cfg_runner
        blocks = []
        for node in graph.nodes():
            block = graph.map_to_instructionblock[node]
            blocks.append({
                "startPc": block.start_pc,
                "endPc": block.end_pc,
                "executed": block.start_pc in contract_cfg.executed_pcs,
                "instructions": [str(op) for op in block.ops],
                "containsSstore": block.contains_sstore,
                "containsAddOrSub": block.contains_add_or_sub,
            })

        edges = []
        for from_node, to_node, kind in sorted(graph.edges(), key=lambda e: (e[0], e[1], e[2].value)):
            edges.append({
                "from": from_node[0],
                "to": to_node[0],
                "kind": kind,
                "sequence": contract_cfg.edge_numbering.get((from_node, to_node, kind)),
            })

        return {
            "address": contract_cfg.address,
            "bytecodeSize": len(graph.bytecode),
            "executedPcs": contract_cfg.executed_pcs,
            "unresolvedJumps": graph.unresolved_jumps,
            "blocks": blocks,
            "edges": edges,
        }

    def serialize_global_graph(self, analyzer: TransactionAnalyzer) -> Dict[str, Any]:
        nodes: List[Dict[str, Any]] = []
        for node_idx, node in analyzer.global_nodes():
            nodes.append({
                "id": node_idx,
                "address": node.contract_address,
                "pc": node.pc,
                "instruction": node.instruction,
            })

        edges: List[Dict[str, Any]] = []
        for from_idx, to_idx, edge in analyzer.global_edges():
            if isinstance(edge, ExternalEdge):
                edges.append({"from": from_idx, "to": to_idx, "type": "external", "callType": edge.call_type})
            else:
                edges.append({
                    "from": from_idx,
                    "to": to_idx,
                    "type": "internal",
                    "kind": edge.kind,
                    "sequence": edge.sequence,
                })

        return {"nodes": nodes, "edges": edges}

    def serialize_analysis(self, analyzer: TransactionAnalyzer) -> Dict[str, Any]:
        """Serialize the whole analysis."""
        response = {
            "contracts": {
                addr: self.serialize_contract(contract_cfg)
                for addr, contract_cfg in sorted(analyzer.contract_cfgs.items())
            },
            "callEdges": [
                {
                    "from": call.from_addr,
                    "fromPc": call.from_pc,
                    "to": call.to_addr,
                    "callType": call.call_type,
                }
                for call in analyzer.call_edges
            ],
            "globalGraph": self.serialize_global_graph(analyzer),
            "missingContracts": analyzer.missing_contracts(),
            "failedContracts": analyzer.failed_contracts,
        }

        # Convert any non-serializable objects
        return self._convert_to_serializable(response)

    def to_json(self, analyzer: TransactionAnalyzer, indent: int = 2) -> str:
        return json.dumps(self.serialize_analysis(analyzer), indent=indent)
