"""
Transaction Analyzer

Builds one CFG per contract touched by a transaction, replays the trace
against each of them and merges the executed parts into a single global
graph connected by cross-contract call edges.
"""

import sys
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

import networkx as nx

from .cfg_builder import JumpTableProvider, build_contract_graph
from .cfg_graph import ContractGraph, EdgeKind
from .chain import fetch_all_bytecodes
from .colors import address as fmt_address
from .colors import error, info, success, warning
from .disassembler import InstructionBlock
from .jump_table import JumpTableUnavailable, analyze_jumpdests, valid_jumpdests_for
from .trace_parser import (
    CallEdge,
    TraceStep,
    extract_call_edges,
    extract_contract_addresses,
    filter_steps_by_address,
    get_executed_pcs,
    normalize_address,
    parse_trace_file,
)
from .trace_replayer import EdgeNumbering, TraceReplayer


@dataclass
class ContractCFG:
    """A contract's control flow graph and what the trace executed in it."""
    address: str
    cfg_runner: ContractGraph
    executed_pcs: Set[int]
    edge_numbering: EdgeNumbering


@dataclass(frozen=True)
class TransactionNode:
    """Node in the global transaction graph."""
    contract_address: str
    pc: int
    instruction: str
    contains_sstore: bool = False
    contains_add_or_sub: bool = False


@dataclass(frozen=True)
class InternalEdge:
    """Control flow inside one contract."""
    kind: EdgeKind
    sequence: Optional[int] = None  # First-seen order in the trace, if taken by a jump


@dataclass(frozen=True)
class ExternalEdge:
    """Cross-contract call (CALL, DELEGATECALL, STATICCALL, CALLCODE)."""
    call_type: str


TransactionEdge = Union[InternalEdge, ExternalEdge]


def build_contract_cfg(address: str, bytecode: bytes, steps: List[TraceStep],
                       jump_table_provider: JumpTableProvider = analyze_jumpdests,
                       link_unresolved: bool = False, quiet_mode: bool = True,
                       verbose: bool = False) -> ContractCFG:
    """
    Build, resolve and replay the CFG of one contract.

    Raises:
        JumpTableUnavailable: if no jump destination bitmap can be produced
    """
    valid_jumpdests = valid_jumpdests_for(bytes(bytecode), jump_table_provider)
    graph = build_contract_graph(bytecode, valid_jumpdests, link_unresolved, quiet_mode)

    filtered_steps = filter_steps_by_address(steps, address)
    executed_pcs = get_executed_pcs(filtered_steps)
    graph.set_executed_pcs(executed_pcs)

    edge_numbering = TraceReplayer(quiet_mode, verbose).number_edges(graph, filtered_steps)

    return ContractCFG(
        address=address,
        cfg_runner=graph,
        executed_pcs=executed_pcs,
        edge_numbering=edge_numbering,
    )


def _contract_cfg_job(job) -> Tuple[str, Optional[ContractCFG], Optional[str]]:
    """Worker entry point; returns the failure reason instead of raising."""
    address, bytecode, steps, provider, link_unresolved, quiet_mode, verbose = job
    try:
        contract_cfg = build_contract_cfg(address, bytecode, steps, provider, link_unresolved,
                                          quiet_mode, verbose)
        return address, contract_cfg, None
    except JumpTableUnavailable as e:
        return address, None, str(e)


class TransactionAnalyzer:
    """
    Reconstructs the execution graph of a transaction across contracts.
    """

    def __init__(self, trace_steps: List[TraceStep], quiet_mode: bool = False,
                 verbose: bool = False,
                 jump_table_provider: JumpTableProvider = analyze_jumpdests,
                 link_unresolved: bool = False, jobs: int = 1):
        self.trace_steps = trace_steps
        self.quiet_mode = quiet_mode
        self.verbose = verbose
        self.jump_table_provider = jump_table_provider
        self.link_unresolved = link_unresolved
        self.jobs = jobs

        self.contract_addresses: Set[str] = extract_contract_addresses(trace_steps)
        self.call_edges: List[CallEdge] = extract_call_edges(trace_steps)
        self.bytecode_cache: Dict[str, bytes] = {}
        self.contract_cfgs: Dict[str, ContractCFG] = {}
        self.failed_contracts: Dict[str, str] = {}  # address -> reason

        self.global_graph = nx.MultiDiGraph()
        self.node_mapping: Dict[Tuple[str, int], int] = {}

    @classmethod
    def from_trace_file(cls, trace_path: str, root_address: Optional[str] = None,
                        **kwargs) -> "TransactionAnalyzer":
        return cls(parse_trace_file(trace_path, root_address), **kwargs)

    def _log(self, message: str):
        """Log a message to stderr if not in quiet mode."""
        if not self.quiet_mode:
            print(message, file=sys.stderr)

    # -- bytecode ------------------------------------------------------------

    def load_bytecodes(self, bytecodes: Dict[str, bytes]):
        """Add already known bytecode, keyed by address."""
        for addr, code in bytecodes.items():
            self.bytecode_cache[normalize_address(addr)] = bytes(code)

    async def fetch_bytecodes(self, rpc_url: str, block_identifier="latest"):
        """Fetch bytecode for every touched contract not loaded yet."""
        missing = sorted(self.contract_addresses - set(self.bytecode_cache))
        if not missing:
            return
        self._log(f"Fetching bytecode for {len(missing)} contract(s) from {info(rpc_url)}")
        fetched = await fetch_all_bytecodes(missing, rpc_url, block_identifier)
        self.bytecode_cache.update(fetched)

    # -- per contract --------------------------------------------------------

    def generate_single_contract_cfg(self, address: str, bytecode: bytes) -> ContractCFG:
        """Generate CFG for a single contract."""
        return build_contract_cfg(
            address, bytecode, self.trace_steps, self.jump_table_provider,
            self.link_unresolved, self.quiet_mode, self.verbose,
        )

    def generate_contract_cfgs(self):
        """Generate CFG for each contract with known bytecode."""
        contract_cfgs: Dict[str, ContractCFG] = {}
        pending = []

        for addr in sorted(self.bytecode_cache):
            bytecode = self.bytecode_cache[addr]
            if not bytecode:
                self._log(warning(f"No code at {addr}, skipping"))
                self.failed_contracts[addr] = "no code"
                continue
            pending.append((addr, bytecode))

        if self.jobs > 1 and len(pending) > 1:
            jobs = [
                (addr, code, filter_steps_by_address(self.trace_steps, addr),
                 self.jump_table_provider, self.link_unresolved, self.quiet_mode, self.verbose)
                for addr, code in pending
            ]
            with ProcessPoolExecutor(max_workers=self.jobs) as executor:
                results = list(executor.map(_contract_cfg_job, jobs))
        else:
            results = []
            for addr, code in pending:
                try:
                    results.append((addr, self.generate_single_contract_cfg(addr, code), None))
                except JumpTableUnavailable as e:
                    results.append((addr, None, str(e)))

        for addr, contract_cfg, reason in results:
            if contract_cfg is None:
                self._log(error(f"Could not build CFG for {addr}: {reason}"))
                self.failed_contracts[addr] = reason
                continue
            contract_cfgs[addr] = contract_cfg
            self._log(
                f"Built CFG for {fmt_address(addr)}: "
                f"{contract_cfg.cfg_runner.cfg_dag.number_of_nodes()} blocks, "
                f"{len(contract_cfg.edge_numbering)} numbered edges"
            )

        self.contract_cfgs = contract_cfgs

    def missing_contracts(self) -> Set[str]:
        """Touched contracts that have no CFG."""
        return self.contract_addresses - set(self.contract_cfgs)

    # -- global graph --------------------------------------------------------

    def _add_node(self, address: str, block: InstructionBlock) -> int:
        key = (address, block.start_pc)
        if key in self.node_mapping:
            return self.node_mapping[key]

        node_idx = self.global_graph.number_of_nodes()
        self.global_graph.add_node(node_idx, node=TransactionNode(
            contract_address=address,
            pc=block.start_pc,
            instruction=str(block),
            contains_sstore=block.contains_sstore,
            contains_add_or_sub=block.contains_add_or_sub,
        ))
        self.node_mapping[key] = node_idx
        return node_idx

    def _call_site_node(self, call: CallEdge) -> Optional[int]:
        node_idx = self.node_mapping.get((call.from_addr, call.from_pc))
        if node_idx is not None:
            return node_idx

        # Calls usually sit in the middle of a block
        contract_cfg = self.contract_cfgs.get(call.from_addr)
        if contract_cfg is None:
            return None
        block = contract_cfg.cfg_runner.block_containing(call.from_pc)
        if block is None:
            return None
        return self.node_mapping.get((call.from_addr, block.start_pc))

    def build_global_transaction_graph(self):
        """Create global transaction graph from the executed part of every CFG."""
        self.global_graph = nx.MultiDiGraph()
        self.node_mapping = {}

        for addr in sorted(self.contract_cfgs):
            contract_cfg = self.contract_cfgs[addr]
            graph = contract_cfg.cfg_runner
            for node in graph.nodes():
                # Only add executed nodes
                if node[0] in contract_cfg.executed_pcs:
                    self._add_node(addr, graph.map_to_instructionblock[node])

        for addr in sorted(self.contract_cfgs):
            contract_cfg = self.contract_cfgs[addr]
            edges = sorted(contract_cfg.cfg_runner.edges(), key=lambda e: (e[0], e[1], e[2].value))
            for from_node, to_node, kind in edges:
                from_idx = self.node_mapping.get((addr, from_node[0]))
                to_idx = self.node_mapping.get((addr, to_node[0]))
                if from_idx is None or to_idx is None:
                    continue
                sequence = contract_cfg.edge_numbering.get((from_node, to_node, kind))
                self.global_graph.add_edge(from_idx, to_idx, edge=InternalEdge(kind, sequence))

        seen_calls = set()
        for call in self.call_edges:
            from_idx = self._call_site_node(call)
            # Assume target contract's entry PC is 0
            to_idx = self.node_mapping.get((call.to_addr, 0))
            if from_idx is None or to_idx is None:
                continue
            if (from_idx, to_idx, call.call_type) in seen_calls:
                continue
            seen_calls.add((from_idx, to_idx, call.call_type))
            self.global_graph.add_edge(from_idx, to_idx, edge=ExternalEdge(call.call_type))

        self._log(success(
            f"Global graph: {self.global_graph.number_of_nodes()} nodes, "
            f"{self.global_graph.number_of_edges()} edges"
        ))

    def global_nodes(self) -> Iterator[Tuple[int, TransactionNode]]:
        for node_idx in sorted(self.global_graph.nodes()):
            yield node_idx, self.global_graph.nodes[node_idx]["node"]

    def global_edges(self) -> Iterator[Tuple[int, int, TransactionEdge]]:
        for from_idx, to_idx, data in self.global_graph.edges(data=True):
            yield from_idx, to_idx, data["edge"]

    def analyze(self):
        """Build every contract CFG and the global graph."""
        self.generate_contract_cfgs()
        self.build_global_transaction_graph()
        missing = self.missing_contracts()
        if missing:
            self._log(warning(f"{len(missing)} touched contract(s) have no CFG: {', '.join(sorted(missing))}"))
