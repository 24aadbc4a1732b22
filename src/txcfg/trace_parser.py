"""
Execution trace parsing

Reads struct-log traces (debug_traceTransaction output, a bare list of
steps, or EIP-3155 JSON lines), attributes every step to the contract whose
code was executing, and extracts cross-contract call edges.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from eth_utils import to_checksum_address

CALL_OPS = {"CALL", "CALLCODE", "DELEGATECALL", "STATICCALL"}
CREATE_OPS = {"CREATE", "CREATE2"}


class TraceFormatError(ValueError):
    """Raised when a trace document cannot be interpreted."""
    pass


@dataclass
class TraceStep:
    """Represents a single step in EVM execution trace."""
    pc: int
    op: str
    stack: List[str] = field(default_factory=list)
    depth: int = 1
    address: Optional[str] = None  # Contract whose code runs at this step
    gas: int = 0
    gas_cost: int = 0
    error: Optional[str] = None

    def stack_value(self, position: int = 0) -> Optional[int]:
        """Integer value `position` slots below the top of the stack."""
        if position >= len(self.stack):
            return None
        return parse_word(self.stack[-1 - position])


@dataclass(frozen=True)
class CallEdge:
    """A call from one contract into another observed in the trace."""
    from_addr: str
    from_pc: int
    to_addr: str
    call_type: str


def parse_word(value: Any) -> Optional[int]:
    """Parse a stack word given as hex text (with or without 0x) or int."""
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 16)
    except ValueError:
        return None


def _parse_quantity(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith("0x") else int(value)
        except ValueError:
            return 0
    return 0


def normalize_address(value: Any) -> str:
    """Extract and properly format an address from a stack word or address string."""
    if isinstance(value, int):
        value = hex(value)
    value = str(value)
    if value.startswith("0x") or value.startswith("0X"):
        value = value[2:]

    # Stack words are 32 bytes, the address is the low 20
    value = value.zfill(40)[-40:]
    return to_checksum_address("0x" + value)


def step_from_dict(raw: Dict[str, Any]) -> TraceStep:
    """Build a TraceStep from one struct log entry."""
    op = raw.get("op")
    # EIP-3155 traces carry the opcode byte in "op" and the mnemonic in "opName"
    if not isinstance(op, str):
        op = raw.get("opName") or "UNKNOWN"

    stack = [item if isinstance(item, str) else hex(item) for item in raw.get("stack") or []]
    address = raw.get("address") or raw.get("contract")

    return TraceStep(
        pc=_parse_quantity(raw["pc"]),
        op=op,
        stack=stack,
        depth=_parse_quantity(raw.get("depth", 1)),
        address=normalize_address(address) if address else None,
        gas=_parse_quantity(raw.get("gas", 0)),
        gas_cost=_parse_quantity(raw.get("gasCost", 0)),
        error=raw.get("error"),
    )


def call_target(step: TraceStep) -> Optional[str]:
    """Code address a CALL-family step transfers control to."""
    # CALL/CALLCODE/DELEGATECALL/STATICCALL: [..., to, gas] with gas on top
    if step.op not in CALL_OPS or len(step.stack) < 2:
        return None
    return normalize_address(step.stack[-2])


def assign_contract_context(steps: List[TraceStep], root_address: Optional[str] = None):
    """
    Fill in the executing contract for every step by following call depth.

    Steps that already name their contract keep it. A depth increase right
    after a CALL-family step enters the call target; after CREATE/CREATE2 the
    new contract's address is not known yet, so those steps stay unattributed.
    """
    if not steps:
        return

    root = normalize_address(root_address) if root_address else None
    if steps[0].address is None and root is None:
        raise TraceFormatError(
            "Trace does not say which contract executed it; pass the transaction's 'to' address"
        )

    context_stack: List[Optional[str]] = [steps[0].address or root]
    prev: Optional[TraceStep] = None

    for step in steps:
        if prev is not None:
            if step.depth > prev.depth:
                context_stack.append(step.address or call_target(prev))
            elif step.depth < prev.depth:
                for _ in range(prev.depth - step.depth):
                    if len(context_stack) > 1:
                        context_stack.pop()

        if step.address is None:
            step.address = context_stack[-1]
        prev = step


def _read_trace_document(text: str) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        # JSON lines, one step per line plus a trailing summary
        entries = []
        for line_no, line in enumerate(text.splitlines(), 1):
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise TraceFormatError(f"Line {line_no} is not valid JSON: {e}") from e
        return [entry for entry in entries if "pc" in entry], None

    if isinstance(document, list):
        return document, None
    if not isinstance(document, dict):
        raise TraceFormatError("Trace must be a JSON object or list of steps")

    # Raw JSON-RPC response envelope
    if "result" in document and isinstance(document["result"], dict):
        document = document["result"]

    struct_logs = document.get("structLogs")
    if struct_logs is None:
        struct_logs = document.get("steps")
    if struct_logs is None:
        raise TraceFormatError("Trace has no 'structLogs' entry")

    return struct_logs, document.get("to") or document.get("address")


def parse_struct_logs(struct_logs: Iterable[Dict[str, Any]],
                      root_address: Optional[str] = None) -> List[TraceStep]:
    """Convert struct log entries into attributed TraceSteps."""
    steps = [step_from_dict(raw) for raw in struct_logs if "pc" in raw]
    assign_contract_context(steps, root_address)
    return steps


def parse_trace_file(trace_path: str, root_address: Optional[str] = None) -> List[TraceStep]:
    """Parse a trace file into an ordered list of TraceSteps."""
    with open(trace_path, "r") as f:
        text = f.read()

    struct_logs, document_root = _read_trace_document(text)
    return parse_struct_logs(struct_logs, root_address or document_root)


def extract_contract_addresses(steps: Iterable[TraceStep]) -> Set[str]:
    """Distinct contracts whose code ran during the trace."""
    return {step.address for step in steps if step.address}


def extract_call_edges(steps: Iterable[TraceStep]) -> List[CallEdge]:
    """Cross-contract calls in trace order."""
    edges = []
    for step in steps:
        if step.op not in CALL_OPS or not step.address:
            continue
        target = call_target(step)
        if target is None:
            continue
        edges.append(CallEdge(step.address, step.pc, target, step.op))
    return edges


def filter_steps_by_address(steps: Iterable[TraceStep], address: str) -> List[TraceStep]:
    return [step for step in steps if step.address == address]


def get_executed_pcs(steps: Iterable[TraceStep]) -> Set[int]:
    return {step.pc for step in steps}
