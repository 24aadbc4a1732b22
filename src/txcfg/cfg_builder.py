"""
Static CFG construction for a single contract.
"""

from typing import Callable, Set

from .cfg_graph import ContractGraph
from .disassembler import disassemble
from .jump_table import analyze_jumpdests, valid_jumpdests_for
from .stack_solver import symbolic_cycle

JumpTableProvider = Callable[[bytes], bytes]


def build_contract_graph(bytecode: bytes, valid_jumpdests: Set[int],
                         link_unresolved: bool = False, quiet_mode: bool = True) -> ContractGraph:
    """
    Build the pruned, statically resolved CFG of a bytecode image.

    Args:
        bytecode: Runtime bytecode of the contract
        valid_jumpdests: Program counters holding a valid JUMPDEST
        link_unresolved: Connect jumps the solver could not resolve to every
            valid jump destination with SymbolicJump edges
        quiet_mode: Suppress solver diagnostics on stderr

    Returns:
        The contract graph, reachable from pc 0 only
    """
    blocks = disassemble(bytecode)
    for block in blocks:
        block.analyze_stack_info()

    graph = ContractGraph(bytecode, blocks, valid_jumpdests)
    graph.form_basic_connections()

    # Dead code would only add noise to the stack solver
    graph.remove_unreachable_instruction_blocks()
    symbolic_cycle(graph, link_unresolved, quiet_mode)

    # Resolution only adds edges out of reachable blocks, prune again for blocks
    # that were re-created but stayed disconnected
    graph.remove_unreachable_instruction_blocks()
    return graph


def build_static_cfg(bytecode: bytes, jump_table_provider: JumpTableProvider = analyze_jumpdests,
                     link_unresolved: bool = False, quiet_mode: bool = True) -> ContractGraph:
    """Run the jump table provider and build the CFG for a bytecode image."""
    valid_jumpdests = valid_jumpdests_for(bytes(bytecode), jump_table_provider)
    return build_contract_graph(bytecode, valid_jumpdests, link_unresolved, quiet_mode)
