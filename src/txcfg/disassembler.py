"""
Bytecode disassembly into instruction blocks

Splits EVM bytecode into basic blocks and summarises how each block
affects the operand stack. The summary is what the indirect-jump solver
works with, so it is computed once per block and then left alone.
"""

from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Union

from pyevmasm import disassemble_all

# Opcodes the analysis cares about
STOP = 0x00
ADD = 0x01
SUB = 0x03
POP = 0x50
SSTORE = 0x55
JUMP = 0x56
JUMPI = 0x57
JUMPDEST = 0x5B
PUSH0 = 0x5F
RETURN = 0xF3
REVERT = 0xFD
INVALID = 0xFE
SELFDESTRUCT = 0xFF

HALTING_OPS = {STOP, RETURN, REVERT, INVALID, SELFDESTRUCT}
BLOCK_END_OPS = HALTING_OPS | {JUMP, JUMPI}
ARITHMETIC_OPS = {ADD, SUB}

# Opcodes introduced after the fork pyevmasm decodes by default: name, pops, pushes
LATER_FORK_OPS = {
    0x48: ("BASEFEE", 0, 1),
    0x49: ("BLOBHASH", 1, 1),
    0x4A: ("BLOBBASEFEE", 0, 1),
    0x5C: ("TLOAD", 1, 1),
    0x5D: ("TSTORE", 2, 0),
    0x5E: ("MCOPY", 3, 0),
    PUSH0: ("PUSH0", 0, 1),
}


class Instruction(NamedTuple):
    """A single decoded instruction."""
    pc: int
    opcode: int
    operand: Optional[int]
    name: str
    pops: int
    pushes: int

    def __str__(self) -> str:
        if self.operand is not None and self.name != "PUSH0":
            return f"{self.pc:04x}: {self.name} 0x{self.operand:x}"
        return f"{self.pc:04x}: {self.name}"


@dataclass(frozen=True)
class Const:
    """A stack value known at analysis time."""
    value: int


@dataclass(frozen=True)
class EntrySlot:
    """The value that sat `depth` slots below the top when the block was entered."""
    depth: int


# None stands for a value the block computes at runtime
SymbolicValue = Optional[Union[Const, EntrySlot]]


@dataclass
class StackEffect:
    """
    Summary of a block's effect on the stack.

    `consumed` entry slots are removed from the top of the entry stack and
    replaced by `outputs` (bottom to top). `jump_target` and `condition`
    describe the operands of a terminating JUMP/JUMPI.
    """
    consumed: int = 0
    outputs: List[SymbolicValue] = field(default_factory=list)
    required: int = 0
    jump_target: SymbolicValue = None
    condition: SymbolicValue = None

    @property
    def delta(self) -> int:
        return len(self.outputs) - self.consumed


class _AbstractStack:
    """Stack simulation over symbolic values, pulling entry slots lazily."""

    def __init__(self):
        self.items: List[SymbolicValue] = []
        self.consumed = 0
        self.required = 0

    def _materialize(self, n: int):
        while len(self.items) < n:
            self.items.insert(0, EntrySlot(self.consumed))
            self.consumed += 1
        self.required = max(self.required, self.consumed)

    def peek(self, depth: int = 0) -> SymbolicValue:
        self._materialize(depth + 1)
        return self.items[-1 - depth]

    def pop(self) -> SymbolicValue:
        self._materialize(1)
        return self.items.pop()

    def push(self, value: SymbolicValue):
        self.items.append(value)

    def swap(self, depth: int):
        self._materialize(depth + 1)
        self.items[-1], self.items[-1 - depth] = self.items[-1 - depth], self.items[-1]


@dataclass
class InstructionBlock:
    """A maximal run of instructions with no internal control transfer."""
    start_pc: int
    end_pc: int
    ops: List[Instruction]
    stack_info: Optional[StackEffect] = None

    @property
    def key(self):
        return (self.start_pc, self.end_pc)

    @property
    def last_op(self) -> Instruction:
        return self.ops[-1]

    @property
    def starts_with_jumpdest(self) -> bool:
        return self.ops[0].opcode == JUMPDEST

    @property
    def ends_with_jump(self) -> bool:
        return self.last_op.opcode in (JUMP, JUMPI)

    @property
    def falls_through(self) -> bool:
        """True if execution can continue into the next block by position."""
        last = self.last_op
        if last.opcode == JUMP or last.opcode in HALTING_OPS:
            return False
        return last.name != "INVALID"

    @property
    def contains_sstore(self) -> bool:
        return any(op.opcode == SSTORE for op in self.ops)

    @property
    def contains_add_or_sub(self) -> bool:
        return any(op.opcode in ARITHMETIC_OPS for op in self.ops)

    def contains_pc(self, pc: int) -> bool:
        return self.start_pc <= pc < self.end_pc

    def analyze_stack_info(self) -> StackEffect:
        """Simulate the block symbolically and store the resulting summary."""
        stack = _AbstractStack()
        effect = StackEffect()

        for op in self.ops:
            name = op.name
            if op.opcode == JUMP:
                effect.jump_target = stack.peek(0)
            elif op.opcode == JUMPI:
                effect.jump_target = stack.peek(0)
                effect.condition = stack.peek(1)

            if name.startswith("PUSH"):
                stack.push(Const(op.operand or 0))
            elif name.startswith("DUP"):
                stack.push(stack.peek(int(name[3:]) - 1))
            elif name.startswith("SWAP"):
                stack.swap(int(name[4:]))
            else:
                for _ in range(op.pops):
                    stack.pop()
                for _ in range(op.pushes):
                    stack.push(None)

        effect.consumed = stack.consumed
        effect.required = stack.required
        effect.outputs = list(stack.items)
        self.stack_info = effect
        return effect

    def __str__(self) -> str:
        return "\n".join(str(op) for op in self.ops)


def _decode(instr) -> Instruction:
    if instr.opcode in LATER_FORK_OPS:
        name, pops, pushes = LATER_FORK_OPS[instr.opcode]
        return Instruction(instr.pc, instr.opcode, None, name, pops, pushes)
    return Instruction(instr.pc, instr.opcode, instr.operand, instr.name, instr.pops, instr.pushes)


def disassemble(bytecode: bytes) -> List[InstructionBlock]:
    """Disassemble bytecode into basic blocks ordered by start pc."""
    blocks: List[InstructionBlock] = []
    current: List[Instruction] = []
    next_pc = 0

    def close_block(end_pc: int):
        blocks.append(InstructionBlock(current[0].pc, end_pc, list(current)))
        current.clear()

    for instr in disassemble_all(bytes(bytecode)):
        op = _decode(instr)
        # A jump destination always opens a new block
        if op.opcode == JUMPDEST and current:
            close_block(op.pc)
        current.append(op)
        next_pc = instr.pc + instr.size
        # Bytes with no opcode behind them halt like INVALID
        if op.opcode in BLOCK_END_OPS or op.name == "INVALID":
            close_block(next_pc)

    if current:
        close_block(next_pc)

    return blocks
