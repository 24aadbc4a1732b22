"""
Jump destination analysis

Produces the bitmap of valid JUMPDEST offsets for a bytecode image and
decodes such a bitmap back into a set of program counters.
"""

from typing import Set

from pyevmasm import disassemble_all

from .disassembler import JUMPDEST

EOF_MAGIC = b"\xef\x00"


class JumpTableUnavailable(Exception):
    """Raised when no jump destination bitmap can be produced for a bytecode."""
    pass


def analyze_jumpdests(bytecode: bytes) -> bytes:
    """
    Compute the jump destination bitmap for legacy bytecode.

    Bit i of byte b is set when pc 8*b + i holds a JUMPDEST that is not part
    of PUSH immediate data.
    """
    if not bytecode:
        raise JumpTableUnavailable("empty bytecode has no jump table")
    if bytes(bytecode[:2]) == EOF_MAGIC:
        # EOF containers have no dynamic jumps and no legacy jump table
        raise JumpTableUnavailable("EOF bytecode is not supported")

    bitmap = bytearray((len(bytecode) + 7) // 8)
    for instr in disassemble_all(bytes(bytecode)):
        if instr.opcode == JUMPDEST:
            bitmap[instr.pc >> 3] |= 1 << (instr.pc & 7)
    return bytes(bitmap)


def decode_jump_table(bitmap: bytes) -> Set[int]:
    """Decode a jump destination bitmap into the set of valid pcs."""
    valid_jumpdests = set()
    for byte_index, byte in enumerate(bitmap):
        for bit_index in range(8):
            if byte & (1 << bit_index):
                valid_jumpdests.add(byte_index * 8 + bit_index)
    return valid_jumpdests


def valid_jumpdests_for(bytecode: bytes, provider=analyze_jumpdests) -> Set[int]:
    """Run a jump table provider and decode its bitmap, checking its size."""
    bitmap = provider(bytecode)
    if bitmap is None:
        raise JumpTableUnavailable("bytecode analysis produced no jump table")
    if len(bitmap) < (len(bytecode) + 7) // 8:
        raise JumpTableUnavailable(
            f"jump table covers {len(bitmap) * 8} bytes, bytecode has {len(bytecode)}"
        )
    return decode_jump_table(bitmap)
