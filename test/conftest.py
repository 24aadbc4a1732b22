import json

import pytest

from txcfg.trace_parser import normalize_address

CONTRACT_A = normalize_address("0xaa")
CONTRACT_B = normalize_address("0xbb")

# PUSH1 0x04; JUMP; JUMPDEST; STOP
SIMPLE_JUMP = bytes.fromhex("6004565b00")
# PUSH1 0; PUSH1 8; JUMPI; PUSH1 1; STOP; JUMPDEST; STOP
CONDITIONAL = bytes.fromhex("6000600857600100" + "5b00")
# JUMPDEST; PUSH1 0; JUMP
LOOP = bytes.fromhex("5b600056")
# PUSH1 8; PUSH1 6; JUMP; STOP; JUMPDEST; JUMP; JUMPDEST; STOP
FUNCTION_RETURN = bytes.fromhex("6008600656005b565b00")
# PUSH1 0; CALLDATALOAD; JUMP; JUMPDEST; STOP
DATA_DEPENDENT_JUMP = bytes.fromhex("600035565b00")
# PUSH1 0; DUP1 x4; PUSH1 0xbb; PUSH1 0xff; CALL; STOP
CALLER = bytes.fromhex("60008080808060bb60fff100")
CALLEE = bytes.fromhex("00")


def struct_log(pc, op, stack=(), depth=1):
    return {"pc": pc, "op": op, "gas": 100000, "gasCost": 3, "depth": depth, "stack": list(stack)}


def simple_jump_logs():
    return [
        struct_log(0, "PUSH1"),
        struct_log(2, "JUMP", ["0x4"]),
        struct_log(3, "JUMPDEST"),
        struct_log(4, "STOP"),
    ]


def two_contract_logs():
    return [
        struct_log(0, "PUSH1"),
        struct_log(2, "DUP1", ["0x0"]),
        struct_log(3, "DUP1", ["0x0"] * 2),
        struct_log(4, "DUP1", ["0x0"] * 3),
        struct_log(5, "DUP1", ["0x0"] * 4),
        struct_log(6, "PUSH1", ["0x0"] * 5),
        struct_log(8, "PUSH1", ["0x0"] * 5 + ["0xbb"]),
        struct_log(10, "CALL", ["0x0"] * 5 + ["0xbb", "0xff"]),
        struct_log(0, "STOP", depth=2),
        struct_log(11, "STOP", ["0x1"]),
    ]


@pytest.fixture
def two_contract_trace_file(tmp_path):
    path = tmp_path / "trace.json"
    path.write_text(json.dumps({"to": CONTRACT_A, "structLogs": two_contract_logs()}))
    return path


@pytest.fixture
def bytecode_mapping_file(tmp_path):
    path = tmp_path / "bytecodes.json"
    path.write_text(json.dumps({
        "contracts": [
            {"address": CONTRACT_A, "bytecode": "0x" + CALLER.hex()},
            {"address": CONTRACT_B, "bytecode": "0x" + CALLEE.hex()},
        ]
    }))
    return path
