"""
Chain and file sources for traces and bytecode.
"""

import asyncio
import json
from pathlib import Path
from typing import Dict, Iterable, List, Tuple, Union

from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from .trace_parser import TraceStep, parse_struct_logs

HEX_DIGITS = set("0123456789abcdefABCDEF")


class ChainClient:
    """
    Fetches transaction traces from a node with the debug namespace enabled.
    """

    def __init__(self, rpc_url: str = "http://localhost:8545"):
        self.rpc_url = rpc_url
        self.w3 = Web3(Web3.HTTPProvider(rpc_url))
        if not self.w3.is_connected():
            raise ConnectionError(f"Failed to connect to {rpc_url}")

    def trace_transaction(self, tx_hash: str) -> Tuple[List[TraceStep], str, int]:
        """
        Trace a transaction execution.

        Returns:
            Attributed trace steps, the address whose code ran first and the
            block number the transaction was mined in
        """
        # Ensure tx_hash is properly formatted
        if isinstance(tx_hash, str) and not tx_hash.startswith('0x'):
            tx_hash = '0x' + tx_hash

        tx = self.w3.eth.get_transaction(tx_hash)
        root_address = tx.get('to')
        if not root_address:
            # Deployment transaction, the trace runs init code of the new contract
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
            root_address = receipt.get('contractAddress')

        trace_result = self.w3.manager.request_blocking(
            "debug_traceTransaction",
            [tx_hash, {"disableStorage": True, "disableMemory": True, "disableStack": False}]
        )
        steps = parse_struct_logs(trace_result.get('structLogs', []), root_address)
        return steps, to_checksum_address(root_address), tx['blockNumber']


async def fetch_all_bytecodes(addresses: Iterable[str], rpc_url: str,
                              block_identifier="latest") -> Dict[str, bytes]:
    """Fetch runtime bytecode for a batch of addresses concurrently."""
    addresses = [to_checksum_address(addr) for addr in addresses]
    w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
    codes = await asyncio.gather(
        *(w3.eth.get_code(addr, block_identifier) for addr in addresses)
    )
    return {addr: bytes(HexBytes(code)) for addr, code in zip(addresses, codes)}


def parse_bytecode_text(content: Union[str, bytes]) -> bytes:
    """
    Decode bytecode given as hex text, falling back to raw binary.
    """
    if isinstance(content, str):
        content = content.encode('utf-8')
    try:
        text = content.decode('utf-8', errors='strict')
    except UnicodeDecodeError:
        return bytes(content)

    hex_str = "".join(text.split())
    if hex_str.startswith('0x') or hex_str.startswith('0X'):
        hex_str = hex_str[2:]
    if not hex_str:
        return b""
    if all(c in HEX_DIGITS for c in hex_str) and len(hex_str) % 2 == 0:
        return bytes.fromhex(hex_str)
    return bytes(content)


def load_bytecode_file(filepath: Union[str, Path]) -> bytes:
    """Read a .bin/.hex bytecode file."""
    with open(filepath, 'rb') as f:
        return parse_bytecode_text(f.read())


def load_bytecode_mapping(mapping_file: Union[str, Path]) -> Dict[str, bytes]:
    """
    Load bytecode for several contracts from a JSON mapping file.

    Expected format:
    {
        "contracts": [
            {"address": "0x...", "bytecode": "0x6080..."},
            {"address": "0x...", "bytecode_file": "./Token.bin"}
        ]
    }

    A flat {"0x<address>": "0x<bytecode>"} object is accepted as well.
    """
    mapping_file = Path(mapping_file)
    if not mapping_file.exists():
        raise FileNotFoundError(f"Mapping file not found: {mapping_file}")

    with open(mapping_file) as f:
        mapping_data = json.load(f)

    if 'contracts' in mapping_data:
        entries = mapping_data['contracts']
    else:
        entries = [{'address': addr, 'bytecode': code} for addr, code in mapping_data.items()]

    bytecodes = {}
    for entry in entries:
        address = to_checksum_address(entry['address'])
        if entry.get('bytecode_file'):
            code_path = Path(entry['bytecode_file'])
            # Make path relative to mapping file if not absolute
            if not code_path.is_absolute():
                code_path = mapping_file.parent / code_path
            bytecodes[address] = load_bytecode_file(code_path)
        else:
            bytecodes[address] = parse_bytecode_text(entry.get('bytecode', ''))
    return bytecodes

