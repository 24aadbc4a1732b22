#!/usr/bin/env python3
"""
Main entry point for txcfg
"""

import argparse
import asyncio
import sys
from pathlib import Path

from .cfg_builder import build_static_cfg
from .chain import ChainClient, load_bytecode_file, load_bytecode_mapping
from .colors import address, error, info, number, success, warning
from .config import DEFAULT_CONFIG_FILE, IMAGE_FORMATS, AnalyzerConfig
from .jump_table import JumpTableUnavailable
from .json_serializer import GraphSerializer
from .renderer import GraphRenderer, RenderToolFailure, cfg_dot_str, convert_to_image
from .transaction_analyzer import TransactionAnalyzer


def load_config(args) -> AnalyzerConfig:
    """Read the config file and apply command line overrides."""
    config = AnalyzerConfig.from_config_file(args.config)
    if getattr(args, 'rpc', None):
        config.rpc_url = args.rpc
    if getattr(args, 'output_dir', None):
        config.output_dir = args.output_dir
    if getattr(args, 'format', None):
        config.image_format = args.format
    if getattr(args, 'dot_path', None):
        config.dot_path = args.dot_path
    if getattr(args, 'symbolic_edges', False):
        config.symbolic_edges = True
    if getattr(args, 'jobs', None):
        config.jobs = args.jobs
    if getattr(args, 'quiet', False):
        config.quiet = True
    return config


def render_images(dot_files, config: AnalyzerConfig):
    """Convert DOT files to the configured image format next to them."""
    images = []
    for dot_file in dot_files:
        image_path = str(Path(dot_file).with_suffix(f".{config.image_format}"))
        convert_to_image(dot_file, image_path, config.dot_path)
        images.append(image_path)
    return images


def analyze_command(args):
    """Execute the analyze command."""
    if bool(args.trace_file) == bool(args.tx):
        print(error("Error: give exactly one of a trace file or --tx"))
        return 1

    config = load_config(args)
    quiet = config.quiet or args.json
    block_identifier = "latest"
    options = dict(
        quiet_mode=quiet,
        verbose=args.verbose,
        link_unresolved=config.symbolic_edges,
        jobs=config.jobs,
    )

    if args.tx:
        if not quiet:
            print(f"Tracing transaction {info(args.tx)} via {config.rpc_url}...", file=sys.stderr)
        client = ChainClient(config.rpc_url)
        steps, _, block_identifier = client.trace_transaction(args.tx)
        analyzer = TransactionAnalyzer(steps, **options)
    else:
        analyzer = TransactionAnalyzer.from_trace_file(args.trace_file, args.to, **options)

    if args.bytecodes:
        analyzer.load_bytecodes(load_bytecode_mapping(args.bytecodes))

    # Only go to the node when it is the trace source or explicitly asked for
    if (args.tx or args.rpc) and analyzer.contract_addresses - set(analyzer.bytecode_cache):
        asyncio.run(analyzer.fetch_bytecodes(config.rpc_url, block_identifier))

    analyzer.analyze()

    renderer = GraphRenderer(analyzer)
    config.ensure_directories()
    global_dot = renderer.save_global_graph_dot(config.global_dot_path)
    contract_dots = renderer.save_contract_highlighted_cfgs(config.contracts_dir)

    images = []
    if config.image_format:
        images = render_images([global_dot] + contract_dots, config)

    if args.save_config:
        config.save_to_config_file(args.config)

    if args.json:
        print(GraphSerializer().to_json(analyzer))
        return 0

    print(success(f"Analyzed {len(analyzer.contract_cfgs)} contract(s), "
                  f"{len(analyzer.trace_steps)} trace steps"))
    for addr in sorted(analyzer.contract_cfgs):
        contract_cfg = analyzer.contract_cfgs[addr]
        print(f"  {address(addr)}: {number(str(len(contract_cfg.executed_pcs)))} executed pcs, "
              f"{number(str(len(contract_cfg.edge_numbering)))} numbered edges")
    for addr in sorted(analyzer.missing_contracts()):
        reason = analyzer.failed_contracts.get(addr, "no bytecode")
        print(warning(f"  {addr}: no CFG ({reason})"))

    print(f"Global graph: {global_dot}")
    print(f"Contract graphs: {config.contracts_dir}")
    for image in images:
        print(f"Image: {image}")
    return 0


def cfg_command(args):
    """Execute the cfg command."""
    config = load_config(args)
    bytecode = load_bytecode_file(args.bytecode_file)
    graph = build_static_cfg(bytecode, link_unresolved=config.symbolic_edges, quiet_mode=config.quiet)
    dot_str = cfg_dot_str(graph, name=Path(args.bytecode_file).stem)

    if not args.output:
        if args.format:
            print(error("Error: --format needs an output file (-o)"))
            return 1
        print(dot_str, end="")
        return 0

    Path(args.output).parent.mkdir(parents=True, exist_ok=True)
    with open(args.output, 'w') as f:
        f.write(dot_str)
    print(success(f"CFG written to {args.output}"))

    if config.image_format:
        for image in render_images([args.output], config):
            print(f"Image: {image}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description='txcfg - transaction control flow graphs for EVM contracts')
    parser.add_argument('--version', '-v', action='version', version='%(prog)s 0.1.0')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Analyze command
    analyze_parser = subparsers.add_parser('analyze', help='Build the execution graph of a transaction')
    analyze_parser.add_argument('trace_file', nargs='?', help='Trace JSON/JSONL file (structLogs, RPC response or EIP-3155)')
    analyze_parser.add_argument('--tx', help='Transaction hash to trace with debug_traceTransaction')
    analyze_parser.add_argument('--to', help='Address whose code the trace starts in (trace files without addresses)')
    analyze_parser.add_argument('--bytecodes', '-b', help='JSON file mapping contract addresses to bytecode')
    analyze_parser.add_argument('--rpc', '-r', help='RPC URL (default: from config, http://localhost:8545)')
    analyze_parser.add_argument('--output-dir', '-o', help='Output directory (default: ./txcfg-out)')
    analyze_parser.add_argument('--format', '-f', choices=IMAGE_FORMATS, help='Also render images with Graphviz')
    analyze_parser.add_argument('--dot-path', help='Path to the Graphviz dot binary')
    analyze_parser.add_argument('--symbolic-edges', action='store_true', help='Link unresolved jumps to every jump destination')
    analyze_parser.add_argument('--jobs', '-j', type=int, help='Build contract CFGs in N worker processes')
    analyze_parser.add_argument('--json', action='store_true', help='Print the analysis as JSON')
    analyze_parser.add_argument('--quiet', '-q', action='store_true', help='Suppress progress output')
    analyze_parser.add_argument('--verbose', action='store_true', help='Log every replayed jump')
    analyze_parser.add_argument('--config', default=DEFAULT_CONFIG_FILE, help=f'Config file (default: {DEFAULT_CONFIG_FILE})')
    analyze_parser.add_argument('--save-config', action='store_true', help='Save the effective settings to the config file')

    # Static CFG command
    cfg_parser = subparsers.add_parser('cfg', help='Build the static CFG of a bytecode file')
    cfg_parser.add_argument('bytecode_file', help='Bytecode file (hex or raw binary)')
    cfg_parser.add_argument('--output', '-o', help='Output DOT file (default: stdout)')
    cfg_parser.add_argument('--format', '-f', choices=IMAGE_FORMATS, help='Also render an image with Graphviz')
    cfg_parser.add_argument('--dot-path', help='Path to the Graphviz dot binary')
    cfg_parser.add_argument('--symbolic-edges', action='store_true', help='Link unresolved jumps to every jump destination')
    cfg_parser.add_argument('--quiet', '-q', action='store_true', help='Suppress solver output')
    cfg_parser.add_argument('--config', default=DEFAULT_CONFIG_FILE, help=f'Config file (default: {DEFAULT_CONFIG_FILE})')

    args = parser.parse_args(argv)

    commands = {
        'analyze': analyze_command,
        'cfg': cfg_command,
    }
    if args.command not in commands:
        parser.print_help()
        return 1

    try:
        return commands[args.command](args)
    except (ValueError, JumpTableUnavailable, RenderToolFailure, OSError) as e:
        print(error(f"Error: {e}"))
        return 1


if __name__ == '__main__':
    sys.exit(main())
