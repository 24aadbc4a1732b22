import subprocess

import pytest

from txcfg.cfg_builder import build_static_cfg
from txcfg.cfg_graph import EdgeKind
from txcfg.renderer import (
    GraphRenderer,
    RenderToolFailure,
    cfg_dot_str,
    convert_to_image,
    edge_style,
    escape_label,
    fill_color,
)
from txcfg.trace_parser import parse_struct_logs
from txcfg.transaction_analyzer import TransactionAnalyzer

from conftest import CALLEE, CALLER, CONTRACT_A, CONTRACT_B, DATA_DEPENDENT_JUMP, SIMPLE_JUMP, simple_jump_logs, two_contract_logs


@pytest.fixture
def two_contract_analyzer():
    steps = parse_struct_logs(two_contract_logs(), CONTRACT_A)
    analyzer = TransactionAnalyzer(steps, quiet_mode=True)
    analyzer.load_bytecodes({CONTRACT_A: CALLER, CONTRACT_B: CALLEE})
    analyzer.analyze()
    return analyzer


def test_fill_color_priority():
    assert fill_color(True, True) == "#f7768e"
    assert fill_color(False, True) == "#ff9e64"
    assert fill_color(False, False) == "#9ece6a"


def test_edge_styles():
    assert edge_style(EdgeKind.JUMP, 3) == 'color="#414868", label=<#<font color="white">3</font>>'
    assert edge_style(EdgeKind.CONDITION_TRUE, 0) == 'color="#9ece6a", label=<True - <font color="white">#0</font>>'
    assert edge_style(EdgeKind.CONDITION_FALSE, None) == 'color="#f7768e", label=<False>'
    assert 'style="dotted"' in edge_style(EdgeKind.SYMBOLIC_JUMP, 1)


def test_escape_label():
    assert escape_label('0000: PUSH1 0x4\n0002: JUMP') == '0000: PUSH1 0x4\\l0002: JUMP\\l'
    assert escape_label('a"b') == 'a\\"b\\l'


def test_global_graph_dot(two_contract_analyzer):
    dot = GraphRenderer(two_contract_analyzer).export_global_graph_dot()
    assert dot.startswith("digraph G {\n    rankdir=TB;")
    assert dot.rstrip().endswith("}")
    assert f"{CONTRACT_A}\\nPC: 0\\n" in dot
    assert f"{CONTRACT_B}\\nPC: 0\\n0000: STOP\\l" in dot
    assert 'penwidth=2, label=<<font color="#0000ff">CALL</font>>' in dot
    assert dot.count(" -> ") == 1


def test_highlighted_cfg_only_shows_executed_blocks():
    steps = parse_struct_logs(simple_jump_logs()[:2], CONTRACT_A)
    analyzer = TransactionAnalyzer(steps, quiet_mode=True)
    analyzer.load_bytecodes({CONTRACT_A: SIMPLE_JUMP})
    analyzer.analyze()

    dot = GraphRenderer(analyzer).export_contract_highlighted_cfgs()[CONTRACT_A]
    assert '"n0" [label="PC: 0' in dot
    assert '"n3"' not in dot


def test_highlighted_cfg_numbers_edges():
    steps = parse_struct_logs(simple_jump_logs(), CONTRACT_A)
    analyzer = TransactionAnalyzer(steps, quiet_mode=True)
    analyzer.load_bytecodes({CONTRACT_A: SIMPLE_JUMP})
    analyzer.analyze()

    dot = GraphRenderer(analyzer).export_contract_highlighted_cfgs()[CONTRACT_A]
    assert '"n0" -> "n3" [color="#414868", label=<#<font color="white">0</font>>];' in dot


def test_static_cfg_dot():
    dot = cfg_dot_str(build_static_cfg(DATA_DEPENDENT_JUMP, link_unresolved=True), name="sample")
    assert dot.startswith('digraph "sample" {')
    assert '"n0" -> "n4" [color="#e0af68", style="dotted", label=<Symbolic>];' in dot


def test_save_files(tmp_path, two_contract_analyzer):
    renderer = GraphRenderer(two_contract_analyzer)
    global_path = renderer.save_global_graph_dot(str(tmp_path / "out" / "global.dot"))
    saved = renderer.save_contract_highlighted_cfgs(str(tmp_path / "out" / "contracts"))

    assert (tmp_path / "out" / "global.dot").read_text() == renderer.export_global_graph_dot()
    assert global_path.endswith("global.dot")
    names = sorted(path.rsplit("/", 1)[-1] for path in saved)
    assert names == sorted(f"{addr.lower()[2:]}.dot" for addr in (CONTRACT_A, CONTRACT_B))


def test_convert_to_image_runs_dot(monkeypatch):
    calls = []

    def fake_run(cmd, capture_output, text):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(subprocess, "run", fake_run)
    convert_to_image("graph.dot", "graph.svg")
    assert calls == [["dot", "-Tsvg", "-o", "graph.svg", "graph.dot"]]


def test_convert_to_image_failure(monkeypatch):
    def fake_run(cmd, capture_output, text):
        return subprocess.CompletedProcess(cmd, 1, "", "syntax error in line 1")

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(RenderToolFailure) as excinfo:
        convert_to_image("graph.dot", "graph.png")
    assert excinfo.value.stderr == "syntax error in line 1"


def test_convert_to_image_missing_tool():
    with pytest.raises(RenderToolFailure):
        convert_to_image("graph.dot", "graph.png", dot_binary="/nonexistent/dot")
