from txcfg.cfg_builder import build_static_cfg
from txcfg.cfg_graph import EdgeKind
from txcfg.trace_parser import TraceStep
from txcfg.trace_replayer import TraceReplayer, process_trace_and_number_edges

from conftest import CONDITIONAL, DATA_DEPENDENT_JUMP, FUNCTION_RETURN, LOOP, SIMPLE_JUMP


def steps_of(*entries):
    return [TraceStep(pc=pc, op=op, stack=list(stack)) for pc, op, stack in entries]


def test_single_jump_is_numbered_zero():
    graph = build_static_cfg(SIMPLE_JUMP)
    steps = steps_of((0, "PUSH1", []), (2, "JUMP", ["0x4"]), (3, "JUMPDEST", []), (4, "STOP", []))
    numbering = process_trace_and_number_edges(graph, steps)
    assert numbering == {((0, 3), (3, 5), EdgeKind.JUMP): 0}


def test_jumpi_with_zero_condition_takes_fallthrough():
    graph = build_static_cfg(CONDITIONAL)
    steps = steps_of(
        (0, "PUSH1", []),
        (2, "PUSH1", ["0x0"]),
        (4, "JUMPI", ["0x0", "0x8"]),
        (5, "PUSH1", []),
        (7, "STOP", ["0x1"]),
    )
    numbering = process_trace_and_number_edges(graph, steps)
    assert numbering == {((0, 5), (5, 8), EdgeKind.CONDITION_FALSE): 0}


def test_jumpi_at_end_of_trace_falls_through():
    # Nothing follows the JUMPI, so the false branch is the next pc
    graph = build_static_cfg(CONDITIONAL)
    steps = steps_of((0, "PUSH1", []), (2, "PUSH1", ["0x0"]), (4, "JUMPI", ["0x0", "0x8"]))
    numbering = process_trace_and_number_edges(graph, steps)
    assert numbering == {((0, 5), (5, 8), EdgeKind.CONDITION_FALSE): 0}


def test_jumpi_with_nonzero_condition_takes_target():
    graph = build_static_cfg(CONDITIONAL)
    steps = steps_of(
        (0, "PUSH1", []),
        (2, "PUSH1", ["0x1"]),
        (4, "JUMPI", ["0x1", "0x8"]),
        (8, "JUMPDEST", []),
        (9, "STOP", []),
    )
    numbering = process_trace_and_number_edges(graph, steps)
    assert numbering == {((0, 5), (8, 10), EdgeKind.CONDITION_TRUE): 0}


def test_large_condition_is_true():
    graph = build_static_cfg(CONDITIONAL)
    steps = steps_of((4, "JUMPI", ["0x" + "ff" * 32, "0x8"]), (8, "JUMPDEST", []))
    numbering = process_trace_and_number_edges(graph, steps)
    assert list(numbering) == [((0, 5), (8, 10), EdgeKind.CONDITION_TRUE)]


def test_loop_edge_numbered_once():
    graph = build_static_cfg(LOOP)
    steps = steps_of(*[(pc, op, stack) for _ in range(3)
                       for pc, op, stack in ((0, "JUMPDEST", []), (1, "PUSH1", []), (3, "JUMP", ["0x0"]))])
    numbering = process_trace_and_number_edges(graph, steps)
    assert numbering == {((0, 4), (0, 4), EdgeKind.JUMP): 0}


def test_numbers_follow_first_use():
    graph = build_static_cfg(FUNCTION_RETURN)
    steps = steps_of(
        (0, "PUSH1", []),
        (2, "PUSH1", ["0x8"]),
        (4, "JUMP", ["0x8", "0x6"]),
        (6, "JUMPDEST", ["0x8"]),
        (7, "JUMP", ["0x8"]),
        (8, "JUMPDEST", []),
        (9, "STOP", []),
    )
    numbering = process_trace_and_number_edges(graph, steps)
    assert numbering == {
        ((0, 5), (6, 8), EdgeKind.JUMP): 0,
        ((6, 8), (8, 10), EdgeKind.JUMP): 1,
    }
    assert sorted(numbering.values()) == list(range(len(numbering)))


def test_replay_adds_missing_edge():
    graph = build_static_cfg(DATA_DEPENDENT_JUMP)
    assert not graph.has_edge((0, 4), (4, 6), EdgeKind.JUMP)
    steps = steps_of(
        (0, "PUSH1", []),
        (2, "CALLDATALOAD", ["0x0"]),
        (3, "JUMP", ["0x4"]),
        (4, "JUMPDEST", []),
        (5, "STOP", []),
    )
    numbering = process_trace_and_number_edges(graph, steps)
    assert graph.has_edge((0, 4), (4, 6), EdgeKind.JUMP)
    assert numbering == {((0, 4), (4, 6), EdgeKind.JUMP): 0}


def test_destination_outside_code_is_skipped():
    graph = build_static_cfg(SIMPLE_JUMP)
    edges_before = set(graph.edges())
    steps = steps_of((2, "JUMP", ["0x40"]), (2, "JUMP", ["0x" + "ff" * 32]))
    numbering = TraceReplayer(quiet_mode=True).number_edges(graph, steps)
    assert numbering == {}
    assert set(graph.edges()) == edges_before


def test_jump_without_stack_is_skipped():
    graph = build_static_cfg(SIMPLE_JUMP)
    numbering = process_trace_and_number_edges(graph, steps_of((2, "JUMP", [])))
    assert numbering == {}


def test_empty_trace():
    graph = build_static_cfg(SIMPLE_JUMP)
    assert process_trace_and_number_edges(graph, []) == {}


def test_verbose_replay_logs_each_jump(capsys):
    graph = build_static_cfg(SIMPLE_JUMP)
    steps = steps_of((2, "JUMP", ["0x4"]), (4, "STOP", []))
    TraceReplayer(verbose=True).number_edges(graph, steps)
    err = capsys.readouterr().err
    assert "JUMP at pc 0x2 (step 0) -> pc 0x4" in err
    assert "Jump" in err
