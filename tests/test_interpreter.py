import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import barracuda
from barracuda import CompiledProgram, ExternBinding, Instr, Op


def execute(code, memory=None, functions=None, **kwargs):
    program = CompiledProgram(code, functions or {})
    return barracuda.Interpreter(program, memory or {}, **kwargs).run()


# ---------- Straight-line code ----------

def test_halt_only():
    assert execute([Instr(Op.HALT)]) == []


def test_push_print():
    assert execute([Instr(Op.PUSH, 2.5), Instr(Op.PRINT), Instr(Op.HALT)]) == [2.5]


def test_arithmetic_ops():
    cases = [
        (Op.ADD, 7.0, 2.0, 9.0),
        (Op.SUB, 7.0, 2.0, 5.0),
        (Op.MUL, 7.0, 2.0, 14.0),
        (Op.DIV, 7.0, 2.0, 3.5),
        (Op.MOD, 7.0, 2.0, 1.0),
        (Op.MOD, -7.0, 2.0, -1.0),
        (Op.POW, 2.0, 10.0, 1024.0),
    ]
    for op, a, b, want in cases:
        got = execute([Instr(Op.PUSH, a), Instr(Op.PUSH, b), Instr(op), Instr(Op.PRINT), Instr(Op.HALT)])
        assert got == [want], op


def test_comparisons_produce_one_or_zero():
    for op, want in ((Op.LT, 1.0), (Op.LE, 1.0), (Op.GT, 0.0), (Op.GE, 0.0), (Op.EQ, 0.0), (Op.NE, 1.0)):
        got = execute([Instr(Op.PUSH, 1.0), Instr(Op.PUSH, 2.0), Instr(op), Instr(Op.PRINT), Instr(Op.HALT)])
        assert got == [want], op


def test_unary_ops():
    code = [
        Instr(Op.PUSH, 3.0), Instr(Op.NEG), Instr(Op.PRINT),
        Instr(Op.PUSH, 0.0), Instr(Op.NOT), Instr(Op.PRINT),
        Instr(Op.PUSH, 5.0), Instr(Op.NOT), Instr(Op.PRINT),
        Instr(Op.HALT),
    ]
    assert execute(code) == [-3.0, 1.0, 0.0]


def test_locals():
    code = [
        Instr(Op.PUSH, 4.0), Instr(Op.STORE, 1),
        Instr(Op.LOAD, 1), Instr(Op.LOAD, 1), Instr(Op.MUL), Instr(Op.PRINT),
        Instr(Op.HALT),
    ]
    assert execute(code) == [16.0]


def test_extern_memory_read():
    code = [Instr(Op.LOADX, 8), Instr(Op.PRINT), Instr(Op.HALT)]
    assert execute(code, memory={8: 42.0}) == [42.0]


def test_missing_extern_memory_is_internal_error():
    with pytest.raises(barracuda.InternalError):
        execute([Instr(Op.LOADX, 8), Instr(Op.HALT)])


# ---------- Control flow ----------

def test_jz_taken_on_zero():
    code = [
        Instr(Op.PUSH, 0.0), Instr(Op.JZ, 4),
        Instr(Op.PUSH, 1.0), Instr(Op.PRINT),
        Instr(Op.PUSH, 2.0), Instr(Op.PRINT),
        Instr(Op.HALT),
    ]
    assert execute(code) == [2.0]


def test_call_and_return():
    code = [
        Instr(Op.PUSH, 3.0), Instr(Op.CALL, 4), Instr(Op.PRINT), Instr(Op.HALT),
        # f(x) = x + 1
        Instr(Op.STORE, 0), Instr(Op.LOAD, 0), Instr(Op.PUSH, 1.0), Instr(Op.ADD), Instr(Op.RET),
    ]
    assert execute(code, functions={"f": barracuda.FunctionInfo("f", 4, 1)}) == [4.0]


def test_frames_are_private_per_call():
    code = [
        Instr(Op.PUSH, 10.0), Instr(Op.STORE, 0),
        Instr(Op.CALL, 7),
        Instr(Op.POP), Instr(Op.LOAD, 0), Instr(Op.PRINT),
        Instr(Op.HALT),
        # callee clobbers its own slot 0
        Instr(Op.PUSH, 99.0), Instr(Op.STORE, 0), Instr(Op.PUSH, 0.0), Instr(Op.RET),
    ]
    assert execute(code) == [10.0]


# ---------- Faults ----------

def test_step_limit():
    with pytest.raises(barracuda.ExecutionTimeout) as ei:
        execute([Instr(Op.JMP, 0), Instr(Op.HALT)], step_limit=50)
    assert ei.value.steps == 50
    assert ei.value.outputs == []


def test_timeout_keeps_partial_outputs():
    code = [Instr(Op.PUSH, 1.0), Instr(Op.PRINT), Instr(Op.JMP, 0), Instr(Op.HALT)]
    with pytest.raises(barracuda.ExecutionTimeout) as ei:
        execute(code, step_limit=9)
    assert ei.value.outputs == [1.0, 1.0, 1.0]


def test_exact_step_budget_is_enough():
    code = [Instr(Op.PUSH, 1.0), Instr(Op.PRINT), Instr(Op.HALT)]
    assert execute(code, step_limit=3) == [1.0]


def test_division_by_zero():
    code = [
        Instr(Op.PUSH, 5.0), Instr(Op.PRINT),
        Instr(Op.PUSH, 1.0), Instr(Op.PUSH, 0.0), Instr(Op.DIV),
        Instr(Op.HALT),
    ]
    with pytest.raises(barracuda.RuntimeFault) as ei:
        execute(code)
    assert ei.value.kind == "division-by-zero"
    assert ei.value.address == 4
    assert ei.value.outputs == [5.0]


def test_modulo_by_zero():
    code = [Instr(Op.PUSH, 1.0), Instr(Op.PUSH, 0.0), Instr(Op.MOD), Instr(Op.HALT)]
    with pytest.raises(barracuda.RuntimeFault) as ei:
        execute(code)
    assert ei.value.kind == "division-by-zero"


def test_pow_overflow():
    code = [Instr(Op.PUSH, 10.0), Instr(Op.PUSH, 1000.0), Instr(Op.POW), Instr(Op.HALT)]
    with pytest.raises(barracuda.RuntimeFault) as ei:
        execute(code)
    assert ei.value.kind == "overflow"


def test_pow_domain_error():
    code = [Instr(Op.PUSH, -8.0), Instr(Op.PUSH, 0.5), Instr(Op.POW), Instr(Op.HALT)]
    with pytest.raises(barracuda.RuntimeFault) as ei:
        execute(code)
    assert ei.value.kind == "domain-error"


def test_call_depth_limit():
    # f() { return f(); }
    code = [Instr(Op.CALL, 2), Instr(Op.HALT), Instr(Op.CALL, 2), Instr(Op.RET)]
    with pytest.raises(barracuda.RuntimeFault) as ei:
        execute(code, max_call_depth=20)
    assert ei.value.kind == "call-depth-exceeded"
    assert ei.value.address == 2


# ---------- Determinism ----------

def test_same_input_same_output(compile_src):
    src = "extern x; for (let i = 0; i < x; i = i + 1) { print i * x; }"
    externs = [ExternBinding("x", 0, 4.0)]
    first = compile_src(src, externs)
    second = compile_src(src, externs)
    assert first.outputs == second.outputs == [0.0, 4.0, 8.0, 12.0]
