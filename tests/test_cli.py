import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import barracuda


@pytest.fixture
def write_src(tmp_path):
    def _write(text, name="prog.bc"):
        path = tmp_path / name
        path.write_text(text)
        return str(path)

    return _write


def run_main(*args):
    return barracuda.main(["barracuda.py", *args])


def test_compile_and_run(write_src, capsys):
    rc = run_main(write_src("let a = 1; let b = 2; print a + b;"))
    out, err = capsys.readouterr()
    assert rc == 0
    assert out == "3.0\n"
    assert "stack size: 2" in err


def test_extern_arguments(write_src, capsys):
    rc = run_main("-x", "n=0:3", write_src("extern n; for (let i = 0; i < n; i = i + 1) { print i; }"))
    out, _ = capsys.readouterr()
    assert rc == 0
    assert out == "0.0\n1.0\n2.0\n"


def test_listing_to_stdout(write_src, capsys):
    rc = run_main("-n", "-o", "-", write_src(""))
    out, _ = capsys.readouterr()
    assert rc == 0
    assert out == "0000  HALT\n"


def test_listing_file_round_trip(write_src, tmp_path, capsys):
    listing = tmp_path / "prog.bct"
    src = write_src("extern n; fn sq(x) { return x * x; } print sq(n);")
    assert run_main("-x", "n=4:5", "-o", str(listing), src) == 0
    first, _ = capsys.readouterr()
    assert first == "25.0\n"

    assert run_main("-l", "-x", "n=4:6", str(listing)) == 0
    second, _ = capsys.readouterr()
    assert second == "36.0\n"


def test_compile_error_exit_code(write_src, capsys):
    rc = run_main(write_src("print y;"))
    _, err = capsys.readouterr()
    assert rc == 1
    assert "UndeclaredIdentifier" in err


def test_unbound_extern_exit_code(write_src, capsys):
    assert run_main(write_src("extern x; print x;")) == 1


def test_timeout_exit_code(write_src, capsys):
    rc = run_main("-s", "500", write_src("print 7; for (;;) {}"))
    out, err = capsys.readouterr()
    assert rc == 3
    assert out == "7.0\n"
    assert "ExecutionTimeout" in err


def test_runtime_fault_exit_code(write_src, capsys):
    rc = run_main(write_src("let z = 0; print 1 / z;"))
    _, err = capsys.readouterr()
    assert rc == 3
    assert "division-by-zero" in err


def test_missing_file(tmp_path, capsys):
    assert run_main(str(tmp_path / "missing.bc")) == 1


def test_bad_listing(write_src, capsys):
    assert run_main("-l", write_src("0000  FROB\n", "bad.bct")) == 1


@pytest.mark.parametrize("args", [
    [],
    ["-q", "x.bc"],
    ["-x", "nonsense", "x.bc"],
    ["-s", "zero", "x.bc"],
    ["a.bc", "b.bc"],
])
def test_usage_errors(args, capsys):
    assert run_main(*args) == 2


def test_parse_extern_arg():
    assert barracuda.parse_extern_arg("count=8:2.5") == barracuda.ExternBinding("count", 8, 2.5)
    assert barracuda.parse_extern_arg("count=8") == barracuda.ExternBinding("count", 8, 0.0)
    with pytest.raises(ValueError):
        barracuda.parse_extern_arg("8=count")


def test_source_not_utf8(tmp_path, capsys):
    path = tmp_path / "latin1.bc"
    path.write_bytes(b"print 1; // caf\xe9\n")
    rc = run_main(str(path))
    _, err = capsys.readouterr()
    assert rc == 1
    assert "UTF-8" in err
