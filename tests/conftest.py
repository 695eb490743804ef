import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

import barracuda


@pytest.fixture
def compile_src():
    """Return a helper that compiles source text and returns the CompileResult."""

    def _compile(src: str, externs=(), **config):
        return barracuda.compile(src, externs, barracuda.CompilerConfig(**config))

    return _compile


@pytest.fixture
def run_src(compile_src):
    """Like compile_src but returns the printed values, failing on any execution fault."""

    def _run(src: str, externs=(), **config):
        result = compile_src(src, externs, **config)
        assert result.error is None, f"execution failed: {result.error}"
        return result.outputs

    return _run
