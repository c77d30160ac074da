import textwrap
from pathlib import Path

import pytest

from interpreter import Interpreter
from parser import load_source


EXT_DIR = Path(__file__).resolve().parent.parent / "ext"


def run_source(source, **kwargs):
    """Load and run a script, returning (printed lines, interpreter)."""
    out = []
    pipeline = load_source(textwrap.dedent(source).strip("\n").splitlines())
    interpreter = Interpreter(pipeline, output_sink=out.append, **kwargs)
    interpreter.start()
    return out, interpreter


@pytest.fixture
def run():
    def _run(source, **kwargs):
        out, _ = run_source(source, **kwargs)
        return out
    return _run


@pytest.fixture
def ext_dir():
    return EXT_DIR
