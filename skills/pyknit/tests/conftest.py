"""Shared test fixtures for pyknit tests."""
import subprocess
import pytest
from pathlib import Path
import sys

# Add scripts dir to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

import knit_engine


class FakeBackend:
    """Graphics backend that records renders instead of writing files."""

    def __init__(self):
        self.rendered = []
        self.cleared = 0

    def render(self, figure, path, dpi):
        self.rendered.append((figure, path, dpi))
        return knit_engine.GraphicArtifact(path=path)

    def clear_surface(self):
        self.cleared += 1


@pytest.fixture
def knit_engine_path():
    """Path to the knit_engine.py script."""
    return SCRIPTS_DIR / "knit_engine.py"


@pytest.fixture
def session():
    return knit_engine.Session()


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def run_chunk(session, tmp_path, fake_backend):
    """Factory fixture to run chunks against one shared session.

    Takes code and an optional raw option dict (host names such as
    'fig.width'); `in_progress=True` behaves like a document build.
    Returns the ChunkResult.
    """
    def _run(code, options=None, in_progress=False, backend=None):
        config = knit_engine.EngineConfig(
            in_progress=in_progress,
            base_dir=tmp_path,
            graphics_backend=backend or fake_backend,
        )
        return knit_engine.execute_chunk(session, code, options, config)

    return _run


@pytest.fixture
def run_cli(knit_engine_path, tmp_path):
    """Factory fixture to run knit_engine.py commands.

    Returns a function that takes CLI args (and optional stdin) and returns
    (stdout, stderr, returncode). Runs with tmp_path as working directory.
    """
    def _cli(*args, stdin=None) -> tuple:
        cmd = [sys.executable, str(knit_engine_path), *[str(a) for a in args]]
        result = subprocess.run(cmd, capture_output=True, text=True, input=stdin, cwd=tmp_path)
        return result.stdout, result.stderr, result.returncode

    return _cli
