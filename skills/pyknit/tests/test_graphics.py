"""Graphics capture tests.

Tests for:
- explicit plt.show() calls routed to saved figures
- implicit capture of a bare plotting expression on the last unit only
- figure paths, dpi and size options
- restoring pyplot.show on every exit path
"""
from unittest.mock import patch

import matplotlib
matplotlib.use("agg")
import matplotlib.pyplot as plt
import pytest

import knit_engine
from knit_engine import (
    ChunkExecutionError,
    ChunkOptions,
    GraphicArtifact,
    MatplotlibBackend,
    SourceEcho,
    TextOutput,
    figure_path,
    is_graphic_value,
)


IMPORT = "import matplotlib.pyplot as plt"


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


class TestIsGraphicValue:
    """Unit tests for is_graphic_value()."""

    def test_line_list_from_plot(self):
        lines = plt.plot([1, 2, 3])
        assert is_graphic_value(lines)

    def test_single_artist(self):
        assert is_graphic_value(plt.figure())

    def test_multi_element_list_is_not_boxed(self):
        lines = plt.plot([1, 2], [3, 4], [5, 6], [7, 8])
        assert len(lines) == 2
        assert not is_graphic_value(lines)

    @pytest.mark.parametrize("value", [42, "text", [1], None, []])
    def test_plain_values(self, value):
        assert not is_graphic_value(value)


class TestFigurePath:
    """Unit tests for figure_path()."""

    def test_defaults(self):
        assert figure_path(ChunkOptions(), 1) == "figure/unnamed-chunk-1.png"

    def test_label_dev_and_prefix(self):
        options = ChunkOptions(label="scatter plot", dev="svg", fig_path="out/")
        assert figure_path(options, 3) == "out/scatter-plot-3.svg"


class TestImplicitCapture:
    """A bare graphic expression is shown only when it ends the chunk."""

    def test_final_unit_graphic_is_captured(self, run_chunk, fake_backend):
        code = f"{IMPORT}\nplt.plot([1, 2, 3])"
        result = run_chunk(code)
        assert result.outputs == [
            SourceEcho(code),
            GraphicArtifact("figure/unnamed-chunk-1.png"),
        ]
        assert len(fake_backend.rendered) == 1

    def test_non_final_unit_graphic_is_dropped(self, run_chunk, fake_backend):
        code = f"{IMPORT}\nplt.plot([1, 2, 3])\nx = 1"
        result = run_chunk(code)
        assert result.outputs == [SourceEcho(code)]
        assert fake_backend.rendered == []

    def test_figure_object_is_captured(self, run_chunk, fake_backend):
        code = f"{IMPORT}\nfig = plt.figure()\nfig"
        result = run_chunk(code)
        assert [o for o in result.outputs if isinstance(o, GraphicArtifact)] == [
            GraphicArtifact("figure/unnamed-chunk-1.png")
        ]

    def test_repr_of_graphic_is_not_printed(self, run_chunk):
        result = run_chunk(f"{IMPORT}\nplt.plot([1, 2])\nprint('ok')")
        texts = [o.text for o in result.outputs if isinstance(o, TextOutput)]
        assert texts == ["ok\n"]

    def test_semicolon_suppresses_capture(self, run_chunk, fake_backend):
        code = f"{IMPORT}\nplt.plot([1, 2, 3]);"
        result = run_chunk(code)
        assert result.outputs == [SourceEcho(code)]
        assert fake_backend.rendered == []


class TestExplicitShow:
    """plt.show() inside a chunk saves and clears the current figure."""

    def test_show_emits_artifact_in_place(self, run_chunk, fake_backend):
        code = f"{IMPORT}\nplt.plot([1, 2])\nplt.show()\nprint('done')"
        result = run_chunk(code)
        assert result.outputs == [
            SourceEcho(f"{IMPORT}\nplt.plot([1, 2])\nplt.show()"),
            GraphicArtifact("figure/unnamed-chunk-1.png"),
            SourceEcho("print('done')"),
            TextOutput("done\n"),
        ]
        assert len(fake_backend.rendered) == 1
        assert fake_backend.cleared == 1

    def test_counter_numbers_figures_per_chunk(self, run_chunk):
        code = f"{IMPORT}\nplt.plot([1])\nplt.show()\nplt.plot([2])\nplt.show()"
        first = run_chunk(code)
        paths = [o.path for o in first.outputs if isinstance(o, GraphicArtifact)]
        assert paths == ["figure/unnamed-chunk-1.png", "figure/unnamed-chunk-2.png"]

        second = run_chunk("plt.plot([3])\nplt.show()", {"label": "next"})
        paths = [o.path for o in second.outputs if isinstance(o, GraphicArtifact)]
        assert paths == ["figure/next-1.png"]

    def test_dpi_and_path_options_reach_backend(self, run_chunk, fake_backend):
        options = {"label": "scatter", "fig.path": "out/", "dev": "svg", "dpi": 150}
        run_chunk(f"{IMPORT}\nplt.plot([1])\nplt.show()", options)
        _, path, dpi = fake_backend.rendered[0]
        assert path == "out/scatter-1.svg"
        assert dpi == 150

    def test_figure_size_options(self, run_chunk):
        run_chunk("pass", {"fig.width": 4, "fig.height": 3})
        assert list(plt.rcParams["figure.figsize"]) == [4.0, 3.0]

    def test_hold_merges_text_around_figures(self, run_chunk):
        code = f"{IMPORT}\nprint('a')\nprint('b')\nplt.plot([1])\nplt.show()\nprint('c')"
        result = run_chunk(code, {"results": "hold"})
        assert result.outputs == [
            SourceEcho(code),
            TextOutput("a\nb\n"),
            GraphicArtifact("figure/unnamed-chunk-1.png"),
            TextOutput("c\n"),
        ]

    def test_include_false_drops_figures(self, run_chunk):
        code = f"{IMPORT}\nplt.plot([1])\nplt.show()\nprint('x')"
        result = run_chunk(code, {"include": False})
        assert not [o for o in result.outputs if isinstance(o, (GraphicArtifact, TextOutput))]


class TestShowHookScope:
    """pyplot.show is only replaced while a chunk runs."""

    def test_hook_installed_during_chunk(self, run_chunk):
        result = run_chunk(f"{IMPORT}\nprint(plt.show.__qualname__)")
        assert result.outputs[-1] == TextOutput("GraphicsCapture.show\n")

    def test_restored_after_chunk(self, run_chunk):
        original = plt.show
        run_chunk(f"{IMPORT}\nplt.plot([1])\nplt.show()")
        assert plt.show is original

    def test_restored_after_raised_failure(self, run_chunk):
        original = plt.show
        with pytest.raises(ChunkExecutionError):
            run_chunk("raise RuntimeError('fail')", in_progress=True)
        assert plt.show is original

    def test_restored_after_bailout(self, run_chunk):
        original = plt.show
        run_chunk("raise RuntimeError('fail')\nx = 1", {"error": False})
        assert plt.show is original

    def test_inert_without_matplotlib(self, run_chunk, fake_backend):
        original = plt.show
        with patch.object(knit_engine, "_initialize_matplotlib", return_value=None):
            result = run_chunk(f"{IMPORT}\nplt.plot([1])\nplt.show()\nprint('ok')")
        assert plt.show is original
        assert fake_backend.rendered == []
        assert result.outputs[-1] == TextOutput("ok\n")


class TestMatplotlibBackend:
    """The default backend writes real files under base_dir."""

    def test_writes_figure_file(self, run_chunk, tmp_path):
        backend = MatplotlibBackend(tmp_path)
        result = run_chunk(f"{IMPORT}\nplt.plot([1, 2, 3])", {"label": "real"}, backend=backend)
        assert result.outputs[-1] == GraphicArtifact("figure/real-1.png")
        target = tmp_path / "figure" / "real-1.png"
        assert target.exists()
        assert target.stat().st_size > 0

    def test_clear_surface_empties_figure(self):
        plt.plot([1, 2])
        assert plt.gcf().axes
        MatplotlibBackend(".").clear_surface()
        assert not plt.gcf().axes
