#!/usr/bin/env python3
"""Incremental chunk execution engine for document builds.

This script runs the Python code chunks of a document, one section at a time,
against a *persistent* namespace and turns every chunk into an ordered list of
output records (echoed source, printed text, saved figures, errors) that a
document renderer can lay out. Variables defined by one chunk are visible to
every later chunk.

Typical flow:
  1) Run a single chunk (namespace kept in memory only):
       python knit_engine.py exec -c 'print(40 + 2)'
  2) Keep the namespace across invocations:
       python knit_engine.py --state .pyknit/state/session.pkl exec -c 'x = 21'
       python knit_engine.py --state .pyknit/state/session.pkl exec <<'PYCODE'
       y = x * 2
       print(y)
       PYCODE
  3) Build a whole document from a list of chunks:
       python knit_engine.py knit chunks.json --format markdown

Each chunk is split into its top-level statements with `ast` and the
statements run one after the other. Source is echoed up to the statement that
produced output, so code and results interleave the way they do in a live
console. A trailing `;` suppresses the display of an expression's value.

Chunk options (host names):
  - eval, echo, include, warning: booleans
  - results: 'hold' defers all output to the end of the chunk
  - error: true keeps going after a failure, false stops at the first one
  - fig.width, fig.height, dpi, dev, fig.path, label: figure output
  - engine.path: the Python the chunk asks for (warns when it differs)

Matplotlib figures are captured through `pyplot.show()`; a bare plotting
expression on the last line of a chunk is shown automatically.

Security note:
  This runs arbitrary Python via exec. Treat it like running code you wrote.
"""

from __future__ import annotations

import argparse
import ast
import builtins
import io
import json
import linecache
import os
import pickle
import re
import sys
import textwrap
import time
import warnings
from contextlib import ExitStack, contextmanager, redirect_stderr, redirect_stdout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union


DEFAULT_FIG_WIDTH = 7.0
DEFAULT_FIG_HEIGHT = 7.0
DEFAULT_DPI = 72
DEFAULT_DEV = "png"
DEFAULT_FIG_PATH = "figure/"
DEFAULT_LABEL = "unnamed-chunk"
DEFAULT_COMMENT = "##"
STATE_VERSION = 1
CHUNK_LOG_NAME = "chunks.jsonl"

ENV_IN_PROGRESS = "PYKNIT_IN_PROGRESS"
ENV_BASE_DIR = "PYKNIT_BASE_DIR"

# Options that only make sense as booleans
_NO_NUMERIC_OPTIONS = ("eval", "echo", "warning")

# Use trailing semicolon to suppress output of return value
_TRAILING_SEMICOLON = re.compile(r";\s*$")

# Names the session owns and never persists
_UNPERSISTED = frozenset({"__builtins__", "__name__"})


class KnitEngineError(RuntimeError):
    pass


class ChunkParseError(KnitEngineError):
    def __init__(self, message: str, lineno: Optional[int] = None) -> None:
        super().__init__(message)
        self.lineno = lineno


class ChunkExecutionError(KnitEngineError):
    """A statement raised and the chunk was not allowed to capture it.

    `outputs` holds whatever the chunk produced before the failing unit.
    """

    def __init__(self, message: str, unit: "SourceUnit", outputs: List["OutputItem"]) -> None:
        super().__init__(message)
        self.unit = unit
        self.outputs = outputs


class ChunkOptionWarning(UserWarning):
    pass


class InterpreterMismatchWarning(RuntimeWarning):
    pass


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _sanitize_label(label: str) -> str:
    """Convert a chunk label to something safe to use in a file name."""
    name = re.sub(r'[^a-zA-Z0-9_.-]+', '-', str(label))
    name = name.strip('-')
    return name or DEFAULT_LABEL


def _load_state(state_path: Path) -> Dict[str, Any]:
    if not state_path.exists():
        raise KnitEngineError(
            f"No state found at {state_path}. Run: python knit_engine.py --state {state_path} exec ..."
        )
    with state_path.open("rb") as f:
        state = pickle.load(f)
    if not isinstance(state, dict):
        raise KnitEngineError(f"Corrupt state file: {state_path}")
    return state


def _save_state(state: Dict[str, Any], state_path: Path) -> None:
    _ensure_parent_dir(state_path)
    tmp_path = state_path.with_suffix(state_path.suffix + ".tmp")
    with tmp_path.open("wb") as f:
        pickle.dump(state, f, protocol=pickle.HIGHEST_PROTOCOL)
    tmp_path.replace(state_path)


def _read_text_file(path: Path) -> str:
    if not path.exists():
        raise KnitEngineError(f"File does not exist: {path}")
    data = path.read_bytes()
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        # Fall back to a lossy decode that will not crash.
        return data.decode("utf-8", errors="replace")


def _is_pickleable(value: Any) -> bool:
    try:
        pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        return True
    except Exception:
        return False


def _filter_pickleable(d: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    kept: Dict[str, Any] = {}
    dropped: List[str] = []
    for k, v in d.items():
        if _is_pickleable(v):
            kept[k] = v
        else:
            dropped.append(k)
    return kept, dropped


def _format_exception(exc: BaseException) -> str:
    msg = str(exc)
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


def _log_chunk(log_path: Path, entry: Dict[str, Any]) -> None:
    """Append a chunk log entry to the JSONL chunk log.

    Adds timestamp if not present.
    """
    if "timestamp" not in entry:
        entry["timestamp"] = datetime.now(timezone.utc).isoformat()

    _ensure_parent_dir(log_path)
    with log_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(entry) + "\n")


# =============================================================================
# Output Records
# =============================================================================


@dataclass(frozen=True)
class SourceUnit:
    """A contiguous range of chunk lines holding one top-level statement group.

    Lines are 1-indexed and `end_line` is inclusive.
    """

    start_line: int
    end_line: int
    text: str


@dataclass
class ExecutionResult:
    text: str = ""
    value_changed: bool = False
    is_error: bool = False
    message: str = ""
    exception: Optional[BaseException] = None


@dataclass(frozen=True)
class SourceEcho:
    text: str
    kind = "source"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "text": self.text}


@dataclass(frozen=True)
class TextOutput:
    text: str
    kind = "text"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "text": self.text}


@dataclass(frozen=True)
class GraphicArtifact:
    path: str
    kind = "graphic"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "path": self.path}


@dataclass(frozen=True)
class ErrorOutput:
    message: str
    kind = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "message": self.message}


OutputItem = Union[SourceEcho, TextOutput, GraphicArtifact, ErrorOutput]


# =============================================================================
# Chunk Options (display policy)
# =============================================================================


@dataclass(frozen=True)
class ChunkOptions:
    """Validated options for one chunk.

    `error` is tri-state: True captures failures as output, False stops the
    chunk at the first failure, None leaves the decision to the host (capture
    when running interactively, raise during a document build).
    `results` only has special meaning for 'hold'; every other value emits
    output as it is produced.
    """

    eval: Any = True
    echo: Any = True
    include: Any = True
    results: str = "markup"
    error: Optional[bool] = None
    warning: Any = True
    fig_width: float = DEFAULT_FIG_WIDTH
    fig_height: float = DEFAULT_FIG_HEIGHT
    dpi: float = DEFAULT_DPI
    engine_path: Any = None
    dev: str = DEFAULT_DEV
    label: str = DEFAULT_LABEL
    fig_path: str = DEFAULT_FIG_PATH
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def hold(self) -> bool:
        return self.results == "hold"


# Host option names -> ChunkOptions fields
_OPTION_FIELDS = {
    "eval": "eval",
    "echo": "echo",
    "include": "include",
    "results": "results",
    "error": "error",
    "warning": "warning",
    "fig.width": "fig_width",
    "fig.height": "fig_height",
    "dpi": "dpi",
    "engine.path": "engine_path",
    "dev": "dev",
    "label": "label",
    "fig.path": "fig_path",
}
_OPTION_FIELDS.update({name: name for name in list(_OPTION_FIELDS.values())})


def validate_options(raw: Optional[Mapping[str, Any]] = None) -> Tuple[ChunkOptions, List[str]]:
    """Validate a raw chunk option mapping.

    Numeric values for boolean-only options are coerced to True with one
    ChunkOptionWarning each. Unknown options are kept in `extra`.

    Returns:
        Tuple of (options, diagnostics) where diagnostics lists the warning
        messages that were issued.
    """
    options = dict(raw or {})
    diagnostics: List[str] = []

    # warn about unsupported numeric options and convert to True
    for name in _NO_NUMERIC_OPTIONS:
        value = options.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            msg = f"numeric '{name}' chunk option not supported by the engine"
            warnings.warn(msg, ChunkOptionWarning, stacklevel=2)
            diagnostics.append(msg)
            options[name] = True

    fields: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for key, value in options.items():
        name = _OPTION_FIELDS.get(key)
        if name is None:
            extra[key] = value
        else:
            fields[name] = value

    return ChunkOptions(extra=extra, **fields), diagnostics


def check_interpreter(options: ChunkOptions) -> Optional[str]:
    """Warn when the chunk asks for a Python other than the running one.

    `engine.path` may be a path or a mapping with a 'python' entry. The chunk
    still runs in the current interpreter.
    """
    requested = options.engine_path
    if isinstance(requested, Mapping):
        requested = requested.get("python")
    if not isinstance(requested, str) or not requested:
        return None

    requested_python = os.path.realpath(os.path.expanduser(requested))
    actual_python = os.path.realpath(sys.executable)
    if requested_python == actual_python:
        return None

    msg = f"cannot honor request to use Python {requested_python} [{actual_python} already loaded]"
    warnings.warn(msg, InterpreterMismatchWarning, stacklevel=2)
    return msg


# =============================================================================
# Statement Splitting
# =============================================================================


def _as_lines(code: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(code, str):
        return code.split("\n") if code else []
    return list(code)


def _extract(lines: List[str], start: int, end: int) -> str:
    """Join 1-indexed lines [start, end] back into source text."""
    return "\n".join(lines[start - 1:end])


def split_statements(code: Union[str, Sequence[str]]) -> List[SourceUnit]:
    """Split chunk source into units, one per top-level statement line.

    A unit starts at the line of a statement (or of its first decorator) and
    runs until the line before the next one. Statements sharing a line with the
    previous statement stay in its unit, so `x = 1; y = 2` is a single unit.
    The first unit always starts at line 1 and the last one ends at the last
    line, so joining the unit texts with newlines gives back the source.

    Raises:
        ChunkParseError: if the source is not valid Python.
    """
    lines = _as_lines(code)
    if not lines:
        return []

    try:
        tree = ast.parse("\n".join(lines), "<chunk>")
    except SyntaxError as e:
        raise ChunkParseError(f"{e.msg} (line {e.lineno})", lineno=e.lineno) from e

    boundaries: List[int] = []
    last_end = 0
    for node in tree.body:
        decorators = getattr(node, "decorator_list", None)
        line = decorators[0].lineno if decorators else node.lineno
        if line > last_end:
            boundaries.append(line)
        last_end = max(last_end, node.end_lineno or line)

    # comments and blank lines before the first statement belong to it
    if boundaries:
        boundaries[0] = 1
    else:
        boundaries = [1]

    ends = [line - 1 for line in boundaries[1:]] + [len(lines)]
    return [
        SourceUnit(start, end, _extract(lines, start, end))
        for start, end in zip(boundaries, ends)
    ]


# =============================================================================
# Execution Session
# =============================================================================


class Session:
    """Persistent interpreter state shared by every chunk of a document build.

    The namespace behaves like `__main__` of an interactive console. Every
    expression value shown by the display hook advances `generation`, which is
    how the engine tells whether a statement produced a new value.
    """

    def __init__(self, namespace: Optional[Dict[str, Any]] = None) -> None:
        self.namespace: Dict[str, Any] = {"__name__": "__main__", "__builtins__": builtins}
        if namespace:
            self.namespace.update(namespace)
        self.host_bindings: Dict[str, Any] = {}
        self.last_value: Any = None
        self.generation = 0
        self._compiled = 0
        self._sources: List[str] = []

    def forget_sources(self) -> None:
        """Drop the linecache entries registered by earlier chunks."""
        for filename in self._sources:
            linecache.cache.pop(filename, None)
        self._sources = []

    def bind(self, name: str, value: Any) -> None:
        """Register a host value to push into the namespace before each chunk."""
        self.host_bindings[name] = value

    def synchronize_before(self) -> None:
        self.namespace.update(self.host_bindings)

    def synchronize_after(self) -> None:
        # values are not pulled back into the host
        pass

    def _displayhook(self, value: Any) -> None:
        if value is None:
            return
        self.last_value = value
        self.generation += 1
        self.namespace["_"] = value
        sys.stdout.write(repr(value) + "\n")

    def _compile(self, unit: SourceUnit, mode: str):
        self._compiled += 1
        filename = f"<chunk-{self._compiled}>"

        tree = ast.parse(unit.text, filename, mode="exec")
        ast.increment_lineno(tree, unit.start_line - 1)

        # register the source so tracebacks can show chunk lines
        source_lines = ["\n"] * (unit.start_line - 1) + (unit.text + "\n").splitlines(True)
        linecache.cache[filename] = (len(unit.text), None, source_lines, filename)
        self._sources.append(filename)

        # dont_inherit keeps this module's __future__ flags out of user code
        if mode == "single" and tree.body:
            return compile(ast.Interactive(body=tree.body), filename, "single", dont_inherit=True)
        return compile(tree, filename, "exec", dont_inherit=True)

    def execute(
        self,
        unit: SourceUnit,
        mode: str,
        capture_errors: bool = True,
        warning: bool = True,
    ) -> ExecutionResult:
        """Run one unit and capture everything it writes.

        Args:
            unit: The unit to run.
            mode: 'single' shows the value of bare expressions, 'exec' does not.
            capture_errors: If False, exceptions propagate to the caller.
            warning: If False, Python warnings raised by the unit are ignored.

        Returns:
            ExecutionResult with the interleaved stdout/stderr text.
        """
        generation = self.generation
        buf = io.StringIO()
        saved_hook = sys.displayhook
        sys.displayhook = self._displayhook
        try:
            with ExitStack() as stack:
                if not warning:
                    stack.enter_context(warnings.catch_warnings())
                    warnings.simplefilter("ignore")
                stack.enter_context(redirect_stdout(buf))
                stack.enter_context(redirect_stderr(buf))
                exec(self._compile(unit, mode), self.namespace)
        except (Exception, SystemExit) as e:
            if not capture_errors:
                raise
            return ExecutionResult(
                text=buf.getvalue(),
                value_changed=self.generation != generation,
                is_error=True,
                message=_format_exception(e),
                exception=e,
            )
        finally:
            sys.displayhook = saved_hook

        return ExecutionResult(
            text=buf.getvalue(),
            value_changed=self.generation != generation,
        )

    def to_state(self) -> Tuple[Dict[str, Any], List[str]]:
        """Snapshot the pickleable part of the namespace.

        Host bindings are left out; they are pushed again on the next chunk.

        Returns:
            Tuple of (state, dropped) where dropped lists unpickleable names.
        """
        to_persist = {
            k: v for k, v in self.namespace.items()
            if k not in _UNPERSISTED and k not in self.host_bindings
        }
        kept, dropped = _filter_pickleable(to_persist)
        return {"version": STATE_VERSION, "globals": kept}, dropped

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> "Session":
        persisted = state.get("globals", {})
        if not isinstance(persisted, dict):
            raise KnitEngineError("State is missing a valid 'globals' mapping")
        return cls(namespace=persisted)


# =============================================================================
# Graphics Capture
# =============================================================================


def figure_path(options: ChunkOptions, number: int) -> str:
    """Relative path of the `number`-th figure of a chunk."""
    return f"{options.fig_path}{_sanitize_label(options.label)}-{number}.{options.dev}"


def is_graphic_value(value: Any) -> bool:
    """Whether a displayed value is a matplotlib artist (possibly boxed in a list)."""
    artist = sys.modules.get("matplotlib.artist")
    if artist is None:
        return False

    # extract 'boxed' outputs such as the list returned by plt.plot()
    if isinstance(value, list) and len(value) == 1:
        value = value[0]

    return isinstance(value, artist.Artist)


class MatplotlibBackend:
    """Saves the current pyplot figure under `base_dir` and clears it."""

    def __init__(self, base_dir: Union[str, Path]) -> None:
        self.base_dir = Path(base_dir)

    def render(self, figure: Any, path: str, dpi: float) -> GraphicArtifact:
        target = self.base_dir / path
        _ensure_parent_dir(target)
        figure.savefig(target, dpi=dpi)
        return GraphicArtifact(path=path)

    def clear_surface(self) -> None:
        import matplotlib.pyplot as plt
        plt.clf()


def _initialize_matplotlib(options: ChunkOptions, force_agg: bool):
    try:
        import matplotlib
    except ImportError:
        return None

    # switching backends closes open figures
    if force_agg and matplotlib.get_backend().lower() != "agg":
        matplotlib.use("agg", force=True)

    # pyplot can fail to import if the backend is missing components
    try:
        import matplotlib.pyplot as plt
    except ImportError:
        return None

    plt.rc("figure", figsize=(options.fig_width, options.fig_height))
    return plt


class GraphicsCapture:
    """Routes `pyplot.show()` calls of one chunk to saved figure files.

    Figures are queued in `pending` until the multiplexer drains them.
    """

    def __init__(self, options: ChunkOptions, backend: Any) -> None:
        self.options = options
        self.backend = backend
        self.pending: List[GraphicArtifact] = []
        self.plot_counter = 0
        self.enabled = False
        self._pyplot: Any = None

    @contextmanager
    def attached(self, force_agg: bool = True) -> Iterator["GraphicsCapture"]:
        """Install the show hook for the duration of a chunk."""
        plt = _initialize_matplotlib(self.options, force_agg)
        if plt is None:
            yield self
            return

        self._pyplot = plt
        saved_show = plt.show
        plt.show = self.show
        self.enabled = True
        try:
            yield self
        finally:
            plt.show = saved_show
            self.enabled = False
            self.plot_counter = 0

    def show(self, *args: Any, **kwargs: Any) -> None:
        self.plot_counter += 1
        path = figure_path(self.options, self.plot_counter)
        artifact = self.backend.render(self._pyplot.gcf(), path, self.options.dpi)
        self.backend.clear_surface()
        self.pending.append(artifact)
        # None so that nothing is printed for the call itself
        return None

    def drain(self) -> List[GraphicArtifact]:
        pending, self.pending = self.pending, []
        return pending

    def handle_output(self, result: ExecutionResult, session: Session, final: bool) -> ExecutionResult:
        """Capture a bare plotting expression and drop its textual repr.

        Only the last unit of a chunk shows such a value; on earlier units the
        figure stays on the surface, as it would in a console.
        """
        if not self.enabled or not result.value_changed:
            return result
        if not is_graphic_value(session.last_value):
            return result

        if final:
            self.show()

        result.text = ""
        return result


# =============================================================================
# Output Multiplexing
# =============================================================================


def _merge_held(held: List[OutputItem]) -> List[OutputItem]:
    """Merge runs of consecutive text outputs, keeping everything else in place."""
    merged: List[OutputItem] = []
    text_run: List[str] = []
    for item in held:
        if isinstance(item, TextOutput):
            text_run.append(item.text)
            continue
        if text_run:
            merged.append(TextOutput("".join(text_run)))
            text_run = []
        merged.append(item)
    if text_run:
        merged.append(TextOutput("".join(text_run)))
    return merged


class OutputMultiplexer:
    """Interleaves echoed source with the output of each unit."""

    def __init__(self, lines: List[str], options: ChunkOptions) -> None:
        self.lines = lines
        self.options = options
        self.pending_source_index = 1
        self.outputs: List[OutputItem] = []
        self.held_outputs: List[OutputItem] = []
        self.had_error = False

    def add(self, unit: SourceUnit, result: ExecutionResult, graphics: List[GraphicArtifact]) -> bool:
        """Fold one unit into the output.

        Returns:
            False when the chunk must stop (failure with error=False).
        """
        if not result.text and not graphics and not result.is_error:
            return True

        if self.options.echo is not False and not self.options.hold:
            source = _extract(self.lines, self.pending_source_index, unit.end_line)
            self.outputs.append(SourceEcho(source))

        if self.options.include is True:
            target = self.held_outputs if self.options.hold else self.outputs
            if result.text:
                target.append(TextOutput(result.text))
            target.extend(graphics)
            if result.is_error:
                target.append(ErrorOutput(result.message))

        self.pending_source_index = unit.end_line + 1

        if self.options.error is False and result.is_error:
            self.had_error = True
            return False
        return True

    def finalize(self) -> List[OutputItem]:
        n = len(self.lines)

        has_leftovers = (
            not self.had_error
            and self.options.echo is not False
            and not self.options.hold
            and self.pending_source_index <= n
        )
        if has_leftovers:
            self.outputs.append(SourceEcho(_extract(self.lines, self.pending_source_index, n)))

        if self.options.hold:
            # one echo for the whole chunk, then the merged held output
            self.outputs.append(SourceEcho("\n".join(self.lines)))
            self.outputs.extend(_merge_held(self.held_outputs))
            self.held_outputs = []

        return self.outputs


# =============================================================================
# Chunk Driver
# =============================================================================


@dataclass
class EngineConfig:
    """Host-side settings that stay fixed for a whole document build.

    in_progress: a document build is running; uncaptured failures then raise
        instead of becoming output (unless the chunk sets error=True).
    base_dir: directory figure paths are relative to.
    graphics_backend: object with render()/clear_surface(); defaults to
        MatplotlibBackend(base_dir).
    log_path: JSONL file receiving one entry per chunk, if set.
    """

    in_progress: bool = False
    base_dir: Path = field(default_factory=Path.cwd)
    graphics_backend: Any = None
    force_agg: bool = True
    log_path: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        base_dir = os.environ.get(ENV_BASE_DIR, "").strip()
        return cls(
            in_progress=_env_flag(ENV_IN_PROGRESS),
            base_dir=Path(base_dir) if base_dir else Path.cwd(),
        )

    def backend(self) -> Any:
        if self.graphics_backend is not None:
            return self.graphics_backend
        return MatplotlibBackend(self.base_dir)


@dataclass
class ChunkResult:
    outputs: List[OutputItem]
    warnings: List[str]
    options: ChunkOptions

    @property
    def label(self) -> str:
        return self.options.label


def _write_chunk_log(
    config: EngineConfig,
    result: Optional[ChunkResult],
    options: ChunkOptions,
    units: int,
    status: str,
    start_time: float,
) -> None:
    if config.log_path is None:
        return
    _log_chunk(Path(config.log_path), {
        "label": options.label,
        "units": units,
        "outputs": len(result.outputs) if result else 0,
        "warnings": list(result.warnings) if result else [],
        "status": status,
        "duration_ms": int((time.time() - start_time) * 1000),
    })


def execute_chunk(
    session: Session,
    code: Union[str, Sequence[str]],
    options: Optional[Mapping[str, Any]] = None,
    config: Optional[EngineConfig] = None,
) -> ChunkResult:
    """Run one chunk against `session` and collect its output records.

    Args:
        session: Persistent session shared by all chunks of the document.
        code: Chunk source, as a string or a list of lines.
        options: Raw chunk options using host names ('fig.width', ...).
        config: Host settings; read from the environment if omitted.

    Returns:
        ChunkResult with the ordered output records and any diagnostics.

    Raises:
        ChunkParseError: if the chunk is not valid Python.
        ChunkExecutionError: if a statement fails and errors are not captured.
    """
    config = config or EngineConfig.from_env()
    start_time = time.time()
    opts, diagnostics = validate_options(options)
    lines = _as_lines(code)

    # when 'eval = False', return the source code verbatim
    if opts.eval is False:
        outputs: List[OutputItem] = []
        if opts.echo is not False:
            outputs.append(SourceEcho("\n".join(lines)))
        result = ChunkResult(outputs, diagnostics, opts)
        _write_chunk_log(config, result, opts, 0, "skipped", start_time)
        return result

    mismatch = check_interpreter(opts)
    if mismatch:
        diagnostics.append(mismatch)

    if not lines:
        result = ChunkResult([], diagnostics, opts)
        _write_chunk_log(config, result, opts, 0, "ok", start_time)
        return result

    try:
        units = split_statements(lines)
    except ChunkParseError:
        _write_chunk_log(config, None, opts, 0, "failed", start_time)
        raise

    # don't capture errors during a document build unless asked to
    capture_errors = opts.error is True or not config.in_progress

    mux = OutputMultiplexer(lines, opts)
    capture = GraphicsCapture(opts, config.backend())
    had_failure = False

    # tracebacks only ever point into the chunk being run
    session.forget_sources()
    session.synchronize_before()
    with capture.attached(config.force_agg):
        for i, unit in enumerate(units):
            mode = "exec" if _TRAILING_SEMICOLON.search(unit.text) else "single"
            try:
                outcome = session.execute(
                    unit,
                    mode,
                    capture_errors=capture_errors,
                    warning=opts.warning is not False,
                )
            except (Exception, SystemExit) as e:
                _write_chunk_log(config, None, opts, len(units), "failed", start_time)
                raise ChunkExecutionError(
                    f"Error in chunk '{opts.label}' (lines {unit.start_line}-{unit.end_line}): "
                    f"{_format_exception(e)}",
                    unit=unit,
                    outputs=list(mux.outputs),
                ) from e

            had_failure = had_failure or outcome.is_error
            outcome = capture.handle_output(outcome, session, final=i == len(units) - 1)
            if not mux.add(unit, outcome, capture.drain()):
                break

    outputs = mux.finalize()
    session.synchronize_after()

    result = ChunkResult(outputs, diagnostics, opts)
    status = "aborted" if mux.had_error else ("error" if had_failure else "ok")
    _write_chunk_log(config, result, opts, len(units), status, start_time)
    return result


# =============================================================================
# Rendering
# =============================================================================


def result_to_json(result: ChunkResult) -> Dict[str, Any]:
    return {
        "label": result.label,
        "outputs": [item.to_dict() for item in result.outputs],
        "warnings": list(result.warnings),
    }


def _comment_block(text: str, comment: str) -> str:
    lines = text.rstrip("\n").split("\n")
    return "```\n" + "\n".join(f"{comment} {line}" for line in lines) + "\n```"


def render_markdown(result: ChunkResult, comment: str = DEFAULT_COMMENT) -> str:
    """Minimal Markdown rendering of a chunk's output records."""
    blocks: List[str] = []
    for item in result.outputs:
        if isinstance(item, SourceEcho):
            blocks.append(f"```python\n{item.text}\n```")
        elif isinstance(item, TextOutput):
            blocks.append(_comment_block(item.text, comment))
        elif isinstance(item, GraphicArtifact):
            blocks.append(f"![]({item.path})")
        elif isinstance(item, ErrorOutput):
            blocks.append(_comment_block(f"Error: {item.message}", comment))
    return "\n\n".join(blocks)


def _emit(results: List[ChunkResult], fmt: str, single: bool = False) -> str:
    if fmt == "json":
        payload: Any = [result_to_json(r) for r in results]
        if single:
            payload = payload[0]
        return json.dumps(payload, indent=2)
    return "\n\n".join(render_markdown(r) for r in results if r.outputs)


# =============================================================================
# Command Line
# =============================================================================


def _parse_option_pairs(pairs: Optional[List[str]]) -> Dict[str, Any]:
    """Parse KEY=VALUE pairs; values are JSON when they parse, strings otherwise."""
    options: Dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise KnitEngineError(f"Invalid chunk option '{pair}'. Expected KEY=VALUE")
        try:
            options[key] = json.loads(raw)
        except json.JSONDecodeError:
            options[key] = raw
    return options


def _read_chunks(path: Path) -> List[Dict[str, Any]]:
    try:
        chunks = json.loads(_read_text_file(path))
    except json.JSONDecodeError as e:
        raise KnitEngineError(f"Invalid chunk file {path}: {e}") from e

    if not isinstance(chunks, list):
        raise KnitEngineError(f"Chunk file must hold a JSON list: {path}")
    for i, chunk in enumerate(chunks):
        if not isinstance(chunk, dict) or not isinstance(chunk.get("code"), (str, list)):
            raise KnitEngineError(f"Chunk {i} in {path} needs a 'code' string or list of lines")
        if not isinstance(chunk.get("options", {}), dict):
            raise KnitEngineError(f"Chunk {i} in {path} has non-mapping 'options'")
    return chunks


def _open_session(state_path: Optional[Path]) -> Session:
    if state_path is not None and state_path.exists():
        return Session.from_state(_load_state(state_path))
    return Session()


def _persist_session(session: Session, state_path: Optional[Path], warn_unpickleable: bool) -> None:
    if state_path is None:
        return
    state, dropped = session.to_state()
    _save_state(state, state_path)
    if dropped and warn_unpickleable:
        sys.stderr.write("WARNING: Dropped unpickleable variables: " + ", ".join(dropped) + "\n")


def _run_chunks(
    session: Session,
    chunks: List[Dict[str, Any]],
    config: EngineConfig,
) -> List[ChunkResult]:
    results: List[ChunkResult] = []
    # diagnostics are reported once, on stderr, below
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ChunkOptionWarning)
        warnings.simplefilter("ignore", InterpreterMismatchWarning)
        for chunk in chunks:
            result = execute_chunk(session, chunk["code"], chunk.get("options"), config)
            for msg in result.warnings:
                sys.stderr.write(f"WARNING: [{result.label}] {msg}\n")
            results.append(result)
    return results


def _config_for(args: argparse.Namespace, state_path: Optional[Path], in_progress: bool) -> EngineConfig:
    config = EngineConfig.from_env()
    config.in_progress = config.in_progress or in_progress
    if getattr(args, "base_dir", None):
        config.base_dir = Path(args.base_dir)
    if state_path is not None:
        config.log_path = state_path.parent / CHUNK_LOG_NAME
    return config


def cmd_exec(args: argparse.Namespace) -> int:
    state_path = Path(args.state).resolve() if args.state else None
    session = _open_session(state_path)

    code = args.code
    if code is None:
        code = sys.stdin.read().rstrip("\n")

    chunk = {"code": code, "options": _parse_option_pairs(args.option)}
    config = _config_for(args, state_path, in_progress=args.knit)
    try:
        results = _run_chunks(session, [chunk], config)
    finally:
        _persist_session(session, state_path, args.warn_unpickleable)

    out = _emit(results, args.format, single=True)
    if out:
        print(out)
    return 0


def cmd_knit(args: argparse.Namespace) -> int:
    state_path = Path(args.state).resolve() if args.state else None
    chunks = _read_chunks(Path(args.chunks))
    session = _open_session(state_path)

    config = _config_for(args, state_path, in_progress=True)
    try:
        results = _run_chunks(session, chunks, config)
    finally:
        _persist_session(session, state_path, args.warn_unpickleable)

    out = _emit(results, args.format)
    if args.out:
        out_path = Path(args.out)
        _ensure_parent_dir(out_path)
        out_path.write_text(out + "\n", encoding="utf-8")
        print(f"Wrote {len(results)} chunks to: {out_path}")
    elif out:
        print(out)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    state_path = Path(args.state)
    state = _load_state(state_path)
    g = state.get("globals", {})

    log_path = state_path.parent / CHUNK_LOG_NAME
    chunks_run = 0
    if log_path.exists():
        with log_path.open("r", encoding="utf-8") as f:
            chunks_run = sum(1 for line in f if line.strip())

    print("pyknit session status")
    print(f"  State file: {args.state}")
    print(f"  State version: {state.get('version', STATE_VERSION)}")
    print(f"  Chunks run: {chunks_run}")
    print(f"  Persisted vars: {len(g)}")
    if args.show_vars and g:
        for k in sorted(g.keys()):
            print(f"    - {k}")
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    state_path = Path(args.state)
    if state_path.exists():
        state_path.unlink()
        print(f"Deleted state: {state_path}")
    else:
        print(f"No state to delete at: {state_path}")
    return 0


def _add_output_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--format",
        choices=("json", "markdown"),
        default="json",
        help="Output format for the chunk records (default: json)",
    )
    p.add_argument(
        "--base-dir",
        default=None,
        help=f"Directory figures are written under (default: ${ENV_BASE_DIR} or the current directory)",
    )
    p.add_argument(
        "--warn-unpickleable",
        action="store_true",
        help="Warn on stderr when variables could not be persisted",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="knit_engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """\
            Incremental chunk execution engine for document builds.

            Examples:
              # Run one chunk and print its output records
              python knit_engine.py exec -c "print(1 + 1)"

              # Keep variables between invocations
              python knit_engine.py --state .pyknit/state/doc.pkl exec -c "x = 1"
              python knit_engine.py --state .pyknit/state/doc.pkl exec -o results=hold <<'PY'
              print(x)
              print(x + 1)
              PY

              # Build a document from a JSON list of {"code", "options"} chunks
              python knit_engine.py knit chunks.json --format markdown --out doc.md
            """
        ),
    )
    p.add_argument(
        "--state",
        default=None,
        help="Path to state pickle. Optional for exec/knit, required for status/reset.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    p_exec = sub.add_parser("exec", help="Execute one chunk")
    p_exec.add_argument(
        "-c",
        "--code",
        default=None,
        help="Inline code string. If omitted, reads code from stdin.",
    )
    p_exec.add_argument(
        "-o",
        "--option",
        action="append",
        metavar="KEY=VALUE",
        help="Chunk option, e.g. -o echo=false -o results=hold (repeatable)",
    )
    p_exec.add_argument(
        "--knit",
        action="store_true",
        help="Behave as inside a document build (uncaptured errors abort)",
    )
    _add_output_args(p_exec)
    p_exec.set_defaults(func=cmd_exec)

    p_knit = sub.add_parser("knit", help="Execute a JSON list of chunks in one session")
    p_knit.add_argument("chunks", help="Path to a JSON file: [{\"code\": ..., \"options\": {...}}, ...]")
    p_knit.add_argument("--out", default=None, help="Write the rendered output here instead of stdout")
    _add_output_args(p_knit)
    p_knit.set_defaults(func=cmd_knit)

    p_status = sub.add_parser("status", help="Show current state summary")
    p_status.add_argument(
        "--show-vars", action="store_true", help="List persisted variable names"
    )
    p_status.set_defaults(func=cmd_status)

    p_reset = sub.add_parser("reset", help="Delete the current state file")
    p_reset.set_defaults(func=cmd_reset)

    return p


def main(argv: List[str]) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd in ("status", "reset") and not args.state:
        parser.error(f"--state is required for '{args.cmd}' command")

    try:
        return int(args.func(args))
    except KnitEngineError as e:
        sys.stderr.write(f"ERROR: {e}\n")
        return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
