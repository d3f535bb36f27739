from __future__ import annotations

"""Execution contexts, call frames, and code-origin resolution for capability checks."""

import os
import sys
import sysconfig
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Sequence


PACKAGE_DIR_NAMES = {"site-packages", "dist-packages"}


class ResolutionError(ValueError):
    """Raised when an execution context does not expose the expected call frames."""


@dataclass(frozen=True)
class Provenance:
    """Code origin held responsible for a capability request."""

    location: str


@dataclass(frozen=True)
class CallFrame:
    """One participant of a call chain.

    `origin` may be supplied by whoever builds the context when the code origin is
    already known; otherwise it is derived from `filename`.
    """

    module: str
    function: str
    filename: str
    origin: str | None = None


@dataclass(frozen=True)
class ExecutionContext:
    """Call chain snapshot, innermost frame first."""

    frames: tuple[CallFrame, ...] = ()

    def until(self, module: str, function: str) -> "ExecutionContext":
        """Drop the first `module.function` frame and everything outside it."""

        for index, frame in enumerate(self.frames):
            if frame.module == module and frame.function == function:
                return ExecutionContext(frames=self.frames[:index])
        return self


def _normalize(path: str) -> str:
    return os.path.normcase(os.path.abspath(path))


def _platform_roots() -> tuple[str, ...]:
    paths = sysconfig.get_paths()
    roots = {_normalize(paths[key]) for key in ("stdlib", "platstdlib") if paths.get(key)}
    return tuple(sorted(roots))


PLATFORM_ROOTS = _platform_roots()


def _is_within(path: str, root: str) -> bool:
    prefix = root.rstrip(os.sep) + os.sep
    return path == root or path.startswith(prefix)


def _is_platform_root(root: str, platform_roots: tuple[str, ...]) -> bool:
    if os.path.basename(root.rstrip(os.sep)) in PACKAGE_DIR_NAMES:
        return False
    return any(_is_within(root, platform_root) for platform_root in platform_roots)


def _file_url(path: str, *, directory: bool = False) -> str:
    url_path = path.replace(os.sep, "/")
    if not url_path.startswith("/"):
        url_path = "/" + url_path
    return f"file:{url_path}{'/' if directory else ''}"


@lru_cache(maxsize=4096)
def codebase_for(
    filename: str,
    search_path: tuple[str, ...],
    platform_roots: tuple[str, ...] = PLATFORM_ROOTS,
) -> str | None:
    """Map a source filename to the code base that owns it.

    The owner is the top-level package directory (or module file) below the most
    specific `search_path` entry containing the file. Synthetic code and the
    interpreter's own standard library have no code base.
    """

    if not filename or filename.startswith("<"):
        return None
    path = _normalize(filename)
    roots = sorted(
        {_normalize(entry or os.curdir) for entry in search_path if isinstance(entry, str)},
        key=len,
        reverse=True,
    )
    for root in roots:
        if path == root or not _is_within(path, root):
            continue
        if _is_platform_root(root, platform_roots):
            return None
        base = root.rstrip(os.sep)
        top, sep, _ = path[len(base) + 1 :].partition(os.sep)
        return _file_url(base + os.sep + top, directory=bool(sep))
    if any(_is_within(path, root) for root in platform_roots):
        return None
    return _file_url(path)


def capture_stack(skip: int = 0) -> ExecutionContext:
    """Snapshot the calling thread's stack, starting at the caller of this function."""

    frames: list[CallFrame] = []
    frame: Any = sys._getframe(skip + 1)
    while frame is not None:
        code = frame.f_code
        frames.append(
            CallFrame(
                module=str(frame.f_globals.get("__name__", "")),
                function=code.co_name,
                filename=code.co_filename,
            )
        )
        frame = frame.f_back
    return ExecutionContext(frames=tuple(frames))


def resolve_provenances(context: Any, *, search_path: Sequence[str] | None = None) -> list[Provenance]:
    """Return the distinct code origins of a context's call chain, in chain order."""

    frames = getattr(context, "frames", None)
    if not isinstance(frames, (tuple, list)):
        raise ResolutionError(f"execution context exposes no call frames: {type(context).__name__}")
    path_key = tuple(sys.path if search_path is None else search_path)
    seen: set[str] = set()
    resolved: list[Provenance] = []
    for frame in frames:
        if not isinstance(frame, CallFrame):
            raise ResolutionError(f"unexpected call frame record: {type(frame).__name__}")
        location = frame.origin or codebase_for(frame.filename, path_key)
        if not location or location in seen:
            continue
        seen.add(location)
        resolved.append(Provenance(location=location))
    return resolved
