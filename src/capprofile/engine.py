from __future__ import annotations

"""Profiling engine: observes capability checks and persists one grant rule per origin and request."""

import platform
import sys
import threading
from collections import Counter
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Sequence, TextIO

from .capabilities import CapabilityRequest, requests_from_audit
from .context import CallFrame, ExecutionContext, ResolutionError, capture_stack, codebase_for, resolve_provenances
from .rules import format_rule

if TYPE_CHECKING:
    from .config import ProfilerConfig


SCHEMA_VERSION = "0.1"
BUILD_RULES_OPERATION = "_build_rules"
STAT_KEYS = ("observed", "emitted", "duplicates", "self_induced", "unresolved", "write_errors")


def _report(message: str) -> None:
    print(f"[capprofile] {message}", file=sys.stderr)


def detect_version() -> str:
    """Resolve installed package version with local fallback."""

    try:
        return package_version("capprofile")
    except PackageNotFoundError:
        return "0.1.0"


@dataclass(frozen=True)
class BuildInfo:
    """Runtime metadata attached to run summaries."""

    capprofile_version: str
    python_version: str
    platform: str

    @classmethod
    def current(cls) -> "BuildInfo":
        return cls(
            capprofile_version=detect_version(),
            python_version=sys.version.split()[0],
            platform=platform.platform(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "capprofile_version": self.capprofile_version,
            "python_version": self.python_version,
            "platform": self.platform,
        }


def is_self_induced(
    chain: Sequence[CallFrame],
    *,
    module: str = __name__,
    operation: str = BUILD_RULES_OPERATION,
) -> bool:
    """Return True when the chain already passes through the engine's rule building.

    `chain` is innermost first; its first entry is the probe frame itself and is
    not considered. A frame must match both the engine module and the operation.
    """

    for frame in chain[1:]:
        if frame.module == module and frame.function == operation:
            return True
    return False


class DedupCache:
    """Append-only set of emitted rules with an atomic check-and-insert."""

    def __init__(self) -> None:
        self._rules: set[str] = set()
        self._lock = threading.Lock()

    def check_and_insert(self, rule: str) -> bool:
        with self._lock:
            if rule in self._rules:
                return False
            self._rules.add(rule)
            return True

    def __contains__(self, rule: object) -> bool:
        with self._lock:
            return rule in self._rules

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)


class RuleLog:
    """Line-oriented grant rule log with serialized appends.

    Any I/O failure switches the log into a degraded mode in which lines are
    dropped instead of persisted.
    """

    def __init__(self, path: Path, *, append: bool = False) -> None:
        self.path = path
        self.append_mode = append
        self.degraded = False
        self.lines_written = 0
        self._handle: TextIO | None = None
        self._lock = threading.Lock()

    def open(self) -> None:
        with self._lock:
            if self._handle is not None or self.degraded:
                return
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._handle = self.path.open("a" if self.append_mode else "w", encoding="utf-8", newline="\n")
            except OSError as exc:
                self._degrade(f"cannot open rule log {self.path}: {exc}")

    def _degrade(self, message: str) -> None:
        self.degraded = True
        _report(f"{message}; rules will no longer be persisted")
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.close()
        except OSError as exc:
            _report(f"cannot close rule log {self.path}: {exc}")

    def append(self, line: str) -> bool:
        with self._lock:
            if self._handle is None:
                return False
            try:
                self._handle.write(line)
                self._handle.write("\n")
                self._handle.flush()
            except OSError as exc:
                self._degrade(f"cannot write rule log {self.path}: {exc}")
                return False
            self.lines_written += 1
            return True

    def flush(self) -> None:
        with self._lock:
            if self._handle is None:
                return
            try:
                self._handle.flush()
            except OSError as exc:
                self._degrade(f"cannot flush rule log {self.path}: {exc}")

    def close(self) -> None:
        with self._lock:
            handle, self._handle = self._handle, None
            if handle is None:
                return
            try:
                handle.close()
            except OSError as exc:
                self.degraded = True
                _report(f"cannot close rule log {self.path}: {exc}")

    @property
    def is_open(self) -> bool:
        return self._handle is not None


class ProfilingEngine:
    """Profiles which capabilities a program exercises, without ever denying one.

    Checks arrive either from the interpreter's audit hook (`audit_hook`, ambient
    call chain) or from a runtime that supplies its own `ExecutionContext`
    (`observe`). Every code origin on the chain is granted the request; each
    resulting rule is written to the rule log and the trace stream once.
    """

    def __init__(
        self,
        rule_log: Path,
        *,
        trace: bool = True,
        trace_stream: TextIO | None = None,
        append: bool = False,
        excluded_events: Iterable[str] = (),
        boundary: tuple[str, str] | None = None,
        excluded_origins: Iterable[str] = (),
    ) -> None:
        self.rule_log = RuleLog(Path(rule_log), append=append)
        self.trace = trace
        self.trace_stream = trace_stream
        self.excluded_events = frozenset(excluded_events)
        # (module, function) of the host frame that runs the profiled code; it and
        # every frame outside it are dropped from ambient chains.
        self.boundary = boundary
        self.excluded_origins = frozenset(excluded_origins)
        self.origin = codebase_for(__file__, tuple(sys.path))
        self._cache = DedupCache()
        self._stats: Counter[str] = Counter({key: 0 for key in STAT_KEYS})
        self._stats_lock = threading.Lock()
        self._active = False
        self._hook_installed = False

    @classmethod
    def from_config(cls, config: "ProfilerConfig", **overrides: Any) -> "ProfilingEngine":
        options: dict[str, Any] = {
            "trace": config.trace,
            "append": config.append,
            "excluded_events": config.excluded_events,
        }
        options.update(overrides)
        return cls(config.rule_log, **options)

    @property
    def active(self) -> bool:
        return self._active

    def start(self, *, install_hook: bool = True) -> "ProfilingEngine":
        """Open the rule log and begin observing; optionally install the audit hook."""

        self.origin = codebase_for(__file__, tuple(sys.path))
        self.rule_log.open()
        self._active = True
        if install_hook and not self._hook_installed:
            # Audit hooks cannot be removed; close() makes this one inert.
            sys.addaudithook(self.audit_hook)
            self._hook_installed = True
        return self

    def flush(self) -> None:
        self.rule_log.flush()

    def close(self) -> None:
        self._active = False
        self.rule_log.close()

    def __enter__(self) -> "ProfilingEngine":
        if not self._active:
            self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def audit_hook(self, event: str, args: tuple[Any, ...]) -> None:
        if not self._active or event in self.excluded_events:
            return
        try:
            requests = requests_from_audit(event, args)
        except Exception as exc:  # noqa: BLE001
            _report(f"cannot translate audit event {event}: {exc}")
            return
        for request in requests:
            self.observe(request)

    def observe(self, request: CapabilityRequest, context: ExecutionContext | None = None) -> None:
        """Record grant rules for one capability check. Never raises."""

        if not self._active:
            return
        try:
            probe = capture_stack()
            if is_self_induced(probe.frames):
                self._count("self_induced")
                return
            self._count("observed")
            if context is None and self.boundary is not None:
                context = probe.until(*self.boundary)
            self._build_rules(request, probe if context is None else context)
        except Exception as exc:  # noqa: BLE001
            _report(f"observation of {request.kind} {request.target!r} failed: {exc}")

    check = observe

    def _build_rules(self, request: CapabilityRequest, context: Any) -> None:
        try:
            provenances = resolve_provenances(context)
        except ResolutionError as exc:
            self._count("unresolved")
            _report(f"skipping check of {request.kind} {request.target!r}: {exc}")
            return
        for provenance in provenances:
            if provenance.location in self.excluded_origins:
                continue
            rule = format_rule(request, provenance, self_origin=self.origin)
            if rule is None:
                continue
            if not self._cache.check_and_insert(rule):
                self._count("duplicates")
                continue
            self._emit(rule)

    def _emit(self, rule: str) -> None:
        self._count("emitted")
        if not self.rule_log.append(rule):
            self._count("write_errors")
        if self.trace:
            print(rule, file=self.trace_stream or sys.stderr, flush=True)

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def stats(self) -> dict[str, int]:
        with self._stats_lock:
            return {key: self._stats[key] for key in STAT_KEYS}

    def summary(self) -> dict[str, Any]:
        """Return run statistics and build metadata for the profiling run."""

        return {
            "schema_version": SCHEMA_VERSION,
            "rule_log": str(self.rule_log.path),
            "rules_persisted": self.rule_log.lines_written,
            "rule_log_degraded": self.rule_log.degraded,
            "stats": self.stats(),
            "build": BuildInfo.current().to_dict(),
        }
