from __future__ import annotations

import argparse
import json
import os
import runpy
import sys
from pathlib import Path

from .config import ProfilerConfig, load_config
from .context import codebase_for
from .engine import ProfilingEngine
from .policy import build_policy, read_rule_log


def _load_config(path: str | None) -> ProfilerConfig:
    return load_config(Path(path) if path else None)


def _launcher_origins() -> set[str]:
    """Code bases of the script that started this process (e.g. bin/capprofile)."""

    if not sys.argv or not sys.argv[0]:
        return set()
    launcher = codebase_for(os.path.abspath(sys.argv[0]), tuple(sys.path))
    return {launcher} if launcher else set()


def _run_target(target: str, target_args: list[str], *, as_module: bool) -> int:
    saved_argv = sys.argv[:]
    saved_path = sys.path[:]
    sys.argv = [target, *target_args]
    try:
        if as_module:
            runpy.run_module(target, run_name="__main__", alter_sys=True)
        else:
            script_dir = os.path.dirname(os.path.abspath(target))
            if script_dir not in sys.path:
                sys.path.insert(0, script_dir)
            runpy.run_path(target, run_name="__main__")
    except SystemExit as exc:
        if exc.code is None:
            return 0
        if isinstance(exc.code, int):
            return exc.code
        print(exc.code, file=sys.stderr)
        return 1
    finally:
        sys.argv = saved_argv
        sys.path[:] = saved_path
    return 0


def _write_json(path: Path, payload: dict) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    except OSError as exc:
        print(f"[capprofile] cannot write {path}: {exc}", file=sys.stderr)
        return False
    return True


def _consolidate(config: ProfilerConfig, rule_log: Path, out_path: Path) -> dict | None:
    lines = read_rule_log(rule_log)
    if lines is None:
        return None
    document = build_policy(lines, config.generalizer(), title=config.policy_title)
    if not document.write(out_path):
        return None
    return {
        "rule_log": str(rule_log),
        "policy": str(out_path),
        "codebases": len(document.grants),
        "clauses": document.clause_count,
        "skipped_lines": document.skipped_lines,
    }


def _cmd_run(args: argparse.Namespace, config: ProfilerConfig) -> int:
    rule_log = Path(args.rule_log) if args.rule_log else config.rule_log
    engine = ProfilingEngine(
        rule_log,
        trace=config.trace and not args.no_trace,
        append=config.append or args.append,
        excluded_events=config.excluded_events,
        boundary=(__name__, _run_target.__name__),
        excluded_origins=_launcher_origins(),
    )
    engine.start()
    try:
        exit_code = _run_target(args.target, args.target_args, as_module=args.module)
    finally:
        engine.close()

    if args.summary_out and not _write_json(Path(args.summary_out), engine.summary()):
        return exit_code or 1
    if args.policy_out and _consolidate(config, rule_log, Path(args.policy_out)) is None:
        return exit_code or 1
    return exit_code


def _cmd_generalize(args: argparse.Namespace, config: ProfilerConfig) -> int:
    rule_log = Path(args.rule_log) if args.rule_log else config.rule_log
    lines = read_rule_log(rule_log)
    if lines is None:
        return 1
    generalized = config.generalizer().generalize_lines(lines)
    if not args.out:
        for line in generalized:
            print(line)
        return 0
    out_path = Path(args.out)
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text("".join(f"{line}\n" for line in generalized), encoding="utf-8", newline="\n")
    except OSError as exc:
        print(f"[capprofile] cannot write {out_path}: {exc}", file=sys.stderr)
        return 1
    return 0


def _cmd_consolidate(args: argparse.Namespace, config: ProfilerConfig) -> int:
    rule_log = Path(args.rule_log) if args.rule_log else config.rule_log
    out_path = Path(args.out) if args.out else config.policy_file
    result = _consolidate(config, rule_log, out_path)
    if result is None:
        return 1
    print(json.dumps(result, indent=2))
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Profile the capabilities a Python program uses and derive a policy.")
    sub = parser.add_subparsers(dest="command", required=True)

    run_cmd = sub.add_parser("run", help="Run a script or module under the profiling engine")
    run_cmd.add_argument("--config", default=None, help="Path to capprofile.yaml")
    run_cmd.add_argument("--rule-log", default=None, help="Rule log path (overrides config)")
    run_cmd.add_argument("--append", action="store_true", help="Append to an existing rule log")
    run_cmd.add_argument("--no-trace", action="store_true", help="Do not echo new rules to stderr")
    run_cmd.add_argument("--summary-out", default=None, help="Optional JSON run summary path")
    run_cmd.add_argument("--policy-out", default=None, help="Consolidate the rule log into this policy file after the run")
    run_cmd.add_argument("-m", "--module", action="store_true", help="Treat target as a module name")
    run_cmd.add_argument("target", help="Script path, or module name with -m")
    run_cmd.add_argument("target_args", nargs=argparse.REMAINDER, help="Arguments passed to the target")

    generalize_cmd = sub.add_parser("generalize", help="Print rule log lines with volatile paths generalized")
    generalize_cmd.add_argument("--config", default=None, help="Path to capprofile.yaml")
    generalize_cmd.add_argument("--out", default=None, help="Optional output path")
    generalize_cmd.add_argument("rule_log", nargs="?", default=None, help="Rule log path (overrides config)")

    consolidate_cmd = sub.add_parser("consolidate", help="Generalize and consolidate a rule log into a policy file")
    consolidate_cmd.add_argument("--config", default=None, help="Path to capprofile.yaml")
    consolidate_cmd.add_argument("--rule-log", default=None, help="Rule log path (overrides config)")
    consolidate_cmd.add_argument("--out", default=None, help="Policy output path (overrides config)")

    args = parser.parse_args()
    try:
        config = _load_config(args.config)
    except ValueError as exc:
        print(f"[capprofile] {exc}", file=sys.stderr)
        return 2

    if args.command == "run":
        return _cmd_run(args, config)
    if args.command == "generalize":
        return _cmd_generalize(args, config)
    if args.command == "consolidate":
        return _cmd_consolidate(args, config)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
