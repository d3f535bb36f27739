from __future__ import annotations

import pytest

from capprofile.context import (
    CallFrame,
    ExecutionContext,
    Provenance,
    ResolutionError,
    capture_stack,
    codebase_for,
    resolve_provenances,
)

STDLIB = "/usr/lib/python3.99"
SEARCH_PATH = ("/opt/app/src", STDLIB, f"{STDLIB}/lib-dynload", f"{STDLIB}/site-packages")


def _frame(filename: str, *, module: str = "app", function: str = "run", origin: str | None = None) -> CallFrame:
    return CallFrame(module=module, function=function, filename=filename, origin=origin)


def test_codebase_is_top_level_package_below_search_root() -> None:
    assert codebase_for("/opt/app/src/shop/orders/api.py", SEARCH_PATH, (STDLIB,)) == "file:/opt/app/src/shop/"
    assert codebase_for("/opt/app/src/tool.py", SEARCH_PATH, (STDLIB,)) == "file:/opt/app/src/tool.py"


def test_site_packages_inside_stdlib_tree_is_not_platform_code() -> None:
    filename = f"{STDLIB}/site-packages/requests/sessions.py"
    assert codebase_for(filename, SEARCH_PATH, (STDLIB,)) == f"file:{STDLIB}/site-packages/requests/"


def test_platform_and_synthetic_code_have_no_codebase() -> None:
    assert codebase_for(f"{STDLIB}/json/decoder.py", SEARCH_PATH, (STDLIB,)) is None
    assert codebase_for(f"{STDLIB}/lib-dynload/_ssl.so", SEARCH_PATH, (STDLIB,)) is None
    assert codebase_for("<frozen importlib._bootstrap>", SEARCH_PATH, (STDLIB,)) is None
    assert codebase_for("<string>", SEARCH_PATH, (STDLIB,)) is None
    assert codebase_for(f"{STDLIB}/encodings/utf_8.py", (), (STDLIB,)) is None


def test_file_outside_search_path_is_its_own_codebase() -> None:
    assert codebase_for("/home/dev/scratch/run.py", SEARCH_PATH, (STDLIB,)) == "file:/home/dev/scratch/run.py"


def test_resolve_deduplicates_in_chain_order() -> None:
    context = ExecutionContext(
        frames=(
            _frame("/opt/app/src/shop/db.py"),
            _frame("/opt/app/src/shop/api.py"),
            _frame("<frozen runpy>"),
            _frame("/opt/app/src/main.py"),
            _frame("/opt/app/src/shop/__init__.py"),
        )
    )
    resolved = resolve_provenances(context, search_path=["/opt/app/src"])
    assert resolved == [Provenance("file:/opt/app/src/shop/"), Provenance("file:/opt/app/src/main.py")]


def test_resolve_prefers_supplied_origin() -> None:
    context = ExecutionContext(frames=(_frame("/anywhere/x.py", origin="jar:plugin-1.2"),))
    assert resolve_provenances(context, search_path=[]) == [Provenance("jar:plugin-1.2")]


def test_resolve_rejects_contexts_without_frames() -> None:
    with pytest.raises(ResolutionError):
        resolve_provenances(object())
    with pytest.raises(ResolutionError):
        resolve_provenances(ExecutionContext(frames=("not-a-frame",)))  # type: ignore[arg-type]


def test_capture_stack_starts_at_caller() -> None:
    context = capture_stack()
    assert context.frames[0].function == "test_capture_stack_starts_at_caller"
    assert context.frames[0].module == __name__
    assert context.frames[0].filename == __file__
    assert len(context.frames) > 1


def test_until_drops_the_boundary_frame_and_its_callers() -> None:
    guest = _frame("/opt/app/src/main.py", module="__main__", function="<module>")
    runner = _frame("/usr/lib/python3.99/runpy.py", module="runpy", function="_run_code")
    host = _frame("/opt/tool/cli.py", module="tool.cli", function="_run_target")
    launcher = _frame("/opt/venv/bin/tool", module="__main__", function="<module>")
    context = ExecutionContext(frames=(guest, runner, host, launcher))
    assert context.until("tool.cli", "_run_target").frames == (guest, runner)
    assert context.until("tool.cli", "main") is context
    assert context.until("runpy", "<module>") is context
