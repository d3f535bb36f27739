from __future__ import annotations

import pytest

from capprofile.generalize import DEFAULT_PATTERNS, GeneralizePattern, Generalizer


def _rule(target: str, *, codebase: str = "X", kind: str = "P", actions: str = "read") -> str:
    return f'grant codeBase "{codebase}" {{ permission {kind} "{target}", "{actions}"; }};'


SAMPLE_LINES = [
    _rule("/tmp/abc123"),
    _rule("/tmp/x/site-packages/y"),
    _rule("/var/tmp/pip-build-k2j4/setup.py"),
    _rule("/srv/app/__pycache__/models.cpython-312.pyc"),
    _rule("/home/dev/.cache/pip/http-v2/a/b/c/0123abcd"),
    _rule("/var/cache/executor-snippets/3f9a1c/snippet.py"),
    _rule("/home/dev/.venv/lib/python3.12/site-packages/requests-2.31.0.dist-info/METADATA"),
    _rule("journals/Rules-2010-01-25T14_06_16.728-06_00.jrnl", actions="delete"),
    _rule("/srv/app/logs/app-2026-10-18.log", actions="write"),
    _rule("/home/dev/archiveRepositories/OpenCyc"),
    _rule("/home/dev/repositories/DialogWordStemUsage/txn-status"),
    _rule("/etc/hosts"),
    "not a rule at all",
]


def test_temp_paths_collapse_to_one_wildcard() -> None:
    generalizer = Generalizer()
    first = generalizer.generalize(_rule("/tmp/abc123"))
    second = generalizer.generalize(_rule("/tmp/def456"))
    assert first == second == 'grant codeBase "X" { permission P "/tmp/-", "read"; };'


@pytest.mark.parametrize(
    ("target", "expected"),
    [
        ("/tmp/x/site-packages/y", "/tmp/-"),
        ("/srv/app/__pycache__/models.cpython-312.pyc", "/srv/app/__pycache__/-"),
        ("/home/dev/.cache/pip/http-v2/a/b", "/home/dev/.cache/pip/-"),
        ("/var/cache/executor-snippets/3f9a1c/snippet.py", "/var/cache/executor-snippets/-"),
        ("/opt/venv/lib/python3.12/site-packages/requests/api.py", "/opt/venv/lib/python3.12/site-packages/-"),
        ("/usr/lib/python3/dist-packages/yaml/__init__.py", "/usr/lib/python3/dist-packages/-"),
        ("journals/Rules-2010-01-25T14_06_16.jrnl", "journals/-"),
        ("/home/dev/archiveRepositories/OpenCyc", "/home/dev/archiveRepositories/-"),
        ("/home/dev/repositories/Dialog/txn-status", "/home/dev/repositories/-"),
    ],
)
def test_first_matching_pattern_wins(target: str, expected: str) -> None:
    assert Generalizer().generalize_target(target) == expected


def test_unmatched_and_malformed_lines_pass_through() -> None:
    generalizer = Generalizer()
    line = _rule("/etc/hosts")
    assert generalizer.generalize(line) == line
    assert generalizer.generalize("garbage line") == "garbage line"


def test_only_the_target_is_generalized() -> None:
    line = _rule("/etc/hosts", codebase="file:/tmp/build/app.py")
    assert Generalizer().generalize(line) == line


def test_generalize_is_idempotent() -> None:
    generalizer = Generalizer()
    for line in SAMPLE_LINES:
        once = generalizer.generalize(line)
        assert generalizer.generalize(once) == once


def test_custom_patterns_and_wildcard() -> None:
    generalizer = Generalizer([GeneralizePattern.compile("build", r"/build/")], wildcard="*")
    assert generalizer.generalize_target("/srv/app/build/lib/x.o") == "/srv/app/build/*"
    assert generalizer.generalize_target("/tmp/abc") == "/tmp/abc"


def test_invalid_anchor_is_rejected() -> None:
    with pytest.raises(ValueError, match="broken"):
        GeneralizePattern.compile("broken", r"(unclosed")


def test_default_table_names_are_unique() -> None:
    names = [pattern.name for pattern in DEFAULT_PATTERNS]
    assert len(names) == len(set(names))
