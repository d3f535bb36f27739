from __future__ import annotations

"""Consolidation of grant rule logs into a sorted, deduplicated policy document."""

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .generalize import Generalizer
from .rules import escape, parse_rule


DEFAULT_POLICY_TITLE = "capprofile permissions"


@dataclass
class PolicyDocument:
    """Provenance to clause-set mapping rendered in a deterministic order."""

    title: str = DEFAULT_POLICY_TITLE
    grants: dict[str, set[str]] = field(default_factory=dict)
    skipped_lines: int = 0

    def add(self, codebase: str, clause: str) -> None:
        self.grants.setdefault(codebase, set()).add(clause)

    @property
    def clause_count(self) -> int:
        return sum(len(clauses) for clauses in self.grants.values())

    def render(self) -> str:
        # The header must stay a single comment line.
        title = " ".join(self.title.splitlines())
        lines = [f"// {title}"]
        for codebase in sorted(self.grants):
            if len(lines) > 1:
                lines.append("")
            lines.append(f'grant codeBase "{escape(codebase)}" {{')
            lines.extend(f"  {clause}" for clause in sorted(self.grants[codebase]))
            lines.append("};")
        return "\n".join(lines) + "\n"

    def write(self, path: Path) -> bool:
        """Write the rendered document; report and return False on I/O failure."""

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.render(), encoding="utf-8", newline="\n")
        except OSError as exc:
            print(f"[capprofile] cannot write policy {path}: {exc}", file=sys.stderr)
            return False
        return True


def consolidate(lines: Iterable[str], *, title: str = DEFAULT_POLICY_TITLE) -> PolicyDocument:
    """Group rule lines by code base; malformed lines are reported and skipped."""

    document = PolicyDocument(title=title)
    for number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("//"):
            continue
        rule = parse_rule(line)
        if rule is None:
            document.skipped_lines += 1
            print(f"[capprofile] skipping malformed rule at line {number}: {line[:120]}", file=sys.stderr)
            continue
        document.add(rule.codebase, rule.clause())
    return document


def build_policy(
    lines: Iterable[str],
    generalizer: Generalizer | None = None,
    *,
    title: str = DEFAULT_POLICY_TITLE,
) -> PolicyDocument:
    """Generalize raw rule lines, then consolidate them."""

    generalizer = generalizer or Generalizer()
    return consolidate(generalizer.generalize_lines(lines), title=title)


def read_rule_log(path: Path) -> list[str] | None:
    """Read a rule log; report and return None when it cannot be read."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            return [line.rstrip("\r\n") for line in handle]
    except (OSError, UnicodeDecodeError) as exc:
        print(f"[capprofile] cannot read rule log {path}: {exc}", file=sys.stderr)
        return None
