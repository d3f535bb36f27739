from __future__ import annotations

"""Wildcard generalization of volatile rule targets (temp files, caches, versioned paths)."""

import re
from dataclasses import dataclass
from typing import Iterable

from .rules import parse_rule


DEFAULT_WILDCARD = "-"

# Most specific first; the first anchor found in a target wins.
DEFAULT_PATTERN_TABLE: tuple[tuple[str, str], ...] = (
    ("temp-file", r"^/tmp/"),
    ("var-temp-file", r"^/var/tmp/"),
    ("bytecode-cache", r"/__pycache__/"),
    ("user-cache", r"/\.cache/[^/]+/"),
    ("system-cache", r"^/var/cache/[^/]+/"),
    ("dependency-repository", r"/(?:site|dist)-packages/"),
    ("journal", r"(?:^|/)journals/"),
    ("log", r"(?:^|/)logs/"),
    ("archived-repository", r"/archiveRepositories/"),
    ("repository", r"/repositories/"),
)


@dataclass(frozen=True)
class GeneralizePattern:
    """A volatile path shape: everything after the anchor match becomes a wildcard."""

    name: str
    anchor: re.Pattern[str]

    @classmethod
    def compile(cls, name: str, anchor: str) -> "GeneralizePattern":
        try:
            compiled = re.compile(anchor)
        except re.error as exc:
            raise ValueError(f"Invalid anchor for generalization pattern {name!r}: {exc}") from exc
        return cls(name=name, anchor=compiled)


DEFAULT_PATTERNS: tuple[GeneralizePattern, ...] = tuple(
    GeneralizePattern.compile(name, anchor) for name, anchor in DEFAULT_PATTERN_TABLE
)


class Generalizer:
    """Rewrites rule targets through an ordered, first-match-wins pattern table."""

    def __init__(
        self,
        patterns: Iterable[GeneralizePattern] = DEFAULT_PATTERNS,
        *,
        wildcard: str = DEFAULT_WILDCARD,
    ) -> None:
        self.patterns = tuple(patterns)
        self.wildcard = wildcard

    def generalize_target(self, target: str) -> str:
        for pattern in self.patterns:
            found = pattern.anchor.search(target)
            if found:
                return target[: found.end()] + self.wildcard
        return target

    def generalize(self, line: str) -> str:
        """Return the rule line with its target generalized; other lines pass through."""

        rule = parse_rule(line)
        if rule is None:
            return line
        target = self.generalize_target(rule.target)
        if target == rule.target:
            return line
        return rule.with_target(target).render()

    def generalize_lines(self, lines: Iterable[str]) -> list[str]:
        return [self.generalize(line.rstrip("\r\n")) for line in lines]
