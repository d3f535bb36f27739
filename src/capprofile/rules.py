from __future__ import annotations

import re
from dataclasses import dataclass, replace

from .capabilities import CapabilityRequest
from .context import Provenance


_ESCAPES = {"\\": "\\\\", '"': '\\"', "\r": "\\r", "\n": "\\n"}
_UNESCAPES = {"r": "\r", "n": "\n"}
_ESCAPE_SEQUENCE = re.compile(r"\\(.)", re.DOTALL)

QUOTED = r'"(?:[^"\\]|\\.)*"'
RULE_PATTERN = re.compile(
    r"^grant\s+codeBase\s+(?P<codebase>" + QUOTED + r")\s*\{\s*(?P<clause>permission\b.*;)\s*\};\s*$"
)
CLAUSE_PATTERN = re.compile(
    r"^permission\s+(?P<kind>[^\s\"]+)\s+(?P<target>" + QUOTED + r")"
    r"(?:\s*,\s*(?P<actions>" + QUOTED + r"))?\s*;$"
)


def escape(value: str) -> str:
    """Escape a value so it stays one quoted token on a single line."""

    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def unescape(value: str) -> str:
    return _ESCAPE_SEQUENCE.sub(lambda match: _UNESCAPES.get(match.group(1), match.group(1)), value)


def _unquote(token: str | None) -> str:
    if not token:
        return ""
    return unescape(token[1:-1])


@dataclass(frozen=True)
class GrantRule:
    """Parsed form of a single-line grant rule."""

    codebase: str
    kind: str
    target: str
    actions: str = ""

    def clause(self) -> str:
        return f'permission {self.kind} "{escape(self.target)}", "{escape(self.actions)}";'

    def render(self) -> str:
        return f'grant codeBase "{escape(self.codebase)}" {{ {self.clause()} }};'

    def with_target(self, target: str) -> "GrantRule":
        return replace(self, target=target)


def parse_clause(codebase: str, clause: str) -> GrantRule | None:
    match = CLAUSE_PATTERN.match(clause.strip())
    if not match:
        return None
    return GrantRule(
        codebase=codebase,
        kind=match.group("kind"),
        target=_unquote(match.group("target")),
        actions=_unquote(match.group("actions")),
    )


def parse_rule(line: str) -> GrantRule | None:
    """Parse `grant codeBase "<origin>" { permission ...; };` or return None."""

    match = RULE_PATTERN.match(line.strip())
    if not match:
        return None
    return parse_clause(_unquote(match.group("codebase")), match.group("clause"))


def format_rule(
    request: CapabilityRequest,
    provenance: Provenance | None,
    *,
    self_origin: str | None = None,
) -> str | None:
    """Render the grant rule for one request and code origin.

    Returns None when the origin is unknown or is `self_origin`; such rules are
    never reported.
    """

    if provenance is None or not provenance.location:
        return None
    if self_origin is not None and provenance.location == self_origin:
        return None
    rule = GrantRule(
        codebase=provenance.location,
        kind=request.kind,
        target=request.target,
        actions=request.actions,
    )
    return rule.render()
