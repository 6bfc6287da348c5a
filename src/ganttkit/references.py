"""Predecessor reference strings.

A reference names another task by hierarchy number, optionally followed by a
two-letter relation code and a signed lag in days, with no separators::

    4.21        finish-to-start, no lag
    4.21FS+2    finish-to-start, two days lag
    10SS-1      start-to-start, one day lead

Parsing never raises: malformed input produces a ``ReferenceParseFailure``
value so bulk callers can decide to skip or keep the raw string.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

TARGET_PATTERN = re.compile(r"^\d+(?:\.\d+)*$")
LAG_PATTERN = re.compile(r"^[+-]\d+d?$")
_TARGET_PREFIX = re.compile(r"^[0-9.]*")
_RELATION_PREFIX = re.compile(r"^[A-Za-z]+")


class Relation(Enum):
    FS = "FS"
    SS = "SS"
    FF = "FF"


class ReferenceErrorKind(Enum):
    EMPTY = "empty"
    MALFORMED_TARGET = "malformed_target"
    UNKNOWN_RELATION = "unknown_relation"
    MALFORMED_LAG = "malformed_lag"


@dataclass(frozen=True, slots=True)
class ParsedReference:
    target: str
    relation: Relation = Relation.FS
    lag_days: int = 0
    relation_explicit: bool = False
    lag_text: str = ""

    @classmethod
    def build(
        cls, target: str, relation: Relation | None = None, lag_days: int = 0
    ) -> ParsedReference:
        return cls(
            target=target,
            relation=relation or Relation.FS,
            lag_days=lag_days,
            relation_explicit=relation is not None,
            lag_text=f"{lag_days:+d}" if lag_days else "",
        )

    @property
    def suffix(self) -> str:
        relation = self.relation.value if self.relation_explicit else ""
        return f"{relation}{self.lag_text}"

    def with_target(self, target: str) -> ParsedReference:
        return replace(self, target=target)

    def serialize(self) -> str:
        return f"{self.target}{self.suffix}"

    def __str__(self) -> str:
        return self.serialize()


@dataclass(frozen=True, slots=True)
class ReferenceParseFailure:
    raw: str
    kind: ReferenceErrorKind
    reason: str


ParseResult = ParsedReference | ReferenceParseFailure


def parse_reference(raw: str) -> ParseResult:
    text = (raw or "").strip()
    if not text:
        return ReferenceParseFailure(raw, ReferenceErrorKind.EMPTY, "Reference is empty")

    target = _TARGET_PREFIX.match(text).group(0)
    if not TARGET_PATTERN.match(target):
        return ReferenceParseFailure(
            raw,
            ReferenceErrorKind.MALFORMED_TARGET,
            f"Target '{target}' is not a hierarchy number",
        )

    rest = text[len(target) :]
    relation = Relation.FS
    relation_explicit = False
    letters = _RELATION_PREFIX.match(rest)
    if letters:
        code = letters.group(0)
        try:
            relation = Relation(code)
        except ValueError:
            return ReferenceParseFailure(
                raw, ReferenceErrorKind.UNKNOWN_RELATION, f"Unknown relation code '{code}'"
            )
        relation_explicit = True
        rest = rest[len(code) :]

    lag_days = 0
    if rest:
        if not LAG_PATTERN.match(rest):
            return ReferenceParseFailure(
                raw, ReferenceErrorKind.MALFORMED_LAG, f"Lag '{rest}' is not a signed integer"
            )
        lag_days = int(rest.rstrip("d"))

    return ParsedReference(
        target=target,
        relation=relation,
        lag_days=lag_days,
        relation_explicit=relation_explicit,
        lag_text=rest,
    )


def serialize_reference(parsed: ParsedReference) -> str:
    return parsed.serialize()


def reference_target(raw: str) -> str | None:
    parsed = parse_reference(raw)
    if isinstance(parsed, ParsedReference):
        return parsed.target
    return None


def coerce_predecessors(value: Any) -> list[str]:
    """Normalize a stored predecessor value into a list of reference strings."""
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            return [text]
        if isinstance(decoded, list):
            return coerce_predecessors(decoded)
        return [text]
    return []
