"""Kubernetes label selectors.

Parses the string form accepted by the API server (``a=b,c!=d,e in (f,g),
!h``) and evaluates it against a label map. Used by the in-memory cluster to
serve ``list(label_selector=...)`` and by the importer to turn a
``matchLabels``/``matchExpressions`` mapping into a selector string.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

_SET_RE = re.compile(r"^\s*(?P<key>[^\s!=()]+)\s+(?P<op>in|notin)\s+\((?P<values>[^)]*)\)\s*$")
_EQ_RE = re.compile(r"^\s*(?P<key>[^\s!=()]+)\s*(?P<op>==|=|!=)\s*(?P<value>[^\s!=(),]*)\s*$")
_EXISTS_RE = re.compile(r"^\s*(?P<neg>!?)\s*(?P<key>[^\s!=(),]+)\s*$")


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: str  # "=", "!=", "in", "notin", "exists", "!"
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        present = self.key in labels
        value = labels.get(self.key)
        if self.operator == "=":
            return present and value == self.values[0]
        if self.operator == "!=":
            return not present or value != self.values[0]
        if self.operator == "in":
            return present and value in self.values
        if self.operator == "notin":
            return not present or value not in self.values
        if self.operator == "exists":
            return present
        return not present


def _split_terms(selector: str) -> list[str]:
    """Split on commas that are not inside a parenthesised value set."""
    terms: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in selector:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            terms.append("".join(current))
            current = []
            continue
        current.append(ch)
    terms.append("".join(current))
    return [t for t in terms if t.strip()]


def parse_selector(selector: str) -> list[Requirement]:
    """Parse *selector* into requirements. An empty selector matches everything."""
    requirements: list[Requirement] = []
    for term in _split_terms(selector or ""):
        if m := _SET_RE.match(term):
            values = tuple(v.strip() for v in m.group("values").split(",") if v.strip())
            requirements.append(Requirement(m.group("key"), m.group("op"), values))
        elif m := _EQ_RE.match(term):
            op = "!=" if m.group("op") == "!=" else "="
            requirements.append(Requirement(m.group("key"), op, (m.group("value"),)))
        elif m := _EXISTS_RE.match(term):
            op = "!" if m.group("neg") else "exists"
            requirements.append(Requirement(m.group("key"), op))
        else:
            raise ValueError(f"Invalid label selector term: {term!r}")
    return requirements


def matches(selector: str, labels: Mapping[str, str] | None) -> bool:
    labels = labels or {}
    return all(req.matches(labels) for req in parse_selector(selector))


_EXPRESSION_OPERATORS = {"In": "in", "NotIn": "notin", "Exists": "", "DoesNotExist": "!"}
_SELECTOR_FIELDS = frozenset({"matchLabels", "matchExpressions"})


def selector_from_label_selector(label_selector: Mapping[str, Any] | None) -> str:
    """Convert a ``{"matchLabels": ..., "matchExpressions": ...}`` mapping to a string.

    A flat ``{label: value}`` mapping is read as ``matchLabels``. Anything
    else that is not a LabelSelector field raises ``ValueError``.
    """
    if not label_selector:
        return ""
    unknown = set(label_selector) - _SELECTOR_FIELDS
    if unknown:
        if unknown != set(label_selector) or not all(isinstance(v, str) for v in label_selector.values()):
            raise ValueError(f"Unknown label selector fields: {sorted(unknown)}")
        label_selector = {"matchLabels": label_selector}
    terms = [f"{k}={v}" for k, v in sorted((label_selector.get("matchLabels") or {}).items())]
    for expr in label_selector.get("matchExpressions") or []:
        key = expr["key"]
        operator = expr["operator"]
        if operator not in _EXPRESSION_OPERATORS:
            raise ValueError(f"Unsupported label selector operator: {operator}")
        if operator == "Exists":
            terms.append(key)
        elif operator == "DoesNotExist":
            terms.append(f"!{key}")
        else:
            values = ",".join(sorted(expr.get("values") or []))
            terms.append(f"{key} {_EXPRESSION_OPERATORS[operator]} ({values})")
    return ",".join(terms)
