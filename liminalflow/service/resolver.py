"""``{{identifier}}`` template substitution.

Substitution is a single left-to-right pass: text inserted for one token is
never scanned again, so a variable whose value contains ``{{x}}`` cannot
trigger a second substitution.
"""
from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any, List, NamedTuple

from liminalflow.service.variables import lookup

TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")

_ABSENT = object()


class ResolvedTemplate(NamedTuple):
    text: str
    missing_variables: List[str]


def stringify(value: Any) -> str:
    """Canonical text form used when a value is inserted into a template."""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def resolve_template(
    template: str, variables: Mapping[str, Any], *, strict: bool = False
) -> ResolvedTemplate:
    """Replace every ``{{name}}`` token in ``template``.

    Missing names are reported in order of first appearance. In strict mode
    a missing token becomes the empty string; otherwise the placeholder is
    left untouched. Callers decide whether missing names are an error.
    """
    missing: List[str] = []

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        value = lookup(variables, name, _ABSENT)
        if value is _ABSENT:
            if name not in missing:
                missing.append(name)
            return "" if strict else match.group(0)
        return stringify(value)

    text = TOKEN_PATTERN.sub(_replace, template or "")
    return ResolvedTemplate(text=text, missing_variables=missing)


def referenced_variables(template: str) -> List[str]:
    """Names referenced by ``template`` without duplicates."""
    seen: List[str] = []
    for match in TOKEN_PATTERN.finditer(template or ""):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen
