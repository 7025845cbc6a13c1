# SPDX-License-Identifier: Apache-2.0
"""Anchored regular-expression matching for permission patterns.

A grant pattern always denotes the whole id: ``^P1.*`` accepts ``P100`` but
not ``XP100``, and ``^S1$`` rejects ``S10``.
"""
from __future__ import annotations

import re
from typing import Iterable, Pattern


def anchored_source(pattern: str) -> str:
    """Regex source that only matches when ``pattern`` covers the whole candidate."""
    return f"^(?:{pattern})$"


def compile_pattern(pattern: str) -> Pattern[str]:
    """Compile ``pattern``; raises ``re.error`` when it is not a valid regex."""
    return re.compile(f"(?:{pattern})")


def compile_patterns(patterns: Iterable[str]) -> tuple[Pattern[str], ...]:
    return tuple(compile_pattern(p) for p in patterns)


def matches_any(compiled: Iterable[Pattern[str]], candidate: str) -> bool:
    """True iff at least one compiled pattern full-matches ``candidate``."""
    return any(p.fullmatch(candidate) is not None for p in compiled)


def is_valid_pattern(pattern: str) -> bool:
    try:
        compile_pattern(pattern)
    except re.error:
        return False
    return True
