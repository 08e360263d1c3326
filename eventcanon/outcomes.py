"""
Per-candidate results.

A skip (already represented, recently processed) is a normal outcome and is
never counted as a failure. Reports, logs and run stats keep the two apart so
a quiet night is not mistaken for a broken pipeline.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Ok:
    value: Any = None
    kind: str = "ok"


@dataclass(frozen=True)
class Skip:
    reason: str
    kind: str = "skip"


@dataclass(frozen=True)
class Fail:
    reason: str
    attempts: int = 1
    kind: str = "fail"


Outcome = Union[Ok, Skip, Fail]


def is_skip(outcome: Outcome) -> bool:
    return isinstance(outcome, Skip)


def is_fail(outcome: Outcome) -> bool:
    return isinstance(outcome, Fail)
