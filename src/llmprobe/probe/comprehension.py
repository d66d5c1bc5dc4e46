"""Needle retrieval grading."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ComprehensionResult:
    correct: bool
    answer: str
    expected: str


def check_comprehension(answer: str, expected: str) -> ComprehensionResult:
    """Check whether *answer* mentions *expected*, ignoring case.

    >>> check_comprehension("The answer is Blue.", "blue").correct
    True
    """
    return ComprehensionResult(
        correct=expected.casefold() in (answer or "").casefold(),
        answer=answer,
        expected=expected,
    )
