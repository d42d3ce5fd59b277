"""
Application-boundary exceptions.

Inside the engine a mismatch is a verdict, not an exception. At the edge,
host applications need something they can catch distinctly from a generic
network failure, so they can show the right message and attribute it
correctly.
"""

from __future__ import annotations

from pinguard.domain.models import EvaluationResult


class PinningError(Exception):
    """Base class for errors surfaced to host applications."""


class PinMismatchError(PinningError):
    """None of the presented public keys matches the host's pin set."""

    def __init__(self, hostname: str, result: EvaluationResult) -> None:
        self.hostname = hostname
        self.result = result
        super().__init__(
            f"Public key pinning failed for {hostname!r} "
            f"(reason={result.reason.value}, policy={result.policy_version})"
        )
