"""
Governance Error Taxonomy

Caller misuse and integrity failures are raised as exceptions and surface
synchronously. Expected denials (policy, budget, quorum, expiry,
constitutional) are NOT exceptions: they are DENY decisions carrying a
``Reason`` code and are recorded in the audit log like any other outcome.
"""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for every error raised by the governance core."""


class ValidationError(GovernanceError):
    """A proposal (or vote, or config value) is malformed.

    Raised before any pipeline stage runs.
    """


class ChainIntegrityError(GovernanceError):
    """The audit chain failed verification.

    Fatal: no new decisions are admitted until the chain is reconciled.
    """

    def __init__(self, message: str, broken_at_index: int | None = None):
        super().__init__(message)
        self.broken_at_index = broken_at_index


class NotFoundError(GovernanceError):
    """The referenced proposal, vote or approval request does not exist."""


class AlreadyResolvedError(GovernanceError):
    """The referenced request has already reached a terminal state."""


class VotingClosedError(GovernanceError):
    """A vote was cast after finalization or past the deadline."""


class TransientExecutionError(GovernanceError):
    """An execution attempt failed in a way that is worth retrying."""
