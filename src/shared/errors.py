"""Error taxonomy shared by stores and engines."""

from __future__ import annotations


class EngineError(Exception):
    """Base for every error the PQ engine reports to its caller."""


class ValidationError(EngineError):
    """Input the user must correct: bad selection, malformed rule, bad config."""


class NotFoundError(EngineError):
    """A referenced event or rule id is absent."""

    def __init__(self, message: str, ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.ids = list(ids or [])


class ConflictError(EngineError):
    """Target state changed between validation and commit; re-fetch and retry."""


class StoreError(EngineError):
    """Batch write failed; nothing was applied."""
