from __future__ import annotations

from typing import List


class RecommenderError(Exception):
    pass


class ValidationError(RecommenderError):
    """Snapshot rows failed the data-quality gate. Nothing has been written yet."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        lines = "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(f"Data-quality gate failed:\n{lines}")


class EmptyInputError(RecommenderError):
    """Nothing to work with (no unseen candidates). Callers map this to a 'no deck' outcome."""


class StoreError(RecommenderError):
    """A store query failed; carries the query name for logs."""

    def __init__(self, query: str, cause: Exception):
        self.query = query
        self.cause = cause
        super().__init__(f"{query} failed: {cause}")


class DeckBuildError(RecommenderError):
    pass
