"""Error taxonomy shared by the scoring engine, the cascades and the CLI."""

from typing import List, Optional


class RiskRadarError(Exception):
    """Base class for all risk radar errors."""


class NotFound(RiskRadarError):
    """Unknown factory, line or machine id."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(RiskRadarError):
    """Malformed or out-of-range input, rejected before any store access."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field


class DependencyFailure(RiskRadarError):
    """An external store call failed.

    ``step`` names the cascade step that failed and ``completed_steps`` lists
    the steps that had already been written when it did. Writes in
    ``completed_steps`` are not rolled back by the eventual-consistency
    backend.
    """

    def __init__(
        self,
        step: str,
        cause: Optional[BaseException] = None,
        completed_steps: Optional[List[str]] = None,
    ):
        message = f"{step} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.step = step
        self.cause = cause
        self.completed_steps = list(completed_steps or [])


class InvariantViolation(RiskRadarError):
    """A derived value left its allowed range. Indicates a scoring defect."""
