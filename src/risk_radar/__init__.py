"""Production Risk Radar - machine, line and factory risk scoring."""

__version__ = "0.1.0"

from .backends import BackendKind, create_cascade
from .config import Config
from .errors import DependencyFailure, InvariantViolation, NotFound, ValidationError
from .scoring import score_machine

__all__ = [
    "BackendKind",
    "Config",
    "DependencyFailure",
    "InvariantViolation",
    "NotFound",
    "ValidationError",
    "create_cascade",
    "score_machine",
    "__version__",
]
