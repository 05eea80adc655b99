from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(eq=False)
class PrioritizationError(Exception):
    """Base error envelope: a stable code, a human message and optional details.

    Callers render `code` + `message` directly; `details` carries extra lines
    (cycle paths, conflicting tasks) for a more specific explanation.
    """

    code: str
    message: str
    file: Optional[str] = None
    path: Optional[str] = None
    details: tuple[str, ...] = ()

    def __str__(self) -> str:
        parts: list[str] = []
        if self.file:
            parts.append(self.file)
        if self.path:
            parts.append(self.path)
        loc = ":".join(parts) if parts else "<input>"
        return f"{loc}: {self.code}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "file": self.file,
            "path": self.path,
            "details": list(self.details),
        }


class InputLoadError(PrioritizationError):
    pass


class ConfigError(PrioritizationError):
    pass


@dataclass(eq=False)
class GeneratorValidationError(PrioritizationError):
    attempts: int = 0


@dataclass(eq=False)
class CycleDetectedError(PrioritizationError):
    cycle_path: tuple[str, ...] = field(default_factory=tuple)


@dataclass(eq=False)
class DuplicateTaskError(PrioritizationError):
    task_id: str = ""
    existing_task_id: str = ""
    similarity: float = 0.0


class TaskInsertionError(PrioritizationError):
    pass


class AdjustmentError(PrioritizationError):
    pass


@dataclass(eq=False)
class EmbeddingError(PrioritizationError):
    """Provider failure; category is one of EMBEDDING_ERROR_CATEGORIES."""

    category: str = "provider_error"


EMBEDDING_ERROR_CATEGORIES = (
    "missing_credentials",
    "timeout",
    "rate_limit",
    "invalid_response",
    "provider_error",
)
