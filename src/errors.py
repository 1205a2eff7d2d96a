"""Exception hierarchy for the analysis pipeline."""

from __future__ import annotations

from typing import Any


class AnalysisError(Exception):
    """Base exception for analysis failures."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(AnalysisError):
    """Raised when a required setting (e.g. the Dify API key) is missing."""


class FileOwnershipError(AnalysisError):
    """Raised when a file does not exist or does not belong to the project."""

    def __init__(self, project_id: str, file_ids: list[str | None]) -> None:
        shown = ", ".join(str(f) for f in file_ids)
        super().__init__(
            f"File(s) {shown} not found or not owned by project {project_id}",
            {"project_id": project_id, "file_ids": file_ids},
        )
        self.project_id = project_id
        self.file_ids = file_ids
