"""Validation report collected while scanning / validating packages."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import List, Optional

from modcore.errors import validate_error_type


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str
    mod_id: Optional[str] = None
    path: Optional[str] = None


@dataclass
class ValidationReport:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(
        self,
        code: str,
        message: str,
        mod_id: str | None = None,
        path: str | None = None,
    ) -> ValidationIssue:
        issue = ValidationIssue(validate_error_type(code), message, mod_id, path)
        self.errors.append(issue)
        return issue

    def add_warning(
        self,
        code: str,
        message: str,
        mod_id: str | None = None,
        path: str | None = None,
    ) -> ValidationIssue:
        issue = ValidationIssue(validate_error_type(code), message, mod_id, path)
        self.warnings.append(issue)
        return issue

    def extend(self, other: "ValidationReport") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.cancelled = self.cancelled or other.cancelled

    def codes(self) -> List[str]:
        return [i.code for i in self.errors]

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "cancelled": self.cancelled,
            "errors": [asdict(i) for i in self.errors],
            "warnings": [asdict(i) for i in self.warnings],
        }


__all__ = ["ValidationIssue", "ValidationReport"]
