from __future__ import annotations

from dataclasses import dataclass

from ce_browser.core.exceptions import CeBrowserError


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str


class ValidationError(CeBrowserError):
    def __init__(self, issues: list[ValidationIssue]):
        self.issues = issues
        super().__init__("\n".join(f"{i.code}: {i.message}" for i in issues))

    @classmethod
    def single(cls, code: str, message: str) -> ValidationError:
        return cls([ValidationIssue(code, message)])
