"""
What every server dialect's pull operation looks like from the outside.

A pull never raises for network, parse or disk trouble: those are tracked
and folded into the outcome. The only way out of a pull is a PullResult.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from core.download.http_client import Response

from collect_pipeline.cursor import Cursor
from collect_pipeline.jobs import Job, RunnerStatus
from collect_pipeline.models import FormMetadata


class PullOutcome(Enum):
    """Terminal state of one form pull."""

    SUCCESS = "success"
    SUCCESS_WITH_ERRORS = "success_with_errors"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PullResult:
    """
    Summary of one form pull.

    Attributes:
        form_id: Pulled form
        outcome: Terminal state
        cursor: Cursor saved at the end of the pull; None when the pull
            never got that far
        submissions_downloaded: New submissions written to disk
        submissions_skipped: Submissions skipped because they were already pulled
    """

    form_id: str
    outcome: PullOutcome
    cursor: Optional[Cursor] = None
    submissions_downloaded: int = 0
    submissions_skipped: int = 0

    @property
    def is_success(self) -> bool:
        return self.outcome is PullOutcome.SUCCESS


class PullOperation(Protocol):
    """A dialect-specific way of pulling one form."""

    server_type: str

    async def list_forms(self) -> List[FormMetadata]:
        ...

    async def pull_form(
        self,
        form: FormMetadata,
        status: RunnerStatus,
        cursor: Optional[Cursor] = None,
    ) -> PullResult:
        ...

    def pull(self, form: FormMetadata, cursor: Optional[Cursor] = None) -> Job[PullResult]:
        ...


def response_reason(response: Response) -> str:
    """Short reason for a failed response, as shown in error events."""
    return f"HTTP {response.status_code} {response.reason}".rstrip()
