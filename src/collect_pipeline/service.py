"""
Pull service: wires configuration, HTTP and storage into a pull operation
and runs one job per form.

Usage:
    async with HttpClient(timeout_seconds=60) as http:
        service = await create_pull_service(config, http, store)
        forms = select_forms(await service.list_forms(), config.pull.forms)
        service.pull_forms(forms)
        results = await service.wait_for_completion()
"""

import logging
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from core.download.http_client import Http
from core.errors.exceptions import PipelineError, wrap_exception
from core.logging.utilities import LoggedClass, get_logger, log_exception, log_with_context

from collect_pipeline.aggregate.pull import PullFromAggregate
from collect_pipeline.aggregate.server import AggregateServer
from collect_pipeline.central.pull import PullFromCentral
from collect_pipeline.central.server import CentralServer
from collect_pipeline.config import CollectConfig
from collect_pipeline.crypto.submission import (
    ParsedSubmission,
    ValidationStatus,
    decrypt_submission,
)
from collect_pipeline.cursor import EmptyCursor
from collect_pipeline.jobs import JobsRunner
from collect_pipeline.models import FormMetadata
from collect_pipeline.pull import PullOperation, PullOutcome, PullResult
from collect_pipeline.storage import layout
from collect_pipeline.storage.metadata import MetadataStore
from collect_pipeline.tracker import PullEventCallback

logger = get_logger(__name__)


def select_forms(forms: List[FormMetadata], form_ids: Iterable[str]) -> List[FormMetadata]:
    """Keep the forms whose ID is in form_ids; an empty filter keeps them all."""
    wanted = set(form_ids)
    if not wanted:
        return list(forms)
    return [form for form in forms if form.form_id in wanted]


class PullService(LoggedClass):
    """
    Runs pulls of many forms through one JobsRunner.

    Results arrive as jobs finish; a job that raises anyway counts as a
    failed pull and is kept in failures as a PipelineError.
    """

    log_component = "service"

    def __init__(
        self,
        operation: PullOperation,
        start_from_last: bool = True,
        max_concurrent: Optional[int] = None,
    ):
        self.operation = operation
        self.start_from_last = start_from_last
        self.runner = JobsRunner(max_concurrent=max_concurrent)
        self.results: List[PullResult] = []
        self.failures: List[PipelineError] = []
        super().__init__()

    async def list_forms(self) -> List[FormMetadata]:
        return await self.operation.list_forms()

    def pull_forms(self, forms: Iterable[FormMetadata]) -> JobsRunner:
        """
        Launch one pull job per form and return the runner.

        With start_from_last each form resumes from its saved cursor,
        otherwise enumeration starts over from the empty cursor.
        """
        forms = list(forms)
        cursor = None if self.start_from_last else EmptyCursor()
        self._log(
            logging.INFO,
            "Pulling forms",
            server_type=self.operation.server_type,
            total=len(forms),
            start_from_last=self.start_from_last,
        )
        return self.runner.launch(
            [self.operation.pull(form, cursor) for form in forms],
            on_success=self.results.append,
            on_error=self._record_failure,
        )

    def _record_failure(self, error: BaseException) -> None:
        self.failures.append(wrap_exception(error, context={"server_type": self.operation.server_type}))

    def cancel(self) -> None:
        self.runner.cancel()

    async def wait_for_completion(self) -> List[PullResult]:
        await self.runner.wait_for_completion()
        outcomes = Counter(result.outcome.value for result in self.results)
        self._log(
            logging.INFO,
            "All pulls finished",
            total=len(self.results),
            failed=len(self.failures),
            **outcomes,
        )
        return self.results

    @property
    def succeeded(self) -> bool:
        """True when every pull finished cleanly."""
        return not self.failures and all(
            result.outcome is PullOutcome.SUCCESS for result in self.results
        )


async def create_pull_service(
    config: CollectConfig,
    http: Http,
    metadata_store: MetadataStore,
    callback: Optional[PullEventCallback] = None,
) -> PullService:
    """
    Build the pull operation for the configured server dialect.

    Logs in first when the server needs a session.

    Raises:
        AuthError: If the server rejects the credentials
        HttpError: If the login request fails
    """
    server_config = config.server
    pull_config = config.pull

    if server_config.type == "central":
        server = CentralServer(server_config.url, server_config.project_id, server_config.credentials)
        token = await server.login(http)
        operation: PullOperation = PullFromCentral(
            http,
            server,
            token,
            pull_config.storage_dir,
            metadata_store,
            max_parallel=pull_config.max_parallel,
            callback=callback,
        )
    else:
        operation = PullFromAggregate(
            http,
            AggregateServer(server_config.url, server_config.credentials),
            pull_config.storage_dir,
            metadata_store,
            include_incomplete=pull_config.include_incomplete,
            max_parallel=pull_config.max_parallel,
            page_size=pull_config.page_size,
            callback=callback,
        )

    return PullService(operation, start_from_last=pull_config.start_from_last)


# =============================================================================
# Decryption of pulled submissions
# =============================================================================


def decrypt_form(
    metadata_store: MetadataStore,
    storage_dir: Path,
    form_id: str,
    private_key: RSAPrivateKey,
) -> Dict[str, int]:
    """
    Decrypt every encrypted submission of form_id pulled so far.

    Output goes to the decrypted/ tree of storage_dir. A submission that
    can't be decrypted is logged and counted as failed; the others go on.

    Returns:
        Counts keyed by "valid", "not_valid", "skipped" and "failed"
    """
    counts: Dict[str, int] = {"valid": 0, "not_valid": 0, "skipped": 0, "failed": 0}
    for metadata in metadata_store.submissions_for(form_id):
        if not metadata.is_encrypted:
            continue
        output_dir = layout.decrypted_submission_dir(storage_dir, form_id, metadata.instance_id)
        try:
            parsed = ParsedSubmission.from_metadata(metadata, private_key)
            decrypted = decrypt_submission(parsed, output_dir)
        except (PipelineError, OSError) as e:
            log_exception(
                logger,
                e,
                "Can't decrypt submission",
                include_traceback=False,
                form_id=form_id,
                instance_id=metadata.instance_id,
            )
            counts["failed"] += 1
            continue

        if decrypted is None:
            counts["skipped"] += 1
        elif decrypted.validation_status is ValidationStatus.VALID:
            counts["valid"] += 1
        else:
            counts["not_valid"] += 1

    log_with_context(logger, logging.INFO, "Form decrypted", form_id=form_id, **counts)
    return counts
