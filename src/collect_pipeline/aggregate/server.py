"""
Request factory for the legacy REST/XML dialect.

Every *_request method returns a Request value; executing it is up to the
caller. list_forms() is the one call made on the caller's behalf.
"""

from typing import List, Optional

from core.download.http_client import Credentials, Http, Request, RequestBuilder
from core.errors.exceptions import HttpError

from collect_pipeline.aggregate.parsing import parse_form_list
from collect_pipeline.cursor import Cursor
from collect_pipeline.models import FormMetadata

OPENROSA_VERSION = "1.0"


def clean_url(url: str) -> str:
    """
    Strip the UI page users often paste along with the server URL.

    "https://host/Aggregate.html#submissions" -> "https://host"
    """
    marker = url.find("/Aggregate.html")
    if marker >= 0:
        url = url[:marker]
    return url.rstrip("/")


class AggregateServer:
    """
    A legacy server reachable at base_url.

    Usage:
        server = AggregateServer("https://collect.example.org", credentials)
        response = await http.execute(server.form_list_request())
    """

    def __init__(self, base_url: str, credentials: Optional[Credentials] = None):
        self.base_url = clean_url(base_url)
        self.credentials = credentials

    def _get(self, url: Optional[str] = None) -> RequestBuilder:
        return (
            RequestBuilder.get(url or self.base_url)
            .with_header("X-OpenRosa-Version", OPENROSA_VERSION)
            .with_credentials(self.credentials)
        )

    def form_list_request(self) -> Request:
        return self._get().with_path("/formList").build()

    def download_form_request(self, form_id: str) -> Request:
        return self._get().with_path("/formXml").with_query(("formId", form_id)).build()

    def download_form_request_from_url(self, download_url: str) -> Request:
        return self._get(download_url).build()

    def manifest_request(self, manifest_url: str) -> Request:
        return self._get(manifest_url).build()

    def instance_id_batch_request(
        self,
        form_id: str,
        entries_per_batch: int,
        cursor: Cursor,
        include_incomplete: bool,
    ) -> Request:
        return (
            self._get()
            .with_path("/view/submissionList")
            .with_query(
                ("formId", form_id),
                ("cursor", cursor.value),
                ("numEntries", str(entries_per_batch)),
                ("includeIncomplete", "true" if include_incomplete else "false"),
            )
            .build()
        )

    def download_submission_request(self, submission_key: str) -> Request:
        return (
            self._get()
            .with_path("/view/downloadSubmission")
            .with_query(("formId", submission_key))
            .build()
        )

    def attachment_request(self, download_url: str) -> Request:
        return self._get(download_url).build()

    async def list_forms(self, http: Http) -> List[FormMetadata]:
        """
        List the forms published on the server.

        Raises:
            HttpError: On a non-2xx response
            ParsingError: If the form list isn't valid XML
        """
        response = await http.execute(self.form_list_request())
        if not response.is_success:
            raise HttpError(response)
        return parse_form_list(response.text)

    def __repr__(self) -> str:
        return f"AggregateServer(base_url={self.base_url!r}, credentials={self.credentials!r})"
