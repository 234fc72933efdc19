"""
Request factory for the REST/JSON dialect.

Every endpoint lives under /v1/projects/{projectId}; all but the session
endpoint need the bearer token obtained from POST /v1/sessions.
"""

import logging
from typing import List
from urllib.parse import quote

from core.download.http_client import Credentials, Http, Request, RequestBuilder
from core.errors.exceptions import AuthError, HttpError
from core.logging.utilities import LoggedClass

from collect_pipeline.central.models import CentralForm, SessionToken, parse_model, parse_model_list
from collect_pipeline.errors import ParsingError
from collect_pipeline.models import FormMetadata


def _segment(value: str) -> str:
    """Quote one path segment (instance IDs contain ':')."""
    return quote(value, safe=":@")


class CentralServer(LoggedClass):
    """
    A REST/JSON server and one of its projects.

    Usage:
        server = CentralServer("https://central.example.org", 1, credentials)
        token = await server.login(http)
        forms = await server.list_forms(http, token)
        request = server.download_form_request("census", token)
    """

    log_component = "central"

    def __init__(self, base_url: str, project_id: int, credentials: Credentials):
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self.credentials = credentials
        super().__init__()

    def _project(self, token: str, path: str) -> RequestBuilder:
        return (
            RequestBuilder.get(self.base_url)
            .with_path(f"/v1/projects/{self.project_id}/{path.lstrip('/')}")
            .with_bearer_token(token)
        )

    def _form(self, form_id: str) -> str:
        return f"forms/{_segment(form_id)}"

    def _submission(self, form_id: str, instance_id: str) -> str:
        return f"{self._form(form_id)}/submissions/{_segment(instance_id)}"

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def session_request(self) -> Request:
        return (
            RequestBuilder.post(self.base_url)
            .with_path("/v1/sessions")
            .with_json_body({"email": self.credentials.username, "password": self.credentials.password})
            .build()
        )

    def form_list_request(self, token: str) -> Request:
        return self._project(token, "forms").build()

    def download_form_request(self, form_id: str, token: str) -> Request:
        return self._project(token, f"{self._form(form_id)}.xml").build()

    def form_attachment_list_request(self, form_id: str, token: str) -> Request:
        return self._project(token, f"{self._form(form_id)}/attachments").build()

    def download_form_attachment_request(self, form_id: str, name: str, token: str) -> Request:
        return self._project(token, f"{self._form(form_id)}/attachments/{_segment(name)}").build()

    def instance_id_list_request(self, form_id: str, token: str) -> Request:
        return self._project(token, f"{self._form(form_id)}/submissions").build()

    def download_submission_request(self, form_id: str, instance_id: str, token: str) -> Request:
        return self._project(token, f"{self._submission(form_id, instance_id)}.xml").build()

    def submission_attachment_list_request(
        self, form_id: str, instance_id: str, token: str
    ) -> Request:
        return self._project(token, f"{self._submission(form_id, instance_id)}/attachments").build()

    def download_submission_attachment_request(
        self, form_id: str, instance_id: str, name: str, token: str
    ) -> Request:
        return self._project(
            token, f"{self._submission(form_id, instance_id)}/attachments/{_segment(name)}"
        ).build()

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    async def login(self, http: Http) -> str:
        """
        Exchange the credentials for a session token.

        Raises:
            AuthError: If the server rejects the credentials
            HttpError: On any other non-2xx response
            ParsingError: If the response has no token
        """
        response = await http.execute(self.session_request())
        if response.status_code in (401, 403):
            raise AuthError(
                f"Login rejected for {self.credentials.username}",
                context={"http_status": response.status_code},
            )
        if not response.is_success:
            raise HttpError(response)
        try:
            session = parse_model(SessionToken, response.json())
        except ValueError as e:
            raise ParsingError("Session response is not JSON", cause=e) from e
        self._log(logging.INFO, "Logged in", url=self.base_url)
        return session.token

    async def list_forms(self, http: Http, token: str) -> List[FormMetadata]:
        """
        List the project's forms.

        Raises:
            HttpError: On a non-2xx response
            ParsingError: If the payload doesn't match the expected schema
        """
        response = await http.execute(self.form_list_request(token))
        if not response.is_success:
            raise HttpError(response)
        try:
            payload = response.json()
        except ValueError as e:
            raise ParsingError("Form list is not JSON", cause=e) from e
        forms = [entry.to_form_metadata() for entry in parse_model_list(CentralForm, payload)]
        self._log(logging.INFO, "Listed forms", project_id=self.project_id, total=len(forms))
        return forms

    def __repr__(self) -> str:
        return (
            f"CentralServer(base_url={self.base_url!r}, project_id={self.project_id}, "
            f"credentials={self.credentials!r})"
        )


__all__ = ["CentralServer"]
