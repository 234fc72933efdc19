"""
JSON payload schemas of the REST/JSON dialect.

Only the fields the pull engine reads are declared; servers add plenty of
others, which are ignored.
"""

from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from collect_pipeline.errors import ParsingError
from collect_pipeline.models import FormKey, FormMetadata

M = TypeVar("M", bound=BaseModel)


class SessionToken(BaseModel):
    """Response of POST /v1/sessions.

    Attributes:
        token: Bearer token for every other request
        expires_at: Expiry as sent by the server, when present
    """

    token: str = Field(..., description="Session bearer token", min_length=1)
    expires_at: Optional[str] = Field(
        default=None,
        alias="expiresAt",
        description="Token expiry timestamp",
    )

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def __repr__(self) -> str:
        return "SessionToken(token=***)"


class CentralForm(BaseModel):
    """One entry of GET /v1/projects/{p}/forms.

    Usage:
        form = CentralForm.model_validate(
            {"xmlFormId": "census", "name": "Census", "version": "2019"}
        ).to_form_metadata()
    """

    xml_form_id: str = Field(..., alias="xmlFormId", min_length=1)
    name: Optional[str] = Field(default=None, description="Form title")
    version: Optional[str] = Field(default=None, description="Form version")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("version")
    @classmethod
    def blank_version_is_none(cls, v: Optional[str]) -> Optional[str]:
        """Servers send "" for unversioned forms."""
        if v is None or not v.strip():
            return None
        return v

    def to_form_metadata(self) -> FormMetadata:
        return FormMetadata(
            key=FormKey(self.xml_form_id, self.version),
            form_name=self.name or self.xml_form_id,
        )


class CentralAttachment(BaseModel):
    """One entry of an attachment listing (form or submission).

    Form attachments carry an "exists" flag telling whether the file has
    been uploaded; submission attachments carry it too on recent servers.
    """

    name: str = Field(..., min_length=1)
    exists: bool = Field(default=True)

    model_config = ConfigDict(extra="ignore")


class CentralSubmission(BaseModel):
    """One entry of GET .../submissions."""

    instance_id: str = Field(..., alias="instanceId", min_length=1)
    submitter_id: Optional[int] = Field(default=None, alias="submitterId")
    created_at: Optional[str] = Field(default=None, alias="createdAt")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def parse_model(model: Type[M], payload: Any) -> M:
    """
    Validate one JSON object.

    Raises:
        ParsingError: If payload doesn't match model
    """
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ParsingError(f"Invalid {model.__name__} payload", cause=e) from e


def parse_model_list(model: Type[M], payload: Any) -> List[M]:
    """
    Validate a JSON array of objects.

    Raises:
        ParsingError: If payload isn't a list of model objects
    """
    try:
        return TypeAdapter(List[model]).validate_python(payload)
    except ValidationError as e:
        raise ParsingError(f"Invalid {model.__name__} list payload", cause=e) from e
