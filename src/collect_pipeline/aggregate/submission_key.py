"""
Submission keys for /view/downloadSubmission.

The legacy dialect addresses a submission with an XPath-like key built
from the blank form:

    census[@version=2019010101 and @uiVersion=null]/census[@key=uuid:...]

Encrypted forms use "data" as the element name, since that's the root of
their encrypted envelope.
"""

from dataclasses import dataclass
from typing import Any, Optional

from collect_pipeline.errors import ParsingError, SubmissionKeyError
from collect_pipeline.xmlutil import elements, find_child, find_first, local_name, parse_xml


@dataclass(frozen=True)
class SubmissionKeyGenerator:
    """
    Builds submission keys for one form.

    Usage:
        generator = SubmissionKeyGenerator.from_form_xml(form_xml)
        key = generator.build_key("uuid:39f3dd36-161e-45cb-a1a4-395831d253a7")
    """

    form_id: str
    version: Optional[str]
    element_name: str
    is_encrypted: bool = False

    @classmethod
    def from_form_xml(cls, form_xml: str) -> "SubmissionKeyGenerator":
        """
        Read what's needed from a blank form.

        Raises:
            SubmissionKeyError: If the form has no primary instance or its
                instance element has no id attribute
        """
        try:
            root = parse_xml(form_xml)
        except ParsingError as e:
            raise SubmissionKeyError("Blank form is not valid XML", cause=e) from e

        model = _model(root)
        if model is None:
            raise SubmissionKeyError("Blank form has no model")

        instance = next(
            (
                child
                for child in elements(model)
                if local_name(child) == "instance" and child.get("id") is None
            ),
            None,
        )
        if instance is None:
            raise SubmissionKeyError("Blank form has no primary instance")

        children = elements(instance)
        if not children:
            raise SubmissionKeyError("Primary instance is empty")
        submission_element = children[0]

        form_id = submission_element.get("id")
        if not form_id:
            raise SubmissionKeyError("Primary instance element has no id attribute")

        submission = find_child(model, "submission")
        return cls(
            form_id=form_id,
            version=submission_element.get("version"),
            element_name=local_name(submission_element),
            is_encrypted=submission is not None
            and submission.get("base64RsaPublicKey") is not None,
        )

    def build_key(self, instance_id: str) -> str:
        return "{}[@version={} and @uiVersion=null]/{}[@key={}]".format(
            self.form_id,
            self.version if self.version is not None else "null",
            "data" if self.is_encrypted else self.element_name,
            instance_id,
        )


def _model(root: Any) -> Optional[Any]:
    head = find_first(root, "head")
    if head is None:
        return None
    return find_child(head, "model")
