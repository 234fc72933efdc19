"""
Parsers for the legacy dialect's XML payloads.

    formList            -> List[FormMetadata]
    manifest            -> List[Attachment]
    submissionList page -> InstanceIdBatch
    downloadSubmission  -> DownloadedSubmission (see models)

All parsers raise ParsingError on malformed documents.
"""

from typing import List

from collect_pipeline.cursor import EmptyCursor, cursor_from
from collect_pipeline.models import (
    Attachment,
    FormKey,
    FormMetadata,
    InstanceIdBatch,
    parse_media_files,
)
from collect_pipeline.xmlutil import find_child, find_first, iter_named, parse_xml, text_of


def parse_form_list(text: str) -> List[FormMetadata]:
    """
    Parse a formList document.

    <xform> entries without a formID or a name are ignored.
    """
    root = parse_xml(text)
    forms = []
    for xform in iter_named(root, "xform"):
        form_id = text_of(find_child(xform, "formID"))
        name = text_of(find_child(xform, "name"))
        if not form_id or not name:
            continue
        forms.append(
            FormMetadata(
                key=FormKey(form_id, text_of(find_child(xform, "version"))),
                form_name=name,
                manifest_url=text_of(find_child(xform, "manifestUrl")),
                download_url=text_of(find_child(xform, "downloadUrl")),
            )
        )
    return forms


def parse_manifest(text: str) -> List[Attachment]:
    """Parse a form manifest into the attachments it lists."""
    return parse_media_files(parse_xml(text))


def parse_instance_id_batch(text: str) -> InstanceIdBatch:
    """
    Parse one submissionList page.

        <idChunk>
          <idList><id>uuid:...</id>...</idList>
          <resumptionCursor>...</resumptionCursor>
        </idChunk>

    A missing or blank resumptionCursor gives an EmptyCursor.
    """
    root = parse_xml(text)
    raw_cursor = text_of(find_first(root, "resumptionCursor"))
    cursor = cursor_from(raw_cursor) if raw_cursor else EmptyCursor()

    instance_ids = []
    id_list = find_first(root, "idList")
    if id_list is not None:
        for element in iter_named(id_list, "id"):
            value = text_of(element)
            if value:
                instance_ids.append(value)

    return InstanceIdBatch(instance_ids=instance_ids, cursor=cursor)
