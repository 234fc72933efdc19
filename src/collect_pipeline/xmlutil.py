"""Namespace-agnostic lxml helpers for server payloads and form files."""

from typing import Any, Iterator, List, Optional

from lxml import etree

from collect_pipeline.errors import ParsingError

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=False)


def parse_xml(text: str) -> Any:
    """
    Parse an XML document and return its root element.

    Raises:
        ParsingError: If text isn't well-formed XML
    """
    try:
        return etree.fromstring(text.encode("utf-8"), parser=_PARSER)
    except (etree.XMLSyntaxError, ValueError) as e:
        raise ParsingError(f"Malformed XML: {e}", cause=e) from e


def local_name(element: Any) -> str:
    return etree.QName(element).localname


def elements(parent: Any) -> List[Any]:
    """Child elements, skipping comments and processing instructions."""
    return [child for child in parent if isinstance(child.tag, str)]


def iter_named(root: Any, name: str) -> Iterator[Any]:
    """All descendants (and root itself) with the given local name, in document order."""
    for element in root.iter():
        if isinstance(element.tag, str) and local_name(element) == name:
            yield element


def find_first(root: Any, name: str) -> Optional[Any]:
    return next(iter_named(root, name), None)


def find_child(parent: Any, name: str) -> Optional[Any]:
    for child in elements(parent):
        if local_name(child) == name:
            return child
    return None


def text_of(element: Optional[Any]) -> Optional[str]:
    """Stripped text of element, or None when missing or blank."""
    if element is None or element.text is None:
        return None
    value = element.text.strip()
    return value or None


def first_text(root: Any, name: str) -> Optional[str]:
    return text_of(find_first(root, name))


def serialize(element: Any) -> str:
    return etree.tostring(element, encoding="unicode")
