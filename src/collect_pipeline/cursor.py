"""
Resumption cursors for paginated submission listings.

A cursor is the opaque token a server hands back with every page of
instance IDs. Servers only promise that it is opaque, but the legacy
dialect's token is an XML document with a last-update date, which is what
lets us order cursors, keep the highest one seen during a pull and even
build synthetic ones ("start from this date").

All cursors are totally ordered by last update. EmptyCursor and cursors
without a date use SOME_OLD_DATE, so they always sort first.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Iterable, Optional

from lxml import etree

from collect_pipeline.errors import CursorError

SOME_OLD_DATE = datetime(2010, 1, 1, tzinfo=timezone.utc)

CURSOR_NAMESPACE = "http://www.opendatakit.org/cursor"

_DATETIME_PATTERN = re.compile(
    r"^(?P<local>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(?::\d{2})?)"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>Z|[+-]\d{2}(?::?\d{2})?)?$"
)


# =============================================================================
# ISO-8601 helpers
# =============================================================================


def normalize_datetime(text: str) -> str:
    """
    Fix the offset of an ISO-8601 datetime so strict parsers accept it.

    Servers emit offsets like "+0800" or "+03"; they are rewritten as
    "+08:00" and "+03:00". Everything else is returned untouched.

    >>> normalize_datetime("2010-01-01T00:00:00.000+0030")
    '2010-01-01T00:00:00.000+00:30'
    """
    match = _DATETIME_PATTERN.match(text.strip())
    if match is None:
        return text
    offset = match.group("offset")
    if offset is None or offset == "Z" or ":" in offset:
        return text.strip()
    if len(offset) == 3:
        fixed = f"{offset}:00"
    else:
        fixed = f"{offset[:3]}:{offset[3:]}"
    return text.strip()[: -len(offset)] + fixed


def parse_datetime(text: str) -> datetime:
    """
    Parse an ISO-8601 datetime into an aware datetime.

    Naive values are taken as UTC.

    Raises:
        ValueError: If text isn't an ISO-8601 datetime
    """
    normalized = normalize_datetime(text)
    match = _DATETIME_PATTERN.match(normalized)
    if match is None:
        raise ValueError(f"Invalid ISO-8601 datetime: {text!r}")

    local = match.group("local")
    fraction = match.group("fraction")
    offset = match.group("offset")

    iso = local
    if fraction:
        iso += "." + fraction[:6].ljust(6, "0")
    if offset and offset != "Z":
        iso += offset
    parsed = datetime.fromisoformat(iso)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: datetime) -> str:
    """
    Format an aware datetime as ISO-8601 with an offset.

    UTC renders as "Z"; the fraction is printed only when non-zero.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset()
    if not offset:
        return text + "Z"
    total_minutes = int(offset.total_seconds() // 60)
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"{text}{sign}{hours:02d}:{minutes:02d}"


# =============================================================================
# Cursors
# =============================================================================


class Cursor:
    """
    Base class for resumption cursors.

    Subclasses provide value (the raw token sent back to the server),
    last_update and type_name.
    """

    type_name: str = ""

    @property
    def value(self) -> str:
        raise NotImplementedError

    @property
    def last_update(self) -> Optional[datetime]:
        return None

    @property
    def is_empty(self) -> bool:
        return self.value == ""

    def _sort_key(self) -> datetime:
        return self.last_update or SOME_OLD_DATE

    def compare(self, other: "Cursor") -> int:
        """Negative, zero or positive depending on last update only."""
        mine, theirs = self._sort_key(), other._sort_key()
        return (mine > theirs) - (mine < theirs)

    def __lt__(self, other: "Cursor") -> bool:
        return self.compare(other) < 0

    def __le__(self, other: "Cursor") -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: "Cursor") -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: "Cursor") -> bool:
        return self.compare(other) >= 0

    def to_dict(self) -> Dict[str, str]:
        """Serialize for persistence as {"type": ..., "value": ...}."""
        return {"type": self.type_name, "value": self.value}


@dataclass(frozen=True, eq=True, order=False)
class EmptyCursor(Cursor):
    """The origin of every enumeration."""

    type_name = "empty"

    @property
    def value(self) -> str:
        return ""

    def __repr__(self) -> str:
        return "EmptyCursor()"


@dataclass(frozen=True, eq=False, order=False)
class AggregateCursor(Cursor):
    """
    Cursor of the legacy XML dialect.

    The token looks like:
        <cursor xmlns="http://www.opendatakit.org/cursor">
          <attributeName>_LAST_UPDATE_DATE</attributeName>
          <attributeValue>2018-01-01T00:00:00.000Z</attributeValue>
          <uriLastReturnedValue>uuid:...</uriLastReturnedValue>
          <isForwardCursor>true</isForwardCursor>
        </cursor>

    Equality looks at the parsed date and last returned uid, not at the raw
    XML, so whitespace differences don't matter.
    """

    xml: str
    updated_at: Optional[datetime] = None
    last_returned_value: Optional[str] = None

    type_name = "aggregate"

    @property
    def value(self) -> str:
        return self.xml

    @property
    def last_update(self) -> Optional[datetime]:
        return self.updated_at

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AggregateCursor):
            return NotImplemented
        return (
            self.updated_at == other.updated_at
            and self.last_returned_value == other.last_returned_value
        )

    def __hash__(self) -> int:
        return hash((self.updated_at, self.last_returned_value))

    @classmethod
    def from_xml(cls, cursor_xml: str) -> "AggregateCursor":
        """
        Parse a legacy cursor token.

        Raises:
            CursorError: If the token isn't well-formed XML or its date
                can't be parsed
        """
        try:
            root = etree.fromstring(cursor_xml.encode("utf-8"))
        except etree.XMLSyntaxError as e:
            raise CursorError(f"Cursor is not XML: {cursor_xml[:80]!r}", cause=e) from e

        updated_at = None
        attribute_value = _child_text(root, "attributeValue")
        if attribute_value:
            try:
                updated_at = parse_datetime(attribute_value)
            except ValueError as e:
                raise CursorError(
                    f"Invalid cursor date: {attribute_value!r}", cause=e
                ) from e

        return cls(
            xml=cursor_xml,
            updated_at=updated_at,
            last_returned_value=_child_text(root, "uriLastReturnedValue") or None,
        )

    @classmethod
    def of(
        cls,
        last_update: Any,
        last_returned_value: Optional[str] = None,
    ) -> "AggregateCursor":
        """
        Build a synthetic cursor that resumes from a date or datetime.

        A plain date means the start of that day in UTC.
        """
        if isinstance(last_update, datetime):
            updated_at = last_update
            if updated_at.tzinfo is None:
                updated_at = updated_at.replace(tzinfo=timezone.utc)
        elif isinstance(last_update, date):
            updated_at = datetime.combine(last_update, time.min, tzinfo=timezone.utc)
        else:
            raise TypeError(f"Expected date or datetime, got {type(last_update).__name__}")

        root = etree.Element(f"{{{CURSOR_NAMESPACE}}}cursor", nsmap={None: CURSOR_NAMESPACE})
        for name, text in (
            ("attributeName", "_LAST_UPDATE_DATE"),
            ("attributeValue", format_datetime(updated_at)),
            ("uriLastReturnedValue", last_returned_value),
            ("isForwardCursor", "true"),
        ):
            etree.SubElement(root, f"{{{CURSOR_NAMESPACE}}}{name}").text = text
        xml = etree.tostring(root, encoding="unicode")
        return cls(xml=xml, updated_at=updated_at, last_returned_value=last_returned_value)


@dataclass(frozen=True, eq=True, order=False)
class OpaqueCursor(Cursor):
    """A token we can't look into; passed back to the server verbatim."""

    raw: str

    type_name = "opaque"

    @property
    def value(self) -> str:
        return self.raw


def _child_text(root: Any, local_name: str) -> Optional[str]:
    for child in root.iter():
        if not isinstance(child.tag, str):
            continue
        if etree.QName(child).localname == local_name:
            return (child.text or "").strip()
    return None


_PARSERS = {
    "aggregate": AggregateCursor.from_xml,
    "opaque": OpaqueCursor,
}


def cursor_from(value: Optional[str]) -> Cursor:
    """
    Build a cursor from a server token.

    Empty tokens (and "0", which some servers send for "no cursor") give an
    EmptyCursor. Otherwise the first parser that accepts the token wins.
    """
    if value is None or value.strip() in ("", "0"):
        return EmptyCursor()
    try:
        return AggregateCursor.from_xml(value)
    except CursorError:
        return OpaqueCursor(value)


def cursor_from_dict(data: Optional[Dict[str, Any]]) -> Cursor:
    """
    Restore a cursor persisted with Cursor.to_dict().

    Raises:
        CursorError: If the type is unknown or the value doesn't parse
    """
    if not data:
        return EmptyCursor()
    cursor_type = data.get("type", "aggregate")
    value = data.get("value") or ""
    if cursor_type == "empty" or not value:
        return EmptyCursor()
    parser = _PARSERS.get(cursor_type)
    if parser is None:
        raise CursorError(f"Unknown cursor type: {cursor_type!r}")
    return parser(value)


def max_cursor(cursors: Iterable[Cursor]) -> Cursor:
    """
    Return the highest cursor, or EmptyCursor for an empty sequence.

    On ties the later cursor wins, so a page token always replaces an equal
    but older placeholder.
    """
    result: Cursor = EmptyCursor()
    for cursor in cursors:
        if cursor >= result:
            result = cursor
    return result
