"""
Record Normalizer - XML export to SyncRecords.

Flattens the source's hierarchical XML into records:
- Sanitizes characters XML 1.0 forbids
- Converts elements into a typed tree (leaf / object / array)
- Coerces leaf text to numbers and booleans heuristically
- Derives a stable record identifier
- Computes the content digest used for change detection

Coercion is heuristic, not schema-driven: a formatting change at the
source (e.g. "1,000" vs "1000.00") can change a digest without any real
business change, which shows up downstream as a spurious UPDATE.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Union

from tally_sync.core.integrity import compute_digest, short_digest
from tally_sync.core.records import SyncRecord
from tally_sync.errors import NormalizationError
from tally_sync.tables import get_table
from tally_sync.utils.logger import get_logger

logger = get_logger(__name__)


# Character references to control characters the source emits but XML rejects
_INVALID_CHAR_REFS = re.compile(
    r"&#x(?:0?[0-8BCEF]|1[0-9A-F]);|&#(?:0?[0-8]|1[1-2]|1[4-9]|2[0-9]|3[0-1]);",
    re.IGNORECASE,
)

# Anything outside: #x9 | #xA | #xD | [#x20-#xD7FF] | [#xE000-#xFFFD] | [#x10000-#x10FFFF]
_INVALID_CHARS = re.compile(
    "[^\t\n\r\u0020-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]"
)

_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>")

_NUMBER = re.compile(r"^[+-]?(?:\d{1,3}(?:,\d{3})+|\d+)?(?:\.\d+)?$")

_BOOLEANS = {
    "true": True,
    "false": False,
    "yes": True,
    "no": False,
}

_DATE_FORMATS = ("%Y%m%d", "%Y-%m-%d", "%d-%b-%Y", "%d-%b-%y")

VALUE_KEY = "_value"

Scalar = Union[str, int, float, bool]


# =============================================================================
# Typed tree
# =============================================================================

@dataclass(frozen=True)
class Leaf:
    """A single coerced value."""

    value: Scalar


@dataclass
class ObjectNode:
    """Named fields, in document order."""

    fields: dict[str, "Node"]


@dataclass
class ArrayNode:
    """Values of a tag repeated among siblings."""

    items: list["Node"]


Node = Union[Leaf, ObjectNode, ArrayNode]


def to_plain(node: Node) -> Any:
    """Convert a typed node into plain dicts, lists and scalars."""
    if isinstance(node, Leaf):
        return node.value
    if isinstance(node, ObjectNode):
        return {name: to_plain(child) for name, child in node.fields.items()}
    return [to_plain(item) for item in node.items]


# =============================================================================
# Conversion helpers
# =============================================================================

def sanitize_xml(text: str) -> str:
    """Replace characters and references XML 1.0 forbids with spaces."""
    text = _INVALID_CHAR_REFS.sub(" ", text)
    return _INVALID_CHARS.sub(" ", text)


def local_name(tag: str) -> str:
    """Strip any ``{namespace}`` prefix from a tag or attribute name."""
    return tag.rsplit("}", 1)[-1]


def coerce_leaf(text: str) -> Scalar:
    """
    Coerce leaf text to a typed value.

    Numeric-looking text becomes ``int`` (no decimal point) or ``float``;
    ``true``/``false``/``yes``/``no`` become ``bool``; everything else is
    returned unchanged.
    """
    stripped = text.strip()
    if stripped and _NUMBER.match(stripped) and any(c.isdigit() for c in stripped):
        cleaned = stripped.replace(",", "")
        if "." in cleaned:
            return float(cleaned)
        return int(cleaned)

    boolean = _BOOLEANS.get(stripped.lower())
    if boolean is not None:
        return boolean

    return text


def element_to_node(element: ET.Element) -> ObjectNode:
    """
    Convert an element and its descendants into a typed tree.

    Attributes become string leaves. Children with sub-elements become
    nested objects; childless children become coerced leaves. A tag that
    appears more than once among siblings is collected into an array.
    """
    fields: dict[str, Node] = {}

    for name, value in element.attrib.items():
        fields[local_name(name)] = Leaf(value)

    groups: dict[str, list[ET.Element]] = {}
    for child in element:
        groups.setdefault(local_name(child.tag), []).append(child)

    for name, children in groups.items():
        nodes = [_child_to_node(child) for child in children]
        fields[name] = nodes[0] if len(nodes) == 1 else ArrayNode(nodes)

    if len(element) == 0 and element.text and element.text.strip():
        fields[VALUE_KEY] = Leaf(element.text)

    return ObjectNode(fields)


def _child_to_node(child: ET.Element) -> Node:
    if len(child) > 0:
        return element_to_node(child)
    return Leaf(coerce_leaf(child.text or ""))


def _child_text(element: ET.Element, name: str) -> str:
    for child in element:
        if local_name(child.tag) == name:
            return (child.text or "").strip()
    return ""


def parse_source_date(text: str) -> datetime | None:
    """Parse a date in any of the formats the source exports."""
    text = text.strip()
    if not text:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


# =============================================================================
# Normalizer
# =============================================================================

class RecordNormalizer:
    """
    Turns one table's XML export into SyncRecords.

    Example:
        normalizer = RecordNormalizer()
        records = normalizer.normalize(xml_text, "Ledgers")

        for record in records:
            print(record.id, record.digest)
    """

    def normalize(self, xml_text: str, table_name: str) -> list[SyncRecord]:
        """
        Convert an export document into records.

        A record that fails to convert is skipped with a warning; the rest
        of the table proceeds.

        Args:
            xml_text: Raw export document
            table_name: Table the document was exported for

        Returns:
            Records in document order

        Raises:
            NormalizationError: If the document cannot be parsed at all
        """
        table = get_table(table_name)
        if table is None:
            logger.warning("No record element known for table %s", table_name)
            return []

        if not xml_text or not xml_text.strip():
            return []

        root = self.parse(xml_text)

        records: list[SyncRecord] = []
        skipped = 0
        for element in self._iter_records(root, table.element):
            try:
                records.append(self.build_record(element, table_name))
            except Exception as e:
                skipped += 1
                logger.warning(
                    "Skipping malformed %s record in %s: %s",
                    table.element,
                    table_name,
                    e,
                )

        logger.info(
            "Normalized %d records for %s (%d skipped)",
            len(records),
            table_name,
            skipped,
        )
        return records

    def parse(self, xml_text: str) -> ET.Element:
        """Sanitize and parse an export document."""
        cleaned = sanitize_xml(xml_text.lstrip("\ufeff"))
        cleaned = _XML_DECLARATION.sub("", cleaned, count=1)
        try:
            return ET.fromstring(cleaned)
        except ET.ParseError as e:
            raise NormalizationError(f"Unparseable export document: {e}") from e

    def build_record(self, element: ET.Element, table_name: str) -> SyncRecord:
        """Build one SyncRecord from a record element."""
        data = to_plain(element_to_node(element))
        return SyncRecord(
            id=self.derive_id(element, table_name),
            data=data,
            digest=compute_digest(data),
            modified_at=self.extract_modified_at(element),
        )

    def derive_id(self, element: ET.Element, table_name: str) -> str:
        """
        Derive a stable identifier for a record element.

        Priority: GUID, MASTERID, table + NAME, transactional type +
        number, then table + truncated digest of the raw element. A
        record identified only by its digest gets a new id whenever its
        content changes, so it is seen as an INSERT, never an UPDATE.
        """
        guid = _child_text(element, "GUID")
        if guid:
            return guid

        master_id = _child_text(element, "MASTERID")
        if master_id:
            return master_id

        name = _child_text(element, "NAME") or element.get("NAME", "").strip()
        if name:
            return f"{table_name}_{name.replace(' ', '_')}"

        table = get_table(table_name)
        if table is not None and table.transactional:
            number = _child_text(element, "VOUCHERNUMBER")
            if number:
                voucher_type = _child_text(element, "VOUCHERTYPENAME")
                return f"VOUCHER_{voucher_type}_{number}"

        raw = ET.tostring(element, encoding="unicode")
        return f"{table_name}_{short_digest(raw)}"

    def extract_modified_at(self, element: ET.Element) -> datetime | None:
        """Modification date from ALTERDATE, falling back to DATE."""
        for name in ("ALTERDATE", "DATE"):
            parsed = parse_source_date(_child_text(element, name))
            if parsed is not None:
                return parsed
        return None

    def _iter_records(self, element: ET.Element, tag: str) -> Iterator[ET.Element]:
        # Matching elements nested inside a match belong to that record
        if local_name(element.tag) == tag:
            yield element
            return
        for child in element:
            yield from self._iter_records(child, tag)
