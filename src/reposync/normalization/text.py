"""Full-text extraction for the search index."""

import logging
from typing import List, Optional

from lxml import etree

from reposync.source import SourceLayout

logger = logging.getLogger(__name__)


def _excluded(element: etree._Element) -> bool:
    return element.get("meta") == "yes" or element.get("index") == "no"


def traverse_text(element: etree._Element, buffer: List[str]) -> None:
    """Collect stripped text nodes, skipping subtrees marked meta or not indexed."""
    if not isinstance(element.tag, str) or _excluded(element):
        return
    if element.text and element.text.strip():
        buffer.append(element.text.strip())
    for child in element:
        traverse_text(child, buffer)
        if child.tail and child.tail.strip():
            buffer.append(child.tail.strip())


def grab_text(
    layout: SourceLayout,
    item_id: str,
    content_type: Optional[str],
    log: logging.Logger = logger,
) -> str:
    """Read the indexable text of an item.

    PDF items use the text-coordinates rip, HTML items the HTML itself.

    Args:
        layout: Source tree layout
        item_id: Short item id
        content_type: Item content type, None for content-free items
        log: Logger for missing or unreadable text warnings

    Returns:
        Newline-joined text, or an empty string
    """
    if content_type is None:
        return ""
    coords_path = layout.item_path(item_id, "rip/base.textCoords.xml")
    html_path = layout.item_path(item_id, "content/base.html")
    if content_type == "application/pdf" and coords_path.is_file():
        # Rips are sometimes truncated; keep whatever text parses.
        parser = etree.XMLParser(
            recover=True, resolve_entities=False, no_network=True, load_dtd=False, huge_tree=True
        )
        path = coords_path
    elif content_type == "text/html" and html_path.is_file():
        path, parser = html_path, etree.HTMLParser()
    else:
        log.warning("no text found")
        return ""
    try:
        root = etree.parse(str(path), parser).getroot()
    except etree.XMLSyntaxError as e:
        log.warning(f"unreadable text file {path.name}: {e}")
        return ""
    if root is None:
        log.warning(f"no text found in {path.name}")
        return ""
    buffer: List[str] = []
    traverse_text(root, buffer)
    return "\n".join(buffer)
