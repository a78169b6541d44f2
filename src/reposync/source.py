"""Paths into the legacy pairtree source layout."""

import re
from pathlib import Path
from typing import Optional

from reposync.errors import MalformedMetadataError

_LONG_ARK = re.compile(r"^ark:/?13030/(qt\w{8})$")
_SHORT_ARK = re.compile(r"^qt\w{8}$")
_BARE_ARK = re.compile(r"^\w{8}$")

# Metadata files shorter than this are treated as truncated.
MIN_METADATA_BYTES = 50


def short_ark(ark: str) -> str:
    """Reduce an archival identifier to the short ``qtXXXXXXXX`` form.

    Args:
        ark: ``ark:/13030/qtXXXXXXXX``, ``qtXXXXXXXX`` or a bare 8-char id

    Returns:
        Short identifier

    Raises:
        MalformedMetadataError: If the string matches none of those shapes
    """
    match = _LONG_ARK.match(ark)
    if match:
        return match.group(1)
    if _SHORT_ARK.match(ark):
        return ark
    if _BARE_ARK.match(ark):
        return f"qt{ark}"
    raise MalformedMetadataError(ark, "cannot parse ark")


class SourceLayout:
    """Resolves item files inside a pairtree rooted at ``data_root``."""

    def __init__(self, data_root: str) -> None:
        self.data_root = Path(data_root)

    def item_dir(self, ark: str, root: Optional[str] = None) -> Path:
        short = short_ark(ark)
        pairs = [short[i : i + 2] for i in range(0, len(short) - 1, 2)]
        base = Path(root) if root else self.data_root
        return base.joinpath("13030", "pairtree_root", *pairs, short)

    def item_path(self, ark: str, subpath: str, root: Optional[str] = None) -> Path:
        """Path of a file belonging to an item.

        A ``base`` path component (``content/base.pdf``) is replaced with the
        short ark.
        """
        short = short_ark(ark)
        subpath = re.sub(r"\bbase\b", short, subpath.strip("/"))
        return self.item_dir(short, root) / subpath

    def metadata_path(self, ark: str) -> Path:
        return self.item_path(ark, "meta/base.meta.xml")

    def has_usable_metadata(self, ark: str) -> bool:
        path = self.metadata_path(ark)
        return path.is_file() and path.stat().st_size >= MIN_METADATA_BYTES
