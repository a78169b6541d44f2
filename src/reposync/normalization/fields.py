"""Field-level normalization helpers: dates, rights, disciplines, authors."""

import logging
import re
from datetime import date, datetime
from typing import Dict, List, Optional

from lxml import etree

logger = logging.getLogger(__name__)

DISCIPLINES: Dict[str, str] = {
    "1540": "Life Sciences",
    "3566": "Medicine and Health Sciences",
    "3864": "Physical Sciences and Mathematics",
    "3525": "Engineering",
    "1965": "Social and Behavioral Sciences",
    "1481": "Arts and Humanities",
    "1573": "Law",
    "3688": "Business",
    "2932": "Architecture",
    "3579": "Education",
}

RIGHTS: Dict[str, str] = {
    "cc1": "CC BY",
    "cc2": "CC BY-SA",
    "cc3": "CC BY-ND",
    "cc4": "CC BY-NC",
    "cc5": "CC BY-NC-SA",
    "cc6": "CC BY-NC-ND",
}

LANGUAGES: Dict[str, str] = {
    "english": "en",
    "german": "de",
    "french": "fr",
    "spanish": "es",
}

_COMPACT_DATE = re.compile(r"^([123]\d\d\d)([01]\d)([0123]\d)$")
_YEAR_ONLY = re.compile(r"^\d\d\d\d$")
_YEAR_MONTH = re.compile(r"^\d\d\d\d-\d\d$")
_LATE_FEBRUARY = re.compile(r"-02-(29|30|31)$")


def _strict_date(text: str) -> Optional[date]:
    try:
        parsed = datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        return None
    if 1000 < parsed.year < 4000:
        return parsed
    return None


def parse_date(raw: Optional[str], log: logging.Logger = logger) -> Optional[date]:
    """Parse a legacy date string.

    Accepts ``YYYY``, ``YYYY-MM``, ``YYYYMMDD`` and ``YYYY-MM-DD``. A day past
    the end of February is clamped to the 28th. Unparsable dates and years
    outside 1000-4000 yield None with a warning.

    Args:
        raw: Date string from the metadata, or None
        log: Logger to report invalid dates on

    Returns:
        Parsed date, or None
    """
    if raw is None:
        return None
    text = raw.strip()
    match = _COMPACT_DATE.match(text)
    if match:
        text = "-".join(match.groups())
    elif _YEAR_ONLY.match(text):
        text = f"{text}-01-01"
    elif _YEAR_MONTH.match(text):
        text = f"{text}-01"

    parsed = _strict_date(text)
    if parsed is None:
        parsed = _strict_date(_LATE_FEBRUARY.sub("-02-28", text))
    if parsed is None:
        log.warning(f"invalid date: {raw!r}")
    return parsed


def translate_rights(code: Optional[str], log: logging.Logger = logger) -> Optional[str]:
    """Map a legacy rights code (``cc1`` .. ``cc6``) to a license string."""
    if code is None or code == "public":
        return None
    rights = RIGHTS.get(code)
    if rights is None:
        log.warning(f"unknown rights value {code!r}")
    return rights


def map_disciplines(elements: List[etree._Element], log: logging.Logger = logger) -> List[str]:
    """Turn ``<discipline>`` elements into canonical labels.

    Ids may carry a ``disc`` prefix. Elements with an empty id but text that
    exactly matches a known label are accepted as that label. Unknown ids are
    dropped with a warning.
    """
    labels = []
    known_labels = set(DISCIPLINES.values())
    for element in elements:
        disc_id = element.get("id")
        text = (element.text or "").strip()
        if disc_id == "" and text in known_labels:
            label = text
        else:
            if disc_id is not None:
                disc_id = re.sub(r"^disc", "", disc_id)
            label = DISCIPLINES.get(disc_id)
        if label is None:
            log.warning(f"unknown discipline ID {disc_id!r}")
            continue
        labels.append(label)
    return labels


def normalize_language(language: Optional[str]) -> Optional[str]:
    if not language:
        return language
    for name, code in LANGUAGES.items():
        language = language.replace(name, code)
    return language


def _child_text(element: etree._Element, tag: str) -> Optional[str]:
    child = element.find(tag)
    if child is None or child.text is None:
        return None
    text = child.text.strip()
    return text or None


def format_author_name(author: etree._Element, log: logging.Logger = logger) -> Optional[str]:
    """Build a display name from a structured ``<author>`` element.

    Returns:
        ``"Lname, Fname M., Suffix"`` when both names exist, otherwise the
        first of fname, lname, email or the raw element text; None for an
        entirely empty author.
    """
    fname = _child_text(author, "fname")
    lname = _child_text(author, "lname")
    if lname and fname:
        name = f"{lname}, {fname}"
        mname = _child_text(author, "mname")
        suffix = _child_text(author, "suffix")
        if mname:
            name += f" {mname}"
        if suffix:
            name += f", {suffix}"
        return name
    if fname:
        return fname
    if lname:
        return lname
    email = _child_text(author, "email")
    if email:
        return email
    name = "".join(author.itertext()).strip()
    if not name:
        return None
    log.warning(f"can't figure out author {name!r}")
    return name


def mime_to_summary_type(mime_type: Optional[str]) -> str:
    """Bucket a mime type into one of the supplemental-file facets."""
    if mime_type and "/" in mime_type:
        media, subtype = mime_type.split("/", 1)
        if media in ("audio", "video"):
            return media
        if media == "image":
            return "images"
        if subtype == "zip" or subtype.endswith("+zip"):
            return "zip"
    return "other files"


def is_embargoed(embargo_date: Optional[date], today: Optional[date] = None) -> bool:
    if embargo_date is None:
        return False
    return (today or date.today()) < embargo_date
