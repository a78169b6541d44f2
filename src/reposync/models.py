"""Pydantic models for canonical item records and run decisions."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Dialect(str, Enum):
    """Metadata dialects found in the legacy source tree."""

    NATIVE = "UCIngest"
    ETD = "ETD"
    BIOMED = "BioMed"
    SPRINGER = "Springer"

    @property
    def needs_transform(self) -> bool:
        """Whether the dialect must be run through an XSLT normalizer first."""
        return self is not Dialect.NATIVE


class UnitType(str, Enum):
    """Closed set of organizational unit kinds."""

    ROOT = "root"
    CAMPUS = "campus"
    ORU = "oru"
    SERIES = "series"
    JOURNAL = "journal"

    @classmethod
    def classify(cls, raw_type: Optional[str]) -> Optional["UnitType"]:
        """Map a raw unit type string from the source hierarchy to a UnitType.

        Any type ending in ``series`` (``monograph_series``, ``seminar_series``)
        is a series.

        Args:
            raw_type: Type string as stored on the unit

        Returns:
            Matching UnitType, or None for unrecognized types
        """
        if not raw_type:
            return None
        if raw_type.endswith("series"):
            return cls.SERIES
        try:
            return cls(raw_type)
        except ValueError:
            return None


class ChangeState(str, Enum):
    """Per-item outcome of comparing fresh digests with the stored ones."""

    NEW = "new"
    UNCHANGED = "unchanged"
    DATA_ONLY_CHANGED = "data_only_changed"
    CHANGED = "changed"
    SUPPRESSED = "suppressed"


class ChangeAction(str, Enum):
    """What the pipeline does with an item after the change decision."""

    SKIP = "skip"
    COMMIT_ONLY = "commit_only"
    INDEX_AND_COMMIT = "index_and_commit"
    DELETE_AND_COMMIT = "delete_and_commit"

    @property
    def needs_search(self) -> bool:
        return self in (ChangeAction.INDEX_AND_COMMIT, ChangeAction.DELETE_AND_COMMIT)


class ChangeDecision(BaseModel):
    """Result of the digest comparison for one item."""

    state: ChangeState
    action: ChangeAction


class AuthorRecord(BaseModel):
    """One author of an item, in display order."""

    name: str = Field(..., description="Display name, e.g. 'Lname, Fname M.'")
    details: Dict[str, str] = Field(
        default_factory=dict, description="Structured fields (fname, lname, email, ...)"
    )

    def to_attrs(self) -> Dict[str, str]:
        """Flatten to the JSON blob stored on the author row."""
        return {"name": self.name, **self.details}


class ItemRecord(BaseModel):
    """Canonical relational fields of an item."""

    id: str = Field(..., description="Short item identifier, e.g. qt12345678")
    source: str
    status: str
    title: Optional[str] = None
    content_type: Optional[str] = None
    genre: str = "article"
    eschol_date: Optional[date] = None
    pub_date: Optional[date] = None
    rights: Optional[str] = None
    ordering_in_sect: Optional[int] = None
    attrs: Dict[str, Any] = Field(default_factory=dict)


class IssueRecord(BaseModel):
    """Journal issue an item is published in."""

    unit_id: str
    volume: str
    issue: Optional[str] = None
    pub_date: Optional[date] = None
    attrs: Dict[str, Any] = Field(default_factory=dict)


class SectionRecord(BaseModel):
    """Article grouping within an issue."""

    name: str = "Articles"
    ordering: Optional[int] = None


class NormalizedItem(BaseModel):
    """Everything the normalizer extracts from one item's metadata."""

    item: ItemRecord
    authors: List[AuthorRecord] = Field(default_factory=list)
    units: List[str] = Field(default_factory=list)
    issue: Optional[IssueRecord] = None
    section: Optional[SectionRecord] = None
    supp_summary_types: List[str] = Field(default_factory=list)
    dialect: Dialect = Dialect.NATIVE

    @property
    def suppress_content(self) -> bool:
        return bool(self.item.attrs.get("suppress_content"))

    def relational_view(self) -> Dict[str, Any]:
        """Every field that ends up in the database, for the data digest."""
        return {
            "item": self.item.model_dump(mode="json"),
            "authors": [author.to_attrs() for author in self.authors],
            "issue": self.issue.model_dump(mode="json") if self.issue else None,
            "section": self.section.model_dump(mode="json") if self.section else None,
            "units": list(self.units),
        }


class PriorState(BaseModel):
    """Digests and timestamp stored for an item by an earlier run."""

    index_digest: Optional[str] = None
    data_digest: Optional[str] = None
    last_indexed: Optional[datetime] = None


class CommitRecord(BaseModel):
    """A normalized item plus the bookkeeping written alongside it."""

    normalized: NormalizedItem
    index_digest: Optional[str] = None
    data_digest: str
    last_indexed: datetime

    @property
    def item_id(self) -> str:
        return self.normalized.item.id
