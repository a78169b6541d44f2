"""Pytest configuration and fixtures for RepoSync tests."""

import json
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Generator, List, Optional, Sequence

import pytest

from reposync.context import RunContext
from reposync.ingestion.digest import DigestCache
from reposync.ingestion.pipeline import IndexingPipeline
from reposync.ingestion.submitter import BatchSubmitter
from reposync.ingestion.sweeper import ConsistencySweeper
from reposync.models import (
    AuthorRecord,
    CommitRecord,
    IssueRecord,
    ItemRecord,
    NormalizedItem,
    SectionRecord,
)
from reposync.normalization.issues import IssueRightsResolver
from reposync.normalization.loader import MetadataNormalizer
from reposync.source import SourceLayout
from reposync.storage.database import RepoDatabase
from reposync.units.linker import compute_closure

UNIT_CHILDREN = {
    "root": ("ucla",),
    "ucla": ("ucla_history", "ucla_journal"),
}

UNITS = [
    ("root", "root", "eScholarship"),
    ("ucla", "campus", "UCLA"),
    ("ucla_history", "oru", "Department of History"),
    ("ucla_journal", "journal", "UCLA Journal of Things"),
]


class FakeSearchIndex:
    """In-memory stand-in for SearchIndex that records every uploaded batch."""

    def __init__(self, error: Optional[Exception] = None, fail_on: Optional[int] = None):
        self.batches: List[list] = []
        self.error = error
        self.fail_on = fail_on
        self.attempts = 0

    @property
    def uploads(self) -> int:
        return len(self.batches)

    @property
    def documents(self) -> List[dict]:
        return [doc for batch in self.batches for doc in batch]

    def upload(self, documents: bytes) -> dict:
        self.attempts += 1
        if self.error is not None and self.fail_on in (None, self.attempts):
            raise self.error
        self.batches.append(json.loads(documents))
        return {"status": "success"}


def native_record(
    item_id: str = "qt00000001",
    state: str = "published",
    units: Sequence[str] = ("ucla_history",),
    rights: Optional[str] = "cc1",
    source: Optional[str] = "oa_harvester",
    context_extra: str = "",
    body_extra: str = "",
    disciplines: str = '<discipline id="disc1540">Life Sciences</discipline>',
) -> str:
    """Metadata file in the native dialect."""
    entities = "".join(f'<entity id="{unit}"/>' for unit in units)
    return f"""<?xml version="1.0" encoding="utf-8"?>
<record id="ark:13030/{item_id}" state="{state}" dateStamp="2020-05-01" peerReview="yes" type="paper">
  {f"<source>{source}</source>" if source else ""}
  <title>A Study of <i>Things</i></title>
  <authors>
    <author><fname>Ada</fname><lname>Lovelace</lname><email>ada@example.org</email></author>
    <author><fname>Charles</fname><lname>Babbage</lname></author>
  </authors>
  <abstract><p>We study things.</p></abstract>
  <context>
    {entities}
    <language>english</language>
    {context_extra}
  </context>
  <disciplines>{disciplines}</disciplines>
  {f"<rights>{rights}</rights>" if rights else ""}
  <history>
    <originalPublicationDate>2019-03-15</originalPublicationDate>
    <escholPublicationDate>2020-05-01</escholPublicationDate>
  </history>
  <content><file path="content/{item_id}.pdf"><mimeType>application/pdf</mimeType></file></content>
  {body_extra}
</record>
"""


def make_commit_record(
    item_id: str,
    units: Sequence[str] = ("ucla_history",),
    issue: Optional[IssueRecord] = None,
    section: Optional[SectionRecord] = None,
    rights: Optional[str] = None,
    last_indexed: datetime = datetime(2024, 1, 1),
) -> CommitRecord:
    normalized = NormalizedItem(
        item=ItemRecord(
            id=item_id,
            source="oa_harvester",
            status="published",
            title=f"Title of {item_id}",
            pub_date=date(2020, 1, 1),
            rights=rights,
        ),
        authors=[AuthorRecord(name="Lovelace, Ada"), AuthorRecord(name="Babbage, Charles")],
        units=list(units),
        issue=issue,
        section=section,
    )
    return CommitRecord(
        normalized=normalized, index_digest="i" * 64, data_digest="d" * 64, last_indexed=last_indexed
    )


@pytest.fixture
def database(tmp_path: Path) -> Generator[RepoDatabase, None, None]:
    """Provide an empty repository database in a temporary file."""
    db = RepoDatabase(f"sqlite:///{tmp_path / 'repo.db'}")
    db.create_tables()
    yield db
    db.engine.dispose()


@pytest.fixture
def seeded_database(database: RepoDatabase) -> RepoDatabase:
    """Database holding a small unit tree and its closure table."""
    for unit_id, unit_type, name in UNITS:
        database.save_unit(unit_id, unit_type, name, "active", {}, [])
    database.replace_hierarchy(compute_closure(UNIT_CHILDREN, "root"), [])
    return database


@pytest.fixture
def layout(tmp_path: Path) -> SourceLayout:
    return SourceLayout(str(tmp_path / "data"))


@pytest.fixture
def write_item(layout: SourceLayout) -> Callable[..., Path]:
    """Write an item's metadata file into the source tree."""

    def _write(item_id: str, xml: Optional[str] = None, **kwargs) -> Path:
        path = layout.metadata_path(item_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(xml if xml is not None else native_record(item_id=item_id, **kwargs), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def commit_record() -> Callable[..., CommitRecord]:
    return make_commit_record


@pytest.fixture
def normalizer(seeded_database: RepoDatabase, layout: SourceLayout) -> MetadataNormalizer:
    context = RunContext.from_database(seeded_database)
    return MetadataNormalizer(layout, context, IssueRightsResolver(seeded_database, context))


@pytest.fixture
def make_pipeline(seeded_database: RepoDatabase, layout: SourceLayout) -> Callable[..., IndexingPipeline]:
    """Build an IndexingPipeline over the seeded database and a given search index."""

    def _make(
        search_index,
        force: bool = False,
        no_search: bool = False,
        max_batch_bytes: int = 4500 * 1024,
        max_batch_items: int = 500,
        max_record_bytes: int = 950 * 1024,
    ) -> IndexingPipeline:
        context = RunContext.from_database(seeded_database)
        normalizer = MetadataNormalizer(layout, context, IssueRightsResolver(seeded_database, context))
        digests = DigestCache(seeded_database.load_prior_states())
        sweeper = ConsistencySweeper(seeded_database, every=5)
        submitter = BatchSubmitter(
            seeded_database,
            search_index,
            context.ancestors_of,
            sweeper=sweeper,
            digests=digests,
            no_search=no_search,
        )
        return IndexingPipeline(
            normalizer,
            seeded_database,
            submitter,
            digests,
            context,
            layout,
            max_batch_bytes=max_batch_bytes,
            max_batch_items=max_batch_items,
            max_record_bytes=max_record_bytes,
            queue_depth=10,
            force=force,
            sweeper=sweeper,
        )

    return _make


@pytest.fixture
def fake_search() -> FakeSearchIndex:
    return FakeSearchIndex()


@pytest.fixture
def failing_search() -> Callable[..., FakeSearchIndex]:
    """Search index that raises the given error on every upload, or only on upload ``fail_on``."""
    return lambda error, fail_on=None: FakeSearchIndex(error=error, fail_on=fail_on)


@pytest.fixture
def record_xml() -> Callable[..., str]:
    return native_record
