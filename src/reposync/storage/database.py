"""Relational store for converted units, items and their linkage."""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from reposync.models import CommitRecord, IssueRecord, PriorState, SectionRecord
from reposync.storage.models import (
    Base,
    InfoIndex,
    Issue,
    Item,
    ItemAuthor,
    Page,
    Section,
    Unit,
    UnitHier,
    UnitItem,
    Widget,
)

logger = logging.getLogger(__name__)

# Inherited unit links are numbered from here so they sort after direct ones.
INHERITED_ORDERING_START = 10000


class RepoDatabase:
    """SQLAlchemy-backed store with a single write-serialization lock.

    Every write runs in its own transaction while holding ``write_lock`` so
    that the indexing and submission workers never interleave partial
    updates. Reads do not take the lock.
    """

    def __init__(self, database_url: str):
        """Initialize database connection.

        Args:
            database_url: SQLAlchemy URL, e.g. ``sqlite:///reposync.db``
        """
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, connect_args=connect_args)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.write_lock = threading.Lock()

    def create_tables(self) -> None:
        """Create all tables if they don't exist."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Serialized write transaction; commits on success, rolls back on error."""
        with self.write_lock:
            session = self.session_factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @contextmanager
    def reader(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    # Units and hierarchy

    def all_units(self) -> List[Unit]:
        with self.reader() as session:
            return session.query(Unit).all()

    def get_unit(self, unit_id: str) -> Optional[Unit]:
        with self.reader() as session:
            return session.get(Unit, unit_id)

    def unit_ids(self) -> Set[str]:
        with self.reader() as session:
            return {row[0] for row in session.query(Unit.id).all()}

    def all_hierarchy_pairs(self) -> List[Tuple[str, str]]:
        """Every (ancestor_unit, unit_id) closure row."""
        with self.reader() as session:
            return [(row.ancestor_unit, row.unit_id) for row in session.query(UnitHier).all()]

    def hierarchy_rows(self) -> List[UnitHier]:
        with self.reader() as session:
            return session.query(UnitHier).order_by(UnitHier.ancestor_unit, UnitHier.unit_id).all()

    def save_unit(
        self, unit_id: str, unit_type: str, name: str, status: str, attrs: Dict, widgets: Sequence[Dict]
    ) -> None:
        """Create or update a unit and replace its widgets."""
        with self.transaction() as session:
            unit = session.get(Unit, unit_id)
            if unit is None:
                unit = Unit(id=unit_id)
                session.add(unit)
            unit.type = unit_type
            unit.name = name
            unit.status = status
            unit.attrs = attrs
            session.query(Widget).filter_by(unit_id=unit_id).delete()
            for ordering, widget in enumerate(widgets, start=1):
                session.add(
                    Widget(
                        unit_id=unit_id,
                        kind=widget["kind"],
                        region=widget["region"],
                        ordering=ordering,
                        attrs=widget.get("attrs", {}),
                    )
                )

    def widgets_for(self, unit_id: str) -> List[Widget]:
        with self.reader() as session:
            return session.query(Widget).filter_by(unit_id=unit_id).order_by(Widget.ordering).all()

    def orphaned_items(self, unit_ids: Iterable[str]) -> List[str]:
        """Items directly linked to the given units and directly linked to no other unit."""
        doomed = set(unit_ids)
        if not doomed:
            return []
        with self.reader() as session:
            candidates = {
                row[0]
                for row in session.query(UnitItem.item_id).filter(UnitItem.unit_id.in_(doomed)).all()
            }
            if not candidates:
                return []
            survivors = {
                row[0]
                for row in session.query(UnitItem.item_id)
                .filter(
                    UnitItem.item_id.in_(candidates),
                    UnitItem.unit_id.notin_(doomed),
                    UnitItem.is_direct.is_(True),
                )
                .all()
            }
        return sorted(candidates - survivors)

    def replace_hierarchy(self, edges: Sequence, extra_units: Iterable[str]) -> None:
        """Delete units absent from the source tree and rebuild the closure table.

        Runs as one transaction. For each extra unit, its item links, the items
        left with no unit, its issues and sections, widgets, pages and closure
        rows are removed along with the unit itself. An item with no direct unit
        link left is deleted together with its inherited links.

        Args:
            edges: HierEdge records for the complete closure
            extra_units: Units present in the database but not in the source
        """
        extra = sorted(set(extra_units))
        with self.transaction() as session:
            for unit_id in extra:
                logger.info(f"Deleting extra unit: {unit_id}")
                item_ids = [
                    row[0] for row in session.query(UnitItem.item_id).filter_by(unit_id=unit_id).all()
                ]
                session.query(UnitItem).filter_by(unit_id=unit_id).delete()
                for item_id in item_ids:
                    if session.query(UnitItem).filter_by(item_id=item_id, is_direct=True).first() is None:
                        session.query(UnitItem).filter_by(item_id=item_id).delete()
                        session.query(ItemAuthor).filter_by(item_id=item_id).delete()
                        session.query(Item).filter_by(id=item_id).delete()
                issue_ids = [row[0] for row in session.query(Issue.id).filter_by(unit_id=unit_id).all()]
                if issue_ids:
                    session.query(Section).filter(Section.issue_id.in_(issue_ids)).delete(
                        synchronize_session=False
                    )
                session.query(Issue).filter_by(unit_id=unit_id).delete()
                session.query(Widget).filter_by(unit_id=unit_id).delete()
                session.query(Page).filter_by(unit_id=unit_id).delete()
                session.query(UnitHier).filter_by(ancestor_unit=unit_id).delete()
                session.query(UnitHier).filter_by(unit_id=unit_id).delete()
                session.query(Unit).filter_by(id=unit_id).delete()

            logger.info("Linking units.")
            session.query(UnitHier).delete()
            for edge in edges:
                session.add(
                    UnitHier(
                        ancestor_unit=edge.ancestor,
                        unit_id=edge.descendant,
                        ordering=edge.ordering,
                        is_direct=edge.is_direct,
                    )
                )

    # Items

    def load_prior_states(self, item_ids: Optional[Iterable[str]] = None) -> Dict[str, PriorState]:
        """Stored digests and timestamps, for all items or the given ones."""
        with self.reader() as session:
            query = session.query(Item.id, Item.index_digest, Item.data_digest, Item.last_indexed)
            if item_ids is not None:
                query = query.filter(Item.id.in_(list(item_ids)))
            return {
                row.id: PriorState(
                    index_digest=row.index_digest,
                    data_digest=row.data_digest,
                    last_indexed=row.last_indexed,
                )
                for row in query.all()
            }

    def get_item(self, item_id: str) -> Optional[Item]:
        with self.reader() as session:
            return session.get(Item, item_id)

    def item_authors(self, item_id: str) -> List[ItemAuthor]:
        with self.reader() as session:
            return (
                session.query(ItemAuthor).filter_by(item_id=item_id).order_by(ItemAuthor.ordering).all()
            )

    def unit_links(self, item_id: str) -> List[UnitItem]:
        with self.reader() as session:
            return (
                session.query(UnitItem)
                .filter_by(item_id=item_id)
                .order_by(UnitItem.ordering_of_units)
                .all()
            )

    def touch_item(self, item_id: str, timestamp: datetime) -> None:
        """Update only the last-indexed timestamp of an unchanged item."""
        with self.transaction() as session:
            session.query(Item).filter_by(id=item_id).update({"last_indexed": timestamp})

    def commit_items(self, records: Sequence[CommitRecord], ancestors_of) -> None:
        """Apply a batch of converted items in one transaction.

        Each item's authors, unit links and row are deleted and re-inserted.
        Direct unit links keep their source order; every ancestor of those
        units is linked once more with an ordering from 10000 upward.

        Args:
            records: Converted items from one shipped batch
            ancestors_of: Callable returning the ancestor ids of a unit
        """
        with self.transaction() as session:
            for record in records:
                self._apply_item(session, record, ancestors_of)

    def _apply_item(self, session: Session, record: CommitRecord, ancestors_of) -> None:
        normalized = record.normalized
        item = normalized.item
        session.query(ItemAuthor).filter_by(item_id=item.id).delete()
        session.query(UnitItem).filter_by(item_id=item.id).delete()

        section_id = None
        if normalized.issue is not None and normalized.section is not None:
            section_id = self._resolve_section(session, normalized.issue, normalized.section)

        session.query(Item).filter_by(id=item.id).delete()
        session.flush()
        session.add(
            Item(
                id=item.id,
                source=item.source,
                status=item.status,
                title=item.title,
                content_type=item.content_type,
                genre=item.genre,
                eschol_date=item.eschol_date,
                pub_date=item.pub_date,
                rights=item.rights,
                attrs=item.attrs,
                section=section_id,
                ordering_in_sect=item.ordering_in_sect,
                index_digest=record.index_digest,
                data_digest=record.data_digest,
                last_indexed=record.last_indexed,
            )
        )
        for ordering, author in enumerate(normalized.authors):
            session.add(ItemAuthor(item_id=item.id, ordering=ordering, attrs=author.to_attrs()))

        linked: Set[str] = set()
        inherited = INHERITED_ORDERING_START
        for ordering, unit_id in enumerate(normalized.units):
            if unit_id in linked:
                continue
            session.add(
                UnitItem(unit_id=unit_id, item_id=item.id, ordering_of_units=ordering, is_direct=True)
            )
            linked.add(unit_id)
            for ancestor in ancestors_of(unit_id):
                if ancestor in linked:
                    continue
                session.add(
                    UnitItem(
                        unit_id=ancestor, item_id=item.id, ordering_of_units=inherited, is_direct=False
                    )
                )
                inherited += 1
                linked.add(ancestor)
        session.flush()

    def _resolve_section(self, session: Session, issue: IssueRecord, section: SectionRecord) -> int:
        """Find or create the issue and section, updating changed fields."""
        found = (
            session.query(Issue)
            .filter_by(unit_id=issue.unit_id, volume=issue.volume, issue=issue.issue)
            .first()
        )
        if found is None:
            found = Issue(unit_id=issue.unit_id, volume=issue.volume, issue=issue.issue)
            session.add(found)
        found.pub_date = issue.pub_date
        found.attrs = issue.attrs or None
        session.flush()

        sect = session.query(Section).filter_by(issue_id=found.id, name=section.name).first()
        if sect is None:
            sect = Section(issue_id=found.id, name=section.name)
            session.add(sect)
        sect.ordering = section.ordering
        session.flush()
        return sect.id

    # Issues

    def find_issue(self, unit_id: str, volume: str, issue: Optional[str]) -> Optional[Issue]:
        with self.reader() as session:
            return (
                session.query(Issue).filter_by(unit_id=unit_id, volume=volume, issue=issue).first()
            )

    def latest_issue(self, unit_id: str) -> Optional[Issue]:
        """Most recent issue of a journal by publication date, then issue number."""
        with self.reader() as session:
            return (
                session.query(Issue)
                .filter_by(unit_id=unit_id)
                .order_by(Issue.pub_date.desc(), Issue.issue.desc())
                .first()
            )

    def all_issues(self) -> List[Issue]:
        with self.reader() as session:
            return session.query(Issue).all()

    def all_sections(self) -> List[Section]:
        with self.reader() as session:
            return session.query(Section).all()

    def sweep_orphans(self) -> Tuple[int, int]:
        """Delete sections no item refers to, then issues no section refers to.

        Returns:
            Tuple of (sections_deleted, issues_deleted)
        """
        with self.transaction() as session:
            sections = session.execute(
                text(
                    "DELETE FROM sections WHERE id NOT IN "
                    "(SELECT DISTINCT section FROM items WHERE section IS NOT NULL)"
                )
            ).rowcount
            issues = session.execute(
                text(
                    "DELETE FROM issues WHERE id NOT IN "
                    "(SELECT DISTINCT issue_id FROM sections WHERE issue_id IS NOT NULL)"
                )
            ).rowcount
        return sections, issues

    # Pages and informational index

    def save_page(self, unit_id: str, slug: str, name: str, title: Optional[str], attrs: Dict) -> None:
        with self.transaction() as session:
            page = session.query(Page).filter_by(unit_id=unit_id, slug=slug).first()
            if page is None:
                page = Page(unit_id=unit_id, slug=slug)
                session.add(page)
            page.name = name
            page.title = title
            page.attrs = attrs

    def all_pages(self) -> List[Page]:
        with self.reader() as session:
            return session.query(Page).order_by(Page.unit_id, Page.slug).all()

    def info_digests(self) -> Dict[Tuple[str, str], str]:
        """Stored digest per (unit_id, page_slug); unit documents use an empty slug."""
        with self.reader() as session:
            return {
                (row.unit_id, row.page_slug): row.index_digest for row in session.query(InfoIndex).all()
            }

    def apply_info_updates(
        self, upserts: Sequence[Tuple[str, str, str]], deletes: Sequence[Tuple[str, str]]
    ) -> None:
        """Record shipped info documents: (unit, slug, digest) upserts and (unit, slug) deletes."""
        now = datetime.now()
        with self.transaction() as session:
            for unit_id, slug, digest in upserts:
                row = session.get(InfoIndex, (unit_id, slug))
                if row is None:
                    row = InfoIndex(unit_id=unit_id, page_slug=slug)
                    session.add(row)
                row.index_digest = digest
                row.freshness = now
            for unit_id, slug in deletes:
                session.query(InfoIndex).filter_by(unit_id=unit_id, page_slug=slug).delete()
