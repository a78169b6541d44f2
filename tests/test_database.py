"""Tests for the relational store: item commits, issues and consistency sweeps."""

from datetime import date, datetime

from sqlalchemy import text

from reposync.context import RunContext
from reposync.ingestion.sweeper import ConsistencySweeper
from reposync.models import IssueRecord, SectionRecord
from reposync.normalization.issues import IssueRightsResolver


def test_create_tables(database):
    """Test that every table of the schema exists."""
    with database.reader() as session:
        names = {row[0] for row in session.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))}

    assert {
        "units",
        "unit_hier",
        "issues",
        "sections",
        "items",
        "item_authors",
        "unit_items",
        "widgets",
        "pages",
        "info_index",
    } <= names


def test_commit_items_writes_item_authors_and_links(seeded_database, commit_record):
    context = RunContext.from_database(seeded_database)

    seeded_database.commit_items([commit_record("qt00000001")], context.ancestors_of)

    item = seeded_database.get_item("qt00000001")
    assert item.title == "Title of qt00000001"
    assert item.index_digest == "i" * 64
    assert item.last_indexed == datetime(2024, 1, 1)
    assert [a.attrs["name"] for a in seeded_database.item_authors("qt00000001")] == [
        "Lovelace, Ada",
        "Babbage, Charles",
    ]

    links = seeded_database.unit_links("qt00000001")
    assert links[0].unit_id == "ucla_history"
    assert links[0].is_direct
    assert links[0].ordering_of_units == 0
    inherited = links[1:]
    assert {link.unit_id for link in inherited} == {"ucla", "root"}
    assert all(not link.is_direct and link.ordering_of_units >= 10000 for link in inherited)


def test_recommit_replaces_links(seeded_database, commit_record):
    context = RunContext.from_database(seeded_database)
    seeded_database.commit_items([commit_record("qt00000001")], context.ancestors_of)

    seeded_database.commit_items(
        [commit_record("qt00000001", units=("ucla_journal",))], context.ancestors_of
    )

    assert {link.unit_id for link in seeded_database.unit_links("qt00000001")} == {
        "ucla_journal",
        "ucla",
        "root",
    }
    assert len(seeded_database.item_authors("qt00000001")) == 2


def test_items_in_same_issue_share_issue_and_section(seeded_database, commit_record):
    context = RunContext.from_database(seeded_database)
    issue = IssueRecord(unit_id="ucla_journal", volume="3", issue="2", pub_date=date(2020, 1, 1))
    section = SectionRecord(name="Research")

    seeded_database.commit_items(
        [
            commit_record("qt00000001", units=("ucla_journal",), issue=issue, section=section),
            commit_record("qt00000002", units=("ucla_journal",), issue=issue, section=section),
        ],
        context.ancestors_of,
    )

    assert len(seeded_database.all_issues()) == 1
    assert len(seeded_database.all_sections()) == 1
    assert seeded_database.get_item("qt00000001").section == seeded_database.get_item("qt00000002").section


def test_touch_item_only_updates_timestamp(seeded_database, commit_record):
    context = RunContext.from_database(seeded_database)
    seeded_database.commit_items([commit_record("qt00000001")], context.ancestors_of)

    seeded_database.touch_item("qt00000001", datetime(2024, 3, 1))

    prior = seeded_database.load_prior_states()["qt00000001"]
    assert prior.last_indexed == datetime(2024, 3, 1)
    assert prior.index_digest == "i" * 64
    assert prior.data_digest == "d" * 64


def test_load_prior_states_for_selected_items(seeded_database, commit_record):
    context = RunContext.from_database(seeded_database)
    seeded_database.commit_items(
        [commit_record("qt00000001"), commit_record("qt00000002")], context.ancestors_of
    )

    assert set(seeded_database.load_prior_states(["qt00000002", "qt99999999"])) == {"qt00000002"}


def test_issue_rights_inherit_from_latest_issue(seeded_database, commit_record):
    """Test that a new issue takes the rights recorded on the journal's previous issue."""
    context = RunContext.from_database(seeded_database)
    earlier = IssueRecord(
        unit_id="ucla_journal", volume="1", issue="1", pub_date=date(2019, 1, 1), attrs={"rights": "CC BY"}
    )
    seeded_database.commit_items(
        [commit_record("qt00000001", units=("ucla_journal",), issue=earlier, section=SectionRecord())],
        context.ancestors_of,
    )
    resolver = IssueRightsResolver(seeded_database, context)

    assert resolver.resolve("ucla_journal", "2", "1", None) == "CC BY"
    assert resolver.resolve("ucla_journal", "1", "1", "CC BY-NC") == "CC BY"


def test_issue_rights_existing_issue_without_rights_wins(seeded_database, commit_record):
    context = RunContext.from_database(seeded_database)
    existing = IssueRecord(unit_id="ucla_journal", volume="1", issue="1", pub_date=date(2019, 1, 1))
    seeded_database.commit_items(
        [commit_record("qt00000001", units=("ucla_journal",), issue=existing, section=SectionRecord())],
        context.ancestors_of,
    )

    resolver = IssueRightsResolver(seeded_database, context)

    assert resolver.resolve("ucla_journal", "1", "1", "CC BY") is None


def test_issue_rights_unit_default_and_item_fallback(seeded_database):
    seeded_database.save_unit(
        "ucla_journal", "journal", "UCLA Journal", "active", {"default_issue": {"rights": "CC BY-SA"}}, []
    )
    seeded_database.save_unit("other_journal", "journal", "Other", "active", {}, [])
    context = RunContext.from_database(seeded_database)
    resolver = IssueRightsResolver(seeded_database, context)

    assert resolver.resolve("ucla_journal", "9", None, "CC BY") == "CC BY-SA"
    assert resolver.resolve("other_journal", "1", None, "CC BY-ND") == "CC BY-ND"


def test_sweep_removes_orphaned_sections_and_issues(seeded_database, commit_record):
    """Test that an issue no item refers to anymore is removed by the sweep."""
    context = RunContext.from_database(seeded_database)
    issue = IssueRecord(unit_id="ucla_journal", volume="3", issue="2")
    seeded_database.commit_items(
        [commit_record("qt00000001", units=("ucla_journal",), issue=issue, section=SectionRecord())],
        context.ancestors_of,
    )
    seeded_database.commit_items([commit_record("qt00000001", units=("ucla_journal",))], context.ancestors_of)
    sweeper = ConsistencySweeper(seeded_database, every=2)

    assert sweeper.batch_committed() is False
    assert len(seeded_database.all_issues()) == 1
    assert sweeper.batch_committed() is True

    assert seeded_database.all_issues() == []
    assert seeded_database.all_sections() == []
    assert sweeper.sweeps == 1
    assert sweeper.sweep() == (0, 0)


def test_sweep_keeps_referenced_issues(seeded_database, commit_record):
    context = RunContext.from_database(seeded_database)
    issue = IssueRecord(unit_id="ucla_journal", volume="3", issue="2")
    seeded_database.commit_items(
        [commit_record("qt00000001", units=("ucla_journal",), issue=issue, section=SectionRecord())],
        context.ancestors_of,
    )

    assert seeded_database.sweep_orphans() == (0, 0)
    assert len(seeded_database.all_issues()) == 1


def test_info_digest_bookkeeping(seeded_database):
    seeded_database.apply_info_updates([("ucla", "", "a" * 64), ("ucla", "about", "b" * 64)], [])
    seeded_database.apply_info_updates([("ucla", "", "c" * 64)], [("ucla", "about")])

    assert seeded_database.info_digests() == {("ucla", ""): "c" * 64}
