"""SQLAlchemy ORM models for the converted repository schema."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Unit(Base):
    """Organizational node: root, campus, department, series or journal."""

    __tablename__ = "units"

    id = Column(String(80), primary_key=True)
    type = Column(String(30), nullable=False)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    attrs = Column(JSON)


class UnitHier(Base):
    """Closure-table row linking a unit to one of its ancestors."""

    __tablename__ = "unit_hier"

    ancestor_unit = Column(String(80), ForeignKey("units.id"), primary_key=True)
    unit_id = Column(String(80), ForeignKey("units.id"), primary_key=True)
    ordering = Column(Integer, nullable=True)
    is_direct = Column(Boolean, nullable=False)


class Issue(Base):
    __tablename__ = "issues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    unit_id = Column(String(80), ForeignKey("units.id"), nullable=False)
    volume = Column(String(30), nullable=False)
    issue = Column(String(30), nullable=True)
    pub_date = Column(Date, nullable=True)
    attrs = Column(JSON)

    __table_args__ = (UniqueConstraint("unit_id", "volume", "issue", name="uq_issue"),)


class Section(Base):
    __tablename__ = "sections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    issue_id = Column(Integer, ForeignKey("issues.id"), nullable=False)
    name = Column(String(255), nullable=False)
    ordering = Column(Integer, nullable=True)

    __table_args__ = (UniqueConstraint("issue_id", "name", name="uq_section"),)


class Item(Base):
    """A content record plus its change-detection digests."""

    __tablename__ = "items"

    id = Column(String(20), primary_key=True)
    source = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    title = Column(Text)
    content_type = Column(String(100))
    genre = Column(String(30))
    eschol_date = Column(Date)
    pub_date = Column(Date)
    rights = Column(String(30))
    attrs = Column(JSON)
    section = Column(Integer, ForeignKey("sections.id"), nullable=True)
    ordering_in_sect = Column(Integer, nullable=True)
    index_digest = Column(String(64))
    data_digest = Column(String(64))
    last_indexed = Column(DateTime)


class ItemAuthor(Base):
    __tablename__ = "item_authors"

    item_id = Column(String(20), ForeignKey("items.id"), primary_key=True)
    ordering = Column(Integer, primary_key=True)
    attrs = Column(JSON, nullable=False)


class UnitItem(Base):
    """Links an item to a unit it belongs to, directly or through an ancestor."""

    __tablename__ = "unit_items"

    unit_id = Column(String(80), ForeignKey("units.id"), primary_key=True)
    item_id = Column(String(20), ForeignKey("items.id"), primary_key=True)
    ordering_of_units = Column(Integer, nullable=False)
    is_direct = Column(Boolean, nullable=False)


class Widget(Base):
    __tablename__ = "widgets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    unit_id = Column(String(80), ForeignKey("units.id"), nullable=False)
    kind = Column(String(40), nullable=False)
    region = Column(String(40), nullable=False)
    ordering = Column(Integer, nullable=False)
    attrs = Column(JSON)


class Page(Base):
    """CMS page belonging to a unit."""

    __tablename__ = "pages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    unit_id = Column(String(80), ForeignKey("units.id"), nullable=False)
    slug = Column(String(80), nullable=False)
    name = Column(String(255), nullable=False)
    title = Column(String(255))
    attrs = Column(JSON)

    __table_args__ = (UniqueConstraint("unit_id", "slug", name="uq_page"),)


class InfoIndex(Base):
    """Digest of each unit and page document sent to the search index.

    Unit documents use an empty ``page_slug``.
    """

    __tablename__ = "info_index"

    unit_id = Column(String(80), primary_key=True)
    page_slug = Column(String(80), primary_key=True, default="")
    freshness = Column(DateTime, nullable=False)
    index_digest = Column(String(64), nullable=False)
