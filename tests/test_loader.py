"""Tests for metadata loading, dialect handling and item normalization."""

import logging
from datetime import date

import pytest
from lxml import etree

from reposync.config import ConvertConfig
from reposync.context import RunContext
from reposync.errors import FatalConfigurationError, MalformedMetadataError
from reposync.models import Dialect
from reposync.normalization.issues import IssueRightsResolver
from reposync.normalization.loader import (
    DialectTransformer,
    MetadataNormalizer,
    detect_dialect,
    html_at,
    parse_xml,
    text_at,
)

ETD_STYLESHEET = """<xsl:stylesheet version="1.0" xmlns:xsl="http://www.w3.org/1999/XSL/Transform">
  <xsl:template match="/DISS_submission">
    <record state="published" dateStamp="{DISS_description/DISS_dates/DISS_comp_date}">
      <source>etd</source>
      <title><xsl:value-of select="DISS_description/DISS_title"/></title>
      <authors>
        <author>
          <fname><xsl:value-of select="DISS_authorship/DISS_author/DISS_name/DISS_fname"/></fname>
          <lname><xsl:value-of select="DISS_authorship/DISS_author/DISS_name/DISS_surname"/></lname>
        </author>
      </authors>
      <context><entity id="ucla_history"/></context>
      <content><file path="content/base.pdf"><mimeType>application/pdf</mimeType></file></content>
    </record>
  </xsl:template>
</xsl:stylesheet>
"""

ETD_RECORD = """<DISS_submission>
  <DISS_authorship><DISS_author><DISS_name>
    <DISS_surname>Hopper</DISS_surname><DISS_fname>Grace</DISS_fname>
  </DISS_name></DISS_author></DISS_authorship>
  <DISS_description>
    <DISS_title>On Compilers</DISS_title>
    <DISS_dates><DISS_comp_date>2018</DISS_comp_date></DISS_dates>
  </DISS_description>
</DISS_submission>
"""


@pytest.mark.parametrize(
    "xml,dialect",
    [
        ("<record/>", Dialect.NATIVE),
        ("<DISS_submission/>", Dialect.ETD),
        ('<mets PROFILE="http://www.loc.gov/mets/profiles/00000026.html"/>', Dialect.ETD),
        ("<mets/>", Dialect.BIOMED),
        ("<Publisher/>", Dialect.SPRINGER),
    ],
)
def test_detect_dialect(xml, dialect):
    assert detect_dialect(etree.fromstring(xml)) is dialect


def test_parse_xml_strips_namespaces(tmp_path):
    path = tmp_path / "ns.xml"
    path.write_text('<a:record xmlns:a="urn:x" xmlns:b="urn:y"><a:title b:lang="en">T</a:title></a:record>')

    root = parse_xml(path)

    assert root.tag == "record"
    assert root.find("title").get("lang") == "en"


def test_text_and_html_helpers():
    root = etree.fromstring("<r><t>  plain  </t><h>Some <i>markup</i> here</h><e> </e></r>")

    assert text_at(root, "./t") == "plain"
    assert text_at(root, "./e") is None
    assert text_at(root, "./missing") is None
    assert html_at(root, "./h") == "Some <i>markup</i> here"


def test_normalize_native_record(normalizer, write_item):
    write_item("qt00000001")

    normalized = normalizer.normalize("qt00000001")

    item = normalized.item
    assert normalized.dialect is Dialect.NATIVE
    assert item.source == "oa_harvester"
    assert item.status == "published"
    assert item.title == "A Study of <i>Things</i>"
    assert item.genre == "article"
    assert item.rights == "CC BY"
    assert item.content_type == "application/pdf"
    assert item.pub_date == date(2019, 3, 15)
    assert item.eschol_date == date(2020, 5, 1)
    assert item.attrs["disciplines"] == ["Life Sciences"]
    assert item.attrs["language"] == "en"
    assert item.attrs["is_peer_reviewed"] is True
    assert item.attrs["abstract"] == "<p>We study things.</p>"
    assert "suppress_content" not in item.attrs
    assert [author.name for author in normalized.authors] == ["Lovelace, Ada", "Babbage, Charles"]
    assert normalized.authors[0].details == {"fname": "Ada", "lname": "Lovelace", "email": "ada@example.org"}
    assert normalized.units == ["ucla_history"]
    assert normalized.issue is None


def test_unknown_and_pseudo_units_are_dropped(normalizer, write_item, caplog):
    write_item("qt00000001", units=("ucla_history", "postprints", "no_such_unit"))

    with caplog.at_level(logging.WARNING):
        normalized = normalizer.normalize("qt00000001")

    assert normalized.units == ["ucla_history"]
    assert "unknown unit 'no_such_unit'" in caplog.text
    assert "postprints" not in caplog.text


def test_withdrawn_item_is_suppressed(normalizer, write_item):
    write_item(
        "qt00000001",
        state="withdrawn",
        body_extra='<history><stateChange state="withdrawn" date="2021-01-02T10:00:00"><comment>Dup</comment></stateChange></history>',
    )

    normalized = normalizer.normalize("qt00000001")

    assert normalized.suppress_content
    assert normalized.item.content_type is None


def test_missing_source_is_malformed(normalizer, write_item):
    write_item("qt00000001", source=None)

    with pytest.raises(MalformedMetadataError, match="no source found"):
        normalizer.normalize("qt00000001")


def test_unparsable_metadata_is_malformed(normalizer, write_item):
    write_item("qt00000001", xml="<record><unclosed></record>" + " " * 60)

    with pytest.raises(MalformedMetadataError, match="unparsable"):
        normalizer.normalize("qt00000001")


def test_journal_item_gets_issue_and_section(normalizer, write_item):
    write_item(
        "qt00000001",
        units=("ucla_journal",),
        context_extra=(
            "<volume>3</volume><issue>2</issue><sectionHeader>Research</sectionHeader>"
            "<publicationOrder>4</publicationOrder><issueTitle>Special Issue</issueTitle>"
        ),
    )

    normalized = normalizer.normalize("qt00000001")

    assert normalized.issue.unit_id == "ucla_journal"
    assert normalized.issue.volume == "3"
    assert normalized.issue.issue == "2"
    assert normalized.issue.attrs["title"] == "Special Issue"
    assert normalized.issue.attrs["rights"] == "CC BY"
    assert normalized.issue.pub_date == date(2019, 3, 15)
    assert normalized.section.name == "Research"
    assert normalized.section.ordering == 4
    assert normalized.item.ordering_in_sect == 4


def test_external_journal_attributes(normalizer, write_item):
    write_item(
        "qt00000001",
        context_extra="<journal>Nature</journal><volume>12</volume><issn>0028-0836</issn>",
    )

    normalized = normalizer.normalize("qt00000001")

    assert normalized.issue is None
    assert normalized.item.attrs["ext_journal"] == {"name": "Nature", "volume": "12", "issn": "0028-0836"}


def test_supplemental_files_on_disk_are_summarized(normalizer, write_item, layout):
    write_item(
        "qt00000001",
        body_extra=(
            "<content><supplemental>"
            '<file path="content/supp/clip.mp3"><mimeType>audio/mpeg</mimeType><title>Clip</title></file>'
            '<file path="content/supp/missing.zip"><mimeType>application/zip</mimeType></file>'
            '<dataStatement type="publicRepo">https://example.org/data</dataStatement>'
            "</supplemental></content>"
        ),
    )
    supp = layout.item_path("qt00000001", "content/supp/clip.mp3")
    supp.parent.mkdir(parents=True)
    supp.write_bytes(b"ID3 not really audio")

    normalized = normalizer.normalize("qt00000001")

    assert normalized.item.attrs["supp_files"] == [
        {"file": "clip.mp3", "mimeType": "audio/mpeg", "title": "Clip"}
    ]
    assert normalized.supp_summary_types == ["audio"]
    assert normalized.item.attrs["data_avail_stmnt"] == {"type": "publicRepo", "url": "https://example.org/data"}


def test_foreign_dialect_without_transformer_is_fatal(normalizer, write_item):
    write_item("qt00000001", xml=ETD_RECORD)

    with pytest.raises(FatalConfigurationError):
        normalizer.normalize("qt00000001")


def test_etd_record_is_transformed(seeded_database, layout, write_item, tmp_path):
    stylesheet = tmp_path / "etd.xsl"
    stylesheet.write_text(ETD_STYLESHEET)
    config = ConvertConfig(etd_xsl=str(stylesheet), normalized_dir=str(tmp_path / "normalized"))
    context = RunContext.from_database(seeded_database)
    normalizer = MetadataNormalizer(
        layout,
        context,
        IssueRightsResolver(seeded_database, context),
        transformer=DialectTransformer.from_config(config, layout),
    )
    write_item("qt00000002", xml=ETD_RECORD)

    normalized = normalizer.normalize("qt00000002")

    assert normalized.dialect is Dialect.ETD
    assert normalized.item.genre == "dissertation"
    assert normalized.item.title == "On Compilers"
    assert normalized.item.pub_date == date(2018, 1, 1)
    assert [author.name for author in normalized.authors] == ["Hopper, Grace"]
    assert layout.item_path("qt00000002", "base.norm.xml", root=str(tmp_path / "normalized")).is_file()


def test_missing_stylesheet_is_fatal(layout, tmp_path):
    transformer = DialectTransformer({Dialect.BIOMED: None}, layout, str(tmp_path))

    with pytest.raises(FatalConfigurationError, match="BioMed"):
        transformer.transform(Dialect.BIOMED, "qt00000001", tmp_path / "meta.xml")
