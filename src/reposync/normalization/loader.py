"""Metadata normalizer: turns legacy item XML into canonical records."""

import logging
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from lxml import etree
from PIL import UnidentifiedImageError

from reposync.context import RunContext
from reposync.errors import FatalConfigurationError, MalformedMetadataError, UnknownUnitReference
from reposync.models import (
    AuthorRecord,
    Dialect,
    IssueRecord,
    ItemRecord,
    NormalizedItem,
    SectionRecord,
    UnitType,
)
from reposync.normalization.fields import (
    format_author_name,
    is_embargoed,
    map_disciplines,
    mime_to_summary_type,
    normalize_language,
    parse_date,
    translate_rights,
)
from reposync.normalization.issues import IssueRightsResolver
from reposync.source import SourceLayout
from reposync.storage.asset_store import guess_mime_type
from reposync.storage.thumbnails import make_thumbnail

logger = logging.getLogger(__name__)

ETD_METS_PROFILE = "http://www.loc.gov/mets/profiles/00000026.html"
HAS_PART = "http://purl.org/dc/terms/hasPart"
PSEUDO_UNITS = {
    "postprints",
    "demo-journal",
    "test-journal",
    "unknown",
    "withdrawn",
    "uciem_westjem_aip",
}

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, load_dtd=False, huge_tree=True)


def parse_xml(path: Path) -> etree._Element:
    """Parse an XML file and return its root with all namespaces removed."""
    root = etree.parse(str(path), _PARSER).getroot()
    return strip_namespaces(root)


def strip_namespaces(root: etree._Element) -> etree._Element:
    for element in root.iter():
        if not isinstance(element.tag, str):
            continue
        element.tag = etree.QName(element).localname
        for name in list(element.attrib):
            if name.startswith("{"):
                element.attrib[etree.QName(name).localname] = element.attrib.pop(name)
    etree.cleanup_namespaces(root)
    return root


def detect_dialect(root: etree._Element) -> Dialect:
    """Identify the metadata dialect from the document's root element."""
    if root.tag.startswith("DISS_submission"):
        return Dialect.ETD
    if root.tag == "mets":
        if root.get("PROFILE") == ETD_METS_PROFILE:
            return Dialect.ETD
        return Dialect.BIOMED
    if root.tag == "Publisher":
        return Dialect.SPRINGER
    return Dialect.NATIVE


def text_at(element: etree._Element, path: str) -> Optional[str]:
    """Stripped text of the first node matching ``path``, or None if empty."""
    found = element.xpath(path)
    if not found:
        return None
    node = found[0]
    value = node if isinstance(node, str) else "".join(node.itertext())
    value = value.strip()
    return value or None


def html_at(element: etree._Element, path: str) -> Optional[str]:
    """Inner markup of the first node matching ``path``."""
    found = element.xpath(path)
    if not found:
        return None
    node = found[0]
    parts = [node.text or ""]
    for child in node:
        parts.append(etree.tostring(child, encoding="unicode", with_tail=True))
    value = "".join(parts).strip()
    return value or None


class DialectTransformer:
    """Applies the XSLT normalizer of a foreign dialect, caching compiled stylesheets."""

    def __init__(self, stylesheets: Dict[Dialect, Optional[str]], layout: SourceLayout, output_dir: str):
        self.stylesheets = stylesheets
        self.layout = layout
        self.output_dir = output_dir
        self._compiled: Dict[Dialect, etree.XSLT] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, layout: SourceLayout) -> "DialectTransformer":
        stylesheets = {
            dialect: config.xsl_for(dialect.value) for dialect in Dialect if dialect.needs_transform
        }
        return cls(stylesheets, layout, config.normalized_dir)

    def _stylesheet(self, dialect: Dialect) -> etree.XSLT:
        with self._lock:
            if dialect not in self._compiled:
                path = self.stylesheets.get(dialect)
                if not path:
                    raise FatalConfigurationError(f"no normalizer configured for {dialect.value}")
                self._compiled[dialect] = etree.XSLT(etree.parse(path, _PARSER))
            return self._compiled[dialect]

    def transform(self, dialect: Dialect, item_id: str, meta_path: Path) -> etree._Element:
        """Run raw metadata through the dialect's stylesheet.

        The normalized document is also written under ``output_dir`` for
        inspection.

        Returns:
            Root of the normalized (native-shaped) document
        """
        stylesheet = self._stylesheet(dialect)
        result = stylesheet(etree.parse(str(meta_path), _PARSER))
        out_path = self.layout.item_path(item_id, "base.norm.xml", root=self.output_dir)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        result.write(str(out_path), pretty_print=True, xml_declaration=True, encoding="utf-8")
        root = result.getroot()
        if root is None:
            raise MalformedMetadataError(item_id, f"{dialect.value} normalizer produced no output")
        return strip_namespaces(root)


class MetadataNormalizer:
    """Builds a NormalizedItem from one item's metadata file.

    Args:
        layout: Source tree layout
        context: Unit table and ancestor map for this run
        rights_resolver: Issue rights cascade
        transformer: XSLT step for foreign dialects
        asset_store: Optional store for thumbnails and issue covers
        database: Optional RepoDatabase, used to reuse existing thumbnails
        issue_covers_dir: Directory of ``<unit>/<VV>_<II>_cover.png`` images
        brand_dir: Directory of per-unit brand files
    """

    def __init__(
        self,
        layout: SourceLayout,
        context: RunContext,
        rights_resolver: IssueRightsResolver,
        transformer: Optional[DialectTransformer] = None,
        asset_store=None,
        database=None,
        issue_covers_dir: Optional[str] = None,
        brand_dir: Optional[str] = None,
    ):
        self.layout = layout
        self.context = context
        self.rights_resolver = rights_resolver
        self.transformer = transformer
        self.asset_store = asset_store
        self.database = database
        self.issue_covers_dir = Path(issue_covers_dir) if issue_covers_dir else None
        self.brand_dir = Path(brand_dir) if brand_dir else None
        self._cover_cache: Dict[Tuple[str, str, str], Optional[Dict[str, Any]]] = {}
        self._numbering_cache: Dict[str, Dict[str, Any]] = {}

    def normalize(self, item_id: str, log: logging.Logger = logger) -> NormalizedItem:
        """Parse, detect dialect, transform if needed and extract canonical fields.

        Raises:
            MalformedMetadataError: If the metadata is missing, unparsable, or
                lacks a required field
        """
        meta_path = self.layout.metadata_path(item_id)
        if not meta_path.is_file():
            raise MalformedMetadataError(item_id, "missing metadata file")
        try:
            root = parse_xml(meta_path)
        except etree.XMLSyntaxError as e:
            raise MalformedMetadataError(item_id, f"unparsable metadata: {e}")

        dialect = detect_dialect(root)
        log.debug(f"dialect {dialect.value}")
        if dialect.needs_transform:
            if self.transformer is None:
                raise FatalConfigurationError(f"no dialect transformer for {dialect.value}")
            root = self.transformer.transform(dialect, item_id, meta_path)
        return self.parse_native(item_id, root, dialect, log)

    # Native record parsing

    def parse_native(
        self, item_id: str, meta: etree._Element, dialect: Dialect, log: logging.Logger = logger
    ) -> NormalizedItem:
        attrs: Dict[str, Any] = {}
        attrs["addl_info"] = html_at(meta, "./comments")
        attrs["author_hide"] = bool(meta.xpath("./authors[@hideAuthor]"))
        attrs["bepress_id"] = text_at(meta, "./context/bpid")
        attrs["buy_link"] = text_at(meta, "./context/buyLink")
        attrs["custom_citation"] = text_at(meta, "./customCitation")
        attrs["doi"] = text_at(meta, "./doi")
        embargo_date = parse_date(meta.get("embargoDate"), log)
        attrs["embargo_date"] = embargo_date.isoformat() if embargo_date else None
        attrs["is_peer_reviewed"] = meta.get("peerReview") == "yes"
        attrs["is_undergrad"] = meta.get("underGrad") == "yes"
        attrs["isbn"] = text_at(meta, "./context/isbn")
        attrs["language"] = normalize_language(text_at(meta, "./context/language"))
        attrs["local_ids"] = [
            {"type": el.get("type"), "id": (el.text or "").strip()} for el in meta.xpath("./context/localID")
        ]
        attrs["orig_citation"] = text_at(meta, "./originalCitation")
        attrs["pub_web_loc"] = [
            (el.text or "").strip() for el in meta.xpath("./context/publishedWebLocation")
        ]
        attrs["publisher"] = text_at(meta, "./publisher")
        submission = parse_date(text_at(meta, "./history/submissionDate"), log) or parse_date(
            meta.get("dateStamp"), log
        )
        attrs["submission_date"] = submission.isoformat() if submission else None
        suppress = self.should_suppress_content(item_id, meta, log)
        attrs["suppress_content"] = suppress

        download_el = meta.xpath("./content/file[@disableDownload]")
        if download_el:
            disable = parse_date(download_el[0].get("disableDownload"), log)
            attrs["disable_download"] = disable.isoformat() if disable else None

        if meta.get("state") == "withdrawn":
            change = meta.xpath("./history/stateChange[@state='withdrawn']")
            if change and change[0].get("date"):
                attrs["withdrawn_date"] = re.sub(r"T.+$", "", change[0].get("date"))
            else:
                log.warning("no withdraw date found; using stateDate.")
                attrs["withdrawn_date"] = meta.get("stateDate")
            attrs["withdrawn_message"] = text_at(meta, "./history/stateChange[@state='withdrawn']/comment")

        abstract = html_at(meta, "./abstract")
        if abstract and len(abstract) > 3:
            attrs["abstract"] = abstract

        attrs["disciplines"] = map_disciplines(meta.xpath("./disciplines/discipline"), log)

        supp_files, supp_types = self.summarize_supps(item_id, meta, log)
        attrs["supp_files"] = supp_files
        attrs["data_avail_stmnt"] = self.parse_data_availability(meta)

        rights = translate_rights(text_at(meta, "./rights"), log)

        issue, section, ext_journal, rights = self.parse_issue(item_id, meta, rights, log)
        attrs["ext_journal"] = ext_journal

        pdf_path = self.layout.item_path(item_id, "content/base.pdf")
        pdf_exists = pdf_path.is_file()
        if not suppress and pdf_exists:
            attrs["thumbnail"] = self.pdf_thumbnail(item_id, meta, pdf_path, log)
        if pdf_exists:
            if dialect is Dialect.ETD:
                self.add_manifest_paths(item_id, attrs, log)
            attrs["content_length"] = pdf_path.stat().st_size

        attrs = {k: v for k, v in attrs.items() if not _is_empty(v)}

        content_file = meta.xpath("/record/content/file") or meta.xpath("./content/file")
        declared_type = None
        if content_file:
            node = content_file[0]
            native = node.find("native")
            if native is not None:
                node = native
            declared_type = text_at(node, "./mimeType")

        source = text_at(meta, "./source")
        if source is None:
            raise MalformedMetadataError(item_id, "no source found")
        embargoed = is_embargoed(embargo_date)
        if attrs.get("withdrawn_date"):
            status = "withdrawn"
        elif embargoed:
            status = "embargoed"
        else:
            status = meta.get("state")
            if not status:
                raise MalformedMetadataError(item_id, "no state in record")

        if suppress or attrs.get("withdrawn_date") or embargoed or meta.get("type") == "non-textual":
            content_type = None
        elif pdf_exists:
            content_type = "application/pdf"
        else:
            content_type = declared_type

        if not suppress and content_type is None and attrs.get("supp_files"):
            genre = "multimedia"
        elif dialect is Dialect.ETD:
            genre = "dissertation"
        elif meta.get("type"):
            genre = meta.get("type").replace("paper", "article")
        else:
            genre = "article"

        eschol_date = parse_date(text_at(meta, "./history/escholPublicationDate"), log) or parse_date(
            meta.get("dateStamp"), log
        )
        pub_date = parse_date(text_at(meta, "./history/originalPublicationDate"), log) or eschol_date
        if pub_date is None:
            raise MalformedMetadataError(item_id, "no publication date")

        order_text = text_at(meta, "./context/publicationOrder")
        item = ItemRecord(
            id=item_id,
            source=source,
            status=status,
            title=html_at(meta, "./title"),
            content_type=content_type,
            genre=genre,
            eschol_date=eschol_date,
            pub_date=pub_date,
            rights=rights,
            ordering_in_sect=int(order_text) if order_text and order_text.isdigit() else None,
            attrs=attrs,
        )
        return NormalizedItem(
            item=item,
            authors=self.get_authors(item_id, meta, log),
            units=self.item_units(meta, log),
            issue=issue,
            section=section,
            supp_summary_types=sorted(supp_types),
            dialect=dialect,
        )

    def should_suppress_content(self, item_id: str, meta: etree._Element, log: logging.Logger) -> bool:
        """True for withdrawn items and items with no content anywhere."""
        if meta.get("state") == "withdrawn":
            return True
        if meta.xpath("./content/file[@path]") or meta.xpath("./content/supplemental/file[@path]"):
            return False
        if text_at(meta, "./context/publishedWebLocation"):
            return False
        if self.layout.item_path(item_id, "content/base.pdf").exists():
            return False
        log.warning("content-free item")
        return True

    def get_authors(self, item_id: str, meta: etree._Element, log: logging.Logger) -> List[AuthorRecord]:
        """Structured authors when present, else the flat creator list."""
        if not meta.xpath("//authors"):
            return [
                AuthorRecord(name=name)
                for name in ("".join(el.itertext()).strip() for el in meta.xpath("//creator"))
                if name
            ]
        authors = []
        for element in meta.xpath("//authors/*"):
            if element.tag == "organization":
                name = "".join(element.itertext()).strip()
                authors.append(AuthorRecord(name=name, details={"organization": name}))
            elif element.tag == "author":
                name = format_author_name(element, log)
                if name is None:
                    continue
                details = {}
                for child in element:
                    if not isinstance(child.tag, str):
                        continue
                    value = "".join(child.itertext()).strip()
                    if not value:
                        continue
                    key = f"{child.get('type')}_id" if child.tag == "identifier" else child.tag
                    if key != "name":
                        details[key] = value
                authors.append(AuthorRecord(name=name, details=details))
            else:
                raise MalformedMetadataError(item_id, f"unknown element {element.tag!r} within authors")
        return authors

    def item_units(self, meta: etree._Element, log: logging.Logger) -> List[str]:
        units = []
        for entity in meta.xpath("./context/entity[@id]"):
            unit_id = entity.get("id")
            if unit_id in PSEUDO_UNITS:
                continue
            if not self.context.is_known(unit_id):
                log.warning(str(UnknownUnitReference(unit_id)))
                continue
            units.append(unit_id)
        return units

    # Supplemental files

    def summarize_supps(
        self, item_id: str, meta: etree._Element, log: logging.Logger
    ) -> Tuple[Optional[List[Dict[str, str]]], Set[str]]:
        """Describe supplemental files that exist on disk and bucket their types."""
        supps = []
        summary_types: Set[str] = set()
        for file_el in meta.xpath("//content/supplemental/file"):
            supp = {"file": re.sub(r".*content/supp/", "", file_el.get("path") or "")}
            for child in file_el:
                if not isinstance(child.tag, str):
                    continue
                if child.tag == "mimeType" and (child.text or "").strip() == "unknown":
                    continue
                supp[child.tag] = (child.text or "").strip()
            path = self.layout.item_path(item_id, f"content/supp/{supp['file']}")
            if not path.is_file():
                log.warning(f"can't find supp file {supp['file']}")
                continue
            mime = guess_mime_type(path)
            if mime:
                supp["mimeType"] = mime
            summary_types.add(mime_to_summary_type(mime or supp.get("mimeType")))
            supps.append(supp)
        return (supps or None), summary_types

    def parse_data_availability(self, meta: etree._Element) -> Optional[Dict[str, str]]:
        found = meta.xpath("./content/supplemental/dataStatement")
        if not found:
            return None
        element = found[0]
        kind = element.get("type")
        statement = {"type": kind}
        value = (element.text or "").strip()
        if value:
            key = {"publicRepo": "url", "notAvail": "reason", "thirdParty": "contact"}.get(kind)
            if key:
                statement[key] = value
        return statement

    def add_manifest_paths(self, item_id: str, attrs: Dict[str, Any], log: logging.Logger) -> None:
        """Recover archived storage paths of the PDF and supp files from the feed."""
        feed_path = self.layout.item_path(item_id, "meta/base.feed.xml")
        if not feed_path.is_file():
            log.warning("no manifest feed found")
            return
        links = [link for link in parse_xml(feed_path).iter("link") if link.get("rel") == HAS_PART]

        def length(link) -> int:
            try:
                return int(link.get("length") or -1)
            except ValueError:
                return -1

        pdf_size = self.layout.item_path(item_id, "content/base.pdf").stat().st_size
        for link in links:
            if (
                link.get("type") == "application/pdf"
                and length(link) == pdf_size
                and (link.get("title") or "").startswith("producer/")
            ):
                attrs["content_merritt_path"] = link.get("title")
                break
        else:
            log.warning("can't find merritt path for pdf")

        for supp in attrs.get("supp_files") or []:
            name = supp["file"]
            supp_size = self.layout.item_path(item_id, f"content/supp/{name}").stat().st_size
            wanted = re.sub(r"\W", "", name)
            for link in links:
                if length(link) == supp_size and wanted in re.sub(r"\W", "", link.get("title") or ""):
                    supp["merritt_path"] = link.get("title")
                    break
            else:
                log.warning(f"can't find merritt path for supp {name}")

    # Journal issues

    def parse_issue(
        self, item_id: str, meta: etree._Element, rights: Optional[str], log: logging.Logger
    ) -> Tuple[Optional[IssueRecord], Optional[SectionRecord], Optional[Dict[str, str]], Optional[str]]:
        """Extract issue and section for journal items, or external-journal attributes.

        Returns:
            Tuple of (issue, section, ext_journal, rights); rights may be
            replaced by the issue's resolved rights
        """
        volume = text_at(meta, "./context/volume")
        number = text_at(meta, "./context/issue")
        if volume is None and number is None:
            return None, None, None, rights

        journal_id = next(
            (
                entity.get("id")
                for entity in meta.xpath("./context/entity[@id]")
                if self.context.unit_type(entity.get("id")) is UnitType.JOURNAL
            ),
            None,
        )
        if journal_id is None:
            ext = {
                "name": text_at(meta, "./context/journal"),
                "volume": volume,
                "issue": number,
                "issn": text_at(meta, "./context/issn"),
                "fpage": text_at(meta, "./extent/fpage"),
                "lpage": text_at(meta, "./extent/lpage"),
            }
            ext = {k: v for k, v in ext.items() if v}
            return None, None, (ext or None), rights

        if volume is None:
            raise MalformedMetadataError(item_id, "missing volume number on journal item")
        rights = self.rights_resolver.resolve(journal_id, volume, number, rights)

        if text_at(meta, "./context/issueDate") == "0":
            issue_date_text = (
                text_at(meta, "./history/originalPublicationDate")
                or text_at(meta, "./history/escholPublicationDate")
                or meta.get("dateStamp")
            )
        else:
            issue_date_text = (
                text_at(meta, "./context/issueDate")
                or text_at(meta, "./history/originalPublicationDate")
                or text_at(meta, "./history/escholPublicationDate")
                or meta.get("dateStamp")
            )

        issue_attrs: Dict[str, Any] = {}
        title = text_at(meta, "./context/issueTitle")
        if title:
            issue_attrs["title"] = title
        description = text_at(meta, "./context/issueDescription")
        if description:
            issue_attrs["description"] = description
        caption = text_at(meta, "./context/issueCoverCaption")
        cover = self.find_issue_cover(journal_id, volume, number, caption, log)
        if cover:
            issue_attrs["cover"] = cover
        issue_attrs.update(self.issue_numbering(journal_id, volume))
        if rights:
            issue_attrs["rights"] = rights

        issue = IssueRecord(
            unit_id=journal_id,
            volume=volume,
            issue=number,
            pub_date=parse_date(issue_date_text, log),
            attrs=issue_attrs,
        )
        order_text = text_at(meta, "./context/publicationOrder")
        order = int(order_text) if order_text and order_text.isdigit() else 0
        section = SectionRecord(
            name=text_at(meta, "./context/sectionHeader") or "Articles",
            ordering=order if order > 0 else None,
        )
        return issue, section, None, rights

    def find_issue_cover(
        self, unit_id: str, volume: str, number: Optional[str], caption: Optional[str], log: logging.Logger
    ) -> Optional[Dict[str, Any]]:
        if self.asset_store is None or self.issue_covers_dir is None:
            return None
        key = (unit_id, volume, number or "")
        if key not in self._cover_cache:
            path = self.issue_covers_dir / unit_id / f"{volume.rjust(2, '0')}_{(number or '').rjust(2, '0')}_cover.png"
            data = None
            if path.is_file():
                data = self.asset_store.put_image(path)
                if caption:
                    data["caption"] = caption
            self._cover_cache[key] = data
        return self._cover_cache[key]

    def issue_numbering(self, unit_id: str, volume: str) -> Dict[str, str]:
        """Numbering style from the journal's brand file: volume-only or issue-only."""
        if unit_id not in self._numbering_cache:
            data: Dict[str, Any] = {}
            path = self.brand_dir / unit_id / f"{unit_id}.xml" if self.brand_dir else None
            if path is not None and path.is_file():
                brand = parse_xml(path)
                single_issue = brand.find(".//singleIssue")
                if single_issue is not None and (single_issue.text or "").strip() == "yes":
                    data["single_issue"] = True
                    data["start_volume"] = single_issue.get("startVolume")
                single_volume = brand.find(".//singleVolume")
                if single_volume is not None and (single_volume.text or "").strip() == "yes":
                    data["single_volume"] = True
            self._numbering_cache[unit_id] = data

        data = self._numbering_cache[unit_id]
        if data.get("single_issue"):
            start = data.get("start_volume")
            if start is None or _as_int(volume) >= _as_int(start):
                return {"numbering": "volume_only"}
        elif data.get("single_volume"):
            return {"numbering": "issue_only"}
        return {}

    # Thumbnails

    def pdf_thumbnail(
        self, item_id: str, meta: etree._Element, pdf_path: Path, log: logging.Logger
    ) -> Optional[Dict[str, Any]]:
        """Thumbnail for a PDF item from its declared cover image.

        Without a cover, an existing thumbnail is kept when the PDF has not
        changed since it was made.
        """
        if self.asset_store is None:
            return None
        pdf_timestamp = int(pdf_path.stat().st_mtime)
        cover = meta.xpath("./content/cover/file[@path]")
        cover_path = self.layout.item_path(item_id, cover[0].get("path")) if cover else None
        try:
            if cover_path is not None and cover_path.is_file():
                with tempfile.TemporaryDirectory() as tmp:
                    thumb = make_thumbnail(cover_path, Path(tmp) / "thumbnail.png")
                    data = self.asset_store.put_image(thumb)
                data["timestamp"] = pdf_timestamp
                data["is_cover"] = True
                return data
        except (OSError, ValueError, UnidentifiedImageError, BotoCoreError, ClientError) as e:
            log.warning(f"error generating thumbnail: {e}")
            return None

        existing = self.database.get_item(item_id) if self.database is not None else None
        thumb = ((existing.attrs or {}) if existing else {}).get("thumbnail")
        if thumb and thumb.get("timestamp") == pdf_timestamp:
            return thumb
        return None


def _as_int(value: Optional[str]) -> int:
    match = re.match(r"\s*(\d+)", value or "")
    return int(match.group(1)) if match else 0


def _is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    return isinstance(value, (str, list, dict)) and len(value) == 0
