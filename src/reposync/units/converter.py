"""Converts the source unit hierarchy into unit rows, widgets and closure edges."""

import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from reposync.ingestion.batch import AddResult, BatchBuilder
from reposync.ingestion.documents import item_doc_id, serialize_document
from reposync.models import UnitType
from reposync.normalization.loader import html_at, parse_xml
from reposync.units.linker import ROOT_ID, UnitNode, UnitTree, compute_closure, parse_hierarchy

logger = logging.getLogger(__name__)

DEFAULT_WIDGETS = [{"kind": "RecentArticles", "region": "sidebar", "attrs": {}}]


def default_nav(unit_id: str, unit_type: Optional[UnitType]) -> List[Dict[str, Any]]:
    """Navigation bar given to root and campus units that have no configured one."""
    if unit_type is UnitType.ROOT:
        return [
            {"id": 1, "type": "folder", "name": "About", "sub_nav": []},
            {"id": 2, "type": "folder", "name": "Campus Sites", "sub_nav": []},
            {"id": 3, "type": "folder", "name": "UC Open Access", "sub_nav": []},
            {"id": 4, "type": "link", "name": "eScholarship Publishing", "url": "#"},
        ]
    if unit_type is UnitType.CAMPUS:
        return [
            {"id": 1, "type": "link", "name": "Open Access Policies", "url": "#"},
            {"id": 2, "type": "link", "name": "Journals", "url": f"/{unit_id}/journals"},
            {"id": 3, "type": "link", "name": "Academic Units", "url": f"/{unit_id}/units"},
        ]
    return []


def unit_status(node: UnitNode) -> str:
    if node.direct_submit == "moribund":
        return "archived"
    if node.hide in ("eschol", "all"):
        return "hidden"
    return "active"


class UnitConverter:
    """Writes units from an ``allStruct`` hierarchy document.

    On a full run (no selection) units missing from the document are deleted
    with their dependents and the closure table is rebuilt. Items that lose
    their last unit are first removed from the search index.
    """

    def __init__(
        self,
        database,
        search_index=None,
        asset_store=None,
        brand_dir: Optional[str] = None,
        static_dir: Optional[str] = None,
        max_batch_bytes: int = 4500 * 1024,
        max_batch_items: int = 500,
    ):
        self.database = database
        self.search_index = search_index
        self.asset_store = asset_store
        self.brand_dir = Path(brand_dir) if brand_dir else None
        if static_dir:
            self.static_dir = Path(static_dir)
        else:
            self.static_dir = self.brand_dir.parent if self.brand_dir else None
        self.max_batch_bytes = max_batch_bytes
        self.max_batch_items = max_batch_items

    def convert(self, hierarchy_path: str, selected: Optional[Set[str]] = None) -> UnitTree:
        """Convert all units, or only ``selected`` ones.

        Args:
            hierarchy_path: Path of the ``allStruct`` XML document
            selected: Unit ids to convert; None converts all and rebuilds links

        Returns:
            The parsed hierarchy
        """
        logger.info(f"Converting {'selected' if selected else 'all'} units.")
        tree = parse_hierarchy(parse_xml(Path(hierarchy_path)))
        existing = self.database.unit_ids()

        for unit_id in tree.order:
            if selected is not None and unit_id not in selected:
                continue
            self.convert_unit(tree.nodes[unit_id], unit_id in existing)

        if selected is None:
            extra = existing - tree.all_ids
            orphaned = self.database.orphaned_items(extra)
            if orphaned:
                logger.info(f"Removing {len(orphaned)} orphaned items from the search index")
                self.delete_from_index(orphaned)
            self.database.replace_hierarchy(compute_closure(tree.children, ROOT_ID), extra)
        return tree

    def convert_unit(self, node: UnitNode, exists: bool) -> None:
        unit_type = UnitType.classify(node.raw_type)
        if unit_type in (UnitType.ROOT, UnitType.CAMPUS) and exists:
            logger.debug(f"Preserving {node.id}.")
            return

        attrs: Dict[str, Any] = {}
        if node.direct_submit:
            attrs["directSubmit"] = node.direct_submit
        if node.hide:
            attrs["hide"] = node.hide
        if node.issn:
            attrs["issn"] = node.issn
        attrs.update(self.brand_attrs(node.id, unit_type))

        self.database.save_unit(
            node.id,
            node.raw_type or "",
            "eScholarship" if node.id == ROOT_ID else (node.label or node.id),
            unit_status(node),
            attrs,
            DEFAULT_WIDGETS,
        )

    def brand_attrs(self, unit_id: str, unit_type: Optional[UnitType]) -> Dict[str, Any]:
        """Logo, blurb and nav bar from the unit's brand file, where there is one."""
        path = self.brand_dir / unit_id / f"{unit_id}.xml" if self.brand_dir else None
        if path is None or not path.is_file():
            nav = default_nav(unit_id, unit_type)
            return {"nav_bar": nav} if nav else {}

        brand = parse_xml(path)
        attrs: Dict[str, Any] = {}
        logo = self.convert_logo(brand)
        if logo:
            attrs["logo"] = logo
        about = html_at(brand, "./display/mainFrame/blurb/div")
        if about:
            attrs["about"] = about
        if unit_type in (UnitType.ROOT, UnitType.CAMPUS):
            attrs["nav_bar"] = default_nav(unit_id, unit_type)
        submit = brand.find("directSubmitURL")
        if submit is not None and submit.get("url"):
            url = submit.get("url")
            match = re.search(r"/uc/search\?entity=[^;]+;view=([^;]+)$", url)
            attrs["directSubmitURL"] = f"/uc/{unit_id}/{match.group(1)}" if match else url
        return attrs

    def convert_logo(self, brand) -> Optional[Dict[str, Any]]:
        logo_el = brand.find("./display/mainFrame/logo")
        img = logo_el.find("./div[@id='logoDiv']/img[@src]") if logo_el is not None else None
        if img is None or self.asset_store is None or self.static_dir is None:
            return None
        src = img.get("src")
        if re.search(r"LOGO_PATH|/$", src):
            return None
        image_path = self.static_dir / src.lstrip("/")
        if not image_path.is_file():
            return None
        data = self.asset_store.put_image(image_path)
        if logo_el.get("banner") == "single":
            data["is_banner"] = True
        return data

    def delete_from_index(self, item_ids: Iterable[str]) -> None:
        if self.search_index is None:
            return
        builder = BatchBuilder(self.max_batch_bytes, self.max_batch_items)
        for item_id in item_ids:
            payload = serialize_document({"type": "delete", "id": item_doc_id(item_id)})
            if builder.try_add(payload) is AddResult.WOULD_OVERFLOW:
                self.search_index.upload(builder.build().to_json())
                builder.try_add(payload)
        if not builder.is_empty():
            self.search_index.upload(builder.build().to_json())
