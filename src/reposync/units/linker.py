"""Unit hierarchy: parse the source tree, then compute its closure table."""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from lxml import etree

ROOT_ID = "root"


@dataclass(frozen=True)
class UnitNode:
    """One unit as declared in the hierarchy document."""

    id: str
    raw_type: Optional[str]
    label: Optional[str]
    direct_submit: Optional[str] = None
    hide: Optional[str] = None
    issn: Optional[str] = None


@dataclass(frozen=True)
class UnitTree:
    """Immutable adjacency structure of the organizational tree.

    ``nodes`` holds each unit's defining element (``ptr`` cross-listings are
    not definitions); ``order`` lists unit ids in document order;
    ``children`` maps a unit to its ordered child ids, cross-listings included.
    """

    nodes: Mapping[str, UnitNode]
    order: Tuple[str, ...]
    children: Mapping[str, Tuple[str, ...]]
    all_ids: frozenset = field(default_factory=frozenset)


@dataclass(frozen=True)
class HierEdge:
    ancestor: str
    descendant: str
    ordering: Optional[int]
    is_direct: bool


def _element_id(element: etree._Element) -> Optional[str]:
    return element.get("id") or element.get("ref")


def parse_hierarchy(root: etree._Element) -> UnitTree:
    """Build the adjacency structure from an ``allStruct`` document.

    The document element is the root unit. ``ptr`` elements reference a unit
    defined elsewhere and only add a parent-child edge.

    Raises:
        ValueError: If a child element has no id or ref
    """
    nodes: Dict[str, UnitNode] = {}
    order: List[str] = []
    children: Dict[str, List[str]] = {}
    all_ids = set()

    stack = [(root, ROOT_ID)]
    while stack:
        element, unit_id = stack.pop()
        all_ids.add(unit_id)
        if element.tag != "ptr" and unit_id not in nodes:
            nodes[unit_id] = UnitNode(
                id=unit_id,
                raw_type="root" if unit_id == ROOT_ID else element.get("type"),
                label=element.get("label"),
                direct_submit=element.get("directSubmit"),
                hide=element.get("hide"),
                issn=element.get("issn"),
            )
            order.append(unit_id)
        kids = []
        for child in element:
            if not isinstance(child.tag, str):
                continue
            child_id = _element_id(child)
            if child_id is None:
                raise ValueError(f"id-less child node under {unit_id!r}")
            kids.append((child, child_id))
            siblings = children.setdefault(unit_id, [])
            if child_id not in siblings:
                siblings.append(child_id)
        stack.extend(reversed(kids))

    return UnitTree(
        nodes=nodes,
        order=tuple(order),
        children={k: tuple(v) for k, v in children.items()},
        all_ids=frozenset(all_ids),
    )


def compute_closure(children: Mapping[str, Sequence[str]], root: str = ROOT_ID) -> List[HierEdge]:
    """Every ancestor/descendant pair reachable from ``root``, exactly once.

    Direct parent-child pairs carry their position among the parent's
    children; indirect pairs have no ordering. A unit reachable by several
    paths still yields one row per pair.
    """
    direct: Dict[Tuple[str, str], int] = {}
    for parent, kids in children.items():
        for position, kid in enumerate(kids):
            direct.setdefault((parent, kid), position)

    reachable: List[str] = []
    seen = {root}
    frontier = [root]
    while frontier:
        unit = frontier.pop(0)
        reachable.append(unit)
        for kid in children.get(unit, ()):
            if kid not in seen:
                seen.add(kid)
                frontier.append(kid)

    edges: List[HierEdge] = []
    for ancestor in reachable:
        visited = set()
        stack = list(reversed(children.get(ancestor, ())))
        while stack:
            descendant = stack.pop()
            if descendant in visited or descendant == ancestor:
                continue
            visited.add(descendant)
            position = direct.get((ancestor, descendant))
            edges.append(
                HierEdge(
                    ancestor=ancestor,
                    descendant=descendant,
                    ordering=position,
                    is_direct=position is not None,
                )
            )
            stack.extend(reversed(children.get(descendant, ())))
    return edges
