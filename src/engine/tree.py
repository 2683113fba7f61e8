"""Tree Builder — flat PQEvent list → one-level mother/child forest.

Two passes: first every event gets a node, then every event with a
``parent_event_id`` is attached under its parent's node.  A node that
cannot be attached safely is promoted to a root instead of being dropped,
so the number of nodes in the forest always equals the number of events:

  * dangling reference   — parent id not present in the input
  * self reference       — ``parent_event_id == id``
  * nested reference     — parent is itself a child (would create a
                           grandchild, or a cycle such as a→b→a)
"""

from __future__ import annotations

import logging

from src.contracts.event import PQEvent
from src.contracts.results import EventTreeNode

log = logging.getLogger(__name__)


def build_event_tree(events: list[PQEvent]) -> list[EventTreeNode]:
    """Build the display forest.  Roots keep input order, as do children."""
    nodes = [EventTreeNode(event=ev) for ev in events]
    lookup: dict[str, EventTreeNode] = {}
    for node in nodes:
        lookup.setdefault(node.id, node)

    roots: list[EventTreeNode] = []
    promoted = 0
    for node in nodes:
        parent_id = node.event.parent_event_id
        if parent_id is None:
            roots.append(node)
            continue

        parent = lookup.get(parent_id)
        if parent is None:
            log.warning("Event %s references missing parent %s — shown as root", node.id, parent_id)
        elif parent_id == node.id:
            log.warning("Event %s references itself as parent — shown as root", node.id)
        elif parent.event.parent_event_id is not None:
            log.warning(
                "Event %s has parent %s which is itself a child — shown as root",
                node.id,
                parent_id,
            )
        else:
            parent.children.append(node)
            continue

        promoted += 1
        roots.append(node)

    if promoted:
        log.info("Tree builder promoted %d event(s) with unusable parent references", promoted)
    return roots


def count_nodes(forest: list[EventTreeNode]) -> int:
    """Total nodes in *forest*, iterative so malformed data cannot recurse forever."""
    total = 0
    stack = list(forest)
    seen: set[int] = set()
    while stack:
        node = stack.pop()
        if id(node) in seen:
            continue
        seen.add(id(node))
        total += 1
        stack.extend(node.children)
    return total


def flatten(forest: list[EventTreeNode]) -> list[PQEvent]:
    """Depth-first list of events: each root followed by its children."""
    out: list[PQEvent] = []
    for root in forest:
        out.append(root.event)
        out.extend(child.event for child in root.children)
    return out
