"""
Read-only views over the topic tree: filtering, flattening for virtualized
display, and a nested form for consumers that render trees recursively.
None of these functions mutate the nodes they are given.
"""
import time
from typing import Mapping, Optional

from topicscope.tree.models import TopicNode, FlattenedItem


def _now_ms() -> int:
    return int(time.time() * 1000)


def filter_tree(
    nodes: Mapping[str, TopicNode],
    query: str = "",
    retained_only: bool = False,
    changed_in_minutes: Optional[float] = None,
    now: Optional[int] = None,
) -> set[str]:
    """
    Return the ids of matching nodes plus all of their ancestors.

    A node matches when:
      - query is empty, or its path or name contains it (case-insensitive)
      - retained_only is off, or the node's retained flag is set
      - no time bound, or its last_timestamp is within the bound
        (nodes that never received a message are not excluded by time)

    Descendants of a match are not added.
    """
    if now is None:
        now = _now_ms()
    threshold = now - changed_in_minutes * 60 * 1000 if changed_in_minutes else None
    needle = query.lower() if query else ""

    matched: set[str] = set()
    for node_id, node in nodes.items():
        if needle and needle not in node.id.lower() and needle not in node.name.lower():
            continue
        if retained_only and node.retained is not True:
            continue
        if threshold is not None and node.last_timestamp is not None and node.last_timestamp < threshold:
            continue

        matched.add(node_id)
        parent_id = node.parent_id
        while parent_id is not None and parent_id not in matched:
            matched.add(parent_id)
            parent = nodes.get(parent_id)
            parent_id = parent.parent_id if parent else None
    return matched


def flatten_tree(
    nodes: Mapping[str, TopicNode],
    expanded_set: Optional[set[str]] = None,
    root_ids: Optional[list[str]] = None,
) -> list[FlattenedItem]:
    """Pre-order walk from the roots, descending only into expanded nodes."""
    expanded_set = expanded_set or set()
    if not root_ids:
        root_ids = sorted(node_id for node_id, node in nodes.items() if node.parent_id is None)

    result: list[FlattenedItem] = []
    # Explicit stack: topic depth is unbounded, recursion is not
    stack = [(root_id, 0) for root_id in reversed(root_ids)]
    while stack:
        node_id, depth = stack.pop()
        node = nodes.get(node_id)
        if node is None:
            continue
        result.append(FlattenedItem(id=node_id, depth=depth))
        if node_id in expanded_set or node.expanded:
            for child_id in reversed(node.children):
                stack.append((child_id, depth + 1))
    return result


def visible_items(
    nodes: Mapping[str, TopicNode],
    query: str = "",
    retained_only: bool = False,
    changed_in_minutes: Optional[float] = None,
    now: Optional[int] = None,
) -> list[FlattenedItem]:
    """Filter then flatten. With no active predicate this is a plain flatten."""
    if not (query or retained_only or changed_in_minutes):
        return flatten_tree(nodes)

    keep = filter_tree(nodes, query, retained_only, changed_in_minutes, now=now)
    subset = {}
    for node_id in keep:
        node = nodes[node_id]
        subset[node_id] = TopicNode(
            id=node.id,
            name=node.name,
            parent_id=node.parent_id,
            children=[c for c in node.children if c in keep],
            expanded=node.expanded,
            last_payload_id=node.last_payload_id,
            last_timestamp=node.last_timestamp,
            retained=node.retained,
            qos=node.qos,
            highlighted_until=node.highlighted_until,
        )
    return flatten_tree(subset)


def to_nested(nodes: Mapping[str, TopicNode]) -> list[dict]:
    """Nested dict form of the tree; roots sorted by name, children by path."""
    roots = sorted((n for n in nodes.values() if n.parent_id is None), key=lambda n: n.name)

    def build(node: TopicNode) -> dict:
        item = {
            "id": node.id,
            "name": node.name,
            "path": node.id,
            "last_timestamp": node.last_timestamp,
            "retained": node.retained,
            "qos": node.qos,
            "last_payload_id": node.last_payload_id,
            "highlighted_until": node.highlighted_until,
        }
        if node.children:
            item["children"] = [build(nodes[c]) for c in node.children if c in nodes]
        return item

    return [build(root) for root in roots]
