"""
In-memory topic index and bounded message store.

Topic strings are split on "/" into a prefix trie kept as a flat map of
TopicNode values keyed by full path. Parent links are plain path keys into the
same map, so ownership only runs from the store to its nodes.

All mutation is synchronous and runs on the single event loop thread, which
makes every upsert (single or batch) one atomic state transition from the point
of view of any reader scheduled on that loop.
"""
import bisect
import copy
import logging
from collections import defaultdict
from typing import Iterable, Optional

from topicscope.config import MAX_MESSAGES_STORED, HIGHLIGHT_MS, AUTO_EXPAND_DEPTH
from topicscope.tree.models import TopicNode, MessageRecord

logger = logging.getLogger(__name__)


class TopicStore:
    def __init__(
        self,
        max_messages: int = MAX_MESSAGES_STORED,
        highlight_ms: int = HIGHLIGHT_MS,
        auto_expand_depth: int = AUTO_EXPAND_DEPTH,
    ) -> None:
        if max_messages < 0:
            raise ValueError("max_messages must be >= 0")
        self.max_messages = max_messages
        self.highlight_ms = highlight_ms
        self.auto_expand_depth = auto_expand_depth
        self.nodes: dict[str, TopicNode] = {}
        # Insertion order of this dict is the global eviction order
        self.messages: dict[str, MessageRecord] = {}
        # topic -> message ids, newest first
        self.messages_by_topic: dict[str, list[str]] = {}

    # ─────────────────────────────────────────────
    # Tree construction
    # ─────────────────────────────────────────────

    def ensure_path(self, topic: str) -> TopicNode:
        """Create every missing node along `topic` and return the leaf.

        Empty segments (leading, trailing or doubled slashes) are kept as
        empty-named nodes.
        """
        parts = topic.split("/")
        path = ""
        parent_id: Optional[str] = None
        node = None
        for depth, segment in enumerate(parts):
            path = segment if depth == 0 else f"{path}/{segment}"
            node = self.nodes.get(path)
            if node is None:
                node = TopicNode(
                    id=path,
                    name=segment,
                    parent_id=parent_id,
                    expanded=depth < self.auto_expand_depth,
                )
                self.nodes[path] = node
            if parent_id is not None:
                siblings = self.nodes[parent_id].children
                pos = bisect.bisect_left(siblings, path)
                if pos == len(siblings) or siblings[pos] != path:
                    siblings.insert(pos, path)
            parent_id = path
        return node

    # ─────────────────────────────────────────────
    # Message ingestion
    # ─────────────────────────────────────────────

    def _apply(self, record: MessageRecord) -> None:
        leaf = self.ensure_path(record.topic)
        self.messages[record.id] = record
        self.messages_by_topic.setdefault(record.topic, []).insert(0, record.id)

        leaf.last_payload_id = record.id
        leaf.last_timestamp = record.ts
        leaf.retained = record.retained
        leaf.qos = record.qos
        leaf.highlighted_until = record.ts + self.highlight_ms

    def upsert(self, record: MessageRecord) -> None:
        self._apply(record)
        self.evict()

    def batch_upsert(self, records: Iterable[MessageRecord]) -> None:
        count = 0
        for record in records:
            self._apply(record)
            count += 1
        evicted = self.evict()
        logger.debug(f"Applied batch of {count} messages ({evicted} evicted, {len(self.messages)} stored)")

    def evict(self) -> int:
        """Drop the oldest records until the store is at or under the cap.

        Returns the number of evicted records.
        """
        excess = len(self.messages) - self.max_messages
        if excess <= 0:
            return 0

        doomed = defaultdict(set)
        for msg_id in list(self.messages)[:excess]:
            record = self.messages.pop(msg_id)
            doomed[record.topic].add(msg_id)

        for topic, ids in doomed.items():
            history = self.messages_by_topic.get(topic)
            if history is not None:
                self.messages_by_topic[topic] = [i for i in history if i not in ids]
        logger.debug(f"Evicted {excess} messages across {len(doomed)} topics")
        return excess

    # ─────────────────────────────────────────────
    # Expansion state (the per-node flag is authoritative)
    # ─────────────────────────────────────────────

    @property
    def expanded_ids(self) -> set[str]:
        return {node_id for node_id, node in self.nodes.items() if node.expanded}

    def toggle_expanded(self, node_id: str) -> bool:
        """Flip a node's expansion flag. Returns False if the node is unknown."""
        node = self.nodes.get(node_id)
        if node is None:
            return False
        node.expanded = not node.expanded
        return True

    def expand_all(self) -> None:
        for node in self.nodes.values():
            if node.children:
                node.expanded = True

    def collapse_all(self) -> None:
        for node in self.nodes.values():
            node.expanded = False

    def clear_all(self) -> None:
        self.nodes = {}
        self.messages = {}
        self.messages_by_topic = {}
        logger.info("Topic store cleared.")

    # ─────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────

    def get_node(self, node_id: str) -> Optional[TopicNode]:
        return self.nodes.get(node_id)

    def get_message(self, msg_id: str) -> Optional[MessageRecord]:
        return self.messages.get(msg_id)

    def history(self, topic: str, limit: Optional[int] = None) -> list[MessageRecord]:
        """Stored records for `topic`, newest first."""
        ids = self.messages_by_topic.get(topic, [])
        if limit is not None:
            ids = ids[:limit]
        return [self.messages[i] for i in ids if i in self.messages]

    def latest(self, topic: str) -> Optional[MessageRecord]:
        node = self.nodes.get(topic)
        if node is None or node.last_payload_id is None:
            return None
        return self.messages.get(node.last_payload_id)

    @property
    def root_ids(self) -> list[str]:
        return sorted(n.id for n in self.nodes.values() if n.parent_id is None)

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def snapshot(self) -> dict[str, TopicNode]:
        """Deep copy of the node map, safe to hand to readers on other threads."""
        return copy.deepcopy(self.nodes)
