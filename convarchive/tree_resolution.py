"""
Canonical path reconstruction for branching conversation exports.

A tree export keeps every edit and regeneration as a node in a parent/children
mapping:

    {node_id: {"message": {...} | None, "parent": node_id | None, "children": [node_id, ...]}}

Only one root-to-leaf walk is the conversation the user actually sees. This
module picks that walk and drops every abandoned branch.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Callable, Mapping

import pendulum

from convarchive.logger import get_logger
from convarchive.models import TreeStructureError
from convarchive.normalization_utils import TimeUnit, TimestampUtils
logger = get_logger(__name__)

class LeafStrategy(StrEnum):
    """How the canonical leaf was chosen."""
    CURRENT_NODE = "current_node"
    LATEST_CHILD = "latest_child"

@dataclass(frozen=True)
class ResolvedPath:
    """
    Result of resolving a node mapping.

    node_ids:
      - every node on the canonical path, root first
    message_nodes:
      - (node_id, raw message dict) for path nodes that carry a message, in path order
    """
    node_ids: tuple[str, ...]
    message_nodes: tuple[tuple[str, dict[str, Any]], ...]
    leaf_id: str
    strategy: LeafStrategy

def _node(mapping: Mapping[str, Any], node_id: str) -> dict[str, Any]:
    node = mapping.get(node_id)
    return node if isinstance(node, dict) else {}

def _parent_of(node: dict[str, Any]) -> str | None:
    parent = node.get("parent")
    return str(parent) if parent not in (None, "") else None

def _children_of(mapping: Mapping[str, Any], node_id: str) -> list[str]:
    kids = _node(mapping, node_id).get("children") or []
    if not isinstance(kids, list):
        return []
    return [str(k) for k in kids if str(k) in mapping]

MessageTimestamp = Callable[[dict[str, Any]], pendulum.DateTime | None]

def create_time_of(message: dict[str, Any]) -> pendulum.DateTime | None:
    """Default sibling timestamp: the ChatGPT `create_time` field, in seconds."""
    return TimestampUtils.parse_instant(message.get("create_time"), TimeUnit.SECONDS)

class TreeConversationResolver:
    """
    Selects the canonical root-to-leaf path of a node mapping.

    timestamp_of reads a node's message creation time for sibling ranking;
    the schema normalizer passes its configured timestamp fields here.
    """

    def __init__(self, timestamp_of: MessageTimestamp | None = None):
        self.timestamp_of = timestamp_of or create_time_of

    def find_root_id(self, mapping: Mapping[str, Any]) -> str:
        """
        The root is a node without a parent. A literal "root" key wins when it
        is parentless. Among several parentless nodes, the first one that has
        children is used, so a stray childless node never hides the
        conversation; otherwise the first in mapping order.
        """
        if "root" in mapping and _parent_of(_node(mapping, "root")) is None:
            return "root"

        roots = [node_id for node_id in mapping if _parent_of(_node(mapping, node_id)) is None]
        if not roots:
            raise TreeStructureError("Node mapping has no root (every node has a parent)")
        if len(roots) == 1:
            return roots[0]

        with_children = [node_id for node_id in roots if _children_of(mapping, node_id)]
        chosen = with_children[0] if with_children else roots[0]
        logger.debug(f"Node mapping has {len(roots)} parentless nodes, using {chosen}")
        return chosen

    def _creation_key(self, node: dict[str, Any], position: int) -> tuple[int, float, int]:
        # Children with a timestamp outrank those without; ties go to the later sibling
        message = node.get("message")
        instant = self.timestamp_of(message) if isinstance(message, dict) else None
        if instant is None:
            return (0, 0.0, position)
        return (1, instant.timestamp(), position)

    def find_latest_leaf(self, mapping: Mapping[str, Any], root_id: str) -> str:
        """Descend from the root, always taking the most recently created child."""
        node_id = root_id
        visited = {root_id}

        while True:
            kids = _children_of(mapping, node_id)
            if not kids:
                return node_id

            _, best = max(
                enumerate(kids),
                key=lambda item: self._creation_key(_node(mapping, item[1]), item[0]),
            )
            if best in visited:
                raise TreeStructureError(f"Cycle detected while descending at node {best}")
            visited.add(best)
            node_id = best

    def walk_to_root(self, mapping: Mapping[str, Any], leaf_id: str) -> list[str]:
        """Follow parent pointers from the leaf and return the path root first."""
        path: list[str] = []
        seen: set[str] = set()
        node_id: str | None = leaf_id

        while node_id is not None:
            if node_id in seen:
                raise TreeStructureError(f"Cycle detected in parent chain at node {node_id}")
            if node_id not in mapping:
                raise TreeStructureError(f"Dangling parent reference to missing node {node_id}")
            seen.add(node_id)
            path.append(node_id)
            node_id = _parent_of(_node(mapping, node_id))

        path.reverse()
        return path

    def resolve(self, mapping: Any, current_node: Any = None) -> ResolvedPath:
        """
        Resolve the canonical path.

        1. An explicit current-node pointer that exists in the mapping selects the leaf.
        2. Otherwise the leaf is found by descending through the latest-created children.
        3. The path is the parent chain from that leaf, reversed. After a descent
           that chain must end at the root the descent started from.
        """
        if not isinstance(mapping, dict) or not mapping:
            raise TreeStructureError("Node mapping is empty or not an object")

        leaf_id: str | None = None
        root_id: str | None = None
        strategy = LeafStrategy.LATEST_CHILD

        if current_node not in (None, ""):
            if str(current_node) in mapping:
                leaf_id = str(current_node)
                strategy = LeafStrategy.CURRENT_NODE
            else:
                logger.warning(f"current_node {current_node} is not in the mapping, falling back to latest branch")

        if leaf_id is None:
            root_id = self.find_root_id(mapping)
            leaf_id = self.find_latest_leaf(mapping, root_id)

        node_ids = self.walk_to_root(mapping, leaf_id)

        # children and parent pointers disagree somewhere along the descent
        if root_id is not None and node_ids[0] != root_id:
            raise TreeStructureError(
                f"Parent chain from leaf {leaf_id} ends at {node_ids[0]}, not at root {root_id}"
            )

        message_nodes = []
        for node_id in node_ids:
            message = _node(mapping, node_id).get("message")
            # Placeholders and the synthetic root carry no message; skipping them keeps the path intact
            if isinstance(message, dict):
                message_nodes.append((node_id, message))

        return ResolvedPath(
            node_ids=tuple(node_ids),
            message_nodes=tuple(message_nodes),
            leaf_id=leaf_id,
            strategy=strategy,
        )
