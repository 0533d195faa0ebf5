# tree.py — In-memory view of one revision's requirement tree
from collections import defaultdict
from typing import Dict, Iterable, Iterator, List, Optional

from exceptions import NotFoundError, ValidationError

MAX_TREE_DEPTH = 32


class RevisionTree:
    """All requirement snapshots of a single revision, indexed by skeleton id and parent."""

    def __init__(self, revision_uuid: str, snapshots: Iterable):
        self.revision_uuid = revision_uuid
        self.nodes: Dict[int, object] = {}
        self._children: Dict[Optional[int], List[object]] = defaultdict(list)
        for snap in snapshots:
            self.nodes[snap.skeleton_id] = snap
            self._children[snap.parent_id].append(snap)
        for siblings in self._children.values():
            siblings.sort(key=lambda s: (s.sort_order, s.skeleton_id))

    def __contains__(self, skeleton_id: int) -> bool:
        return skeleton_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, skeleton_id: int):
        try:
            return self.nodes[skeleton_id]
        except KeyError:
            raise NotFoundError(
                f"requirement {skeleton_id} not found in revision {self.revision_uuid}",
                requirement_id=skeleton_id,
            ) from None

    def children(self, skeleton_id: int) -> List:
        return list(self._children.get(skeleton_id, []))

    @property
    def root(self):
        roots = self._children.get(None, [])
        if len(roots) != 1:
            raise ValidationError(
                f"revision {self.revision_uuid} must have exactly one root, found {len(roots)}",
            )
        return roots[0]

    def ancestors(self, skeleton_id: int) -> Iterator:
        """Yield the parent chain of ``skeleton_id``, nearest first, root last."""
        node = self.get(skeleton_id)
        seen = {skeleton_id}
        depth = 0
        while node.parent_id is not None:
            depth += 1
            if depth > MAX_TREE_DEPTH or node.parent_id in seen:
                raise ValidationError(
                    f"requirement tree of revision {self.revision_uuid} is cyclic or deeper than {MAX_TREE_DEPTH}",
                    requirement_id=skeleton_id,
                )
            seen.add(node.parent_id)
            node = self.get(node.parent_id)
            yield node

    def to_nested(self, node=None, entries: Optional[Dict[int, str]] = None) -> dict:
        """Render the tree as nested dicts, optionally annotated with entry values."""
        node = node if node is not None else self.root
        out = {
            "id": node.skeleton_id,
            "title": node.title,
            "type": node.type,
            "data_type": node.data_type,
            "operator": node.operator,
            "target_value": node.target_value,
            "sort_order": node.sort_order,
        }
        if entries is not None:
            out["value"] = entries.get(node.skeleton_id)
        if node.type == "condition":
            out["operands"] = [self.to_nested(child, entries) for child in self.children(node.skeleton_id)]
        return out
