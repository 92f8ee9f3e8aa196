"""
Binary hierarchies over sequence labels.

A hierarchy follows the scipy linkage numbering: leaves are nodes 0..L-1 and
merge record i creates node L+i from two previously defined nodes. Leaves may
hold more than one sequence when the hierarchy starts from pre-clustered
groups. Hierarchies are treated as immutable; scoring returns a new object.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import HierarchyStructureError
from .likelihood import NodeScore

logger = logging.getLogger(__name__)

NEGATIVE_BRANCH_REPLACEMENT = 1e-6


@dataclass(frozen=True)
class Hierarchy:
    """
    Rooted binary merge tree.

    Attributes:
        leaves: Sequence labels held by each leaf
        merges: (left, right) node ids of each internal node, in creation order
        heights: Optional height of every node (leaves first)
        scores: Optional NodeScore of every node (leaves first)
    """
    leaves: Tuple[Tuple[str, ...], ...]
    merges: Tuple[Tuple[int, int], ...] = ()
    heights: Optional[Tuple[float, ...]] = None
    scores: Optional[Tuple[NodeScore, ...]] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "leaves", tuple(tuple(leaf) for leaf in self.leaves))
        object.__setattr__(self, "merges", tuple((int(a), int(b)) for a, b in self.merges))
        if self.heights is not None:
            object.__setattr__(self, "heights", tuple(float(h) for h in self.heights))
        if self.scores is not None:
            object.__setattr__(self, "scores", tuple(self.scores))

    @property
    def n_leaves(self) -> int:
        return len(self.leaves)

    @property
    def n_internal(self) -> int:
        return len(self.merges)

    @property
    def n_nodes(self) -> int:
        return self.n_leaves + self.n_internal

    @property
    def root(self) -> int:
        return self.n_nodes - 1

    @property
    def labels(self) -> List[str]:
        """All sequence labels in leaf order."""
        return [label for leaf in self.leaves for label in leaf]

    @property
    def is_scored(self) -> bool:
        return self.scores is not None

    def is_leaf(self, node_id: int) -> bool:
        return node_id < self.n_leaves

    def children(self, node_id: int) -> Tuple[int, int]:
        if self.is_leaf(node_id):
            raise ValueError(f"Node {node_id} is a leaf")
        return self.merges[node_id - self.n_leaves]

    def score(self, node_id: int) -> NodeScore:
        if self.scores is None:
            raise ValueError("Hierarchy has not been scored")
        return self.scores[node_id]

    def with_scores(self, scores: Sequence[NodeScore]) -> "Hierarchy":
        if len(scores) != self.n_nodes:
            raise ValueError(f"Expected {self.n_nodes} scores, got {len(scores)}")
        return replace(self, scores=tuple(scores))

    def validate(self) -> None:
        """Check that the hierarchy is a single rooted, strictly binary tree."""
        if not self.leaves:
            raise HierarchyStructureError("Hierarchy has no leaves")
        empty = [i for i, leaf in enumerate(self.leaves) if not leaf]
        if empty:
            raise HierarchyStructureError(f"Empty leaves: {empty[:10]}")
        labels = self.labels
        if len(set(labels)) != len(labels):
            raise HierarchyStructureError("Hierarchy contains repeated sequence labels")
        if self.n_internal != self.n_leaves - 1:
            raise HierarchyStructureError(
                f"A rooted binary tree over {self.n_leaves} leaves needs {self.n_leaves - 1} merges, "
                f"got {self.n_internal}"
            )

        used = set()
        for i, (left, right) in enumerate(self.merges):
            node_id = self.n_leaves + i
            for child in (left, right):
                if not 0 <= child < node_id:
                    raise HierarchyStructureError(
                        f"Merge {i} references node {child} which is not defined before node {node_id}"
                    )
                if child in used:
                    raise HierarchyStructureError(f"Node {child} has more than one parent")
                used.add(child)
            if left == right:
                raise HierarchyStructureError(f"Merge {i} joins node {left} with itself")

        if self.heights is not None and len(self.heights) != self.n_nodes:
            raise HierarchyStructureError(f"Expected {self.n_nodes} heights, got {len(self.heights)}")
        if self.scores is not None and len(self.scores) != self.n_nodes:
            raise HierarchyStructureError(f"Expected {self.n_nodes} scores, got {len(self.scores)}")

    def postorder(self) -> List[int]:
        """Node ids in post-order (children before parents), using an explicit stack."""
        order = []
        stack = [(self.root, False)]
        while stack:
            node_id, expanded = stack.pop()
            if expanded or self.is_leaf(node_id):
                order.append(node_id)
                continue
            left, right = self.children(node_id)
            stack.append((node_id, True))
            stack.append((right, False))
            stack.append((left, False))
        return order

    def leaf_members(self, node_id: int) -> List[str]:
        """Sequence labels below a node, left to right."""
        members = []
        stack = [node_id]
        while stack:
            current = stack.pop()
            if self.is_leaf(current):
                members.extend(self.leaves[current])
            else:
                left, right = self.children(current)
                stack.append(right)
                stack.append(left)
        return members

    def to_linkage(self) -> np.ndarray:
        """
        Export as a scipy linkage matrix.

        Only hierarchies whose leaves are single sequences can be expressed in
        scipy's format. Heights default to the merge index when absent and are
        made monotone so scipy accepts the matrix.
        """
        if any(len(leaf) != 1 for leaf in self.leaves):
            raise HierarchyStructureError("Only hierarchies with singleton leaves can be exported as linkage")
        sizes = [1] * self.n_leaves
        linkage_matrix = np.zeros((self.n_internal, 4))
        previous = 0.0
        for i, (left, right) in enumerate(self.merges):
            node_id = self.n_leaves + i
            height = self.heights[node_id] if self.heights is not None else float(i + 1)
            height = max(height, previous)
            previous = height
            sizes.append(sizes[left] + sizes[right])
            linkage_matrix[i] = [left, right, height, sizes[-1]]
        return linkage_matrix

    @classmethod
    def from_linkage(cls, linkage_matrix: np.ndarray, labels: Sequence[str]) -> "Hierarchy":
        """Build a hierarchy from a scipy linkage matrix over singleton leaves."""
        linkage_matrix = np.asarray(linkage_matrix)
        n = len(labels)
        if n > 1 and linkage_matrix.shape != (n - 1, 4):
            raise HierarchyStructureError(
                f"Linkage matrix for {n} labels must have shape ({n - 1}, 4), got {linkage_matrix.shape}"
            )
        merges = [(int(row[0]), int(row[1])) for row in linkage_matrix] if n > 1 else []
        heights = [0.0] * n + ([float(row[2]) for row in linkage_matrix] if n > 1 else [])
        hierarchy = cls(leaves=tuple((label,) for label in labels), merges=tuple(merges), heights=tuple(heights))
        hierarchy.validate()
        return hierarchy


def hierarchy_from_phylo(tree) -> Hierarchy:
    """
    Convert a rooted Biopython phylogeny into a binary hierarchy.

    The root must have exactly two children (a root with a single child is
    collapsed); a root with three or more children marks an unrooted tree and
    is rejected. Polytomies below the root are resolved deterministically by
    joining children left to right with zero-length edges. Negative branch
    lengths are replaced by a small positive value with a warning.

    Args:
        tree: Bio.Phylo tree (or clade) with named terminals

    Returns:
        Validated Hierarchy whose heights are distances from the deepest tip
    """
    root = getattr(tree, "root", tree)
    while len(root.clades) == 1:
        root = root.clades[0]
    if not root.clades:
        if root.name is None:
            raise HierarchyStructureError("Phylogeny terminal has no label")
        return Hierarchy(leaves=((root.name,),), heights=(0.0,))
    if len(root.clades) > 2:
        raise HierarchyStructureError(
            f"Phylogeny is unrooted: root has {len(root.clades)} children; root it before partitioning"
        )

    negative = 0
    depth = {id(root): 0.0}
    stack = [root]
    while stack:
        clade = stack.pop()
        for child in clade.clades:
            length = child.branch_length or 0.0
            if length < 0:
                negative += 1
                length = NEGATIVE_BRANCH_REPLACEMENT
            depth[id(child)] = depth[id(clade)] + length
            stack.append(child)
    if negative:
        logger.warning(f"{negative} branch lengths < 0 were converted to {NEGATIVE_BRANCH_REPLACEMENT}")

    leaves: List[Tuple[str, ...]] = []
    merges: List[Tuple[int, int]] = []
    internal_depth: List[float] = []
    node_ids: Dict[int, int] = {}

    # Leaf ids are assigned left to right so leaf order follows the tree.
    leaf_depth = []
    stack = [root]
    while stack:
        clade = stack.pop()
        if not clade.clades:
            if clade.name is None:
                raise HierarchyStructureError("Phylogeny terminal has no label")
            node_ids[id(clade)] = len(leaves)
            leaves.append((clade.name,))
            leaf_depth.append(depth[id(clade)])
        else:
            stack.extend(reversed(clade.clades))
    n_leaves = len(leaves)

    stack = [(root, False)]
    while stack:
        clade, expanded = stack.pop()
        if not clade.clades:
            continue
        if not expanded:
            stack.append((clade, True))
            for child in reversed(clade.clades):
                stack.append((child, False))
            continue
        child_ids = [node_ids[id(child)] for child in clade.clades]
        current = child_ids[0]
        for other in child_ids[1:]:
            merges.append((current, other))
            internal_depth.append(depth[id(clade)])
            current = n_leaves + len(merges) - 1
        node_ids[id(clade)] = current

    max_depth = max(leaf_depth)
    heights = [0.0] * n_leaves + [max_depth - d for d in internal_depth]

    hierarchy = Hierarchy(leaves=tuple(leaves), merges=tuple(merges), heights=tuple(heights))
    hierarchy.validate()
    return hierarchy
