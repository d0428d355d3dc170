"""
Phylogenetic tree parsing and manipulation.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..errors import InputFormatError, NumericDegeneracyError


@dataclass(eq=False)
class TreeNode:
    """
    Phylogenetic tree node.

    Attributes
    ----------
    id : int
        Node identifier (preorder position, unique within the tree)
    name : Optional[str]
        Node name (for leaves; optional for internal nodes)
    parent : Optional[TreeNode]
        Parent node
    children : list[TreeNode]
        Child nodes
    branch_length : float
        Length of the edge to the parent
    """

    id: int
    name: Optional[str] = None
    parent: Optional["TreeNode"] = None
    children: list["TreeNode"] = field(default_factory=list)
    branch_length: float = 0.0

    @property
    def is_leaf(self) -> bool:
        """Check if node is a leaf."""
        return len(self.children) == 0

    @property
    def lchild(self) -> Optional["TreeNode"]:
        return self.children[0] if self.children else None

    @property
    def rchild(self) -> Optional["TreeNode"]:
        return self.children[1] if len(self.children) > 1 else None

    def __repr__(self) -> str:
        return f"TreeNode(id={self.id}, name={self.name!r}, branch_length={self.branch_length})"


@dataclass
class Tree:
    """
    Phylogenetic tree.

    Node ids follow preorder, so ``nodes[i].id == i``.

    Attributes
    ----------
    root : TreeNode
        Root node of the tree
    nodes : list[TreeNode]
        All nodes indexed by id
    """

    root: TreeNode
    nodes: list[TreeNode] = field(default_factory=list)

    def __post_init__(self):
        if not self.nodes:
            self.renumber()

    @property
    def n_nodes(self) -> int:
        return len(self.nodes)

    @property
    def leaves(self) -> list[TreeNode]:
        return [node for node in self.nodes if node.is_leaf]

    @property
    def n_leaves(self) -> int:
        return len(self.leaves)

    @property
    def leaf_names(self) -> list[str]:
        return [node.name if node.name else str(node.id) for node in self.leaves]

    def renumber(self) -> None:
        """Reassign node ids in preorder and rebuild the node list."""
        self.nodes = []

        def visit(node: TreeNode) -> None:
            node.id = len(self.nodes)
            self.nodes.append(node)
            for child in node.children:
                visit(child)

        visit(self.root)

    @classmethod
    def from_newick(cls, newick_string: str) -> "Tree":
        """
        Parse Newick format tree string.

        Parameters
        ----------
        newick_string : str
            Newick format tree, terminated by a semicolon

        Returns
        -------
        Tree
            Parsed tree

        Raises
        ------
        InputFormatError
            If the string is not valid Newick
        """
        newick = re.sub(r'\[[^\]]*\]', '', newick_string).strip()

        if ';' not in newick:
            raise InputFormatError("Invalid Newick format: missing semicolon")
        tree_line = re.sub(r'\s+', '', newick[:newick.index(';')])
        if not tree_line:
            raise InputFormatError("Invalid Newick format: no tree found")

        node_id_counter = [0]

        def parse_node(s: str, start: int, parent: Optional[TreeNode] = None) -> tuple[TreeNode, int]:
            """Parse a node from position start in string s."""
            node = TreeNode(id=node_id_counter[0], parent=parent)
            node_id_counter[0] += 1
            pos = start

            if pos < len(s) and s[pos] == '(':
                pos += 1
                while True:
                    child, pos = parse_node(s, pos, node)
                    node.children.append(child)

                    if pos < len(s) and s[pos] == ',':
                        pos += 1
                        continue
                    elif pos < len(s) and s[pos] == ')':
                        pos += 1
                        break
                    else:
                        raise InputFormatError(f"Expected ',' or ')' at position {pos}")

            name_start = pos
            while pos < len(s) and s[pos] not in ',:();':
                pos += 1
            if pos > name_start:
                node.name = s[name_start:pos]

            if pos < len(s) and s[pos] == ':':
                pos += 1
                length_start = pos
                while pos < len(s) and s[pos] not in ',();':
                    pos += 1
                try:
                    node.branch_length = float(s[length_start:pos])
                except ValueError:
                    raise InputFormatError(f"Invalid branch length: {s[length_start:pos]}")
                if node.branch_length < 0:
                    raise NumericDegeneracyError(
                        f"Negative branch length {node.branch_length} in tree"
                    )

            return node, pos

        root, pos = parse_node(tree_line, 0, None)
        if pos != len(tree_line):
            raise InputFormatError(f"Unexpected character at position {pos} in Newick string")

        return cls(root=root)

    @classmethod
    def from_file(cls, filepath: Path | str) -> "Tree":
        """Read a Newick tree from a file."""
        with open(filepath, 'r') as f:
            return cls.from_newick(f.read())

    def to_newick(self) -> str:
        """
        Format the tree as a Newick string.

        Branch lengths are written with 10 significant digits, so writing a
        tree that was read from this output reproduces it exactly.
        """

        def fmt(node: TreeNode) -> str:
            text = ''
            if node.children:
                text = '(' + ','.join(fmt(child) for child in node.children) + ')'
            if node.name:
                text += node.name
            if node.parent is not None:
                text += ':' + format(node.branch_length, '.10g')
            return text

        return fmt(self.root) + ';'

    def copy(self) -> "Tree":
        """Deep copy of the tree (node ids preserved)."""

        def clone(node: TreeNode, parent: Optional[TreeNode]) -> TreeNode:
            new = TreeNode(id=node.id, name=node.name, parent=parent,
                           branch_length=node.branch_length)
            new.children = [clone(child, new) for child in node.children]
            return new

        return Tree(root=clone(self.root, None))

    def preorder(self) -> list[TreeNode]:
        """Return nodes in pre-order traversal (root first)."""
        result = []

        def traverse(node: TreeNode) -> None:
            result.append(node)
            for child in node.children:
                traverse(child)

        traverse(self.root)
        return result

    def postorder(self) -> list[TreeNode]:
        """
        Return nodes in post-order traversal (leaves to root).

        Returns
        -------
        list[TreeNode]
            Nodes in post-order
        """
        result = []

        def traverse(node: TreeNode) -> None:
            """Recursively traverse in post-order."""
            for child in node.children:
                traverse(child)
            result.append(node)

        traverse(self.root)
        return result

    def get_node(self, name: str) -> Optional[TreeNode]:
        """Find a node by name."""
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def scale(self, factor: float) -> None:
        """Multiply every branch length by ``factor``."""
        for node in self.nodes:
            node.branch_length *= factor

    def total_length(self) -> float:
        """Sum of all branch lengths."""
        return sum(node.branch_length for node in self.nodes if node.parent is not None)
