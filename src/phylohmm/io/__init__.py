"""
Input/Output modules for sequence alignments and phylogenetic trees.

This module provides classes for reading and working with:

- **Sequence alignments**: FASTA, PHYLIP and AXT formats (SS files are
  handled by :mod:`phylohmm.core.sufficient_stats`)
- **Phylogenetic trees**: Newick format

The main classes handle file parsing, format detection, and data validation.
"""

from phylohmm.io.sequences import Alignment, Format, read_alignment
from phylohmm.io.trees import Tree, TreeNode

__all__ = ["Alignment", "Format", "read_alignment", "Tree", "TreeNode"]
