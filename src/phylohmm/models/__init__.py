"""
Substitution and tree models.

- **Substitution models**: JC69, K80, F81, HKY85, REV and UNREST on single
  nucleotides, plus their dinucleotide and trinucleotide variants
- **Rate variation**: discrete gamma rate categories
- **Tree models**: a substitution model on a tree with branch lengths,
  equilibrium frequencies and cached transition matrices
"""

from phylohmm.models.rate_variation import discrete_gamma
from phylohmm.models.subst_models import SubstitutionModel, SubstModelType, get_subst_model
from phylohmm.models.tree_model import BranchLengthMode, TreeModel

__all__ = [
    "SubstitutionModel",
    "SubstModelType",
    "get_subst_model",
    "discrete_gamma",
    "TreeModel",
    "BranchLengthMode",
]
