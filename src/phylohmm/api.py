"""
High-level API for fitting tree models and decoding phylo-HMMs.

This module provides a simplified interface over the library: file loading
with format detection, model fitting by EM or direct optimization, and
phylo-HMM decoding, all returning result objects with summaries and JSON
export.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence, TextIO, Union

import numpy as np

from .core.likelihood import LikelihoodCalculator, column_emission_scores
from .core.sufficient_stats import get_base_freqs_tuples
from .errors import DimensionMismatchError, PreconditionError
from .hmm.hmm import HMM
from .io.sequences import Alignment, Format, read_alignment
from .io.trees import Tree
from .models.subst_models import SubstModelType, get_subst_model
from .models.tree_model import BranchLengthMode, TreeModel
from .optimize.bfgs import Precision
from .optimize.fit_em import MAX_EM_ITERATIONS, GradientMode, fit_em
from .optimize.optimizer import TreeModelOptimizer

logger = logging.getLogger(__name__)


@dataclass
class FitResult:
    """
    Result of fitting a tree model.

    Attributes
    ----------
    model : TreeModel
        Fitted model (rate matrix normalized, branch lengths absorbing scale)
    lnL : float
        Log-likelihood of the fitted model (natural log)
    method : str
        "em" or "direct"
    n_iterations : int
        EM iterations or likelihood evaluations
    converged : bool
        Whether the optimizer reported convergence
    history : list of float
        Log-likelihood trace

    Examples
    --------
    >>> from phylohmm import fit_tree_model
    >>> result = fit_tree_model("alignment.fa", "tree.nwk", subst_model="HKY85")
    >>> print(result.summary())
    >>> result.model.to_file("fitted.mod")
    """

    model: TreeModel
    lnL: float
    method: str
    n_iterations: int
    converged: bool
    history: list[float] = field(default_factory=list)

    @property
    def subst_model(self) -> str:
        return self.model.subst_model.tag

    @property
    def n_params(self) -> int:
        return self.model.n_params()

    def summary(self) -> str:
        """Human-readable summary of the fit."""
        mod = self.model
        lines = []
        lines.append("=" * 70)
        lines.append(f"TREE MODEL: {self.subst_model}")
        lines.append("=" * 70)
        lines.append("")
        lines.append(f"Log-likelihood:       {self.lnL:.6f}")
        lines.append(f"Number of parameters: {self.n_params}")
        lines.append(f"Method:               {self.method}")
        lines.append(f"Iterations:           {self.n_iterations}")
        lines.append(f"Converged:            {'yes' if self.converged else 'no'}")
        lines.append("")
        lines.append("PARAMETERS:")
        if len(mod.rate_params):
            lines.append("  rate matrix: " + ' '.join(f"{x:.4f}" for x in mod.rate_params))
        lines.append("  background:  " + ' '.join(f"{x:.4f}" for x in mod.backgd_freqs))
        if mod.nratecats > 1:
            if mod.empirical_rates:
                lines.append("  rate consts:  " + ' '.join(f"{x:.4f}" for x in mod.rK))
                lines.append("  rate weights: " + ' '.join(f"{x:.4f}" for x in mod.freqK))
            else:
                lines.append(f"  alpha = {mod.alpha:.4f} ({mod.nratecats} categories)")
        lines.append("")
        lines.append("TREE:")
        lines.append(f"  {mod.tree.n_leaves} sequences")
        lines.append(f"  total length {mod.tree.total_length():.6f}")
        lines.append(f"  {mod.tree.to_newick()}")
        lines.append("")
        lines.append("=" * 70)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        mod = self.model
        return {
            'subst_model': self.subst_model,
            'lnL': float(self.lnL),
            'method': self.method,
            'n_iterations': int(self.n_iterations),
            'converged': bool(self.converged),
            'n_params': int(self.n_params),
            'rate_params': [float(x) for x in mod.rate_params],
            'backgd_freqs': [float(x) for x in mod.backgd_freqs],
            'nratecats': int(mod.nratecats),
            'alpha': float(mod.alpha) if mod.nratecats > 1 and not mod.empirical_rates else None,
            'rate_consts': [float(x) for x in mod.rK],
            'rate_weights': [float(x) for x in mod.freqK],
            'tree': mod.tree.to_newick(),
        }

    def to_json(self, filepath: Optional[str] = None, indent: int = 2) -> str:
        json_str = json.dumps(self.to_dict(), indent=indent)
        if filepath:
            with open(filepath, 'w') as f:
                f.write(json_str)
        return json_str

    def __str__(self) -> str:
        return self.summary()

    def __repr__(self) -> str:
        return f"FitResult(model='{self.subst_model}', lnL={self.lnL:.2f}, method='{self.method}')"


@dataclass
class DecodeResult:
    """
    Result of phylo-HMM decoding.

    Attributes
    ----------
    path : ndarray of int
        Viterbi state path
    score : float
        Log-probability of the Viterbi path
    log_likelihood : float
        Total log-likelihood over all paths (forward algorithm)
    posteriors : ndarray, optional
        Posterior state probabilities, shape (nstates, length)
    labels : list of str
        Name of each state
    """

    path: np.ndarray
    score: float
    log_likelihood: float
    posteriors: Optional[np.ndarray] = None
    labels: list[str] = field(default_factory=list)

    def segments(self) -> list[tuple[int, int, str]]:
        """Maximal runs of one state as (start, end, label), end exclusive."""
        runs = []
        start = 0
        for p in range(1, len(self.path) + 1):
            if p == len(self.path) or self.path[p] != self.path[start]:
                runs.append((start, p, self.labels[self.path[start]]))
                start = p
        return runs

    def summary(self) -> str:
        lines = []
        lines.append("=" * 70)
        lines.append("PHYLO-HMM DECODING")
        lines.append("=" * 70)
        lines.append("")
        lines.append(f"Columns:              {len(self.path)}")
        lines.append(f"Viterbi score:        {self.score:.6f}")
        lines.append(f"Log-likelihood:       {self.log_likelihood:.6f}")
        lines.append("")
        lines.append("STATE USAGE:")
        for s, label in enumerate(self.labels):
            lines.append(f"  {label}: {int(np.sum(self.path == s))} columns")
        lines.append("")
        lines.append("=" * 70)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        data = {
            'score': float(self.score),
            'log_likelihood': float(self.log_likelihood),
            'labels': list(self.labels),
            'path': [int(s) for s in self.path],
            'segments': [
                {'start': start, 'end': end, 'state': label}
                for start, end, label in self.segments()
            ],
        }
        if self.posteriors is not None:
            data['posteriors'] = self.posteriors.tolist()
        return data

    def to_json(self, filepath: Optional[str] = None, indent: int = 2) -> str:
        json_str = json.dumps(self.to_dict(), indent=indent)
        if filepath:
            with open(filepath, 'w') as f:
                f.write(json_str)
        return json_str

    def __str__(self) -> str:
        return self.summary()


def _load_alignment(
    alignment: Union[str, Path, Alignment],
    format: Optional[Format | str] = None,
    alphabet: Optional[str] = None,
) -> Alignment:
    if isinstance(alignment, Alignment):
        return alignment
    path = Path(alignment)
    if not path.exists():
        raise FileNotFoundError(f"Alignment file not found: {path}")
    return read_alignment(path, format=format, alphabet=alphabet)


def _load_tree(tree: Union[str, Path, Tree]) -> Tree:
    """Tree object, path to a Newick file, or a Newick string."""
    if isinstance(tree, Tree):
        return tree
    text = str(tree)
    if text.lstrip().startswith('('):
        return Tree.from_newick(text)
    path = Path(text)
    if path.exists():
        return Tree.from_file(path)
    return Tree.from_newick(text)


def _load_model(model: Union[str, Path, TreeModel]) -> TreeModel:
    if isinstance(model, TreeModel):
        return model
    return TreeModel.from_file(model)


def build_tree_model(
    msa: Alignment,
    tree: Tree,
    subst_model: str = "REV",
    nratecats: int = 1,
    alpha: float = 1.0,
    empirical_rates: Optional[Sequence[float]] = None,
    estimate_backgd: bool = False,
    branch_lengths: BranchLengthMode = BranchLengthMode.ALL,
    root_leaf: Optional[str] = None,
    cat: Optional[int] = None,
) -> TreeModel:
    """
    Starting tree model for an alignment.

    Equilibrium frequencies are uniform for JC69 and K80 and the observed
    tuple frequencies otherwise.
    """
    model = get_subst_model(subst_model, alphabet=msa.alphabet)
    if model.model_type in (SubstModelType.JC69, SubstModelType.K80):
        backgd = np.full(model.nstates, 1.0 / model.nstates)
    else:
        backgd = get_base_freqs_tuples(msa, model.order + 1, cat)

    root_leaf_id = None
    if root_leaf is not None:
        node = tree.get_node(root_leaf)
        if node is None:
            raise DimensionMismatchError(f"Root leaf {root_leaf!r} is not in the tree")
        root_leaf_id = node.id

    return TreeModel(
        tree=tree,
        subst_model=model,
        backgd_freqs=backgd,
        nratecats=nratecats,
        alpha=alpha,
        rate_consts=None if empirical_rates is None else np.asarray(empirical_rates, dtype=float),
        empirical_rates=empirical_rates is not None,
        root_leaf_id=root_leaf_id,
        estimate_branchlens=branch_lengths,
        estimate_backgd=estimate_backgd,
    )


def fit_tree_model(
    alignment: Union[str, Path, Alignment],
    tree: Union[str, Path, Tree, None] = None,
    subst_model: str = "REV",
    nratecats: int = 1,
    alpha: float = 1.0,
    empirical_rates: Optional[Sequence[float]] = None,
    estimate_backgd: bool = False,
    branch_lengths: BranchLengthMode = BranchLengthMode.ALL,
    precision: Precision = Precision.MED,
    method: str = "em",
    gradient_mode: GradientMode = GradientMode.ANALYTIC,
    root_leaf: Optional[str] = None,
    cat: Optional[int] = None,
    init_model: Union[str, Path, TreeModel, None] = None,
    max_iterations: int = MAX_EM_ITERATIONS,
    logf: Optional[TextIO] = None,
    format: Optional[Format | str] = None,
) -> FitResult:
    """
    Fit a tree model to an alignment.

    Parameters
    ----------
    alignment : str, Path, or Alignment
        Alignment (FASTA, PHYLIP, AXT or SS; detected when ``format`` is omitted)
    tree : str, Path, or Tree, optional
        Tree topology with starting branch lengths; required unless
        ``init_model`` is given
    subst_model : str
        Substitution model tag (JC69, K80, F81, HKY85, REV, UNREST, HKY2,
        R2, U2, R3, U3)
    nratecats : int
        Number of rate categories
    alpha : float
        Starting gamma shape (when ``nratecats > 1``)
    empirical_rates : sequence of float, optional
        Rate constants of an empirical rate mixture (weights are estimated)
    estimate_backgd : bool
        Estimate equilibrium frequencies instead of fixing them
    branch_lengths : BranchLengthMode
        Estimate all branch lengths, one global scale, or none
    precision : Precision
        Convergence precision
    method : str
        "em" or "direct"
    gradient_mode : GradientMode
        Gradient used inside EM
    root_leaf : str, optional
        Name of a leaf placed at the root (its branch is held at zero)
    cat : int, optional
        Fit only the columns of this category
    init_model : str, Path, or TreeModel, optional
        Start from an existing model instead of building one
    max_iterations : int
        Cap on EM iterations
    logf : file, optional
        Optimization trace

    Returns
    -------
    FitResult

    Raises
    ------
    PreconditionError
        If neither a tree nor an initial model is given, or the method is unknown
    """
    msa = _load_alignment(alignment, format=format)

    if init_model is not None:
        mod = _load_model(init_model)
        mod.estimate_backgd = estimate_backgd
        mod.estimate_branchlens = BranchLengthMode(branch_lengths)
    elif tree is not None:
        mod = build_tree_model(
            msa, _load_tree(tree), subst_model=subst_model, nratecats=nratecats,
            alpha=alpha, empirical_rates=empirical_rates, estimate_backgd=estimate_backgd,
            branch_lengths=branch_lengths, root_leaf=root_leaf, cat=cat,
        )
    else:
        raise PreconditionError("A tree or an initial model is required")

    if method == "em":
        em = fit_em(mod, msa, cat=cat, precision=precision, gradient_mode=gradient_mode,
                    max_iterations=max_iterations, logf=logf)
        return FitResult(model=mod, lnL=em.lnL, method="em", n_iterations=em.n_iterations,
                         converged=em.converged, history=em.history)
    if method == "direct":
        optimizer = TreeModelOptimizer(mod, msa, cat=cat)
        lnL = optimizer.optimize(maxiter=max_iterations)
        return FitResult(model=mod, lnL=lnL, method="direct",
                         n_iterations=len(optimizer.history), converged=True,
                         history=list(optimizer.history))
    raise PreconditionError(f"Unknown fitting method {method!r}; use 'em' or 'direct'")


def compute_log_likelihood(
    model: Union[str, Path, TreeModel],
    alignment: Union[str, Path, Alignment],
    per_column: bool = False,
    cat: Optional[int] = None,
    format: Optional[Format | str] = None,
) -> Union[float, np.ndarray]:
    """
    Log-likelihood of an alignment under a tree model.

    Returns the total (optionally for one category) or, with
    ``per_column=True``, one score per alignment column.
    """
    mod = _load_model(model)
    msa = _load_alignment(alignment, format=format, alphabet=mod.alphabet)
    calc = LikelihoodCalculator(mod, msa)
    if per_column:
        return calc.column_log_likelihoods()
    return calc.log_likelihood(cat)


def decode(
    models: Sequence[Union[str, Path, TreeModel]],
    hmm: Union[str, Path, HMM],
    alignment: Union[str, Path, Alignment],
    posteriors: bool = False,
    labels: Optional[Sequence[str]] = None,
    format: Optional[Format | str] = None,
) -> DecodeResult:
    """
    Decode an alignment with a phylo-HMM.

    Parameters
    ----------
    models : sequence of str, Path, or TreeModel
        One tree model per HMM state
    hmm : str, Path, or HMM
        State-transition model
    alignment : str, Path, or Alignment
        Alignment containing every leaf of the trees
    posteriors : bool
        Also compute posterior state probabilities
    labels : sequence of str, optional
        State names (model indices when omitted)

    Returns
    -------
    DecodeResult

    Raises
    ------
    DimensionMismatchError
        If the HMM's state count differs from the number of models
    """
    mods = [_load_model(m) for m in models]
    if not isinstance(hmm, HMM):
        hmm = HMM.from_file(hmm)
    if hmm.nstates != len(mods):
        raise DimensionMismatchError(
            f"HMM has {hmm.nstates} states but {len(mods)} tree models were given"
        )
    if labels is None:
        labels = [str(i) for i in range(len(mods))]
    elif len(labels) != len(mods):
        raise DimensionMismatchError(f"{len(labels)} labels for {len(mods)} states")

    msa = _load_alignment(alignment, format=format, alphabet=mods[0].alphabet)
    emissions = column_emission_scores(mods, msa)
    path, score = hmm.viterbi(emissions)
    log_likelihood, _ = hmm.forward(emissions)
    post = hmm.posterior_probs(emissions) if posteriors else None
    logger.info("Decoded %d columns: Viterbi score %.6f", msa.length, score)
    return DecodeResult(path=path, score=score, log_likelihood=log_likelihood,
                        posteriors=post, labels=list(labels))
