"""
Tree models: a substitution process on a phylogenetic tree.
"""

import copy
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Optional, TextIO

import numpy as np

from ..core.matrix import (
    check_detailed_balance,
    eigen_decompose,
    eigen_decompose_rev,
    exp_from_eigen,
    expected_rate,
)
from ..errors import (
    DimensionMismatchError,
    InputFormatError,
    NumericDegeneracyError,
    PreconditionError,
)
from ..io.trees import Tree, TreeNode
from .rate_variation import discrete_gamma
from .subst_models import SubstitutionModel, get_subst_model

logger = logging.getLogger(__name__)

# Gamma shapes below this are clamped when unpacking parameters
MIN_ALPHA = 1e-3

# Lower bound on equilibrium frequency parameters
MIN_BACKGD = 1e-3


class BranchLengthMode(str, Enum):
    """Which branch-length parameters are estimated."""
    ALL = "all"
    SCALE_ONLY = "scale"
    NONE = "none"


def _fmt(x: float) -> str:
    return format(float(x), '.10g')


class TreeModel:
    """
    Continuous-time substitution model on a tree with rate variation.

    The rate matrix ``Q``, its eigendecomposition and the transition
    matrices ``P[node_id][k]`` for every edge and rate category are kept
    consistent by ``update()``.

    Parameters
    ----------
    tree : Tree
        Phylogenetic tree with branch lengths
    subst_model : SubstitutionModel
        Substitution model family
    backgd_freqs : ndarray, optional
        Equilibrium frequencies (uniform when omitted)
    rate_params : ndarray, optional
        Free parameters of the substitution model (model defaults when omitted)
    nratecats : int
        Number of rate categories
    alpha : float
        Gamma shape parameter (used when nratecats > 1 and rates are not empirical)
    rate_consts : ndarray, optional
        Rate multipliers of an empirical rate mixture
    rate_weights : ndarray, optional
        Weights of an empirical rate mixture (uniform when omitted)
    empirical_rates : bool
        Use ``rate_consts``/``rate_weights`` instead of discrete gamma
    root_leaf_id : int, optional
        Id of a leaf that sits at the root (its edge is held at length zero)
    estimate_branchlens : BranchLengthMode
        Branch-length parameterization used when packing parameters
    estimate_backgd : bool
        Estimate equilibrium frequencies
    rate_matrix : ndarray, optional
        Explicit rate matrix. When omitted it is built from ``rate_params``
        and normalized to one expected substitution per unit time; when
        given, ``rate_params`` are recovered from it.

    Attributes
    ----------
    rate_scale : float
        Factor multiplying ``subst_model.rate_matrix(rate_params)`` to give
        ``Q``. It carries the normalization for models whose parameters
        cannot express an overall rate.
    """

    def __init__(
        self,
        tree: Tree,
        subst_model: SubstitutionModel,
        backgd_freqs: Optional[np.ndarray] = None,
        rate_params: Optional[np.ndarray] = None,
        nratecats: int = 1,
        alpha: float = 0.0,
        rate_consts: Optional[np.ndarray] = None,
        rate_weights: Optional[np.ndarray] = None,
        empirical_rates: bool = False,
        root_leaf_id: Optional[int] = None,
        estimate_branchlens: BranchLengthMode = BranchLengthMode.ALL,
        estimate_backgd: bool = False,
        rate_matrix: Optional[np.ndarray] = None,
    ):
        self.tree = tree
        self.subst_model = subst_model
        self.nstates = subst_model.nstates

        if backgd_freqs is None:
            backgd_freqs = np.full(self.nstates, 1.0 / self.nstates)
        self.backgd_freqs = np.asarray(backgd_freqs, dtype=float)
        if len(self.backgd_freqs) != self.nstates:
            raise DimensionMismatchError(
                f"{len(self.backgd_freqs)} equilibrium frequencies for {self.nstates} states"
            )

        self.rate_params = (subst_model.init_params() if rate_params is None
                            else np.asarray(rate_params, dtype=float))
        if len(self.rate_params) != subst_model.n_params:
            raise DimensionMismatchError(
                f"{subst_model.tag} takes {subst_model.n_params} parameters, got {len(self.rate_params)}"
            )

        if nratecats < 1:
            raise PreconditionError(f"Number of rate categories must be positive, got {nratecats}")
        self.nratecats = nratecats
        self.alpha = alpha
        self.empirical_rates = empirical_rates
        if empirical_rates:
            if rate_consts is None or len(rate_consts) != nratecats:
                raise DimensionMismatchError("Empirical rates need one rate constant per category")
            self.rK = np.asarray(rate_consts, dtype=float)
            if rate_weights is None:
                self.freqK = np.full(nratecats, 1.0 / nratecats)
            else:
                self.freqK = np.asarray(rate_weights, dtype=float)
                if abs(self.freqK.sum() - 1.0) > 1e-6:
                    self.freqK = self.freqK / self.freqK.sum()
        elif nratecats > 1:
            if alpha <= 0:
                raise PreconditionError("Gamma rate variation needs a positive shape parameter")
            self.freqK, self.rK = discrete_gamma(alpha, nratecats)
        else:
            self.rK = np.ones(1)
            self.freqK = np.ones(1)
        self._saved_rate_variation = None

        if root_leaf_id is not None:
            node = self.tree.nodes[root_leaf_id]
            if not node.is_leaf:
                raise PreconditionError(f"Root leaf {root_leaf_id} is not a leaf")
        self.root_leaf_id = root_leaf_id
        self.estimate_branchlens = BranchLengthMode(estimate_branchlens)
        self.estimate_backgd = estimate_backgd
        self.scale = 1.0
        self.lnL: Optional[float] = None

        if rate_matrix is not None:
            self.Q = np.array(rate_matrix, dtype=float)
            self._sync_rate_params()
        else:
            self.rate_scale = 1.0
            self.Q = subst_model.rate_matrix(self.rate_params, self.backgd_freqs)
            rate = expected_rate(self.Q, self.backgd_freqs)
            if rate > 0 and np.isfinite(rate):
                self.rate_scale = 1.0 / rate
                self.Q = self.Q * self.rate_scale
        self.P: dict[int, list[np.ndarray]] = {}
        self.update()

    @property
    def order(self) -> int:
        return self.subst_model.order

    @property
    def alphabet(self) -> str:
        return self.subst_model.alphabet

    @property
    def is_reversible(self) -> bool:
        return self.subst_model.reversible

    @property
    def rate_variation_disabled(self) -> bool:
        return self._saved_rate_variation is not None

    # ------------------------------------------------------------------
    # Rate matrix and transition probabilities

    def update(self) -> None:
        """Refresh the eigendecomposition and every transition matrix."""
        self._diagonalize()
        self._compute_P()

    def _diagonalize(self) -> None:
        pi = self.subst_model.weights(self.backgd_freqs)
        pi = pi / pi.sum()
        if (self.is_reversible and np.all(pi > 0)
                and check_detailed_balance(self.Q, pi, rtol=1e-8)):
            self.eigenvalues, self.evec, self.evec_inv = eigen_decompose_rev(self.Q, pi)
        else:
            self.eigenvalues, self.evec, self.evec_inv = eigen_decompose(self.Q)
        self.is_complex = bool(np.iscomplexobj(self.eigenvalues) or np.iscomplexobj(self.evec))

    def branch_length(self, node: TreeNode) -> float:
        """Effective length of the edge above ``node`` (zero for the root leaf)."""
        if node.id == self.root_leaf_id:
            return 0.0
        return node.branch_length * self.scale

    def _compute_P(self) -> None:
        self.P = {}
        for node in self.tree.nodes:
            if node.parent is None:
                continue
            t = self.branch_length(node)
            if t < 0:
                raise NumericDegeneracyError(
                    f"Negative branch length {node.branch_length} above node {node.id}"
                )
            self.P[node.id] = [
                exp_from_eigen(self.eigenvalues, self.evec, self.evec_inv, t * r)
                for r in self.rK
            ]

    def set_rate_matrix(self, Q: np.ndarray) -> None:
        """Replace the rate matrix and refresh derived quantities."""
        self.Q = np.array(Q, dtype=float)
        self._sync_rate_params()
        self.update()

    def _sync_rate_params(self) -> None:
        """
        Recover ``rate_params`` and ``rate_scale`` from ``Q``.

        Afterwards ``rate_scale * subst_model.rate_matrix(rate_params)``
        rebuilds ``Q``, so packing and unpacking parameters is lossless.
        """
        self.rate_params = self.subst_model.params_from_rate_matrix(self.Q, self.backgd_freqs)
        base = expected_rate(self.subst_model.rate_matrix(self.rate_params, self.backgd_freqs),
                             self.backgd_freqs)
        self.rate_scale = expected_rate(self.Q, self.backgd_freqs) / base if base > 0 else 1.0

    def scale_rate_matrix(self) -> float:
        """
        Normalize ``Q`` to one expected substitution per unit time.

        Returns the factor by which ``Q`` was divided; multiplying branch
        lengths by it leaves the likelihood unchanged.
        """
        factor = expected_rate(self.Q, self.backgd_freqs)
        if factor <= 0 or not np.isfinite(factor):
            raise NumericDegeneracyError(f"Cannot normalize rate matrix with expected rate {factor}")
        self.Q = self.Q / factor
        self._sync_rate_params()
        self.update()
        return factor

    def scale_branches(self, factor: float) -> None:
        """Multiply every branch length by ``factor``."""
        self.tree.scale(factor)
        self._compute_P()

    # ------------------------------------------------------------------
    # Rate variation staging

    def disable_rate_variation(self) -> None:
        """
        Temporarily collapse to a single rate category.

        The shape parameter is set to ``-nratecats`` to mark the deferral.
        """
        if self.nratecats == 1 or self.rate_variation_disabled:
            return
        self._saved_rate_variation = (self.nratecats, self.alpha, self.rK, self.freqK)
        self.alpha = -float(self.nratecats)
        self.nratecats = 1
        self.rK = np.ones(1)
        self.freqK = np.ones(1)
        self._compute_P()

    def enable_rate_variation(self) -> None:
        """Restore the rate categories saved by ``disable_rate_variation``."""
        if not self.rate_variation_disabled:
            return
        self.nratecats, self.alpha, self.rK, self.freqK = self._saved_rate_variation
        self._saved_rate_variation = None
        self._compute_P()

    @property
    def planned_nratecats(self) -> int:
        if self.rate_variation_disabled:
            return self._saved_rate_variation[0]
        return self.nratecats

    # ------------------------------------------------------------------
    # Parameter packing

    def branch_param_nodes(self) -> list[TreeNode]:
        """Nodes whose edges carry parameters: preorder, minus root and root leaf."""
        return [node for node in self.tree.preorder()
                if node.parent is not None and node.id != self.root_leaf_id]

    def _shares_root_param(self) -> bool:
        root = self.tree.root
        return (self.is_reversible and len(root.children) == 2
                and all(child.id != self.root_leaf_id for child in root.children))

    def branch_param_map(self) -> list[tuple[TreeNode, int, float]]:
        """
        Parameter slot of each branch.

        Returns
        -------
        list of (node, index, factor)
            The edge above ``node`` has length ``factor * params[index]``.
            With a reversible model the two root edges share slot 0 with
            factor 1/2.
        """
        shared = self._shares_root_param()
        root = self.tree.root
        result = []
        idx = 0
        for node in self.branch_param_nodes():
            if shared and node.parent is root:
                result.append((node, 0, 0.5))
                if node is root.children[0]:
                    idx += 1
            else:
                result.append((node, idx, 1.0))
                idx += 1
        return result

    def n_branch_params(self) -> int:
        if self.estimate_branchlens == BranchLengthMode.ALL:
            nodes = self.branch_param_nodes()
            return len(nodes) - (1 if self._shares_root_param() else 0)
        if self.estimate_branchlens == BranchLengthMode.SCALE_ONLY:
            return 1
        return 0

    def n_backgd_params(self) -> int:
        return self.nstates if self.estimate_backgd else 0

    def n_ratevar_params(self) -> int:
        planned = self.planned_nratecats
        if planned <= 1:
            return 0
        return planned if self.empirical_rates else 1

    def n_params(self) -> int:
        return (self.n_branch_params() + self.n_backgd_params()
                + self.n_ratevar_params() + self.subst_model.n_params)

    def ratevar_offset(self) -> int:
        return self.n_branch_params() + self.n_backgd_params()

    def rate_matrix_offset(self) -> int:
        return self.ratevar_offset() + self.n_ratevar_params()

    def get_params(self) -> np.ndarray:
        """
        Pack the estimated quantities into a parameter vector.

        Layout: branch lengths (preorder), equilibrium frequencies, gamma
        shape or empirical rate weights, rate-matrix parameters.
        """
        params = []
        if self.estimate_branchlens == BranchLengthMode.ALL:
            slots = {}
            for node, idx, _ in self.branch_param_map():
                slots[idx] = slots.get(idx, 0.0) + node.branch_length
            params.extend(slots[i] for i in range(len(slots)))
        elif self.estimate_branchlens == BranchLengthMode.SCALE_ONLY:
            params.append(self.scale)

        if self.estimate_backgd:
            params.extend(self.backgd_freqs)

        if self.n_ratevar_params():
            if self.rate_variation_disabled:
                _, alpha, _, freqK = self._saved_rate_variation
            else:
                alpha, freqK = self.alpha, self.freqK
            if self.empirical_rates:
                params.extend(freqK)
            else:
                params.append(alpha)

        params.extend(self.rate_params)
        return np.array(params, dtype=float)

    def lower_bounds(self) -> np.ndarray:
        """Lower bounds matching ``get_params``: 0, or MIN_BACKGD for frequencies."""
        lower = np.zeros(self.n_params())
        if self.estimate_backgd:
            start = self.n_branch_params()
            lower[start:start + self.nstates] = MIN_BACKGD
        return lower

    def unpack_params(self, params: np.ndarray) -> None:
        """Set the model from a parameter vector and refresh ``Q`` and ``P``."""
        params = np.asarray(params, dtype=float)
        if len(params) != self.n_params():
            raise DimensionMismatchError(
                f"Expected {self.n_params()} parameters, got {len(params)}"
            )
        idx = 0
        if self.estimate_branchlens == BranchLengthMode.ALL:
            for node, slot, factor in self.branch_param_map():
                if params[slot] < 0:
                    raise NumericDegeneracyError(f"Negative branch length parameter {params[slot]}")
                node.branch_length = params[slot] * factor
            idx = self.n_branch_params()
        elif self.estimate_branchlens == BranchLengthMode.SCALE_ONLY:
            self.scale = params[0]
            idx = 1

        if self.estimate_backgd:
            freqs = params[idx:idx + self.nstates]
            self.backgd_freqs = freqs / freqs.sum()
            idx += self.nstates

        n_ratevar = self.n_ratevar_params()
        if n_ratevar and not self.rate_variation_disabled:
            if self.empirical_rates:
                weights = params[idx:idx + n_ratevar]
                if weights.sum() > 0:
                    self.freqK = weights / weights.sum()
            else:
                self.alpha = max(params[idx], MIN_ALPHA)
                self.freqK, self.rK = discrete_gamma(self.alpha, self.nratecats)
        idx += n_ratevar

        self.rate_params = params[idx:].copy()
        self.Q = self.subst_model.rate_matrix(self.rate_params, self.backgd_freqs) * self.rate_scale
        self.update()

    def copy(self) -> "TreeModel":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Text format

    def to_text(self) -> str:
        """Format the model in the tree-model text format."""
        lines = [
            f"ALPHABET: {' '.join(self.alphabet)}",
            f"ORDER: {self.order}",
            f"SUBST_MOD: {self.subst_model.tag}",
        ]
        if self.planned_nratecats > 1:
            nratecats, alpha, rK, freqK = (self._saved_rate_variation if self.rate_variation_disabled
                                           else (self.nratecats, self.alpha, self.rK, self.freqK))
            lines.append(f"NRATECATS: {nratecats}")
            if self.empirical_rates:
                lines.append("RATE_CONSTS: " + ' '.join(_fmt(x) for x in rK))
                lines.append("RATE_WEIGHTS: " + ' '.join(_fmt(x) for x in freqK))
            else:
                lines.append(f"ALPHA: {_fmt(alpha)}")
        lines.append("BACKGROUND: " + ' '.join(_fmt(x) for x in self.backgd_freqs))
        lines.append("RATE_MAT:")
        for row in self.Q:
            lines.append("  " + ' '.join(_fmt(x) for x in row))
        lines.append(f"TREE: {self.tree.to_newick()}")
        return '\n'.join(lines) + '\n'

    def write(self, f: TextIO) -> None:
        f.write(self.to_text())

    def to_file(self, filepath: Path | str) -> None:
        with open(filepath, 'w') as f:
            self.write(f)

    @classmethod
    def from_text(cls, text: str) -> "TreeModel":
        """
        Parse a model in the tree-model text format.

        Raises
        ------
        InputFormatError
            On unknown keys, missing sections or malformed numbers
        """
        fields: dict[str, str] = {}
        matrix_rows: list[list[float]] = []
        lines = text.splitlines()
        i = 0
        while i < len(lines):
            line = lines[i].strip()
            i += 1
            if not line:
                continue
            m = re.match(r'^([A-Z_]+):\s*(.*)$', line)
            if m is None:
                raise InputFormatError(f"Bad line in tree model: {line!r}")
            key, value = m.group(1), m.group(2)
            if key == 'RATE_MAT':
                while i < len(lines) and lines[i].strip() and not re.match(r'^[A-Z_]+:', lines[i].strip()):
                    try:
                        matrix_rows.append([float(x) for x in lines[i].split()])
                    except ValueError:
                        raise InputFormatError(f"Bad rate matrix row: {lines[i]!r}")
                    i += 1
            elif key in ('ALPHABET', 'ORDER', 'SUBST_MOD', 'NRATECATS', 'ALPHA',
                         'RATE_CONSTS', 'RATE_WEIGHTS', 'BACKGROUND', 'TREE'):
                fields[key] = value
            else:
                raise InputFormatError(f"Unknown key {key!r} in tree model")

        for key in ('ALPHABET', 'SUBST_MOD', 'BACKGROUND', 'TREE'):
            if key not in fields:
                raise InputFormatError(f"Tree model is missing {key}")

        def floats(key: str) -> np.ndarray:
            try:
                return np.array([float(x) for x in fields[key].split()])
            except ValueError:
                raise InputFormatError(f"Bad numbers for {key}: {fields[key]!r}")

        try:
            order = int(fields.get('ORDER', '0'))
            nratecats = int(fields.get('NRATECATS', '1'))
        except ValueError:
            raise InputFormatError("ORDER and NRATECATS must be integers")

        alphabet = fields['ALPHABET'].replace(' ', '')
        subst_model = get_subst_model(fields['SUBST_MOD'], alphabet=alphabet, order=order)
        backgd = floats('BACKGROUND')
        if len(backgd) != subst_model.nstates:
            raise InputFormatError(
                f"BACKGROUND has {len(backgd)} values for {subst_model.nstates} states"
            )

        Q = None
        if matrix_rows:
            Q = np.array(matrix_rows)
            if Q.shape != (subst_model.nstates, subst_model.nstates):
                raise InputFormatError(f"RATE_MAT has shape {Q.shape}")
            rate_params = subst_model.params_from_rate_matrix(Q, backgd)
        else:
            rate_params = subst_model.init_params()

        empirical = 'RATE_CONSTS' in fields
        alpha = float(fields['ALPHA']) if 'ALPHA' in fields else 0.0
        return cls(
            tree=Tree.from_newick(fields['TREE']),
            subst_model=subst_model,
            backgd_freqs=backgd,
            rate_params=rate_params,
            nratecats=nratecats,
            alpha=alpha,
            rate_consts=floats('RATE_CONSTS') if empirical else None,
            rate_weights=floats('RATE_WEIGHTS') if 'RATE_WEIGHTS' in fields else None,
            empirical_rates=empirical,
            rate_matrix=Q,
        )

    @classmethod
    def from_file(cls, filepath: Path | str) -> "TreeModel":
        with open(filepath, 'r') as f:
            return cls.from_text(f.read())
