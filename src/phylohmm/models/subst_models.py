"""
Nucleotide substitution models.

Each model is a parameterized family of rate matrices over tuples of
``order + 1`` alphabet characters. Only changes at a single tuple position
carry rate. Off-diagonal entries are ``s_ij * pi_j`` for reversible models
(exchangeability times equilibrium frequency) and ``s_ij`` for the
unrestricted model; free parameters enter linearly, which is what the
per-parameter (row, col) maps record.
"""

from enum import Enum
from itertools import product
from typing import Optional

import numpy as np

from ..core.matrix import create_reversible_Q
from ..errors import InputFormatError

TRANSITIONS = {('A', 'G'), ('G', 'A'), ('C', 'T'), ('T', 'C')}


class SubstModelType(str, Enum):
    """Substitution model families."""
    JC69 = "JC69"
    K80 = "K80"
    F81 = "F81"
    HKY85 = "HKY85"
    REV = "REV"
    UNREST = "UNREST"


# tags naming a model family at a higher tuple order
_TUPLE_TAGS = {
    "HKY2": (SubstModelType.HKY85, 1),
    "R2": (SubstModelType.REV, 1),
    "U2": (SubstModelType.UNREST, 1),
    "R3": (SubstModelType.REV, 2),
    "U3": (SubstModelType.UNREST, 2),
}


def is_transition(nuc1: str, nuc2: str) -> bool:
    """Check if nucleotide change is a transition (A<->G or C<->T)."""
    return (nuc1, nuc2) in TRANSITIONS


def tuple_states(alphabet: str, order: int = 0) -> list[str]:
    """All tuples of ``order + 1`` characters, oldest position most significant."""
    return [''.join(t) for t in product(alphabet, repeat=order + 1)]


def get_neighbors(states: list[str]) -> list[tuple[int, int, int]]:
    """
    Ordered pairs of states differing at exactly one tuple position.

    Returns
    -------
    list of (i, j, pos)
        State indices and the position at which they differ
    """
    neighbors = []
    for i, a in enumerate(states):
        for j, b in enumerate(states):
            if i == j:
                continue
            diffs = [k for k in range(len(a)) if a[k] != b[k]]
            if len(diffs) == 1:
                neighbors.append((i, j, diffs[0]))
    return neighbors


class SubstitutionModel:
    """
    Base class for substitution model families.

    Attributes
    ----------
    alphabet : str
        Alphabet characters
    order : int
        Tuple order (tuples have ``order + 1`` characters)
    states : list[str]
        State labels
    param_rows, param_cols : list[ndarray]
        For each free parameter, the matrix cells in which it appears
    """

    model_type: SubstModelType
    reversible = True

    def __init__(self, alphabet: str = "ACGT", order: int = 0):
        self.alphabet = alphabet
        self.order = order
        self.states = tuple_states(alphabet, order)
        self.nstates = len(self.states)
        self.neighbors = get_neighbors(self.states)
        self.fixed_rates, groups = self._build_param_map()
        self.param_rows = [np.array([i for i, _ in g], dtype=int) for g in groups]
        self.param_cols = [np.array([j for _, j in g], dtype=int) for g in groups]

    @property
    def n_params(self) -> int:
        return len(self.param_rows)

    @property
    def tag(self) -> str:
        if self.order == 0:
            return self.model_type.value
        for tag, (model_type, order) in _TUPLE_TAGS.items():
            if model_type == self.model_type and order == self.order:
                return tag
        raise InputFormatError(f"No tag for {self.model_type.value} of order {self.order}")

    def _build_param_map(self) -> tuple[np.ndarray, list[list[tuple[int, int]]]]:
        """Return the fixed exchangeabilities and the cells of each parameter."""
        raise NotImplementedError

    def _changed(self, i: int, j: int, pos: int) -> tuple[str, str]:
        return self.states[i][pos], self.states[j][pos]

    def weights(self, pi: np.ndarray) -> np.ndarray:
        """Column weights multiplying the exchangeabilities."""
        return pi

    def init_params(self) -> np.ndarray:
        """Default starting values for the free parameters."""
        return np.ones(self.n_params)

    def rate_matrix(self, params: np.ndarray, pi: np.ndarray) -> np.ndarray:
        """
        Build the (unnormalized) rate matrix.

        Parameters
        ----------
        params : ndarray, shape (n_params,)
            Free parameters
        pi : ndarray, shape (nstates,)
            Equilibrium frequencies

        Returns
        -------
        ndarray, shape (nstates, nstates)
            Rate matrix with zero row sums
        """
        S = self.fixed_rates.copy()
        for p in range(self.n_params):
            S[self.param_rows[p], self.param_cols[p]] = params[p]
        if self.reversible:
            return create_reversible_Q(S, self.weights(pi))
        np.fill_diagonal(S, 0.0)
        np.fill_diagonal(S, -S.sum(axis=1))
        return S

    def rate_matrix_derivative(self, p: int, pi: np.ndarray) -> np.ndarray:
        """Derivative of the rate matrix with respect to parameter ``p``."""
        rows, cols = self.param_rows[p], self.param_cols[p]
        values = self.weights(pi)[cols] if self.reversible else np.ones(len(cols))
        dQ = np.zeros((self.nstates, self.nstates))
        dQ[rows, cols] = values
        np.add.at(dQ, (rows, rows), -values)
        return dQ

    def params_from_rate_matrix(self, Q: np.ndarray, pi: np.ndarray) -> np.ndarray:
        """
        Recover free parameters from an existing rate matrix.

        Exchangeabilities are measured relative to the cells with fixed rate,
        so a rescaled matrix gives the same parameters when such cells exist.
        """
        if self.reversible:
            w = self.weights(pi)
            with np.errstate(divide='ignore', invalid='ignore'):
                S = np.where(w[np.newaxis, :] > 0, Q / w[np.newaxis, :], 0.0)
        else:
            S = Q.copy()
        fixed = self.fixed_rates > 0
        scale = S[fixed].mean() / self.fixed_rates[fixed].mean() if fixed.any() else 1.0
        return np.array([
            S[self.param_rows[p], self.param_cols[p]].mean() / scale
            for p in range(self.n_params)
        ])


class JC69Model(SubstitutionModel):
    """Jukes-Cantor: equal rates and equal frequencies."""

    model_type = SubstModelType.JC69

    def _build_param_map(self):
        S = np.zeros((self.nstates, self.nstates))
        for i, j, _ in self.neighbors:
            S[i, j] = 1.0
        return S, []

    def weights(self, pi):
        return np.full(self.nstates, 1.0 / self.nstates)


class F81Model(JC69Model):
    """Felsenstein 1981: equal exchangeabilities, arbitrary frequencies."""

    model_type = SubstModelType.F81

    def weights(self, pi):
        return pi


class HKY85Model(SubstitutionModel):
    """Hasegawa-Kishino-Yano: transition/transversion ratio kappa."""

    model_type = SubstModelType.HKY85

    def _build_param_map(self):
        S = np.zeros((self.nstates, self.nstates))
        kappa_cells = []
        for i, j, pos in self.neighbors:
            if is_transition(*self._changed(i, j, pos)):
                kappa_cells.append((i, j))
            else:
                S[i, j] = 1.0
        return S, [kappa_cells]

    def init_params(self):
        return np.array([2.0])


class K80Model(HKY85Model):
    """Kimura 1980: HKY with equal frequencies."""

    model_type = SubstModelType.K80

    def weights(self, pi):
        return np.full(self.nstates, 1.0 / self.nstates)


class REVModel(SubstitutionModel):
    """General time-reversible model: one exchangeability per state pair."""

    model_type = SubstModelType.REV

    def _build_param_map(self):
        S = np.zeros((self.nstates, self.nstates))
        groups = []
        for i, j, _ in self.neighbors:
            if i < j:
                groups.append([(i, j), (j, i)])
        return S, groups


class UNRESTModel(SubstitutionModel):
    """Unrestricted (non-reversible) model: one rate per ordered state pair."""

    model_type = SubstModelType.UNREST
    reversible = False

    def _build_param_map(self):
        S = np.zeros((self.nstates, self.nstates))
        return S, [[(i, j)] for i, j, _ in self.neighbors]


_MODEL_CLASSES = {
    SubstModelType.JC69: JC69Model,
    SubstModelType.K80: K80Model,
    SubstModelType.F81: F81Model,
    SubstModelType.HKY85: HKY85Model,
    SubstModelType.REV: REVModel,
    SubstModelType.UNREST: UNRESTModel,
}


def get_subst_model(tag: str, alphabet: str = "ACGT", order: Optional[int] = None) -> SubstitutionModel:
    """
    Create a substitution model from its tag.

    Parameters
    ----------
    tag : str
        Model name (JC69, K80, F81, HKY85, REV, UNREST) or a tuple variant
        (HKY2, R2, U2, R3, U3); case-insensitive
    alphabet : str
        Alphabet characters
    order : int, optional
        Tuple order; must agree with the tag when given

    Raises
    ------
    InputFormatError
        If the tag is not recognized or conflicts with ``order``
    """
    key = tag.strip().upper()
    if key in _TUPLE_TAGS:
        model_type, tag_order = _TUPLE_TAGS[key]
    else:
        try:
            model_type = SubstModelType(key)
        except ValueError:
            valid = [m.value for m in SubstModelType] + list(_TUPLE_TAGS)
            raise InputFormatError(
                f"Unknown substitution model '{tag}'. Valid models: {', '.join(valid)}"
            )
        tag_order = 0
    if order is not None and order != tag_order:
        raise InputFormatError(f"Model {tag} has order {tag_order}, not {order}")
    return _MODEL_CLASSES[model_type](alphabet=alphabet, order=tag_order)
