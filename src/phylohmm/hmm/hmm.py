"""
Discrete-state hidden Markov models over externally supplied emission scores.

Emission scores are log-space arrays of shape (nstates, seqlen); in a
phylo-HMM they are per-column tree-model log-likelihoods. Dynamic
programming uses padded predecessor/successor index tables so each step
is a single vectorized operation over states.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence, TextIO

import numpy as np
from scipy import linalg

from ..core.numeric import log_sum_exp
from ..errors import (
    CapacityError,
    DimensionMismatchError,
    InputFormatError,
    NumericDegeneracyError,
    PreconditionError,
)

logger = logging.getLogger(__name__)

MAXSTATES = 1000
BEGIN_STATE = -99
END_STATE = -98

BEGIN_TRANSITIONS_TAG = "BEGIN_TRANSITIONS:"
END_TRANSITIONS_TAG = "END_TRANSITIONS:"
TRANSITION_MATRIX_TAG = "TRANSITION_MATRIX:"
EQ_FREQS_TAG = "EQUILIBRIUM_FREQUENCIES:"

# Tolerance on row sums when reading or validating a model
ROW_SUM_TOL = 1e-6


def _log(x: np.ndarray) -> np.ndarray:
    with np.errstate(divide='ignore'):
        return np.log(x)


def _padded_neighbors(lists: list[list[int]]) -> tuple[np.ndarray, np.ndarray]:
    """Index table padded to rectangular shape, plus a validity mask."""
    width = max(1, max((len(l) for l in lists), default=0))
    idx = np.zeros((len(lists), width), dtype=int)
    mask = np.zeros((len(lists), width), dtype=bool)
    for s, l in enumerate(lists):
        idx[s, :len(l)] = l
        mask[s, :len(l)] = True
    return idx, mask


class HMM:
    """
    Hidden Markov model with begin and (optional) end transitions.

    Parameters
    ----------
    transition_matrix : ndarray, shape (nstates, nstates)
        Row-stochastic transition probabilities
    begin_transitions : ndarray, optional
        Initial state distribution; defaults to the equilibrium frequencies
    end_transitions : ndarray, optional
        Probability of ending from each state; when omitted, sequences may
        end in any state at no cost
    eq_freqs : ndarray, optional
        Equilibrium frequencies; defaults to the stationary distribution
        of the transition matrix

    Attributes
    ----------
    transition_scores : ndarray
        Log of ``transition_matrix`` (``-inf`` for zero entries)
    predecessors, successors : list[list[int]]
        States with non-zero transition into / out of each state
    begin_successors, end_predecessors : list[int]
        States reachable from begin / able to reach end
    """

    def __init__(
        self,
        transition_matrix: np.ndarray,
        begin_transitions: Optional[np.ndarray] = None,
        end_transitions: Optional[np.ndarray] = None,
        eq_freqs: Optional[np.ndarray] = None,
    ):
        self.transition_matrix = np.array(transition_matrix, dtype=float)
        if self.transition_matrix.ndim != 2 or \
                self.transition_matrix.shape[0] != self.transition_matrix.shape[1]:
            raise DimensionMismatchError(
                f"Transition matrix must be square, got shape {self.transition_matrix.shape}"
            )
        if self.nstates > MAXSTATES:
            raise CapacityError(f"HMM has {self.nstates} states, maximum is {MAXSTATES}")

        self.eq_freqs = (self.stationary_distribution() if eq_freqs is None
                         else self._vector(eq_freqs, "equilibrium frequencies"))
        self.begin_transitions = (self.eq_freqs.copy() if begin_transitions is None
                                  else self._vector(begin_transitions, "begin transitions"))
        self.end_transitions = (None if end_transitions is None
                                else self._vector(end_transitions, "end transitions"))
        self.reset()

    def _vector(self, values, what: str) -> np.ndarray:
        v = np.array(values, dtype=float)
        if v.shape != (self.nstates,):
            raise DimensionMismatchError(f"{len(v)} {what} for {self.nstates} states")
        return v

    @property
    def nstates(self) -> int:
        return self.transition_matrix.shape[0]

    @classmethod
    def new_nstates(cls, nstates: int, begin: bool = True, end: bool = False) -> "HMM":
        """
        All-zero HMM of the given size, to be filled in and then ``reset()``.
        """
        hmm = cls.__new__(cls)
        hmm.transition_matrix = np.zeros((nstates, nstates))
        hmm.eq_freqs = np.zeros(nstates)
        hmm.begin_transitions = np.zeros(nstates) if begin else np.full(nstates, 1.0 / nstates)
        hmm.end_transitions = np.zeros(nstates) if end else None
        hmm.reset()
        return hmm

    @classmethod
    def create_trivial(cls) -> "HMM":
        """Single-state HMM: decoding with it reduces to scoring one model."""
        return cls(np.ones((1, 1)), begin_transitions=np.ones(1), eq_freqs=np.ones(1))

    def reset(self) -> None:
        """Recompute log scores and adjacency lists after editing the matrices."""
        self.transition_scores = _log(self.transition_matrix)
        self.begin_transition_scores = _log(self.begin_transitions)
        self.end_transition_scores = (np.zeros(self.nstates) if self.end_transitions is None
                                      else _log(self.end_transitions))

        n = self.nstates
        nonzero = self.transition_matrix != 0
        self.predecessors = [list(np.flatnonzero(nonzero[:, s])) for s in range(n)]
        self.successors = [list(np.flatnonzero(nonzero[s, :])) for s in range(n)]
        self.begin_successors = list(np.flatnonzero(self.begin_transitions != 0))
        self.end_predecessors = (list(range(n)) if self.end_transitions is None
                                 else list(np.flatnonzero(self.end_transitions != 0)))

        pred_idx, pred_mask = _padded_neighbors(self.predecessors)
        self._pred_idx = pred_idx
        self._pred_scores = np.where(
            pred_mask, self.transition_scores[pred_idx, np.arange(n)[:, np.newaxis]], -np.inf
        )
        succ_idx, succ_mask = _padded_neighbors(self.successors)
        self._succ_idx = succ_idx
        self._succ_scores = np.where(
            succ_mask, self.transition_scores[np.arange(n)[:, np.newaxis], succ_idx], -np.inf
        )

    def stationary_distribution(self) -> np.ndarray:
        """
        Left eigenvector of the transition matrix for eigenvalue 1.

        Falls back to the uniform distribution when the chain has no
        unique non-negative stationary vector.
        """
        n = self.nstates
        evals, evecs = linalg.eig(self.transition_matrix.T)
        k = int(np.argmin(np.abs(evals - 1.0)))
        v = np.real(evecs[:, k])
        if abs(evals[k] - 1.0) > 1e-8 or v.sum() == 0:
            return np.full(n, 1.0 / n)
        v = v / v.sum()
        if np.any(v < -1e-10):
            return np.full(n, 1.0 / n)
        return np.clip(v, 0.0, None)

    def transition_score(self, from_state: int, to_state: int) -> float:
        """Log transition probability; accepts BEGIN_STATE and END_STATE."""
        if from_state == BEGIN_STATE:
            return float(self.begin_transition_scores[to_state])
        if to_state == END_STATE:
            return float(self.end_transition_scores[from_state])
        return float(self.transition_scores[from_state, to_state])

    # ------------------------------------------------------------------
    # Dynamic programming

    def _check_emissions(self, emission_scores: np.ndarray) -> np.ndarray:
        e = np.asarray(emission_scores, dtype=float)
        if e.ndim != 2 or e.shape[0] != self.nstates:
            raise DimensionMismatchError(
                f"Emission scores have shape {e.shape}, HMM has {self.nstates} states"
            )
        if e.shape[1] == 0:
            raise PreconditionError("Cannot decode an empty sequence")
        return e

    def viterbi(self, emission_scores: np.ndarray) -> tuple[np.ndarray, float]:
        """
        Most likely state path.

        Ties are broken in favour of the first maximizing predecessor in
        state order.

        Parameters
        ----------
        emission_scores : ndarray, shape (nstates, seqlen)
            Log emission scores

        Returns
        -------
        path : ndarray of int, shape (seqlen,)
        score : float
            Log-probability of the path, including begin and end terms
        """
        e = self._check_emissions(emission_scores)
        L = e.shape[1]
        backptr = np.zeros((self.nstates, L), dtype=int)

        v = self.begin_transition_scores + e[:, 0]
        for p in range(1, L):
            cand = v[self._pred_idx] + self._pred_scores
            best = np.argmax(cand, axis=1)
            backptr[:, p] = self._pred_idx[np.arange(self.nstates), best]
            v = cand[np.arange(self.nstates), best] + e[:, p]

        final = v + self.end_transition_scores
        state = int(np.argmax(final))
        score = float(final[state])
        if score == -np.inf:
            raise NumericDegeneracyError("No state path has non-zero probability")

        path = np.empty(L, dtype=int)
        path[L - 1] = state
        for p in range(L - 1, 0, -1):
            state = backptr[state, p]
            path[p - 1] = state
        return path, score

    def forward(self, emission_scores: np.ndarray) -> tuple[float, np.ndarray]:
        """
        Forward algorithm in log space.

        Returns
        -------
        log_likelihood : float
            Log of the total probability over all paths
        alpha : ndarray, shape (nstates, seqlen)
            Forward log-scores
        """
        e = self._check_emissions(emission_scores)
        L = e.shape[1]
        alpha = np.empty((self.nstates, L))
        alpha[:, 0] = self.begin_transition_scores + e[:, 0]
        for p in range(1, L):
            alpha[:, p] = log_sum_exp(alpha[self._pred_idx, p - 1] + self._pred_scores, axis=1) + e[:, p]
        return float(log_sum_exp(alpha[:, L - 1] + self.end_transition_scores)), alpha

    def backward(self, emission_scores: np.ndarray) -> tuple[float, np.ndarray]:
        """
        Backward algorithm in log space.

        Returns
        -------
        log_likelihood : float
            Same quantity as ``forward`` computes
        beta : ndarray, shape (nstates, seqlen)
            Backward log-scores
        """
        e = self._check_emissions(emission_scores)
        L = e.shape[1]
        beta = np.empty((self.nstates, L))
        beta[:, L - 1] = self.end_transition_scores
        for p in range(L - 2, -1, -1):
            nxt = e[:, p + 1] + beta[:, p + 1]
            beta[:, p] = log_sum_exp(nxt[self._succ_idx] + self._succ_scores, axis=1)
        total = log_sum_exp(self.begin_transition_scores + e[:, 0] + beta[:, 0])
        return float(total), beta

    def posterior_probs(self, emission_scores: np.ndarray) -> np.ndarray:
        """
        Posterior probability of each state at each position.

        Returns
        -------
        ndarray, shape (nstates, seqlen)
            Columns sum to one
        """
        log_z, alpha = self.forward(emission_scores)
        _, beta = self.backward(emission_scores)
        if not np.isfinite(log_z):
            raise NumericDegeneracyError(f"Total log-likelihood is {log_z}")
        return np.exp(alpha + beta - log_z)

    def path_likelihood(self, emission_scores: np.ndarray, path: Sequence[int]) -> float:
        """Log-probability of a specific state path, begin and end included."""
        e = self._check_emissions(emission_scores)
        path = np.asarray(path, dtype=int)
        if len(path) != e.shape[1]:
            raise DimensionMismatchError(f"Path of length {len(path)} for {e.shape[1]} positions")
        score = self.begin_transition_scores[path[0]]
        score += e[path, np.arange(len(path))].sum()
        score += self.transition_scores[path[:-1], path[1:]].sum()
        score += self.end_transition_scores[path[-1]]
        return float(score)

    def score_subset(self, emission_scores: np.ndarray, states: Iterable[int],
                     begidx: int, length: int) -> float:
        """
        Forward score of a window using only a subset of states.

        The window starts from the equilibrium frequencies and ignores end
        transitions.
        """
        e = self._check_emissions(emission_scores)
        states = sorted(set(states))
        if begidx < 0 or length < 1 or begidx + length > e.shape[1]:
            raise PreconditionError(f"Window [{begidx}, {begidx + length}) outside sequence")
        sub_trans = self.transition_scores[np.ix_(states, states)]
        sub_e = e[states, begidx:begidx + length]

        alpha = _log(self.eq_freqs[states]) + sub_e[:, 0]
        for p in range(1, length):
            alpha = log_sum_exp(alpha[:, np.newaxis] + sub_trans, axis=0) + sub_e[:, p]
        return float(log_sum_exp(alpha))

    def log_odds_subset(self, emission_scores: np.ndarray, test_states: Iterable[int],
                        null_states: Iterable[int], begidx: int, length: int) -> float:
        """Difference of ``score_subset`` between a test and a null state set."""
        return (self.score_subset(emission_scores, test_states, begidx, length)
                - self.score_subset(emission_scores, null_states, begidx, length))

    # ------------------------------------------------------------------
    # Training

    @staticmethod
    def train_update_counts(trans_counts: np.ndarray, state_counts: np.ndarray,
                            begin_counts: Optional[np.ndarray], path: Sequence[int]) -> None:
        """Add the transitions and state visits of one path to count arrays in place."""
        path = np.asarray(path, dtype=int)
        if len(path) == 0:
            return
        np.add.at(trans_counts, (path[:-1], path[1:]), 1.0)
        np.add.at(state_counts, path, 1.0)
        if begin_counts is not None:
            begin_counts[path[0]] += 1.0

    def train_from_counts(
        self,
        trans_counts: np.ndarray,
        trans_pseudocounts: Optional[np.ndarray] = None,
        state_counts: Optional[np.ndarray] = None,
        state_pseudocounts: Optional[np.ndarray] = None,
        begin_counts: Optional[np.ndarray] = None,
        begin_pseudocounts: Optional[np.ndarray] = None,
    ) -> None:
        """
        Maximum-likelihood estimates from counts plus pseudocounts.

        Rows with no counts at all are left as they were.
        """
        n = self.nstates
        trans = np.asarray(trans_counts, dtype=float)
        if trans.shape != (n, n):
            raise DimensionMismatchError(f"Transition counts have shape {trans.shape}")
        if trans_pseudocounts is not None:
            trans = trans + trans_pseudocounts
        row_totals = trans.sum(axis=1)
        for i in range(n):
            if row_totals[i] > 0:
                self.transition_matrix[i] = trans[i] / row_totals[i]

        if state_counts is not None:
            states = np.asarray(state_counts, dtype=float)
            if state_pseudocounts is not None:
                states = states + state_pseudocounts
            if states.sum() > 0:
                self.eq_freqs = states / states.sum()

        if begin_counts is not None:
            begin = np.asarray(begin_counts, dtype=float)
            if begin_pseudocounts is not None:
                begin = begin + begin_pseudocounts
            if begin.sum() > 0:
                self.begin_transitions = begin / begin.sum()
        else:
            self.begin_transitions = self.eq_freqs.copy()

        self.reset()

    def train_from_paths(
        self,
        paths: Sequence[Sequence[int]],
        trans_pseudocounts: Optional[np.ndarray] = None,
        state_pseudocounts: Optional[np.ndarray] = None,
        use_begin: bool = True,
        begin_pseudocounts: Optional[np.ndarray] = None,
    ) -> None:
        """Estimate transitions (and begin probabilities) from labeled paths."""
        n = self.nstates
        trans_counts = np.zeros((n, n))
        state_counts = np.zeros(n)
        begin_counts = np.zeros(n) if use_begin else None
        for path in paths:
            if len(path) and (min(path) < 0 or max(path) >= n):
                raise DimensionMismatchError(f"Path visits a state outside 0..{n - 1}")
            self.train_update_counts(trans_counts, state_counts, begin_counts, path)
        self.train_from_counts(trans_counts, trans_pseudocounts, state_counts,
                               state_pseudocounts, begin_counts, begin_pseudocounts)

    # ------------------------------------------------------------------
    # Algebra

    @classmethod
    def cross_product(cls, hmm1: "HMM", hmm2: "HMM") -> "HMM":
        """
        Product HMM whose state (a, b) has index ``a * hmm2.nstates + b``.
        """
        trans = np.kron(hmm1.transition_matrix, hmm2.transition_matrix)
        begin = np.kron(hmm1.begin_transitions, hmm2.begin_transitions)
        eq = np.kron(hmm1.eq_freqs, hmm2.eq_freqs)
        end = None
        if hmm1.end_transitions is not None and hmm2.end_transitions is not None:
            end = np.kron(hmm1.end_transitions, hmm2.end_transitions)
        return cls(trans, begin_transitions=begin, end_transitions=end, eq_freqs=eq)

    def reverse_compl(self, pivot_states: Iterable[int]) -> tuple["HMM", np.ndarray]:
        """
        HMM covering both strands.

        Non-pivot states get a reflected copy whose transitions follow the
        time-reversed chain ``R[j, i] = pi_i * A[i, j] / pi_j``; pivot states
        are shared and split their outgoing mass evenly between strands.

        Returns
        -------
        hmm : HMM
            Two-strand HMM; states ``0..nstates-1`` are the originals
        mapping : ndarray of int
            Original state of every new state
        """
        n = self.nstates
        pivots = sorted(set(pivot_states))
        if any(p < 0 or p >= n for p in pivots):
            raise DimensionMismatchError(f"Pivot state outside 0..{n - 1}")
        is_pivot = np.zeros(n, dtype=bool)
        is_pivot[pivots] = True
        if np.any(self.eq_freqs <= 0):
            raise NumericDegeneracyError("Reverse complement needs positive equilibrium frequencies")

        A = self.transition_matrix
        pi = self.eq_freqs
        R = (A * pi[:, np.newaxis]).T / pi[:, np.newaxis]

        others = np.flatnonzero(~is_pivot)
        mapping = np.concatenate([np.arange(n), others])
        m = len(mapping)
        # new index of the reflected copy of each state
        reflected = np.arange(n)
        reflected[others] = n + np.arange(len(others))

        new = np.zeros((m, m))
        for i in range(n):
            for j in range(n):
                if is_pivot[i]:
                    new[i, j] += 0.5 * A[i, j]
                    new[i, reflected[j]] += 0.5 * R[i, j]
                else:
                    new[i, j] += A[i, j]
                    new[reflected[i], reflected[j]] += R[i, j]

        def split(v: np.ndarray) -> np.ndarray:
            out = np.concatenate([v, v[others]])
            out[others] *= 0.5
            out[n:] *= 0.5
            return out

        end = None
        if self.end_transitions is not None:
            end = np.concatenate([self.end_transitions, self.end_transitions[others]])
        hmm = HMM(new, begin_transitions=split(self.begin_transitions),
                  end_transitions=end, eq_freqs=split(pi))
        hmm.renormalize()
        return hmm, mapping

    def renormalize(self) -> None:
        """Clip negative entries and rescale rows and begin transitions to sum to one."""
        self.transition_matrix = np.clip(self.transition_matrix, 0.0, None)
        totals = self.transition_matrix.sum(axis=1)
        zero_rows = np.flatnonzero(totals == 0)
        if len(zero_rows):
            logger.warning("States %s have no outgoing transitions", list(zero_rows))
        self.transition_matrix[totals > 0] /= totals[totals > 0, np.newaxis]
        self.begin_transitions = np.clip(self.begin_transitions, 0.0, None)
        if self.begin_transitions.sum() > 0:
            self.begin_transitions /= self.begin_transitions.sum()
        self.reset()

    # ------------------------------------------------------------------
    # Text format

    def to_text(self) -> str:
        def row(v) -> str:
            return ' '.join(format(float(x), '.10g') for x in v)

        lines = [TRANSITION_MATRIX_TAG]
        lines.extend(row(r) for r in self.transition_matrix)
        lines.append(EQ_FREQS_TAG)
        lines.append(row(self.eq_freqs))
        lines.append(BEGIN_TRANSITIONS_TAG)
        lines.append(row(self.begin_transitions))
        if self.end_transitions is not None:
            lines.append(END_TRANSITIONS_TAG)
            lines.append(row(self.end_transitions))
        return '\n'.join(lines) + '\n'

    def write(self, f: TextIO) -> None:
        f.write(self.to_text())

    def to_file(self, filepath: Path | str) -> None:
        with open(filepath, 'w') as f:
            self.write(f)

    @classmethod
    def from_text(cls, text: str) -> "HMM":
        """
        Parse the tagged text format.

        Raises
        ------
        InputFormatError
            On unknown text, a missing transition matrix, wrong value counts
            or rows not summing to one
        """
        tags = (TRANSITION_MATRIX_TAG, EQ_FREQS_TAG, BEGIN_TRANSITIONS_TAG, END_TRANSITIONS_TAG)
        sections: dict[str, list[float]] = {}
        current = None
        for token in text.split():
            if token in tags:
                current = token
                sections[current] = []
                continue
            if current is None:
                raise InputFormatError(f"Unexpected {token!r} before first section")
            try:
                sections[current].append(float(token))
            except ValueError:
                raise InputFormatError(f"Bad number {token!r} in {current}")

        if TRANSITION_MATRIX_TAG not in sections:
            raise InputFormatError("HMM file has no transition matrix")
        values = sections[TRANSITION_MATRIX_TAG]
        n = int(round(np.sqrt(len(values))))
        if n == 0 or n * n != len(values):
            raise InputFormatError(f"Transition matrix has {len(values)} values, not a square")
        trans = np.array(values).reshape(n, n)
        bad = np.flatnonzero(np.abs(trans.sum(axis=1) - 1.0) > ROW_SUM_TOL)
        if len(bad):
            raise InputFormatError(f"Transition matrix rows {list(bad)} do not sum to 1")

        def vector(tag: str) -> Optional[np.ndarray]:
            if tag not in sections:
                return None
            if len(sections[tag]) != n:
                raise InputFormatError(f"{tag} has {len(sections[tag])} values for {n} states")
            return np.array(sections[tag])

        return cls(trans, begin_transitions=vector(BEGIN_TRANSITIONS_TAG),
                   end_transitions=vector(END_TRANSITIONS_TAG),
                   eq_freqs=vector(EQ_FREQS_TAG))

    @classmethod
    def from_file(cls, filepath: Path | str) -> "HMM":
        with open(filepath, 'r') as f:
            return cls.from_text(f.read())

    def to_dot(
        self,
        labels: Optional[Sequence[str]] = None,
        nratecats: int = 1,
        show: Optional[Iterable[str]] = None,
        suppress_unconnected: bool = False,
    ) -> str:
        """
        Graphviz description of the transition structure.

        Parameters
        ----------
        labels : sequence of str, optional
            One label per state category; state ``i`` has category
            ``i // nratecats``. Defaults to the category index.
        nratecats : int
            Number of rate-category copies of each category
        show : iterable of str, optional
            Only draw states whose category label is listed
        suppress_unconnected : bool
            Omit states with no edges
        """
        ncats, rem = divmod(self.nstates, nratecats)
        if labels is None:
            labels = [str(i) for i in range(ncats)]
        if rem or len(labels) != ncats:
            raise DimensionMismatchError(
                f"HMM has {self.nstates} states; expected {len(labels)} categories "
                f"times {nratecats} rate categories"
            )
        shown = set(labels) if show is None else set(show)

        def name(i: int) -> str:
            label = labels[i // nratecats]
            if nratecats > 1:
                return f'"{label}-{i % nratecats + 1}({i})"'
            return f'"{label}({i})"'

        visible = [labels[i // nratecats] in shown for i in range(self.nstates)]
        edges = []
        connected = set()
        for i in range(self.nstates):
            if visible[i] and self.begin_transitions[i] != 0:
                edges.append(f'        begin -> {name(i)} [ label = "{self.begin_transitions[i]:.6f}" ];')
                connected.add(i)
        for i in range(self.nstates):
            if not visible[i]:
                continue
            for j in range(self.nstates):
                t = self.transition_matrix[i, j]
                if visible[j] and t != 0:
                    edges.append(f'        {name(i)} -> {name(j)} [ label = "{t:.6f}" ];')
                    connected.update((i, j))
        if self.end_transitions is not None:
            for i in range(self.nstates):
                if visible[i] and self.end_transitions[i] != 0:
                    edges.append(f'        {name(i)} -> end [ label = "{self.end_transitions[i]:.6f}" ];')
                    connected.add(i)

        lines = [
            "digraph hmm {",
            "        rankdir=LR;",
            '        size="10,7.5";',
            '        ratio="compress";',
            "        orientation=land;",
            "        node [shape = box];",
        ]
        for i in range(self.nstates):
            if visible[i] and (i in connected or not suppress_unconnected):
                lines.append(f"        {name(i)};")
        lines.extend(edges)
        lines.append("}")
        return '\n'.join(lines) + '\n'
