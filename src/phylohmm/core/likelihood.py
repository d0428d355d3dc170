"""
Felsenstein pruning over sufficient statistics.

Likelihoods are computed once per distinct column tuple and weighted by the
tuple counts. A second (outside) pass gives the posterior expected number
of substitutions of each kind on each edge, which is what EM maximizes.
"""

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np

from ..errors import DimensionMismatchError, PreconditionError
from ..io.sequences import Alignment
from .numeric import log_sum_exp
from .sufficient_stats import IGNORE_IDX, ss_alt_msa, ss_from_msas

if TYPE_CHECKING:
    from ..models.tree_model import TreeModel

logger = logging.getLogger(__name__)


@dataclass
class TreePosteriors:
    """
    Posterior expectations collected in the E-step.

    Attributes
    ----------
    expected_nsubst_tot : ndarray, shape (nratecats, nstates, nstates, nnodes)
        Expected number of (from, to) transitions on the edge above each
        node, per rate category, summed over columns
    rcat_expected_nsites : ndarray, shape (nratecats,)
        Expected number of columns in each rate category
    expected_root_counts : ndarray, shape (nstates,)
        Expected number of columns with each root state
    """

    expected_nsubst_tot: np.ndarray
    rcat_expected_nsites: np.ndarray
    expected_root_counts: np.ndarray


class LikelihoodCalculator:
    """
    Compute tree-model likelihoods for an alignment.

    The alignment's sufficient statistics are built on first use (with
    order when the alignment has sequences). Transition matrices are read
    from the model on every call, so the calculator can be reused while the
    model's parameters change.

    Parameters
    ----------
    mod : TreeModel
        Tree model
    msa : Alignment
        Alignment whose rows include every leaf of the tree
    """

    def __init__(self, mod: "TreeModel", msa: Alignment):
        self.mod = mod
        self.msa = msa
        tuple_size = mod.order + 1

        if msa.ss is None:
            ss_from_msas(msa, tuple_size, store_order=msa.sequences is not None)
        if msa.ss.tuple_size != tuple_size:
            if msa.sequences is None and msa.ss.tuple_idx is None:
                raise PreconditionError(
                    f"Sufficient statistics have tuple size {msa.ss.tuple_size}, "
                    f"model of order {mod.order} needs {tuple_size}"
                )
            msa = ss_alt_msa(msa, tuple_size)
            self.msa = msa
        if msa.alphabet != mod.alphabet:
            raise DimensionMismatchError(
                f"Alignment alphabet {msa.alphabet!r} differs from model alphabet {mod.alphabet!r}"
            )

        self.ss = msa.ss
        self.ntuples = msa.ss.ntuples
        self.nstates = mod.nstates

        name_to_row = {name: i for i, name in enumerate(msa.names)}
        self.leaf_rows = {}
        for node in mod.tree.leaves:
            if node.name not in name_to_row:
                raise DimensionMismatchError(f"No alignment row for leaf {node.name!r}")
            self.leaf_rows[node.id] = name_to_row[node.name]

        self.leaf_partials = {
            node_id: self._leaf_partial(row, tuple_size) for node_id, row in self.leaf_rows.items()
        }
        # with tuples, column scores condition on the preceding columns
        self.marginal_partials = None
        if tuple_size > 1:
            self.marginal_partials = {
                node_id: self._leaf_partial(row, tuple_size - 1)
                for node_id, row in self.leaf_rows.items()
            }

    def _leaf_partial(self, row: int, npositions: int) -> np.ndarray:
        """
        Conditional likelihoods at a leaf for every tuple.

        Only the first ``npositions`` tuple positions are observed; later
        positions, gaps and characters outside the alphabet are treated as
        missing data.
        """
        alphabet = self.mod.alphabet
        A = len(alphabet)
        T = self.ss.tuple_size
        inv = {c: i for i, c in enumerate(alphabet)}
        partial = np.ones((self.ntuples, self.nstates))
        states = np.arange(self.nstates)

        for pos in range(npositions):
            codes = np.array([
                inv.get(self.ss.col_tuples[i][pos * self.ss.nseqs + row].upper(), -1)
                for i in range(self.ntuples)
            ])
            digits = (states // A ** (T - 1 - pos)) % A
            partial *= (codes[:, np.newaxis] == digits[np.newaxis, :]) | (codes[:, np.newaxis] < 0)

        return partial

    def _prune(self, leaf_partials: dict[int, np.ndarray], k: int) -> tuple[dict[int, np.ndarray], np.ndarray]:
        """
        Post-order pass for rate category ``k``.

        Returns per-node partial likelihoods (rescaled per tuple) and the
        log of the accumulated scale factors.
        """
        partials = {}
        log_scale = np.zeros(self.ntuples)

        for node in self.mod.tree.postorder():
            if node.is_leaf:
                partials[node.id] = leaf_partials[node.id]
                continue

            L = np.ones((self.ntuples, self.nstates))
            for child in node.children:
                L = L * (partials[child.id] @ self.mod.P[child.id][k].T)

            max_val = L.max(axis=1)
            positive = max_val > 0
            L[positive] /= max_val[positive, np.newaxis]
            log_scale[positive] += np.log(max_val[positive])
            partials[node.id] = L

        return partials, log_scale

    def _category_log_likelihoods(self, leaf_partials: dict[int, np.ndarray]) -> tuple[np.ndarray, list]:
        """Log of freqK[k] * L_k for every category and tuple."""
        mod = self.mod
        root_id = mod.tree.root.id
        log_terms = np.empty((mod.nratecats, self.ntuples))
        all_partials = []
        for k in range(mod.nratecats):
            partials, log_scale = self._prune(leaf_partials, k)
            with np.errstate(divide='ignore'):
                log_terms[k] = (np.log(partials[root_id] @ mod.backgd_freqs)
                                + log_scale + np.log(mod.freqK[k]))
            all_partials.append(partials)
        return log_terms, all_partials

    def tuple_log_likelihoods(self) -> np.ndarray:
        """
        Log-likelihood of each distinct tuple.

        For tuples of more than one column this is the likelihood of the
        last column conditional on the preceding ones.
        """
        log_terms, _ = self._category_log_likelihoods(self.leaf_partials)
        result = log_sum_exp(log_terms, axis=0)
        if self.marginal_partials is not None:
            marginal_terms, _ = self._category_log_likelihoods(self.marginal_partials)
            result = result - log_sum_exp(marginal_terms, axis=0)
        return result

    def _weights(self, cat: Optional[int]) -> np.ndarray:
        if cat is None:
            return self.ss.counts[:self.ntuples]
        if self.ss.cat_counts is None:
            raise PreconditionError("Alignment has no category counts")
        if not 0 <= cat < self.ss.cat_counts.shape[0]:
            raise PreconditionError(f"Category {cat} out of range")
        return self.ss.cat_counts[cat, :self.ntuples]

    def log_likelihood(self, cat: Optional[int] = None) -> float:
        """
        Total log-likelihood of the alignment (natural log).

        Parameters
        ----------
        cat : int, optional
            Restrict to columns of this category
        """
        weights = self._weights(cat)
        tuple_ll = self.tuple_log_likelihoods()
        used = weights > 0
        return float(np.sum(weights[used] * tuple_ll[used]))

    def column_log_likelihoods(self) -> np.ndarray:
        """
        Log-likelihood of every alignment column via the order vector.

        Columns marked as ignored score 0.
        """
        if self.ss.tuple_idx is None:
            raise PreconditionError("Per-column scores require ordered sufficient statistics")
        tuple_ll = self.tuple_log_likelihoods()
        idx = self.ss.tuple_idx[:self.msa.length]
        return np.where(idx == IGNORE_IDX, 0.0, tuple_ll[np.maximum(idx, 0)])

    def compute_posteriors(self, cat: Optional[int] = None) -> tuple[float, TreePosteriors]:
        """
        Log-likelihood and posterior expected substitution counts.

        Returns
        -------
        log_likelihood : float
            Joint log-likelihood of the tuples
        posteriors : TreePosteriors
            Expected counts used by EM
        """
        start = time.perf_counter()
        mod = self.mod
        K, S = mod.nratecats, self.nstates
        nnodes = mod.tree.n_nodes
        weights = self._weights(cat)
        root = mod.tree.root

        log_terms, all_partials = self._category_log_likelihoods(self.leaf_partials)
        total = log_sum_exp(log_terms, axis=0)
        valid = (weights > 0) & np.isfinite(total)
        log_likelihood = float(np.sum(weights[weights > 0] * total[weights > 0]))

        expected = np.zeros((K, S, S, nnodes))
        nsites = np.zeros(K)
        root_counts = np.zeros(S)
        preorder = mod.tree.preorder()

        for k in range(K):
            partials = all_partials[k]
            post_k = np.zeros(self.ntuples)
            post_k[valid] = np.exp(log_terms[k, valid] - total[valid]) * weights[valid]
            nsites[k] = post_k.sum()

            root_joint = partials[root.id] * mod.backgd_freqs[np.newaxis, :]
            z = root_joint.sum(axis=1)
            scale = np.where(z > 0, post_k / np.where(z > 0, z, 1.0), 0.0)
            root_counts += scale @ root_joint

            up = {root.id: np.broadcast_to(mod.backgd_freqs, (self.ntuples, S))}
            for node in preorder:
                if node.is_leaf:
                    continue
                messages = {c.id: partials[c.id] @ mod.P[c.id][k].T for c in node.children}
                for child in node.children:
                    outside = np.array(up[node.id], dtype=float)
                    for sibling in node.children:
                        if sibling is not child:
                            outside *= messages[sibling.id]

                    P = mod.P[child.id][k]
                    z = np.einsum('ti,ti->t', outside, messages[child.id])
                    w = np.where(z > 0, post_k / np.where(z > 0, z, 1.0), 0.0)
                    expected[k, :, :, child.id] += ((outside * w[:, np.newaxis]).T @ partials[child.id]) * P

                    if not child.is_leaf:
                        down = outside @ P
                        max_val = down.max(axis=1)
                        down /= np.where(max_val > 0, max_val, 1.0)[:, np.newaxis]
                        up[child.id] = down

        logger.debug("Collected posteriors for %d tuples in %.3f s",
                     self.ntuples, time.perf_counter() - start)
        return log_likelihood, TreePosteriors(
            expected_nsubst_tot=expected,
            rcat_expected_nsites=nsites,
            expected_root_counts=root_counts,
        )


def partial_log_likelihood(mod: "TreeModel", post: TreePosteriors) -> float:
    """
    Expected complete-data log-likelihood for fixed posteriors.

    Sum over edges, categories and (from, to) pairs of expected count times
    log transition probability, plus root-state terms when equilibrium
    frequencies are estimated. Returns -inf when a transition with positive
    expected count has probability zero.
    """
    total = 0.0
    K = post.expected_nsubst_tot.shape[0]
    for node in mod.tree.nodes:
        if node.parent is None or node.id == mod.root_leaf_id:
            continue
        for k in range(K):
            counts = post.expected_nsubst_tot[k, :, :, node.id]
            used = counts > 0
            with np.errstate(divide='ignore'):
                total += float(np.sum(counts[used] * np.log(mod.P[node.id][k][used])))

    if mod.estimate_backgd:
        used = post.expected_root_counts > 0
        with np.errstate(divide='ignore'):
            total += float(np.sum(post.expected_root_counts[used] * np.log(mod.backgd_freqs[used])))
    return total


def column_emission_scores(models: Sequence["TreeModel"], msa: Alignment) -> np.ndarray:
    """
    Per-column log-likelihoods under each model, as HMM emission scores.

    Returns
    -------
    ndarray, shape (len(models), msa.length)
    """
    scores = np.empty((len(models), msa.length))
    for i, mod in enumerate(models):
        scores[i] = LikelihoodCalculator(mod, msa).column_log_likelihoods()
    return scores
