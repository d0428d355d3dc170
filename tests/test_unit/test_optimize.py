"""
Unit tests for BFGS, EM gradients and model fitting.
"""

import io

import numpy as np
import pytest

from phylohmm.core.likelihood import LikelihoodCalculator, partial_log_likelihood
from phylohmm.core.matrix import expected_rate
from phylohmm.errors import DimensionMismatchError, PreconditionError
from phylohmm.models.subst_models import get_subst_model
from phylohmm.models.tree_model import BranchLengthMode, TreeModel
from phylohmm.optimize.bfgs import Precision, numerical_gradient, opt_bfgs
from phylohmm.optimize.fit_em import GradientMode, fit_em
from phylohmm.optimize.gradients import compute_grad_em, count_weighted_ratio
from phylohmm.optimize.optimizer import TreeModelOptimizer

PI = np.array([0.3, 0.2, 0.2, 0.3])


@pytest.fixture
def hky_model(four_taxon_tree):
    return TreeModel(four_taxon_tree, get_subst_model("HKY85"), backgd_freqs=PI,
                     rate_params=np.array([3.0]))


class TestBFGS:
    """Test the bounded quasi-Newton minimizer."""

    def test_quadratic(self):
        c = np.array([1.0, -2.0, 3.0])

        result = opt_bfgs(lambda x: np.sum((x - c) ** 2), np.zeros(3),
                          grad=lambda x: 2 * (x - c), precision=Precision.HIGH)

        assert result.converged
        np.testing.assert_allclose(result.x, c, atol=1e-6)
        assert result.fun == pytest.approx(0.0, abs=1e-10)

    def test_lower_bound_active(self):
        c = np.array([1.0, -2.0, 3.0])

        result = opt_bfgs(lambda x: np.sum((x - c) ** 2), np.full(3, 2.0),
                          grad=lambda x: 2 * (x - c), lower=np.zeros(3),
                          precision=Precision.HIGH)

        np.testing.assert_allclose(result.x, [1.0, 0.0, 3.0], atol=1e-5)
        assert np.all(result.x >= 0)

    def test_numerical_gradient_used_by_default(self):
        result = opt_bfgs(lambda x: (x[0] - 0.5) ** 2 + 2 * (x[1] + 1) ** 2,
                          np.array([3.0, 3.0]), precision=Precision.HIGH)
        np.testing.assert_allclose(result.x, [0.5, -1.0], atol=1e-4)

    def test_inverse_hessian_updated_in_place(self):
        H = np.eye(2)
        result = opt_bfgs(lambda x: x[0] ** 2 + 10 * x[1] ** 2, np.array([1.0, 1.0]),
                          grad=lambda x: np.array([2 * x[0], 20 * x[1]]), H=H)
        assert result.H is H

    def test_hessian_shape_checked(self):
        with pytest.raises(DimensionMismatchError):
            opt_bfgs(lambda x: float(x @ x), np.ones(3), H=np.eye(2))

    def test_trace(self):
        logf = io.StringIO()
        opt_bfgs(lambda x: float(np.sum((x - 1) ** 2)), np.zeros(2),
                 grad=lambda x: 2 * (x - 1), logf=logf)
        rows = logf.getvalue().splitlines()
        assert len(rows) >= 1
        assert len(rows[0].split()) == 3


class TestGradientHelpers:
    def test_precision_levels(self):
        assert Precision.CRUDE.bump() == Precision.LOW
        assert Precision.MED.bump() == Precision.HIGH
        assert Precision.HIGH.bump() == Precision.HIGH

    def test_numerical_gradient(self):
        def f(x):
            return x[0] ** 2 + 3 * x[1]

        np.testing.assert_allclose(numerical_gradient(f, np.array([1.0, 2.0])), [2.0, 3.0], atol=1e-6)

    def test_numerical_gradient_at_bound(self):
        def f(x):
            return x[0] ** 2

        grad = numerical_gradient(f, np.array([1.0]), lower=np.array([1.0]))
        assert grad[0] == pytest.approx(2.0, abs=1e-4)

    def test_count_weighted_ratio_zero_probability(self):
        dP = np.array([[1.0, 0.0], [0.0, -1.0]])
        counts = np.array([[2.0, 1.0], [0.0, 0.0]])
        P = np.array([[0.5, 0.0], [0.0, 0.0]])
        assert count_weighted_ratio(dP, counts, P) == pytest.approx(4.0)

        counts[1, 1] = 1.0
        assert count_weighted_ratio(dP, counts, P) == -np.inf


class TestEMGradient:
    """Analytic gradients of the expected complete-data log-likelihood."""

    def _numerical(self, mod, post):
        x0 = mod.get_params()
        work = mod.copy()

        def f(x):
            work.unpack_params(x)
            return -partial_log_likelihood(work, post)

        return numerical_gradient(f, x0, eps=1e-6)

    @pytest.mark.parametrize("exact, tol", [(True, 1e-5), (False, 1e-2)])
    def test_matches_numerical(self, hky_model, four_taxon_alignment, exact, tol):
        _, post = LikelihoodCalculator(hky_model, four_taxon_alignment).compute_posteriors()

        analytic = compute_grad_em(hky_model, post, exact=exact)

        assert analytic.shape == (6,)
        np.testing.assert_allclose(analytic, self._numerical(hky_model, post), rtol=tol, atol=tol)

    def test_gradient_of_log_likelihood(self, hky_model, four_taxon_alignment):
        # at the point where posteriors were collected, the EM gradient is
        # the gradient of the alignment log-likelihood
        calc = LikelihoodCalculator(hky_model, four_taxon_alignment)
        _, post = calc.compute_posteriors()
        analytic = -compute_grad_em(hky_model, post, exact=True)

        x0 = hky_model.get_params()
        work = hky_model.copy()
        work_calc = LikelihoodCalculator(work, four_taxon_alignment)

        def ll(x):
            work.unpack_params(x)
            return work_calc.log_likelihood()

        np.testing.assert_allclose(analytic, numerical_gradient(ll, x0, eps=1e-6), rtol=1e-4, atol=1e-5)

    def test_nonreversible_model(self, four_taxon_tree, four_taxon_alignment):
        mod = TreeModel(four_taxon_tree, get_subst_model("UNREST"), backgd_freqs=PI)
        rng = np.random.default_rng(11)
        params = mod.get_params()
        params[mod.rate_matrix_offset():] *= rng.uniform(0.5, 1.5, size=mod.subst_model.n_params)
        mod.unpack_params(params)
        _, post = LikelihoodCalculator(mod, four_taxon_alignment).compute_posteriors()

        analytic = compute_grad_em(mod, post, exact=True)

        np.testing.assert_allclose(analytic, self._numerical(mod, post), rtol=1e-4, atol=1e-5)

    def test_gamma_shape(self, four_taxon_tree, four_taxon_alignment):
        mod = TreeModel(four_taxon_tree, get_subst_model("HKY85"), backgd_freqs=PI,
                        rate_params=np.array([3.0]), nratecats=4, alpha=0.7)
        _, post = LikelihoodCalculator(mod, four_taxon_alignment).compute_posteriors()

        analytic = compute_grad_em(mod, post, exact=True)

        alpha_idx = mod.ratevar_offset()
        numerical = self._numerical(mod, post)
        assert analytic[alpha_idx] == pytest.approx(numerical[alpha_idx], rel=1e-2, abs=1e-3)

    def test_estimated_frequencies_rejected(self, four_taxon_tree, four_taxon_alignment):
        mod = TreeModel(four_taxon_tree, get_subst_model("HKY85"), estimate_backgd=True)
        _, post = LikelihoodCalculator(mod, four_taxon_alignment).compute_posteriors()
        with pytest.raises(PreconditionError):
            compute_grad_em(mod, post)


class TestFitEM:
    """Test EM fitting of tree models."""

    def test_hky_fit(self, hky_model, four_taxon_alignment):
        initial = LikelihoodCalculator(hky_model, four_taxon_alignment).log_likelihood()

        result = fit_em(hky_model, four_taxon_alignment, precision=Precision.LOW)

        assert result.converged
        assert result.lnL >= initial - 1e-6
        assert np.all(np.diff(result.history) >= -1e-6)
        assert expected_rate(hky_model.Q, hky_model.backgd_freqs) == pytest.approx(1.0)
        recomputed = LikelihoodCalculator(hky_model, four_taxon_alignment).log_likelihood()
        assert recomputed == pytest.approx(result.lnL, abs=1e-6)
        assert hky_model.lnL == result.lnL

    def test_fitted_parameters_round_trip(self, hky_model, four_taxon_alignment):
        result = fit_em(hky_model, four_taxon_alignment, precision=Precision.LOW)

        hky_model.unpack_params(hky_model.get_params())

        recomputed = LikelihoodCalculator(hky_model, four_taxon_alignment).log_likelihood()
        assert recomputed == pytest.approx(result.lnL, abs=1e-6)

    def test_equal_weight_model_with_estimated_frequencies(self, four_taxon_tree, four_taxon_alignment):
        mod = TreeModel(four_taxon_tree, get_subst_model("K80"), estimate_backgd=True)

        result = fit_em(mod, four_taxon_alignment, precision=Precision.LOW)

        recomputed = LikelihoodCalculator(mod, four_taxon_alignment).log_likelihood()
        assert recomputed == pytest.approx(result.lnL, abs=1e-6)
        for matrices in mod.P.values():
            np.testing.assert_allclose(matrices[0].sum(axis=1), 1.0, atol=1e-10)

    def test_numerical_gradient_mode(self, hky_model, four_taxon_alignment):
        initial = LikelihoodCalculator(hky_model, four_taxon_alignment).log_likelihood()

        result = fit_em(hky_model, four_taxon_alignment, precision=Precision.LOW,
                        gradient_mode=GradientMode.NUMERICAL)

        assert result.converged
        assert result.lnL >= initial - 1e-6

    def test_gamma_fit(self, four_taxon_tree, four_taxon_alignment):
        mod = TreeModel(four_taxon_tree, get_subst_model("HKY85"), backgd_freqs=PI,
                        rate_params=np.array([3.0]), nratecats=4, alpha=1.0)

        result = fit_em(mod, four_taxon_alignment, precision=Precision.LOW)

        assert np.isfinite(result.lnL)
        assert mod.nratecats == 4
        assert not mod.rate_variation_disabled
        assert mod.alpha > 0
        recomputed = LikelihoodCalculator(mod, four_taxon_alignment).log_likelihood()
        assert recomputed == pytest.approx(result.lnL, abs=1e-6)

    def test_empirical_rates(self, four_taxon_tree, four_taxon_alignment):
        mod = TreeModel(four_taxon_tree, get_subst_model("HKY85"), backgd_freqs=PI,
                        rate_params=np.array([3.0]), nratecats=2,
                        rate_consts=np.array([0.5, 1.5]), empirical_rates=True)

        fit_em(mod, four_taxon_alignment, precision=Precision.LOW)

        assert mod.freqK.sum() == pytest.approx(1.0)
        assert np.dot(mod.rK, mod.freqK) == pytest.approx(1.0)

    def test_estimated_frequencies(self, four_taxon_tree, four_taxon_alignment):
        mod = TreeModel(four_taxon_tree, get_subst_model("F81"), estimate_backgd=True)

        result = fit_em(mod, four_taxon_alignment, precision=Precision.LOW)

        assert np.isfinite(result.lnL)
        assert mod.backgd_freqs.sum() == pytest.approx(1.0)
        assert np.all(mod.backgd_freqs > 0)

    def test_scale_only(self, four_taxon_tree, four_taxon_alignment):
        lengths = [node.branch_length for node in four_taxon_tree.nodes]
        mod = TreeModel(four_taxon_tree, get_subst_model("JC69"),
                        estimate_branchlens=BranchLengthMode.SCALE_ONLY)
        mod.scale_rate_matrix()

        fit_em(mod, four_taxon_alignment, precision=Precision.LOW)

        assert mod.scale == 1.0
        new_lengths = [node.branch_length for node in mod.tree.nodes]
        ratios = [new / old for new, old in zip(new_lengths, lengths) if old > 0]
        np.testing.assert_allclose(ratios, ratios[0], rtol=1e-9)

    def test_iteration_cap_warns(self, hky_model, four_taxon_alignment):
        with pytest.warns(UserWarning, match="without converging"):
            result = fit_em(hky_model, four_taxon_alignment, max_iterations=1)
        assert not result.converged
        assert np.isfinite(result.lnL)


class TestDirectOptimizer:
    def test_improves_likelihood(self, hky_model, four_taxon_alignment):
        initial = LikelihoodCalculator(hky_model, four_taxon_alignment).log_likelihood()

        lnL = TreeModelOptimizer(hky_model, four_taxon_alignment).optimize(maxiter=50)

        assert lnL >= initial - 1e-6
        assert hky_model.lnL == lnL
        assert expected_rate(hky_model.Q, hky_model.backgd_freqs) == pytest.approx(1.0)
