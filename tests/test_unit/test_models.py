"""
Unit tests for substitution models, rate variation and tree models.
"""

import numpy as np
import pytest

from phylohmm.core.matrix import (
    check_detailed_balance,
    create_reversible_Q,
    eigen_decompose,
    eigen_decompose_rev,
    exp_from_eigen,
    expected_rate,
    matrix_exponential,
)
from phylohmm.errors import DimensionMismatchError, InputFormatError, PreconditionError
from phylohmm.io.trees import Tree
from phylohmm.models.rate_variation import discrete_gamma
from phylohmm.models.subst_models import SubstModelType, get_subst_model, tuple_states
from phylohmm.models.tree_model import BranchLengthMode, TreeModel

PI = np.array([0.1, 0.2, 0.3, 0.4])


class TestSubstitutionModels:
    """Rate matrix construction."""

    @pytest.mark.parametrize("tag", ["JC69", "K80", "F81", "HKY85", "REV", "UNREST"])
    def test_rows_sum_to_zero(self, tag):
        model = get_subst_model(tag)
        Q = model.rate_matrix(model.init_params() * 1.5, PI)
        np.testing.assert_allclose(Q.sum(axis=1), 0.0, atol=1e-12)
        assert np.all(Q - np.diag(np.diag(Q)) >= 0)

    @pytest.mark.parametrize("tag", ["JC69", "K80", "F81", "HKY85", "REV"])
    def test_reversible_models_satisfy_detailed_balance(self, tag):
        model = get_subst_model(tag)
        params = np.linspace(0.5, 2.0, model.n_params)
        Q = model.rate_matrix(params, PI)
        pi = model.weights(PI)
        assert check_detailed_balance(Q, pi)

    def test_parameter_counts(self):
        assert get_subst_model("JC69").n_params == 0
        assert get_subst_model("HKY85").n_params == 1
        assert get_subst_model("REV").n_params == 6
        assert get_subst_model("UNREST").n_params == 12

    def test_hky_kappa(self):
        model = get_subst_model("HKY85")
        Q = model.rate_matrix(np.array([3.0]), PI)
        # A->G is a transition, A->C a transversion
        assert Q[0, 2] == pytest.approx(3.0 * PI[2])
        assert Q[0, 1] == pytest.approx(PI[1])

    def test_hky_kappa_one_is_f81(self):
        hky = get_subst_model("HKY85").rate_matrix(np.array([1.0]), PI)
        f81 = get_subst_model("F81").rate_matrix(np.array([]), PI)
        np.testing.assert_allclose(hky, f81)

    def test_tuple_models(self):
        r2 = get_subst_model("R2")
        assert r2.order == 1
        assert r2.nstates == 16
        assert r2.model_type == SubstModelType.REV
        assert r2.tag == "R2"
        u3 = get_subst_model("u3")
        assert u3.nstates == 64
        assert not u3.reversible

    def test_tuple_state_order(self):
        states = tuple_states("ACGT", 1)
        assert states[0] == "AA"
        assert states[1] == "AC"
        assert states[4] == "CA"

    def test_dinucleotide_single_changes_only(self):
        model = get_subst_model("HKY2")
        Q = model.rate_matrix(model.init_params(), np.full(16, 1 / 16))
        # AA -> CC changes two positions
        assert Q[0, 5] == 0.0
        assert Q[0, 1] > 0.0

    def test_unknown_model(self):
        with pytest.raises(InputFormatError):
            get_subst_model("GTR+X")

    def test_derivative_matches_finite_difference(self):
        model = get_subst_model("REV")
        params = np.array([1.0, 2.0, 0.5, 1.5, 3.0, 1.0])
        eps = 1e-6
        for p in range(model.n_params):
            bumped = params.copy()
            bumped[p] += eps
            fd = (model.rate_matrix(bumped, PI) - model.rate_matrix(params, PI)) / eps
            np.testing.assert_allclose(model.rate_matrix_derivative(p, PI), fd, atol=1e-6)

    def test_params_from_rate_matrix(self):
        model = get_subst_model("HKY85")
        Q = model.rate_matrix(np.array([4.0]), PI)
        np.testing.assert_allclose(model.params_from_rate_matrix(Q / 7.0, PI), [4.0])


class TestMatrix:
    """Eigendecomposition and transition probabilities."""

    def test_reversible_decomposition(self):
        Q = create_reversible_Q(np.ones((4, 4)), PI)
        evals, U, V = eigen_decompose_rev(Q, PI)
        assert not np.iscomplexobj(evals)
        for t in (0.01, 0.3, 2.0):
            np.testing.assert_allclose(exp_from_eigen(evals, U, V, t),
                                       matrix_exponential(Q, t), atol=1e-10)

    def test_general_decomposition(self):
        model = get_subst_model("UNREST")
        Q = model.rate_matrix(np.linspace(0.2, 2.4, 12), PI)
        evals, U, V = eigen_decompose(Q)
        np.testing.assert_allclose(exp_from_eigen(evals, U, V, 0.5),
                                   matrix_exponential(Q, 0.5), atol=1e-8)

    def test_normalized_rate(self):
        Q = create_reversible_Q(np.ones((4, 4)), PI, normalize=True)
        assert expected_rate(Q, PI) == pytest.approx(1.0)

    def test_rows_of_P_sum_to_one(self):
        Q = create_reversible_Q(np.ones((4, 4)), PI)
        P = matrix_exponential(Q, 0.7)
        np.testing.assert_allclose(P.sum(axis=1), 1.0)


class TestDiscreteGamma:
    @pytest.mark.parametrize("alpha", [0.2, 1.0, 5.0])
    def test_mean_one(self, alpha):
        freqs, rates = discrete_gamma(alpha, 4)
        np.testing.assert_allclose(freqs, 0.25)
        assert np.dot(freqs, rates) == pytest.approx(1.0)
        assert np.all(np.diff(rates) > 0)

    def test_median_variant(self):
        freqs, rates = discrete_gamma(0.5, 4, median=True)
        assert np.dot(freqs, rates) == pytest.approx(1.0)

    def test_large_alpha_approaches_one(self):
        _, rates = discrete_gamma(1000.0, 4)
        np.testing.assert_allclose(rates, 1.0, atol=0.1)

    def test_single_category(self):
        freqs, rates = discrete_gamma(0.5, 1)
        np.testing.assert_array_equal(rates, [1.0])

    def test_bad_shape(self):
        with pytest.raises(PreconditionError):
            discrete_gamma(0.0, 4)


@pytest.fixture
def hky_model(four_taxon_tree):
    return TreeModel(
        tree=four_taxon_tree,
        subst_model=get_subst_model("HKY85"),
        backgd_freqs=PI,
        rate_params=np.array([2.5]),
    )


class TestTreeModel:
    """Parameter packing, rate variation staging and the text format."""

    def test_transition_matrices(self, hky_model):
        for node in hky_model.tree.nodes:
            if node.parent is None:
                assert node.id not in hky_model.P
                continue
            P = hky_model.P[node.id][0]
            np.testing.assert_allclose(P, matrix_exponential(hky_model.Q, node.branch_length),
                                       atol=1e-10)

    def test_root_branches_share_a_parameter(self, hky_model):
        # six edges, the two at the root are merged
        assert hky_model.n_branch_params() == 5
        assert hky_model.n_params() == 6
        params = hky_model.get_params()
        assert params[0] == pytest.approx(0.2)

    def test_pack_unpack_round_trip(self, hky_model):
        params = hky_model.get_params()
        params[1] = 0.04
        params[-1] = 3.0
        hky_model.unpack_params(params)

        np.testing.assert_allclose(hky_model.get_params(), params)
        assert hky_model.tree.nodes[0].children[0].branch_length == pytest.approx(0.1)

    def test_unpack_wrong_length(self, hky_model):
        with pytest.raises(DimensionMismatchError):
            hky_model.unpack_params(np.ones(3))

    def test_scale_only(self, four_taxon_tree):
        mod = TreeModel(four_taxon_tree, get_subst_model("JC69"),
                        estimate_branchlens=BranchLengthMode.SCALE_ONLY)
        assert mod.n_params() == 1
        mod.unpack_params(np.array([2.0]))
        assert mod.scale == 2.0
        node = four_taxon_tree.get_node("rat")
        assert mod.branch_length(node) == pytest.approx(0.18)

    def test_backgd_parameters(self, four_taxon_tree):
        mod = TreeModel(four_taxon_tree, get_subst_model("F81"), backgd_freqs=PI,
                        estimate_backgd=True)
        params = mod.get_params()
        params[5:9] = [1.0, 1.0, 1.0, 2.0]
        mod.unpack_params(params)
        np.testing.assert_allclose(mod.backgd_freqs, [0.2, 0.2, 0.2, 0.4])
        assert mod.lower_bounds()[5] > 0

    @pytest.mark.parametrize("tag", ["JC69", "K80", "F81", "HKY85", "REV", "UNREST"])
    def test_rate_matrix_normalized_on_construction(self, four_taxon_tree, tag):
        mod = TreeModel(four_taxon_tree, get_subst_model(tag), backgd_freqs=PI)
        assert expected_rate(mod.Q, PI) == pytest.approx(1.0)
        assert mod.scale_rate_matrix() == pytest.approx(1.0)

    def test_scale_rate_matrix(self, hky_model):
        hky_model.set_rate_matrix(hky_model.Q * 3.0)

        factor = hky_model.scale_rate_matrix()

        assert factor == pytest.approx(3.0)
        assert expected_rate(hky_model.Q, PI) == pytest.approx(1.0)
        np.testing.assert_allclose(hky_model.rate_params, [2.5])

    @pytest.mark.parametrize("tag", ["HKY85", "K80", "REV", "UNREST"])
    def test_unpack_after_rescaling_keeps_rate_matrix(self, four_taxon_tree, tag):
        model = get_subst_model(tag)
        mod = TreeModel(four_taxon_tree, model, backgd_freqs=PI,
                        rate_params=np.linspace(0.5, 3.0, model.n_params))
        mod.set_rate_matrix(mod.Q * 4.0)
        mod.scale_rate_matrix()
        Q = mod.Q.copy()

        mod.unpack_params(mod.get_params())

        np.testing.assert_allclose(mod.Q, Q, atol=1e-12)

    @pytest.mark.parametrize("tag", ["JC69", "K80"])
    def test_equal_weight_models_with_skewed_background(self, four_taxon_tree, tag):
        model = get_subst_model(tag)
        mod = TreeModel(four_taxon_tree, model, backgd_freqs=PI,
                        rate_params=np.full(model.n_params, 3.0))
        for node in mod.tree.nodes:
            if node.parent is None:
                continue
            P = mod.P[node.id][0]
            np.testing.assert_allclose(P, matrix_exponential(mod.Q, node.branch_length), atol=1e-10)
            np.testing.assert_allclose(P.sum(axis=1), 1.0, atol=1e-10)

    def test_equal_weight_model_from_text(self):
        text = ("ALPHABET: A C G T\nSUBST_MOD: K80\nBACKGROUND: 0.1 0.2 0.3 0.4\n"
                "TREE: (a:0.3,b:0.2);\n")
        mod = TreeModel.from_text(text)

        node = mod.tree.get_node("a")
        np.testing.assert_allclose(mod.P[node.id][0], matrix_exponential(mod.Q, 0.3), atol=1e-10)
        assert expected_rate(mod.Q, mod.backgd_freqs) == pytest.approx(1.0)

    def test_non_reversible_matrix_on_reversible_model(self, hky_model):
        Q = get_subst_model("UNREST").rate_matrix(np.linspace(0.2, 2.4, 12), PI)

        hky_model.set_rate_matrix(Q)

        node = hky_model.tree.get_node("rat")
        np.testing.assert_allclose(hky_model.P[node.id][0],
                                   matrix_exponential(Q, node.branch_length), atol=1e-8)

    def test_rate_variation_staging(self, four_taxon_tree):
        mod = TreeModel(four_taxon_tree, get_subst_model("HKY85"), backgd_freqs=PI,
                        nratecats=4, alpha=0.5)
        n_params = mod.n_params()
        rates = mod.rK.copy()

        mod.disable_rate_variation()
        assert mod.rate_variation_disabled
        assert mod.nratecats == 1
        assert mod.alpha == -4.0
        assert mod.planned_nratecats == 4
        assert mod.n_params() == n_params
        assert len(mod.P[1]) == 1

        mod.enable_rate_variation()
        assert mod.nratecats == 4
        assert mod.alpha == 0.5
        np.testing.assert_allclose(mod.rK, rates)

    def test_root_leaf(self):
        tree = Tree.from_newick("(a:0.1,b:0.2,c:0.3);")
        mod = TreeModel(tree, get_subst_model("JC69"), root_leaf_id=tree.get_node("c").id)
        assert mod.branch_length(tree.get_node("c")) == 0.0
        np.testing.assert_allclose(mod.P[tree.get_node("c").id][0], np.eye(4), atol=1e-12)
        assert mod.n_branch_params() == 2

    def test_root_leaf_must_be_leaf(self, four_taxon_tree):
        with pytest.raises(PreconditionError):
            TreeModel(four_taxon_tree, get_subst_model("JC69"), root_leaf_id=1)

    def test_empirical_rates_need_constants(self, four_taxon_tree):
        with pytest.raises(DimensionMismatchError):
            TreeModel(four_taxon_tree, get_subst_model("JC69"), nratecats=3,
                      empirical_rates=True, rate_consts=np.array([0.5, 1.0]))

    def test_text_round_trip(self, four_taxon_tree):
        mod = TreeModel(four_taxon_tree, get_subst_model("REV"), backgd_freqs=PI,
                        rate_params=np.array([1.0, 2.0, 0.5, 1.5, 3.0, 1.0]),
                        nratecats=4, alpha=0.75)
        mod.scale_rate_matrix()

        text = mod.to_text()
        assert "SUBST_MOD: REV" in text
        assert "NRATECATS: 4" in text
        loaded = TreeModel.from_text(text)

        np.testing.assert_allclose(loaded.Q, mod.Q, rtol=1e-9)
        np.testing.assert_allclose(loaded.backgd_freqs, PI)
        assert loaded.alpha == pytest.approx(0.75)
        assert loaded.tree.to_newick() == mod.tree.to_newick()
        assert loaded.to_text() == text

    def test_text_round_trip_empirical(self, tmp_path, four_taxon_tree):
        mod = TreeModel(four_taxon_tree, get_subst_model("JC69"), nratecats=2,
                        empirical_rates=True, rate_consts=np.array([0.5, 2.0]),
                        rate_weights=np.array([0.25, 0.75]))
        path = tmp_path / "model.mod"
        mod.to_file(path)
        loaded = TreeModel.from_file(path)

        assert loaded.empirical_rates
        np.testing.assert_allclose(loaded.rK, [0.5, 2.0])
        np.testing.assert_allclose(loaded.freqK, [0.25, 0.75])

    def test_text_unknown_key(self):
        with pytest.raises(InputFormatError):
            TreeModel.from_text("ALPHABET: A C G T\nFOO: 1\n")

    def test_text_missing_tree(self):
        with pytest.raises(InputFormatError):
            TreeModel.from_text("ALPHABET: A C G T\nSUBST_MOD: JC69\nBACKGROUND: 0.25 0.25 0.25 0.25\n")
