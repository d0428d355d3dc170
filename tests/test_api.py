"""
Tests for the high-level API (fit_tree_model, compute_log_likelihood, decode).
"""

import json

import numpy as np
import pytest

from phylohmm import (
    DecodeResult,
    DimensionMismatchError,
    FitResult,
    PreconditionError,
    build_tree_model,
    compute_log_likelihood,
    decode,
    fit_tree_model,
)
from phylohmm.core.matrix import expected_rate
from phylohmm.hmm.hmm import HMM
from phylohmm.io.trees import Tree
from phylohmm.models.tree_model import TreeModel
from phylohmm.optimize.bfgs import Precision


@pytest.fixture
def neutral_and_conserved(four_taxon_alignment, four_taxon_tree):
    """A fitted HKY85 model and a copy with branches scaled down."""
    neutral = fit_tree_model(four_taxon_alignment, four_taxon_tree, subst_model="HKY85",
                             precision=Precision.LOW).model
    conserved = neutral.copy()
    conserved.scale_branches(0.3)
    return neutral, conserved


class TestFitTreeModel:
    """Test fit_tree_model()."""

    def test_with_file_paths(self, fasta_file, tree_file):
        result = fit_tree_model(fasta_file, tree_file, subst_model="HKY85", precision=Precision.LOW)

        assert isinstance(result, FitResult)
        assert result.subst_model == "HKY85"
        assert result.method == "em"
        assert result.converged
        assert result.n_params == 6
        assert result.lnL < 0
        assert expected_rate(result.model.Q, result.model.backgd_freqs) == pytest.approx(1.0)

    def test_with_objects_and_newick_string(self, four_taxon_alignment, four_taxon_newick):
        from_string = fit_tree_model(four_taxon_alignment, four_taxon_newick,
                                     subst_model="JC69", precision=Precision.LOW)
        from_tree = fit_tree_model(four_taxon_alignment, Tree.from_newick(four_taxon_newick),
                                   subst_model="JC69", precision=Precision.LOW)

        assert from_string.lnL == pytest.approx(from_tree.lnL, abs=1e-6)

    def test_observed_frequencies(self, four_taxon_alignment, four_taxon_tree):
        mod = build_tree_model(four_taxon_alignment, four_taxon_tree, subst_model="HKY85")

        assert mod.backgd_freqs.sum() == pytest.approx(1.0)
        assert not np.allclose(mod.backgd_freqs, 0.25)

    def test_root_leaf(self, four_taxon_alignment):
        tree = Tree.from_newick("(human:0.0,chimp:0.03,(mouse:0.08,rat:0.09):0.1);")
        mod = build_tree_model(four_taxon_alignment, tree, subst_model="JC69", root_leaf="human")
        assert mod.root_leaf_id == tree.get_node("human").id

        with pytest.raises(DimensionMismatchError):
            build_tree_model(four_taxon_alignment, tree, subst_model="JC69", root_leaf="gorilla")

    def test_direct_method(self, four_taxon_alignment, four_taxon_tree):
        result = fit_tree_model(four_taxon_alignment, four_taxon_tree, subst_model="K80",
                                method="direct", max_iterations=50)

        assert result.method == "direct"
        assert result.n_iterations == len(result.history)
        assert np.isfinite(result.lnL)

    def test_init_model(self, four_taxon_alignment, four_taxon_tree, tmp_path):
        first = fit_tree_model(four_taxon_alignment, four_taxon_tree, subst_model="HKY85",
                               precision=Precision.LOW)
        path = tmp_path / "first.mod"
        first.model.to_file(path)

        second = fit_tree_model(four_taxon_alignment, init_model=path, precision=Precision.LOW)

        assert second.lnL >= first.lnL - 1e-3

    def test_needs_tree_or_model(self, four_taxon_alignment):
        with pytest.raises(PreconditionError):
            fit_tree_model(four_taxon_alignment)

    def test_unknown_method(self, four_taxon_alignment, four_taxon_tree):
        with pytest.raises(PreconditionError):
            fit_tree_model(four_taxon_alignment, four_taxon_tree, method="newton")

    def test_missing_alignment_file(self, tmp_path, four_taxon_newick):
        with pytest.raises(FileNotFoundError):
            fit_tree_model(tmp_path / "missing.fa", four_taxon_newick)


class TestFitResult:
    def test_summary(self, four_taxon_alignment, four_taxon_tree):
        result = fit_tree_model(four_taxon_alignment, four_taxon_tree, subst_model="HKY85",
                                nratecats=2, alpha=0.5, precision=Precision.LOW)

        summary = result.summary()

        assert "TREE MODEL: HKY85" in summary
        assert "Log-likelihood:" in summary
        assert "alpha =" in summary
        assert str(result) == summary
        assert "FitResult(model='HKY85'" in repr(result)

    def test_to_json(self, four_taxon_alignment, four_taxon_tree, tmp_path):
        result = fit_tree_model(four_taxon_alignment, four_taxon_tree, subst_model="JC69",
                                precision=Precision.LOW)
        path = tmp_path / "fit.json"

        data = json.loads(result.to_json(str(path)))

        assert data['subst_model'] == "JC69"
        assert data['lnL'] == pytest.approx(result.lnL)
        assert data['alpha'] is None
        assert json.loads(path.read_text()) == data


class TestLogLikelihood:
    def test_total_and_per_column(self, four_taxon_alignment, neutral_and_conserved, tmp_path):
        neutral, _ = neutral_and_conserved
        path = tmp_path / "neutral.mod"
        neutral.to_file(path)

        total = compute_log_likelihood(path, four_taxon_alignment)
        columns = compute_log_likelihood(neutral, four_taxon_alignment, per_column=True)

        assert len(columns) == 48
        assert columns.sum() == pytest.approx(total, abs=1e-6)


class TestDecode:
    """Test decode()."""

    def test_two_state_decoding(self, four_taxon_alignment, neutral_and_conserved, two_state_hmm_file):
        result = decode(list(neutral_and_conserved), two_state_hmm_file, four_taxon_alignment,
                        posteriors=True, labels=["neutral", "conserved"])

        assert isinstance(result, DecodeResult)
        assert len(result.path) == 48
        assert set(result.path) <= {0, 1}
        assert result.score <= result.log_likelihood
        np.testing.assert_allclose(result.posteriors.sum(axis=0), 1.0, atol=1e-9)

        segments = result.segments()
        assert segments[0][0] == 0
        assert segments[-1][1] == 48
        assert all(a[1] == b[0] for a, b in zip(segments, segments[1:]))
        assert {label for _, _, label in segments} <= {"neutral", "conserved"}

    def test_single_model(self, four_taxon_alignment, neutral_and_conserved):
        neutral, _ = neutral_and_conserved

        result = decode([neutral], HMM.create_trivial(), four_taxon_alignment)

        assert result.segments() == [(0, 48, "0")]
        assert result.log_likelihood == pytest.approx(
            compute_log_likelihood(neutral, four_taxon_alignment), abs=1e-6)

    def test_state_count_mismatch(self, four_taxon_alignment, neutral_and_conserved):
        neutral, _ = neutral_and_conserved
        with pytest.raises(DimensionMismatchError):
            decode([neutral], HMM(np.array([[0.9, 0.1], [0.1, 0.9]])), four_taxon_alignment)

    def test_label_count_mismatch(self, four_taxon_alignment, neutral_and_conserved, two_state_hmm_file):
        with pytest.raises(DimensionMismatchError):
            decode(list(neutral_and_conserved), two_state_hmm_file, four_taxon_alignment,
                   labels=["only"])

    def test_to_json(self, four_taxon_alignment, neutral_and_conserved, two_state_hmm_file):
        result = decode(list(neutral_and_conserved), two_state_hmm_file, four_taxon_alignment)

        data = json.loads(result.to_json())

        assert len(data['path']) == 48
        assert data['labels'] == ["0", "1"]
        assert 'posteriors' not in data
        assert isinstance(data['segments'][0]['state'], str)

    def test_model_files(self, four_taxon_alignment, neutral_and_conserved, two_state_hmm_file, tmp_path):
        paths = []
        for name, mod in zip(["neutral", "conserved"], neutral_and_conserved):
            path = tmp_path / f"{name}.mod"
            mod.to_file(path)
            paths.append(path)

        from_files = decode(paths, two_state_hmm_file, four_taxon_alignment)
        from_objects = decode(list(neutral_and_conserved), two_state_hmm_file, four_taxon_alignment)

        np.testing.assert_array_equal(from_files.path, from_objects.path)
        assert isinstance(TreeModel.from_file(paths[0]), TreeModel)
