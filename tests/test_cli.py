"""
Unit tests for CLI commands.
"""

import json

import numpy as np
import pytest

from phylohmm.cli.main import app
from phylohmm.core.sufficient_stats import read_ss_file
from phylohmm.models.subst_models import get_subst_model
from phylohmm.models.tree_model import TreeModel


@pytest.fixture
def model_files(tmp_path, four_taxon_tree):
    """Neutral and conserved HKY85 models written to disk."""
    neutral = TreeModel(four_taxon_tree, get_subst_model("HKY85"),
                        backgd_freqs=np.array([0.3, 0.2, 0.2, 0.3]), rate_params=np.array([3.0]))
    neutral.scale_rate_matrix()
    conserved = neutral.copy()
    conserved.scale_branches(0.3)

    paths = []
    for name, mod in [("neutral", neutral), ("conserved", conserved)]:
        path = tmp_path / f"{name}.mod"
        mod.to_file(path)
        paths.append(path)
    return paths


class TestCLIHelp:
    """Test help messages and basic CLI functionality."""

    def test_main_help(self, cli_runner):
        result = cli_runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("ss", "aggregate", "fit", "likelihood", "decode", "hmm-view"):
            assert command in result.stdout

    def test_fit_help(self, cli_runner):
        result = cli_runner.invoke(app, ["fit", "--help"])
        assert result.exit_code == 0
        assert "--subst-mod" in result.stdout
        assert "--alignment" in result.stdout


class TestCLISufficientStats:
    """Test the 'ss' and 'aggregate' commands."""

    def test_ss_to_stdout(self, cli_runner, fasta_file):
        result = cli_runner.invoke(app, ["ss", str(fasta_file)])

        assert result.exit_code == 0
        assert "NSEQS = 4" in result.stdout
        assert "LENGTH = 48" in result.stdout
        assert "NTUPLES" in result.stdout
        assert "TUPLE_IDX_ORDER:" in result.stdout

    def test_ss_to_file(self, cli_runner, fasta_file, tmp_path):
        output = tmp_path / "aln.ss"

        result = cli_runner.invoke(app, ["ss", str(fasta_file), "-T", "2", "--no-order",
                                         "-o", str(output)])

        assert result.exit_code == 0
        msa = read_ss_file(output)
        assert msa.ss.tuple_size == 2
        assert msa.ss.tuple_idx is None
        assert msa.ss.counts[:msa.ss.ntuples].sum() == 48

    def test_ss_sub_alignment(self, cli_runner, fasta_file, tmp_path):
        output = tmp_path / "sub.ss"

        result = cli_runner.invoke(app, ["ss", str(fasta_file), "--start", "10", "--end", "20",
                                         "-o", str(output)])

        assert result.exit_code == 0
        assert read_ss_file(output).length == 10

    def test_aggregate(self, cli_runner, fasta_file, tmp_path):
        second = tmp_path / "second.fa"
        second.write_text(">chimp\nACGT\n>human\nACGA\n")

        result = cli_runner.invoke(app, ["aggregate", str(fasta_file), str(second),
                                         "-n", "human,chimp,mouse,rat"])

        assert result.exit_code == 0
        assert "NAMES = human,chimp,mouse,rat" in result.stdout
        assert "LENGTH = 52" in result.stdout
        assert "TUPLE_IDX_ORDER" not in result.stdout

    def test_bad_alignment(self, cli_runner, tmp_path):
        path = tmp_path / "bad.fa"
        path.write_text(">a\nACGT\n>b\nAC\n")

        result = cli_runner.invoke(app, ["ss", str(path)])

        assert result.exit_code == 1
        assert "Error" in result.output


class TestCLIFit:
    """Test 'fit' and 'likelihood' commands."""

    def test_fit_writes_model(self, cli_runner, fasta_file, tree_file, tmp_path):
        output = tmp_path / "fitted.mod"
        log = tmp_path / "trace.log"

        result = cli_runner.invoke(app, [
            "fit",
            "-s", str(fasta_file),
            "-t", str(tree_file),
            "-m", "HKY85",
            "-p", "low",
            "-o", str(output),
            "-l", str(log),
            "--quiet",
        ])

        assert result.exit_code == 0
        assert "TREE MODEL: HKY85" in result.stdout
        mod = TreeModel.from_file(output)
        assert mod.subst_model.tag == "HKY85"
        assert log.read_text().strip()

    def test_fit_json(self, cli_runner, fasta_file, tree_file):
        result = cli_runner.invoke(app, [
            "fit", "-s", str(fasta_file), "-t", str(tree_file),
            "-m", "JC69", "-p", "low", "--format", "json", "-q",
        ])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data['subst_model'] == "JC69"
        assert data['lnL'] < 0

    def test_fit_empirical_rates(self, cli_runner, fasta_file, tree_file):
        result = cli_runner.invoke(app, [
            "fit", "-s", str(fasta_file), "-t", str(tree_file), "-m", "HKY85",
            "--empirical-rates", "0.5,1.5", "-p", "low", "--format", "json", "-q",
        ])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data['nratecats'] == 2
        assert sum(data['rate_weights']) == pytest.approx(1.0)

    def test_bad_subst_model(self, cli_runner, fasta_file, tree_file):
        result = cli_runner.invoke(app, [
            "fit", "-s", str(fasta_file), "-t", str(tree_file), "-m", "BOGUS", "-q",
        ])

        assert result.exit_code == 1
        assert "Unknown substitution model" in result.output

    def test_fit_needs_tree(self, cli_runner, fasta_file):
        result = cli_runner.invoke(app, ["fit", "-s", str(fasta_file), "-q"])
        assert result.exit_code == 1

    def test_likelihood(self, cli_runner, fasta_file, model_files):
        total = cli_runner.invoke(app, ["likelihood", "-M", str(model_files[0]), "-s", str(fasta_file)])
        columns = cli_runner.invoke(app, ["likelihood", "-M", str(model_files[0]), "-s", str(fasta_file),
                                          "--per-column"])

        assert total.exit_code == 0
        assert total.stdout.startswith("lnL = ")
        lines = columns.stdout.strip().splitlines()
        assert len(lines) == 48
        column_sum = sum(float(line.split("\t")[1]) for line in lines)
        assert column_sum == pytest.approx(float(total.stdout.split("=")[1]), abs=1e-3)


class TestCLIDecode:
    """Test 'decode' and 'hmm-view' commands."""

    def test_decode_text(self, cli_runner, fasta_file, model_files, two_state_hmm_file):
        result = cli_runner.invoke(app, [
            "decode",
            "-H", str(two_state_hmm_file),
            "-M", str(model_files[0]),
            "-M", str(model_files[1]),
            "-s", str(fasta_file),
            "--labels", "neutral,conserved",
            "--posteriors",
        ])

        assert result.exit_code == 0
        assert "PHYLO-HMM DECODING" in result.stdout
        assert "SEGMENTS:" in result.stdout
        assert "POSTERIORS:" in result.stdout
        assert "pos\tneutral\tconserved" in result.stdout

    def test_decode_json_to_file(self, cli_runner, fasta_file, model_files, two_state_hmm_file, tmp_path):
        output = tmp_path / "decoded.json"

        result = cli_runner.invoke(app, [
            "decode", "-H", str(two_state_hmm_file),
            "-M", str(model_files[0]), "-M", str(model_files[1]),
            "-s", str(fasta_file), "--format", "json", "-o", str(output),
        ])

        assert result.exit_code == 0
        data = json.loads(output.read_text())
        assert len(data['path']) == 48
        assert data['segments'][-1]['end'] == 48

    def test_decode_state_mismatch(self, cli_runner, fasta_file, model_files, two_state_hmm_file):
        result = cli_runner.invoke(app, [
            "decode", "-H", str(two_state_hmm_file), "-M", str(model_files[0]),
            "-s", str(fasta_file), "-q",
        ])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_hmm_view(self, cli_runner, two_state_hmm_file):
        result = cli_runner.invoke(app, ["hmm-view", str(two_state_hmm_file),
                                         "--labels", "neutral,conserved"])

        assert result.exit_code == 0
        assert result.stdout.startswith("digraph hmm {")
        assert '"neutral(0)" -> "conserved(1)"' in result.stdout
