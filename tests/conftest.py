"""
Pytest configuration and shared fixtures.
"""

import pytest
from typer.testing import CliRunner

from phylohmm.io.sequences import Alignment
from phylohmm.io.trees import Tree

BASE_SEQUENCE = "ACGTTGCAAGCTAGCTTACGGATCCAGTACGATCGATGCAAGTCCGTA"


def _mutate(seq: str, changes: dict[int, str]) -> str:
    chars = list(seq)
    for pos, c in changes.items():
        chars[pos] = c
    return ''.join(chars)


@pytest.fixture
def four_taxon_sequences():
    """Four related sequences of length 48 with a few gaps."""
    return {
        "human": BASE_SEQUENCE,
        "chimp": _mutate(BASE_SEQUENCE, {3: 'C', 17: 'A', 30: 'T'}),
        "mouse": _mutate(BASE_SEQUENCE, {1: 'T', 8: 'G', 12: 'C', 21: '-', 22: '-', 33: 'A', 40: 'G'}),
        "rat": _mutate(BASE_SEQUENCE, {1: 'T', 8: 'G', 14: 'A', 25: 'T', 33: 'A', 44: 'T', 46: 'C'}),
    }


@pytest.fixture
def four_taxon_alignment(four_taxon_sequences):
    """Alignment object built from the four-taxon sequences."""
    return Alignment(
        names=list(four_taxon_sequences),
        sequences=list(four_taxon_sequences.values()),
    )


@pytest.fixture
def four_taxon_newick():
    return "((human:0.02,chimp:0.03):0.1,(mouse:0.08,rat:0.09):0.1);"


@pytest.fixture
def four_taxon_tree(four_taxon_newick):
    return Tree.from_newick(four_taxon_newick)


@pytest.fixture
def fasta_file(tmp_path, four_taxon_sequences):
    """Four-taxon alignment written as FASTA."""
    path = tmp_path / "alignment.fa"
    with open(path, 'w') as f:
        for name, seq in four_taxon_sequences.items():
            f.write(f">{name}\n{seq[:30]}\n{seq[30:]}\n")
    return path


@pytest.fixture
def tree_file(tmp_path, four_taxon_newick):
    path = tmp_path / "tree.nwk"
    path.write_text(four_taxon_newick + "\n")
    return path


@pytest.fixture
def two_state_hmm_file(tmp_path):
    """Two-state HMM in the tagged text format."""
    path = tmp_path / "states.hmm"
    path.write_text(
        "TRANSITION_MATRIX:\n"
        "0.95 0.05\n"
        "0.10 0.90\n"
        "EQUILIBRIUM_FREQUENCIES:\n"
        "0.6666666667 0.3333333333\n"
        "BEGIN_TRANSITIONS:\n"
        "0.5 0.5\n"
    )
    return path


@pytest.fixture
def cli_runner():
    """CLI test runner for Typer apps."""
    return CliRunner()
