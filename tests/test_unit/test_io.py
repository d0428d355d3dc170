"""
Unit tests for I/O modules (sequence and tree parsing).
"""

import numpy as np
import pytest

from phylohmm.errors import DimensionMismatchError, InputFormatError
from phylohmm.io.sequences import Alignment, Format, detect_format, read_alignment
from phylohmm.io.trees import Tree


class TestSequenceParsing:
    """Test alignment file parsing."""

    def test_parse_fasta(self, fasta_file, four_taxon_sequences):
        aln = Alignment.from_fasta(fasta_file)

        assert aln.names == ["human", "chimp", "mouse", "rat"]
        assert aln.length == 48
        assert aln.sequences == list(four_taxon_sequences.values())
        assert aln.ss is None

    def test_parse_phylip(self, tmp_path):
        path = tmp_path / "aln.phy"
        path.write_text(" 3 10\nseqA  ACGTA CGTAC\nseqB\nACGTT\nCGTAC\nseqC  ACG-ACGTAC\n")

        aln = Alignment.from_phylip(path)

        assert aln.names == ["seqA", "seqB", "seqC"]
        assert aln.sequences[1] == "ACGTTCGTAC"
        assert aln.sequences[2] == "ACG-ACGTAC"

    def test_phylip_length_mismatch(self, tmp_path):
        path = tmp_path / "aln.phy"
        path.write_text("2 5\na ACGT\nb ACGTA\n")
        with pytest.raises(InputFormatError):
            Alignment.from_phylip(path)

    def test_fasta_unequal_lengths(self, tmp_path):
        path = tmp_path / "aln.fa"
        path.write_text(">a\nACGT\n>b\nACG\n")
        with pytest.raises(InputFormatError):
            Alignment.from_fasta(path)

    def test_parse_axt(self, tmp_path):
        path = tmp_path / "pair.axt"
        path.write_text(
            "# comment\n"
            "0 chr1 100 103 chrX 200 203 + 500\n"
            "ACGT\n"
            "AC-T\n"
            "\n"
            "1 chr1 150 151 chrX 260 261 - 100\n"
            "ga\n"
            "GG\n"
        )

        aln = Alignment.from_axt(path)

        assert aln.names == ["chr1", "chrX"]
        assert aln.sequences == ["ACGTGA", "AC-TGG"]

    def test_axt_bad_strand(self, tmp_path):
        path = tmp_path / "pair.axt"
        path.write_text("0 chr1 1 2 chrX 1 2 ? 10\nAC\nAC\n")
        with pytest.raises(InputFormatError):
            Alignment.from_axt(path)

    def test_names_count_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            Alignment(names=["a"], sequences=["ACGT", "ACGT"])

    def test_reorder_rows(self):
        aln = Alignment(names=["a", "b"], sequences=["AAAA", "CCCC"])
        aln.reorder_rows([1, -1, 0], ["b", "new", "a"])

        assert aln.names == ["b", "new", "a"]
        assert aln.sequences == ["CCCC", "----", "AAAA"]

    def test_write_and_read_fasta(self, tmp_path, four_taxon_alignment):
        path = tmp_path / "out.fasta"
        four_taxon_alignment.to_fasta(path, width=20)
        aln = read_alignment(path)
        assert aln.sequences == four_taxon_alignment.sequences


class TestFormatDetection:
    def test_by_extension(self, tmp_path):
        assert detect_format(tmp_path / "x.fa") == Format.FASTA
        assert detect_format(tmp_path / "x.phy") == Format.PHYLIP
        assert detect_format(tmp_path / "x.ss") == Format.SS

    def test_by_content(self, tmp_path):
        fasta = tmp_path / "noext1"
        fasta.write_text(">a\nAC\n")
        phylip = tmp_path / "noext2"
        phylip.write_text("2 2\na AC\nb AC\n")
        ss = tmp_path / "noext3"
        ss.write_text("NSEQS = 2\n")

        assert detect_format(fasta) == Format.FASTA
        assert detect_format(phylip) == Format.PHYLIP
        assert detect_format(ss) == Format.SS

    def test_read_ss_file(self, tmp_path):
        path = tmp_path / "aln.ss"
        path.write_text(
            "NSEQS = 2\nLENGTH = 3\nTUPLE_SIZE = 1\nNTUPLES = 2\n"
            "NAMES = a,b\nALPHABET = ACGT\nNCATS = -1\n\n"
            "0\tAA\t2\n1\tGT\t1\n\nTUPLE_IDX_ORDER:\n0\n1\n0\n"
        )

        aln = read_alignment(path)

        assert aln.sequences is None
        assert aln.length == 3
        np.testing.assert_array_equal(aln.ss.tuple_idx, [0, 1, 0])


class TestTreeParsing:
    """Test Newick tree parsing."""

    def test_simple_tree(self):
        tree = Tree.from_newick("((a:0.1,b:0.2):0.05,c:0.3);")

        assert tree.n_leaves == 3
        assert tree.n_nodes == 5
        assert tree.leaf_names == ["a", "b", "c"]
        assert tree.get_node("b").branch_length == pytest.approx(0.2)
        assert tree.total_length() == pytest.approx(0.65)

    def test_node_ids_are_preorder(self, four_taxon_tree):
        for i, node in enumerate(four_taxon_tree.preorder()):
            assert node.id == i
            assert four_taxon_tree.nodes[i] is node

    def test_postorder_children_first(self, four_taxon_tree):
        seen = set()
        for node in four_taxon_tree.postorder():
            assert all(child.id in seen for child in node.children)
            seen.add(node.id)

    def test_round_trip(self, four_taxon_newick):
        tree = Tree.from_newick(four_taxon_newick)
        assert Tree.from_newick(tree.to_newick()).to_newick() == tree.to_newick()
        assert tree.to_newick() == four_taxon_newick

    def test_missing_semicolon(self):
        with pytest.raises(InputFormatError):
            Tree.from_newick("(a:0.1,b:0.2)")

    def test_scale(self, four_taxon_tree):
        total = four_taxon_tree.total_length()
        four_taxon_tree.scale(2.0)
        assert four_taxon_tree.total_length() == pytest.approx(2 * total)
