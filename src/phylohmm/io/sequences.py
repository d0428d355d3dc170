"""
Sequence file parsing and alignment handling.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np

from ..errors import DimensionMismatchError, InputFormatError, PreconditionError

if TYPE_CHECKING:
    from ..core.sufficient_stats import SufficientStats

logger = logging.getLogger(__name__)

DEFAULT_ALPHABET = "ACGT"
GAP_CHAR = '-'
MISSING_CHAR = '*'

# Base pairing used for reverse complements; anything else maps to itself
COMPLEMENT = str.maketrans("ACGTacgtRYKMrykm", "TGCAtgcaYRMKyrmk")


class Format(str, Enum):
    """Alignment file formats understood by ``read_alignment``."""
    FASTA = "fasta"
    PHYLIP = "phylip"
    AXT = "axt"
    SS = "ss"


@dataclass(eq=False)
class Alignment:
    """
    Multiple sequence alignment.

    An alignment holds its rows as strings, or only a sufficient-statistics
    representation (``sequences is None``) when it was read from an SS file
    or pooled from several sources.

    Attributes
    ----------
    names : list[str]
        Sequence names
    sequences : list[str] or None
        Aligned rows, all of length ``length``
    alphabet : str
        Ordered symbol characters (gap and missing data are implicit)
    length : int
        Number of alignment columns
    categories : ndarray or None
        Per-column category labels in ``0..ncats``
    ncats : int
        Largest category label, or -1 when there are no categories
    ss : SufficientStats or None
        Sufficient statistics, once built
    idx_offset : int
        Coordinate offset recorded in the SS file format
    """

    names: list[str]
    sequences: Optional[list[str]] = None
    alphabet: str = DEFAULT_ALPHABET
    length: int = 0
    categories: Optional[np.ndarray] = None
    ncats: int = -1
    ss: Optional["SufficientStats"] = None
    idx_offset: int = 0

    def __post_init__(self):
        if self.sequences is not None:
            if len(self.sequences) != len(self.names):
                raise DimensionMismatchError(
                    f"{len(self.names)} names given for {len(self.sequences)} sequences"
                )
            lengths = {len(seq) for seq in self.sequences}
            if len(lengths) > 1:
                raise InputFormatError(f"Sequences have different lengths: {sorted(lengths)}")
            self.length = lengths.pop() if lengths else 0
        if self.categories is not None:
            self.categories = np.asarray(self.categories, dtype=int)

    @property
    def nseqs(self) -> int:
        return len(self.names)

    @classmethod
    def from_fasta(cls, filepath: Path | str, alphabet: str = DEFAULT_ALPHABET) -> "Alignment":
        """
        Parse FASTA format alignment file.

        Parameters
        ----------
        filepath : Path or str
            Path to FASTA format file
        alphabet : str
            Alphabet of the sequences

        Returns
        -------
        Alignment
            Parsed alignment

        Examples
        --------
        >>> aln = Alignment.from_fasta("alignment.fa")
        """
        names = []
        sequences_raw = []

        with open(filepath, 'r') as f:
            current_name = None
            current_seq = []

            for line in f:
                line = line.strip()

                if not line:
                    continue

                if line.startswith('>'):
                    if current_name is not None:
                        names.append(current_name)
                        sequences_raw.append(''.join(current_seq))

                    current_name = line[1:].strip()
                    current_seq = []
                else:
                    if current_name is None:
                        raise InputFormatError("FASTA data before first '>' header")
                    current_seq.append(line.upper())

            if current_name is not None:
                names.append(current_name)
                sequences_raw.append(''.join(current_seq))

        if not names:
            raise InputFormatError("No sequences found in FASTA file")

        sequences_clean = [re.sub(r'\s', '', seq) for seq in sequences_raw]

        return cls(names=names, sequences=sequences_clean, alphabet=alphabet)

    @classmethod
    def from_phylip(cls, filepath: Path | str, alphabet: str = DEFAULT_ALPHABET) -> "Alignment":
        """
        Parse sequential PHYLIP format alignment file.

        The first line contains the number of sequences and the alignment
        length. Each sequence starts with its name, either on a line of its
        own or followed by whitespace and the first chunk of sequence data.

        Parameters
        ----------
        filepath : Path or str
            Path to PHYLIP format file
        alphabet : str
            Alphabet of the sequences

        Returns
        -------
        Alignment
            Parsed alignment
        """
        with open(filepath, 'r') as f:
            lines = [line.rstrip() for line in f.readlines()]

        while lines and not lines[0].strip():
            lines.pop(0)
        if not lines:
            raise InputFormatError("Empty PHYLIP file")

        header = lines[0].split()
        try:
            nseqs, length = int(header[0]), int(header[1])
        except (IndexError, ValueError):
            raise InputFormatError(f"Bad PHYLIP header: {lines[0]!r}")

        names = []
        sequences_raw = []

        i = 1
        while i < len(lines) and len(names) < nseqs:
            line = lines[i].strip()
            i += 1

            if not line:
                continue

            parts = line.split(None, 1)
            names.append(parts[0])
            seq_data = re.sub(r'\s', '', parts[1]).upper() if len(parts) > 1 else ""

            while len(seq_data) < length and i < len(lines):
                line = lines[i].strip()
                i += 1
                if line:
                    seq_data += re.sub(r'\s', '', line).upper()

            sequences_raw.append(seq_data)

        if len(names) != nseqs:
            raise InputFormatError(f"Expected {nseqs} sequences, found {len(names)}")

        for name, seq in zip(names, sequences_raw):
            if len(seq) != length:
                raise InputFormatError(
                    f"Sequence {name} has length {len(seq)}, expected {length}"
                )

        return cls(names=names, sequences=sequences_raw, alphabet=alphabet)

    @classmethod
    def from_axt(
        cls,
        filepath: Path | str,
        names: Optional[Sequence[str]] = None,
        alphabet: str = DEFAULT_ALPHABET,
    ) -> "Alignment":
        """
        Parse a pairwise AXT file into a two-row alignment.

        Each block is a header line
        ``id chrA startA endA chrB startB endB strand score`` followed by
        the two aligned rows. Blocks are concatenated in file order. The
        second row of a ``-`` strand block is already oriented to the first
        sequence in AXT, so rows are used as written; soft-masked
        (lowercase) bases are upper-cased.

        Parameters
        ----------
        filepath : Path or str
            Path to AXT file
        names : sequence of str, optional
            Names for the two rows (default: chromosome names of the first block)
        alphabet : str
            Alphabet of the sequences

        Raises
        ------
        InputFormatError
            On malformed blocks or a strand other than '+' or '-'
        """
        with open(filepath, 'r') as f:
            lines = [line.strip() for line in f if not line.startswith('#')]

        rows = [[], []]
        block_names = None
        i = 0
        while i < len(lines):
            if not lines[i]:
                i += 1
                continue
            fields = lines[i].split()
            if len(fields) != 9:
                raise InputFormatError(f"Bad AXT header line: {lines[i]!r}")
            strand = fields[7]
            if strand not in ('+', '-'):
                raise InputFormatError(f"Bad strand '{strand}' in AXT header: {lines[i]!r}")
            if i + 2 >= len(lines):
                raise InputFormatError("Truncated AXT block")
            row_a, row_b = lines[i + 1].upper(), lines[i + 2].upper()
            if len(row_a) != len(row_b):
                raise InputFormatError(
                    f"AXT block {fields[0]} has rows of length {len(row_a)} and {len(row_b)}"
                )
            if block_names is None:
                block_names = [fields[1], fields[4]]
            rows[0].append(row_a)
            rows[1].append(row_b)
            i += 3

        if block_names is None:
            raise InputFormatError("No alignment blocks found in AXT file")

        names = list(names) if names is not None else block_names
        if len(names) != 2:
            raise DimensionMismatchError("AXT alignments have exactly two rows")
        return cls(names=names, sequences=[''.join(r) for r in rows], alphabet=alphabet)

    def to_fasta(self, filepath: Path | str, width: int = 70) -> None:
        """Write alignment to FASTA format file."""
        self._require_sequences()
        with open(filepath, 'w') as f:
            for name, seq in zip(self.names, self.sequences):
                f.write(f">{name}\n")
                for start in range(0, len(seq), width):
                    f.write(seq[start:start + width] + "\n")

    def to_phylip(self, filepath: Path | str) -> None:
        """Write alignment to sequential PHYLIP format file."""
        self._require_sequences()
        name_width = max(len(name) for name in self.names) + 2
        with open(filepath, 'w') as f:
            f.write(f" {self.nseqs}   {self.length}\n")
            for name, seq in zip(self.names, self.sequences):
                f.write(f"{name.ljust(name_width)}{seq}\n")

    def _require_sequences(self) -> None:
        if self.sequences is None:
            raise PreconditionError("Alignment has no explicit sequences")

    def reorder_rows(self, new_to_old: Sequence[int], new_names: Sequence[str]) -> None:
        """
        Reorder, drop or add rows.

        Parameters
        ----------
        new_to_old : sequence of int
            For each new row, the old row index, or -1 for a new all-gap row
        new_names : sequence of str
            Names of the new rows
        """
        if len(new_to_old) != len(new_names):
            raise DimensionMismatchError("new_to_old and new_names differ in length")
        if self.sequences is not None:
            gaps = GAP_CHAR * self.length
            self.sequences = [self.sequences[old] if old >= 0 else gaps for old in new_to_old]
        if self.ss is not None:
            from ..core.sufficient_stats import ss_reorder_rows

            ss_reorder_rows(self, new_to_old)
        self.names = list(new_names)


def detect_format(filepath: Path | str) -> Format:
    """Guess an alignment file format from its extension and first line."""
    suffix = Path(filepath).suffix.lower()
    by_suffix = {
        '.fa': Format.FASTA, '.fasta': Format.FASTA, '.fas': Format.FASTA,
        '.phy': Format.PHYLIP, '.phylip': Format.PHYLIP,
        '.axt': Format.AXT, '.ss': Format.SS,
    }
    if suffix in by_suffix:
        return by_suffix[suffix]

    with open(filepath, 'r') as f:
        first = ''
        for line in f:
            if line.strip():
                first = line.strip()
                break
    if first.startswith('>'):
        return Format.FASTA
    if first.startswith('NSEQS') or '=' in first:
        return Format.SS
    if re.match(r'^\d+\s+\d+$', first):
        return Format.PHYLIP
    return Format.AXT


def read_alignment(
    filepath: Path | str,
    format: Optional[Format | str] = None,
    alphabet: Optional[str] = None,
) -> Alignment:
    """
    Read an alignment in any supported format.

    Parameters
    ----------
    filepath : Path or str
        Alignment file
    format : Format or str, optional
        File format; detected from the file when omitted
    alphabet : str, optional
        Alphabet (SS files carry their own)

    Returns
    -------
    Alignment
        Parsed alignment
    """
    fmt = Format(format) if format is not None else detect_format(filepath)
    logger.info("Reading alignment from %s (%s format)", filepath, fmt.value)

    if fmt == Format.SS:
        from ..core.sufficient_stats import read_ss

        with open(filepath, 'r') as f:
            msa = read_ss(f)
        if alphabet is not None and alphabet != msa.alphabet:
            raise InputFormatError(
                f"SS file alphabet {msa.alphabet!r} differs from requested {alphabet!r}"
            )
        return msa

    alphabet = alphabet or DEFAULT_ALPHABET
    if fmt == Format.FASTA:
        return Alignment.from_fasta(filepath, alphabet=alphabet)
    if fmt == Format.PHYLIP:
        return Alignment.from_phylip(filepath, alphabet=alphabet)
    return Alignment.from_axt(filepath, alphabet=alphabet)
