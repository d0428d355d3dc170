"""
Sufficient statistics for alignments.

An alignment of N sequences is summarised by its distinct column tuples: the
concatenation of the last T columns ending at each position, laid out as
``[offset -(T-1): seq 0..N-1] ... [offset 0: seq 0..N-1]`` and padded with
gaps before position 0. Each distinct tuple is stored once with a
(real-valued) count, optional per-category counts, and optionally the order
vector mapping alignment positions to tuple indices.

All likelihood and gradient computations consume this representation.
"""

import logging
import re
import warnings
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence, TextIO

import numpy as np

from ..errors import (
    CapacityError,
    DimensionMismatchError,
    InputFormatError,
    PreconditionError,
)
from ..io.sequences import COMPLEMENT, GAP_CHAR, Alignment, Format, read_alignment
from .numeric import int_pow

logger = logging.getLogger(__name__)

# Order-vector sentinel for positions that are not tabulated
IGNORE_IDX = -1

# Upper limit on the initial tuple allocation
MAX_NTUPLE_ALLOC = 100000


@dataclass(eq=False)
class SufficientStats:
    """
    Deduplicated column tuples of an alignment.

    Arrays are allocated with spare capacity (``alloc_ntuples`` tuples and
    ``alloc_len`` order slots); only the first ``ntuples`` entries are live.

    Attributes
    ----------
    tuple_size : int
        Number of consecutive columns per tuple (T)
    nseqs : int
        Number of rows in each column
    ntuples : int
        Number of distinct tuples
    col_tuples : list[str or None]
        Serialized tuple strings, length ``alloc_ntuples``
    counts : ndarray
        Occurrences of each tuple
    cat_counts : ndarray or None
        Occurrences per category, shape (ncats + 1, alloc_ntuples)
    tuple_idx : ndarray or None
        Tuple index of each alignment position, or IGNORE_IDX
    """

    tuple_size: int
    nseqs: int
    ntuples: int = 0
    col_tuples: list = field(default_factory=list)
    counts: np.ndarray = field(default_factory=lambda: np.zeros(0))
    cat_counts: Optional[np.ndarray] = None
    tuple_idx: Optional[np.ndarray] = None

    @classmethod
    def allocate(
        cls,
        nseqs: int,
        tuple_size: int,
        max_ntuples: int,
        alloc_len: int = 0,
        ncats: int = -1,
        store_order: bool = False,
    ) -> "SufficientStats":
        """
        Create empty sufficient statistics with the given capacity.

        Parameters
        ----------
        nseqs : int
            Rows per column
        tuple_size : int
            Columns per tuple
        max_ntuples : int
            Initial tuple capacity
        alloc_len : int
            Length of the order vector (used only with ``store_order``)
        ncats : int
            Largest category label; category counts are kept when >= 0
        store_order : bool
            Allocate an order vector
        """
        if tuple_size < 1:
            raise PreconditionError(f"Tuple size must be at least 1, got {tuple_size}")
        max_ntuples = max(max_ntuples, 1)
        return cls(
            tuple_size=tuple_size,
            nseqs=nseqs,
            col_tuples=[None] * max_ntuples,
            counts=np.zeros(max_ntuples),
            cat_counts=np.zeros((ncats + 1, max_ntuples)) if ncats >= 0 else None,
            tuple_idx=np.full(alloc_len, IGNORE_IDX, dtype=int) if store_order else None,
        )

    @property
    def alloc_ntuples(self) -> int:
        return len(self.col_tuples)

    @property
    def alloc_len(self) -> int:
        return 0 if self.tuple_idx is None else len(self.tuple_idx)

    def realloc(self, new_len: int, max_ntuples: int) -> None:
        """
        Grow the tuple arrays and the order vector.

        Tuple capacity grows geometrically: the new capacity is
        ``max(max_ntuples, 2 * alloc_ntuples)``.
        """
        if max_ntuples > self.alloc_ntuples:
            new_alloc = max(max_ntuples, 2 * self.alloc_ntuples)
            extra = new_alloc - self.alloc_ntuples
            self.col_tuples.extend([None] * extra)
            self.counts = np.concatenate([self.counts, np.zeros(extra)])
            if self.cat_counts is not None:
                self.cat_counts = np.hstack(
                    [self.cat_counts, np.zeros((self.cat_counts.shape[0], extra))]
                )
        if self.tuple_idx is not None and new_len > self.alloc_len:
            self.tuple_idx = np.concatenate(
                [self.tuple_idx, np.full(new_len - self.alloc_len, IGNORE_IDX, dtype=int)]
            )

    def compact(self) -> None:
        """Shrink the tuple arrays to ``ntuples``."""
        n = self.ntuples
        self.col_tuples = self.col_tuples[:n]
        self.counts = self.counts[:n].copy()
        if self.cat_counts is not None:
            self.cat_counts = self.cat_counts[:, :n].copy()

    def copy(self) -> "SufficientStats":
        return SufficientStats(
            tuple_size=self.tuple_size,
            nseqs=self.nseqs,
            ntuples=self.ntuples,
            col_tuples=list(self.col_tuples),
            counts=self.counts.copy(),
            cat_counts=None if self.cat_counts is None else self.cat_counts.copy(),
            tuple_idx=None if self.tuple_idx is None else self.tuple_idx.copy(),
        )

    def get_char(self, tupleidx: int, seqidx: int, col_offset: int) -> str:
        """Character of row ``seqidx`` at ``col_offset`` (-(T-1)..0) of a tuple."""
        return self.col_tuples[tupleidx][self.nseqs * (self.tuple_size - 1 + col_offset) + seqidx]

    def get_tuple_of_chars(self, tupleidx: int, seqidx: int) -> str:
        """The T characters of one row of a tuple, oldest column first."""
        s = self.col_tuples[tupleidx]
        return s[seqidx::self.nseqs]

    def tuple_to_string_pretty(self, tupleidx: int) -> str:
        """Tuple string with a single space between columns."""
        s = self.col_tuples[tupleidx]
        n = self.nseqs
        return ' '.join(s[o * n:(o + 1) * n] for o in range(self.tuple_size))

    def hash_table(self) -> dict[str, int]:
        """Map from tuple string to tuple index for the live tuples."""
        return {self.col_tuples[i]: i for i in range(self.ntuples)}


def col_to_string(msa: Alignment, col: int, tuple_size: int) -> str:
    """
    Serialize the tuple of ``tuple_size`` columns ending at ``col``.

    Positions before the start of the alignment are filled with gaps.
    """
    seqs = msa.sequences
    parts = []
    for offset in range(-(tuple_size - 1), 1):
        pos = col + offset
        if pos < 0:
            parts.append(GAP_CHAR * msa.nseqs)
        else:
            parts.append(''.join(seq[pos] for seq in seqs))
    return ''.join(parts)


def _initial_capacity(alph_size: int, tuple_chars: int, upper_bound: int) -> int:
    # alph_size ** tuple_chars can be astronomically large; stop as soon as
    # it exceeds the bound
    bound = min(upper_bound, MAX_NTUPLE_ALLOC)
    if tuple_chars * np.log(max(alph_size, 2)) > np.log(max(bound, 1)) + 1:
        return max(bound, 1)
    return max(min(int_pow(alph_size, tuple_chars), bound), 1)


def ss_from_msas(
    msa: Alignment,
    tuple_size: int,
    store_order: bool = False,
    cats_to_do: Optional[Iterable[int]] = None,
    source_msa: Optional[Alignment] = None,
    existing_hash: Optional[dict[str, int]] = None,
    idx_offset: Optional[int] = None,
) -> "SufficientStats":
    """
    Build or extend the sufficient statistics of ``msa``.

    Without ``source_msa``, tabulates the columns of ``msa`` itself. With a
    source, folds the source's columns (or its own SS) into ``msa.ss``,
    which is how alignments are pooled.

    Parameters
    ----------
    msa : Alignment
        Target alignment; its ``ss`` is created or extended in place
    tuple_size : int
        Columns per tuple
    store_order : bool
        Record the tuple index of every position
    cats_to_do : iterable of int, optional
        Only tabulate columns in these categories; other positions get
        IGNORE_IDX in the order vector
    source_msa : Alignment, optional
        Alignment whose columns are added to ``msa``
    existing_hash : dict, optional
        Shared tuple-string -> index map; when given, arrays are not
        compacted on exit so further sources can be added
    idx_offset : int, optional
        Write order entries at ``p + idx_offset``; the SS must already be
        sized for all inserts (growing it is a CapacityError)

    Returns
    -------
    SufficientStats
        ``msa.ss``
    """
    if source_msa is None:
        if msa.sequences is None or msa.length <= 0:
            raise PreconditionError("Alignment has no sequences to tabulate")
        if msa.ss is not None:
            raise PreconditionError("Alignment already has sufficient statistics")
    else:
        if msa.nseqs != source_msa.nseqs:
            raise DimensionMismatchError(
                f"Source alignment has {source_msa.nseqs} rows, target has {msa.nseqs}"
            )
        if msa.ncats >= 0 and source_msa.ncats >= 0 and msa.ncats != source_msa.ncats:
            raise DimensionMismatchError(
                f"Source alignment has {source_msa.ncats} categories, target has {msa.ncats}"
            )

    if idx_offset is not None:
        if idx_offset < 0:
            raise PreconditionError(f"Negative order offset {idx_offset}")
        if not store_order or source_msa is None:
            raise PreconditionError("An order offset requires store_order and a source alignment")
        if msa.ss is None:
            raise PreconditionError("Sufficient statistics must be pre-allocated to splice at an offset")

    smsa = source_msa if source_msa is not None else msa
    use_source_ss = smsa.sequences is None
    if use_source_ss and smsa.ss is None:
        raise PreconditionError("Source alignment has neither sequences nor sufficient statistics")
    if use_source_ss and smsa.ss.tuple_size != tuple_size:
        raise InputFormatError(
            f"Source tuple size {smsa.ss.tuple_size} does not match requested {tuple_size}"
        )
    if store_order and use_source_ss and smsa.ss.tuple_idx is None:
        raise PreconditionError("Ordered sufficient statistics require a source with order")

    do_cats = msa.ncats >= 0
    cat_filter = set(cats_to_do) if cats_to_do is not None else None
    if cat_filter is not None and smsa.categories is None:
        raise PreconditionError("Category filter given but alignment has no categories")

    alph_size = len(msa.alphabet) + 2
    tuple_chars = msa.nseqs * tuple_size

    if msa.ss is None:
        if source_msa is not None:
            msa.length = smsa.length
            upper = smsa.ss.ntuples if use_source_ss else smsa.length
        else:
            upper = msa.length
        msa.ss = SufficientStats.allocate(
            msa.nseqs, tuple_size, _initial_capacity(alph_size, tuple_chars, upper),
            alloc_len=msa.length, ncats=msa.ncats if do_cats else -1,
            store_order=store_order,
        )
    elif idx_offset is None:
        if msa.ss.tuple_size != tuple_size:
            raise PreconditionError(
                f"Existing tuple size {msa.ss.tuple_size} does not match {tuple_size}"
            )
        msa.length += smsa.length
        extra = smsa.ss.ntuples if use_source_ss else smsa.length
        msa.ss.realloc(msa.length, min(msa.ss.ntuples + extra, MAX_NTUPLE_ALLOC))
    elif idx_offset + smsa.length > msa.ss.alloc_len:
        raise CapacityError(
            f"Order vector of length {msa.ss.alloc_len} cannot hold "
            f"{smsa.length} positions at offset {idx_offset}"
        )

    ss = msa.ss
    if store_order and ss.tuple_idx is None:
        raise PreconditionError("Target sufficient statistics were built without order")

    if existing_hash is not None:
        tuple_hash = existing_hash
    else:
        tuple_hash = ss.hash_table()

    # order positions are relative to where this source starts
    if idx_offset is not None:
        base = idx_offset
    elif source_msa is not None:
        base = msa.length - smsa.length
    else:
        base = 0

    def lookup(key: str) -> int:
        idx = tuple_hash.get(key)
        if idx is None:
            idx = ss.ntuples
            if idx >= ss.alloc_ntuples:
                if idx_offset is not None:
                    raise CapacityError(
                        "Sufficient statistics must not grow while splicing at an offset"
                    )
                ss.realloc(ss.alloc_len, idx + 1)
            tuple_hash[key] = idx
            ss.col_tuples[idx] = key
            ss.ntuples += 1
        return idx

    def add_cat(cat: int, idx: int, weight: float) -> None:
        if cat < 0 or cat > msa.ncats:
            raise DimensionMismatchError(f"Category {cat} outside 0..{msa.ncats}")
        ss.cat_counts[cat, idx] += weight

    if use_source_ss and not store_order:
        src = smsa.ss
        for i in range(src.ntuples):
            idx = lookup(src.col_tuples[i])
            ss.counts[idx] += src.counts[i]
            if do_cats and src.cat_counts is not None:
                for cat in range(src.cat_counts.shape[0]):
                    add_cat(cat, idx, src.cat_counts[cat, i])
            elif do_cats:
                add_cat(0, idx, src.counts[i])
    else:
        for i in range(smsa.length):
            if cat_filter is not None and smsa.categories[i] not in cat_filter:
                if store_order:
                    ss.tuple_idx[base + i] = IGNORE_IDX
                continue

            if use_source_ss:
                src_idx = smsa.ss.tuple_idx[i]
                if src_idx == IGNORE_IDX:
                    if store_order:
                        ss.tuple_idx[base + i] = IGNORE_IDX
                    continue
                key = smsa.ss.col_tuples[src_idx]
            else:
                key = col_to_string(smsa, i, tuple_size)

            idx = lookup(key)
            ss.counts[idx] += 1
            if do_cats:
                add_cat(int(smsa.categories[i]) if smsa.categories is not None else 0, idx, 1)
            if store_order:
                ss.tuple_idx[base + i] = idx

    if existing_hash is None:
        ss.compact()

    return ss


@dataclass
class PooledMSA:
    """
    Union of several alignments sharing names and alphabet.

    Attributes
    ----------
    pooled_msa : Alignment
        SS-only alignment holding every distinct tuple of the sources
    source_msas : list[Alignment]
        Source alignments, each with its own ordered SS
    lens : list[int]
        Source alignment lengths
    tuple_idx_map : list[ndarray]
        For each source, its tuple index -> pooled tuple index
    """

    pooled_msa: Alignment
    source_msas: list[Alignment]
    lens: list[int]
    tuple_idx_map: list[np.ndarray]


def ss_pooled_from_msas(
    source_msas: Sequence[Alignment],
    tuple_size: int,
    ncats: int = -1,
    cats_to_do: Optional[Iterable[int]] = None,
) -> PooledMSA:
    """
    Pool several alignments into one set of sufficient statistics.

    Each source keeps (or receives) its own ordered SS, and the mapping from
    source tuples to pooled tuples is returned alongside the pool.
    """
    if not source_msas:
        raise PreconditionError("No alignments to pool")
    rep = source_msas[0]
    pooled = Alignment(names=list(rep.names), alphabet=rep.alphabet, ncats=ncats)
    cats_to_do = list(cats_to_do) if cats_to_do is not None else None
    tuple_hash: dict[str, int] = {}
    maps = []

    for smsa in source_msas:
        if smsa.nseqs != rep.nseqs:
            raise DimensionMismatchError("All pooled alignments must have the same number of rows")
        if smsa.ss is None:
            ss_from_msas(smsa, tuple_size, store_order=True, cats_to_do=cats_to_do)
        elif smsa.ss.tuple_size != tuple_size:
            raise InputFormatError(
                f"Source tuple size {smsa.ss.tuple_size} does not match requested {tuple_size}"
            )
        source_view = Alignment(
            names=smsa.names, alphabet=smsa.alphabet, length=smsa.length,
            ncats=smsa.ncats, ss=smsa.ss,
        )
        ss_from_msas(pooled, tuple_size, store_order=False, cats_to_do=None,
                     source_msa=source_view, existing_hash=tuple_hash)

    for smsa in source_msas:
        maps.append(np.array(
            [tuple_hash[smsa.ss.col_tuples[j]] for j in range(smsa.ss.ntuples)], dtype=int
        ))

    pooled.ss.compact()
    return PooledMSA(
        pooled_msa=pooled,
        source_msas=list(source_msas),
        lens=[smsa.length for smsa in source_msas],
        tuple_idx_map=maps,
    )


def ss_aggregate_from_files(
    fnames: Sequence[Path | str],
    seqnames: Sequence[str],
    format: Optional[Format | str] = None,
    alphabet: Optional[str] = None,
    tuple_size: int = 1,
    cats_to_do: Optional[Iterable[int]] = None,
    cycle_size: int = 0,
) -> Alignment:
    """
    Aggregate the sufficient statistics of several alignment files.

    Rows of each file are permuted to the order of ``seqnames``; rows a file
    lacks are filled with gaps. SS-only files cannot be permuted, so their
    names must already match ``seqnames`` in order.

    Parameters
    ----------
    fnames : sequence of path
        Alignment files
    seqnames : sequence of str
        Canonical row names
    format : Format or str, optional
        Format of every file (detected per file when omitted)
    alphabet : str, optional
        Alphabet of the alignments
    tuple_size : int
        Columns per tuple
    cats_to_do : iterable of int, optional
        Categories to tabulate
    cycle_size : int
        When >= 1, label source column p with category (p mod cycle_size) + 1

    Returns
    -------
    Alignment
        SS-only alignment
    """
    seqnames = list(seqnames)
    retval = Alignment(names=seqnames, alphabet=alphabet or "ACGT",
                       ncats=cycle_size if cycle_size > 0 else 0)
    cats_to_do = list(cats_to_do) if cats_to_do is not None else None
    tuple_hash: dict[str, int] = {}

    for i, fname in enumerate(fnames):
        source = read_alignment(fname, format=format, alphabet=alphabet)
        if i == 0 and alphabet is None:
            retval.alphabet = source.alphabet

        if source.sequences is None and source.ss.tuple_size != tuple_size:
            raise InputFormatError(
                f"Tuple size in {fname} ({source.ss.tuple_size}) does not match requested {tuple_size}"
            )

        if cycle_size > 0:
            source.categories = np.arange(source.length) % cycle_size + 1
            source.ncats = cycle_size

        if source.ncats != retval.ncats:
            if i == 0:
                retval.ncats = source.ncats
            else:
                raise DimensionMismatchError(f"Number of categories in {fname} does not match")

        if source.sequences is None:
            if source.names != seqnames:
                raise DimensionMismatchError(
                    f"Sequence names in {fname} must match the requested names in order"
                )
        else:
            new_to_old = []
            for name in seqnames:
                new_to_old.append(source.names.index(name) if name in source.names else -1)
            for name in source.names:
                if name not in seqnames:
                    raise DimensionMismatchError(f"No match for sequence name {name!r} in {fname}")
            source.reorder_rows(new_to_old, seqnames)

        ss_from_msas(retval, tuple_size, store_order=False, cats_to_do=cats_to_do,
                     source_msa=source, existing_hash=tuple_hash)

    if retval.ss is None:
        raise PreconditionError("No alignment files to aggregate")
    retval.ss.compact()
    return retval


def ss_sub_alignment(
    msa: Alignment,
    new_names: Sequence[str],
    include_list: Sequence[int],
    start_col: int,
    end_col: int,
) -> Alignment:
    """
    Extract columns ``[start_col, end_col)`` and a subset of rows.

    Requires ordered sufficient statistics. Tuples are not re-deduplicated:
    when only some rows are kept, distinct tuples may become identical and
    remain as separate entries (a UserWarning says so). Categories are
    carried over.

    Parameters
    ----------
    msa : Alignment
        Source alignment with ordered SS
    new_names : sequence of str
        Names of the kept rows
    include_list : sequence of int
        Indices of the kept rows
    start_col, end_col : int
        Column range

    Returns
    -------
    Alignment
        SS-only alignment of length ``end_col - start_col``
    """
    ss = msa.ss
    if ss is None or ss.tuple_idx is None:
        raise PreconditionError("Column subsets require ordered sufficient statistics")
    if not 0 <= start_col <= end_col <= msa.length:
        raise PreconditionError(f"Bad column range [{start_col}, {end_col}) for length {msa.length}")
    if len(new_names) != len(include_list):
        raise DimensionMismatchError("new_names and include_list differ in length")

    if len(include_list) != msa.nseqs:
        warnings.warn(
            "Taking a subset of rows; tuples in the result may not be unique",
            UserWarning,
        )

    length = end_col - start_col
    T = ss.tuple_size
    rows = list(include_list)
    sub = Alignment(names=list(new_names), alphabet=msa.alphabet, length=length,
                    ncats=msa.ncats, idx_offset=msa.idx_offset + start_col)
    if msa.categories is not None:
        sub.categories = msa.categories[start_col:end_col].copy()

    # tuple indices used by the range, in first-seen order
    old_to_new: dict[int, int] = {}
    for p in range(start_col, end_col):
        idx = int(ss.tuple_idx[p])
        if idx != IGNORE_IDX and idx not in old_to_new:
            old_to_new[idx] = len(old_to_new)

    new_ss = SufficientStats.allocate(len(rows), T, len(old_to_new), alloc_len=length,
                                      ncats=msa.ncats, store_order=True)
    new_ss.ntuples = len(old_to_new)
    for old, new in old_to_new.items():
        s = ss.col_tuples[old]
        new_ss.col_tuples[new] = ''.join(
            s[o * msa.nseqs + j] for o in range(T) for j in rows
        )

    for p in range(start_col, end_col):
        idx = int(ss.tuple_idx[p])
        if idx == IGNORE_IDX:
            continue
        new_idx = old_to_new[idx]
        new_ss.tuple_idx[p - start_col] = new_idx
        new_ss.counts[new_idx] += 1
        if new_ss.cat_counts is not None:
            cat = int(msa.categories[p]) if msa.categories is not None else 0
            new_ss.cat_counts[cat, new_idx] += 1

    sub.ss = new_ss
    return sub


def _reverse_complement_tuple(s: str, nseqs: int, tuple_size: int) -> str:
    cols = [s[o * nseqs:(o + 1) * nseqs] for o in range(tuple_size)]
    return ''.join(reversed(cols)).translate(COMPLEMENT)


def ss_reverse_compl(msa: Alignment) -> None:
    """
    Reverse-complement an alignment represented by ordered SS, in place.

    The first T-1 positions of the reversed alignment need tuples that do
    not exist yet; they are synthesized from the new leading tuple, reusing
    tuple slots whose count dropped to zero. Tuples are not re-deduplicated.
    """
    ss = msa.ss
    if ss is None or ss.tuple_idx is None:
        raise PreconditionError("Reverse complement requires ordered sufficient statistics")
    T = ss.tuple_size
    N = msa.nseqs
    L = msa.length
    if L < T:
        raise PreconditionError(f"Alignment of length {L} is shorter than tuple size {T}")

    do_cats = ss.cat_counts is not None and msa.categories is not None
    if ss.cat_counts is not None and msa.categories is None:
        warnings.warn(
            "Reverse complementing sufficient statistics without a categories "
            "vector; category counts will be approximate",
            UserWarning,
        )

    # (i) the first T-1 tuples become invalid
    overwrites = deque()
    for i in range(T - 1):
        idx = int(ss.tuple_idx[i])
        if idx == IGNORE_IDX:
            continue
        ss.counts[idx] -= 1
        if do_cats:
            ss.cat_counts[msa.categories[i], idx] -= 1
        if ss.counts[idx] == 0:
            overwrites.append(idx)

    # (ii) reverse complement every tuple
    for i in range(ss.ntuples):
        ss.col_tuples[i] = _reverse_complement_tuple(ss.col_tuples[i], N, T)

    # (iii) reverse order and categories
    ss.tuple_idx[T - 1:L] = ss.tuple_idx[T - 1:L][::-1].copy()
    if msa.categories is not None:
        msa.categories = msa.categories[::-1].copy()
    if msa.sequences is not None:
        msa.sequences = [seq[::-1].translate(COMPLEMENT) for seq in msa.sequences]

    # (iv) new leading tuples from the first full tuple
    first_idx = int(ss.tuple_idx[T - 1])
    first_tuple = ss.col_tuples[first_idx]
    for i in range(T - 1):
        chars = [GAP_CHAR] * (N * T)
        for offset2 in range(-i, 1):
            offset1 = offset2 + i - (T - 1)
            for j in range(N):
                chars[N * (T - 1 + offset2) + j] = first_tuple[N * (T - 1 + offset1) + j]
        new_tuple = ''.join(chars)

        if overwrites:
            slot = overwrites.popleft()
        else:
            slot = ss.ntuples
            if slot >= ss.alloc_ntuples:
                ss.realloc(ss.alloc_len, slot + 1)
            ss.ntuples += 1
        ss.col_tuples[slot] = new_tuple
        ss.counts[slot] += 1
        if do_cats:
            ss.cat_counts[msa.categories[i], slot] += 1
        ss.tuple_idx[i] = slot


def ss_reorder_rows(msa: Alignment, new_to_old: Sequence[int]) -> None:
    """
    Rewrite every tuple for a new row order, in place.

    ``new_to_old[i]`` is the old row shown as new row i, or -1 for an
    all-gap row. Updates ``msa.ss`` only; names are the caller's business.
    """
    ss = msa.ss
    if ss is None:
        raise PreconditionError("Alignment has no sufficient statistics")
    old_n = ss.nseqs
    new_n = len(new_to_old)
    for old in new_to_old:
        if old >= old_n:
            raise DimensionMismatchError(f"Row {old} out of range for {old_n} rows")
    T = ss.tuple_size
    for i in range(ss.ntuples):
        s = ss.col_tuples[i]
        ss.col_tuples[i] = ''.join(
            s[o * old_n + old] if old >= 0 else GAP_CHAR
            for o in range(T) for old in new_to_old
        )
    ss.nseqs = new_n


def ss_update_categories(msa: Alignment) -> None:
    """Recompute category counts from the alignment's categories vector."""
    ss = msa.ss
    if ss is None or ss.tuple_idx is None:
        raise PreconditionError("Updating categories requires ordered sufficient statistics")
    if msa.categories is None:
        raise PreconditionError("Alignment has no categories")
    msa.ncats = max(msa.ncats, int(msa.categories.max()) if len(msa.categories) else 0)
    ss.cat_counts = np.zeros((msa.ncats + 1, ss.alloc_ntuples))
    for p in range(msa.length):
        idx = int(ss.tuple_idx[p])
        if idx != IGNORE_IDX:
            ss.cat_counts[msa.categories[p], idx] += 1


def ss_to_msa(msa: Alignment) -> None:
    """
    Rebuild explicit sequences from ordered sufficient statistics.

    Each position takes the rightmost column of its tuple; ignored positions
    become gaps.
    """
    ss = msa.ss
    if ss is None or ss.tuple_idx is None:
        raise PreconditionError("Rebuilding sequences requires ordered sufficient statistics")
    N = msa.nseqs
    last = N * (ss.tuple_size - 1)
    cols = []
    for p in range(msa.length):
        idx = int(ss.tuple_idx[p])
        cols.append(GAP_CHAR * N if idx == IGNORE_IDX else ss.col_tuples[idx][last:last + N])
    msa.sequences = [''.join(col[j] for col in cols) for j in range(N)]


def ss_alt_msa(msa: Alignment, new_tuple_size: int, store_order: bool = True) -> Alignment:
    """
    Copy of an alignment tabulated at a different tuple size.

    The sequences are rebuilt from the ordered SS when necessary, so the
    source must carry order if it has no explicit sequences.
    """
    if msa.sequences is None:
        if msa.ss is None or msa.ss.tuple_idx is None:
            raise PreconditionError("Changing tuple size requires sequences or ordered statistics")
        tmp = Alignment(names=list(msa.names), alphabet=msa.alphabet, length=msa.length,
                        ncats=msa.ncats, ss=msa.ss)
        ss_to_msa(tmp)
        sequences = tmp.sequences
    else:
        sequences = list(msa.sequences)

    alt = Alignment(names=list(msa.names), sequences=sequences, alphabet=msa.alphabet,
                    categories=None if msa.categories is None else msa.categories.copy(),
                    ncats=msa.ncats, idx_offset=msa.idx_offset)
    ss_from_msas(alt, new_tuple_size, store_order=store_order)
    return alt


def get_base_freqs_tuples(
    msa: Alignment, tuple_size: int = 1, cat: Optional[int] = None
) -> np.ndarray:
    """
    Frequencies of alphabet tuples across all rows.

    Tuples containing a gap or other non-alphabet character are skipped.
    State indices place the oldest column in the most significant digit.
    Returns the uniform distribution if nothing is counted.
    """
    alph = msa.alphabet
    inv = {c: i for i, c in enumerate(alph)}
    nstates = int_pow(len(alph), tuple_size)
    freqs = np.zeros(nstates)

    if msa.ss is None:
        ss_from_msas(msa, tuple_size, store_order=msa.sequences is not None)
    elif msa.ss.tuple_size < tuple_size:
        if msa.sequences is None and msa.ss.tuple_idx is None:
            raise PreconditionError(
                f"Sufficient statistics of tuple size {msa.ss.tuple_size} "
                f"cannot give {tuple_size}-tuples"
            )
        msa = ss_alt_msa(msa, tuple_size, store_order=False)
    ss = msa.ss
    if cat is not None and ss.cat_counts is None:
        raise PreconditionError("Alignment has no category counts")

    skip = ss.tuple_size - tuple_size
    for i in range(ss.ntuples):
        count = ss.counts[i] if cat is None else ss.cat_counts[cat, i]
        if count == 0:
            continue
        for j in range(msa.nseqs):
            chars = ss.get_tuple_of_chars(i, j)[skip:]
            state = 0
            for c in chars:
                digit = inv.get(c.upper())
                if digit is None:
                    break
                state = state * len(alph) + digit
            else:
                freqs[state] += count

    total = freqs.sum()
    if total == 0:
        return np.full(nstates, 1.0 / nstates)
    return freqs / total


def _format_count(x: float) -> str:
    return f"{x:.0f}" if float(x).is_integer() else repr(float(x))


def write_ss(msa: Alignment, f: TextIO, show_order: bool = True) -> None:
    """
    Write an alignment's sufficient statistics in SS text format.

    Parameters
    ----------
    msa : Alignment
        Alignment with sufficient statistics
    f : file-like
        Output stream
    show_order : bool
        Write the TUPLE_IDX_ORDER section when order is available
    """
    ss = msa.ss
    if ss is None:
        raise PreconditionError("Alignment has no sufficient statistics")
    write_cats = msa.ncats > 0
    if write_cats and (ss.cat_counts is None or ss.cat_counts.shape[0] != msa.ncats + 1):
        raise PreconditionError(f"Category counts for {msa.ncats + 1} categories are missing")

    f.write(f"NSEQS = {msa.nseqs}\n")
    f.write(f"LENGTH = {msa.length}\n")
    f.write(f"TUPLE_SIZE = {ss.tuple_size}\n")
    f.write(f"NTUPLES = {ss.ntuples}\n")
    f.write(f"NAMES = {','.join(msa.names)}\n")
    f.write(f"ALPHABET = {msa.alphabet}\n")
    if msa.idx_offset != 0:
        f.write(f"IDX_OFFSET = {msa.idx_offset}\n")
    f.write(f"NCATS = {msa.ncats}\n\n")

    for i in range(ss.ntuples):
        line = f"{i}\t{ss.tuple_to_string_pretty(i)}\t{_format_count(ss.counts[i])}"
        if write_cats:
            line += "\t" + " ".join(_format_count(ss.cat_counts[c, i]) for c in range(msa.ncats + 1))
        f.write(line + "\n")

    if show_order and ss.tuple_idx is not None:
        f.write("\nTUPLE_IDX_ORDER:\n")
        for p in range(msa.length):
            f.write(f"{ss.tuple_idx[p]}\n")


_HEADER_RE = re.compile(r'^\s*([A-Z_]+)\s*=\s*(.*?)\s*$')
_INT_KEYS = {'NSEQS', 'LENGTH', 'TUPLE_SIZE', 'NTUPLES', 'NCATS', 'IDX_OFFSET'}
_REQUIRED_KEYS = ('NSEQS', 'LENGTH', 'TUPLE_SIZE', 'NTUPLES', 'NAMES', 'ALPHABET', 'NCATS')


def read_ss(f: TextIO, store_order: bool = True) -> Alignment:
    """
    Read an alignment in SS text format.

    Parameters
    ----------
    f : file-like
        Input stream
    store_order : bool
        Keep the order vector when the file has one

    Returns
    -------
    Alignment
        SS-only alignment

    Raises
    ------
    InputFormatError
        On malformed header or tuple lines, a missing required header,
        out-of-range indices, row-length mismatches or a truncated order list
    """
    header: dict[str, object] = {}
    lines = iter(f)
    for line in lines:
        if not line.strip():
            if header:
                break
            continue
        m = _HEADER_RE.match(line)
        if m is None or m.group(1) not in _INT_KEYS | {'NAMES', 'ALPHABET'}:
            raise InputFormatError(f"Bad header line in SS file: {line.rstrip()!r}")
        key, value = m.group(1), m.group(2)
        if key in _INT_KEYS:
            try:
                header[key] = int(value)
            except ValueError:
                raise InputFormatError(f"Bad value for {key} in SS file: {value!r}")
        elif key == 'NAMES':
            header[key] = [name.strip() for name in value.split(',') if name.strip()]
        else:
            header[key] = re.sub(r'\s', '', value)

    missing = [key for key in _REQUIRED_KEYS if key not in header]
    if missing:
        raise InputFormatError(f"SS file is missing required header(s): {', '.join(missing)}")

    nseqs = header['NSEQS']
    length = header['LENGTH']
    tuple_size = header['TUPLE_SIZE']
    ntuples = header['NTUPLES']
    names = header['NAMES']
    ncats = max(header['NCATS'], -1)
    if nseqs <= 0 or length < 0 or tuple_size <= 0 or ntuples <= 0:
        raise InputFormatError("SS header values out of range")
    if len(names) != nseqs:
        raise InputFormatError(f"NAMES lists {len(names)} names but NSEQS = {nseqs}")

    msa = Alignment(names=names, alphabet=header['ALPHABET'], length=length,
                    ncats=ncats, idx_offset=header.get('IDX_OFFSET', 0))
    ss = SufficientStats.allocate(nseqs, tuple_size, ntuples, alloc_len=length,
                                  ncats=ncats if ncats > 0 else -1, store_order=False)
    ss.ntuples = ntuples
    seen = np.zeros(ntuples, dtype=bool)
    expected_fields = 1 + tuple_size + 1 + (ncats + 1 if ncats > 0 else 0)

    order_lines = None
    for line in lines:
        if not line.strip():
            continue
        if line.strip() == 'TUPLE_IDX_ORDER:':
            order_lines = lines
            break
        fields = line.split()
        if len(fields) != expected_fields:
            raise InputFormatError(f"Bad tuple line in SS file: {line.rstrip()!r}")
        try:
            idx = int(fields[0])
            count = float(fields[1 + tuple_size])
            cat_values = [float(x) for x in fields[2 + tuple_size:]]
        except ValueError:
            raise InputFormatError(f"Bad tuple line in SS file: {line.rstrip()!r}")
        if not 0 <= idx < ntuples:
            raise InputFormatError(f"Tuple index {idx} out of bounds (NTUPLES = {ntuples})")
        columns = fields[1:1 + tuple_size]
        for col in columns:
            if len(col) != nseqs:
                raise InputFormatError(
                    f"Column {col!r} of tuple {idx} has {len(col)} rows, expected {nseqs}"
                )
        ss.col_tuples[idx] = ''.join(columns)
        ss.counts[idx] = count
        if ss.cat_counts is not None:
            ss.cat_counts[:, idx] = cat_values
        seen[idx] = True

    if not seen.all():
        raise InputFormatError(f"SS file defines {int(seen.sum())} of {ntuples} tuples")

    if order_lines is not None:
        values = []
        for line in order_lines:
            values.extend(line.split())
        if len(values) < length:
            raise InputFormatError(
                f"Too few numbers in TUPLE_IDX_ORDER ({len(values)} of {length})"
            )
        if len(values) > length:
            raise InputFormatError(
                f"Too many numbers in TUPLE_IDX_ORDER ({len(values)} for length {length})"
            )
        try:
            order = np.array([int(v) for v in values], dtype=int)
        except ValueError:
            raise InputFormatError("Non-integer entry in TUPLE_IDX_ORDER")
        bad = (order != IGNORE_IDX) & ((order < 0) | (order >= ntuples))
        if bad.any():
            raise InputFormatError(
                f"Tuple index {order[bad][0]} in TUPLE_IDX_ORDER out of bounds"
            )
        if store_order:
            ss.tuple_idx = order

    msa.ss = ss
    return msa


def read_ss_file(filepath: Path | str, store_order: bool = True) -> Alignment:
    """Read an SS file from disk."""
    with open(filepath, 'r') as f:
        return read_ss(f, store_order=store_order)


def write_ss_file(msa: Alignment, filepath: Path | str, show_order: bool = True) -> None:
    """Write an SS file to disk."""
    with open(filepath, 'w') as f:
        write_ss(msa, f, show_order=show_order)
