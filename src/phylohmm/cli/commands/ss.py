"""SS and aggregate command implementations."""

import sys
from pathlib import Path
from typing import Optional

from phylohmm.core.sufficient_stats import (
    ss_aggregate_from_files,
    ss_alt_msa,
    ss_from_msas,
    ss_reverse_compl,
    ss_sub_alignment,
    write_ss,
    write_ss_file,
)
from phylohmm.errors import PhyloHMMError
from phylohmm.io.sequences import Format, read_alignment


def _write(msa, output: Optional[Path], show_order: bool) -> None:
    if output:
        write_ss_file(msa, output, show_order=show_order)
        print(f"Sufficient statistics written to {output}", file=sys.stderr)
    else:
        write_ss(msa, sys.stdout, show_order=show_order)


def run_ss(
    alignment: Path,
    format: Optional[Format],
    tuple_size: int,
    store_order: bool,
    reverse_complement: bool,
    start: Optional[int],
    end: Optional[int],
    output: Optional[Path],
):
    """Tabulate one alignment."""
    try:
        msa = read_alignment(alignment, format=format)
        if msa.ss is None:
            ss_from_msas(msa, tuple_size, store_order=True)
        elif msa.ss.tuple_size != tuple_size:
            msa = ss_alt_msa(msa, tuple_size)

        if start is not None or end is not None:
            msa = ss_sub_alignment(
                msa, msa.names, list(range(msa.nseqs)),
                start if start is not None else 0,
                end if end is not None else msa.length,
            )
        if reverse_complement:
            ss_reverse_compl(msa)

        _write(msa, output, show_order=store_order)
    except (PhyloHMMError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def run_aggregate(
    alignments: list[Path],
    names: list[str],
    format: Optional[Format],
    tuple_size: int,
    cycle_size: int,
    output: Optional[Path],
):
    """Pool several alignments into unordered sufficient statistics."""
    if not names:
        print("Error: --names must list at least one sequence", file=sys.stderr)
        sys.exit(1)

    try:
        msa = ss_aggregate_from_files(
            alignments, names, format=format, tuple_size=tuple_size,
            cycle_size=cycle_size,
        )
        _write(msa, output, show_order=False)
    except (PhyloHMMError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
