"""Main CLI application for phylohmm."""

import logging
from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer

from ..io.sequences import Format
from ..models.tree_model import BranchLengthMode
from ..optimize.bfgs import Precision
from ..optimize.fit_em import GradientMode

app = typer.Typer(
    name="phylohmm",
    help="Phylogenetic hidden Markov models: sufficient statistics, tree-model fitting and decoding",
    no_args_is_help=True,
)


class OutputFormat(str, Enum):
    """Output format."""
    TEXT = "text"
    JSON = "json"


class FitMethod(str, Enum):
    """Tree-model fitting method."""
    EM = "em"
    DIRECT = "direct"


def configure_logging(verbose: bool, quiet: bool) -> None:
    """Root logger at INFO with --verbose, ERROR with --quiet, else WARNING."""
    level = logging.INFO if verbose else logging.ERROR if quiet else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", force=True)


def _split(value: Optional[str]) -> Optional[list[str]]:
    if value is None:
        return None
    return [v.strip() for v in value.split(',') if v.strip()]


@app.command()
def ss(
    alignment: Path = typer.Argument(
        ...,
        help="Alignment file (FASTA, PHYLIP, AXT or SS)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    format: Optional[Format] = typer.Option(
        None,
        "--format", "-i",
        help="Input format (detected when omitted)",
    ),
    tuple_size: int = typer.Option(
        1,
        "--tuple-size", "-T",
        help="Number of consecutive columns per tuple",
        min=1,
    ),
    no_order: bool = typer.Option(
        False,
        "--no-order",
        help="Do not record column order",
    ),
    reverse_complement: bool = typer.Option(
        False,
        "--reverse-complement", "-r",
        help="Reverse-complement the alignment",
    ),
    start: Optional[int] = typer.Option(
        None,
        "--start",
        help="First column of a sub-alignment (0-based)",
        min=0,
    ),
    end: Optional[int] = typer.Option(
        None,
        "--end",
        help="End column of a sub-alignment (exclusive)",
        min=0,
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output", "-o",
        help="Output file (default: stdout)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show progress"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only report errors"),
):
    """
    Convert an alignment to sufficient-statistics (SS) format.

    Example:
        phylohmm ss alignment.fa -T 3 -o alignment.ss
    """
    from .commands.ss import run_ss

    configure_logging(verbose, quiet)
    run_ss(
        alignment=alignment,
        format=format,
        tuple_size=tuple_size,
        store_order=not no_order,
        reverse_complement=reverse_complement,
        start=start,
        end=end,
        output=output,
    )


@app.command()
def aggregate(
    alignments: List[Path] = typer.Argument(
        ...,
        help="Alignment files to pool",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    names: str = typer.Option(
        ...,
        "--names", "-n",
        help="Comma-separated sequence names, in output row order",
    ),
    format: Optional[Format] = typer.Option(
        None,
        "--format", "-i",
        help="Input format (detected per file when omitted)",
    ),
    tuple_size: int = typer.Option(
        1,
        "--tuple-size", "-T",
        help="Number of consecutive columns per tuple",
        min=1,
    ),
    cycle_size: int = typer.Option(
        0,
        "--cycle-size", "-c",
        help="Label column p with category (p mod N) + 1",
        min=0,
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output", "-o",
        help="Output file (default: stdout)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show progress"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only report errors"),
):
    """
    Pool several alignments into one SS file, matching rows by name.

    Example:
        phylohmm aggregate chr1.fa chr2.fa -n human,chimp,mouse -o pooled.ss
    """
    from .commands.ss import run_aggregate

    configure_logging(verbose, quiet)
    run_aggregate(
        alignments=alignments,
        names=_split(names),
        format=format,
        tuple_size=tuple_size,
        cycle_size=cycle_size,
        output=output,
    )


@app.command()
def fit(
    alignment: Path = typer.Option(
        ...,
        "--alignment", "-s",
        help="Alignment file (FASTA, PHYLIP, AXT or SS)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    tree: Optional[Path] = typer.Option(
        None,
        "--tree", "-t",
        help="Tree file (Newick) with starting branch lengths",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    subst_mod: str = typer.Option(
        "REV",
        "--subst-mod", "-m",
        help="Substitution model (JC69, K80, F81, HKY85, REV, UNREST, HKY2, R2, U2, R3, U3)",
    ),
    nrates: int = typer.Option(
        1,
        "--nrates", "-k",
        help="Number of rate categories",
        min=1,
    ),
    alpha: float = typer.Option(
        1.0,
        "--alpha", "-a",
        help="Starting gamma shape parameter",
        min=0.0,
    ),
    empirical_rates: Optional[str] = typer.Option(
        None,
        "--empirical-rates",
        help="Comma-separated rate constants of an empirical rate mixture",
    ),
    estimate_backgd: bool = typer.Option(
        False,
        "--estimate-freqs",
        help="Estimate equilibrium frequencies",
    ),
    branch_lengths: BranchLengthMode = typer.Option(
        BranchLengthMode.ALL,
        "--branch-lengths",
        help="Estimate every branch length, one global scale, or none",
    ),
    precision: Precision = typer.Option(
        Precision.MED,
        "--precision", "-p",
        help="Convergence precision",
    ),
    method: FitMethod = typer.Option(
        FitMethod.EM,
        "--method",
        help="EM or direct likelihood optimization",
    ),
    gradient: GradientMode = typer.Option(
        GradientMode.ANALYTIC,
        "--gradient",
        help="Gradient used inside EM",
    ),
    root_leaf: Optional[str] = typer.Option(
        None,
        "--root-leaf",
        help="Leaf placed at the root",
    ),
    init_model: Optional[Path] = typer.Option(
        None,
        "--init-model", "-M",
        help="Start from this tree model file",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    maxiter: int = typer.Option(
        1000,
        "--maxiter",
        help="Maximum EM iterations",
        min=1,
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output", "-o",
        help="Write the fitted tree model to this file",
    ),
    format: OutputFormat = typer.Option(
        OutputFormat.TEXT,
        "--format",
        help="Summary format",
    ),
    log: Optional[Path] = typer.Option(
        None,
        "--log", "-l",
        help="Write an optimization trace to this file",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show optimization progress"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only report errors"),
):
    """
    Fit a tree model to an alignment.

    Example:
        phylohmm fit -s alignment.fa -t tree.nwk -m HKY85 -k 4 -o fitted.mod
    """
    from .commands.fit import run_fit

    configure_logging(verbose, quiet)
    run_fit(
        alignment=alignment,
        tree=tree,
        subst_mod=subst_mod,
        nrates=nrates,
        alpha=alpha,
        empirical_rates=_split(empirical_rates),
        estimate_backgd=estimate_backgd,
        branch_lengths=branch_lengths,
        precision=precision,
        method=method.value,
        gradient=gradient,
        root_leaf=root_leaf,
        init_model=init_model,
        maxiter=maxiter,
        output=output,
        format=format.value,
        log=log,
    )


@app.command()
def likelihood(
    model: Path = typer.Option(
        ...,
        "--model", "-M",
        help="Tree model file",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    alignment: Path = typer.Option(
        ...,
        "--alignment", "-s",
        help="Alignment file (FASTA, PHYLIP, AXT or SS)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    per_column: bool = typer.Option(
        False,
        "--per-column",
        help="Print one log-likelihood per column",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show progress"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only report errors"),
):
    """
    Log-likelihood of an alignment under a tree model.

    Example:
        phylohmm likelihood -M fitted.mod -s alignment.fa --per-column
    """
    from .commands.fit import run_likelihood

    configure_logging(verbose, quiet)
    run_likelihood(model=model, alignment=alignment, per_column=per_column)


@app.command()
def decode(
    hmm: Path = typer.Option(
        ...,
        "--hmm", "-H",
        help="HMM file",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    models: List[Path] = typer.Option(
        ...,
        "--model", "-M",
        help="Tree model for each HMM state, in state order (repeat the option)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    alignment: Path = typer.Option(
        ...,
        "--alignment", "-s",
        help="Alignment file (FASTA, PHYLIP, AXT or SS)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    labels: Optional[str] = typer.Option(
        None,
        "--labels",
        help="Comma-separated state names",
    ),
    posteriors: bool = typer.Option(
        False,
        "--posteriors",
        help="Include posterior state probabilities",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output", "-o",
        help="Output file (default: stdout)",
    ),
    format: OutputFormat = typer.Option(
        OutputFormat.TEXT,
        "--format",
        help="Output format",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show progress"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only report errors"),
):
    """
    Decode an alignment with a phylo-HMM (Viterbi path, optional posteriors).

    Example:
        phylohmm decode -H states.hmm -M neutral.mod -M conserved.mod -s alignment.fa
    """
    from .commands.decode import run_decode

    configure_logging(verbose, quiet)
    run_decode(
        hmm=hmm,
        models=models,
        alignment=alignment,
        labels=_split(labels),
        posteriors=posteriors,
        output=output,
        format=format.value,
    )


@app.command(name="hmm-view")
def hmm_view(
    hmm: Path = typer.Argument(
        ...,
        help="HMM file",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    labels: Optional[str] = typer.Option(
        None,
        "--labels",
        help="Comma-separated category names (one per state without rate categories)",
    ),
    nrates: int = typer.Option(
        1,
        "--nrates", "-k",
        help="Each category has this many rate-category states",
        min=1,
    ),
    show: Optional[str] = typer.Option(
        None,
        "--show", "-C",
        help="Comma-separated category names to draw",
    ),
    suppress_unconnected: bool = typer.Option(
        False,
        "--suppress-unconnected", "-x",
        help="Do not draw states without edges",
    ),
):
    """
    Print the state-transition graph of an HMM in Graphviz dot format.

    Example:
        phylohmm hmm-view states.hmm --labels neutral,conserved | dot -Tpdf > hmm.pdf
    """
    from .commands.decode import run_hmm_view

    run_hmm_view(
        hmm=hmm,
        labels=_split(labels),
        nrates=nrates,
        show=_split(show),
        suppress_unconnected=suppress_unconnected,
    )


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
