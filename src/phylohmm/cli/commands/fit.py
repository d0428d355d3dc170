"""Fit and likelihood command implementations."""

import sys
from pathlib import Path
from typing import Optional

from phylohmm import compute_log_likelihood, fit_tree_model
from phylohmm.errors import PhyloHMMError
from phylohmm.models.tree_model import BranchLengthMode
from phylohmm.optimize.bfgs import Precision
from phylohmm.optimize.fit_em import GradientMode


def run_fit(
    alignment: Path,
    tree: Optional[Path],
    subst_mod: str,
    nrates: int,
    alpha: float,
    empirical_rates: Optional[list[str]],
    estimate_backgd: bool,
    branch_lengths: BranchLengthMode,
    precision: Precision,
    method: str,
    gradient: GradientMode,
    root_leaf: Optional[str],
    init_model: Optional[Path],
    maxiter: int,
    output: Optional[Path],
    format: str,
    log: Optional[Path],
):
    """Fit a tree model and report the estimates."""
    if tree is None and init_model is None:
        print("Error: either --tree or --init-model is required", file=sys.stderr)
        sys.exit(1)

    rates = None
    if empirical_rates:
        try:
            rates = [float(r) for r in empirical_rates]
        except ValueError:
            print(f"Error: Bad --empirical-rates value: {','.join(empirical_rates)}",
                  file=sys.stderr)
            sys.exit(1)
        nrates = len(rates)

    logf = open(log, 'w') if log else None
    try:
        result = fit_tree_model(
            alignment,
            tree=tree,
            subst_model=subst_mod,
            nratecats=nrates,
            alpha=alpha,
            empirical_rates=rates,
            estimate_backgd=estimate_backgd,
            branch_lengths=branch_lengths,
            precision=precision,
            method=method,
            gradient_mode=gradient,
            root_leaf=root_leaf,
            init_model=init_model,
            max_iterations=maxiter,
            logf=logf,
        )
    except (PhyloHMMError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        if logf is not None:
            logf.close()

    if output:
        result.model.to_file(output)
        print(f"Tree model written to {output}", file=sys.stderr)

    if format == "json":
        print(result.to_json())
    else:
        print(result.summary())


def run_likelihood(model: Path, alignment: Path, per_column: bool):
    """Score an alignment under a fitted tree model."""
    try:
        value = compute_log_likelihood(model, alignment, per_column=per_column)
    except (PhyloHMMError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if per_column:
        for pos, score in enumerate(value):
            print(f"{pos}\t{score:.6f}")
    else:
        print(f"lnL = {value:.6f}")
