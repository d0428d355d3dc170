"""Decode and hmm-view command implementations."""

import sys
from pathlib import Path
from typing import Optional

from phylohmm import decode
from phylohmm.errors import PhyloHMMError
from phylohmm.hmm.hmm import HMM


def run_decode(
    hmm: Path,
    models: list[Path],
    alignment: Path,
    labels: Optional[list[str]],
    posteriors: bool,
    output: Optional[Path],
    format: str,
):
    """Viterbi-decode an alignment and report the segments."""
    try:
        result = decode(models, hmm, alignment, posteriors=posteriors, labels=labels)
    except (PhyloHMMError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if format == "json":
        output_text = result.to_json()
    else:
        lines = [result.summary(), "", "SEGMENTS:"]
        for start, end, label in result.segments():
            lines.append(f"{start}\t{end}\t{label}")
        if result.posteriors is not None:
            lines.append("")
            lines.append("POSTERIORS:")
            lines.append("pos\t" + "\t".join(result.labels))
            for pos in range(result.posteriors.shape[1]):
                probs = "\t".join(f"{p:.4f}" for p in result.posteriors[:, pos])
                lines.append(f"{pos}\t{probs}")
        output_text = "\n".join(lines)

    if output:
        with open(output, 'w') as f:
            f.write(output_text + "\n")
        print(f"Results written to {output}", file=sys.stderr)
    else:
        print(output_text)


def run_hmm_view(
    hmm: Path,
    labels: Optional[list[str]],
    nrates: int,
    show: Optional[list[str]],
    suppress_unconnected: bool,
):
    """Print an HMM as a Graphviz digraph."""
    try:
        model = HMM.from_file(hmm)
        dot = model.to_dot(labels=labels, nratecats=nrates, show=show,
                           suppress_unconnected=suppress_unconnected)
    except (PhyloHMMError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(dot, end="")
