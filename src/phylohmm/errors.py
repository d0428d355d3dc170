"""
Exception hierarchy for phylohmm.

All fatal conditions raised by the library derive from ``PhyloHMMError``,
which is itself a ``ValueError`` so callers that only guard against bad
input keep working. The CLI maps any of these to exit code 1.
"""


class PhyloHMMError(ValueError):
    """Base class for all phylohmm errors."""


class InputFormatError(PhyloHMMError):
    """Malformed file contents or an unrecognized model/format name."""


class PreconditionError(PhyloHMMError):
    """An operation was called on an object that lacks what it needs."""


class DimensionMismatchError(PhyloHMMError):
    """Sizes that must agree do not (states vs categories, rows, names)."""


class NumericDegeneracyError(PhyloHMMError):
    """Non-finite likelihood, singular eigenvectors, negative branch length."""


class CapacityError(PhyloHMMError):
    """Sufficient statistics would need to grow while splicing at an offset."""
