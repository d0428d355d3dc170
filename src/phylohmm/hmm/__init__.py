"""Discrete-state hidden Markov models."""

from phylohmm.hmm.hmm import HMM

__all__ = ["HMM"]
