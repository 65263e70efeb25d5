"""Hierarchical Bayesian analysis of mouse movement and self-reported stress."""

__version__ = "0.1.0"
