"""Retrieval-augmented generation engine: grounded, cited answers over a chunk store."""

__version__ = "0.1.0"
