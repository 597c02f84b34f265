"""Local retrieval-augmented question answering over a source workspace."""

__version__ = "0.1.0"
