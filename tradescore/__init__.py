"""Training, evaluation and model registry engine for trade-candidate scoring."""

__version__ = "0.1.0"

__all__ = ["__version__"]
