"""Top-level package for dictaid."""

__version__ = "0.1.0"

from . import config, dictionary, pipeline, storage, transcriber

__all__ = ["config", "dictionary", "pipeline", "storage", "transcriber", "__version__"]
