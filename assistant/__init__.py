"""Assistant backend: LLM chat with request dedup and a bounded response cache."""

from assistant.__version__ import __version__

__all__ = ["__version__"]
