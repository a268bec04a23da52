"""genflow - orchestration core for externally executed generation jobs."""

__version__ = "0.1.0"
