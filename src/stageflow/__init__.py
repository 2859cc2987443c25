"""Stage-based job orchestration with sub-job decomposition and auto-repair."""

__version__ = "0.1.0"
