"""Chat-mediated micro-task marketplace: ledger, tasks, checks and verification."""

__version__ = "0.1.0"
