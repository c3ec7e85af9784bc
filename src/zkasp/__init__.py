"""ASP backend for a shielded pool: commitment tree, proofs, relaying and chain sync."""

__version__ = "0.1.0"
__author__ = "ZK-ASP Team"
__description__ = "Association-set provider for shielded deposits, withdrawals and CLMM operations"

__all__ = ["__version__"]
