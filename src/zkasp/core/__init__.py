"""Core ledger, tree and orchestration logic."""
