"""External prover supervision."""

from zkasp.prover.pipeline import ProofPipeline, ProofResult

__all__ = ["ProofPipeline", "ProofResult"]
