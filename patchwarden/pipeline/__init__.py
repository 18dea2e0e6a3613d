"""End-to-end remediation pipeline."""

from patchwarden.pipeline.orchestrator import RemediationPipeline

__all__ = ["RemediationPipeline"]
