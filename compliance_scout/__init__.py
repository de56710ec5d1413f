"""Business compliance research pipeline."""
from compliance_scout.models import BusinessProfile, PipelineResult
from compliance_scout.pipeline import run_compliance_check

__all__ = ["BusinessProfile", "PipelineResult", "run_compliance_check"]
