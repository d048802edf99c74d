"""Gap classification, prioritization and module scoring."""

from spec_compliance.classification.classifier import classify, prioritize
from spec_compliance.classification.scoring import compute_module_scores

__all__ = ["classify", "compute_module_scores", "prioritize"]
