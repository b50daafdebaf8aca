"""
Casework - Classification Package

Self-improving category suggester for transaction descriptions.
"""

from classification.learner import RuleLearner, ClassificationRule, Suggestion, LearnResult

__all__ = ["RuleLearner", "ClassificationRule", "Suggestion", "LearnResult"]
