# apps/analysis/services/recommendation_engine.py

import logging
from dataclasses import dataclass, field
from typing import Callable, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecommendationDraft:
    """An unsaved recommendation produced by a rule"""

    rule_code: str
    rank: int
    title: str
    description: str
    priority: str
    category: str
    action_items: Tuple[str, ...]
    estimated_cost: float
    timeline: str

    def as_dict(self):
        return {
            'rule_code': self.rule_code,
            'rank': self.rank,
            'title': self.title,
            'description': self.description,
            'priority': self.priority,
            'category': self.category,
            'action_items': list(self.action_items),
            'estimated_cost': self.estimated_cost,
            'timeline': self.timeline,
        }


@dataclass(frozen=True)
class RecommendationRule:
    """
    One recommendation rule

    condition(result, crop_type) decides whether the rule fires and
    priority(result) picks the priority when it does.
    """

    code: str
    title: str
    description: str
    category: str
    action_items: Tuple[str, ...]
    estimated_cost: float
    timeline: str
    condition: Callable = field(compare=False)
    priority: Callable = field(compare=False)

    def evaluate(self, result, crop_type, rank):
        if not self.condition(result, crop_type):
            return None
        return RecommendationDraft(
            rule_code=self.code,
            rank=rank,
            title=self.title,
            description=self.description,
            priority=self.priority(result),
            category=self.category,
            action_items=tuple(self.action_items),
            estimated_cost=self.estimated_cost,
            timeline=self.timeline,
        )


LOW_VEGETATION_RULE = RecommendationRule(
    code='low_vegetation_health',
    title='Low Vegetation Health Detected',
    description=(
        'NDVI values indicate poor crop health. '
        'Consider nutrient supplementation and pest inspection.'
    ),
    category='fertilizer',
    action_items=('Soil nutrient testing', 'Apply nitrogen-rich fertilizer', 'Check for pest damage'),
    estimated_cost=2500,
    timeline='1-2 weeks',
    condition=lambda result, crop_type: result.ndvi < 0.4,
    priority=lambda result: 'high',
)

WATER_STRESS_RULE = RecommendationRule(
    code='water_stress',
    title='Water Stress Management',
    description='Satellite data indicates water stress. Implement efficient irrigation strategies.',
    category='irrigation',
    action_items=('Check irrigation system', 'Implement drip irrigation', 'Monitor soil moisture'),
    estimated_cost=5000,
    timeline='Immediate',
    condition=lambda result, crop_type: result.water_stress_level in ('moderate', 'severe'),
    priority=lambda result: 'critical' if result.water_stress_level == 'severe' else 'high',
)

REPRODUCTIVE_STAGE_RULE = RecommendationRule(
    code='optimal_reproductive_stage',
    title='Optimal Reproductive Stage',
    description=(
        'Crop is in excellent condition during reproductive stage. '
        'Monitor for optimal harvest timing.'
    ),
    category='harvest',
    action_items=('Monitor grain filling', 'Plan harvest logistics', 'Arrange storage facilities'),
    estimated_cost=1000,
    timeline='2-4 weeks',
    condition=lambda result, crop_type: result.crop_stage == 'reproductive' and result.ndvi > 0.6,
    priority=lambda result: 'medium',
)

DEFAULT_RULES = (LOW_VEGETATION_RULE, WATER_STRESS_RULE, REPRODUCTIVE_STAGE_RULE)


class RecommendationEngine:
    """Evaluates every rule against an analysis result, in declaration order"""

    def __init__(self, rules=None):
        self.rules = tuple(DEFAULT_RULES if rules is None else rules)

    def evaluate(self, result, crop_type=None):
        """
        Args:
            result: AnalysisResult
            crop_type: Crop type (defaults to result.crop_type)

        Returns:
            list: RecommendationDraft objects for every rule that fired
        """
        crop_type = crop_type or result.crop_type
        drafts = []

        for rank, rule in enumerate(self.rules):
            draft = rule.evaluate(result, crop_type, rank)
            if draft is not None:
                drafts.append(draft)

        logger.debug(f"{len(drafts)} of {len(self.rules)} recommendation rules fired")
        return drafts
