# apps/analysis/services/cloud_quality.py

import logging

from django.conf import settings

logger = logging.getLogger(__name__)


class CloudQualityCurve:
    """
    Maps scene cloud cover to an imagery quality score in [0, 1]

    score = max(0, 1 - cloud / ceiling) ** exponent, rounded to 3 places.
    Cloud cover at or above the ceiling scores 0.
    """

    DEFAULT_CEILING = 100.0
    DEFAULT_EXPONENT = 1.0

    def __init__(self, ceiling=DEFAULT_CEILING, exponent=DEFAULT_EXPONENT):
        if ceiling <= 0:
            raise ValueError("Cloud quality ceiling must be positive")
        if exponent <= 0:
            raise ValueError("Cloud quality exponent must be positive")
        self.ceiling = float(ceiling)
        self.exponent = float(exponent)

    @classmethod
    def from_settings(cls):
        """Build the curve from the ANALYSIS_QUALITY_CURVE setting"""
        config = getattr(settings, 'ANALYSIS_QUALITY_CURVE', None) or {}
        return cls(
            ceiling=config.get('ceiling', cls.DEFAULT_CEILING),
            exponent=config.get('exponent', cls.DEFAULT_EXPONENT),
        )

    def score(self, cloud_percentage):
        clear_fraction = max(0.0, 1.0 - float(cloud_percentage) / self.ceiling)
        return round(clear_fraction ** self.exponent, 3)

    def classify(self, cloud_percentage):
        """
        Describe the scene cloud cover

        Returns:
            dict: category, quality score and whether optical data is usable
        """
        if cloud_percentage < 10:
            category = 'clear'
        elif cloud_percentage < 30:
            category = 'partly_cloudy'
        elif cloud_percentage < 70:
            category = 'mostly_cloudy'
        elif cloud_percentage < 90:
            category = 'overcast'
        else:
            category = 'completely_overcast'

        return {
            'category': category,
            'cloud_percentage': cloud_percentage,
            'quality_score': self.score(cloud_percentage),
            'optical_reliable': cloud_percentage < 30,
        }
