# apps/analysis/services/__init__.py

from .imagery_providers import (
    ImageryProvider,
    ProviderResult,
    StaticImageryProvider,
    EarthEngineImageryProvider,
    get_imagery_provider,
)
from .vegetation_analyzer import AnalysisOutcome, AnalysisResult, VegetationIndexAnalyzer
from .crop_calendar import CropCalendar
from .cloud_quality import CloudQualityCurve
from .recommendation_engine import RecommendationEngine, RecommendationRule, RecommendationDraft

__all__ = [
    'ImageryProvider',
    'ProviderResult',
    'StaticImageryProvider',
    'EarthEngineImageryProvider',
    'get_imagery_provider',
    'AnalysisOutcome',
    'AnalysisResult',
    'VegetationIndexAnalyzer',
    'CropCalendar',
    'CloudQualityCurve',
    'RecommendationEngine',
    'RecommendationRule',
    'RecommendationDraft',
]
