# apps/analysis/services/vegetation_analyzer.py

import json
import logging
import math
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import asdict, dataclass
from typing import Optional

from django.conf import settings

from apps.fields.models import CROP_TYPE_CHOICES
from core.exceptions import (
    FieldPulseError,
    IncompleteBoundary,
    ProviderError,
    ProviderTimeout,
    UnsupportedCropType,
)
from .cloud_quality import CloudQualityCurve
from .crop_calendar import CropCalendar

logger = logging.getLogger(__name__)


CROP_TYPES = frozenset(code for code, _ in CROP_TYPE_CHOICES)
NORMALIZED_INDICES = ('ndvi', 'msavi2', 'ndre', 'ndmi')
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 60


@dataclass(frozen=True)
class AnalysisResult:
    """Classified vegetation indices for one field on one date"""

    crop_type: str
    analysis_date: str
    ndvi: float
    msavi2: float
    ndre: float
    ndmi: float
    soc_vis: Optional[float]
    rvi: float
    cloud_cover_percent: float
    crop_stage: str
    health_status: str
    water_stress_level: str
    quality_score: float

    def as_dict(self):
        return asdict(self)

    def to_json(self):
        return json.dumps(self.as_dict(), sort_keys=True, separators=(',', ':'))


@dataclass(frozen=True)
class AnalysisOutcome:
    """What run() produced: a result, or the error that prevented one"""

    result: Optional[AnalysisResult] = None
    error: Optional[FieldPulseError] = None
    provider_data: Optional[dict] = None

    @property
    def success(self):
        return self.error is None


def classify_health(ndvi):
    if ndvi > 0.7:
        return 'excellent'
    if ndvi > 0.5:
        return 'good'
    if ndvi > 0.3:
        return 'fair'
    return 'poor'


def classify_water_stress(ndvi):
    if ndvi > 0.6:
        return 'none'
    if ndvi > 0.4:
        return 'mild'
    if ndvi > 0.2:
        return 'moderate'
    return 'severe'


def json_safe(data):
    """Replace NaN and infinite floats, which JSON columns reject, with None"""
    return {
        key: None if isinstance(value, float) and not math.isfinite(value) else value
        for key, value in data.items()
    }


def boundary_ring(boundary):
    """
    Open ring of [lng, lat] pairs from a FinalizedBoundary, a GeoJSON
    Polygon or a plain coordinate list

    Raises:
        IncompleteBoundary: Fewer than 3 distinct vertices
    """
    if boundary is None:
        raise IncompleteBoundary("A boundary is required for analysis")

    if hasattr(boundary, 'ring'):
        ring = boundary.ring()
    elif isinstance(boundary, dict):
        ring = [list(p) for p in boundary.get('coordinates', [[]])[0]]
    else:
        ring = [list(p) for p in boundary]

    if len(ring) > 1 and ring[0] == ring[-1]:
        ring = ring[:-1]

    if len(ring) < 3:
        raise IncompleteBoundary(
            f"At least 3 points required to analyse a boundary (have {len(ring)})"
        )
    return ring


class VegetationIndexAnalyzer:
    """
    Turns provider indices into a classified AnalysisResult

    analyze() is pure; run() adds the bounded provider call.
    """

    def __init__(self, calendar=None, quality_curve=None):
        self.calendar = calendar or CropCalendar()
        self.quality_curve = quality_curve or CloudQualityCurve.from_settings()

    def validate_provider_result(self, provider_result):
        """
        Reject NaN or out of range values instead of clamping them

        Raises:
            ProviderError
        """
        for name in NORMALIZED_INDICES:
            value = getattr(provider_result, name)
            if value is None or not isinstance(value, (int, float)) or math.isnan(value):
                raise ProviderError(f"Provider returned no usable {name.upper()} value")
            if not -1 <= value <= 1:
                raise ProviderError(f"{name.upper()} out of range [-1, 1]: {value}")

        if provider_result.rvi is None or not math.isfinite(provider_result.rvi):
            raise ProviderError("Provider returned no usable RVI value")

        cloud = provider_result.cloud_cover_percent
        if cloud is None or math.isnan(cloud) or not 0 <= cloud <= 100:
            raise ProviderError(f"Cloud cover out of range [0, 100]: {cloud}")

        soc_vis = provider_result.soc_vis
        if soc_vis is not None and not math.isfinite(soc_vis):
            raise ProviderError("Provider returned a non-finite SOC_VIS value")

    def analyze(self, boundary, crop_type, analysis_date, provider_result):
        """
        Classify provider indices for a boundary

        Args:
            boundary: FinalizedBoundary, GeoJSON Polygon or ring
            crop_type: One of the supported crop types
            analysis_date: datetime.date of the analysis
            provider_result: ProviderResult

        Returns:
            AnalysisResult
        """
        boundary_ring(boundary)
        if crop_type not in CROP_TYPES:
            raise UnsupportedCropType(f"Unsupported crop type: {crop_type}")
        self.validate_provider_result(provider_result)

        ndvi = float(provider_result.ndvi)
        crop_stage = self.calendar.stage_for(crop_type, analysis_date)

        soc_vis = None
        if provider_result.soc_vis is not None and self.calendar.is_bare_soil(crop_stage):
            soc_vis = float(provider_result.soc_vis)

        return AnalysisResult(
            crop_type=crop_type,
            analysis_date=analysis_date.isoformat(),
            ndvi=ndvi,
            msavi2=float(provider_result.msavi2),
            ndre=float(provider_result.ndre),
            ndmi=float(provider_result.ndmi),
            soc_vis=soc_vis,
            rvi=float(provider_result.rvi),
            cloud_cover_percent=float(provider_result.cloud_cover_percent),
            crop_stage=crop_stage,
            health_status=classify_health(ndvi),
            water_stress_level=classify_water_stress(ndvi),
            quality_score=self.quality_curve.score(provider_result.cloud_cover_percent),
        )

    def run(self, boundary, crop_type, analysis_date, provider, timeout_seconds=None):
        """
        Call the provider with a bounded timeout, then classify

        Provider failures come back inside the outcome; nothing is
        partially classified.

        Returns:
            AnalysisOutcome
        """
        if timeout_seconds is None:
            timeout_seconds = getattr(
                settings, 'ANALYSIS_PROVIDER_TIMEOUT_SECONDS', DEFAULT_PROVIDER_TIMEOUT_SECONDS
            )

        ring = boundary_ring(boundary)
        provider_name = getattr(provider, 'name', provider.__class__.__name__)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='imagery-provider')
        try:
            future = executor.submit(provider.fetch_indices, ring, crop_type, analysis_date)
            provider_result = future.result(timeout=timeout_seconds)
        except FuturesTimeout:
            logger.error(f"Provider {provider_name} timed out after {timeout_seconds}s")
            return AnalysisOutcome(error=ProviderTimeout(
                f"Imagery provider did not respond within {timeout_seconds} seconds"
            ))
        except ProviderError as e:
            logger.error(f"Provider {provider_name} failed: {e.message}")
            return AnalysisOutcome(error=e)
        except Exception as e:
            logger.exception(f"Provider {provider_name} raised an unexpected error")
            return AnalysisOutcome(error=ProviderError(f"{e.__class__.__name__}: {e}"))
        finally:
            # A timed-out call keeps running in its worker; do not wait for it
            executor.shutdown(wait=False)

        try:
            result = self.analyze(boundary, crop_type, analysis_date, provider_result)
        except FieldPulseError as e:
            logger.error(f"Could not classify indices from {provider_name}: {e.message}")
            return AnalysisOutcome(error=e, provider_data=json_safe(provider_result.as_dict()))

        return AnalysisOutcome(result=result, provider_data=json_safe(provider_result.as_dict()))
