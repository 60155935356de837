# apps/analysis/services/imagery_providers.py

import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Optional

import ee
from django.conf import settings
from django.utils.module_loading import import_string

from core.exceptions import ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderResult:
    """Field-mean spectral indices returned by an imagery provider"""

    ndvi: float
    msavi2: float
    ndre: float
    ndmi: float
    rvi: float
    cloud_cover_percent: float
    soc_vis: Optional[float] = None
    acquisition_date: Optional[str] = None
    source: str = ''

    def as_dict(self):
        return asdict(self)


class ImageryProvider:
    """
    Interface for satellite index providers

    fetch_indices() receives the boundary ring as [[lng, lat], ...] and must
    either return a ProviderResult or raise ProviderError.
    """

    name = 'provider'

    def fetch_indices(self, ring, crop_type, analysis_date):
        raise NotImplementedError


class StaticImageryProvider(ImageryProvider):
    """
    Deterministic provider returning fixed indices

    Used in tests and local development. delay_seconds simulates a slow
    upstream and error makes every call fail.
    """

    name = 'static'

    DEFAULTS = {
        'ndvi': 0.65,
        'msavi2': 0.58,
        'ndre': 0.41,
        'ndmi': 0.32,
        'rvi': 1.8,
        'cloud_cover_percent': 8.0,
        'soc_vis': 0.27,
    }

    def __init__(self, delay_seconds=0, error=None, **values):
        unknown = set(values) - set(self.DEFAULTS)
        if unknown:
            raise TypeError(f"Unknown index values: {', '.join(sorted(unknown))}")
        self.values = {**self.DEFAULTS, **values}
        self.delay_seconds = delay_seconds
        self.error = error
        self.calls = []
        self._calls_lock = threading.Lock()

    def fetch_indices(self, ring, crop_type, analysis_date):
        with self._calls_lock:
            self.calls.append((tuple(map(tuple, ring)), crop_type, analysis_date))

        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error

        return ProviderResult(
            acquisition_date=analysis_date.isoformat(),
            source=self.name,
            **self.values,
        )


class EarthEngineImageryProvider(ImageryProvider):
    """
    Sentinel-2 optical and Sentinel-1 SAR indices from Google Earth Engine

    Earth Engine is initialised lazily on the first request, with the
    service account configured in GEE_SERVICE_ACCOUNT / GEE_PRIVATE_KEY.
    """

    name = 'earth_engine'

    OPTICAL_COLLECTION = 'COPERNICUS/S2_SR_HARMONIZED'
    SAR_COLLECTION = 'COPERNICUS/S1_GRD'
    OPTICAL_WINDOW_DAYS = 30
    SAR_WINDOW_DAYS = 12
    MAX_CLOUD_PERCENTAGE = 60
    SCALE_METERS = 10
    REFLECTANCE_SCALE = 0.0001

    _initialized = False
    _init_lock = threading.Lock()

    def __init__(self, service_account=None, private_key=None):
        self.service_account = service_account or getattr(settings, 'GEE_SERVICE_ACCOUNT', None)
        self.private_key = private_key or getattr(settings, 'GEE_PRIVATE_KEY', None)

    def _initialize(self):
        with self._init_lock:
            if EarthEngineImageryProvider._initialized:
                return
            if not self.service_account or not self.private_key:
                raise ProviderError("Earth Engine credentials are not configured")
            try:
                credentials = ee.ServiceAccountCredentials(
                    email=self.service_account,
                    key_file=self.private_key
                )
                ee.Initialize(credentials)
            except (ee.EEException, OSError, ValueError) as e:
                logger.error(f"Failed to initialize Google Earth Engine: {str(e)}")
                raise ProviderError(f"Earth Engine initialisation failed: {e}") from e

            EarthEngineImageryProvider._initialized = True
            logger.info("Google Earth Engine initialized successfully")

    def fetch_indices(self, ring, crop_type, analysis_date):
        self._initialize()

        closed = [list(p) for p in ring]
        if closed[0] != closed[-1]:
            closed.append(list(closed[0]))
        geometry = ee.Geometry.Polygon([closed])

        try:
            optical = self._optical_indices(geometry, analysis_date)
            rvi = self._radar_vegetation_index(geometry, analysis_date)
        except ee.EEException as e:
            logger.error(f"Earth Engine request failed: {str(e)}")
            raise ProviderError(f"Earth Engine request failed: {e}") from e

        return ProviderResult(
            ndvi=optical['NDVI'],
            msavi2=optical['MSAVI2'],
            ndre=optical['NDRE'],
            ndmi=optical['NDMI'],
            soc_vis=optical.get('SOC_VIS'),
            rvi=rvi,
            cloud_cover_percent=optical['cloud_cover'],
            acquisition_date=optical['acquisition_date'],
            source=self.name,
        )

    def _date_range(self, analysis_date, window_days):
        end = analysis_date + timedelta(days=1)
        start = analysis_date - timedelta(days=window_days)
        return start.isoformat(), end.isoformat()

    def _optical_indices(self, geometry, analysis_date):
        start, end = self._date_range(analysis_date, self.OPTICAL_WINDOW_DAYS)

        collection = ee.ImageCollection(self.OPTICAL_COLLECTION) \
            .filterBounds(geometry) \
            .filterDate(start, end) \
            .filter(ee.Filter.lt('CLOUDY_PIXEL_PERCENTAGE', self.MAX_CLOUD_PERCENTAGE))

        if collection.size().getInfo() == 0:
            logger.warning(f"No Sentinel-2 images found between {start} and {end}")
            raise ProviderError(f"No Sentinel-2 imagery between {start} and {end}")

        # Least cloudy scene in the window
        image = collection.sort('CLOUDY_PIXEL_PERCENTAGE').first()
        reflectance = image.multiply(self.REFLECTANCE_SCALE)

        indices = ee.Image.cat([
            reflectance.normalizedDifference(['B8', 'B4']).rename('NDVI'),
            self._msavi2(reflectance),
            reflectance.normalizedDifference(['B8A', 'B5']).rename('NDRE'),
            reflectance.normalizedDifference(['B8', 'B11']).rename('NDMI'),
            self._soc_vis(reflectance),
        ])

        stats = indices.reduceRegion(
            reducer=ee.Reducer.mean(),
            geometry=geometry,
            scale=self.SCALE_METERS,
            maxPixels=1e9
        ).getInfo()

        if stats.get('NDVI') is None:
            raise ProviderError("Sentinel-2 scene has no valid pixels over the field")

        stats['cloud_cover'] = image.get('CLOUDY_PIXEL_PERCENTAGE').getInfo()
        stats['acquisition_date'] = ee.Date(image.get('system:time_start')).format('YYYY-MM-dd').getInfo()
        return stats

    def _msavi2(self, reflectance):
        """MSAVI2: (2*NIR + 1 - sqrt((2*NIR + 1)^2 - 8*(NIR - RED))) / 2"""
        return reflectance.expression(
            '(2 * NIR + 1 - sqrt(pow(2 * NIR + 1, 2) - 8 * (NIR - RED))) / 2',
            {
                'NIR': reflectance.select('B8'),
                'RED': reflectance.select('B4'),
            }
        ).rename('MSAVI2')

    def _soc_vis(self, reflectance):
        """Visible-band soil brightness, a proxy for soil organic carbon on bare soil"""
        return reflectance.expression(
            '(BLUE + GREEN + RED) / 3',
            {
                'BLUE': reflectance.select('B2'),
                'GREEN': reflectance.select('B3'),
                'RED': reflectance.select('B4'),
            }
        ).rename('SOC_VIS')

    def _radar_vegetation_index(self, geometry, analysis_date):
        """RVI = 4 * VH / (VV + VH) on linear backscatter"""
        start, end = self._date_range(analysis_date, self.SAR_WINDOW_DAYS)

        collection = ee.ImageCollection(self.SAR_COLLECTION) \
            .filterBounds(geometry) \
            .filterDate(start, end) \
            .filter(ee.Filter.eq('instrumentMode', 'IW')) \
            .filter(ee.Filter.listContains('transmitterReceiverPolarisation', 'VH')) \
            .filter(ee.Filter.listContains('transmitterReceiverPolarisation', 'VV'))

        if collection.size().getInfo() == 0:
            logger.warning(f"No Sentinel-1 images found between {start} and {end}")
            raise ProviderError(f"No Sentinel-1 imagery between {start} and {end}")

        image = collection.sort('system:time_start', False).first()

        # dB -> linear power
        linear = ee.Image(10).pow(image.select(['VV', 'VH']).divide(10))
        rvi = linear.expression(
            '4 * VH / (VV + VH)',
            {'VV': linear.select('VV'), 'VH': linear.select('VH')}
        ).rename('RVI')

        value = rvi.reduceRegion(
            reducer=ee.Reducer.mean(),
            geometry=geometry,
            scale=self.SCALE_METERS,
            maxPixels=1e9
        ).get('RVI').getInfo()

        if value is None:
            raise ProviderError("Sentinel-1 scene has no valid pixels over the field")
        return value


def get_imagery_provider():
    """Instantiate the provider named by the ANALYSIS_PROVIDER setting"""
    path = getattr(
        settings,
        'ANALYSIS_PROVIDER',
        'apps.analysis.services.imagery_providers.EarthEngineImageryProvider'
    )
    options = getattr(settings, 'ANALYSIS_PROVIDER_OPTIONS', None) or {}
    return import_string(path)(**options)
