# apps/analysis/tests.py

import json
import uuid
from datetime import date, timedelta
from unittest.mock import patch

from django.contrib.auth.models import User
from django.db import DatabaseError, IntegrityError, transaction
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from kombu.exceptions import OperationalError
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from apps.fields.models import Field
from apps.fields.services.boundary_service import BoundaryService
from apps.fields.services.lifecycle import FieldLifecycleController
from core.exceptions import (
    AnalysisError,
    IncompleteBoundary,
    PersistenceError,
    ProviderError,
    ProviderTimeout,
    UnsupportedCropType,
)
from .models import AnalysisRecord, Recommendation
from .services.cloud_quality import CloudQualityCurve
from .services.crop_calendar import CropCalendar, StageWindow
from .services.imagery_providers import (
    EarthEngineImageryProvider,
    ProviderResult,
    StaticImageryProvider,
    get_imagery_provider,
)
from .services.recommendation_engine import RecommendationEngine
from .services.vegetation_analyzer import (
    VegetationIndexAnalyzer,
    classify_health,
    classify_water_stress,
)
from .tasks import expire_stale_analyses, request_bulk_analyses, run_field_analysis


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------
# Roughly a 100 m square near Patna
SQUARE_RING = [
    [85.1000, 25.6000],
    [85.1010, 25.6000],
    [85.1010, 25.6009],
    [85.1000, 25.6009],
    [85.1000, 25.6000],
]

VEGETATIVE_DATE = date(2024, 1, 15)      # wheat: vegetative
REPRODUCTIVE_DATE = date(2024, 3, 10)    # wheat: reproductive
SOWING_DATE = date(2023, 11, 20)         # wheat: sowing
FALLOW_DATE = date(2024, 5, 5)           # wheat: fallow


def square_boundary(offset=0.0):
    ring = [[lng + offset, lat] for lng, lat in SQUARE_RING]
    return BoundaryService.boundary_from_geojson({'type': 'Polygon', 'coordinates': [ring]})


def provider_result(**overrides):
    values = {
        'ndvi': 0.65,
        'msavi2': 0.58,
        'ndre': 0.41,
        'ndmi': 0.32,
        'rvi': 1.8,
        'cloud_cover_percent': 8.0,
        'soc_vis': 0.27,
    }
    values.update(overrides)
    return ProviderResult(**values)


class BaseAnalysisTestCase(TestCase):
    """Creates a mapped wheat field used by most test classes."""

    def _create_base_fixtures(self, crop_type='wheat'):
        self.boundary = square_boundary()
        self.field = FieldLifecycleController().create_field(
            self.boundary,
            {'name': 'Test plot', 'crop_type': crop_type}
        ).value

    def controller(self, timeout_seconds=None, **values):
        delay = values.pop('delay_seconds', 0)
        error = values.pop('error', None)
        return FieldLifecycleController(
            provider=StaticImageryProvider(delay_seconds=delay, error=error, **values),
            timeout_seconds=timeout_seconds,
        )


# ===========================================================================
# CLASSIFICATION TESTS
# ===========================================================================

class ClassificationTestCase(SimpleTestCase):
    """NDVI thresholds are exclusive lower bounds"""

    def test_health_thresholds(self):
        self.assertEqual(classify_health(0.71), 'excellent')
        self.assertEqual(classify_health(0.7), 'good')
        self.assertEqual(classify_health(0.51), 'good')
        self.assertEqual(classify_health(0.5), 'fair')
        self.assertEqual(classify_health(0.31), 'fair')
        self.assertEqual(classify_health(0.3), 'poor')
        self.assertEqual(classify_health(-0.2), 'poor')

    def test_water_stress_thresholds(self):
        self.assertEqual(classify_water_stress(0.61), 'none')
        self.assertEqual(classify_water_stress(0.6), 'mild')
        self.assertEqual(classify_water_stress(0.41), 'mild')
        self.assertEqual(classify_water_stress(0.4), 'moderate')
        self.assertEqual(classify_water_stress(0.21), 'moderate')
        self.assertEqual(classify_water_stress(0.2), 'severe')


class CloudQualityTestCase(SimpleTestCase):

    def test_linear_curve(self):
        curve = CloudQualityCurve()

        self.assertEqual(curve.score(0), 1.0)
        self.assertEqual(curve.score(5), 0.95)
        self.assertEqual(curve.score(100), 0.0)

    def test_custom_curve(self):
        curve = CloudQualityCurve(ceiling=50, exponent=2)

        self.assertEqual(curve.score(25), 0.25)
        self.assertEqual(curve.score(80), 0.0)

    @override_settings(ANALYSIS_QUALITY_CURVE={'ceiling': 80, 'exponent': 1})
    def test_curve_from_settings(self):
        self.assertEqual(CloudQualityCurve.from_settings().score(40), 0.5)

    def test_invalid_curve(self):
        with self.assertRaises(ValueError):
            CloudQualityCurve(ceiling=0)

    def test_classify(self):
        classification = CloudQualityCurve().classify(45)

        self.assertEqual(classification['category'], 'mostly_cloudy')
        self.assertFalse(classification['optical_reliable'])
        self.assertEqual(classification['quality_score'], 0.55)


class CropCalendarTestCase(SimpleTestCase):

    def test_wheat_season(self):
        calendar = CropCalendar()

        self.assertEqual(calendar.stage_for('wheat', SOWING_DATE), 'sowing')
        self.assertEqual(calendar.stage_for('wheat', date(2023, 12, 1)), 'vegetative')
        self.assertEqual(calendar.stage_for('wheat', date(2024, 2, 28)), 'vegetative')
        self.assertEqual(calendar.stage_for('wheat', REPRODUCTIVE_DATE), 'reproductive')
        self.assertEqual(calendar.stage_for('wheat', date(2024, 4, 1)), 'maturity')
        self.assertEqual(calendar.stage_for('wheat', FALLOW_DATE), 'fallow')

    def test_kharif_crops(self):
        calendar = CropCalendar()

        for crop in ('rice', 'maize', 'soybean'):
            self.assertEqual(calendar.stage_for(crop, date(2024, 6, 15)), 'sowing')
            self.assertEqual(calendar.stage_for(crop, date(2024, 9, 15)), 'reproductive')

    def test_uncovered_month_defaults(self):
        calendar = CropCalendar()

        self.assertEqual(calendar.stage_for('tomato', REPRODUCTIVE_DATE), 'vegetative')
        self.assertEqual(calendar.stage_for('rice', date(2024, 1, 10)), 'vegetative')

    def test_injected_windows(self):
        calendar = CropCalendar(windows={'wheat': (StageWindow(1, 12, 'maturity'),)}, default_stage='fallow')

        self.assertEqual(calendar.stage_for('wheat', VEGETATIVE_DATE), 'maturity')
        self.assertEqual(calendar.stage_for('rice', VEGETATIVE_DATE), 'fallow')


# ===========================================================================
# ANALYZER TESTS
# ===========================================================================

class VegetationIndexAnalyzerTestCase(SimpleTestCase):
    """Classification of provider indices"""

    def setUp(self):
        self.analyzer = VegetationIndexAnalyzer(quality_curve=CloudQualityCurve())
        self.engine = RecommendationEngine()

    def test_healthy_field(self):
        """NDVI 0.8 under 5% cloud: excellent, no stress, no recommendations"""
        result = self.analyzer.analyze(
            SQUARE_RING, 'wheat', VEGETATIVE_DATE,
            provider_result(ndvi=0.8, cloud_cover_percent=5)
        )

        self.assertEqual(result.health_status, 'excellent')
        self.assertEqual(result.water_stress_level, 'none')
        self.assertEqual(result.quality_score, 0.95)
        self.assertEqual(result.crop_stage, 'vegetative')
        self.assertEqual(self.engine.evaluate(result), [])

    def test_stressed_field(self):
        """NDVI 0.25: poor health, moderate stress, two high priority actions"""
        result = self.analyzer.analyze(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider_result(ndvi=0.25))

        self.assertEqual(result.health_status, 'poor')
        self.assertEqual(result.water_stress_level, 'moderate')

        drafts = self.engine.evaluate(result)
        self.assertEqual([d.rule_code for d in drafts], ['low_vegetation_health', 'water_stress'])
        self.assertEqual([d.priority for d in drafts], ['high', 'high'])
        self.assertEqual(drafts[0].category, 'fertilizer')
        self.assertEqual(drafts[1].estimated_cost, 5000)

    def test_severe_stress_is_critical(self):
        result = self.analyzer.analyze(SQUARE_RING, 'rice', VEGETATIVE_DATE, provider_result(ndvi=0.15))

        drafts = self.engine.evaluate(result)
        water = [d for d in drafts if d.rule_code == 'water_stress'][0]
        self.assertEqual(result.water_stress_level, 'severe')
        self.assertEqual(water.priority, 'critical')

    def test_reproductive_stage_recommendation(self):
        result = self.analyzer.analyze(SQUARE_RING, 'wheat', REPRODUCTIVE_DATE, provider_result(ndvi=0.65))

        drafts = self.engine.evaluate(result)
        self.assertEqual(result.crop_stage, 'reproductive')
        self.assertEqual(len(drafts), 1)
        self.assertEqual(drafts[0].rule_code, 'optimal_reproductive_stage')
        self.assertEqual(drafts[0].priority, 'medium')
        self.assertEqual(drafts[0].category, 'harvest')

    def test_thresholds_use_unrounded_ndvi(self):
        """Values just past a bound classify by the provider value, not a rounded copy"""
        result = self.analyzer.analyze(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider_result(ndvi=0.70000001))
        self.assertEqual(result.health_status, 'excellent')
        self.assertEqual(result.ndvi, 0.70000001)

        result = self.analyzer.analyze(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider_result(ndvi=0.7))
        self.assertEqual(result.health_status, 'good')

        result = self.analyzer.analyze(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider_result(ndvi=0.3996))
        self.assertEqual(result.health_status, 'fair')
        self.assertIn('low_vegetation_health', [d.rule_code for d in self.engine.evaluate(result)])

    def test_reproductive_rule_just_above_bound(self):
        result = self.analyzer.analyze(
            SQUARE_RING, 'wheat', REPRODUCTIVE_DATE, provider_result(ndvi=0.60000001)
        )

        self.assertEqual(result.water_stress_level, 'none')
        self.assertEqual(
            [d.rule_code for d in self.engine.evaluate(result)],
            ['optimal_reproductive_stage']
        )

    def test_soil_carbon_only_on_bare_soil(self):
        for when in (SOWING_DATE, FALLOW_DATE):
            result = self.analyzer.analyze(SQUARE_RING, 'wheat', when, provider_result())
            self.assertEqual(result.soc_vis, 0.27)

        result = self.analyzer.analyze(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider_result())
        self.assertIsNone(result.soc_vis)

    def test_result_json_is_reproducible(self):
        first = self.analyzer.analyze(SQUARE_RING, 'maize', VEGETATIVE_DATE, provider_result())
        second = self.analyzer.analyze(SQUARE_RING, 'maize', VEGETATIVE_DATE, provider_result())

        self.assertEqual(first.to_json(), second.to_json())
        decoded = json.loads(first.to_json())
        self.assertEqual(list(decoded), sorted(decoded))
        self.assertEqual(decoded['analysis_date'], '2024-01-15')

    def test_rejects_nan(self):
        with self.assertRaises(ProviderError):
            self.analyzer.analyze(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider_result(ndvi=float('nan')))
        with self.assertRaises(ProviderError):
            self.analyzer.analyze(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider_result(rvi=float('inf')))

    def test_rejects_out_of_range(self):
        with self.assertRaises(ProviderError):
            self.analyzer.analyze(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider_result(ndvi=1.4))
        with self.assertRaises(ProviderError):
            self.analyzer.analyze(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider_result(ndmi=-1.2))
        with self.assertRaises(ProviderError):
            self.analyzer.analyze(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider_result(cloud_cover_percent=120))

    def test_rejects_unknown_crop(self):
        with self.assertRaises(UnsupportedCropType):
            self.analyzer.analyze(SQUARE_RING, 'barley', VEGETATIVE_DATE, provider_result())

    def test_rejects_incomplete_boundary(self):
        with self.assertRaises(IncompleteBoundary):
            self.analyzer.analyze(SQUARE_RING[:2], 'wheat', VEGETATIVE_DATE, provider_result())
        with self.assertRaises(IncompleteBoundary):
            self.analyzer.analyze(None, 'wheat', VEGETATIVE_DATE, provider_result())

    def test_run_passes_open_ring_to_provider(self):
        provider = StaticImageryProvider()

        outcome = self.analyzer.run(square_boundary(), 'wheat', VEGETATIVE_DATE, provider)

        self.assertTrue(outcome.success)
        ring, crop_type, when = provider.calls[0]
        self.assertEqual(len(ring), 4)
        self.assertEqual((crop_type, when), ('wheat', VEGETATIVE_DATE))
        self.assertEqual(outcome.provider_data['source'], 'static')

    def test_run_times_out(self):
        provider = StaticImageryProvider(delay_seconds=1)

        outcome = self.analyzer.run(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider, timeout_seconds=0.1)

        self.assertFalse(outcome.success)
        self.assertIsInstance(outcome.error, ProviderTimeout)
        self.assertIsNone(outcome.result)

    def test_run_provider_error(self):
        provider = StaticImageryProvider(error=ProviderError('No Sentinel-2 imagery'))

        outcome = self.analyzer.run(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider)

        self.assertEqual(outcome.error.message, 'No Sentinel-2 imagery')

    def test_run_unexpected_error(self):
        provider = StaticImageryProvider(error=RuntimeError('connection reset'))

        outcome = self.analyzer.run(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider)

        self.assertIsInstance(outcome.error, ProviderError)
        self.assertIn('connection reset', outcome.error.message)

    def test_run_invalid_values_keep_provider_data(self):
        provider = StaticImageryProvider(ndvi=float('nan'))

        outcome = self.analyzer.run(SQUARE_RING, 'wheat', VEGETATIVE_DATE, provider)

        self.assertFalse(outcome.success)
        self.assertIsNone(outcome.provider_data['ndvi'])
        self.assertEqual(outcome.provider_data['rvi'], 1.8)


# ===========================================================================
# PROVIDER TESTS
# ===========================================================================

class ImageryProviderTestCase(SimpleTestCase):

    def test_static_provider_rejects_unknown_values(self):
        with self.assertRaises(TypeError):
            StaticImageryProvider(evi=0.4)

    @override_settings(
        ANALYSIS_PROVIDER='apps.analysis.services.imagery_providers.StaticImageryProvider',
        ANALYSIS_PROVIDER_OPTIONS={'ndvi': 0.33},
    )
    def test_provider_from_settings(self):
        provider = get_imagery_provider()

        self.assertIsInstance(provider, StaticImageryProvider)
        self.assertEqual(provider.values['ndvi'], 0.33)

    def test_earth_engine_without_credentials(self):
        provider = EarthEngineImageryProvider(service_account=None, private_key=None)

        with self.assertRaises(ProviderError):
            provider.fetch_indices(SQUARE_RING[:-1], 'wheat', VEGETATIVE_DATE)

    @patch('apps.analysis.services.imagery_providers.ee.Geometry')
    @patch.object(EarthEngineImageryProvider, '_initialized', True)
    def test_earth_engine_maps_indices(self, mock_geometry):
        provider = EarthEngineImageryProvider()
        optical = {
            'NDVI': 0.61, 'MSAVI2': 0.52, 'NDRE': 0.38, 'NDMI': 0.21, 'SOC_VIS': 0.19,
            'cloud_cover': 12.5, 'acquisition_date': '2024-01-12',
        }

        with patch.object(provider, '_optical_indices', return_value=optical), \
                patch.object(provider, '_radar_vegetation_index', return_value=1.35):
            result = provider.fetch_indices(SQUARE_RING[:-1], 'wheat', VEGETATIVE_DATE)

        self.assertEqual(result.ndvi, 0.61)
        self.assertEqual(result.rvi, 1.35)
        self.assertEqual(result.cloud_cover_percent, 12.5)
        self.assertEqual(result.source, 'earth_engine')

        # The ring is closed before it is handed to Earth Engine
        ring = mock_geometry.Polygon.call_args[0][0][0]
        self.assertEqual(ring[0], ring[-1])

    @patch('apps.analysis.services.imagery_providers.ee.Geometry')
    @patch.object(EarthEngineImageryProvider, '_initialized', True)
    def test_earth_engine_errors_become_provider_errors(self, mock_geometry):
        import ee

        provider = EarthEngineImageryProvider()

        with patch.object(provider, '_optical_indices', side_effect=ee.EEException('Computation timed out')):
            with self.assertRaises(ProviderError):
                provider.fetch_indices(SQUARE_RING[:-1], 'wheat', VEGETATIVE_DATE)


# ===========================================================================
# LIFECYCLE TESTS
# ===========================================================================

class AnalysisLifecycleTestCase(BaseAnalysisTestCase):
    """Requesting and resolving analyses through the lifecycle controller"""

    def setUp(self):
        self._create_base_fixtures()

    def test_synchronous_analysis(self):
        result = self.controller(ndvi=0.8, cloud_cover_percent=5).request_analysis(
            self.field, analysis_date=VEGETATIVE_DATE, run_async=False
        )

        self.assertTrue(result.success)
        self.assertTrue(result.created)
        record = result.value
        self.assertEqual(record.status, AnalysisRecord.STATUS_COMPLETED)
        self.assertEqual(record.health_status, 'excellent')
        self.assertEqual(record.water_stress_level, 'none')
        self.assertEqual(record.quality_score, 0.95)
        self.assertEqual(record.provider_name, 'static')
        self.assertEqual(record.boundary_version, 1)
        self.assertIsNotNone(record.completed_at)
        self.assertEqual(record.recommendations.count(), 0)

        self.field.refresh_from_db()
        self.assertEqual(self.field.state, Field.STATE_ANALYZED)

    def test_stored_classification_matches_provider_value(self):
        record = self.controller(ndvi=0.70000001).request_analysis(
            self.field, analysis_date=VEGETATIVE_DATE, run_async=False
        ).value
        self.assertEqual(record.health_status, 'excellent')

        record = self.controller(ndvi=0.3996).request_analysis(
            self.field, analysis_date=REPRODUCTIVE_DATE, run_async=False
        ).value
        self.assertIn('low_vegetation_health', list(record.recommendations.values_list('rule_code', flat=True)))

    def test_unsupported_crop_rejected_before_record(self):
        result = self.controller().request_analysis(
            self.field, crop_type='barley', analysis_date=VEGETATIVE_DATE, run_async=False
        )

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, UnsupportedCropType)
        self.assertFalse(AnalysisRecord.objects.filter(field=self.field).exists())

    def test_unexpected_error_fails_record(self):
        """A crash during classification never strands a pending record"""
        with patch.object(RecommendationEngine, 'evaluate', side_effect=RuntimeError('boom')):
            result = self.controller().request_analysis(
                self.field, analysis_date=VEGETATIVE_DATE, run_async=False
            )

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, AnalysisError)
        self.assertEqual(result.value.status, AnalysisRecord.STATUS_FAILED)
        self.assertEqual(result.value.error_type, 'analysis_error')
        self.assertIn('boom', result.value.error_message)

        retry = self.controller().request_analysis(self.field, analysis_date=VEGETATIVE_DATE, run_async=False)
        self.assertTrue(retry.success)
        self.assertTrue(retry.created)

    def test_recommendations_stored_in_rule_order(self):
        record = self.controller(ndvi=0.25).request_analysis(
            self.field, analysis_date=VEGETATIVE_DATE, run_async=False
        ).value

        recommendations = list(record.recommendations.order_by('rank'))
        self.assertEqual(
            [r.rule_code for r in recommendations],
            ['low_vegetation_health', 'water_stress']
        )
        self.assertEqual(recommendations[0].action_items[0], 'Soil nutrient testing')
        self.assertEqual(recommendations[1].field, self.field)
        self.assertFalse(recommendations[0].implemented)

    def test_asynchronous_analysis(self):
        """The queued task resolves the record with the configured provider"""
        result = FieldLifecycleController().request_analysis(self.field, analysis_date=VEGETATIVE_DATE)

        self.assertTrue(result.success)
        self.assertTrue(result.created)
        self.assertEqual(result.value.status, AnalysisRecord.STATUS_COMPLETED)
        self.assertEqual(result.value.ndvi, 0.65)
        self.assertEqual(result.value.health_status, 'good')

    def test_repeat_request_returns_existing(self):
        controller = self.controller()
        first = controller.request_analysis(self.field, analysis_date=VEGETATIVE_DATE, run_async=False)

        second = controller.request_analysis(self.field, analysis_date=VEGETATIVE_DATE, run_async=False)

        self.assertTrue(second.success)
        self.assertFalse(second.created)
        self.assertEqual(second.value.pk, first.value.pk)
        self.assertEqual(AnalysisRecord.objects.filter(field=self.field).count(), 1)
        self.assertEqual(len(controller.provider.calls), 1)

    def test_pending_request_returned(self):
        pending = AnalysisRecord.objects.create(
            field=self.field,
            analysis_date=VEGETATIVE_DATE,
            crop_type='wheat',
            boundary_geojson=self.field.boundary_geojson,
        )

        result = self.controller().request_analysis(self.field, analysis_date=VEGETATIVE_DATE, run_async=False)

        self.assertFalse(result.created)
        self.assertEqual(result.value.pk, pending.pk)
        self.assertEqual(result.value.status, AnalysisRecord.STATUS_PENDING)

    def test_provider_timeout(self):
        """A slow provider fails the record and leaves the field untouched"""
        result = self.controller(timeout_seconds=0.1, delay_seconds=1).request_analysis(
            self.field, analysis_date=VEGETATIVE_DATE, run_async=False
        )

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, ProviderTimeout)
        self.assertEqual(result.value.status, AnalysisRecord.STATUS_FAILED)
        self.assertEqual(result.value.error_type, 'provider_timeout')
        self.assertEqual(result.value.recommendations.count(), 0)

        self.field.refresh_from_db()
        self.assertEqual(self.field.state, Field.STATE_MAPPED)

    def test_retry_after_failure(self):
        """A failed record never blocks a new request for the same date"""
        failed = self.controller(timeout_seconds=0.1, delay_seconds=1).request_analysis(
            self.field, analysis_date=VEGETATIVE_DATE, run_async=False
        ).value

        retry = self.controller().request_analysis(self.field, analysis_date=VEGETATIVE_DATE, run_async=False)

        self.assertTrue(retry.success)
        self.assertTrue(retry.created)
        self.assertNotEqual(retry.value.pk, failed.pk)
        self.assertEqual(
            AnalysisRecord.objects.filter(field=self.field, analysis_date=VEGETATIVE_DATE).count(),
            2
        )

    def test_invalid_provider_values(self):
        result = self.controller(ndvi=float('nan')).request_analysis(
            self.field, analysis_date=VEGETATIVE_DATE, run_async=False
        )

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, ProviderError)
        record = result.value
        self.assertEqual(record.error_type, 'provider_error')
        self.assertIsNone(record.raw_provider_data['provider']['ndvi'])
        self.assertIsNone(record.ndvi)

    def test_unmapped_field(self):
        field = FieldLifecycleController().create_field(None, {'name': 'Unmapped'}).value

        result = self.controller().request_analysis(field, run_async=False)

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, IncompleteBoundary)
        self.assertFalse(AnalysisRecord.objects.filter(field=field).exists())

    def test_explicit_boundary_snapshot(self):
        """A boundary passed with the request is analysed but not saved on the field"""
        other = square_boundary(offset=0.01)

        record = self.controller().request_analysis(
            self.field, boundary=other, analysis_date=VEGETATIVE_DATE, run_async=False
        ).value

        self.assertEqual(record.boundary_geojson, other.to_geojson())
        self.field.refresh_from_db()
        self.assertEqual(self.field.boundary_geojson, self.boundary.to_geojson())

    def test_crop_type_override(self):
        record = self.controller().request_analysis(
            self.field, crop_type='rice', analysis_date=date(2024, 9, 15), run_async=False
        ).value

        self.assertEqual(record.crop_type, 'rice')
        self.assertEqual(record.crop_stage, 'reproductive')

    def test_remap_keeps_history(self):
        controller = self.controller()
        record = controller.request_analysis(self.field, analysis_date=VEGETATIVE_DATE, run_async=False).value

        controller.remap_field(self.field, square_boundary(offset=0.002))

        self.field.refresh_from_db()
        record.refresh_from_db()
        self.assertEqual(self.field.boundary_version, 2)
        self.assertEqual(self.field.state, Field.STATE_ANALYZED)
        self.assertEqual(record.boundary_version, 1)
        self.assertEqual(controller.analysis_history(self.field).count(), 1)

        newer = controller.request_analysis(self.field, analysis_date=REPRODUCTIVE_DATE, run_async=False).value
        self.assertEqual(newer.boundary_version, 2)

    def test_latest_analysis(self):
        controller = self.controller()
        self.assertIsNone(controller.latest_analysis(self.field))

        controller.request_analysis(self.field, analysis_date=VEGETATIVE_DATE, run_async=False)
        newer = controller.request_analysis(self.field, analysis_date=REPRODUCTIVE_DATE, run_async=False).value

        self.assertEqual(controller.latest_analysis(self.field).pk, newer.pk)

    def test_execute_resolved_record_is_noop(self):
        controller = self.controller()
        record = controller.request_analysis(self.field, analysis_date=VEGETATIVE_DATE, run_async=False).value

        again = controller.execute_analysis(record)

        self.assertEqual(again.pk, record.pk)
        self.assertEqual(len(controller.provider.calls), 1)

    def test_storage_failure(self):
        with patch.object(AnalysisRecord.objects, 'create', side_effect=DatabaseError('disk full')):
            result = self.controller().request_analysis(self.field, analysis_date=VEGETATIVE_DATE, run_async=False)

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, PersistenceError)
        self.assertIsNone(result.value)

    @patch('apps.analysis.tasks.run_field_analysis')
    def test_queue_unavailable(self, mock_task):
        mock_task.delay.side_effect = OperationalError('broker down')

        result = FieldLifecycleController().request_analysis(self.field, analysis_date=VEGETATIVE_DATE)

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, PersistenceError)
        result.value.refresh_from_db()
        self.assertEqual(result.value.status, AnalysisRecord.STATUS_FAILED)
        self.assertEqual(result.value.error_type, 'persistence_error')

    def test_one_completed_record_per_date(self):
        AnalysisRecord.objects.create(
            field=self.field, analysis_date=VEGETATIVE_DATE, crop_type='wheat',
            boundary_geojson=self.field.boundary_geojson, status=AnalysisRecord.STATUS_COMPLETED,
        )

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                AnalysisRecord.objects.create(
                    field=self.field, analysis_date=VEGETATIVE_DATE, crop_type='wheat',
                    boundary_geojson=self.field.boundary_geojson, status=AnalysisRecord.STATUS_COMPLETED,
                )

    def test_mark_implemented(self):
        """Only the follow-up columns change"""
        controller = self.controller(ndvi=0.25)
        record = controller.request_analysis(self.field, analysis_date=VEGETATIVE_DATE, run_async=False).value
        recommendation = record.recommendations.order_by('rank').first()

        result = controller.mark_implemented(recommendation.pk, feedback='Applied urea on Monday')

        self.assertTrue(result.success)
        updated = Recommendation.objects.get(pk=recommendation.pk)
        self.assertTrue(updated.implemented)
        self.assertIsNotNone(updated.implemented_at)
        self.assertEqual(updated.farmer_feedback, 'Applied urea on Monday')
        self.assertEqual(updated.title, recommendation.title)
        self.assertEqual(updated.priority, recommendation.priority)
        self.assertEqual(updated.action_items, recommendation.action_items)


# ===========================================================================
# TASK TESTS
# ===========================================================================

class AnalysisTaskTestCase(BaseAnalysisTestCase):

    def setUp(self):
        self._create_base_fixtures()

    def _pending_record(self, analysis_date=VEGETATIVE_DATE):
        return AnalysisRecord.objects.create(
            field=self.field,
            analysis_date=analysis_date,
            crop_type='wheat',
            boundary_geojson=self.field.boundary_geojson,
        )

    def test_run_field_analysis(self):
        record = self._pending_record()

        outcome = run_field_analysis(record.pk)

        self.assertTrue(outcome['success'])
        self.assertEqual(outcome['request_id'], str(record.request_id))
        self.assertEqual(outcome['status'], 'completed')

    def test_run_field_analysis_missing_record(self):
        outcome = run_field_analysis(999999)

        self.assertFalse(outcome['success'])
        self.assertEqual(outcome['error'], 'not_found')

    @override_settings(ANALYSIS_PROVIDER_OPTIONS={'ndvi': 1.7})
    def test_run_field_analysis_failure(self):
        record = self._pending_record()

        outcome = run_field_analysis(record.pk)

        self.assertFalse(outcome['success'])
        self.assertEqual(outcome['error_type'], 'provider_error')

    def test_request_bulk_analyses(self):
        results = request_bulk_analyses([self.field.field_id, 'FLD-MISSING'], '2024-01-15')

        self.assertTrue(results[self.field.field_id]['success'])
        self.assertEqual(results['FLD-MISSING'], {'success': False, 'error': 'not_found'})
        self.assertEqual(self.field.analyses.get().analysis_date, VEGETATIVE_DATE)

    @override_settings(ANALYSIS_PENDING_EXPIRY_MINUTES=30)
    def test_expire_stale_analyses(self):
        stale = self._pending_record()
        fresh = self._pending_record(REPRODUCTIVE_DATE)
        AnalysisRecord.objects.filter(pk=stale.pk).update(requested_at=timezone.now() - timedelta(hours=2))

        outcome = expire_stale_analyses()

        self.assertEqual(outcome['expired_count'], 1)
        stale.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(stale.status, AnalysisRecord.STATUS_FAILED)
        self.assertEqual(stale.error_type, 'expired')
        self.assertEqual(fresh.status, AnalysisRecord.STATUS_PENDING)

        # The date is free for a new request once the stale record expired
        retry = self.controller().request_analysis(self.field, analysis_date=VEGETATIVE_DATE, run_async=False)
        self.assertTrue(retry.created)


# ===========================================================================
# API TESTS
# ===========================================================================

class AnalysisAPITestCase(APITestCase):
    """Test cases for the analysis API"""

    def setUp(self):
        """Set up test client and a mapped field"""
        self.client = APIClient()
        self.user = User.objects.create_user(username='agronomist', password='TestPass123!')
        self.client.force_authenticate(user=self.user)

        self.field = FieldLifecycleController().create_field(
            square_boundary(),
            {'name': 'Test plot', 'crop_type': 'wheat'},
            owner=self.user
        ).value

    def _request(self, field_id=None, **data):
        data.setdefault('analysis_date', '2024-01-15')
        url = reverse('analysis:request_analysis', args=[field_id or self.field.field_id])
        return self.client.post(url, data, format='json')

    def test_request_analysis(self):
        response = self._request()

        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        analysis = response.data['analysis']
        self.assertEqual(analysis['status'], 'completed')
        self.assertEqual(analysis['field_id'], self.field.field_id)
        self.assertEqual(analysis['vegetation_indices']['ndvi'], 0.65)
        self.assertIsNone(analysis['error'])
        self.assertEqual(analysis['recommendations'], [])
        self.assertEqual(analysis['imagery_quality']['category'], 'clear')
        self.assertTrue(analysis['imagery_quality']['optical_reliable'])

    def test_request_unsupported_crop(self):
        response = self._request(crop_type='barley')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('crop_type', response.data)
        self.assertFalse(AnalysisRecord.objects.exists())

    @override_settings(ANALYSIS_PROVIDER_OPTIONS={'ndvi': 0.25})
    def test_other_users_cannot_see_analyses(self):
        request_id = self._request().data['analysis']['request_id']
        recommendation = Recommendation.objects.filter(field=self.field).first()
        other = User.objects.create_user(username='neighbour', password='TestPass123!')
        self.client.force_authenticate(user=other)

        urls = [
            reverse('analysis:analysis_history', args=[self.field.field_id]),
            reverse('analysis:latest_analysis', args=[self.field.field_id]),
            reverse('analysis:field_recommendations', args=[self.field.field_id]),
            reverse('analysis:record_detail', args=[request_id]),
        ]
        for url in urls:
            self.assertEqual(self.client.get(url).status_code, status.HTTP_404_NOT_FOUND)

        self.assertEqual(self._request(analysis_date='2024-03-10').status_code, status.HTTP_404_NOT_FOUND)
        response = self.client.post(
            reverse('analysis:mark_implemented', args=[recommendation.pk]), {}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertFalse(Recommendation.objects.get(pk=recommendation.pk).implemented)

    def test_repeat_request_returns_existing(self):
        first = self._request()
        second = self._request()

        self.assertEqual(second.status_code, status.HTTP_200_OK)
        self.assertEqual(second.data['analysis']['request_id'], first.data['analysis']['request_id'])

    def test_request_with_boundary(self):
        ring = [[lng + 0.01, lat] for lng, lat in SQUARE_RING]

        response = self._request(boundary={'type': 'Polygon', 'coordinates': [ring]})

        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        self.assertEqual(response.data['analysis']['boundary_geojson']['coordinates'][0][0], ring[0])

    def test_request_with_bad_boundary(self):
        response = self._request(points=[{'lat': 25.6, 'lng': 85.1}, {'lat': 25.601, 'lng': 85.1}])

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['boundary']['code'], 'incomplete_boundary')

    def test_request_unmapped_field(self):
        field = FieldLifecycleController().create_field(None, {'name': 'Unmapped'}, owner=self.user).value

        response = self._request(field_id=field.field_id)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error']['code'], 'incomplete_boundary')

    def test_request_missing_field(self):
        response = self._request(field_id='FLD-MISSING')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    @override_settings(ANALYSIS_PROVIDER_OPTIONS={'ndvi': 1.5})
    def test_request_provider_error(self):
        response = self._request()

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
        self.assertEqual(response.data['error']['code'], 'provider_error')
        self.assertEqual(response.data['analysis']['status'], 'failed')
        self.assertEqual(response.data['analysis']['error']['code'], 'provider_error')

    @override_settings(ANALYSIS_PROVIDER_OPTIONS={'delay_seconds': 1}, ANALYSIS_PROVIDER_TIMEOUT_SECONDS=0.1)
    def test_request_provider_timeout(self):
        response = self._request()

        self.assertEqual(response.status_code, status.HTTP_504_GATEWAY_TIMEOUT)
        self.assertEqual(response.data['analysis']['status'], 'failed')
        self.field.refresh_from_db()
        self.assertEqual(self.field.state, Field.STATE_MAPPED)

    def test_analysis_history(self):
        self._request()
        with override_settings(ANALYSIS_PROVIDER_OPTIONS={'ndvi': 1.5}):
            self._request(analysis_date='2024-03-10')

        url = reverse('analysis:analysis_history', args=[self.field.field_id])

        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)
        self.assertEqual(response.data['results'][0]['status'], 'failed')

        response = self.client.get(url, {'status': 'completed'})
        self.assertEqual(response.data['count'], 1)
        self.assertIsNone(response.data['results'][0]['error'])

    def test_record_detail(self):
        request_id = self._request().data['analysis']['request_id']

        response = self.client.get(reverse('analysis:record_detail', args=[request_id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['raw_provider_data']['provider']['source'], 'static')

        response = self.client.get(reverse('analysis:record_detail', args=[uuid.uuid4()]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_latest_analysis(self):
        url = reverse('analysis:latest_analysis', args=[self.field.field_id])

        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

        self._request()
        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['health_status'], 'good')

        detail = self.client.get(reverse('fields:field_detail', args=[self.field.field_id]))
        self.assertEqual(detail.data['state'], 'analyzed')
        self.assertEqual(detail.data['latest_analysis']['request_id'], response.data['request_id'])

    @override_settings(ANALYSIS_PROVIDER_OPTIONS={'ndvi': 0.25})
    def test_recommendations(self):
        self._request()
        url = reverse('analysis:field_recommendations', args=[self.field.field_id])

        response = self.client.get(url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)
        self.assertEqual(
            [r['rule_code'] for r in response.data['results']],
            ['low_vegetation_health', 'water_stress']
        )

        recommendation_id = response.data['results'][0]['id']
        response = self.client.post(
            reverse('analysis:mark_implemented', args=[recommendation_id]),
            {'farmer_feedback': 'Soil test booked'},
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['implemented'])
        self.assertEqual(response.data['farmer_feedback'], 'Soil test booked')

        response = self.client.get(url, {'implemented': 'false'})
        self.assertEqual(response.data['count'], 1)

    def test_mark_missing_recommendation(self):
        response = self.client.post(reverse('analysis:mark_implemented', args=[999999]), {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_unauthorized_access(self):
        self.client.force_authenticate(user=None)

        response = self._request()

        self.assertIn(response.status_code, [status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN])
