# apps/fields/services/lifecycle.py

"""
Field lifecycle: unmapped -> mapped -> analyzed.

The controller is the only writer of fields, analysis records and
recommendations. Provider and storage failures are returned inside a
LifecycleResult rather than raised, so a caller holding a capture session
can keep it and retry.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from django.db import DatabaseError, transaction
from django.utils import timezone
from kombu.exceptions import OperationalError as BrokerError

from apps.analysis.models import AnalysisRecord, Recommendation
from apps.analysis.services import (
    RecommendationEngine,
    VegetationIndexAnalyzer,
    get_imagery_provider,
)
from apps.analysis.services.vegetation_analyzer import CROP_TYPES, AnalysisOutcome, boundary_ring
from apps.fields.models import Field
from core.exceptions import (
    AnalysisError,
    BoundaryError,
    DegenerateGeometry,
    FieldPulseError,
    IncompleteBoundary,
    PersistenceError,
    ProviderError,
    ProviderTimeout,
    UnsupportedCropType,
)
from .boundary_service import BoundaryService

logger = logging.getLogger(__name__)


FIELD_METADATA_KEYS = (
    'name',
    'crop_type',
    'crop_variety',
    'planting_date',
    'expected_harvest_date',
    'address',
)

RECORDED_ERRORS = {
    cls.code: cls for cls in (
        ProviderError, ProviderTimeout, PersistenceError, UnsupportedCropType, AnalysisError
    )
}


@dataclass
class LifecycleResult:
    success: bool
    value: Any = None
    error: Optional[FieldPulseError] = None
    created: bool = False

    @classmethod
    def ok(cls, value, created=False):
        return cls(success=True, value=value, created=created)

    @classmethod
    def fail(cls, error, value=None):
        return cls(success=False, value=value, error=error)


class FieldLifecycleController:
    """Coordinates fields, boundaries, analyses and recommendations"""

    def __init__(self, provider=None, analyzer=None, engine=None, timeout_seconds=None):
        self._provider = provider
        self.analyzer = analyzer or VegetationIndexAnalyzer()
        self.engine = engine or RecommendationEngine()
        self.timeout_seconds = timeout_seconds

    @property
    def provider(self):
        if self._provider is None:
            self._provider = get_imagery_provider()
        return self._provider

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    @staticmethod
    def _get_field(field):
        if isinstance(field, Field):
            return field
        return Field.objects.get(field_id=field)

    @staticmethod
    def _apply_boundary(field, boundary):
        """Copy a finalized boundary onto the field and its points"""
        centroid = boundary.centroid
        field.boundary_geojson = boundary.to_geojson()
        field.area_hectares = Decimal(str(round(boundary.area_hectares, 4)))
        field.perimeter_meters = round(boundary.perimeter_meters, 2)
        field.center_latitude = centroid['lat']
        field.center_longitude = centroid['lng']
        field.acquisition_mode = boundary.acquisition_mode
        field.boundary_accuracy_meters = boundary.average_accuracy_meters
        field.save()

        BoundaryService.store_boundary_points(field, boundary)

    def create_field(self, boundary, metadata, owner=None):
        """
        Persist a new field

        Args:
            boundary: FinalizedBoundary, or None for an unmapped field
            metadata: dict of field attributes (name, crop_type, ...)
            owner: User the field belongs to

        Returns:
            LifecycleResult wrapping the Field
        """
        if boundary is not None and boundary.area_square_meters <= 0:
            return LifecycleResult.fail(DegenerateGeometry())

        attributes = {k: metadata[k] for k in FIELD_METADATA_KEYS if metadata.get(k) is not None}

        try:
            with transaction.atomic():
                field = Field.objects.create(
                    owner=owner,
                    state=Field.STATE_MAPPED if boundary is not None else Field.STATE_UNMAPPED,
                    boundary_version=1 if boundary is not None else 0,
                    **attributes
                )
                if boundary is not None:
                    self._apply_boundary(field, boundary)
        except DatabaseError as e:
            logger.error(f"Failed to create field: {str(e)}")
            return LifecycleResult.fail(PersistenceError(f"Failed to save field: {e}"))

        logger.info(f"Created field {field.field_id} ({field.state})")
        return LifecycleResult.ok(field, created=True)

    def update_field(self, field, metadata):
        """
        Change field details; the boundary and state are left alone

        Earlier analyses keep the crop type they were run with.
        """
        field = self._get_field(field)
        changes = {k: metadata[k] for k in FIELD_METADATA_KEYS if k in metadata}
        if not changes:
            return LifecycleResult.ok(field)

        try:
            with transaction.atomic():
                field = Field.objects.select_for_update().get(pk=field.pk)
                for key, value in changes.items():
                    setattr(field, key, value)
                field.save(update_fields=list(changes) + ['updated_at'])
        except DatabaseError as e:
            logger.error(f"Failed to update field {field.field_id}: {str(e)}")
            return LifecycleResult.fail(PersistenceError(f"Failed to save field: {e}"))

        logger.info(f"Updated field {field.field_id}: {', '.join(sorted(changes))}")
        return LifecycleResult.ok(field)

    def remap_field(self, field, boundary):
        """
        Replace the field's boundary

        An unmapped field becomes mapped; a mapped or analyzed field keeps its
        state. Earlier analyses are kept.
        """
        if boundary is None:
            return LifecycleResult.fail(IncompleteBoundary("A boundary is required to remap a field"))

        field = self._get_field(field)

        try:
            with transaction.atomic():
                field = Field.objects.select_for_update().get(pk=field.pk)
                field.boundary_version += 1
                if field.state == Field.STATE_UNMAPPED:
                    field.state = Field.STATE_MAPPED
                self._apply_boundary(field, boundary)
        except DatabaseError as e:
            logger.error(f"Failed to remap field {field.field_id}: {str(e)}")
            return LifecycleResult.fail(PersistenceError(f"Failed to save boundary: {e}"))

        logger.info(f"Remapped field {field.field_id} (boundary v{field.boundary_version})")
        return LifecycleResult.ok(field)

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------

    def request_analysis(self, field, boundary=None, crop_type=None, analysis_date=None, run_async=True):
        """
        Request a vegetation analysis for a field

        Requests are deduplicated by (field, analysis_date): a completed
        record for the date is returned as is, and so is a pending one.
        Failed records never block a new request.

        Returns:
            LifecycleResult wrapping the AnalysisRecord (pending when
            run_async, resolved otherwise)
        """
        field = self._get_field(field)

        if boundary is not None:
            boundary_geojson = boundary.to_geojson()
        elif field.boundary_geojson:
            boundary_geojson = field.boundary_geojson
        else:
            logger.warning(f"Analysis requested for unmapped field {field.field_id}")
            return LifecycleResult.fail(
                IncompleteBoundary(f"Field {field.field_id} has no boundary; map it first")
            )

        try:
            boundary_ring(boundary_geojson)
        except BoundaryError as e:
            return LifecycleResult.fail(e)

        crop_type = crop_type or field.crop_type
        if crop_type not in CROP_TYPES:
            return LifecycleResult.fail(UnsupportedCropType(f"Unsupported crop type: {crop_type}"))
        analysis_date = analysis_date or timezone.localdate()

        try:
            existing = self._existing_analysis(field, analysis_date)
            if existing is not None:
                logger.info(
                    f"Reusing {existing.status} analysis {existing.request_id} "
                    f"for {field.field_id} on {analysis_date}"
                )
                return LifecycleResult.ok(existing)

            record = AnalysisRecord.objects.create(
                field=field,
                analysis_date=analysis_date,
                crop_type=crop_type,
                boundary_geojson=boundary_geojson,
                boundary_version=field.boundary_version,
                provider_name=getattr(self._provider, 'name', '') if self._provider else '',
            )
        except DatabaseError as e:
            logger.error(f"Failed to record analysis request for {field.field_id}: {str(e)}")
            return LifecycleResult.fail(PersistenceError(f"Failed to save analysis request: {e}"))

        logger.info(f"Analysis {record.request_id} requested for {field.field_id} on {analysis_date}")

        if not run_async:
            try:
                record = self.execute_analysis(record)
            except PersistenceError as e:
                return LifecycleResult.fail(e, value=record)
            return self._result_for(record, created=True)

        from apps.analysis.tasks import run_field_analysis

        try:
            run_field_analysis.delay(record.pk)
        except BrokerError as e:
            logger.error(f"Could not queue analysis {record.request_id}: {str(e)}")
            error = PersistenceError("Analysis queue is unavailable")
            try:
                self._mark_failed(record, error)
            except PersistenceError as e:
                return LifecycleResult.fail(e, value=record)
            return LifecycleResult.fail(error, value=record)

        # With an eager queue the task has already resolved the record
        record.refresh_from_db()
        return self._result_for(record, created=True)

    @staticmethod
    def _existing_analysis(field, analysis_date):
        same_day = field.analyses.filter(analysis_date=analysis_date)
        completed = same_day.filter(status=AnalysisRecord.STATUS_COMPLETED).first()
        if completed is not None:
            return completed
        return same_day.filter(status=AnalysisRecord.STATUS_PENDING).order_by('requested_at').first()

    @staticmethod
    def _result_for(record, created=False):
        if record.status == AnalysisRecord.STATUS_FAILED:
            error_class = RECORDED_ERRORS.get(record.error_type, FieldPulseError)
            return LifecycleResult.fail(error_class(record.error_message), value=record)
        return LifecycleResult.ok(record, created=created)

    def execute_analysis(self, record):
        """
        Resolve a pending record: provider call, classification,
        recommendations and the field state advance, written once

        Returns:
            AnalysisRecord (refreshed)
        """
        if record.status != AnalysisRecord.STATUS_PENDING:
            return record

        provider = self.provider
        try:
            outcome = self.analyzer.run(
                record.boundary_geojson,
                record.crop_type,
                record.analysis_date,
                provider,
                timeout_seconds=self.timeout_seconds,
            )
            drafts = self.engine.evaluate(outcome.result, record.crop_type) if outcome.success else []
        except Exception as e:
            logger.exception(f"Analysis {record.request_id} raised an unexpected error")
            outcome = AnalysisOutcome(error=AnalysisError(f"{e.__class__.__name__}: {e}"))

        if not outcome.success:
            self._mark_failed(record, outcome.error, provider_data=outcome.provider_data)
            record.refresh_from_db()
            return record

        result = outcome.result

        try:
            with transaction.atomic():
                updated = AnalysisRecord.objects.filter(
                    pk=record.pk,
                    status=AnalysisRecord.STATUS_PENDING,
                ).update(
                    status=AnalysisRecord.STATUS_COMPLETED,
                    provider_name=getattr(provider, 'name', ''),
                    cloud_cover_percentage=result.cloud_cover_percent,
                    ndvi=result.ndvi,
                    msavi2=result.msavi2,
                    ndre=result.ndre,
                    ndmi=result.ndmi,
                    soc_vis=result.soc_vis,
                    rvi=result.rvi,
                    crop_stage=result.crop_stage,
                    health_status=result.health_status,
                    water_stress_level=result.water_stress_level,
                    quality_score=result.quality_score,
                    raw_provider_data={'provider': outcome.provider_data, 'result': result.as_dict()},
                    completed_at=timezone.now(),
                )

                if updated:
                    Recommendation.objects.bulk_create([
                        Recommendation(
                            field_id=record.field_id,
                            analysis_id=record.pk,
                            rule_code=draft.rule_code,
                            rank=draft.rank,
                            title=draft.title,
                            description=draft.description,
                            priority=draft.priority,
                            category=draft.category,
                            action_items=list(draft.action_items),
                            estimated_cost=Decimal(str(draft.estimated_cost)),
                            timeline=draft.timeline,
                        )
                        for draft in drafts
                    ])
                    Field.objects.filter(
                        pk=record.field_id,
                        state=Field.STATE_MAPPED,
                    ).update(state=Field.STATE_ANALYZED)
        except DatabaseError as e:
            logger.error(f"Failed to store analysis {record.request_id}: {str(e)}")
            self._mark_failed(record, PersistenceError(f"Failed to store analysis: {e}"))
            record.refresh_from_db()
            return record

        if updated:
            logger.info(
                f"Analysis {record.request_id} completed: {result.health_status}, "
                f"{len(drafts)} recommendations"
            )
        else:
            logger.info(f"Analysis {record.request_id} was already resolved elsewhere")

        record.refresh_from_db()
        return record

    @staticmethod
    def _mark_failed(record, error, provider_data=None):
        """Transition a pending record to failed (no-op if already resolved)"""
        try:
            AnalysisRecord.objects.filter(
                pk=record.pk,
                status=AnalysisRecord.STATUS_PENDING,
            ).update(
                status=AnalysisRecord.STATUS_FAILED,
                error_type=error.code,
                error_message=error.message,
                raw_provider_data={'provider': provider_data} if provider_data else {},
                completed_at=timezone.now(),
            )
        except DatabaseError as e:
            logger.error(f"Could not mark analysis {record.request_id} failed: {str(e)}")
            raise PersistenceError(f"Failed to record analysis failure: {e}") from e

        logger.warning(f"Analysis {record.request_id} failed ({error.code}): {error.message}")

    def latest_analysis(self, field):
        field = self._get_field(field)
        return field.analyses.filter(
            status=AnalysisRecord.STATUS_COMPLETED
        ).order_by('-analysis_date', '-completed_at').first()

    def analysis_history(self, field):
        field = self._get_field(field)
        return field.analyses.order_by('-requested_at')

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def list_recommendations(self, field):
        field = self._get_field(field)
        return Recommendation.objects.filter(field=field).select_related('analysis')

    def mark_implemented(self, recommendation, feedback=None):
        """
        Flag a recommendation as implemented

        Only implemented, farmer_feedback and implemented_at change.
        """
        if not isinstance(recommendation, Recommendation):
            recommendation = Recommendation.objects.get(pk=recommendation)

        recommendation.implemented = True
        recommendation.implemented_at = timezone.now()
        if feedback is not None:
            recommendation.farmer_feedback = feedback

        try:
            recommendation.save(update_fields=['implemented', 'implemented_at', 'farmer_feedback'])
        except DatabaseError as e:
            logger.error(f"Failed to update recommendation {recommendation.pk}: {str(e)}")
            return LifecycleResult.fail(PersistenceError(f"Failed to save recommendation: {e}"))

        logger.info(f"Recommendation {recommendation.pk} marked implemented")
        return LifecycleResult.ok(recommendation)

