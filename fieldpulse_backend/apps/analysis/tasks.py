# apps/analysis/tasks.py

from celery import shared_task
from django.conf import settings
from django.utils import timezone
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)


@shared_task(bind=True)
def run_field_analysis(self, record_id):
    """
    Resolve a pending analysis record

    Provider failures are written onto the record, so the task itself does
    not retry; a new request for the same date creates a fresh record.

    Args:
        record_id: AnalysisRecord database ID

    Returns:
        dict: Outcome summary
    """
    from apps.fields.services.lifecycle import FieldLifecycleController
    from .models import AnalysisRecord

    try:
        record = AnalysisRecord.objects.select_related('field').get(id=record_id)
    except AnalysisRecord.DoesNotExist:
        logger.error(f"Analysis record {record_id} not found")
        return {'success': False, 'error': 'not_found', 'record_id': record_id}

    logger.info(f"Running analysis {record.request_id} for field {record.field.field_id}")

    record = FieldLifecycleController().execute_analysis(record)

    return {
        'success': record.status == AnalysisRecord.STATUS_COMPLETED,
        'request_id': str(record.request_id),
        'status': record.status,
        'error_type': record.error_type,
    }


@shared_task
def request_bulk_analyses(field_ids, analysis_date=None):
    """
    Request analyses for several fields at once

    Args:
        field_ids: List of public field identifiers
        analysis_date: ISO date (defaults to today)

    Returns:
        dict: Per-field request outcome
    """
    from datetime import date
    from apps.fields.services.lifecycle import FieldLifecycleController
    from apps.fields.models import Field

    controller = FieldLifecycleController()
    when = date.fromisoformat(analysis_date) if analysis_date else None

    results = {}
    for field_id in field_ids:
        try:
            outcome = controller.request_analysis(field_id, analysis_date=when)
        except Field.DoesNotExist:
            results[field_id] = {'success': False, 'error': 'not_found'}
            continue

        results[field_id] = {
            'success': outcome.success,
            'request_id': str(outcome.value.request_id) if outcome.value is not None else None,
            'error': outcome.error.code if outcome.error else None,
        }

    logger.info(f"Bulk analysis requested for {len(field_ids)} fields")
    return results


@shared_task
def expire_stale_analyses():
    """
    Fail records left pending by a lost worker

    A pending record blocks new requests for its date, so one that outlives
    ANALYSIS_PENDING_EXPIRY_MINUTES is marked failed.
    """
    from .models import AnalysisRecord

    expiry_minutes = getattr(settings, 'ANALYSIS_PENDING_EXPIRY_MINUTES', 30)
    cutoff = timezone.now() - timedelta(minutes=expiry_minutes)

    expired = AnalysisRecord.objects.filter(
        status=AnalysisRecord.STATUS_PENDING,
        requested_at__lt=cutoff,
    ).update(
        status=AnalysisRecord.STATUS_FAILED,
        error_type='expired',
        error_message=f'No result within {expiry_minutes} minutes',
        completed_at=timezone.now(),
    )

    if expired:
        logger.warning(f"Expired {expired} stale pending analyses")

    return {
        'expired_count': expired,
        'timestamp': timezone.now().isoformat(),
    }
