# apps/analysis/views.py

from django.shortcuts import get_object_or_404
from rest_framework import generics, permissions, status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.fields.models import Field
from apps.fields.services import FieldLifecycleController
from .models import AnalysisRecord, Recommendation
from .serializers import (
    AnalysisRecordDetailSerializer,
    AnalysisRecordSerializer,
    AnalysisRequestSerializer,
    MarkImplementedSerializer,
    RecommendationSerializer,
)


def error_response(error, record=None):
    body = {'error': error.as_dict()}
    if record is not None:
        body['analysis'] = AnalysisRecordSerializer(record).data
    return Response(body, status=error.http_status)


class RequestAnalysisView(APIView):
    """
    POST /api/v1/analysis/fields/{field_id}/request/

    Request a vegetation analysis. Returns 202 with the pending record, or
    200 with an existing record for the same date.
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, field_id):
        field = get_object_or_404(Field.objects.visible_to(request.user), field_id=field_id)

        serializer = AnalysisRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = FieldLifecycleController().request_analysis(
            field,
            boundary=data.get('finalized_boundary'),
            crop_type=data.get('crop_type'),
            analysis_date=data.get('analysis_date'),
            run_async=data.get('run_async', True),
        )

        if not result.success:
            return error_response(result.error, record=result.value)

        record = result.value
        response_status = status.HTTP_202_ACCEPTED if result.created else status.HTTP_200_OK

        return Response({
            'message': 'Analysis queued' if result.created else 'Existing analysis returned',
            'analysis': AnalysisRecordDetailSerializer(record).data,
        }, status=response_status)


class AnalysisHistoryView(generics.ListAPIView):
    """
    GET /api/v1/analysis/fields/{field_id}/history/

    All analysis records for a field, newest first (failed ones included)
    """
    serializer_class = AnalysisRecordSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        field = get_object_or_404(Field.objects.visible_to(self.request.user), field_id=self.kwargs['field_id'])
        queryset = FieldLifecycleController().analysis_history(field).select_related('field')

        record_status = self.request.query_params.get('status')
        if record_status:
            queryset = queryset.filter(status=record_status)

        return queryset


class AnalysisRecordDetailView(generics.RetrieveAPIView):
    """
    GET /api/v1/analysis/records/{request_id}/
    """
    serializer_class = AnalysisRecordDetailSerializer
    permission_classes = [permissions.IsAuthenticated]
    lookup_field = 'request_id'

    def get_queryset(self):
        return AnalysisRecord.objects.filter(
            field__in=Field.objects.visible_to(self.request.user)
        ).select_related('field').prefetch_related('recommendations')


@api_view(['GET'])
@permission_classes([permissions.IsAuthenticated])
def latest_analysis(request, field_id):
    """
    GET /api/v1/analysis/fields/{field_id}/latest/
    """
    field = get_object_or_404(Field.objects.visible_to(request.user), field_id=field_id)
    record = FieldLifecycleController().latest_analysis(field)

    if record is None:
        return Response({
            'message': 'No completed analysis for this field',
            'field_id': field_id
        }, status=status.HTTP_404_NOT_FOUND)

    return Response(AnalysisRecordDetailSerializer(record).data)


class FieldRecommendationsView(generics.ListAPIView):
    """
    GET /api/v1/analysis/fields/{field_id}/recommendations/
    """
    serializer_class = RecommendationSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        field = get_object_or_404(Field.objects.visible_to(self.request.user), field_id=self.kwargs['field_id'])
        queryset = FieldLifecycleController().list_recommendations(field).select_related('field')

        implemented = self.request.query_params.get('implemented')
        if implemented is not None:
            queryset = queryset.filter(implemented=implemented.lower() == 'true')

        return queryset


@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def mark_recommendation_implemented(request, pk):
    """
    POST /api/v1/analysis/recommendations/{id}/implemented/
    """
    recommendation = get_object_or_404(
        Recommendation.objects.filter(field__in=Field.objects.visible_to(request.user)),
        pk=pk,
    )

    serializer = MarkImplementedSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    result = FieldLifecycleController().mark_implemented(
        recommendation,
        feedback=serializer.validated_data.get('farmer_feedback'),
    )
    if not result.success:
        return error_response(result.error)

    return Response(RecommendationSerializer(result.value).data, status=status.HTTP_200_OK)
