# apps/fields/views.py

import logging

from django.shortcuts import get_object_or_404
from rest_framework import generics, permissions, status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response

from core.exceptions import BoundaryError
from .models import Field
from .serializers import (
    BoundaryValidationSerializer,
    FieldCreateSerializer,
    FieldDetailSerializer,
    FieldRemapSerializer,
    FieldSerializer,
    FieldUpdateSerializer,
    GPSTraceSerializer,
)
from .services import BoundaryService, FieldLifecycleController

logger = logging.getLogger(__name__)


def error_response(error):
    return Response({'error': error.as_dict()}, status=error.http_status)


class FieldCreateView(generics.CreateAPIView):
    """
    POST /api/v1/fields/create/

    Create a field, mapped when a boundary is supplied
    """
    serializer_class = FieldCreateSerializer
    permission_classes = [permissions.IsAuthenticated]

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = serializer.validated_data
        result = FieldLifecycleController().create_field(
            data['finalized_boundary'], data, owner=request.user
        )
        if not result.success:
            return error_response(result.error)

        return Response({
            'message': 'Field created successfully',
            'field': FieldDetailSerializer(result.value).data,
        }, status=status.HTTP_201_CREATED)


class FieldListView(generics.ListAPIView):
    """
    GET /api/v1/fields/

    List fields (filter by state or crop_type)
    """
    serializer_class = FieldSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        # Users see only their own fields; staff see all
        queryset = Field.objects.visible_to(self.request.user)

        state = self.request.query_params.get('state')
        if state:
            queryset = queryset.filter(state=state)

        crop_type = self.request.query_params.get('crop_type')
        if crop_type:
            queryset = queryset.filter(crop_type=crop_type)

        return queryset.order_by('-created_at')


class FieldDetailView(generics.RetrieveAPIView):
    """
    GET /api/v1/fields/{field_id}/
    """
    serializer_class = FieldDetailSerializer
    permission_classes = [permissions.IsAuthenticated]
    lookup_field = 'field_id'

    def get_queryset(self):
        return Field.objects.visible_to(self.request.user).prefetch_related('boundary_points')


class FieldUpdateView(generics.UpdateAPIView):
    """
    PUT/PATCH /api/v1/fields/{field_id}/update/

    Update field details (not the boundary)
    """
    serializer_class = FieldUpdateSerializer
    permission_classes = [permissions.IsAuthenticated]
    lookup_field = 'field_id'

    def get_queryset(self):
        return Field.objects.visible_to(self.request.user)

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop('partial', False)
        instance = self.get_object()

        serializer = self.get_serializer(instance, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)

        result = FieldLifecycleController().update_field(instance, serializer.validated_data)
        if not result.success:
            return error_response(result.error)

        return Response({
            'message': 'Field updated successfully',
            'field': FieldDetailSerializer(result.value).data,
        })


@api_view(['GET'])
@permission_classes([permissions.IsAuthenticated])
def field_geojson(request, field_id):
    """
    GET /api/v1/fields/{field_id}/geojson/

    Field boundary as a GeoJSON Feature
    """
    field = get_object_or_404(Field.objects.visible_to(request.user), field_id=field_id)
    return Response(BoundaryService.convert_to_geojson(field))


@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def remap_field(request, field_id):
    """
    POST /api/v1/fields/{field_id}/remap/

    Replace the boundary; earlier analyses are kept
    """
    field = get_object_or_404(Field.objects.visible_to(request.user), field_id=field_id)

    serializer = FieldRemapSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    result = FieldLifecycleController().remap_field(field, serializer.validated_data['finalized_boundary'])
    if not result.success:
        return error_response(result.error)

    return Response({
        'message': 'Field boundary updated',
        'field': FieldDetailSerializer(result.value).data,
    }, status=status.HTTP_200_OK)


@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def validate_boundary(request):
    """
    POST /api/v1/fields/validate-boundary/

    Dry-run finalize: area figures and issues, nothing is saved
    """
    serializer = BoundaryValidationSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    preview = BoundaryService.preview_boundary(serializer.validated_data)
    return Response(preview, status=status.HTTP_200_OK)


@api_view(['POST'])
@permission_classes([permissions.IsAuthenticated])
def upload_gps_trace(request):
    """
    POST /api/v1/fields/gps-trace/

    Build a boundary from a recorded GPS walk, optionally applying it to a
    field
    """
    serializer = GPSTraceSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    field = None
    if data.get('field_id'):
        field = get_object_or_404(Field.objects.visible_to(request.user), field_id=data['field_id'])

    try:
        processed = BoundaryService.process_gps_trace(
            data['trace'],
            min_displacement_meters=data.get('min_displacement_meters'),
        )
    except BoundaryError as e:
        logger.warning(f"GPS trace rejected: {e.message}")
        return error_response(e)

    boundary = processed.pop('boundary')
    response = {
        **processed,
        'area_hectares': round(boundary.area_hectares, 4),
        'area_acres': round(boundary.area_acres, 4),
        'perimeter_meters': round(boundary.perimeter_meters, 2),
        'boundary': boundary.to_geojson(),
        'field': None,
    }

    if field is not None:
        result = FieldLifecycleController().remap_field(field, boundary)
        if not result.success:
            return error_response(result.error)
        response['field'] = FieldDetailSerializer(result.value).data

    return Response(response, status=status.HTTP_200_OK)
