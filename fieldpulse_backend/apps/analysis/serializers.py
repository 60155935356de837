# apps/analysis/serializers.py

from rest_framework import serializers

from apps.fields.models import CROP_TYPE_CHOICES
from apps.fields.serializers import BoundaryInputMixin
from .models import AnalysisRecord, Recommendation
from .services.cloud_quality import CloudQualityCurve


class RecommendationSerializer(serializers.ModelSerializer):
    """Serializer for Recommendation model"""

    field_id = serializers.CharField(source='field.field_id', read_only=True)
    analysis_request_id = serializers.UUIDField(source='analysis.request_id', read_only=True)

    class Meta:
        model = Recommendation
        fields = [
            'id',
            'field_id',
            'analysis_request_id',
            'rule_code',
            'rank',
            'title',
            'description',
            'priority',
            'category',
            'action_items',
            'estimated_cost',
            'timeline',
            'implemented',
            'farmer_feedback',
            'implemented_at',
            'created_at',
        ]
        read_only_fields = fields


class AnalysisRecordSerializer(serializers.ModelSerializer):
    """Serializer for AnalysisRecord model"""

    field_id = serializers.CharField(source='field.field_id', read_only=True)
    vegetation_indices = serializers.SerializerMethodField()
    imagery_quality = serializers.SerializerMethodField()
    error = serializers.SerializerMethodField()

    class Meta:
        model = AnalysisRecord
        fields = [
            'request_id',
            'field_id',
            'analysis_date',
            'crop_type',
            'status',
            'error',
            'provider_name',
            'boundary_version',
            'cloud_cover_percentage',
            'vegetation_indices',
            'crop_stage',
            'health_status',
            'water_stress_level',
            'quality_score',
            'imagery_quality',
            'requested_at',
            'completed_at',
        ]
        read_only_fields = fields

    def get_vegetation_indices(self, obj):
        if obj.status != AnalysisRecord.STATUS_COMPLETED:
            return None
        return {
            'ndvi': obj.ndvi,
            'msavi2': obj.msavi2,
            'ndre': obj.ndre,
            'ndmi': obj.ndmi,
            'soc_vis': obj.soc_vis,
            'rvi': obj.rvi,
        }

    def get_imagery_quality(self, obj):
        if obj.cloud_cover_percentage is None:
            return None
        return CloudQualityCurve.from_settings().classify(obj.cloud_cover_percentage)

    def get_error(self, obj):
        if obj.status != AnalysisRecord.STATUS_FAILED:
            return None
        return {'code': obj.error_type, 'message': obj.error_message}


class AnalysisRecordDetailSerializer(AnalysisRecordSerializer):
    """Record with its boundary snapshot and recommendations"""

    recommendations = RecommendationSerializer(many=True, read_only=True)

    class Meta(AnalysisRecordSerializer.Meta):
        fields = AnalysisRecordSerializer.Meta.fields + [
            'boundary_geojson',
            'raw_provider_data',
            'recommendations',
        ]
        read_only_fields = fields


class AnalysisRequestSerializer(BoundaryInputMixin):
    """
    Serializer for requesting an analysis

    The boundary is optional; the field's current boundary is used when it
    is omitted.
    """

    analysis_date = serializers.DateField(required=False)
    crop_type = serializers.ChoiceField(choices=CROP_TYPE_CHOICES, required=False)
    run_async = serializers.BooleanField(required=False, default=True)


class MarkImplementedSerializer(serializers.Serializer):
    farmer_feedback = serializers.CharField(required=False, allow_blank=True, max_length=2000)
