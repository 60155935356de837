# apps/fields/serializers.py

from rest_framework import serializers

from core.exceptions import BoundaryError
from .models import BoundaryPoint, Field
from .services import BoundaryService


class BoundaryPointSerializer(serializers.ModelSerializer):
    """Serializer for individual boundary points"""

    class Meta:
        model = BoundaryPoint
        fields = [
            'sequence',
            'latitude',
            'longitude',
            'accuracy',
            'recorded_at',
        ]
        read_only_fields = fields


class PointInputSerializer(serializers.Serializer):
    """One tapped or recorded position"""

    lat = serializers.FloatField()
    lng = serializers.FloatField()
    accuracy = serializers.FloatField(required=False, allow_null=True, min_value=0)
    recorded_at = serializers.DateTimeField(required=False, allow_null=True)


class BoundaryInputMixin(serializers.Serializer):
    """
    Accepts a boundary either as a GeoJSON Polygon ('boundary') or as a list
    of points ('points') and finalizes it during validation
    """

    boundary = serializers.JSONField(
        required=False,
        write_only=True,
        help_text="GeoJSON Polygon (ring of [lng, lat]; open or closed)"
    )
    points = serializers.ListField(
        child=PointInputSerializer(),
        required=False,
        write_only=True,
        help_text="List of {lat, lng, accuracy} objects in boundary order"
    )

    boundary_required = False

    def validate(self, attrs):
        attrs = super().validate(attrs)

        if attrs.get('boundary') and attrs.get('points'):
            raise serializers.ValidationError("Provide either 'boundary' or 'points', not both")

        try:
            finalized = BoundaryService.boundary_from_payload(attrs)
        except BoundaryError as e:
            raise serializers.ValidationError({'boundary': e.as_dict()})

        if finalized is None and self.boundary_required:
            raise serializers.ValidationError({'boundary': "A boundary is required"})

        attrs['finalized_boundary'] = finalized
        return attrs


class FieldSerializer(serializers.ModelSerializer):
    """Basic serializer for Field model"""

    area_acres = serializers.SerializerMethodField()

    class Meta:
        model = Field
        fields = [
            'field_id',
            'name',
            'crop_type',
            'crop_variety',
            'state',
            'area_hectares',
            'area_acres',
            'acquisition_mode',
            'boundary_version',
            'center_latitude',
            'center_longitude',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_area_acres(self, obj):
        return obj.get_area_in_acres()


class FieldDetailSerializer(FieldSerializer):
    """Detailed serializer with boundary and latest analysis"""

    boundary_points = BoundaryPointSerializer(many=True, read_only=True)
    boundary_accuracy = serializers.SerializerMethodField()
    latest_analysis = serializers.SerializerMethodField()

    class Meta(FieldSerializer.Meta):
        fields = FieldSerializer.Meta.fields + [
            'planting_date',
            'expected_harvest_date',
            'address',
            'boundary_geojson',
            'perimeter_meters',
            'boundary_accuracy_meters',
            'boundary_points',
            'boundary_accuracy',
            'latest_analysis',
        ]
        read_only_fields = fields

    def get_boundary_accuracy(self, obj):
        return BoundaryService.calculate_boundary_accuracy(obj.boundary_points.all())

    def get_latest_analysis(self, obj):
        latest = obj.analyses.filter(status='completed').order_by('-analysis_date', '-completed_at').first()
        if not latest:
            return None

        return {
            'request_id': str(latest.request_id),
            'analysis_date': latest.analysis_date.isoformat(),
            'ndvi': latest.ndvi,
            'health_status': latest.health_status,
            'water_stress_level': latest.water_stress_level,
            'crop_stage': latest.crop_stage,
            'quality_score': latest.quality_score,
        }


class FieldCreateSerializer(BoundaryInputMixin, serializers.ModelSerializer):
    """Serializer for creating a new field (boundary optional)"""

    class Meta:
        model = Field
        fields = [
            'name',
            'crop_type',
            'crop_variety',
            'planting_date',
            'expected_harvest_date',
            'address',
            'boundary',
            'points',
        ]

    def validate(self, attrs):
        planting_date = attrs.get('planting_date')
        harvest_date = attrs.get('expected_harvest_date')
        if planting_date and harvest_date and harvest_date < planting_date:
            raise serializers.ValidationError({
                'expected_harvest_date': "Expected harvest date must be after planting date"
            })
        return super().validate(attrs)


class FieldUpdateSerializer(serializers.ModelSerializer):
    """Serializer for updating field details (not the boundary)"""

    class Meta:
        model = Field
        fields = [
            'name',
            'crop_type',
            'crop_variety',
            'planting_date',
            'expected_harvest_date',
            'address',
        ]

    def validate(self, attrs):
        planting_date = attrs.get('planting_date', getattr(self.instance, 'planting_date', None))
        harvest_date = attrs.get('expected_harvest_date', getattr(self.instance, 'expected_harvest_date', None))
        if planting_date and harvest_date and harvest_date < planting_date:
            raise serializers.ValidationError({
                'expected_harvest_date': "Expected harvest date must be after planting date"
            })
        return attrs


class FieldRemapSerializer(BoundaryInputMixin):
    """Serializer for replacing a field boundary"""

    boundary_required = True


class BoundaryValidationSerializer(BoundaryInputMixin):
    """Dry-run boundary check; errors are reported in the response body"""

    def validate(self, attrs):
        if attrs.get('boundary') and attrs.get('points'):
            raise serializers.ValidationError("Provide either 'boundary' or 'points', not both")
        return attrs


class GPSTraceSerializer(serializers.Serializer):
    """Serializer for an uploaded GPS walk"""

    trace = serializers.ListField(
        child=PointInputSerializer(),
        min_length=3,
        help_text="Recorded positions in walking order"
    )
    min_displacement_meters = serializers.FloatField(required=False, min_value=0)
    field_id = serializers.CharField(
        required=False,
        help_text="Apply the traced boundary to this field"
    )
