# apps/fields/models.py

import uuid

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models


CROP_TYPE_CHOICES = [
    ('wheat', 'Wheat'),
    ('rice', 'Rice'),
    ('maize', 'Maize'),
    ('sugarcane', 'Sugarcane'),
    ('soybean', 'Soybean'),
    ('cotton', 'Cotton'),
    ('potato', 'Potato'),
    ('tomato', 'Tomato'),
    ('other', 'Other'),
]

ACQUISITION_MODE_CHOICES = [
    ('manual', 'Manual (map taps)'),
    ('continuous', 'Continuous (GPS walk)'),
    ('drawn', 'Drawn on map'),
]


def generate_field_id():
    return f"FLD-{uuid.uuid4().hex[:8].upper()}"


class FieldQuerySet(models.QuerySet):

    def visible_to(self, user):
        """Staff see every field, everyone else only their own"""
        if user.is_staff:
            return self
        return self.filter(owner=user)


class Field(models.Model):
    """A mapped (or yet to be mapped) crop field"""

    STATE_UNMAPPED = 'unmapped'
    STATE_MAPPED = 'mapped'
    STATE_ANALYZED = 'analyzed'

    STATE_CHOICES = [
        (STATE_UNMAPPED, 'Unmapped'),
        (STATE_MAPPED, 'Mapped'),
        (STATE_ANALYZED, 'Analyzed'),
    ]

    objects = FieldQuerySet.as_manager()

    # Unique Identifier
    field_id = models.CharField(
        max_length=20,
        unique=True,
        db_index=True,
        default=generate_field_id,
        help_text='Public field identifier (e.g., FLD-1A2B3C4D)'
    )

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='fields',
        help_text='User who mapped the field'
    )

    # Crop Details
    name = models.CharField(max_length=200)
    crop_type = models.CharField(max_length=20, choices=CROP_TYPE_CHOICES, default='other', db_index=True)
    crop_variety = models.CharField(max_length=100, blank=True, default='')
    planting_date = models.DateField(null=True, blank=True)
    expected_harvest_date = models.DateField(null=True, blank=True)
    address = models.CharField(max_length=255, blank=True, default='')

    # Lifecycle
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default=STATE_UNMAPPED, db_index=True)

    # Boundary (GeoJSON Polygon, closed ring of [lng, lat])
    boundary_geojson = models.JSONField(null=True, blank=True, help_text='Current field boundary polygon')
    area_hectares = models.DecimalField(
        max_digits=12, decimal_places=4, null=True, blank=True,
        validators=[MinValueValidator(0)]
    )
    perimeter_meters = models.FloatField(null=True, blank=True)
    center_latitude = models.FloatField(null=True, blank=True)
    center_longitude = models.FloatField(null=True, blank=True)
    acquisition_mode = models.CharField(max_length=20, choices=ACQUISITION_MODE_CHOICES, null=True, blank=True)
    boundary_accuracy_meters = models.FloatField(null=True, blank=True, help_text='Average GPS accuracy in meters')
    boundary_version = models.PositiveIntegerField(default=0, help_text='Incremented on every remap')

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'fields'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['state']),
            models.Index(fields=['crop_type']),
        ]
        verbose_name = 'Field'
        verbose_name_plural = 'Fields'

    def __str__(self):
        return f"{self.field_id} - {self.name}"

    def get_area_in_acres(self):
        if self.area_hectares is None:
            return None
        return round(float(self.area_hectares) * 2.47105, 4)

    def get_center_coordinates(self):
        if self.center_latitude is None:
            return None
        return {'latitude': self.center_latitude, 'longitude': self.center_longitude}

    def get_boundary_ring(self):
        """Closed ring of [lng, lat] pairs, or an empty list when unmapped"""
        if not self.boundary_geojson:
            return []
        return self.boundary_geojson['coordinates'][0]


class BoundaryPoint(models.Model):
    """Individual points that make up the current field boundary"""
    field = models.ForeignKey(Field, on_delete=models.CASCADE, related_name='boundary_points')
    sequence = models.IntegerField(help_text='Order of points in polygon (0-indexed)')
    latitude = models.FloatField()
    longitude = models.FloatField()
    accuracy = models.FloatField(null=True, blank=True, help_text='GPS accuracy in meters')
    recorded_at = models.DateTimeField(null=True, blank=True, help_text='When this point was recorded')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'field_boundary_points'
        ordering = ['sequence']
        unique_together = ['field', 'sequence']
        indexes = [models.Index(fields=['field', 'sequence'])]
        verbose_name = 'Field Boundary Point'
        verbose_name_plural = 'Field Boundary Points'

    def __str__(self):
        return f"{self.field.field_id} - Point {self.sequence}"
