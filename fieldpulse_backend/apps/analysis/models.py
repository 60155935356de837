# apps/analysis/models.py

import uuid

from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.db.models import Q

from apps.fields.models import CROP_TYPE_CHOICES, Field


HEALTH_STATUS_CHOICES = (
    ('excellent', 'Excellent'),
    ('good', 'Good'),
    ('fair', 'Fair'),
    ('poor', 'Poor'),
)

WATER_STRESS_CHOICES = (
    ('none', 'None'),
    ('mild', 'Mild'),
    ('moderate', 'Moderate'),
    ('severe', 'Severe'),
)

CROP_STAGE_CHOICES = (
    ('fallow', 'Fallow'),
    ('sowing', 'Sowing'),
    ('vegetative', 'Vegetative'),
    ('reproductive', 'Reproductive'),
    ('maturity', 'Maturity'),
)


class AnalysisRecord(models.Model):
    """
    One vegetation-health analysis of a field

    Records are append-only: failed requests stay behind as audit entries
    and a remap never removes earlier analyses.
    """

    STATUS_PENDING = 'pending'
    STATUS_COMPLETED = 'completed'
    STATUS_FAILED = 'failed'

    STATUS_CHOICES = (
        (STATUS_PENDING, 'Pending'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_FAILED, 'Failed'),
    )

    # Identification
    request_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False, db_index=True)
    field = models.ForeignKey(
        Field,
        on_delete=models.PROTECT,
        related_name='analyses'
    )

    # Request context
    analysis_date = models.DateField(db_index=True)
    crop_type = models.CharField(max_length=20, choices=CROP_TYPE_CHOICES)
    boundary_geojson = models.JSONField(help_text='Boundary analysed (snapshot at request time)')
    boundary_version = models.PositiveIntegerField(default=0)

    # Processing Status
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)
    error_type = models.CharField(max_length=50, null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    provider_name = models.CharField(max_length=50, blank=True, default='')

    # Vegetation Indices
    cloud_cover_percentage = models.FloatField(
        null=True,
        blank=True,
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    ndvi = models.FloatField(
        null=True,
        blank=True,
        validators=[MinValueValidator(-1), MaxValueValidator(1)],
        help_text='Normalized Difference Vegetation Index (-1 to 1)'
    )
    msavi2 = models.FloatField(null=True, blank=True, help_text='Modified Soil Adjusted Vegetation Index 2')
    ndre = models.FloatField(null=True, blank=True, help_text='Normalized Difference Red Edge')
    ndmi = models.FloatField(null=True, blank=True, help_text='Normalized Difference Moisture Index')
    soc_vis = models.FloatField(null=True, blank=True, help_text='Soil organic carbon (visible) proxy, bare soil only')
    rvi = models.FloatField(null=True, blank=True, help_text='Radar Vegetation Index (Sentinel-1)')

    # Classification
    crop_stage = models.CharField(max_length=20, choices=CROP_STAGE_CHOICES, null=True, blank=True)
    health_status = models.CharField(max_length=20, choices=HEALTH_STATUS_CHOICES, null=True, blank=True)
    water_stress_level = models.CharField(max_length=20, choices=WATER_STRESS_CHOICES, null=True, blank=True)
    quality_score = models.FloatField(
        null=True,
        blank=True,
        validators=[MinValueValidator(0), MaxValueValidator(1)]
    )

    # Raw Data
    raw_provider_data = models.JSONField(default=dict, blank=True)

    requested_at = models.DateTimeField(auto_now_add=True, db_index=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'analysis_records'
        ordering = ['-requested_at']
        indexes = [
            models.Index(fields=['field', '-requested_at']),
            models.Index(fields=['field', 'analysis_date']),
            models.Index(fields=['status']),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['field', 'analysis_date'],
                condition=Q(status='completed'),
                name='unique_completed_analysis_per_field_date',
            ),
        ]
        verbose_name = 'Analysis Record'
        verbose_name_plural = 'Analysis Records'

    def __str__(self):
        return f"{self.request_id} - {self.field.field_id} ({self.status})"


class Recommendation(models.Model):
    """Action derived from a completed analysis"""

    PRIORITY_CHOICES = (
        ('critical', 'Critical'),
        ('high', 'High'),
        ('medium', 'Medium'),
        ('low', 'Low'),
    )

    CATEGORY_CHOICES = (
        ('irrigation', 'Irrigation'),
        ('fertilizer', 'Fertilizer'),
        ('pesticide', 'Pesticide'),
        ('harvest', 'Harvest'),
    )

    field = models.ForeignKey(
        Field,
        on_delete=models.CASCADE,
        related_name='recommendations'
    )
    analysis = models.ForeignKey(
        AnalysisRecord,
        on_delete=models.PROTECT,
        related_name='recommendations'
    )

    rule_code = models.CharField(max_length=50)
    rank = models.PositiveSmallIntegerField(default=0, help_text='Rule declaration order')
    title = models.CharField(max_length=200)
    description = models.TextField()
    priority = models.CharField(max_length=20, choices=PRIORITY_CHOICES)
    category = models.CharField(max_length=20, choices=CATEGORY_CHOICES)
    action_items = models.JSONField(default=list)
    estimated_cost = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    timeline = models.CharField(max_length=100, blank=True, default='')

    # Farmer follow-up (the only mutable columns)
    implemented = models.BooleanField(default=False, db_index=True)
    farmer_feedback = models.TextField(null=True, blank=True)
    implemented_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'recommendations'
        ordering = ['-analysis__requested_at', 'rank']
        indexes = [
            models.Index(fields=['field', '-created_at']),
            models.Index(fields=['implemented']),
        ]
        verbose_name = 'Recommendation'
        verbose_name_plural = 'Recommendations'

    def __str__(self):
        return f"{self.field.field_id} - {self.title} ({self.priority})"
