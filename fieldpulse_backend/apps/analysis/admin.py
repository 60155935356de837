# apps/analysis/admin.py

from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html
from .models import AnalysisRecord, Recommendation


HEALTH_COLORS = {
    'excellent': '#10b981',
    'good': '#84cc16',
    'fair': '#f59e0b',
    'poor': '#ef4444',
}


class RecommendationInline(admin.TabularInline):
    model = Recommendation
    extra = 0
    can_delete = False
    fields = ['rank', 'title', 'priority', 'category', 'implemented']
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(AnalysisRecord)
class AnalysisRecordAdmin(admin.ModelAdmin):
    """Read-only audit view of analysis records"""

    list_display = [
        'request_id',
        'field_link',
        'analysis_date',
        'status',
        'health_badge',
        'ndvi_display',
        'cloud_cover_percentage',
        'requested_at',
    ]

    list_filter = [
        'status',
        'health_status',
        'water_stress_level',
        'crop_stage',
        'analysis_date',
    ]

    search_fields = [
        'request_id',
        'field__field_id',
        'field__name',
    ]

    inlines = [RecommendationInline]
    date_hierarchy = 'analysis_date'
    ordering = ['-requested_at']

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def field_link(self, obj):
        """Link to field admin page"""
        url = reverse('admin:fields_field_change', args=[obj.field.id])
        return format_html('<a href="{}">{}</a>', url, obj.field.field_id)
    field_link.short_description = 'Field'

    def health_badge(self, obj):
        """Display crop health with colored badge"""
        if not obj.health_status:
            return '-'
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 10px; '
            'border-radius: 12px; font-size: 11px; font-weight: bold;">{}</span>',
            HEALTH_COLORS.get(obj.health_status, '#6b7280'), obj.get_health_status_display()
        )
    health_badge.short_description = 'Crop Health'

    def ndvi_display(self, obj):
        if obj.ndvi is None:
            return format_html('<span style="color: #9ca3af;">{}</span>', 'N/A')
        return f"{obj.ndvi:.3f}"
    ndvi_display.short_description = 'NDVI'

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('field')


@admin.register(Recommendation)
class RecommendationAdmin(admin.ModelAdmin):
    list_display = ['title', 'field', 'priority', 'category', 'implemented', 'created_at']
    list_filter = ['priority', 'category', 'implemented']
    search_fields = ['title', 'field__field_id']

    # Only the farmer follow-up columns are editable
    readonly_fields = [
        'field',
        'analysis',
        'rule_code',
        'rank',
        'title',
        'description',
        'priority',
        'category',
        'action_items',
        'estimated_cost',
        'timeline',
        'created_at',
    ]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('field', 'analysis')
