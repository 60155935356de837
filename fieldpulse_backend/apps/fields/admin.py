# apps/fields/admin.py

from django.contrib import admin
from django.utils.html import format_html
from .models import Field, BoundaryPoint


class BoundaryPointInline(admin.TabularInline):
    model = BoundaryPoint
    extra = 0
    can_delete = False
    readonly_fields = ['sequence', 'latitude', 'longitude', 'accuracy', 'recorded_at']

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Field)
class FieldAdmin(admin.ModelAdmin):
    """Admin interface for Field model"""

    list_display = [
        'field_id',
        'name',
        'owner',
        'crop_type',
        'state_badge',
        'size_display',
        'acquisition_mode',
        'analyses_count',
        'created_at'
    ]

    list_filter = [
        'state',
        'crop_type',
        'acquisition_mode',
        'created_at'
    ]

    search_fields = [
        'field_id',
        'name',
        'address',
        'owner__username',
    ]

    # Boundary columns change only through a remap
    readonly_fields = [
        'field_id',
        'state',
        'boundary_geojson',
        'area_hectares',
        'perimeter_meters',
        'center_latitude',
        'center_longitude',
        'acquisition_mode',
        'boundary_accuracy_meters',
        'boundary_version',
        'map_preview',
        'created_at',
        'updated_at',
    ]

    fieldsets = (
        ('Identification', {
            'fields': ('field_id', 'name', 'owner', 'state')
        }),
        ('Crop', {
            'fields': ('crop_type', 'crop_variety', 'planting_date', 'expected_harvest_date', 'address')
        }),
        ('Boundary', {
            'fields': (
                'map_preview',
                'area_hectares',
                'perimeter_meters',
                'acquisition_mode',
                'boundary_accuracy_meters',
                'boundary_version',
                'boundary_geojson',
            ),
            'classes': ('wide',),
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    inlines = [BoundaryPointInline]
    date_hierarchy = 'created_at'
    ordering = ['-created_at']

    def state_badge(self, obj):
        colors = {
            'unmapped': '#9ca3af',
            'mapped': '#3b82f6',
            'analyzed': '#10b981',
        }
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 10px; '
            'border-radius: 12px; font-size: 11px; font-weight: bold;">{}</span>',
            colors.get(obj.state, '#6b7280'), obj.get_state_display().upper()
        )
    state_badge.short_description = 'State'

    def size_display(self, obj):
        """Display field size with both units"""
        if obj.area_hectares is None:
            return format_html('<span style="color: #9ca3af;">{}</span>', 'Unmapped')
        return format_html(
            '<strong>{}</strong> ha<br/>'
            '<span style="color: #6b7280; font-size: 11px;">{} acres</span>',
            f"{float(obj.area_hectares):.2f}",
            f"{obj.get_area_in_acres():.2f}"
        )
    size_display.short_description = 'Size'

    def analyses_count(self, obj):
        return obj.analyses.count()
    analyses_count.short_description = 'Analyses'

    def map_preview(self, obj):
        """Center point link (read-only)"""
        center = obj.get_center_coordinates()
        if not center:
            return 'No boundary data'

        maps_url = f"https://www.google.com/maps?q={center['latitude']},{center['longitude']}&z=16"
        return format_html(
            '<div style="background: #f3f4f6; padding: 15px; border-radius: 8px;">'
            '<p><strong>Center Point:</strong> {}, {}</p>'
            '<p><strong>Boundary Points:</strong> {}</p>'
            '<a href="{}" target="_blank">View on Google Maps</a></div>',
            f"{center['latitude']:.6f}",
            f"{center['longitude']:.6f}",
            obj.boundary_points.count(),
            maps_url
        )
    map_preview.short_description = 'Map Info'
