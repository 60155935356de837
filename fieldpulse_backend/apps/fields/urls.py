# apps/fields/urls.py

from django.urls import path
from .views import (
    FieldCreateView,
    FieldListView,
    FieldDetailView,
    FieldUpdateView,
    field_geojson,
    remap_field,
    validate_boundary,
    upload_gps_trace,
)

app_name = 'fields'

urlpatterns = [
    # Boundary operations
    path('validate-boundary/', validate_boundary, name='validate_boundary'),
    path('gps-trace/', upload_gps_trace, name='gps_trace'),

    # Field CRUD
    path('create/', FieldCreateView.as_view(), name='field_create'),
    path('', FieldListView.as_view(), name='field_list'),
    path('<str:field_id>/', FieldDetailView.as_view(), name='field_detail'),
    path('<str:field_id>/update/', FieldUpdateView.as_view(), name='field_update'),
    path('<str:field_id>/geojson/', field_geojson, name='field_geojson'),
    path('<str:field_id>/remap/', remap_field, name='field_remap'),
]
