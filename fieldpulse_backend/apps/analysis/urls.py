# apps/analysis/urls.py

from django.urls import path
from .views import (
    RequestAnalysisView,
    AnalysisHistoryView,
    AnalysisRecordDetailView,
    FieldRecommendationsView,
    latest_analysis,
    mark_recommendation_implemented,
)

app_name = 'analysis'

urlpatterns = [
    # Field analyses
    path('fields/<str:field_id>/request/', RequestAnalysisView.as_view(), name='request_analysis'),
    path('fields/<str:field_id>/history/', AnalysisHistoryView.as_view(), name='analysis_history'),
    path('fields/<str:field_id>/latest/', latest_analysis, name='latest_analysis'),
    path('records/<uuid:request_id>/', AnalysisRecordDetailView.as_view(), name='record_detail'),

    # Recommendations
    path('fields/<str:field_id>/recommendations/', FieldRecommendationsView.as_view(), name='field_recommendations'),
    path('recommendations/<int:pk>/implemented/', mark_recommendation_implemented, name='mark_implemented'),
]
