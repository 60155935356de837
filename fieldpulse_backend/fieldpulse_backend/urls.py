from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/v1/fields/', include('apps.fields.urls')),
    path('api/v1/analysis/', include('apps.analysis.urls')),
]
