from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/runs/', include('dialer.urls')),
    path('api/webhooks/', include('events.urls')),
]
