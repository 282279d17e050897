from django.urls import path
from . import views

urlpatterns = [
    path('provider/<int:org_id>/', views.provider_webhook, name='provider_webhook'),
]
