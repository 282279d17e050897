"""
URL configuration for run management endpoints.
"""

from django.urls import path
from . import views

urlpatterns = [
    path('create/', views.create_run, name='create_run'),
    path('<int:run_id>/', views.run_status, name='run_status'),
    path('<int:run_id>/upload/', views.upload_rows, name='upload_rows'),
    path('<int:run_id>/start/', views.start_run, name='start_run'),
    path('<int:run_id>/pause/', views.pause_run, name='pause_run'),
    path('<int:run_id>/schedule/', views.schedule_run, name='schedule_run'),
]
