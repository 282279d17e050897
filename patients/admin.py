from django.contrib import admin
from .models import OrganizationPatient, Patient


class OrganizationPatientInline(admin.TabularInline):
    model = OrganizationPatient
    extra = 0
    fields = ('organization', 'emr_id_in_org', 'is_active')


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = ('id', 'first_name', 'last_name', 'dob', 'primary_phone', 'is_minor')
    search_fields = ('first_name', 'last_name', 'primary_phone', 'patient_hash')
    readonly_fields = ('patient_hash', 'secondary_hash', 'created_at', 'updated_at')
    inlines = [OrganizationPatientInline]
