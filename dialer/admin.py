from django.contrib import admin
from .models import Call, Campaign, Organization, Row, Run


# Inline for Row in Run admin
class RowInline(admin.TabularInline):
    model = Row
    extra = 0
    readonly_fields = ('status', 'retry_count', 'call_attempts', 'provider_call_id')
    fields = ('sort_index', 'priority', 'status', 'retry_count', 'call_attempts', 'provider_call_id', 'error')
    show_change_link = True


# Inline for Call in Row admin
class CallInline(admin.TabularInline):
    model = Call
    extra = 0
    readonly_fields = ('provider_call_id', 'status', 'to_number', 'created_at')
    fields = ('provider_call_id', 'status', 'to_number', 'created_at')


@admin.register(Organization)
class OrganizationAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'phone', 'timezone', 'concurrent_call_limit')
    search_fields = ('name', 'phone')


@admin.register(Campaign)
class CampaignAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'organization', 'agent_id', 'is_active', 'created_at')
    list_filter = ('is_active', 'organization')
    search_fields = ('name', 'agent_id')


@admin.register(Run)
class RunAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'organization', 'campaign', 'status', 'scheduled_at', 'created_at')
    list_filter = ('status', 'organization', 'created_at')
    search_fields = ('name', 'campaign__name')
    readonly_fields = ('created_at', 'updated_at')
    inlines = [RowInline]
    fieldsets = (
        ('Run', {
            'fields': ('organization', 'campaign', 'name', 'status', 'scheduled_at')
        }),
        ('Agent Overrides', {
            'fields': ('custom_prompt', 'custom_voicemail_message')
        }),
        ('Config & Metrics', {
            'fields': ('config', 'metadata', 'created_at', 'updated_at')
        }),
    )


@admin.register(Row)
class RowAdmin(admin.ModelAdmin):
    list_display = ('id', 'run', 'patient', 'status', 'retry_count', 'call_attempts', 'updated_at')
    list_filter = ('status', 'run')
    search_fields = ('provider_call_id', 'patient__last_name')
    inlines = [CallInline]


@admin.register(Call)
class CallAdmin(admin.ModelAdmin):
    list_display = ('provider_call_id', 'run', 'to_number', 'status', 'direction', 'created_at')
    list_filter = ('status', 'direction', 'organization', 'created_at')
    search_fields = ('provider_call_id', 'to_number', 'from_number')
    readonly_fields = ('provider_call_id', 'created_at', 'updated_at')
    date_hierarchy = 'created_at'
