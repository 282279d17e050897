"""
Dialer Models - run execution entities.

Organizations own campaigns; a campaign is executed as one or more runs; a run
is a set of rows (one per contact) and every provider call placed for a row is
tracked as a Call.
"""

from django.db import models
from django.core.validators import MinValueValidator

from run_engine.constants import DEFAULT_CONCURRENT_CALL_LIMIT
from .metrics import RowDiagnostics, RunMetrics


class Organization(models.Model):
    name = models.CharField(max_length=255)
    phone = models.CharField(
        max_length=20,
        blank=True,
        help_text="Origin number used for outbound calls"
    )
    timezone = models.CharField(
        max_length=64,
        default='America/New_York',
        help_text="IANA timezone used for the office hours gate"
    )
    office_hours = models.JSONField(
        default=dict,
        blank=True,
        help_text='Per weekday window, e.g. {"monday": {"start": "09:00", "end": "17:00"}}'
    )
    concurrent_call_limit = models.PositiveIntegerField(
        default=DEFAULT_CONCURRENT_CALL_LIMIT,
        validators=[MinValueValidator(1)],
        help_text="Maximum active calls across all runs of the organization"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name} ({self.id})"


class Campaign(models.Model):
    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name='campaigns',
    )
    name = models.CharField(max_length=255)
    agent_id = models.CharField(
        max_length=255,
        help_text="Provider agent that runs the call script"
    )
    config = models.JSONField(
        default=dict,
        blank=True,
        help_text="Campaign configuration; the ingestion field schema lives under 'variables'"
    )
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return self.name


class Run(models.Model):
    """
    One execution of a campaign against an uploaded list of contacts.

    `config` holds dispatch tuning (calls_per_minute, max_retries, ...) and
    `metadata` holds the serialized RunMetrics document.
    """

    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('processing', 'Processing'),
        ('ready', 'Ready'),
        ('running', 'Running'),
        ('paused', 'Paused'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
        ('scheduled', 'Scheduled'),
    ]

    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name='runs',
    )
    campaign = models.ForeignKey(
        Campaign,
        on_delete=models.CASCADE,
        related_name='runs',
    )
    name = models.CharField(max_length=255)
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='draft',
        db_index=True
    )
    scheduled_at = models.DateTimeField(null=True, blank=True)

    custom_prompt = models.TextField(blank=True)
    custom_voicemail_message = models.TextField(blank=True)

    config = models.JSONField(
        default=dict,
        blank=True,
        help_text="batch_size, calls_per_minute, max_retries, concurrency_limit, "
                  "respect_patient_timezone, call_start_hour, call_end_hour"
    )
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Aggregate row/call counters and run timing"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Run {self.id}: {self.name} ({self.status})"

    @property
    def metrics(self) -> RunMetrics:
        return RunMetrics.from_dict(self.metadata)

    def set_metrics(self, metrics: RunMetrics):
        self.metadata = metrics.to_dict()


class Row(models.Model):
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('calling', 'Calling'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
        ('skipped', 'Skipped'),
    ]

    run = models.ForeignKey(
        Run,
        on_delete=models.CASCADE,
        related_name='rows',
    )
    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name='rows',
    )
    patient = models.ForeignKey(
        'patients.Patient',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='rows',
    )

    variables = models.JSONField(
        default=dict,
        help_text="Ingested record (patient and campaign fields)"
    )
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='pending',
        db_index=True
    )
    error = models.TextField(blank=True, null=True)

    retry_count = models.PositiveIntegerField(default=0)
    call_attempts = models.PositiveIntegerField(default=0)

    sort_index = models.PositiveIntegerField(default=0)
    priority = models.IntegerField(default=0, help_text="Higher is dialed first")

    provider_call_id = models.CharField(max_length=255, blank=True, null=True)

    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-priority', 'sort_index']

    def __str__(self):
        return f"Row {self.id} of run {self.run_id} ({self.status})"

    @property
    def diagnostics(self) -> RowDiagnostics:
        return RowDiagnostics.from_dict(self.metadata)

    def set_diagnostics(self, diagnostics: RowDiagnostics):
        self.metadata = diagnostics.to_dict()


class Call(models.Model):
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('in-progress', 'In Progress'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
        ('voicemail', 'Voicemail'),
        ('no-answer', 'No Answer'),
    ]

    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name='calls',
    )
    run = models.ForeignKey(
        Run,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='calls',
    )
    row = models.ForeignKey(
        Row,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='calls',
    )
    patient = models.ForeignKey(
        'patients.Patient',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='calls',
    )
    campaign = models.ForeignKey(
        Campaign,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='calls',
    )

    provider_call_id = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        db_index=True,
        help_text="Call identifier returned by the provider"
    )
    agent_id = models.CharField(max_length=255, blank=True)

    direction = models.CharField(max_length=20, default='outbound')
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='pending',
        db_index=True
    )
    to_number = models.CharField(max_length=20)
    from_number = models.CharField(max_length=20, blank=True)

    recording_url = models.URLField(max_length=500, blank=True, null=True)
    transcript = models.TextField(blank=True, null=True)
    analysis = models.JSONField(default=dict, blank=True)
    error = models.TextField(blank=True, null=True)

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Variables sent to the provider, attempt number, row metadata snapshot"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Call {self.provider_call_id}: {self.from_number} → {self.to_number} ({self.status})"
