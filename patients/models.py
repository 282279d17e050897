"""
Patient Models - deduplicated contact identities shared across organizations.
"""

from django.db import models


class Patient(models.Model):
    """
    Canonical person record.

    `patient_hash` is the deduplication key computed from phone, DOB and name
    (see patients.utils.generate_patient_hash). Two uploads describing the same
    person resolve to the same row.
    """

    patient_hash = models.CharField(
        max_length=64,
        unique=True,
        help_text="SHA-256 of phone, DOB and name fragments"
    )
    secondary_hash = models.CharField(
        max_length=255,
        blank=True,
        db_index=True,
        help_text="last name, DOB and last four phone digits"
    )
    normalized_phone = models.CharField(
        max_length=20,
        db_index=True,
        help_text="Phone digits only, last 10 digits"
    )

    first_name = models.CharField(max_length=255)
    last_name = models.CharField(max_length=255)
    dob = models.DateField(help_text="Date of birth")
    is_minor = models.BooleanField(default=False)

    primary_phone = models.CharField(max_length=20)
    secondary_phone = models.CharField(max_length=20, blank=True)

    external_ids = models.JSONField(default=dict, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.first_name} {self.last_name} ({self.primary_phone})"


class OrganizationPatient(models.Model):
    organization = models.ForeignKey(
        'dialer.Organization',
        on_delete=models.CASCADE,
        related_name='patient_links',
    )
    patient = models.ForeignKey(
        Patient,
        on_delete=models.CASCADE,
        related_name='organization_links',
    )
    emr_id_in_org = models.CharField(
        max_length=255,
        blank=True,
        help_text="Patient identifier in the organization's EMR"
    )
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = [['organization', 'patient']]

    def __str__(self):
        return f"{self.organization_id} -> {self.patient_id}"
