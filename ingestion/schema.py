"""
Field schema describing which spreadsheet columns feed which row variables.

Campaigns store the schema as JSON under `config["variables"]`:

    {
        "patient": {
            "fields": [{"key": "firstName", "label": "First Name",
                        "possibleColumns": ["first name", "first"],
                        "transform": "text", "required": true}, ...],
            "validation": {"requireValidPhone": true, "requireValidDOB": true,
                           "requireName": true}
        },
        "campaign": {"fields": [...]}
    }

Both camelCase and snake_case keys are accepted.
"""

from dataclasses import dataclass, field
from typing import List

TRANSFORMS = ('text', 'short_date', 'long_date', 'phone', 'time', 'provider')


@dataclass
class FieldSpec:
    key: str
    label: str = ''
    possible_columns: List[str] = field(default_factory=list)
    transform: str = 'text'
    required: bool = False

    @classmethod
    def from_dict(cls, data):
        transform = data.get('transform') or 'text'
        if transform == 'provider-name':
            transform = 'provider'
        if transform not in TRANSFORMS:
            transform = 'text'
        key = data['key']
        return cls(
            key=key,
            label=data.get('label') or key,
            possible_columns=list(data.get('possibleColumns') or data.get('possible_columns') or []),
            transform=transform,
            required=bool(data.get('required', False)),
        )


@dataclass
class ValidationRules:
    require_valid_phone: bool = False
    require_valid_dob: bool = False
    require_name: bool = False

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            require_valid_phone=bool(data.get('requireValidPhone', data.get('require_valid_phone', False))),
            require_valid_dob=bool(data.get('requireValidDOB', data.get('require_valid_dob', False))),
            require_name=bool(data.get('requireName', data.get('require_name', False))),
        )


@dataclass
class FieldSchema:
    patient_fields: List[FieldSpec] = field(default_factory=list)
    campaign_fields: List[FieldSpec] = field(default_factory=list)
    validation: ValidationRules = field(default_factory=ValidationRules)

    @classmethod
    def from_config(cls, config):
        """Build a schema from a campaign's `variables` config; malformed parts are ignored."""
        if not isinstance(config, dict):
            return cls()
        patient = config.get('patient') if isinstance(config.get('patient'), dict) else {}
        campaign = config.get('campaign') if isinstance(config.get('campaign'), dict) else {}
        return cls(
            patient_fields=_field_list(patient.get('fields')),
            campaign_fields=_field_list(campaign.get('fields')),
            validation=ValidationRules.from_dict(patient.get('validation')),
        )

    def is_empty(self):
        return not self.patient_fields and not self.campaign_fields

    def all_fields(self):
        return list(self.patient_fields) + list(self.campaign_fields)


def _field_list(raw):
    if not isinstance(raw, list):
        return []
    return [FieldSpec.from_dict(item) for item in raw if isinstance(item, dict) and item.get('key')]
