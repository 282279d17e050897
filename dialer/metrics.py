"""
Typed views over the JSON documents stored in Run.metadata and Row.metadata.

Code inside the engine works with these dataclasses; the dict form only exists
at the model boundary (Run.metrics / Row.diagnostics and their setters).
Unknown keys found in stored documents are carried through untouched.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional


def _known_kwargs(cls, data):
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in names}


def _unknown(cls, data):
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k not in names}


def _drop_none(data):
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class RowCounts:
    total: int = 0
    invalid: int = 0
    reset: int = 0


@dataclass
class CallCounts:
    total: int = 0
    pending: int = 0
    calling: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    voicemail: int = 0
    no_answer: int = 0
    connected: int = 0
    converted: int = 0


@dataclass
class RunTiming:
    created_at: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration: Optional[int] = None
    last_paused_at: Optional[str] = None
    pause_reason: Optional[str] = None
    last_call_time: Optional[str] = None
    scheduled_at: Optional[str] = None
    error: Optional[str] = None
    error_stack: Optional[str] = None
    error_time: Optional[str] = None
    final_counts: Optional[Dict[str, int]] = None


@dataclass
class RunMetrics:
    rows: RowCounts = field(default_factory=RowCounts)
    calls: CallCounts = field(default_factory=CallCounts)
    run: RunTiming = field(default_factory=RunTiming)
    extra: Dict[str, Any] = field(default_factory=dict)

    COUNTER_SECTIONS = ('rows', 'calls')

    @classmethod
    def from_dict(cls, data) -> 'RunMetrics':
        data = data or {}
        extra = {k: v for k, v in data.items() if k not in ('rows', 'calls', 'run')}
        return cls(
            rows=RowCounts(**_known_kwargs(RowCounts, data.get('rows'))),
            calls=CallCounts(**_known_kwargs(CallCounts, data.get('calls'))),
            run=RunTiming(**_known_kwargs(RunTiming, data.get('run'))),
            extra=extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        document = dict(self.extra)
        document['rows'] = asdict(self.rows)
        document['calls'] = asdict(self.calls)
        document['run'] = _drop_none(asdict(self.run))
        return document

    def increment(self, path: str, amount: int = 1) -> int:
        """Add `amount` to a counter addressed as 'section.name', e.g. 'calls.completed'."""
        section_name, _, counter = path.partition('.')
        if section_name not in self.COUNTER_SECTIONS or not counter:
            raise ValueError(f"Unknown metric path: {path}")
        section = getattr(self, section_name)
        if not hasattr(section, counter):
            raise ValueError(f"Unknown metric path: {path}")
        value = getattr(section, counter) + amount
        setattr(section, counter, value)
        return value


@dataclass
class RowDiagnostics:
    status_reset: Optional[bool] = None
    status_reset_at: Optional[str] = None

    stuck_in_calling: Optional[bool] = None
    reset_time: Optional[str] = None
    reset_count: int = 0
    previous_reset_time: Optional[str] = None

    manually_fixed: Optional[bool] = None
    fixed_at: Optional[str] = None
    previous_status: Optional[str] = None
    fix_reason: Optional[str] = None
    call_status: Optional[str] = None

    last_error: Optional[str] = None
    last_error_time: Optional[str] = None
    last_skip_reason: Optional[str] = None
    last_skip_time: Optional[str] = None
    last_call_time: Optional[str] = None

    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data) -> 'RowDiagnostics':
        known = _known_kwargs(cls, data)
        known.pop('extra', None)
        return cls(**known, extra=_unknown(cls, data))

    def to_dict(self) -> Dict[str, Any]:
        document = dict(self.extra)
        values = asdict(self)
        values.pop('extra')
        document.update(_drop_none(values))
        if not document.get('reset_count'):
            document.pop('reset_count', None)
        return document


def call_outcome_deltas(call_status, analysis=None) -> Dict[str, int]:
    """Counter deltas for a call that just reached a terminal status."""
    deltas = {'calls.calling': -1}
    deltas['calls.failed' if call_status == 'failed' else 'calls.completed'] = 1
    if call_status == 'voicemail':
        deltas['calls.voicemail'] = 1
    elif call_status == 'no-answer':
        deltas['calls.no_answer'] = 1

    analysis = analysis or {}
    if analysis.get('patient_reached'):
        deltas['calls.connected'] = 1
    if analysis.get('call_successful') is True:
        deltas['calls.converted'] = 1
    return deltas
