"""
Run dispatch loop.

RunScheduler owns every piece of mutable dispatch state (runs being
processed, per-run batch sizes, last call times, in-flight row ids and the
metric debouncer). One instance lives per worker process (see dialer.tasks);
tests build their own with a fake clock and sleep.

Per iteration the loop re-reads the run, applies the office hours gate,
computes call capacity, claims a batch of pending rows and dispatches them one
by one at the run's calls-per-minute pace. Batch size grows by one on a
>=90% dispatch success rate and shrinks by a quarter below 70%.
"""

import logging
import math
import threading
import time
from datetime import timedelta

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from events.notifier import MetricDebouncer, publish_org_event, publish_run_event
from patients.models import Patient
from patients.utils import find_or_create_patient
from run_engine.constants import (
    BACKOFF_BASE_SECONDS, BACKOFF_MAX_MULTIPLIER, BATCH_ADJUSTMENT_FACTOR, BATCH_GROW_SUCCESS_RATE,
    BATCH_SHRINK_SUCCESS_RATE, CONSECUTIVE_ERROR_THRESHOLD, IN_FLIGHT_RESET_SECONDS, IN_FLIGHT_SLEEP_SECONDS,
    INITIAL_BATCH_SIZE, MAX_BATCH_SIZE, MIN_BATCH_SIZE, NO_CAPACITY_SLEEP_SECONDS, OFFICE_HOURS_RECHECK_SECONDS,
    PAUSE_REASON_OFFICE_HOURS, PROVIDER_RECHECK_DELAY_SECONDS, PROVIDER_RECHECK_WINDOW_SECONDS,
    STUCK_CHECK_INTERVAL_SECONDS,
)
from run_engine.exceptions import ConcurrencyConflict, ProviderError, RunEngineError
from run_engine.provider import provider_client
from .models import Call, Row, Run
from .monitor import run_consistency_checks
from .utils import (
    build_call_metadata, build_call_variables, claim_row, call_spacing_seconds, complete_run, fail_run,
    find_recent_call_for_row, get_available_capacity, get_max_retries, has_open_rows, is_within_office_hours,
    is_within_patient_hours, now_iso, pause_for_office_hours, resolve_row_phone, resume_from_office_hours,
)

logger = logging.getLogger(__name__)

DISPATCHED = 'dispatched'
FAILED = 'failed'
SKIPPED = 'skipped'
INVALID = 'invalid'
CONFLICT = 'conflict'


class RunScheduler:
    def __init__(self, provider=None, debouncer=None, sleep=time.sleep, clock=time.monotonic):
        self.provider = provider or provider_client
        self.debouncer = debouncer or MetricDebouncer(clock=clock)
        self._sleep = sleep
        self._clock = clock

        self.processing = set()
        self.batch_sizes = {}
        self.last_call_times = {}
        self.in_flight = {}
        self._in_flight_cleared_at = {}
        self._lock = threading.Lock()

    def shutdown(self):
        self.debouncer.flush_all()

    def is_processing(self, run_id):
        return run_id in self.processing

    # ========================================================================
    # BATCH SIZING
    # ========================================================================

    def get_batch_size(self, run) -> int:
        if run.id not in self.batch_sizes:
            configured = (run.config or {}).get('batch_size') or INITIAL_BATCH_SIZE
            self.batch_sizes[run.id] = max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, int(configured)))
        return self.batch_sizes[run.id]

    def adjust_batch_size(self, run_id, success_count, attempted) -> int:
        size = self.batch_sizes.get(run_id, INITIAL_BATCH_SIZE)
        if attempted <= 0:
            return size

        success_rate = success_count / attempted
        if success_rate >= BATCH_GROW_SUCCESS_RATE:
            size = min(MAX_BATCH_SIZE, size + 1)
        elif success_rate < BATCH_SHRINK_SUCCESS_RATE:
            size = max(MIN_BATCH_SIZE, math.floor(size * BATCH_ADJUSTMENT_FACTOR))

        self.batch_sizes[run_id] = size
        logger.debug(f"Run {run_id} batch size {size} (success rate {success_rate:.2f})")
        return size

    def shrink_batch_size(self, run_id) -> int:
        size = self.batch_sizes.get(run_id, INITIAL_BATCH_SIZE)
        size = max(MIN_BATCH_SIZE, math.floor(size * BATCH_ADJUSTMENT_FACTOR))
        self.batch_sizes[run_id] = size
        return size

    # ========================================================================
    # MAIN LOOP
    # ========================================================================

    def process_run(self, run_id, org_id, heartbeat=None):
        with self._lock:
            if run_id in self.processing:
                logger.info(f"Run {run_id} is already being processed")
                return {'status': 'skipped', 'reason': 'already_processing'}
            self.processing.add(run_id)

        logger.info(f"Starting to process run {run_id} for org {org_id}")
        try:
            return self._run_loop(run_id, org_id, heartbeat)
        except Exception as exc:
            logger.exception(f"Error processing run {run_id}: {exc}")
            try:
                fail_run(run_id, exc)
            except Exception as e:
                logger.exception(f"Could not mark run {run_id} failed: {e}")
            return {'status': 'failed', 'error': str(exc)}
        finally:
            self.debouncer.flush_all(run_id)
            with self._lock:
                self.processing.discard(run_id)
                self.in_flight.pop(run_id, None)
                self._in_flight_cleared_at.pop(run_id, None)
                self.last_call_times.pop(run_id, None)

    def _run_loop(self, run_id, org_id, heartbeat=None):
        consecutive_errors = 0
        last_stuck_check = self._clock()
        self._in_flight_cleared_at[run_id] = self._clock()

        while True:
            self.debouncer.flush_due()
            if heartbeat:
                heartbeat()

            run = (
                Run.objects
                .select_related('organization', 'campaign')
                .filter(id=run_id, organization_id=org_id)
                .first()
            )
            if run is None:
                logger.error(f"Run {run_id} not found, stopping processing")
                return {'status': 'stopped', 'reason': 'not_found'}

            organization = run.organization

            if run.status == 'paused' and run.metrics.run.pause_reason == PAUSE_REASON_OFFICE_HOURS:
                if is_within_office_hours(organization):
                    logger.info(f"Run {run_id} back inside office hours, resuming")
                    resume_from_office_hours(run)
                else:
                    self._sleep(OFFICE_HOURS_RECHECK_SECONDS)
                continue

            if run.status != 'running':
                logger.info(f"Run {run_id} is not running (status: {run.status}), stopping processing")
                return {'status': 'stopped', 'reason': f'run_{run.status}'}

            if not is_within_office_hours(organization):
                logger.info(f"Run {run_id} paused: outside of office hours for org {org_id}")
                pause_for_office_hours(run)
                self._sleep(OFFICE_HOURS_RECHECK_SECONDS)
                continue

            if self._clock() - last_stuck_check >= STUCK_CHECK_INTERVAL_SECONDS:
                run_consistency_checks(run_id, debouncer=self.debouncer)
                last_stuck_check = self._clock()

            capacity = get_available_capacity(run, organization)
            if capacity <= 0:
                logger.info(f"No available call slots for run {run_id}, waiting...")
                self._sleep(NO_CAPACITY_SLEEP_SECONDS)
                continue

            batch = self._next_batch(run, min(capacity, self.get_batch_size(run)))

            if not batch:
                if not has_open_rows(run_id):
                    self.debouncer.flush_all(run_id)
                    if complete_run(run_id):
                        return {'status': 'completed'}
                    continue
                self._sleep(IN_FLIGHT_SLEEP_SECONDS)
                continue

            success_count = 0
            attempted = 0
            for row in batch:
                if not Run.objects.filter(id=run_id, status='running').exists():
                    logger.info(f"Run {run_id} left running state mid-batch")
                    break

                outcome = self.dispatch_row(run, organization, row)
                if outcome == DISPATCHED:
                    success_count += 1
                    attempted += 1
                    consecutive_errors = 0
                elif outcome == FAILED:
                    attempted += 1
                    consecutive_errors += 1
                    if consecutive_errors >= CONSECUTIVE_ERROR_THRESHOLD:
                        size = self.shrink_batch_size(run_id)
                        backoff = BACKOFF_BASE_SECONDS * min(BACKOFF_MAX_MULTIPLIER, consecutive_errors)
                        logger.warning(
                            f"{consecutive_errors} consecutive errors on run {run_id}, "
                            f"batch size now {size}, backing off {backoff}s"
                        )
                        self._sleep(backoff)

            self.adjust_batch_size(run_id, success_count, attempted)

    def _next_batch(self, run, size):
        now = self._clock()
        in_flight = self.in_flight.setdefault(run.id, set())
        if now - self._in_flight_cleared_at.get(run.id, now) > IN_FLIGHT_RESET_SECONDS:
            in_flight.clear()
            self._in_flight_cleared_at[run.id] = now

        rows = list(
            Row.objects
            .select_related('patient')
            .filter(run_id=run.id, status='pending')
            .exclude(id__in=in_flight)
            .order_by('-priority', 'sort_index')[:size]
        )
        in_flight.update(row.id for row in rows)
        return rows

    def _wait_for_rate_limit(self, run):
        last = self.last_call_times.get(run.id)
        if last is None:
            return
        wait = call_spacing_seconds(run) - (self._clock() - last)
        if wait > 0:
            self._sleep(wait)

    # ========================================================================
    # ROW DISPATCH
    # ========================================================================

    def dispatch_row(self, run, organization, row) -> str:
        """
        Claim and dispatch one row. Never raises for row-level problems; the
        outcome string tells the loop how to account for the row.
        """
        self._wait_for_rate_limit(run)

        try:
            claim_row(row.id)
        except ConcurrencyConflict:
            logger.debug(f"Row {row.id} already claimed, skipping")
            return CONFLICT

        row.status = 'calling'
        campaign = run.campaign
        try:
            variables = row.variables or {}
            phone = resolve_row_phone(variables)
            if not phone:
                Row.objects.filter(id=row.id).update(
                    status='failed',
                    error='No phone number found',
                    updated_at=timezone.now()
                )
                self.debouncer.increment(run.id, 'calls.failed')
                return INVALID

            if (run.config or {}).get('respect_patient_timezone') and \
                    not is_within_patient_hours(run, organization, variables):
                self._skip_for_patient_hours(run, row)
                return SKIPPED

            patient = self._ensure_patient(organization, row)
            call_variables = build_call_variables(row, run, organization, campaign, patient)
            metadata = build_call_metadata(row, run, organization, campaign, patient.id if patient else None)

            self.last_call_times[run.id] = self._clock()
            try:
                provider_call_id = self.provider.create_phone_call(
                    to_number=phone,
                    from_number=organization.phone,
                    agent_id=campaign.agent_id,
                    variables=call_variables,
                    metadata=metadata,
                )
            except ProviderError as e:
                logger.warning(f"Provider error for row {row.id}: {e}. Checking whether the call was placed anyway")
                self._sleep(PROVIDER_RECHECK_DELAY_SECONDS)
                since = timezone.now() - timedelta(seconds=PROVIDER_RECHECK_WINDOW_SECONDS)
                existing = find_recent_call_for_row(row.id, since)
                if existing is None:
                    self._revert_after_provider_error(row, e)
                    return FAILED
                logger.info(f"Call {existing.provider_call_id} exists for row {row.id} despite provider error")
                provider_call_id = existing.provider_call_id

            self._record_dispatch(run, organization, campaign, row, patient, phone, provider_call_id, call_variables)
            return DISPATCHED

        except Exception as exc:
            logger.error(f"Error dispatching call for row {row.id}: {exc}")
            self._handle_row_failure(run, row, exc)
            return FAILED

    def _skip_for_patient_hours(self, run, row):
        diagnostics = row.diagnostics
        diagnostics.last_skip_reason = 'timezone_restriction'
        diagnostics.last_skip_time = now_iso()
        Row.objects.filter(id=row.id).update(
            status='pending',
            metadata=diagnostics.to_dict(),
            updated_at=timezone.now()
        )
        self.debouncer.increment(run.id, 'calls.skipped')
        logger.info(f"Skipping row {row.id}: outside patient calling hours")

    def _ensure_patient(self, organization, row):
        if row.patient_id:
            return row.patient

        variables = row.variables or {}
        first_name = variables.get('firstName')
        last_name = variables.get('lastName')
        dob = variables.get('dob')
        if not (first_name and last_name and dob):
            return None

        try:
            patient_id, _ = find_or_create_patient(
                first_name, last_name, dob, resolve_row_phone(variables), organization.id
            )
            return Patient.objects.get(id=patient_id)
        except (RunEngineError, Patient.DoesNotExist) as e:
            logger.warning(f"Could not resolve patient for row {row.id}, dispatching without one: {e}")
            return None

    def _record_dispatch(self, run, organization, campaign, row, patient, phone, provider_call_id, call_variables):
        with transaction.atomic():
            call, _ = Call.objects.get_or_create(
                provider_call_id=provider_call_id,
                defaults={
                    'organization': organization,
                    'run': run,
                    'row_id': row.id,
                    'patient': patient,
                    'campaign': campaign,
                    'agent_id': campaign.agent_id,
                    'direction': 'outbound',
                    'status': 'pending',
                    'to_number': phone,
                    'from_number': organization.phone or '',
                    'metadata': {
                        'variables': call_variables,
                        'attempt': row.call_attempts + 1,
                        'row_metadata': row.metadata,
                    },
                },
            )

            diagnostics = row.diagnostics
            diagnostics.last_call_time = now_iso()
            Row.objects.filter(id=row.id).update(
                provider_call_id=provider_call_id,
                call_attempts=F('call_attempts') + 1,
                patient=patient,
                metadata=diagnostics.to_dict(),
                updated_at=timezone.now()
            )

            locked_run = Run.objects.select_for_update().get(id=run.id)
            metrics = locked_run.metrics
            metrics.run.last_call_time = diagnostics.last_call_time
            locked_run.set_metrics(metrics)
            locked_run.save(update_fields=['metadata', 'updated_at'])

        self.debouncer.increment(run.id, 'calls.total')
        self.debouncer.increment(run.id, 'calls.calling')

        publish_run_event(run.id, 'call-started', {
            'rowId': row.id,
            'callId': call.id,
            'variables': call_variables,
        })
        publish_org_event(organization.id, 'call-started', {
            'runId': run.id,
            'rowId': row.id,
            'callId': call.id,
        })
        logger.info(f"Call {call.id} created for row {row.id} (provider id {provider_call_id})")
        return call

    def _revert_after_provider_error(self, row, exc):
        # Provider outages do not spend the row's retry budget.
        diagnostics = row.diagnostics
        diagnostics.last_error = str(exc)
        diagnostics.last_error_time = now_iso()
        Row.objects.filter(id=row.id).update(
            status='pending',
            error=str(exc),
            metadata=diagnostics.to_dict(),
            updated_at=timezone.now()
        )
        logger.info(f"Row {row.id} returned to pending after provider error")

    def _handle_row_failure(self, run, row, exc):
        max_retries = get_max_retries(run)
        diagnostics = row.diagnostics
        diagnostics.last_error = str(exc)
        diagnostics.last_error_time = now_iso()

        if row.retry_count < max_retries:
            Row.objects.filter(id=row.id).update(
                status='pending',
                retry_count=row.retry_count + 1,
                error=str(exc),
                metadata=diagnostics.to_dict(),
                updated_at=timezone.now()
            )
            logger.info(f"Row {row.id} will be retried ({row.retry_count + 1}/{max_retries})")
        else:
            Row.objects.filter(id=row.id).update(
                status='failed',
                error=f"Max retries exceeded: {exc}",
                metadata=diagnostics.to_dict(),
                updated_at=timezone.now()
            )
            self.debouncer.increment(run.id, 'calls.failed')
            logger.warning(f"Row {row.id} failed permanently after {row.retry_count} retries")
