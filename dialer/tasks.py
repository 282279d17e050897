import logging

from celery.signals import worker_process_init, worker_process_shutdown
from django.utils import timezone

from CELERY_INIT import app
from run_engine.constants import RUN_LOCK_TIMEOUT_SECONDS
from run_engine.redis import conn, RUN_PROCESSING_LOCK_REDIS_KEY
from .models import Run
from .monitor import run_consistency_checks
from .scheduler import RunScheduler
from .utils import complete_run

logger = logging.getLogger(__name__)

_scheduler = None


# ============================================================================
# SCHEDULER LIFECYCLE
# ============================================================================

def get_scheduler() -> RunScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = RunScheduler()
    return _scheduler


@worker_process_init.connect
def init_scheduler(**kwargs):
    global _scheduler
    _scheduler = RunScheduler()
    logger.info("Run scheduler initialized for worker process")


@worker_process_shutdown.connect
def shutdown_scheduler(**kwargs):
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown()
        _scheduler = None
        logger.info("Run scheduler shut down")


# ============================================================================
# RUN LOCK MANAGEMENT
# ============================================================================

def _run_lock_key(run_id):
    return f"{RUN_PROCESSING_LOCK_REDIS_KEY}{run_id}"


def acquire_run_lock(run_id):
    try:
        lock = conn.set(_run_lock_key(run_id), '1', ex=RUN_LOCK_TIMEOUT_SECONDS, nx=True)
        return lock is not None
    except Exception as e:
        logger.error(f"Error acquiring run lock for {run_id}: {e}")
        return False


def refresh_run_lock(run_id):
    try:
        conn.expire(_run_lock_key(run_id), RUN_LOCK_TIMEOUT_SECONDS)
    except Exception as e:
        logger.error(f"Error refreshing run lock for {run_id}: {e}")


def release_run_lock(run_id):
    try:
        conn.delete(_run_lock_key(run_id))
        return True
    except Exception as e:
        logger.error(f"Error releasing run lock for {run_id}: {e}")
        return False


# ============================================================================
# RUN PROCESSING - MAIN ENTRY POINT
# ============================================================================

@app.task(bind=True)
def process_run(self, run_id, org_id):
    if not acquire_run_lock(run_id):
        logger.info(f"Run {run_id} already has a dispatch loop, skipping")
        return {
            'status': 'skipped',
            'reason': 'run_locked',
            'timestamp': timezone.now().isoformat()
        }

    started = timezone.now()
    try:
        logger.info(f"=== RUN {run_id} PROCESSING START ===")
        result = get_scheduler().process_run(run_id, org_id, heartbeat=lambda: refresh_run_lock(run_id))
        result['timestamp'] = started.isoformat()
        result['duration_seconds'] = (timezone.now() - started).total_seconds()
        logger.info(f"=== RUN {run_id} PROCESSING END === {result['status']}")
        return result

    except Exception as exc:
        logger.exception(f"Error processing run {run_id}: {exc}")
        return {
            'status': 'error',
            'error': str(exc),
            'timestamp': timezone.now().isoformat()
        }

    finally:
        release_run_lock(run_id)


# ============================================================================
# SCHEDULED RUNS
# ============================================================================

@app.task(bind=True)
def activate_scheduled_run(self, run_id, org_id):
    from .services import activate_scheduled_run as activate
    return activate(run_id, org_id)


@app.task(bind=True)
def check_scheduled_runs(self):
    """Beat task: activate due scheduled runs whose ETA task was lost."""
    from .services import activate_scheduled_run as activate

    due = Run.objects.filter(status='scheduled', scheduled_at__lte=timezone.now()).values_list('id', 'organization_id')
    activated = 0
    for run_id, org_id in due:
        result = activate(run_id, org_id)
        if result.get('success') and result['data'].get('activated'):
            activated += 1
    if activated:
        logger.info(f"Activated {activated} overdue scheduled runs")
    return activated


# ============================================================================
# CONSISTENCY SWEEP
# ============================================================================

@app.task(bind=True)
def sweep_running_runs(self):
    summary = {'runs': 0, 'webhook_fixes': 0, 'stuck_resets': 0, 'completed': 0}
    for run_id in Run.objects.filter(status='running').values_list('id', flat=True):
        try:
            checks = run_consistency_checks(run_id)
            summary['runs'] += 1
            summary['webhook_fixes'] += checks['webhook_fixes']
            summary['stuck_resets'] += checks['stuck_resets']
            if complete_run(run_id):
                summary['completed'] += 1
        except Exception as exc:
            logger.exception(f"Consistency sweep failed for run {run_id}: {exc}")

    if summary['webhook_fixes'] or summary['stuck_resets'] or summary['completed']:
        logger.info(f"Consistency sweep: {summary}")
    return summary
