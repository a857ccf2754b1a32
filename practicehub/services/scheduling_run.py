"""
Scheduling run orchestration.

One pass walks every active client and personal service, runs the recurrence
scheduler for each in its own transaction, and records the outcome on a
SchedulingRunLog. Per-service failures become SchedulingException rows; only
failures of the run itself mark the run as failed.
"""
import threading
import time as time_module
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, List, Optional, Tuple, Union

import pytz
import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal
from ..models.models import (
    ClientService,
    PeopleService,
    SchedulingException,
    SchedulingRunLog,
    utcnow,
)
from .business_time import ensure_utc
from .cache import CacheInvalidator, NullCache
from .errors import RunFatalError, SchedulingError
from .recurrence import ServiceOutcome, is_due, load_scheduled_service, process_due_service, schedulable_rows


logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], Session]

# Serializes runs inside one process; the database check covers other processes
_run_lock = threading.Lock()


@dataclass
class RunCounters:
    total_services_checked: int = 0
    services_found_due: int = 0
    projects_created: int = 0
    services_rescheduled: int = 0
    errors_encountered: int = 0
    ch_services_skipped: int = 0

    def add_outcome(self, outcome: ServiceOutcome) -> None:
        self.services_found_due += int(outcome.found_due)
        self.projects_created += int(outcome.project_created)
        self.services_rescheduled += int(outcome.rescheduled)
        self.ch_services_skipped += int(outcome.ch_skipped)

    def merge(self, other: "RunCounters") -> None:
        for name, value in asdict(other).items():
            setattr(self, name, getattr(self, name) + value)

    def summary(self) -> str:
        text = (
            f"Checked {self.total_services_checked} services, found {self.services_found_due} due. "
            f"Created {self.projects_created} projects"
        )
        if self.errors_encountered:
            text += f", encountered {self.errors_encountered} errors"
        return text + "."


class CounterAccumulator:
    """Sums partial counters reported by worker threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._totals = RunCounters()

    def merge(self, partial: RunCounters) -> None:
        with self._lock:
            self._totals.merge(partial)

    def snapshot(self) -> RunCounters:
        with self._lock:
            return RunCounters(**asdict(self._totals))


@dataclass
class RunResult:
    run_log_id: uuid.UUID
    status: str
    counters: RunCounters
    execution_time_ms: int
    summary: str


@dataclass
class EnsureRunResult:
    ran: bool
    reason: str  # ran|already_completed|in_progress|too_early
    run_log_id: Optional[uuid.UUID] = None
    run: Optional[RunResult] = None


def due_candidates(db: Session) -> List[Tuple[str, uuid.UUID]]:
    """Active services whose client or person is not NLAC."""
    client_rows = (
        schedulable_rows(db, "client", ClientService.id)
        .order_by(ClientService.next_start_date.asc(), ClientService.id.asc())
        .all()
    )
    people_rows = (
        schedulable_rows(db, "people", PeopleService.id)
        .order_by(PeopleService.next_start_date.asc(), PeopleService.id.asc())
        .all()
    )
    return [("client", row_id) for (row_id,) in client_rows] + [("people", row_id) for (row_id,) in people_rows]


def _record_exception(
    db: Session,
    *,
    run_log_id: uuid.UUID,
    kind: str,
    row_id: uuid.UUID,
    service_name: Optional[str],
    error_type: str,
    message: str,
    context: Optional[dict] = None,
) -> None:
    try:
        db.add(
            SchedulingException(
                run_log_id=run_log_id,
                service_kind=kind,
                client_service_id=row_id if kind == "client" else None,
                people_service_id=row_id if kind == "people" else None,
                service_name=service_name,
                error_type=error_type,
                error_message=message,
                context=context or None,
            )
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(
            "scheduling_exception_not_recorded",
            run_log_id=str(run_log_id),
            service_row_id=str(row_id),
            error_type=error_type,
            error=str(e),
        )


def process_service(
    session_factory: SessionFactory,
    kind: str,
    row_id: uuid.UUID,
    *,
    as_of: date,
    run_log_id: uuid.UUID,
    now: datetime,
    cache: CacheInvalidator,
) -> RunCounters:
    """Per-service unit of work in its own session. Never raises."""
    partial = RunCounters(total_services_checked=1)
    db = session_factory()
    service_name: Optional[str] = None
    found_due = False
    try:
        try:
            scheduled = load_scheduled_service(db, kind, row_id, lock=True)
            if scheduled is None:
                db.rollback()
                return partial
            service_name = scheduled.service.name if scheduled.service is not None else None
            found_due = is_due(scheduled.row, as_of)
            outcome = process_due_service(db, scheduled, as_of=as_of, run_log_id=run_log_id, now=now)
            db.commit()
            if outcome.project_type_id is not None:
                cache.invalidate(outcome.project_type_id)
        except SchedulingError as e:
            db.rollback()
            logger.warning(
                "scheduling_service_failed",
                run_log_id=str(run_log_id),
                service_kind=kind,
                service_row_id=str(row_id),
                error_type=e.error_type,
                error=e.message,
            )
            context = dict(e.context)
            context.update(as_of=as_of.isoformat(), exception=type(e).__name__)
            _record_exception(
                db,
                run_log_id=run_log_id,
                kind=kind,
                row_id=row_id,
                service_name=service_name,
                error_type=e.error_type,
                message=e.message,
                context=context,
            )
            partial.errors_encountered += 1
            partial.services_found_due += int(found_due)
            return partial
        except Exception as e:
            db.rollback()
            logger.exception("scheduling_service_crashed", run_log_id=str(run_log_id), service_row_id=str(row_id))
            _record_exception(
                db,
                run_log_id=run_log_id,
                kind=kind,
                row_id=row_id,
                service_name=service_name,
                error_type="unexpected_error",
                message=str(e) or type(e).__name__,
                context={"as_of": as_of.isoformat(), "exception": type(e).__name__},
            )
            partial.errors_encountered += 1
            partial.services_found_due += int(found_due)
            return partial
        partial.add_outcome(outcome)
        return partial
    finally:
        db.close()


def _finalize_run(
    db: Session,
    run_log_id: uuid.UUID,
    *,
    status: str,
    counters: RunCounters,
    execution_time_ms: int,
    summary: Optional[str],
    error_details: Optional[dict] = None,
) -> None:
    run_log = db.query(SchedulingRunLog).filter(SchedulingRunLog.id == run_log_id).first()
    if run_log is None:
        raise RunFatalError(f"Scheduling run log {run_log_id} disappeared")
    for name, value in asdict(counters).items():
        setattr(run_log, name, value)
    run_log.status = status
    run_log.execution_time_ms = execution_time_ms
    run_log.summary = summary
    run_log.error_details = error_details
    run_log.finished_at = utcnow()
    db.commit()


def _mark_failed(session_factory: SessionFactory, run_log_id: uuid.UUID, counters: RunCounters, elapsed_ms: int, error: Exception) -> None:
    db = session_factory()
    try:
        _finalize_run(
            db,
            run_log_id,
            status="failed",
            counters=counters,
            execution_time_ms=elapsed_ms,
            summary=counters.summary() + " Run aborted.",
            error_details={"error": str(error), "type": type(error).__name__},
        )
    except Exception as e:
        db.rollback()
        logger.error("scheduling_run_fail_state_not_saved", run_log_id=str(run_log_id), error=str(e))
    finally:
        db.close()


def run_scheduled_pass(
    as_of: Union[date, datetime],
    run_type: str = "scheduled",
    *,
    trigger_source: Optional[str] = None,
    session_factory: Optional[SessionFactory] = None,
    cancel_event: Optional[threading.Event] = None,
    max_workers: Optional[int] = None,
    cache: Optional[CacheInvalidator] = None,
    now: Optional[datetime] = None,
) -> RunResult:
    """
    Run the scheduler over every candidate service.

    Args:
        as_of: Run date (datetimes are reduced to their date)
        run_type: scheduled|manual|catchup
        trigger_source: Free-form origin recorded on the run log
        session_factory: Creates sessions; one per service plus one for the run log
        cancel_event: Checked between services; completed work is kept
        max_workers: Worker threads (defaults to SCHEDULER_MAX_WORKERS)
        cache: Stage counts cache to invalidate when projects are created
        now: Timestamp written on created rows

    Returns:
        RunResult with the final status and counters

    Raises:
        RunFatalError: the run log could not be written or the pass aborted
    """
    session_factory = session_factory or SessionLocal
    cache = cache or NullCache()
    run_date = as_of.date() if isinstance(as_of, datetime) else as_of
    now = ensure_utc(now or utcnow())
    workers = max_workers or settings.scheduler_max_workers
    started = time_module.monotonic()

    db = session_factory()
    try:
        try:
            run_log = SchedulingRunLog(
                run_date=run_date,
                run_type=run_type,
                trigger_source=trigger_source or run_type,
                status="running",
                started_at=now,
            )
            db.add(run_log)
            db.commit()
            run_log_id = run_log.id
        except Exception as e:
            db.rollback()
            logger.error("scheduling_run_log_not_created", run_date=run_date.isoformat(), error=str(e))
            raise RunFatalError(f"Cannot create scheduling run log: {e}") from e

        accumulator = CounterAccumulator()
        cancelled = False

        def _work(kind: str, row_id: uuid.UUID) -> Optional[RunCounters]:
            if cancel_event is not None and cancel_event.is_set():
                return None
            return process_service(
                session_factory, kind, row_id, as_of=run_date, run_log_id=run_log_id, now=now, cache=cache
            )

        try:
            candidates = due_candidates(db)
            db.rollback()
            logger.info(
                "scheduling_run_started",
                run_log_id=str(run_log_id),
                run_date=run_date.isoformat(),
                run_type=run_type,
                candidates=len(candidates),
                workers=workers,
            )
            if workers <= 1:
                for kind, row_id in candidates:
                    partial = _work(kind, row_id)
                    if partial is None:
                        cancelled = True
                        break
                    accumulator.merge(partial)
            else:
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    futures = [pool.submit(_work, kind, row_id) for kind, row_id in candidates]
                    for future in as_completed(futures):
                        partial = future.result()
                        if partial is None:
                            cancelled = True
                            continue
                        accumulator.merge(partial)
        except Exception as e:
            db.rollback()
            elapsed_ms = int((time_module.monotonic() - started) * 1000)
            logger.exception("scheduling_run_failed", run_log_id=str(run_log_id))
            _mark_failed(session_factory, run_log_id, accumulator.snapshot(), elapsed_ms, e)
            raise RunFatalError(f"Scheduling run {run_log_id} aborted: {e}") from e

        counters = accumulator.snapshot()
        elapsed_ms = int((time_module.monotonic() - started) * 1000)
        status = "cancelled" if cancelled else "completed"
        summary = counters.summary()
        if cancelled:
            summary += " Cancelled before all services were checked."
        try:
            _finalize_run(
                db,
                run_log_id,
                status=status,
                counters=counters,
                execution_time_ms=elapsed_ms,
                summary=summary,
            )
        except Exception as e:
            db.rollback()
            _mark_failed(session_factory, run_log_id, counters, elapsed_ms, e)
            raise RunFatalError(f"Cannot finalize scheduling run {run_log_id}: {e}") from e

        logger.info(
            "scheduling_run_finished",
            run_log_id=str(run_log_id),
            status=status,
            execution_time_ms=elapsed_ms,
            **asdict(counters),
        )
        return RunResult(
            run_log_id=run_log_id,
            status=status,
            counters=counters,
            execution_time_ms=elapsed_ms,
            summary=summary,
        )
    finally:
        db.close()


def ensure_run_for_date(
    target_date: date,
    trigger_source: str = "scheduled",
    *,
    now: Optional[datetime] = None,
    force: bool = False,
    session_factory: Optional[SessionFactory] = None,
    **run_kwargs,
) -> EnsureRunResult:
    """
    Run the pass for ``target_date`` unless it already ran or another run is active.

    A scheduled trigger arriving before the configured run hour is ignored.
    Running rows older than the stale-lock window are marked failed and do
    not block. ``force`` reruns a date that already completed.
    """
    session_factory = session_factory or SessionLocal
    now = ensure_utc(now or utcnow())
    if trigger_source == "scheduled" and target_date == now.date() and now.hour < settings.scheduler_run_hour_utc:
        logger.info("scheduling_run_too_early", target_date=target_date.isoformat(), hour=now.hour)
        return EnsureRunResult(ran=False, reason="too_early")

    if not _run_lock.acquire(blocking=False):
        return EnsureRunResult(ran=False, reason="in_progress")
    try:
        db = session_factory()
        try:
            completed = (
                db.query(SchedulingRunLog)
                .filter(SchedulingRunLog.run_date == target_date, SchedulingRunLog.status == "completed")
                .order_by(SchedulingRunLog.started_at.desc())
                .first()
            )
            if completed is not None and not force:
                return EnsureRunResult(ran=False, reason="already_completed", run_log_id=completed.id)

            stale_cutoff = now - timedelta(minutes=settings.scheduler_stale_lock_minutes)
            for running in db.query(SchedulingRunLog).filter(SchedulingRunLog.status == "running").all():
                if ensure_utc(running.started_at) > stale_cutoff:
                    return EnsureRunResult(ran=False, reason="in_progress", run_log_id=running.id)
                running.status = "failed"
                running.finished_at = now
                running.error_details = {"error": "Run did not finish before the lock expired"}
                logger.warning("scheduling_run_stale_lock_released", run_log_id=str(running.id))
            db.commit()
        finally:
            db.close()

        run_type = trigger_source if trigger_source in ("manual", "catchup") else "scheduled"
        as_of = now if target_date == now.date() else datetime.combine(
            target_date, time(settings.scheduler_run_hour_utc), tzinfo=pytz.UTC
        )
        result = run_scheduled_pass(
            as_of,
            run_type,
            trigger_source=trigger_source,
            session_factory=session_factory,
            now=now,
            **run_kwargs,
        )
        return EnsureRunResult(ran=True, reason="ran", run_log_id=result.run_log_id, run=result)
    finally:
        _run_lock.release()


def run_startup_catchup(
    now: Optional[datetime] = None,
    *,
    session_factory: Optional[SessionFactory] = None,
    **run_kwargs,
) -> List[EnsureRunResult]:
    """Replay the dates missed since the last completed run, within the catch-up window."""
    session_factory = session_factory or SessionLocal
    now = ensure_utc(now or utcnow())
    today = now.date()

    db = session_factory()
    try:
        last_date = (
            db.query(func.max(SchedulingRunLog.run_date))
            .filter(SchedulingRunLog.status == "completed")
            .scalar()
        )
    finally:
        db.close()

    if last_date is None:
        dates = [today]
    else:
        first = max(last_date + timedelta(days=1), today - timedelta(days=settings.scheduler_max_catchup_days - 1))
        dates = [first + timedelta(days=i) for i in range((today - first).days + 1)]
    dates = dates[: settings.scheduler_max_catchup_iterations]

    results: List[EnsureRunResult] = []
    for d in dates:
        if d == today and now.hour < settings.scheduler_run_hour_utc:
            break
        result = ensure_run_for_date(d, "catchup", now=now, session_factory=session_factory, **run_kwargs)
        results.append(result)
        if result.reason == "in_progress":
            break
    logger.info(
        "scheduling_catchup_finished",
        last_completed=last_date.isoformat() if last_date else None,
        dates_run=[d.isoformat() for d, r in zip(dates, results) if r.ran],
    )
    return results


def serialize_run_log(run_log: Optional[SchedulingRunLog]) -> Optional[dict]:
    if run_log is None:
        return None
    return {
        "id": str(run_log.id),
        "run_date": run_log.run_date.isoformat(),
        "run_type": run_log.run_type,
        "status": run_log.status,
        "started_at": run_log.started_at.isoformat() if run_log.started_at else None,
        "finished_at": run_log.finished_at.isoformat() if run_log.finished_at else None,
        "total_services_checked": run_log.total_services_checked,
        "services_found_due": run_log.services_found_due,
        "projects_created": run_log.projects_created,
        "services_rescheduled": run_log.services_rescheduled,
        "errors_encountered": run_log.errors_encountered,
        "ch_services_skipped": run_log.ch_services_skipped,
        "execution_time_ms": run_log.execution_time_ms,
        "summary": run_log.summary,
        "error_details": run_log.error_details,
    }


def get_scheduling_status(db: Session, now: Optional[datetime] = None, recent: int = 10) -> dict:
    now = ensure_utc(now or utcnow())
    today = now.date()
    yesterday = today - timedelta(days=1)

    def _completed_on(d: date) -> bool:
        return (
            db.query(SchedulingRunLog.id)
            .filter(SchedulingRunLog.run_date == d, SchedulingRunLog.status == "completed")
            .first()
            is not None
        )

    last_success = (
        db.query(SchedulingRunLog)
        .filter(SchedulingRunLog.status == "completed")
        .order_by(SchedulingRunLog.run_date.desc(), SchedulingRunLog.started_at.desc())
        .first()
    )
    recent_runs = db.query(SchedulingRunLog).order_by(SchedulingRunLog.started_at.desc()).limit(recent).all()
    open_exceptions = db.query(func.count(SchedulingException.id)).filter(SchedulingException.resolved.is_(False)).scalar()

    next_run = datetime.combine(today, time(settings.scheduler_run_hour_utc), tzinfo=pytz.UTC)
    if now >= next_run:
        next_run += timedelta(days=1)
    return {
        "last_successful_run": serialize_run_log(last_success),
        "today_completed": _completed_on(today),
        "yesterday_completed": _completed_on(yesterday),
        "next_expected_run": next_run.isoformat(),
        "open_exceptions": int(open_exceptions or 0),
        "recent_runs": [serialize_run_log(r) for r in recent_runs],
    }


def resolve_scheduling_exception(
    db: Session,
    exception_id: uuid.UUID,
    user_id: Optional[uuid.UUID],
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SchedulingException:
    """Mark a scheduling exception as handled by an operator."""
    exc = db.query(SchedulingException).filter(SchedulingException.id == exception_id).first()
    if exc is None:
        raise LookupError(f"Scheduling exception {exception_id} not found")
    if exc.resolved:
        raise ValueError("Scheduling exception is already resolved")
    exc.resolved = True
    exc.resolved_at = now or utcnow()
    exc.resolved_by_user_id = user_id
    exc.resolution_notes = notes
    db.commit()
    db.refresh(exc)
    logger.info("scheduling_exception_resolved", exception_id=str(exception_id), user_id=str(user_id) if user_id else None)
    return exc
