from fastapi import Request

from ..config import settings
from ..db import SessionLocal
from ..services.business_time import WorkingCalendar
from ..services.cache import StageCountsCache


def get_calendar() -> WorkingCalendar:
    return settings.working_calendar()


def get_stage_counts_cache(request: Request) -> StageCountsCache:
    return request.app.state.stage_counts_cache


def get_session_factory():
    """Session factory for work that opens its own sessions (scheduling runs)."""
    return SessionLocal
