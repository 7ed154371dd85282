from typing import Callable

from loguru import logger

from database import queries as db_queries
from collection.errors import SessionNotActive, SessionNotFound
from collection.locks import KeyedLock
from collection.models import IngestResult, LocationFix, SessionStatus, parse_dt, utcnow
from utils.validators import parse_location_fix


class LocationIngestor:
    """
    Validates GPS fixes and appends them to the route of an active session,
    keeping at least min_interval_seconds (receipt time) between accepted fixes.
    Throttled fixes are a normal outcome, not an error.
    """

    def __init__(self, locks: KeyedLock, min_interval_seconds: float = 10, clock: Callable = utcnow):
        self.locks = locks
        self.min_interval_seconds = min_interval_seconds
        self.clock = clock

    async def accept(self, session_id: str, fix) -> IngestResult:
        if not isinstance(fix, LocationFix):
            fix = parse_location_fix(fix)

        async with self.locks.session(session_id):
            loaded = await db_queries.get_session(session_id)
            if loaded is None:
                raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
            row = loaded[0]
            if row['status'] != SessionStatus.ACTIVE.value:
                raise SessionNotActive(f"Session {session_id} is not active", session_id=session_id)

            now = self.clock()
            last_fix_at = parse_dt(row['last_fix_at'])
            if last_fix_at is not None and (now - last_fix_at).total_seconds() < self.min_interval_seconds:
                logger.bind(session_id=session_id).trace("Location fix throttled")
                return IngestResult(accepted=False, route_points_count=row['route_points_count'], throttled=True)

            count = await db_queries.append_route_point(session_id, fix, now)
            if count is None:
                raise SessionNotActive(f"Session {session_id} is not active", session_id=session_id)

        fix.received_at = now
        logger.bind(session_id=session_id).debug(f"Location fix #{count} accepted")
        return IngestResult(accepted=True, route_points_count=count, fix=fix)
