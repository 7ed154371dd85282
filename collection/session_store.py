import secrets
from typing import Callable

import aiosqlite
from loguru import logger

from database import queries as db_queries
from collection.errors import (
    AlreadyActive, EmptyContainers, SessionNotActive, SessionNotFound, UnknownContainer
)
from collection.locks import KeyedLock
from collection.models import GeoPoint, LocationFix, Session, utcnow
from collection.registry import ContainerRegistry
from utils.validators import parse_weight


def new_session_id(driver_id: int, now) -> str:
    # Формат SESSION-<driver>-<ms> плюс случайный хвост
    return f"SESSION-{driver_id}-{int(now.timestamp() * 1000)}-{secrets.token_hex(3)}"


class SessionStore:
    """
    Holds collection sessions and enforces one active session per driver.

    Creation is serialized per driver, every other mutation per session. The
    partial unique index on active sessions backs the same invariant in storage.
    """

    def __init__(self, registry: ContainerRegistry, locks: KeyedLock, clock: Callable = utcnow):
        self.registry = registry
        self.locks = locks
        self.clock = clock

    async def _load(self, session_id: str, include_route: bool = False) -> Session:
        loaded = await db_queries.get_session(session_id, include_route)
        if loaded is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
        return Session.from_rows(*loaded)

    async def create_session(self, driver_id: int, container_refs: list[str],
                             start_location: GeoPoint | None = None, company_id: str | None = None) -> Session:
        refs = []
        for ref in container_refs or []:
            ref = str(ref).strip()
            if ref and ref not in refs:
                refs.append(ref)
        if not refs:
            raise EmptyContainers("A session needs at least one container")
        records = await self.registry.require(refs)
        if company_id is None:
            company_id = records[refs[0]].company_id

        async with self.locks.driver(driver_id):
            active_id = await db_queries.get_active_session_id(driver_id)
            if active_id:
                raise AlreadyActive(f"Driver {driver_id} already has an active session",
                                    session_id=active_id)
            now = self.clock()
            session_id = new_session_id(driver_id, now)
            try:
                await db_queries.insert_session(
                    session_id, driver_id, company_id, refs, now,
                    start_location.latitude if start_location else None,
                    start_location.longitude if start_location else None,
                )
            except aiosqlite.IntegrityError as e:
                # Другой процесс успел создать активную сессию между проверкой и вставкой
                raise AlreadyActive(f"Driver {driver_id} already has an active session") from e

        logger.bind(session_id=session_id).info(
            f"Session started by driver {driver_id} with {len(refs)} containers"
        )
        return await self._load(session_id)

    async def get(self, session_id: str, include_route: bool = False) -> Session:
        return await self._load(session_id, include_route)

    async def get_active(self, driver_id: int) -> Session:
        session_id = await db_queries.get_active_session_id(driver_id)
        if session_id is None:
            raise SessionNotFound(f"Driver {driver_id} has no active session", driver_id=driver_id)
        return await self._load(session_id)

    async def latest_session(self, driver_id: int) -> Session:
        session_id = await db_queries.get_latest_session_id(driver_id)
        if session_id is None:
            raise SessionNotFound(f"Driver {driver_id} has no sessions", driver_id=driver_id)
        return await self._load(session_id)

    async def list_sessions(self, driver_id: int, limit: int = 20) -> list[Session]:
        ids = await db_queries.list_driver_session_ids(driver_id, limit)
        return [await self._load(session_id) for session_id in ids]

    async def list_active(self, company_id: str | None = None) -> list[Session]:
        ids = await db_queries.list_active_session_ids(company_id)
        return [await self._load(session_id) for session_id in ids]

    async def last_fix(self, session_id: str) -> LocationFix | None:
        row = await db_queries.get_last_route_point(session_id)
        return LocationFix.from_row(row) if row else None

    async def get_route(self, session_id: str) -> list[LocationFix]:
        await self._load(session_id)
        return [LocationFix.from_row(row) for row in await db_queries.get_route(session_id)]

    async def record_visit(self, session_id: str, container_ref: str,
                           collected_weight: float | None = None) -> tuple[Session, bool]:
        """
        Marks a selected container visited. Returns the session and whether anything changed;
        a repeated visit is a successful no-op and keeps the first weight.
        """
        collected_weight = parse_weight(collected_weight, container_ref)
        async with self.locks.session(session_id):
            session = await self._load(session_id)
            if not session.is_active:
                raise SessionNotActive(f"Session {session_id} is not active", session_id=session_id)
            container = session.container(container_ref)
            if container is None:
                raise UnknownContainer(
                    f"Container {container_ref} is not part of session {session_id}",
                    session_id=session_id, container_ref=container_ref,
                )
            if container.visited:
                return session, False

            changed = await db_queries.mark_container_visited(
                session_id, container_ref, self.clock(), collected_weight
            )
            session = await self._load(session_id)
            if not changed and not session.is_active:
                raise SessionNotActive(f"Session {session_id} is not active", session_id=session_id)

        if changed:
            logger.bind(session_id=session_id).info(f"Container {container_ref} visited")
        return session, changed

    async def mark_visited(self, session_id: str, container_ref: str,
                           collected_weight: float | None = None) -> Session:
        session, _ = await self.record_visit(session_id, container_ref, collected_weight)
        return session

    async def stop_session(self, session_id: str, end_location: GeoPoint | None = None) -> Session:
        async with self.locks.session(session_id):
            session = await self._load(session_id)
            if not session.is_active:
                raise SessionNotActive(f"Session {session_id} is already completed", session_id=session_id)

            now = self.clock()
            visited = session.visited_containers()
            total_weight = sum(item.collected_weight or 0 for item in visited)
            duration_minutes = max(int((now - session.start_time).total_seconds() // 60), 0)
            completed = await db_queries.complete_session(
                session_id, now,
                end_location.latitude if end_location else None,
                end_location.longitude if end_location else None,
                len(visited), total_weight, duration_minutes,
            )
            if not completed:
                raise SessionNotActive(f"Session {session_id} is already completed", session_id=session_id)

        logger.bind(session_id=session_id).info(
            f"Session completed: {len(visited)}/{len(session.selected_containers)} containers, "
            f"{total_weight} kg, {duration_minutes} min"
        )
        return await self._load(session_id)
