import aiosqlite
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from loguru import logger

from config.config import DB_PATH
from collection.custody_log import GENESIS_HASH, canonical_payload, compute_event_hash
from collection.errors import Unavailable
from collection.models import format_dt

# Ошибки SQLite, после которых весь вызов можно безопасно повторить
_TRANSIENT_MARKERS = ('locked', 'busy', 'disk i/o', 'unable to open')


def _is_transient(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


@asynccontextmanager
async def _get_db():
    """Opens a connection with Row factory; transient SQLite errors surface as Unavailable."""
    try:
        async with aiosqlite.connect(DB_PATH) as db:
            db.row_factory = aiosqlite.Row
            yield db
    except aiosqlite.OperationalError as e:
        if _is_transient(e):
            logger.warning(f"Storage unavailable: {e}")
            raise Unavailable(str(e)) from e
        raise


@asynccontextmanager
async def _write_tx():
    """A write transaction that takes the write lock up front, so read-then-write stays atomic."""
    async with _get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        yield db
        await db.commit()


async def _append_custody_event(db, session_id: str, event_type: str, payload: dict, occurred_at: datetime,
                                handoff_id: str | None = None):
    """Appends one hash-chained event inside the caller's transaction."""
    cursor = await db.execute(
        "SELECT event_hash FROM custody_events WHERE session_id = ? ORDER BY id DESC LIMIT 1",
        (session_id,)
    )
    row = await cursor.fetchone()
    prev_hash = row['event_hash'] if row else GENESIS_HASH
    occurred = format_dt(occurred_at)
    payload_json = canonical_payload(payload)
    event_hash = compute_event_hash(prev_hash, event_type, occurred, payload_json)
    await db.execute(
        """
        INSERT INTO custody_events (session_id, handoff_id, event_type, payload_json, occurred_at, prev_hash, event_hash)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (session_id, handoff_id, event_type, payload_json, occurred, prev_hash, event_hash)
    )

# --- Identity ---

async def register_driver(user_id: int, full_name: str, phone_num: str | None = None, company_id: str | None = None):
    """Регистрирует водителя или обновляет его данные."""
    async with _get_db() as db:
        await db.execute(
            """
            INSERT INTO drivers (user_id, full_name, phone_num, company_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                full_name = excluded.full_name,
                phone_num = excluded.phone_num,
                company_id = excluded.company_id
            """,
            (user_id, full_name, phone_num, company_id, format_dt(datetime.now(timezone.utc)))
        )
        await db.commit()

async def register_supervisor(user_id: int, full_name: str, company_id: str | None = None):
    """Регистрирует супервайзера объекта (медицинского учреждения)."""
    async with _get_db() as db:
        await db.execute(
            """
            INSERT INTO supervisors (user_id, full_name, company_id, created_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET full_name = excluded.full_name, company_id = excluded.company_id
            """,
            (user_id, full_name, company_id, format_dt(datetime.now(timezone.utc)))
        )
        await db.commit()

async def get_driver(user_id: int) -> aiosqlite.Row | None:
    async with _get_db() as db:
        cursor = await db.execute("SELECT * FROM drivers WHERE user_id = ?", (user_id,))
        return await cursor.fetchone()

async def is_driver(user_id: int) -> bool:
    async with _get_db() as db:
        cursor = await db.execute("SELECT 1 FROM drivers WHERE user_id = ?", (user_id,))
        return await cursor.fetchone() is not None

async def get_supervisor(user_id: int) -> aiosqlite.Row | None:
    async with _get_db() as db:
        cursor = await db.execute("SELECT * FROM supervisors WHERE user_id = ?", (user_id,))
        return await cursor.fetchone()

# --- Container and plant registries ---

async def upsert_container(container_ref: str, company_id: str | None = None, waste_type: str | None = None,
                           latitude: float | None = None, longitude: float | None = None, is_active: bool = True):
    async with _get_db() as db:
        await db.execute(
            """
            INSERT INTO containers (container_ref, company_id, waste_type, latitude, longitude, is_active)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(container_ref) DO UPDATE SET
                company_id = excluded.company_id,
                waste_type = excluded.waste_type,
                latitude = excluded.latitude,
                longitude = excluded.longitude,
                is_active = excluded.is_active
            """,
            (container_ref, company_id, waste_type, latitude, longitude, 1 if is_active else 0)
        )
        await db.commit()

async def get_containers(container_refs: list[str]) -> list[aiosqlite.Row]:
    """Получает активные контейнеры из реестра по списку ссылок."""
    if not container_refs:
        return []
    placeholders = ','.join('?' for _ in container_refs)
    async with _get_db() as db:
        cursor = await db.execute(
            f"SELECT * FROM containers WHERE is_active = 1 AND container_ref IN ({placeholders})",
            list(container_refs)
        )
        return await cursor.fetchall()

async def upsert_plant(plant_id: str, name: str, operator_name: str | None = None,
                       operator_phone: str | None = None, is_active: bool = True):
    async with _get_db() as db:
        await db.execute(
            """
            INSERT INTO incineration_plants (plant_id, name, operator_name, operator_phone, is_active)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(plant_id) DO UPDATE SET
                name = excluded.name,
                operator_name = excluded.operator_name,
                operator_phone = excluded.operator_phone,
                is_active = excluded.is_active
            """,
            (plant_id, name, operator_name, operator_phone, 1 if is_active else 0)
        )
        await db.commit()

async def get_plant(plant_id: str) -> aiosqlite.Row | None:
    async with _get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM incineration_plants WHERE plant_id = ? AND is_active = 1", (plant_id,)
        )
        return await cursor.fetchone()

async def get_active_plants() -> list[aiosqlite.Row]:
    async with _get_db() as db:
        cursor = await db.execute("SELECT * FROM incineration_plants WHERE is_active = 1 ORDER BY name")
        return await cursor.fetchall()

# --- Collection sessions ---

async def _load_session(db, session_id: str, include_route: bool = False):
    cursor = await db.execute("SELECT * FROM collection_sessions WHERE session_id = ?", (session_id,))
    row = await cursor.fetchone()
    if row is None:
        return None
    cursor = await db.execute(
        "SELECT * FROM session_containers WHERE session_id = ? ORDER BY position", (session_id,)
    )
    containers = await cursor.fetchall()
    route = []
    if include_route:
        cursor = await db.execute("SELECT * FROM route_points WHERE session_id = ? ORDER BY seq", (session_id,))
        route = await cursor.fetchall()
    return row, containers, route

async def get_session(session_id: str, include_route: bool = False):
    """Возвращает (session_row, container_rows, route_rows) или None."""
    async with _get_db() as db:
        return await _load_session(db, session_id, include_route)

async def get_active_session_id(driver_id: int) -> str | None:
    async with _get_db() as db:
        cursor = await db.execute(
            "SELECT session_id FROM collection_sessions WHERE driver_id = ? AND status = 'active'", (driver_id,)
        )
        row = await cursor.fetchone()
        return row['session_id'] if row else None

async def get_latest_session_id(driver_id: int) -> str | None:
    async with _get_db() as db:
        cursor = await db.execute(
            "SELECT session_id FROM collection_sessions WHERE driver_id = ? ORDER BY start_time DESC LIMIT 1",
            (driver_id,)
        )
        row = await cursor.fetchone()
        return row['session_id'] if row else None

async def list_driver_session_ids(driver_id: int, limit: int = 20) -> list[str]:
    async with _get_db() as db:
        cursor = await db.execute(
            "SELECT session_id FROM collection_sessions WHERE driver_id = ? ORDER BY start_time DESC LIMIT ?",
            (driver_id, limit)
        )
        return [row['session_id'] for row in await cursor.fetchall()]

async def list_active_session_ids(company_id: str | None = None) -> list[str]:
    """Активные сессии, по желанию только одной компании; самые давние первыми."""
    query = "SELECT session_id FROM collection_sessions WHERE status = 'active'"
    params: tuple = ()
    if company_id is not None:
        query += " AND company_id = ?"
        params = (company_id,)
    async with _get_db() as db:
        cursor = await db.execute(query + " ORDER BY start_time", params)
        return [row['session_id'] for row in await cursor.fetchall()]

async def insert_session(session_id: str, driver_id: int, company_id: str | None, container_refs: list[str],
                         start_time: datetime, start_lat: float | None = None, start_lon: float | None = None):
    """
    Создает сессию сбора вместе с выбранными контейнерами и первым событием журнала.
    Уникальный индекс по активной сессии водителя выбросит IntegrityError при гонке.
    """
    started = format_dt(start_time)
    async with _write_tx() as db:
        await db.execute(
            """
            INSERT INTO collection_sessions (
                session_id, driver_id, company_id, status, start_time, start_lat, start_lon, updated_at
            ) VALUES (?, ?, ?, 'active', ?, ?, ?, ?)
            """,
            (session_id, driver_id, company_id, started, start_lat, start_lon, started)
        )
        await db.executemany(
            "INSERT INTO session_containers (session_id, position, container_ref) VALUES (?, ?, ?)",
            [(session_id, position, ref) for position, ref in enumerate(container_refs)]
        )
        await _append_custody_event(
            db, session_id, 'session.started',
            {'driverId': driver_id, 'containers': list(container_refs)},
            start_time
        )

async def mark_container_visited(session_id: str, container_ref: str, visited_at: datetime,
                                 collected_weight: float | None = None) -> bool:
    """Отмечает контейнер посещенным, только пока сессия активна. Возвращает True, если что-то изменилось."""
    async with _write_tx() as db:
        cursor = await db.execute(
            """
            UPDATE session_containers SET visited = 1, visited_at = ?, collected_weight = ?
            WHERE session_id = ? AND container_ref = ? AND visited = 0
              AND EXISTS (SELECT 1 FROM collection_sessions WHERE session_id = ? AND status = 'active')
            """,
            (format_dt(visited_at), collected_weight, session_id, container_ref, session_id)
        )
        if cursor.rowcount == 0:
            return False
        await db.execute(
            "UPDATE collection_sessions SET version = version + 1, updated_at = ? WHERE session_id = ?",
            (format_dt(visited_at), session_id)
        )
        await _append_custody_event(
            db, session_id, 'container.visited',
            {'containerRef': container_ref, 'collectedWeight': collected_weight},
            visited_at
        )
        return True

async def complete_session(session_id: str, end_time: datetime, end_lat: float | None, end_lon: float | None,
                           containers_collected: int, total_weight: float, duration_minutes: int) -> bool:
    """Завершает активную сессию. Возвращает False, если сессия уже не активна."""
    async with _write_tx() as db:
        cursor = await db.execute(
            """
            UPDATE collection_sessions SET
                status = 'completed', end_time = ?, end_lat = ?, end_lon = ?,
                containers_collected = ?, total_weight_collected = ?, total_duration_minutes = ?,
                version = version + 1, updated_at = ?
            WHERE session_id = ? AND status = 'active'
            """,
            (format_dt(end_time), end_lat, end_lon, containers_collected, total_weight, duration_minutes,
             format_dt(end_time), session_id)
        )
        if cursor.rowcount == 0:
            return False
        await _append_custody_event(
            db, session_id, 'session.completed',
            {'containersCollected': containers_collected, 'totalWeightCollected': total_weight},
            end_time
        )
        return True

async def append_route_point(session_id: str, fix, received_at: datetime) -> int | None:
    """Добавляет точку маршрута в конец. Возвращает новое число точек или None, если сессия не активна."""
    received = format_dt(received_at)
    async with _write_tx() as db:
        cursor = await db.execute(
            """
            UPDATE collection_sessions SET
                route_points_count = route_points_count + 1, last_fix_at = ?,
                version = version + 1, updated_at = ?
            WHERE session_id = ? AND status = 'active'
            """,
            (received, received, session_id)
        )
        if cursor.rowcount == 0:
            return None
        cursor = await db.execute(
            "SELECT route_points_count FROM collection_sessions WHERE session_id = ?", (session_id,)
        )
        count = (await cursor.fetchone())['route_points_count']
        await db.execute(
            """
            INSERT INTO route_points (
                session_id, seq, latitude, longitude, accuracy, speed, altitude,
                altitude_accuracy, heading, device_time, received_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (session_id, count, fix.latitude, fix.longitude, fix.accuracy, fix.speed, fix.altitude,
             fix.altitude_accuracy, fix.heading, format_dt(fix.device_time), received)
        )
        return count

async def get_route(session_id: str) -> list[aiosqlite.Row]:
    async with _get_db() as db:
        cursor = await db.execute("SELECT * FROM route_points WHERE session_id = ? ORDER BY seq", (session_id,))
        return await cursor.fetchall()

async def get_last_route_point(session_id: str) -> aiosqlite.Row | None:
    async with _get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM route_points WHERE session_id = ? ORDER BY seq DESC LIMIT 1", (session_id,)
        )
        return await cursor.fetchone()

async def get_silent_active_sessions(threshold: datetime) -> list[aiosqlite.Row]:
    """Активные сессии без принятых точек с момента threshold (мониторинг, состояние не меняется)."""
    async with _get_db() as db:
        cursor = await db.execute(
            """
            SELECT session_id, driver_id, start_time, last_fix_at, route_points_count
            FROM collection_sessions
            WHERE status = 'active' AND COALESCE(last_fix_at, start_time) < ?
            ORDER BY start_time
            """,
            (format_dt(threshold),)
        )
        return await cursor.fetchall()

# --- Handoffs ---

async def _load_handoff(db, where: str, params: tuple):
    cursor = await db.execute(f"SELECT * FROM handoffs WHERE {where}", params)
    row = await cursor.fetchone()
    if row is None:
        return None
    cursor = await db.execute(
        "SELECT * FROM handoff_containers WHERE handoff_id = ? ORDER BY position", (row['handoff_id'],)
    )
    return row, await cursor.fetchall()

async def get_handoff(handoff_id: str):
    """Возвращает (handoff_row, container_rows) или None."""
    async with _get_db() as db:
        return await _load_handoff(db, "handoff_id = ?", (handoff_id,))

async def get_handoff_by_token_hash(token_hash: str):
    async with _get_db() as db:
        return await _load_handoff(db, "token_hash = ?", (token_hash,))

async def get_session_handoffs(session_id: str) -> list[tuple]:
    async with _get_db() as db:
        cursor = await db.execute(
            "SELECT handoff_id FROM handoffs WHERE session_id = ? ORDER BY sequence", (session_id,)
        )
        ids = [row['handoff_id'] for row in await cursor.fetchall()]
        return [await _load_handoff(db, "handoff_id = ?", (handoff_id,)) for handoff_id in ids]

async def insert_handoff(handoff, stage: str, chain_id: str):
    """
    Сохраняет передачу, её контейнеры, новый этап цепочки в сессии и событие журнала одной транзакцией.
    UNIQUE(session_id, type) выбросит IntegrityError для дубликата.
    """
    receiver = handoff.receiver
    async with _write_tx() as db:
        await db.execute(
            """
            INSERT INTO handoffs (
                handoff_id, session_id, chain_id, type, sequence, status, sender_id,
                receiver_kind, receiver_plant_id, receiver_phone, receiver_name, receiver_driver_id,
                total_containers, total_declared_weight, token_hash, token_expires_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                handoff.handoff_id, handoff.session_id, handoff.chain_id, handoff.type.value, handoff.sequence,
                handoff.status.value, handoff.sender_id,
                receiver.kind, receiver.plant_id, receiver.phone, receiver.name, receiver.driver_id,
                handoff.total_containers, handoff.total_declared_weight, handoff.token_hash,
                format_dt(handoff.token_expires_at), format_dt(handoff.created_at), format_dt(handoff.created_at)
            )
        )
        await db.executemany(
            "INSERT INTO handoff_containers (handoff_id, position, container_ref, declared_weight) VALUES (?, ?, ?, ?)",
            [
                (handoff.handoff_id, position, item.container_ref, item.declared_weight)
                for position, item in enumerate(handoff.containers)
            ]
        )
        await db.execute(
            """
            UPDATE collection_sessions SET
                handoff_stage = ?, chain_id = COALESCE(chain_id, ?), version = version + 1, updated_at = ?
            WHERE session_id = ?
            """,
            (stage, chain_id, format_dt(handoff.created_at), handoff.session_id)
        )
        await _append_custody_event(
            db, handoff.session_id, 'handoff.created',
            {
                'handoffId': handoff.handoff_id,
                'type': handoff.type.value,
                'containers': [item.to_dict() for item in handoff.containers],
                'receiver': receiver.to_dict(),
            },
            handoff.created_at, handoff_id=handoff.handoff_id
        )

_TRANSITION_COLUMNS = {
    'confirmed_by_sender': 'sender_confirmed_at',
    'completed': 'completed_at',
    'rejected': 'rejected_at',
}

async def transition_handoff(handoff_id: str, session_id: str, from_status: str, to_status: str, at: datetime,
                             stage: str | None = None, consume_token: bool = False,
                             rejection_reason: str | None = None, actor_id: int | None = None) -> bool:
    """
    Переводит передачу из from_status в to_status условным UPDATE.
    При consume_token токен гасится в том же UPDATE; победителя определяет rowcount.
    """
    stamp = format_dt(at)
    sets = ["status = ?", f"{_TRANSITION_COLUMNS[to_status]} = ?", "version = version + 1", "updated_at = ?"]
    params: list = [to_status, stamp, stamp]
    conditions = ["handoff_id = ?", "status = ?"]
    if consume_token:
        sets.append("token_consumed_at = ?")
        params.append(stamp)
        conditions.append("token_consumed_at IS NULL")
    if rejection_reason is not None:
        sets.append("rejection_reason = ?")
        params.append(rejection_reason)
    params.extend([handoff_id, from_status])

    async with _write_tx() as db:
        cursor = await db.execute(
            f"UPDATE handoffs SET {', '.join(sets)} WHERE {' AND '.join(conditions)}", params
        )
        if cursor.rowcount == 0:
            return False
        if stage is not None:
            await db.execute(
                "UPDATE collection_sessions SET handoff_stage = ?, version = version + 1, updated_at = ? WHERE session_id = ?",
                (stage, stamp, session_id)
            )
        await _append_custody_event(
            db, session_id, f"handoff.{to_status}",
            {'handoffId': handoff_id, 'from': from_status, 'actorId': actor_id, 'reason': rejection_reason},
            at, handoff_id=handoff_id
        )
        return True

async def reissue_handoff_token(handoff_id: str, session_id: str, token_hash: str, expires_at: datetime,
                                at: datetime, actor_id: int | None = None) -> bool:
    """
    Заменяет хэш и срок токена незавершенной передачи. Старый токен перестает подходить сразу.
    Возвращает False, если передача уже завершена или отклонена.
    """
    stamp = format_dt(at)
    async with _write_tx() as db:
        cursor = await db.execute(
            """
            UPDATE handoffs SET token_hash = ?, token_expires_at = ?, version = version + 1, updated_at = ?
            WHERE handoff_id = ? AND status IN ('pending', 'confirmed_by_sender') AND token_consumed_at IS NULL
            """,
            (token_hash, format_dt(expires_at), stamp, handoff_id)
        )
        if cursor.rowcount == 0:
            return False
        await _append_custody_event(
            db, session_id, 'handoff.token_reissued',
            {'handoffId': handoff_id, 'expiresAt': format_dt(expires_at), 'actorId': actor_id},
            at, handoff_id=handoff_id
        )
        return True

# --- Custody trail ---

async def get_custody_events(session_id: str) -> list[aiosqlite.Row]:
    async with _get_db() as db:
        cursor = await db.execute("SELECT * FROM custody_events WHERE session_id = ? ORDER BY id", (session_id,))
        return await cursor.fetchall()

async def get_custody_payloads(session_id: str) -> list[dict]:
    """Журнал для отображения: тип события, время и распакованный payload."""
    events = await get_custody_events(session_id)
    return [
        {'id': e['id'], 'type': e['event_type'], 'at': e['occurred_at'], 'payload': json.loads(e['payload_json'])}
        for e in events
    ]
