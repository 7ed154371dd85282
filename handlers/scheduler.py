from datetime import datetime, timedelta, timezone
import html

from aiogram import Bot
from loguru import logger

from config.config import ADMIN_IDS, SESSION_INACTIVITY_MINUTES
from database import queries as db_queries
from handlers.common.helpers import format_local
from handlers.shared_state import inactivity_alerts
from collection.models import parse_dt
from utils.batch_sender import broadcast_messages


async def check_inactive_sessions(bot: Bot, now: datetime | None = None,
                                  inactivity_minutes: int = SESSION_INACTIVITY_MINUTES):
    """
    Reports active sessions that received no location fix for inactivity_minutes.
    Monitoring only: the session itself is never touched.
    """
    now = now or datetime.now(timezone.utc)
    silent = await db_queries.get_silent_active_sessions(now - timedelta(minutes=inactivity_minutes))
    silent_ids = {row['session_id'] for row in silent}

    # Сессия снова прислала точку или завершена: следующее молчание даст новое оповещение
    for session_id in list(inactivity_alerts):
        if session_id not in silent_ids:
            del inactivity_alerts[session_id]

    for row in silent:
        session_id = row['session_id']
        marker = row['last_fix_at'] or row['start_time']
        if inactivity_alerts.get(session_id) == marker:
            continue

        last_seen = parse_dt(marker)
        text = (
            f"📡 Збір <code>{html.escape(session_id)}</code> водія {row['driver_id']} "
            f"не надсилає геолокацію з {format_local(last_seen)} "
            f"({row['route_points_count']} точок маршруту)."
        )

        async def _send(user_id: int, text=text):
            await bot.send_message(user_id, text)

        await broadcast_messages(ADMIN_IDS, _send)
        inactivity_alerts[session_id] = marker
        logger.bind(session_id=session_id).warning(f"Session silent since {marker}")
