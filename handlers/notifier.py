import html

from aiogram import Bot
from loguru import logger

from collection import events as ev
from collection.events import DomainEvent
from utils.batch_sender import broadcast_messages

# Событие -> получает ли водитель сессии копию
RELAYED_EVENTS = {
    ev.SESSION_STARTED: False,
    ev.SESSION_COMPLETED: False,
    ev.HANDOFF_CREATED: True,
    ev.HANDOFF_COMPLETED: True,
    ev.HANDOFF_REJECTED: True,
}

HANDOFF_TYPES = {
    'facility_to_driver': "заклад → водій",
    'driver_to_incinerator': "водій → завод",
}


def format_event(event: DomainEvent) -> str | None:
    p = event.payload
    session = f"<code>{html.escape(str(p.get('session_id')))}</code>"
    if event.name == ev.SESSION_STARTED:
        return f"🚛 Водій {p['driver_id']} розпочав збір {session}: {len(p.get('containers', []))} контейнерів."
    if event.name == ev.SESSION_COMPLETED:
        return (
            f"🏁 Збір {session} завершено: {p['containers_collected']}/{p['total_containers']} контейнерів, "
            f"{p['total_weight']:g} кг, {p['duration_minutes']} хв."
        )
    handoff = f"<code>{p.get('handoff_id')}</code> ({HANDOFF_TYPES.get(p.get('type'), p.get('type'))})"
    if event.name == ev.HANDOFF_CREATED:
        return f"📦 Створено передачу {handoff} для збору {session}: {p['total_containers']} контейнерів."
    if event.name == ev.HANDOFF_COMPLETED:
        return f"✅ Передачу {handoff} підтверджено отримувачем."
    if event.name == ev.HANDOFF_REJECTED:
        return f"❌ Передачу {handoff} відхилено: {html.escape(p.get('reason') or '—')}"
    return None


class TelegramRelay:
    """
    EventDispatcher subscriber that relays domain events to admins (and, for
    handoff events, to the session driver). Payloads never carry tokens.
    """

    def __init__(self, bot: Bot, admin_ids: list[int]):
        self.bot = bot
        self.admin_ids = list(admin_ids)

    async def __call__(self, event: DomainEvent):
        if event.name not in RELAYED_EVENTS:
            return
        text = format_event(event)
        recipients = list(self.admin_ids)
        driver_id = event.payload.get('driver_id')
        if RELAYED_EVENTS[event.name] and driver_id is not None:
            recipients.append(driver_id)

        async def _send(user_id: int):
            await self.bot.send_message(user_id, text)

        sent, failed = await broadcast_messages(recipients, _send)
        logger.bind(session_id=event.payload.get('session_id', '-')).debug(
            f"Event {event.name} relayed: {sent} sent, {failed} failed"
        )
