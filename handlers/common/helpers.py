import html
from datetime import datetime

from aiogram import types
from aiogram.exceptions import TelegramBadRequest
from loguru import logger

from collection.models import (
    ActiveSession, Handoff, HandoffStage, HandoffStatus, HandoffType, PublicHandoffView, Session, SessionSummary,
    TrailVerification
)
from config.config import PUBLIC_CONFIRM_BASE_URL, TIMEZONE
from utils.geo import format_point

HANDOFF_TYPE_LABELS = {
    HandoffType.FACILITY_TO_DRIVER: "Заклад → водій",
    HandoffType.DRIVER_TO_INCINERATOR: "Водій → завод утилізації",
}

HANDOFF_STATUS_LABELS = {
    HandoffStatus.PENDING: "⏳ Очікує підтвердження відправника",
    HandoffStatus.CONFIRMED_BY_SENDER: "📤 Відправник підтвердив, очікує отримувача",
    HandoffStatus.COMPLETED: "✅ Завершено",
    HandoffStatus.REJECTED: "❌ Відхилено",
}

STAGE_LABELS = {
    HandoffStage.NONE: "передач ще не було",
    HandoffStage.AWAITING_FACILITY_CONFIRMATION: "очікує підтвердження закладу",
    HandoffStage.FACILITY_CONFIRMED: "заклад передав відходи водію",
    HandoffStage.AWAITING_INCINERATOR_HANDOFF: "очікує прийому на заводі",
    HandoffStage.INCINERATOR_CONFIRMED: "відходи прийняті на утилізацію",
}


async def safe_edit_or_send(
    target: types.Message | types.CallbackQuery,
    text: str,
    reply_markup: types.InlineKeyboardMarkup | types.ReplyKeyboardMarkup | None = None,
    **kwargs
) -> types.Message:
    """
    Safely edits a message (if CallbackQuery) or sends a new one (if Message).
    """
    try:
        if isinstance(target, types.CallbackQuery):
            await target.answer()
            return await target.message.edit_text(text, reply_markup=reply_markup, **kwargs)
        else:
            return await target.answer(text, reply_markup=reply_markup, **kwargs)
    except TelegramBadRequest as e:
        if "message is not modified" in e.message:
            logger.trace("Message not modified, skipping edit.")
            return target.message if isinstance(target, types.CallbackQuery) else target
        else:
            logger.error(f"Error during safe_edit_or_send: {e}")
            if isinstance(target, types.CallbackQuery):
                return await target.message.answer(text, reply_markup=reply_markup, **kwargs)
            raise e


def format_local(value: datetime | None) -> str:
    if value is None:
        return "—"
    return value.astimezone(TIMEZONE).strftime('%d.%m.%Y %H:%M')


def confirmation_url(token: str) -> str:
    """Public confirmation page for receivers without Telegram (plant operators)."""
    return f"{PUBLIC_CONFIRM_BASE_URL.rstrip('/')}/{token}"


def format_session(session: Session) -> str:
    visited = session.visited_containers()
    status = "🟢 Активна" if session.is_active else "🏁 Завершена"
    text = (
        f"<b>🚛 Сесія збору</b> <code>{html.escape(session.session_id)}</code>\n"
        f"<b>Статус:</b> {status}\n"
        f"<b>Початок:</b> {format_local(session.start_time)}\n"
        f"<b>Відвідано:</b> {len(visited)}/{len(session.selected_containers)} контейнерів\n"
        f"<b>Точок маршруту:</b> {session.route_points_count}\n"
        f"<b>Ланцюг передачі:</b> {STAGE_LABELS[session.handoff_stage]}\n"
    )
    if not session.is_active:
        text += (
            f"<b>Завершено:</b> {format_local(session.end_time)}\n"
            f"<b>Зібрано:</b> {session.containers_collected} конт., {session.total_weight_collected:g} кг, "
            f"{session.total_duration_minutes} хв\n"
        )
    return text


def format_handoff(handoff: Handoff) -> str:
    receiver = handoff.receiver
    receiver_text = html.escape(receiver.name or receiver.phone or receiver.plant_id or str(receiver.driver_id or "—"))
    lines = "\n".join(
        f"  • {html.escape(item.container_ref)}"
        + (f" — {item.declared_weight:g} кг" if item.declared_weight is not None else "")
        for item in handoff.containers
    )
    text = (
        f"<b>📦 Передача</b> <code>{handoff.handoff_id}</code> (крок {handoff.sequence})\n"
        f"<b>Тип:</b> {HANDOFF_TYPE_LABELS[handoff.type]}\n"
        f"<b>Статус:</b> {HANDOFF_STATUS_LABELS[handoff.status]}\n"
        f"<b>Отримувач:</b> {receiver_text}\n"
        f"<b>Контейнери ({handoff.total_containers}, {handoff.total_declared_weight:g} кг):</b>\n{lines}\n"
    )
    if handoff.status == HandoffStatus.REJECTED and handoff.rejection_reason:
        text += f"<b>Причина відхилення:</b> {html.escape(handoff.rejection_reason)}\n"
    return text


def format_summary(summary: SessionSummary) -> str:
    text = format_session(summary.session)
    for handoff in summary.handoffs:
        text += "\n" + format_handoff(handoff)
    return text


def format_public_view(view: PublicHandoffView) -> str:
    return (
        f"<b>🔎 Передача</b> <code>{view.handoff_id}</code>\n"
        f"<b>Тип:</b> {HANDOFF_TYPE_LABELS[view.type]}\n"
        f"<b>Статус:</b> {HANDOFF_STATUS_LABELS[view.status]}\n"
        f"<b>Контейнерів:</b> {view.total_containers}, <b>вага:</b> {view.total_declared_weight:g} кг\n"
        f"<b>Створено:</b> {format_local(view.created_at)}\n"
        f"<b>Завершено:</b> {format_local(view.completed_at)}"
    )


def format_trail(verification: TrailVerification) -> str:
    if verification.valid:
        return f"🔐 Журнал передачі цілісний ({verification.events_count} подій)."
    return f"⚠️ Журнал передачі пошкоджено, подія №{verification.broken_at}."


def format_route(route) -> str:
    if not route:
        return "🗺 Маршрут порожній."
    text = f"<b>🗺 Маршрут ({len(route)} точок)</b>\n"
    for fix in route[-10:]:
        text += f"{format_local(fix.received_at)} — {format_point(fix)}\n"
    return text


def format_active_sessions(items: list[ActiveSession]) -> str:
    if not items:
        return "Зараз немає активних зборів."
    text = f"<b>🟢 Активні збори ({len(items)})</b>\n"
    for item in items:
        session = item.session
        last_seen = format_local(item.last_fix.received_at) if item.last_fix else "точок ще немає"
        text += (
            f"\n<code>{html.escape(session.session_id)}</code>, водій {session.driver_id}\n"
            f"  {len(session.visited_containers())}/{len(session.selected_containers)} контейнерів, "
            f"остання точка: {format_point(item.last_fix)} ({last_seen})\n"
        )
    return text
