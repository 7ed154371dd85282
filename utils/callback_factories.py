from aiogram.filters.callback_data import CallbackData

# Telegram limits callback data to 64 bytes, so session ids are never packed here:
# driver callbacks always act on the driver's active (or latest) session.

# --- Driver Collection Callbacks ---
class MarkVisited(CallbackData, prefix="visit"):
    ref: str

class SummaryRefresh(CallbackData, prefix="summary"):
    action: str  # 'refresh' or 'route'

# --- Handoff Callbacks ---
class HandoffAction(CallbackData, prefix="h_act"):
    action: str  # 'confirm', 'reject' or 'reissue'
    handoff_id: str

class PlantChoice(CallbackData, prefix="plant"):
    plant_id: str
