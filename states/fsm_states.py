from aiogram.fsm.state import StatesGroup, State

class CollectionState(StatesGroup):
    """States for starting a collection session."""
    containers = State()
    start_location = State()

class HandoffState(StatesGroup):
    """States for the incinerator handoff and rejections."""
    choose_receiver = State()
    receiver_phone = State()
    reject_reason = State()
