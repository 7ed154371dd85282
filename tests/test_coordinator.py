import aiosqlite
import pytest

from collection import events as ev
from collection.errors import (
    EmptyContainers, Forbidden, InvalidContainers, InvalidReceiver, InvalidToken, PlantNotFound, SessionNotActive,
    Unavailable, ValidationFailed
)
from collection.models import Actor, HandoffStage, HandoffStatus, HandoffType, Receiver, ROLE_SUPERVISOR, SessionStatus
from database import queries as db_queries

FACILITY = HandoffType.FACILITY_TO_DRIVER
INCINERATOR = HandoffType.DRIVER_TO_INCINERATOR


def names(published) -> list[str]:
    return [event.name for event in published]


@pytest.mark.asyncio
async def test_full_collection_day(coordinator, driver, supervisor, published, complete_facility_handoff):
    """Start, visit A only, stop, hand over to the plant: B cannot be handed off, A can."""
    session = await coordinator.start_collection(driver, ['BIN-A', 'BIN-B'])
    await coordinator.mark_visited(driver, session.session_id, 'BIN-A', collected_weight=7.5)
    stopped = await coordinator.stop_collection(driver, session.session_id)
    assert stopped.containers_collected == 1

    facility = await complete_facility_handoff(session.session_id)
    assert facility.status == HandoffStatus.COMPLETED
    assert [item.container_ref for item in facility.containers] == ['BIN-A']

    with pytest.raises(InvalidContainers) as exc:
        await coordinator.create_handoff(driver, session.session_id, INCINERATOR,
                                         Receiver.plant('PLANT-1'), containers=['BIN-B'])
    assert exc.value.details['containers'] == ['BIN-B']

    receipt = await coordinator.create_handoff(driver, session.session_id, INCINERATOR, Receiver.plant('PLANT-1'))
    await coordinator.confirm_handoff(driver, receipt.handoff.handoff_id)
    done = await coordinator.confirm_by_token(receipt.confirmation_token)

    assert done.status == HandoffStatus.COMPLETED
    assert done.total_containers == 1
    assert done.total_declared_weight == 7.5
    assert done.sequence == 2 and done.chain_id == facility.chain_id

    summary = await coordinator.get_session_summary(supervisor, session.session_id)
    assert summary.session.handoff_stage == HandoffStage.INCINERATOR_CONFIRMED
    assert summary.visited_count == 1 and summary.total_containers == 2

    assert names(published) == [
        ev.SESSION_STARTED, ev.CONTAINER_VISITED, ev.SESSION_COMPLETED,
        ev.HANDOFF_CREATED, ev.HANDOFF_SENDER_CONFIRMED, ev.HANDOFF_COMPLETED,
        ev.HANDOFF_CREATED, ev.HANDOFF_SENDER_CONFIRMED, ev.HANDOFF_COMPLETED,
    ]


@pytest.mark.asyncio
async def test_only_drivers_start_and_only_owner_acts(coordinator, driver, other_driver, supervisor, admin):
    with pytest.raises(Forbidden):
        await coordinator.start_collection(supervisor, ['BIN-A'])

    session = await coordinator.start_collection(driver, ['BIN-A', 'BIN-B'])
    with pytest.raises(Forbidden):
        await coordinator.mark_visited(other_driver, session.session_id, 'BIN-A')
    with pytest.raises(Forbidden):
        await coordinator.record_location(other_driver, session.session_id, {'latitude': 43.2, 'longitude': 76.9})
    with pytest.raises(Forbidden):
        await coordinator.get_route(other_driver, session.session_id)
    with pytest.raises(Forbidden):
        await coordinator.list_sessions(other_driver, driver_id=driver.user_id)

    # Администратор может закрыть чужую сессию
    stopped = await coordinator.stop_collection(admin, session.session_id)
    assert stopped.status == SessionStatus.COMPLETED
    assert [s.session_id for s in await coordinator.list_sessions(supervisor, driver_id=driver.user_id)] == [
        session.session_id
    ]


@pytest.mark.asyncio
async def test_facility_handoff_is_issued_by_staff_only(coordinator, driver, supervisor):
    session = await coordinator.start_collection(driver, ['BIN-A'])
    await coordinator.mark_visited(driver, session.session_id, 'BIN-A')

    with pytest.raises(Forbidden):
        await coordinator.create_handoff(driver, session.session_id, FACILITY)

    receipt = await coordinator.create_handoff(supervisor, session.session_id, FACILITY)
    assert receipt.handoff.receiver == Receiver.driver(driver.user_id)
    assert receipt.handoff.sender_id == supervisor.user_id
    with pytest.raises(Forbidden):
        await coordinator.confirm_handoff(driver, receipt.handoff.handoff_id)
    with pytest.raises(Forbidden):
        await coordinator.reject_handoff(driver, receipt.handoff.handoff_id, "нет")


@pytest.mark.asyncio
async def test_incinerator_handoff_without_visits_is_empty(coordinator, driver):
    session = await coordinator.start_collection(driver, ['BIN-A'])

    with pytest.raises(EmptyContainers):
        await coordinator.create_handoff(driver, session.session_id, INCINERATOR, Receiver.plant('PLANT-1'))


@pytest.mark.asyncio
async def test_receiver_resolution(coordinator, driver, complete_facility_handoff):
    session = await coordinator.start_collection(driver, ['BIN-A'])
    await coordinator.mark_visited(driver, session.session_id, 'BIN-A')
    await complete_facility_handoff(session.session_id)

    with pytest.raises(InvalidReceiver):
        await coordinator.create_handoff(driver, session.session_id, INCINERATOR)
    with pytest.raises(InvalidReceiver):
        await coordinator.create_handoff(driver, session.session_id, INCINERATOR, Receiver.contact('12-34'))
    with pytest.raises(PlantNotFound):
        await coordinator.create_handoff(driver, session.session_id, INCINERATOR, Receiver.plant('PLANT-404'))

    receipt = await coordinator.create_handoff(driver, session.session_id, INCINERATOR, Receiver.plant('PLANT-1'))
    assert receipt.handoff.receiver.phone == '+77010000001'
    assert receipt.handoff.receiver.name == 'Иван Оператор'


@pytest.mark.asyncio
async def test_contact_receiver_phone_is_normalized(coordinator, driver, complete_facility_handoff):
    session = await coordinator.start_collection(driver, ['BIN-A'])
    await coordinator.mark_visited(driver, session.session_id, 'BIN-A')
    await complete_facility_handoff(session.session_id)

    receipt = await coordinator.create_handoff(
        driver, session.session_id, INCINERATOR, Receiver.contact('7 701 222 33 44', name='Смена 2')
    )

    assert receipt.handoff.receiver.kind == 'contact'
    assert receipt.handoff.receiver.phone == '+77012223344'


@pytest.mark.asyncio
async def test_location_near_container_marks_it_visited(coordinator, driver, published, clock):
    session = await coordinator.start_collection(driver, ['BIN-A', 'BIN-B', 'BIN-C'])

    # Примерно в 20 метрах от BIN-A
    result = await coordinator.record_location(
        driver, session.session_id, {'latitude': 43.239100, 'longitude': 76.889800, 'accuracy': 8}
    )

    assert result.accepted
    updated = await coordinator.sessions.get(session.session_id)
    assert updated.visited_refs() == ['BIN-A']
    visited_events = [e for e in published if e.name == ev.CONTAINER_VISITED]
    assert len(visited_events) == 1
    assert visited_events[0].payload['container_ref'] == 'BIN-A'
    assert visited_events[0].payload['auto'] is True

    # Повторная точка рядом не порождает новых событий
    clock.advance(seconds=30)
    await coordinator.record_location(driver, session.session_id, {'latitude': 43.239, 'longitude': 76.8897})
    assert len([e for e in published if e.name == ev.CONTAINER_VISITED]) == 1


@pytest.mark.asyncio
async def test_location_after_stop_is_rejected(coordinator, driver):
    session = await coordinator.start_collection(driver, ['BIN-A'])
    await coordinator.stop_collection(driver, session.session_id)

    with pytest.raises(SessionNotActive):
        await coordinator.record_location(driver, session.session_id, {'latitude': 43.2, 'longitude': 76.9})


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_undo_state(coordinator, driver, events):
    async def broken(event):
        raise RuntimeError("telegram is down")

    events.subscribe(broken)
    session = await coordinator.start_collection(driver, ['BIN-A'])

    assert (await coordinator.get_active_session(driver)).session_id == session.session_id


@pytest.mark.asyncio
async def test_public_view_and_token_misuse(coordinator, driver, complete_facility_handoff):
    session = await coordinator.start_collection(driver, ['BIN-A'])
    await coordinator.mark_visited(driver, session.session_id, 'BIN-A')
    await complete_facility_handoff(session.session_id)
    receipt = await coordinator.create_handoff(driver, session.session_id, INCINERATOR, Receiver.plant('PLANT-1'))
    await coordinator.confirm_handoff(driver, receipt.handoff.handoff_id)
    await coordinator.confirm_by_token(receipt.confirmation_token)

    view = await coordinator.get_public_handoff(receipt.confirmation_token)
    assert view.status == HandoffStatus.COMPLETED
    assert view.type == INCINERATOR

    with pytest.raises(InvalidToken):
        await coordinator.confirm_by_token(receipt.confirmation_token)
    with pytest.raises(InvalidToken):
        await coordinator.get_public_handoff('forged-token')


@pytest.mark.asyncio
async def test_custody_trail_detects_tampering(db, coordinator, driver, supervisor, complete_facility_handoff):
    session = await coordinator.start_collection(driver, ['BIN-A'])
    await coordinator.mark_visited(driver, session.session_id, 'BIN-A', collected_weight=3)
    await complete_facility_handoff(session.session_id)

    verification = await coordinator.verify_custody_trail(supervisor, session.session_id)
    assert verification.valid
    assert verification.events_count == 5

    async with aiosqlite.connect(db) as conn:
        await conn.execute(
            "UPDATE custody_events SET payload_json = replace(payload_json, '3', '30') "
            "WHERE session_id = ? AND event_type = 'container.visited'",
            (session.session_id,)
        )
        await conn.commit()

    broken = await coordinator.verify_custody_trail(supervisor, session.session_id)
    assert not broken.valid
    assert broken.broken_at is not None

    trail = await coordinator.custody_trail(driver, session.session_id)
    assert [item['type'] for item in trail][0] == 'session.started'


@pytest.mark.asyncio
async def test_bad_weight_does_not_block_the_chain(coordinator, driver, supervisor):
    session = await coordinator.start_collection(driver, ['BIN-A'])

    with pytest.raises(ValidationFailed):
        await coordinator.mark_visited(driver, session.session_id, 'BIN-A', collected_weight=-5)
    await coordinator.mark_visited(driver, session.session_id, 'BIN-A', collected_weight=5)
    stopped = await coordinator.stop_collection(driver, session.session_id)
    assert stopped.total_weight_collected == 5

    receipt = await coordinator.create_handoff(supervisor, session.session_id, FACILITY)
    assert receipt.handoff.total_declared_weight == 5


@pytest.mark.asyncio
async def test_new_link_is_issued_by_the_sender_only(coordinator, driver, supervisor, published, clock):
    session = await coordinator.start_collection(driver, ['BIN-A'])
    await coordinator.mark_visited(driver, session.session_id, 'BIN-A')
    receipt = await coordinator.create_handoff(supervisor, session.session_id, FACILITY)
    handoff_id = receipt.handoff.handoff_id
    await coordinator.confirm_handoff(supervisor, handoff_id)
    clock.advance(hours=25)

    with pytest.raises(Forbidden):
        await coordinator.reissue_confirmation_token(driver, handoff_id)
    fresh = await coordinator.reissue_confirmation_token(supervisor, handoff_id)
    done = await coordinator.confirm_by_token(fresh.confirmation_token, driver)

    assert done.status == HandoffStatus.COMPLETED
    assert ev.HANDOFF_TOKEN_REISSUED in names(published)
    assert (await coordinator.verify_custody_trail(supervisor, session.session_id)).valid


@pytest.mark.asyncio
async def test_active_sessions_overview(coordinator, driver, other_driver, admin, clock):
    await db_queries.upsert_container('BIN-Z', 'CLINIC-2', 'medical', None, None)
    first = await coordinator.start_collection(driver, ['BIN-A'])
    clock.advance(minutes=1)
    second = await coordinator.start_collection(other_driver, ['BIN-Z'])
    await coordinator.record_location(driver, first.session_id, {'latitude': 43.3, 'longitude': 76.95})
    clock.advance(seconds=30)
    await coordinator.record_location(driver, first.session_id, {'latitude': 43.31, 'longitude': 76.96})

    with pytest.raises(Forbidden):
        await coordinator.list_active_sessions(driver)

    overview = await coordinator.list_active_sessions(admin)
    assert [item.session.session_id for item in overview] == [first.session_id, second.session_id]
    assert overview[0].last_fix.latitude == 43.31
    assert overview[0].to_dict()['lastLocation']['longitude'] == 76.96
    assert overview[1].last_fix is None

    # Супервайзер видит только свою компанию
    clinic = await coordinator.list_active_sessions(Actor(2001, ROLE_SUPERVISOR, 'CLINIC-1'))
    assert [item.session.session_id for item in clinic] == [first.session_id]
    assert await coordinator.list_active_sessions(Actor(2003, ROLE_SUPERVISOR)) == []

    await coordinator.stop_collection(driver, first.session_id)
    assert [item.session.session_id for item in await coordinator.list_active_sessions(admin)] == [
        second.session_id
    ]


@pytest.mark.asyncio
async def test_locked_database_is_unavailable_and_leaves_no_trace(db, coordinator, driver, published, mocker):
    session = await coordinator.start_collection(driver, ['BIN-A'])
    connect = aiosqlite.connect
    mocker.patch('database.queries.aiosqlite.connect', side_effect=lambda path: connect(path, timeout=0.1))

    # Чужой процесс держит блокировку на запись
    holder = await connect(db)
    await holder.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(Unavailable) as exc:
            await coordinator.mark_visited(driver, session.session_id, 'BIN-A', collected_weight=2)
    finally:
        await holder.rollback()
        await holder.close()

    assert exc.value.kind == 'unavailable'
    assert (await coordinator.sessions.get(session.session_id)).visited_refs() == []
    assert len(await db_queries.get_custody_events(session.session_id)) == 1
    assert names(published) == [ev.SESSION_STARTED]
