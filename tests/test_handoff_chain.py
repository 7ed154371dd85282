import asyncio
from datetime import timedelta

import aiosqlite
import pytest
import pytest_asyncio

from collection.errors import (
    DuplicateType, EmptyContainers, HandoffNotFound, InvalidContainers, InvalidToken, PriorStageIncomplete,
    ValidationFailed, WrongStatus
)
from collection.handoff_chain import HandoffChain, normalize_containers
from collection.locks import KeyedLock
from collection.models import HandoffContainer, HandoffStage, HandoffStatus, HandoffType, Receiver
from collection.registry import ContainerRegistry
from collection.session_store import SessionStore
from collection.tokens import hash_token
from database import queries as db_queries

FACILITY = HandoffType.FACILITY_TO_DRIVER
INCINERATOR = HandoffType.DRIVER_TO_INCINERATOR
PLANT = Receiver.plant('PLANT-1', name='Иван Оператор', phone='+77010000001')


@pytest.fixture
def locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture
def store(db, clock, locks) -> SessionStore:
    return SessionStore(ContainerRegistry(), locks, clock=clock)


@pytest.fixture
def chain(db, clock, locks) -> HandoffChain:
    return HandoffChain(locks, token_ttl_hours=24, clock=clock)


@pytest_asyncio.fixture
async def visited_session(store):
    session = await store.create_session(1001, ['BIN-A', 'BIN-B'])
    await store.mark_visited(session.session_id, 'BIN-A', 12.5)
    await store.mark_visited(session.session_id, 'BIN-B', 4)
    return session.session_id


async def complete(chain: HandoffChain, session_id: str, handoff_type, containers, receiver):
    receipt = await chain.create(session_id, handoff_type, containers, receiver, sender_id=2001)
    await chain.confirm_by_sender(receipt.handoff.handoff_id)
    return await chain.confirm_by_receiver(receipt.handoff.handoff_id, receipt.confirmation_token)


def test_normalize_containers_accepts_refs_dicts_and_objects():
    items = normalize_containers([
        'BIN-A', {'containerRef': 'BIN-B', 'declaredWeight': '3.5'}, HandoffContainer('BIN-C', 1), 'BIN-A', ' '
    ])
    assert items == [HandoffContainer('BIN-A'), HandoffContainer('BIN-B', 3.5), HandoffContainer('BIN-C', 1)]


@pytest.mark.asyncio
async def test_round_trip_ends_completed_with_submitted_count(chain, visited_session, clock):
    receipt = await chain.create(
        visited_session, FACILITY, [HandoffContainer('BIN-A', 12.5), HandoffContainer('BIN-B', 4)], Receiver.driver(1001)
    )
    handoff = receipt.handoff

    assert handoff.status == HandoffStatus.PENDING
    assert handoff.handoff_id.startswith(f"HND-{clock.now:%Y%m%d}-")
    assert handoff.chain_id.startswith(f"CHAIN-{clock.now:%Y%m%d}-")
    assert handoff.sequence == 1
    # Токен достаточно длинный и хранится только хэшем
    assert len(receipt.confirmation_token) >= 22
    assert handoff.token_hash == hash_token(receipt.confirmation_token)
    assert 'tokenHash' not in handoff.to_dict()

    await chain.confirm_by_sender(handoff.handoff_id)
    done = await chain.confirm_by_receiver(handoff.handoff_id, receipt.confirmation_token)

    assert done.status == HandoffStatus.COMPLETED
    assert done.total_containers == 2
    assert done.total_declared_weight == 16.5
    assert done.token_consumed_at == clock.now


@pytest.mark.asyncio
async def test_stage_follows_handoffs(chain, store, visited_session):
    await complete(chain, visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    assert (await store.get(visited_session)).handoff_stage == HandoffStage.FACILITY_CONFIRMED

    receipt = await chain.create(visited_session, INCINERATOR, ['BIN-A'], PLANT)
    session = await store.get(visited_session)
    assert session.handoff_stage == HandoffStage.AWAITING_INCINERATOR_HANDOFF
    assert receipt.handoff.sequence == 2
    assert receipt.handoff.chain_id == session.chain_id

    await chain.confirm_by_sender(receipt.handoff.handoff_id)
    await chain.confirm_by_receiver(receipt.handoff.handoff_id, receipt.confirmation_token)
    assert (await store.get(visited_session)).handoff_stage == HandoffStage.INCINERATOR_CONFIRMED


@pytest.mark.asyncio
async def test_incinerator_handoff_requires_completed_facility_handoff(chain, visited_session):
    with pytest.raises(PriorStageIncomplete):
        await chain.create(visited_session, INCINERATOR, ['BIN-A'], PLANT)

    receipt = await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    with pytest.raises(PriorStageIncomplete):
        await chain.create(visited_session, INCINERATOR, ['BIN-A'], PLANT)

    await chain.confirm_by_sender(receipt.handoff.handoff_id)
    with pytest.raises(PriorStageIncomplete):
        await chain.create(visited_session, INCINERATOR, ['BIN-A'], PLANT)


@pytest.mark.asyncio
async def test_create_rejects_empty_unvisited_and_duplicate(chain, store, visited_session):
    session = await store.create_session(1002, ['BIN-A', 'BIN-C'])
    await store.mark_visited(session.session_id, 'BIN-A')

    with pytest.raises(EmptyContainers):
        await chain.create(session.session_id, FACILITY, [], Receiver.driver(1002))
    with pytest.raises(InvalidContainers) as exc:
        await chain.create(session.session_id, FACILITY, ['BIN-A', 'BIN-C'], Receiver.driver(1002))
    assert exc.value.details['containers'] == ['BIN-C']
    assert await chain.list_for_session(session.session_id) == []

    await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    with pytest.raises(DuplicateType):
        await chain.create(visited_session, FACILITY, ['BIN-B'], Receiver.driver(1001))


@pytest.mark.asyncio
async def test_rejected_handoff_still_blocks_same_type(chain, store, visited_session):
    receipt = await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    rejected = await chain.reject(receipt.handoff.handoff_id, "Пломба повреждена")

    assert rejected.status == HandoffStatus.REJECTED
    assert rejected.rejection_reason == "Пломба повреждена"
    # Этап сессии при отказе не меняется
    assert (await store.get(visited_session)).handoff_stage == HandoffStage.AWAITING_FACILITY_CONFIRMATION
    with pytest.raises(WrongStatus):
        await chain.confirm_by_sender(receipt.handoff.handoff_id)
    with pytest.raises(WrongStatus):
        await chain.reject(receipt.handoff.handoff_id, "again")
    with pytest.raises(DuplicateType):
        await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))


@pytest.mark.asyncio
async def test_receiver_cannot_skip_sender_confirmation(chain, visited_session):
    receipt = await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))

    with pytest.raises(WrongStatus):
        await chain.confirm_by_receiver(receipt.handoff.handoff_id, receipt.confirmation_token)
    # Токен не погашен неудачной попыткой
    handoff = await chain.get(receipt.handoff.handoff_id)
    assert handoff.token_consumed_at is None


@pytest.mark.asyncio
async def test_token_is_single_use(chain, visited_session):
    receipt = await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    await chain.confirm_by_sender(receipt.handoff.handoff_id)
    await chain.confirm_by_receiver(receipt.handoff.handoff_id, receipt.confirmation_token)

    with pytest.raises(InvalidToken) as exc:
        await chain.confirm_by_receiver(receipt.handoff.handoff_id, receipt.confirmation_token)
    assert exc.value.details['reason'] == 'consumed'
    with pytest.raises(InvalidToken):
        await chain.confirm_by_token(receipt.confirmation_token)


@pytest.mark.asyncio
async def test_wrong_and_expired_tokens_are_rejected(chain, visited_session, clock):
    receipt = await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    handoff_id = receipt.handoff.handoff_id
    await chain.confirm_by_sender(handoff_id)

    with pytest.raises(InvalidToken) as exc:
        await chain.confirm_by_receiver(handoff_id, receipt.confirmation_token + 'x')
    assert exc.value.details['reason'] == 'mismatch'

    clock.advance(hours=24, seconds=1)
    with pytest.raises(InvalidToken) as exc:
        await chain.confirm_by_receiver(handoff_id, receipt.confirmation_token)
    assert exc.value.details['reason'] == 'expired'
    assert (await chain.get(handoff_id)).status == HandoffStatus.CONFIRMED_BY_SENDER


@pytest.mark.asyncio
async def test_concurrent_receiver_confirmations_one_wins(chain, visited_session):
    receipt = await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    handoff_id = receipt.handoff.handoff_id
    await chain.confirm_by_sender(handoff_id)

    results = await asyncio.gather(
        chain.confirm_by_receiver(handoff_id, receipt.confirmation_token),
        chain.confirm_by_receiver(handoff_id, receipt.confirmation_token),
        return_exceptions=True
    )

    completed = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(completed) == 1 and completed[0].status == HandoffStatus.COMPLETED
    assert len(failed) == 1 and isinstance(failed[0], InvalidToken)


@pytest.mark.asyncio
async def test_concurrent_sender_confirmations_one_wins(chain, visited_session):
    receipt = await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))

    results = await asyncio.gather(
        *(chain.confirm_by_sender(receipt.handoff.handoff_id) for _ in range(3)),
        return_exceptions=True
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, WrongStatus) for r in results if isinstance(r, Exception))


@pytest.mark.asyncio
async def test_storage_decides_token_race_between_processes(db, clock, visited_session):
    """Two chains with their own locks share only the database."""
    first, second = HandoffChain(KeyedLock(), clock=clock), HandoffChain(KeyedLock(), clock=clock)
    receipt = await first.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    await first.confirm_by_sender(receipt.handoff.handoff_id)

    results = await asyncio.gather(
        first.confirm_by_token(receipt.confirmation_token),
        second.confirm_by_token(receipt.confirmation_token),
        return_exceptions=True
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, InvalidToken) for r in results if isinstance(r, Exception))


@pytest.mark.asyncio
async def test_declared_weight_is_inherited_from_facility_handoff(chain, visited_session):
    await complete(chain, visited_session, FACILITY,
                   [{'containerRef': 'BIN-A', 'declaredWeight': 12.5}, {'containerRef': 'BIN-B'}],
                   Receiver.driver(1001))

    receipt = await chain.create(
        visited_session, INCINERATOR, ['BIN-A', {'containerRef': 'BIN-B', 'declaredWeight': 5}], PLANT
    )

    weights = {item.container_ref: item.declared_weight for item in receipt.handoff.containers}
    assert weights == {'BIN-A': 12.5, 'BIN-B': 5}
    assert receipt.handoff.total_declared_weight == 17.5


@pytest.mark.asyncio
async def test_public_view_by_token_survives_consumption(chain, visited_session):
    receipt = await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    pending_view = await chain.get_public(receipt.confirmation_token)
    assert pending_view.status == HandoffStatus.PENDING

    await chain.confirm_by_sender(receipt.handoff.handoff_id)
    await chain.confirm_by_token(receipt.confirmation_token)

    view = await chain.get_public(receipt.confirmation_token)
    assert view.handoff_id == receipt.handoff.handoff_id
    assert view.status == HandoffStatus.COMPLETED
    assert view.total_containers == 1
    assert not hasattr(view, 'token_hash')

    with pytest.raises(InvalidToken):
        await chain.get_public('not-a-token')


@pytest.mark.asyncio
async def test_custody_events_follow_the_chain(chain, visited_session):
    receipt = await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    await chain.confirm_by_sender(receipt.handoff.handoff_id)
    await chain.confirm_by_receiver(receipt.handoff.handoff_id, receipt.confirmation_token)

    trail = await db_queries.get_custody_payloads(visited_session)
    assert [event['type'] for event in trail] == [
        'session.started', 'container.visited', 'container.visited',
        'handoff.created', 'handoff.confirmed_by_sender', 'handoff.completed',
    ]
    assert receipt.confirmation_token not in str(trail)


@pytest.mark.asyncio
async def test_unknown_handoff(chain):
    with pytest.raises(HandoffNotFound):
        await chain.confirm_by_sender('HND-404')


@pytest.mark.parametrize('weight', ['nan', float('inf'), 'abc', -1])
def test_normalize_containers_rejects_bad_weight(weight):
    with pytest.raises(ValidationFailed) as exc:
        normalize_containers(['BIN-A', {'containerRef': 'BIN-B', 'declaredWeight': weight}])
    assert exc.value.details['container_ref'] == 'BIN-B'


@pytest.mark.asyncio
async def test_nan_weight_fails_validation_and_keeps_type_free(chain, visited_session):
    with pytest.raises(ValidationFailed):
        await chain.create(
            visited_session, FACILITY,
            [{'containerRef': 'BIN-A'}, {'containerRef': 'BIN-B', 'declaredWeight': 'nan'}], Receiver.driver(1001)
        )
    assert await chain.list_for_session(visited_session) == []

    receipt = await chain.create(visited_session, FACILITY, ['BIN-A', 'BIN-B'], Receiver.driver(1001))
    assert receipt.handoff.status == HandoffStatus.PENDING


@pytest.mark.asyncio
async def test_only_the_unique_type_violation_is_duplicate(chain, visited_session, mocker):
    mocker.patch(
        'database.queries.insert_handoff',
        side_effect=aiosqlite.IntegrityError("NOT NULL constraint failed: handoffs.total_declared_weight")
    )

    with pytest.raises(aiosqlite.IntegrityError):
        await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))


@pytest.mark.asyncio
async def test_reject_is_allowed_only_while_pending(chain, visited_session):
    receipt = await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    handoff_id = receipt.handoff.handoff_id
    await chain.confirm_by_sender(handoff_id)

    with pytest.raises(WrongStatus) as exc:
        await chain.reject(handoff_id, "Поздно")
    assert exc.value.details['status'] == 'confirmed_by_sender'
    assert (await chain.get(handoff_id)).status == HandoffStatus.CONFIRMED_BY_SENDER

    await chain.confirm_by_receiver(handoff_id, receipt.confirmation_token)
    with pytest.raises(WrongStatus):
        await chain.reject(handoff_id, "Поздно")
    handoff = await chain.get(handoff_id)
    assert handoff.status == HandoffStatus.COMPLETED
    assert handoff.rejection_reason is None


@pytest.mark.asyncio
async def test_reissued_token_revives_expired_handoff(chain, visited_session, clock):
    receipt = await chain.create(visited_session, FACILITY, ['BIN-A'], Receiver.driver(1001))
    handoff_id = receipt.handoff.handoff_id
    await chain.confirm_by_sender(handoff_id)
    clock.advance(hours=25)
    with pytest.raises(InvalidToken):
        await chain.confirm_by_receiver(handoff_id, receipt.confirmation_token)

    fresh = await chain.reissue_token(handoff_id, actor_id=2001)

    assert fresh.confirmation_token != receipt.confirmation_token
    assert fresh.handoff.status == HandoffStatus.CONFIRMED_BY_SENDER
    assert fresh.handoff.token_expires_at == clock.now + timedelta(hours=24)
    # Старый токен больше не подходит
    with pytest.raises(InvalidToken) as exc:
        await chain.confirm_by_receiver(handoff_id, receipt.confirmation_token)
    assert exc.value.details['reason'] == 'mismatch'

    done = await chain.confirm_by_token(fresh.confirmation_token)
    assert done.status == HandoffStatus.COMPLETED
    with pytest.raises(WrongStatus):
        await chain.reissue_token(handoff_id)

    trail = await db_queries.get_custody_payloads(visited_session)
    assert [event['type'] for event in trail][-3:] == [
        'handoff.confirmed_by_sender', 'handoff.token_reissued', 'handoff.completed',
    ]
    assert fresh.confirmation_token not in str(trail)
