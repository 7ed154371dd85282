"""
Two-stage chain of custody: facility -> driver -> incineration plant.

Each handoff is a small state machine:

    pending -> confirmed_by_sender -> completed
    pending -> rejected

The receiver completes a handoff only with the single-use confirmation token
issued at creation, or reissued by the sender while the handoff is still open.
Only the token hash is stored; the raw value is returned once, inside HandoffReceipt.
"""
import secrets
from typing import Callable

import aiosqlite
from loguru import logger

from database import queries as db_queries
from collection.errors import (
    DuplicateType, EmptyContainers, HandoffNotFound, InvalidContainers, InvalidReceiver, InvalidToken,
    PriorStageIncomplete, SessionNotFound, WrongStatus
)
from collection.locks import KeyedLock
from collection.models import (
    HANDOFF_SEQUENCE, Handoff, HandoffContainer, HandoffReceipt, HandoffStage, HandoffStatus, HandoffType,
    PublicHandoffView, Receiver, Session, utcnow
)
from collection.tokens import generate_confirmation_token, hash_token, token_fingerprint, token_matches
from utils.validators import parse_weight

# Этап сессии после создания и после завершения передачи каждого типа
_STAGE_ON_CREATE = {
    HandoffType.FACILITY_TO_DRIVER: HandoffStage.AWAITING_FACILITY_CONFIRMATION,
    HandoffType.DRIVER_TO_INCINERATOR: HandoffStage.AWAITING_INCINERATOR_HANDOFF,
}
_STAGE_ON_COMPLETE = {
    HandoffType.FACILITY_TO_DRIVER: HandoffStage.FACILITY_CONFIRMED,
    HandoffType.DRIVER_TO_INCINERATOR: HandoffStage.INCINERATOR_CONFIRMED,
}


def _is_duplicate_type(error: aiosqlite.IntegrityError) -> bool:
    message = str(error)
    return 'UNIQUE' in message and 'handoffs.session_id, handoffs.type' in message


def _daily_id(prefix: str, now) -> str:
    return f"{prefix}-{now.strftime('%Y%m%d')}-{secrets.token_hex(4).upper()}"


def normalize_containers(items) -> list[HandoffContainer]:
    """
    Accepts HandoffContainer objects, bare refs or dicts ({containerRef, declaredWeight});
    keeps the first occurrence of each ref. A weight that is not a finite non-negative
    number is ValidationFailed.
    """
    containers: list[HandoffContainer] = []
    seen = set()
    for item in items or []:
        if isinstance(item, HandoffContainer):
            container = HandoffContainer(item.container_ref,
                                         parse_weight(item.declared_weight, item.container_ref))
        elif isinstance(item, dict):
            ref = item.get('containerRef', item.get('container_ref'))
            weight = item.get('declaredWeight', item.get('declared_weight'))
            ref = str(ref).strip() if ref is not None else ''
            container = HandoffContainer(ref, parse_weight(weight, ref))
        else:
            container = HandoffContainer(str(item).strip())
        if not container.container_ref or container.container_ref in seen:
            continue
        seen.add(container.container_ref)
        containers.append(container)
    return containers


class HandoffChain:
    def __init__(self, locks: KeyedLock, token_ttl_hours: int = 24, clock: Callable = utcnow):
        self.locks = locks
        self.token_ttl_hours = token_ttl_hours
        self.clock = clock

    async def get(self, handoff_id: str) -> Handoff:
        loaded = await db_queries.get_handoff(handoff_id)
        if loaded is None:
            raise HandoffNotFound(f"Handoff {handoff_id} not found", handoff_id=handoff_id)
        return Handoff.from_rows(*loaded)

    async def list_for_session(self, session_id: str) -> list[Handoff]:
        return [Handoff.from_rows(*loaded) for loaded in await db_queries.get_session_handoffs(session_id)]

    async def create(self, session_id: str, handoff_type, containers, receiver: Receiver,
                     sender_id: int | None = None) -> HandoffReceipt:
        handoff_type = HandoffType(handoff_type)
        items = normalize_containers(containers)
        if not items:
            raise EmptyContainers("A handoff needs at least one container")
        if receiver is None:
            raise InvalidReceiver("A handoff needs a receiver")

        async with self.locks.session(session_id):
            loaded = await db_queries.get_session(session_id)
            if loaded is None:
                raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
            session = Session.from_rows(*loaded)
            existing = {handoff.type: handoff for handoff in await self.list_for_session(session_id)}

            if handoff_type in existing:
                raise DuplicateType(
                    f"Session {session_id} already has a {handoff_type.value} handoff",
                    handoff_id=existing[handoff_type].handoff_id,
                )
            facility = existing.get(HandoffType.FACILITY_TO_DRIVER)
            if handoff_type == HandoffType.DRIVER_TO_INCINERATOR:
                if facility is None or facility.status != HandoffStatus.COMPLETED:
                    raise PriorStageIncomplete(
                        "The facility handoff must be completed before the incinerator handoff",
                        session_id=session_id,
                    )

            visited = set(session.visited_refs())
            not_visited = [item.container_ref for item in items if item.container_ref not in visited]
            if not_visited:
                raise InvalidContainers(
                    f"Containers were not visited in session {session_id}: {', '.join(not_visited)}",
                    containers=not_visited,
                )

            if handoff_type == HandoffType.DRIVER_TO_INCINERATOR:
                # Незаявленный вес берется из завершенной передачи от учреждения
                inherited = {item.container_ref: item.declared_weight for item in facility.containers}
                items = [
                    item if item.declared_weight is not None
                    else HandoffContainer(item.container_ref, inherited.get(item.container_ref))
                    for item in items
                ]

            now = self.clock()
            raw_token, token_hash, expires_at = generate_confirmation_token(now, self.token_ttl_hours)
            chain_id = session.chain_id or _daily_id("CHAIN", now)
            handoff = Handoff(
                handoff_id=_daily_id("HND", now),
                session_id=session_id,
                type=handoff_type,
                status=HandoffStatus.PENDING,
                sequence=HANDOFF_SEQUENCE[handoff_type],
                receiver=receiver,
                containers=items,
                chain_id=chain_id,
                sender_id=sender_id,
                token_hash=token_hash,
                token_expires_at=expires_at,
                created_at=now,
            )
            try:
                await db_queries.insert_handoff(handoff, _STAGE_ON_CREATE[handoff_type].value, chain_id)
            except aiosqlite.IntegrityError as e:
                if not _is_duplicate_type(e):
                    raise
                raise DuplicateType(f"Session {session_id} already has a {handoff_type.value} handoff") from e

        logger.bind(session_id=session_id).info(
            f"Handoff {handoff.handoff_id} ({handoff_type.value}) created: "
            f"{handoff.total_containers} containers, {handoff.total_declared_weight} kg"
        )
        return HandoffReceipt(handoff=await self.get(handoff.handoff_id), confirmation_token=raw_token)

    async def _transition(self, handoff: Handoff, from_status: HandoffStatus, to_status: HandoffStatus,
                          **kwargs) -> Handoff:
        changed = await db_queries.transition_handoff(
            handoff.handoff_id, handoff.session_id, from_status.value, to_status.value, self.clock(), **kwargs
        )
        if not changed:
            current = await self.get(handoff.handoff_id)
            raise WrongStatus(
                f"Handoff {handoff.handoff_id} is {current.status.value}, expected {from_status.value}",
                status=current.status.value,
            )
        return await self.get(handoff.handoff_id)

    async def confirm_by_sender(self, handoff_id: str, actor_id: int | None = None) -> Handoff:
        handoff = await self.get(handoff_id)
        async with self.locks.session(handoff.session_id):
            handoff = await self.get(handoff_id)
            if handoff.status != HandoffStatus.PENDING:
                raise WrongStatus(f"Handoff {handoff_id} is {handoff.status.value}, expected pending",
                                  status=handoff.status.value)
            handoff = await self._transition(
                handoff, HandoffStatus.PENDING, HandoffStatus.CONFIRMED_BY_SENDER, actor_id=actor_id
            )
        logger.bind(session_id=handoff.session_id).info(f"Handoff {handoff_id} confirmed by sender")
        return handoff

    def _invalid_token(self, handoff_id: str | None, token: str, reason: str) -> InvalidToken:
        logger.bind(security=True, handoff_id=handoff_id).warning(
            f"Rejected confirmation token for handoff {handoff_id or '-'}: {reason} "
            f"(fingerprint {token_fingerprint(token)})"
        )
        return InvalidToken(f"Confirmation token is not valid ({reason})", reason=reason, handoff_id=handoff_id)

    async def confirm_by_receiver(self, handoff_id: str, token: str, actor_id: int | None = None) -> Handoff:
        """
        confirmed_by_sender -> completed, consuming the token.
        Token checks come before the status check, so a replayed token is always
        InvalidToken, also for the loser of two concurrent confirmations.
        """
        handoff = await self.get(handoff_id)
        async with self.locks.session(handoff.session_id):
            handoff = await self.get(handoff_id)
            if not token_matches(token, handoff.token_hash):
                raise self._invalid_token(handoff_id, token, 'mismatch')
            if handoff.token_consumed_at is not None:
                raise self._invalid_token(handoff_id, token, 'consumed')
            if handoff.token_expires_at is not None and handoff.token_expires_at <= self.clock():
                raise self._invalid_token(handoff_id, token, 'expired')
            if handoff.status != HandoffStatus.CONFIRMED_BY_SENDER:
                raise WrongStatus(
                    f"Handoff {handoff_id} is {handoff.status.value}, expected confirmed_by_sender",
                    status=handoff.status.value,
                )

            changed = await db_queries.transition_handoff(
                handoff_id, handoff.session_id,
                HandoffStatus.CONFIRMED_BY_SENDER.value, HandoffStatus.COMPLETED.value, self.clock(),
                stage=_STAGE_ON_COMPLETE[handoff.type].value, consume_token=True, actor_id=actor_id,
            )
            if not changed:
                # Другой процесс успел раньше: токен погашен или статус уже сменился
                current = await self.get(handoff_id)
                if current.token_consumed_at is not None:
                    raise self._invalid_token(handoff_id, token, 'consumed')
                raise WrongStatus(f"Handoff {handoff_id} is {current.status.value}", status=current.status.value)
            handoff = await self.get(handoff_id)

        logger.bind(session_id=handoff.session_id).info(f"Handoff {handoff_id} completed by receiver")
        return handoff

    async def _by_token(self, token: str) -> Handoff:
        loaded = await db_queries.get_handoff_by_token_hash(hash_token(token)) if token else None
        if loaded is None:
            raise self._invalid_token(None, token, 'unknown')
        return Handoff.from_rows(*loaded)

    async def confirm_by_token(self, token: str, actor_id: int | None = None) -> Handoff:
        handoff = await self._by_token(token)
        return await self.confirm_by_receiver(handoff.handoff_id, token, actor_id=actor_id)

    async def get_public(self, token: str) -> PublicHandoffView:
        return PublicHandoffView.from_handoff(await self._by_token(token))

    async def reject(self, handoff_id: str, reason: str, actor_id: int | None = None) -> Handoff:
        handoff = await self.get(handoff_id)
        async with self.locks.session(handoff.session_id):
            handoff = await self.get(handoff_id)
            if handoff.status != HandoffStatus.PENDING:
                raise WrongStatus(f"Handoff {handoff_id} is {handoff.status.value}, expected pending",
                                  status=handoff.status.value)
            handoff = await self._transition(
                handoff, HandoffStatus.PENDING, HandoffStatus.REJECTED,
                rejection_reason=reason or '', actor_id=actor_id,
            )
        logger.bind(session_id=handoff.session_id).warning(f"Handoff {handoff_id} rejected: {reason}")
        return handoff

    async def reissue_token(self, handoff_id: str, actor_id: int | None = None) -> HandoffReceipt:
        """
        New token and expiry for a handoff that is still open, for example after the first link expired.
        The previous token stops matching at once; the new raw value is returned only here.
        """
        handoff = await self.get(handoff_id)
        async with self.locks.session(handoff.session_id):
            handoff = await self.get(handoff_id)
            if handoff.is_terminal:
                raise WrongStatus(f"Handoff {handoff_id} is {handoff.status.value}, token cannot be reissued",
                                  status=handoff.status.value)
            now = self.clock()
            raw_token, token_hash, expires_at = generate_confirmation_token(now, self.token_ttl_hours)
            changed = await db_queries.reissue_handoff_token(
                handoff_id, handoff.session_id, token_hash, expires_at, now, actor_id=actor_id
            )
            if not changed:
                current = await self.get(handoff_id)
                raise WrongStatus(f"Handoff {handoff_id} is {current.status.value}", status=current.status.value)

        logger.bind(session_id=handoff.session_id, security=True).info(
            f"Confirmation token reissued for handoff {handoff_id} (fingerprint {token_fingerprint(raw_token)})"
        )
        return HandoffReceipt(handoff=await self.get(handoff_id), confirmation_token=raw_token)
