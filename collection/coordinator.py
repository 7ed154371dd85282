from typing import Callable

from loguru import logger

from database import queries as db_queries
from collection import events as ev
from collection.custody_log import verify_chain
from collection.errors import EmptyContainers, Forbidden, InvalidReceiver, SessionNotActive
from collection.events import EventDispatcher
from collection.handoff_chain import HandoffChain
from collection.locks import KeyedLock
from collection.location_ingestor import LocationIngestor
from collection.models import (
    ActiveSession, Actor, GeoPoint, Handoff, HandoffContainer, HandoffReceipt, HandoffType, IngestResult, LocationFix,
    PublicHandoffView, Receiver, Session, SessionSummary, TrailVerification, ROLE_ADMIN, utcnow
)
from collection.registry import ContainerRegistry, PlantRegistry
from collection.session_store import SessionStore
from utils.geo import nearby
from utils.validators import is_valid_phone, normalize_phone


def derive_handoff_containers(session: Session) -> list[HandoffContainer]:
    """Handoff lines for every visited container of the session, with its collected weight."""
    return [
        HandoffContainer(item.container_ref, item.collected_weight)
        for item in session.visited_containers()
    ]


class CollectionCoordinator:
    """
    The only entry point of the collection core.

    Checks who is acting (a driver works only on their own sessions, facility
    handoffs belong to supervisors), delegates to SessionStore, LocationIngestor
    and HandoffChain, and publishes domain events after each committed change.
    """

    def __init__(self, sessions: SessionStore, ingestor: LocationIngestor, handoffs: HandoffChain,
                 containers: ContainerRegistry, plants: PlantRegistry, events: EventDispatcher | None = None,
                 visit_proximity_meters: float = 0):
        self.sessions = sessions
        self.ingestor = ingestor
        self.handoffs = handoffs
        self.containers = containers
        self.plants = plants
        self.events = events or EventDispatcher()
        self.visit_proximity_meters = visit_proximity_meters

    @classmethod
    def build(cls, events: EventDispatcher | None = None, clock: Callable = utcnow,
              min_interval_seconds: float = 10, token_ttl_hours: int = 24,
              visit_proximity_meters: float = 0) -> 'CollectionCoordinator':
        locks = KeyedLock()
        containers = ContainerRegistry()
        return cls(
            sessions=SessionStore(containers, locks, clock=clock),
            ingestor=LocationIngestor(locks, min_interval_seconds=min_interval_seconds, clock=clock),
            handoffs=HandoffChain(locks, token_ttl_hours=token_ttl_hours, clock=clock),
            containers=containers,
            plants=PlantRegistry(),
            events=events,
            visit_proximity_meters=visit_proximity_meters,
        )

    # --- Access checks ---

    @staticmethod
    def _ensure_owner(actor: Actor, session: Session):
        if actor.role == ROLE_ADMIN:
            return
        if not (actor.is_driver and session.driver_id == actor.user_id):
            raise Forbidden(f"User {actor.user_id} cannot act on session {session.session_id}")

    @staticmethod
    def _ensure_viewer(actor: Actor, session: Session):
        if actor.is_staff:
            return
        if session.driver_id != actor.user_id:
            raise Forbidden(f"User {actor.user_id} cannot view session {session.session_id}")

    def _ensure_sender(self, actor: Actor, handoff_type: HandoffType, session: Session):
        if handoff_type == HandoffType.FACILITY_TO_DRIVER:
            if not actor.is_staff:
                raise Forbidden("Facility handoffs are issued by the facility supervisor")
        else:
            self._ensure_owner(actor, session)

    # --- Sessions ---

    async def start_collection(self, actor: Actor, container_refs: list[str],
                               start_location: GeoPoint | None = None) -> Session:
        if not actor.is_driver:
            raise Forbidden("Only drivers start collection sessions")
        session = await self.sessions.create_session(actor.user_id, container_refs, start_location)
        await self.events.publish(
            ev.SESSION_STARTED, session_id=session.session_id, driver_id=session.driver_id,
            containers=[item.container_ref for item in session.selected_containers],
        )
        return session

    async def stop_collection(self, actor: Actor, session_id: str, end_location: GeoPoint | None = None) -> Session:
        self._ensure_owner(actor, await self.sessions.get(session_id))
        session = await self.sessions.stop_session(session_id, end_location)
        await self.events.publish(
            ev.SESSION_COMPLETED, session_id=session_id, driver_id=session.driver_id,
            containers_collected=session.containers_collected,
            total_containers=len(session.selected_containers),
            total_weight=session.total_weight_collected,
            duration_minutes=session.total_duration_minutes,
        )
        return session

    async def mark_visited(self, actor: Actor, session_id: str, container_ref: str,
                           collected_weight: float | None = None) -> Session:
        self._ensure_owner(actor, await self.sessions.get(session_id))
        session, changed = await self.sessions.record_visit(session_id, container_ref, collected_weight)
        if changed:
            await self._visited(session, container_ref, auto=False)
        return session

    async def _visited(self, session: Session, container_ref: str, auto: bool):
        await self.events.publish(
            ev.CONTAINER_VISITED, session_id=session.session_id, driver_id=session.driver_id,
            container_ref=container_ref, auto=auto,
            visited_count=len(session.visited_containers()), total_containers=len(session.selected_containers),
        )

    async def record_location(self, actor: Actor, session_id: str, fix: dict | LocationFix) -> IngestResult:
        session = await self.sessions.get(session_id)
        self._ensure_owner(actor, session)
        result = await self.ingestor.accept(session_id, fix)
        if result.accepted and self.visit_proximity_meters > 0:
            await self._auto_visit(session, result.fix)
        return result

    async def _auto_visit(self, session: Session, fix: LocationFix):
        pending = [item.container_ref for item in session.selected_containers if not item.visited]
        if not pending:
            return
        records = await self.containers.resolve(pending)
        candidates = {ref: record.location for ref, record in records.items()}
        for container_ref in nearby(GeoPoint(fix.latitude, fix.longitude), candidates, self.visit_proximity_meters):
            try:
                updated, changed = await self.sessions.record_visit(session.session_id, container_ref)
            except SessionNotActive:
                # Сессию завершили между приемом точки и отметкой
                logger.bind(session_id=session.session_id).debug("Auto-visit skipped: session closed")
                return
            if changed:
                logger.bind(session_id=session.session_id).info(f"Container {container_ref} auto-visited")
                await self._visited(updated, container_ref, auto=True)

    async def get_active_session(self, actor: Actor, driver_id: int | None = None) -> Session:
        driver_id = actor.user_id if driver_id is None else driver_id
        if driver_id != actor.user_id and not actor.is_staff:
            raise Forbidden(f"User {actor.user_id} cannot view sessions of driver {driver_id}")
        return await self.sessions.get_active(driver_id)

    async def get_latest_session(self, actor: Actor) -> Session:
        return await self.sessions.latest_session(actor.user_id)

    async def list_sessions(self, actor: Actor, driver_id: int | None = None, limit: int = 20) -> list[Session]:
        driver_id = actor.user_id if driver_id is None else driver_id
        if driver_id != actor.user_id and not actor.is_staff:
            raise Forbidden(f"User {actor.user_id} cannot view sessions of driver {driver_id}")
        return await self.sessions.list_sessions(driver_id, limit)

    async def list_active_sessions(self, actor: Actor) -> list[ActiveSession]:
        """
        Staff overview of sessions in progress with the last accepted fix of each.
        A supervisor sees only the sessions of their own company.
        """
        if not actor.is_staff:
            raise Forbidden(f"User {actor.user_id} cannot view active sessions")
        if actor.role == ROLE_ADMIN:
            sessions = await self.sessions.list_active()
        elif actor.company_id is None:
            return []
        else:
            sessions = await self.sessions.list_active(actor.company_id)
        return [ActiveSession(session, await self.sessions.last_fix(session.session_id)) for session in sessions]

    async def get_route(self, actor: Actor, session_id: str) -> list[LocationFix]:
        self._ensure_viewer(actor, await self.sessions.get(session_id))
        return await self.sessions.get_route(session_id)

    async def get_session_summary(self, actor: Actor, session_id: str) -> SessionSummary:
        session = await self.sessions.get(session_id)
        self._ensure_viewer(actor, session)
        return SessionSummary(session=session, handoffs=await self.handoffs.list_for_session(session_id))

    # --- Handoffs ---

    async def _resolve_receiver(self, handoff_type: HandoffType, receiver: Receiver | None,
                                session: Session) -> Receiver:
        if receiver is None:
            if handoff_type == HandoffType.FACILITY_TO_DRIVER:
                return Receiver.driver(session.driver_id)
            raise InvalidReceiver("The incinerator handoff needs a plant or a contact phone")
        if receiver.kind == 'plant':
            plant = await self.plants.get(receiver.plant_id)
            return Receiver.plant(plant.plant_id, name=plant.operator_name or plant.name,
                                  phone=plant.operator_phone)
        if receiver.kind == 'contact':
            if not is_valid_phone(receiver.phone or ''):
                raise InvalidReceiver(f"Invalid receiver phone: {receiver.phone}")
            return Receiver.contact(normalize_phone(receiver.phone), receiver.name)
        if receiver.kind == 'driver' and handoff_type == HandoffType.FACILITY_TO_DRIVER:
            if receiver.driver_id != session.driver_id:
                raise InvalidReceiver("The facility hands containers to the session driver only")
            return receiver
        raise InvalidReceiver(f"Unsupported receiver: {receiver.kind}")

    async def create_handoff(self, actor: Actor, session_id: str, handoff_type, receiver: Receiver | None = None,
                             containers: list | None = None) -> HandoffReceipt:
        handoff_type = HandoffType(handoff_type)
        session = await self.sessions.get(session_id)
        self._ensure_sender(actor, handoff_type, session)
        if handoff_type == HandoffType.DRIVER_TO_INCINERATOR and not session.visited_containers():
            raise EmptyContainers(f"Session {session_id} has no visited containers to hand off")

        resolved = await self._resolve_receiver(handoff_type, receiver, session)
        if containers is None:
            containers = derive_handoff_containers(session)
        receipt = await self.handoffs.create(session_id, handoff_type, containers, resolved,
                                             sender_id=actor.user_id)
        handoff = receipt.handoff
        await self.events.publish(
            ev.HANDOFF_CREATED, session_id=session_id, driver_id=session.driver_id,
            handoff_id=handoff.handoff_id, type=handoff.type.value, receiver=resolved.to_dict(),
            total_containers=handoff.total_containers, total_weight=handoff.total_declared_weight,
        )
        return receipt

    async def confirm_handoff(self, actor: Actor, handoff_id: str, token: str | None = None) -> Handoff:
        """Without a token this is the sender's confirmation; with a token, the receiver's."""
        if token:
            handoff = await self.handoffs.confirm_by_receiver(handoff_id, token, actor_id=actor.user_id)
            await self._completed(handoff)
            return handoff

        handoff = await self.handoffs.get(handoff_id)
        session = await self.sessions.get(handoff.session_id)
        self._ensure_sender(actor, handoff.type, session)
        handoff = await self.handoffs.confirm_by_sender(handoff_id, actor_id=actor.user_id)
        await self.events.publish(
            ev.HANDOFF_SENDER_CONFIRMED, session_id=handoff.session_id, driver_id=session.driver_id,
            handoff_id=handoff_id, type=handoff.type.value,
        )
        return handoff

    async def confirm_by_token(self, token: str, actor: Actor | None = None) -> Handoff:
        handoff = await self.handoffs.confirm_by_token(token, actor_id=actor.user_id if actor else None)
        await self._completed(handoff)
        return handoff

    async def _completed(self, handoff: Handoff):
        session = await self.sessions.get(handoff.session_id)
        await self.events.publish(
            ev.HANDOFF_COMPLETED, session_id=handoff.session_id, driver_id=session.driver_id,
            handoff_id=handoff.handoff_id, type=handoff.type.value,
            total_containers=handoff.total_containers, total_weight=handoff.total_declared_weight,
        )

    async def reject_handoff(self, actor: Actor, handoff_id: str, reason: str) -> Handoff:
        handoff = await self.handoffs.get(handoff_id)
        session = await self.sessions.get(handoff.session_id)
        self._ensure_sender(actor, handoff.type, session)
        handoff = await self.handoffs.reject(handoff_id, reason, actor_id=actor.user_id)
        await self.events.publish(
            ev.HANDOFF_REJECTED, session_id=handoff.session_id, driver_id=session.driver_id,
            handoff_id=handoff_id, type=handoff.type.value, reason=reason,
        )
        return handoff

    async def reissue_confirmation_token(self, actor: Actor, handoff_id: str) -> HandoffReceipt:
        """Only the sending side may replace the receiver's link."""
        handoff = await self.handoffs.get(handoff_id)
        session = await self.sessions.get(handoff.session_id)
        self._ensure_sender(actor, handoff.type, session)
        receipt = await self.handoffs.reissue_token(handoff_id, actor_id=actor.user_id)
        await self.events.publish(
            ev.HANDOFF_TOKEN_REISSUED, session_id=handoff.session_id, driver_id=session.driver_id,
            handoff_id=handoff_id, type=handoff.type.value,
        )
        return receipt

    async def get_public_handoff(self, token: str) -> PublicHandoffView:
        return await self.handoffs.get_public(token)

    async def list_incineration_plants(self):
        return await self.plants.list_active()

    # --- Custody trail ---

    async def verify_custody_trail(self, actor: Actor, session_id: str) -> TrailVerification:
        self._ensure_viewer(actor, await self.sessions.get(session_id))
        verification = verify_chain(await db_queries.get_custody_events(session_id))
        if not verification.valid:
            logger.bind(session_id=session_id, security=True).error(
                f"Custody trail broken at event {verification.broken_at}"
            )
        return verification

    async def custody_trail(self, actor: Actor, session_id: str) -> list[dict]:
        self._ensure_viewer(actor, await self.sessions.get(session_id))
        return await db_queries.get_custody_payloads(session_id)
