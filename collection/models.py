from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from dateutil import parser


class SessionStatus(str, Enum):
    ACTIVE = 'active'
    COMPLETED = 'completed'


class HandoffType(str, Enum):
    FACILITY_TO_DRIVER = 'facility_to_driver'
    DRIVER_TO_INCINERATOR = 'driver_to_incinerator'


class HandoffStatus(str, Enum):
    PENDING = 'pending'
    CONFIRMED_BY_SENDER = 'confirmed_by_sender'
    COMPLETED = 'completed'
    REJECTED = 'rejected'


class HandoffStage(str, Enum):
    NONE = 'none'
    AWAITING_FACILITY_CONFIRMATION = 'awaiting_facility_confirmation'
    FACILITY_CONFIRMED = 'facility_confirmed'
    AWAITING_INCINERATOR_HANDOFF = 'awaiting_incinerator_handoff'
    INCINERATOR_CONFIRMED = 'incinerator_confirmed'


# Sequence number of each handoff type inside the custody chain
HANDOFF_SEQUENCE = {
    HandoffType.FACILITY_TO_DRIVER: 1,
    HandoffType.DRIVER_TO_INCINERATOR: 2,
}

ROLE_DRIVER = 'driver'
ROLE_SUPERVISOR = 'supervisor'
ROLE_ADMIN = 'admin'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return parser.isoparse(value)


def format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Actor:
    """Request-scoped identity supplied by the auth collaborator."""
    user_id: int
    role: str
    company_id: str | None = None

    @property
    def is_driver(self) -> bool:
        return self.role == ROLE_DRIVER

    @property
    def is_staff(self) -> bool:
        return self.role in (ROLE_SUPERVISOR, ROLE_ADMIN)


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def to_dict(self) -> dict:
        return {'latitude': self.latitude, 'longitude': self.longitude}


@dataclass
class LocationFix:
    latitude: float
    longitude: float
    accuracy: float = 0.0
    speed: float | None = None
    altitude: float | None = None
    altitude_accuracy: float | None = None
    heading: float | None = None
    device_time: datetime | None = None
    received_at: datetime | None = None

    def to_dict(self) -> dict:
        """Serializes the fix, leaving out optional attributes that were not reported."""
        data = {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'accuracy': self.accuracy,
            'speed': self.speed,
            'altitude': self.altitude,
            'altitudeAccuracy': self.altitude_accuracy,
            'heading': self.heading,
            'deviceTime': format_dt(self.device_time),
            'receivedAt': format_dt(self.received_at),
        }
        return {key: value for key, value in data.items() if value is not None}

    @classmethod
    def from_row(cls, row) -> 'LocationFix':
        return cls(
            latitude=row['latitude'],
            longitude=row['longitude'],
            accuracy=row['accuracy'],
            speed=row['speed'],
            altitude=row['altitude'],
            altitude_accuracy=row['altitude_accuracy'],
            heading=row['heading'],
            device_time=parse_dt(row['device_time']),
            received_at=parse_dt(row['received_at']),
        )


@dataclass
class SelectedContainer:
    container_ref: str
    visited: bool = False
    visited_at: datetime | None = None
    collected_weight: float | None = None

    def to_dict(self) -> dict:
        data = {'containerRef': self.container_ref, 'visited': self.visited}
        if self.visited_at is not None:
            data['visitedAt'] = format_dt(self.visited_at)
        if self.collected_weight is not None:
            data['collectedWeight'] = self.collected_weight
        return data


@dataclass
class Session:
    session_id: str
    driver_id: int
    status: SessionStatus
    start_time: datetime
    selected_containers: list[SelectedContainer] = field(default_factory=list)
    end_time: datetime | None = None
    start_location: GeoPoint | None = None
    end_location: GeoPoint | None = None
    company_id: str | None = None
    handoff_stage: HandoffStage = HandoffStage.NONE
    chain_id: str | None = None
    last_fix_at: datetime | None = None
    route_points_count: int = 0
    containers_collected: int = 0
    total_weight_collected: float = 0.0
    total_duration_minutes: int = 0
    version: int = 1
    route: list[LocationFix] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def container(self, container_ref: str) -> SelectedContainer | None:
        for item in self.selected_containers:
            if item.container_ref == container_ref:
                return item
        return None

    def visited_containers(self) -> list[SelectedContainer]:
        """The one place where the visited set of a session is derived."""
        return [item for item in self.selected_containers if item.visited]

    def visited_refs(self) -> list[str]:
        return [item.container_ref for item in self.visited_containers()]

    def to_dict(self, include_route: bool = False) -> dict:
        data = {
            'sessionId': self.session_id,
            'driverId': self.driver_id,
            'companyId': self.company_id,
            'status': self.status.value,
            'startTime': format_dt(self.start_time),
            'endTime': format_dt(self.end_time),
            'startLocation': self.start_location.to_dict() if self.start_location else None,
            'endLocation': self.end_location.to_dict() if self.end_location else None,
            'selectedContainers': [item.to_dict() for item in self.selected_containers],
            'handoffState': {'stage': self.handoff_stage.value},
            'chainId': self.chain_id,
            'routePointsCount': self.route_points_count,
            'containersCollected': self.containers_collected,
            'totalWeightCollected': self.total_weight_collected,
            'totalDuration': self.total_duration_minutes,
            'version': self.version,
        }
        if include_route:
            data['route'] = [fix.to_dict() for fix in self.route]
        return data

    @classmethod
    def from_rows(cls, row, container_rows, route_rows=()) -> 'Session':
        start_location = None
        if row['start_lat'] is not None and row['start_lon'] is not None:
            start_location = GeoPoint(row['start_lat'], row['start_lon'])
        end_location = None
        if row['end_lat'] is not None and row['end_lon'] is not None:
            end_location = GeoPoint(row['end_lat'], row['end_lon'])
        return cls(
            session_id=row['session_id'],
            driver_id=row['driver_id'],
            company_id=row['company_id'],
            status=SessionStatus(row['status']),
            start_time=parse_dt(row['start_time']),
            end_time=parse_dt(row['end_time']),
            start_location=start_location,
            end_location=end_location,
            selected_containers=[
                SelectedContainer(
                    container_ref=c['container_ref'],
                    visited=bool(c['visited']),
                    visited_at=parse_dt(c['visited_at']),
                    collected_weight=c['collected_weight'],
                )
                for c in container_rows
            ],
            handoff_stage=HandoffStage(row['handoff_stage']),
            chain_id=row['chain_id'],
            last_fix_at=parse_dt(row['last_fix_at']),
            route_points_count=row['route_points_count'],
            containers_collected=row['containers_collected'] or 0,
            total_weight_collected=row['total_weight_collected'] or 0.0,
            total_duration_minutes=row['total_duration_minutes'] or 0,
            version=row['version'],
            route=[LocationFix.from_row(r) for r in route_rows],
        )


@dataclass(frozen=True)
class HandoffContainer:
    container_ref: str
    declared_weight: float | None = None

    def to_dict(self) -> dict:
        data = {'containerRef': self.container_ref}
        if self.declared_weight is not None:
            data['declaredWeight'] = self.declared_weight
        return data


@dataclass(frozen=True)
class Receiver:
    """Receiving party of a handoff: a registered plant, an ad-hoc phone contact or the session driver."""
    kind: str
    plant_id: str | None = None
    phone: str | None = None
    name: str | None = None
    driver_id: int | None = None

    @classmethod
    def plant(cls, plant_id: str, name: str | None = None, phone: str | None = None) -> 'Receiver':
        return cls(kind='plant', plant_id=plant_id, name=name, phone=phone)

    @classmethod
    def contact(cls, phone: str, name: str | None = None) -> 'Receiver':
        return cls(kind='contact', phone=phone, name=name)

    @classmethod
    def driver(cls, driver_id: int, name: str | None = None) -> 'Receiver':
        return cls(kind='driver', driver_id=driver_id, name=name)

    def to_dict(self) -> dict:
        data = {
            'kind': self.kind,
            'incinerationPlant': self.plant_id,
            'phone': self.phone,
            'name': self.name,
            'driverId': self.driver_id,
        }
        return {key: value for key, value in data.items() if value is not None}


@dataclass
class Handoff:
    handoff_id: str
    session_id: str
    type: HandoffType
    status: HandoffStatus
    sequence: int
    receiver: Receiver
    containers: list[HandoffContainer] = field(default_factory=list)
    chain_id: str | None = None
    sender_id: int | None = None
    token_hash: str | None = None
    token_expires_at: datetime | None = None
    token_consumed_at: datetime | None = None
    sender_confirmed_at: datetime | None = None
    completed_at: datetime | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    created_at: datetime | None = None
    version: int = 1

    @property
    def total_containers(self) -> int:
        return len(self.containers)

    @property
    def total_declared_weight(self) -> float:
        return sum(item.declared_weight or 0 for item in self.containers)

    @property
    def is_terminal(self) -> bool:
        return self.status in (HandoffStatus.COMPLETED, HandoffStatus.REJECTED)

    def to_dict(self) -> dict:
        # token_hash never leaves the core
        return {
            'handoffId': self.handoff_id,
            'sessionId': self.session_id,
            'chainId': self.chain_id,
            'type': self.type.value,
            'sequence': self.sequence,
            'status': self.status.value,
            'senderId': self.sender_id,
            'receiver': self.receiver.to_dict(),
            'containers': [item.to_dict() for item in self.containers],
            'totalContainers': self.total_containers,
            'totalDeclaredWeight': self.total_declared_weight,
            'tokenExpiresAt': format_dt(self.token_expires_at),
            'senderConfirmedAt': format_dt(self.sender_confirmed_at),
            'completedAt': format_dt(self.completed_at),
            'rejectedAt': format_dt(self.rejected_at),
            'rejectionReason': self.rejection_reason,
            'createdAt': format_dt(self.created_at),
            'version': self.version,
        }

    @classmethod
    def from_rows(cls, row, container_rows) -> 'Handoff':
        return cls(
            handoff_id=row['handoff_id'],
            session_id=row['session_id'],
            chain_id=row['chain_id'],
            type=HandoffType(row['type']),
            sequence=row['sequence'],
            status=HandoffStatus(row['status']),
            sender_id=row['sender_id'],
            receiver=Receiver(
                kind=row['receiver_kind'],
                plant_id=row['receiver_plant_id'],
                phone=row['receiver_phone'],
                name=row['receiver_name'],
                driver_id=row['receiver_driver_id'],
            ),
            containers=[
                HandoffContainer(c['container_ref'], c['declared_weight'])
                for c in container_rows
            ],
            token_hash=row['token_hash'],
            token_expires_at=parse_dt(row['token_expires_at']),
            token_consumed_at=parse_dt(row['token_consumed_at']),
            sender_confirmed_at=parse_dt(row['sender_confirmed_at']),
            completed_at=parse_dt(row['completed_at']),
            rejected_at=parse_dt(row['rejected_at']),
            rejection_reason=row['rejection_reason'],
            created_at=parse_dt(row['created_at']),
            version=row['version'],
        )


@dataclass(frozen=True)
class IngestResult:
    accepted: bool
    route_points_count: int
    throttled: bool = False
    fix: LocationFix | None = None

    def to_dict(self) -> dict:
        return {'accepted': self.accepted, 'routePointsCount': self.route_points_count}


@dataclass(frozen=True)
class HandoffReceipt:
    """Result of handoff creation; the raw token is handed out only here."""
    handoff: Handoff
    confirmation_token: str


@dataclass
class SessionSummary:
    session: Session
    handoffs: list[Handoff]

    @property
    def visited_count(self) -> int:
        return len(self.session.visited_containers())

    @property
    def total_containers(self) -> int:
        return len(self.session.selected_containers)

    def handoff(self, handoff_type: HandoffType) -> Handoff | None:
        for item in self.handoffs:
            if item.type == handoff_type:
                return item
        return None

    def to_dict(self) -> dict:
        return {
            'session': self.session.to_dict(),
            'handoffs': [item.to_dict() for item in self.handoffs],
            'visitedCount': self.visited_count,
            'totalContainers': self.total_containers,
        }


@dataclass
class ActiveSession:
    """A session in progress as staff see it on the overview."""
    session: Session
    last_fix: LocationFix | None = None

    def to_dict(self) -> dict:
        return {
            'session': self.session.to_dict(),
            'lastLocation': self.last_fix.to_dict() if self.last_fix else None,
        }


@dataclass(frozen=True)
class PublicHandoffView:
    """What an auditor or plant operator sees through the public token."""
    handoff_id: str
    type: HandoffType
    status: HandoffStatus
    containers: tuple[HandoffContainer, ...]
    total_containers: int
    total_declared_weight: float
    created_at: datetime | None
    completed_at: datetime | None
    token_expires_at: datetime | None

    @classmethod
    def from_handoff(cls, handoff: Handoff) -> 'PublicHandoffView':
        return cls(
            handoff_id=handoff.handoff_id,
            type=handoff.type,
            status=handoff.status,
            containers=tuple(handoff.containers),
            total_containers=handoff.total_containers,
            total_declared_weight=handoff.total_declared_weight,
            created_at=handoff.created_at,
            completed_at=handoff.completed_at,
            token_expires_at=handoff.token_expires_at,
        )


@dataclass(frozen=True)
class TrailVerification:
    valid: bool
    events_count: int
    broken_at: int | None = None
    last_hash: str | None = None


@dataclass(frozen=True)
class ContainerRecord:
    container_ref: str
    company_id: str | None = None
    waste_type: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    @property
    def location(self) -> GeoPoint | None:
        if self.latitude is None or self.longitude is None:
            return None
        return GeoPoint(self.latitude, self.longitude)


@dataclass(frozen=True)
class PlantRecord:
    plant_id: str
    name: str
    operator_name: str | None = None
    operator_phone: str | None = None
