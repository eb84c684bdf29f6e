# evledger/core/types.py
from dataclasses import dataclass, field, asdict, replace
from typing import Dict, List, Optional, Union


@dataclass(frozen=True)
class Vehicle:
    """Registered vehicle. Owner never changes once registered."""
    vehicle_id: str                 # opaque caller-chosen key, e.g. VIN hash
    model: str
    battery_capacity: str
    owner: str
    total_energy_consumed: int = 0  # kWh, only ever grows
    registered_at: str = ""         # ISO 8601 UTC
    registered: bool = True
    ordinal: int = 0                # registration order, 1-based

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ChargingSession:
    """Settled charging session. Created complete, never mutated."""
    session_id: int
    vehicle_id: str
    station: str
    energy_amount: int
    cost: int
    timestamp: str
    completed: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class VehicleRegistered:
    vehicle_id: str
    owner: str
    model: str
    kind: str = field(default="VehicleRegistered", init=False)


@dataclass(frozen=True)
class ChargingSessionStarted:
    session_id: int
    vehicle_id: str
    station: str
    kind: str = field(default="ChargingSessionStarted", init=False)


@dataclass(frozen=True)
class ChargingSessionCompleted:
    session_id: int
    energy_amount: int
    cost: int
    kind: str = field(default="ChargingSessionCompleted", init=False)


@dataclass(frozen=True)
class EnergyTransferCompleted:
    from_vehicle_id: str
    to_vehicle_id: str
    amount: int
    kind: str = field(default="EnergyTransferCompleted", init=False)


Event = Union[
    VehicleRegistered,
    ChargingSessionStarted,
    ChargingSessionCompleted,
    EnergyTransferCompleted,
]

EVENT_TYPES = {
    cls.__name__: cls
    for cls in (VehicleRegistered, ChargingSessionStarted,
                ChargingSessionCompleted, EnergyTransferCompleted)
}


def event_to_dict(event: Event) -> dict:
    return asdict(event)


def event_from_dict(data: dict) -> Event:
    payload = dict(data)
    kind = payload.pop("kind", None)
    cls = EVENT_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown event kind: {kind!r}")
    return cls(**payload)


@dataclass
class Changeset:
    """
    Staged effects of one transaction.
    Nothing here touches LedgerState until the engine commits it.
    """
    new_vehicles: List[Vehicle] = field(default_factory=list)  # registrations
    vehicles: List[Vehicle] = field(default_factory=list)      # updates to existing rows
    sessions: List[ChargingSession] = field(default_factory=list)
    balances: Dict[str, int] = field(default_factory=dict)
    total_vehicles_registered: Optional[int] = None
    session_counter: Optional[int] = None
    events: List[Event] = field(default_factory=list)


@dataclass
class Settlement:
    """Outcome of a charging-session call."""
    session: ChargingSession
    refund: int
    events: List[Event] = field(default_factory=list)


@dataclass
class LedgerState:
    """
    Everything the ledger owns: vehicles, sessions, credit balances,
    per-owner vehicle lists, plus the two aggregate counters.
    """
    vehicles: Dict[str, Vehicle] = field(default_factory=dict)
    sessions: Dict[int, ChargingSession] = field(default_factory=dict)
    credits: Dict[str, int] = field(default_factory=dict)
    owner_vehicles: Dict[str, List[str]] = field(default_factory=dict)
    total_vehicles_registered: int = 0
    session_counter: int = 0

    def balance(self, vehicle_id: str) -> int:
        return self.credits.get(vehicle_id, 0)

    def apply(self, changes: Changeset) -> None:
        """Fold a validated changeset into memory. Must not fail."""
        for vehicle in changes.new_vehicles:
            self.vehicles[vehicle.vehicle_id] = vehicle
            self.owner_vehicles.setdefault(vehicle.owner, []).append(vehicle.vehicle_id)
        for vehicle in changes.vehicles:
            self.vehicles[vehicle.vehicle_id] = vehicle
        for session in changes.sessions:
            self.sessions[session.session_id] = session
        self.credits.update(changes.balances)
        if changes.total_vehicles_registered is not None:
            self.total_vehicles_registered = changes.total_vehicles_registered
        if changes.session_counter is not None:
            self.session_counter = changes.session_counter

    @classmethod
    def restore(
        cls,
        vehicles: List[Vehicle],
        sessions: List[ChargingSession],
        credits: Dict[str, int],
        total_vehicles_registered: int,
        session_counter: int,
    ) -> "LedgerState":
        """Rebuild from a persisted snapshot; owner lists follow registration order."""
        state = cls(
            total_vehicles_registered=total_vehicles_registered,
            session_counter=session_counter,
        )
        for vehicle in sorted(vehicles, key=lambda v: v.ordinal):
            state.vehicles[vehicle.vehicle_id] = vehicle
            state.owner_vehicles.setdefault(vehicle.owner, []).append(vehicle.vehicle_id)
        for session in sessions:
            state.sessions[session.session_id] = session
        state.credits.update(credits)
        return state

    def snapshot(self) -> dict:
        """Plain-dict view, JSON-safe (session ids become string keys)."""
        return {
            "vehicles": {k: v.to_dict() for k, v in self.vehicles.items()},
            "sessions": {str(k): s.to_dict() for k, s in self.sessions.items()},
            "credits": dict(self.credits),
            "owner_vehicles": {k: list(v) for k, v in self.owner_vehicles.items()},
            "total_vehicles_registered": self.total_vehicles_registered,
            "session_counter": self.session_counter,
        }


def bump_energy(vehicle: Vehicle, energy_amount: int) -> Vehicle:
    return replace(vehicle, total_energy_consumed=vehicle.total_energy_consumed + energy_amount)
