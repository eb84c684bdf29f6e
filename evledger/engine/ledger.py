# evledger/engine/ledger.py
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple, Union

from evledger.core.errors import (
    AlreadyRegisteredError,
    InsufficientCreditsError,
    InsufficientPaymentError,
    InvalidAmountError,
    InvalidInputError,
    InvalidSessionIdError,
    InvalidStationError,
    SameVehicleError,
    UnauthorizedError,
    VehicleNotFoundError,
)
from evledger.core.types import (
    Changeset,
    ChargingSession,
    ChargingSessionCompleted,
    ChargingSessionStarted,
    EnergyTransferCompleted,
    Event,
    LedgerState,
    Settlement,
    Vehicle,
    VehicleRegistered,
    bump_energy,
)
from evledger.funds import FundsGateway, InMemoryFunds
from evledger.storage import StorageBackend, create_storage

logger = logging.getLogger(__name__)

ZERO_IDENTITY = "0x" + "0" * 40


def _require_text(value, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{what} must be a non-empty string")
    return value


def _require_int(value, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{what} must be an integer, got {type(value).__name__}")
    return value


def _is_null_identity(identity: Optional[str]) -> bool:
    if identity is None or not isinstance(identity, str):
        return True
    stripped = identity.strip()
    return not stripped or stripped.lower() == ZERO_IDENTITY


@dataclass
class LedgerEngine:
    """
    Single-writer ledger for vehicle registration, charging-session
    settlement and energy-credit transfers.

    Every mutating operation runs under the engine lock and, with storage
    attached, inside one exclusive database transaction. State is reloaded
    there if another connection committed in the meantime, then the
    operation validates, writes its Changeset and settles funds. Memory is
    updated only once the commit has succeeded.
    """
    storage: Optional[Union[StorageBackend, str]] = None
    funds: Optional[FundsGateway] = None
    state: LedgerState = field(default_factory=LedgerState)
    events: List[Event] = field(default_factory=list)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False, compare=False)
    _settled: Optional[Tuple[str, int, int]] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        if isinstance(self.storage, str):
            stripped = self.storage.strip()
            if stripped.startswith("sqlite://"):
                self.storage = create_storage(stripped)
            elif stripped:
                # plain file path
                self.storage = create_storage(f"sqlite://{stripped}")
            else:
                self.storage = None

        if self.funds is None:
            self.funds = InMemoryFunds()

        if self.storage:
            self._reload()
            logger.info(
                "Loaded ledger: %d vehicles, %d sessions, %d events",
                self.state.total_vehicles_registered,
                self.state.session_counter,
                len(self.events),
            )

    # ── transaction plumbing

    def _reload(self) -> None:
        self.state = self.storage.load_state()
        self.events = self.storage.load_events()

    def _sync(self) -> None:
        """Pick up commits made through other connections to the same store."""
        if self.storage and self.storage.is_stale():
            logger.debug("Storage changed by another writer, reloading")
            self._reload()

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """
        Exclusive section for one mutating operation; the caller holds the
        lock. Leaving it without an exception means the data is committed.
        """
        self._settled = None
        try:
            if self.storage:
                with self.storage.transaction():
                    self._sync()
                    yield
            else:
                yield
        except BaseException:
            # settle() is the last step, so only the commit can fail after it
            if self._settled is not None:
                logger.warning("Commit failed after settlement, reversing payment")
                self.funds.reverse(*self._settled)
            raise
        finally:
            self._settled = None

    def _stage(self, changes: Changeset, payer: Optional[str] = None,
               supplied: int = 0, refund: int = 0) -> None:
        if self.storage:
            self.storage.write(changes)
        if payer is not None:
            self.funds.settle(payer, supplied, refund)
            self._settled = (payer, supplied, refund)

    def _apply(self, changes: Changeset) -> None:
        self.state.apply(changes)
        self.events.extend(changes.events)

    def _vehicle(self, vehicle_id: str) -> Vehicle:
        vehicle = self.state.vehicles.get(vehicle_id)
        if vehicle is None:
            raise VehicleNotFoundError(f"Vehicle not registered: {vehicle_id}")
        return vehicle

    def _require_owner(self, vehicle: Vehicle, caller: str) -> None:
        if vehicle.owner != caller:
            raise UnauthorizedError(
                f"Caller {caller} does not own vehicle {vehicle.vehicle_id}"
            )

    # ── registration

    def register_vehicle(
        self,
        vehicle_id: str,
        model: str,
        battery_capacity: str,
        caller: str,
        timestamp: str,
    ) -> List[Event]:
        with self._lock:
            with self._transaction():
                try:
                    _require_text(vehicle_id, "vehicle_id")
                    _require_text(caller, "caller")
                    if vehicle_id in self.state.vehicles:
                        raise AlreadyRegisteredError(f"Vehicle already registered: {vehicle_id}")
                    _require_text(model, "model")
                    _require_text(battery_capacity, "battery_capacity")
                    _require_text(timestamp, "timestamp")
                except Exception as e:
                    logger.debug("register_vehicle rejected: %s", e)
                    raise

                total = self.state.total_vehicles_registered + 1
                vehicle = Vehicle(
                    vehicle_id=vehicle_id,
                    model=model,
                    battery_capacity=battery_capacity,
                    owner=caller,
                    total_energy_consumed=0,
                    registered_at=timestamp,
                    registered=True,
                    ordinal=total,
                )
                changes = Changeset(
                    new_vehicles=[vehicle],
                    total_vehicles_registered=total,
                    events=[VehicleRegistered(vehicle_id, caller, model)],
                )
                self._stage(changes)
            self._apply(changes)
            logger.info("Registered vehicle %s for %s (%s)", vehicle_id, caller, model)
            return list(changes.events)

    # ── charging-session settlement

    def record_charging_session(
        self,
        vehicle_id: str,
        energy_amount: int,
        cost: int,
        caller: str,
        supplied_funds: int,
        timestamp: str,
    ) -> Settlement:
        """Anyone may call; the caller is recorded as the station."""
        with self._lock:
            with self._transaction():
                try:
                    _require_text(caller, "caller")
                    vehicle = self._vehicle(vehicle_id)
                except Exception as e:
                    logger.debug("record_charging_session rejected: %s", e)
                    raise
                settlement, changes = self._settle(
                    vehicle, energy_amount, cost, caller, caller, supplied_funds, timestamp
                )
            return self._settled_session(settlement, changes)

    def record_owner_charging_session(
        self,
        vehicle_id: str,
        energy_amount: int,
        cost: int,
        station: str,
        caller: str,
        supplied_funds: int,
        timestamp: str,
    ) -> Settlement:
        """Owner-only; the station is named explicitly."""
        with self._lock:
            with self._transaction():
                try:
                    _require_text(caller, "caller")
                    vehicle = self._vehicle(vehicle_id)
                    self._require_owner(vehicle, caller)
                    if _is_null_identity(station):
                        raise InvalidStationError(f"Invalid station identity: {station!r}")
                except Exception as e:
                    logger.debug("record_owner_charging_session rejected: %s", e)
                    raise
                settlement, changes = self._settle(
                    vehicle, energy_amount, cost, station, caller, supplied_funds, timestamp
                )
            return self._settled_session(settlement, changes)

    def _settle(
        self,
        vehicle: Vehicle,
        energy_amount: int,
        cost: int,
        station: str,
        payer: str,
        supplied_funds: int,
        timestamp: str,
    ) -> Tuple[Settlement, Changeset]:
        try:
            _require_int(energy_amount, "energy_amount")
            _require_int(cost, "cost")
            _require_int(supplied_funds, "supplied_funds")
            _require_text(timestamp, "timestamp")
            if energy_amount <= 0:
                raise InvalidAmountError(f"Energy amount must be positive, got {energy_amount}")
            if cost < 0 or supplied_funds < 0:
                raise InvalidAmountError("Cost and supplied funds must not be negative")
            if supplied_funds < cost:
                raise InsufficientPaymentError(
                    f"Supplied {supplied_funds} does not cover cost {cost}"
                )
        except Exception as e:
            logger.debug("charging session for %s rejected: %s", vehicle.vehicle_id, e)
            raise

        session_id = self.state.session_counter + 1
        session = ChargingSession(
            session_id=session_id,
            vehicle_id=vehicle.vehicle_id,
            station=station,
            energy_amount=energy_amount,
            cost=cost,
            timestamp=timestamp,
            completed=True,
        )
        refund = supplied_funds - cost
        changes = Changeset(
            vehicles=[bump_energy(vehicle, energy_amount)],
            sessions=[session],
            session_counter=session_id,
            events=[
                ChargingSessionStarted(session_id, vehicle.vehicle_id, station),
                ChargingSessionCompleted(session_id, energy_amount, cost),
            ],
        )
        self._stage(changes, payer=payer, supplied=supplied_funds, refund=refund)
        return Settlement(session=session, refund=refund, events=list(changes.events)), changes

    def _settled_session(self, settlement: Settlement, changes: Changeset) -> Settlement:
        self._apply(changes)
        s = settlement.session
        logger.info(
            "Session %d settled: vehicle %s, %d kWh, cost %d, refund %d",
            s.session_id, s.vehicle_id, s.energy_amount, s.cost, settlement.refund,
        )
        return settlement

    # ── energy credits

    def add_energy_credits(self, vehicle_id: str, amount: int, caller: str) -> List[Event]:
        """Issue credits from an external source (e.g. solar). Owner-only."""
        with self._lock:
            with self._transaction():
                try:
                    vehicle = self._vehicle(vehicle_id)
                    self._require_owner(vehicle, caller)
                    _require_int(amount, "amount")
                    if amount <= 0:
                        raise InvalidAmountError(f"Amount must be positive, got {amount}")
                except Exception as e:
                    logger.debug("add_energy_credits rejected: %s", e)
                    raise

                new_balance = self.state.balance(vehicle_id) + amount
                changes = Changeset(balances={vehicle_id: new_balance})
                self._stage(changes)
            self._apply(changes)
            logger.info("Issued %d credits to %s (balance %d)", amount, vehicle_id, new_balance)
            return []

    def transfer_energy_credits(
        self,
        from_vehicle_id: str,
        to_vehicle_id: str,
        amount: int,
        caller: str,
    ) -> List[Event]:
        with self._lock:
            with self._transaction():
                try:
                    source = self._vehicle(from_vehicle_id)
                    self._vehicle(to_vehicle_id)
                    self._require_owner(source, caller)
                    if from_vehicle_id == to_vehicle_id:
                        raise SameVehicleError("Cannot transfer credits to the same vehicle")
                    _require_int(amount, "amount")
                    if amount <= 0:
                        raise InvalidAmountError(f"Amount must be positive, got {amount}")
                    available = self.state.balance(from_vehicle_id)
                    if available < amount:
                        raise InsufficientCreditsError(
                            f"Vehicle {from_vehicle_id} has {available} credits, needs {amount}"
                        )
                except Exception as e:
                    logger.debug("transfer_energy_credits rejected: %s", e)
                    raise

                changes = Changeset(
                    balances={
                        from_vehicle_id: available - amount,
                        to_vehicle_id: self.state.balance(to_vehicle_id) + amount,
                    },
                    events=[EnergyTransferCompleted(from_vehicle_id, to_vehicle_id, amount)],
                )
                self._stage(changes)
            self._apply(changes)
            logger.info("Transferred %d credits %s -> %s", amount, from_vehicle_id, to_vehicle_id)
            return list(changes.events)

    def get_available_energy_credits(self, vehicle_id: str) -> int:
        with self._lock:
            self._sync()
            self._vehicle(vehicle_id)
            return self.state.balance(vehicle_id)

    # ── queries

    def get_vehicle_info(self, vehicle_id: str) -> Vehicle:
        with self._lock:
            self._sync()
            return self._vehicle(vehicle_id)

    def get_owner_vehicles(self, identity: str) -> List[str]:
        with self._lock:
            self._sync()
            return list(self.state.owner_vehicles.get(identity, []))

    def get_charging_session(self, session_id: int) -> ChargingSession:
        with self._lock:
            self._sync()
            if (isinstance(session_id, bool) or not isinstance(session_id, int)
                    or not 1 <= session_id <= self.state.session_counter):
                raise InvalidSessionIdError(f"Invalid session id: {session_id}")
            return self.state.sessions[session_id]

    def get_contract_stats(self) -> Tuple[int, int]:
        """(total vehicles registered, session counter)"""
        with self._lock:
            self._sync()
            return self.state.total_vehicles_registered, self.state.session_counter

    def get_events(self) -> List[Event]:
        with self._lock:
            self._sync()
            return self.events.copy()

    def close(self) -> None:
        """Release storage resources, if any."""
        if self.storage:
            self.storage.close()
            logger.info("Storage closed")
            self.storage = None
