# evledger/verify/verifier.py
from typing import Dict, List, Optional
from dataclasses import dataclass

from evledger.core.types import LedgerState
from evledger.storage import StorageBackend


@dataclass
class VerificationFailure:
    key: str
    message: str
    category: str = "general"  # "sessions", "counters", "energy", "credits", "ownership", "storage"


@dataclass
class VerificationResult:
    is_valid: bool
    message: str = ""
    failures: List[VerificationFailure] = None

    def __post_init__(self):
        if self.failures is None:
            self.failures = []

    @property
    def first_failure(self) -> Optional[VerificationFailure]:
        return self.failures[0] if self.failures else None

    def fail(self, key, message: str, category: str) -> None:
        self.failures.append(VerificationFailure(str(key), message, category))
        self.is_valid = False

    def __bool__(self):
        return self.is_valid

    def __str__(self):
        if self.is_valid:
            return "Ledger state is valid ✓"
        lines = [f"Verification FAILED ({len(self.failures)} issues):"]
        for f in self.failures:
            lines.append(f"  • [{f.key}] {f.category}: {f.message}")
        return "\n".join(lines)


class StateVerifier:
    """
    Offline auditor for a ledger snapshot.
    Re-derives every invariant from the raw collections and reports
    each violation instead of stopping at the first.
    """

    def verify(self, state: LedgerState) -> VerificationResult:
        result = VerificationResult(True)

        # 1. Counters
        if state.total_vehicles_registered != len(state.vehicles):
            result.fail(
                "total_vehicles_registered",
                f"Counter {state.total_vehicles_registered} != {len(state.vehicles)} vehicles",
                "counters",
            )
        if state.session_counter != len(state.sessions):
            result.fail(
                "session_counter",
                f"Counter {state.session_counter} != {len(state.sessions)} sessions",
                "counters",
            )

        # 2. Sessions: dense ids from 1, complete, pointing at real vehicles
        energy: Dict[str, int] = {}
        for expected_id in range(1, state.session_counter + 1):
            session = state.sessions.get(expected_id)
            if session is None:
                result.fail(expected_id, "Missing session (ids must be dense)", "sessions")
                continue
            if session.session_id != expected_id:
                result.fail(expected_id, f"Stored under wrong id {session.session_id}", "sessions")
            if not session.completed:
                result.fail(expected_id, "Session not completed", "sessions")
            if session.energy_amount <= 0:
                result.fail(expected_id, f"Non-positive energy {session.energy_amount}", "sessions")
            if session.vehicle_id not in state.vehicles:
                result.fail(expected_id, f"Unknown vehicle {session.vehicle_id}", "sessions")
            energy[session.vehicle_id] = energy.get(session.vehicle_id, 0) + session.energy_amount
        for session_id in state.sessions:
            if not 1 <= session_id <= state.session_counter:
                result.fail(session_id, "Session id outside counter range", "sessions")

        # 3. Energy totals match the session history
        for vehicle_id, vehicle in state.vehicles.items():
            expected = energy.get(vehicle_id, 0)
            if vehicle.total_energy_consumed != expected:
                result.fail(
                    vehicle_id,
                    f"totalEnergyConsumed {vehicle.total_energy_consumed} != session sum {expected}",
                    "energy",
                )

        # 4. Credits
        for vehicle_id, balance in state.credits.items():
            if balance < 0:
                result.fail(vehicle_id, f"Negative balance {balance}", "credits")
            if vehicle_id not in state.vehicles:
                result.fail(vehicle_id, "Balance held by unregistered vehicle", "credits")

        # 5. Ownership lists mirror vehicle owners, in registration order
        expected_lists: Dict[str, List[str]] = {}
        for vehicle in sorted(state.vehicles.values(), key=lambda v: v.ordinal):
            expected_lists.setdefault(vehicle.owner, []).append(vehicle.vehicle_id)
        for owner in set(expected_lists) | set(state.owner_vehicles):
            actual = state.owner_vehicles.get(owner, [])
            if actual != expected_lists.get(owner, []):
                result.fail(owner, f"Owner list {actual} does not match registrations", "ownership")

        result.message = "Valid state" if result.is_valid else f"Failed with {len(result.failures)} issues"
        return result

    def verify_from_storage(self, storage: StorageBackend) -> VerificationResult:
        """Load the persisted snapshot and verify it."""
        try:
            state = storage.load_state()
        except Exception as e:
            return VerificationResult(
                False,
                f"Failed to load ledger state from storage: {str(e)}",
                [VerificationFailure("-", str(e), "storage")]
            )

        return self.verify(state)
