# tests/test_ledger.py
import threading

import pytest

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
    ChargingSessionCompleted,
    ChargingSessionStarted,
    EnergyTransferCompleted,
    VehicleRegistered,
)
from evledger.engine.ledger import LedgerEngine, ZERO_IDENTITY
from evledger.funds import FundsGateway, InMemoryFunds, Payment

TS = "2026-01-31T14:00:00.000+00:00"


class ExplodingFunds(FundsGateway):
    def settle(self, payer, supplied, refund):
        raise ConnectionError("payment rail down")

    def reverse(self, payer, supplied, refund):
        raise AssertionError("nothing was settled")


@pytest.fixture
def funds():
    return InMemoryFunds()


@pytest.fixture
def engine(funds):
    return LedgerEngine(funds=funds)


@pytest.fixture
def two_vehicles(engine):
    engine.register_vehicle("V1", "Model X", "75kWh", "O1", TS)
    engine.register_vehicle("V2", "Leaf", "40kWh", "O2", TS)
    return engine


# ── registration

def test_register_and_get_vehicle_info(engine):
    events = engine.register_vehicle("V1", "Model X", "75kWh", "O1", TS)

    info = engine.get_vehicle_info("V1")
    assert info.model == "Model X"
    assert info.battery_capacity == "75kWh"
    assert info.owner == "O1"
    assert info.total_energy_consumed == 0
    assert info.registered is True
    assert info.registered_at == TS
    assert events == [VehicleRegistered("V1", "O1", "Model X")]
    assert engine.get_owner_vehicles("O1") == ["V1"]
    assert engine.get_contract_stats() == (1, 0)


def test_register_twice_fails_and_keeps_first(engine):
    engine.register_vehicle("V1", "Model X", "75kWh", "O1", TS)
    with pytest.raises(AlreadyRegisteredError):
        engine.register_vehicle("V1", "Model 3", "60kWh", "O2", "2026-02-01T00:00:00.000+00:00")

    info = engine.get_vehicle_info("V1")
    assert (info.model, info.owner, info.registered_at) == ("Model X", "O1", TS)
    assert engine.get_owner_vehicles("O2") == []
    assert engine.get_contract_stats() == (1, 0)
    assert len(engine.get_events()) == 1


@pytest.mark.parametrize("model,battery", [("", "75kWh"), ("Model X", ""), ("  ", "75kWh")])
def test_register_rejects_empty_fields(engine, model, battery):
    with pytest.raises(InvalidInputError):
        engine.register_vehicle("V1", model, battery, "O1", TS)
    assert engine.get_contract_stats() == (0, 0)
    assert engine.get_events() == []


def test_already_registered_wins_over_empty_fields(engine):
    engine.register_vehicle("V1", "Model X", "75kWh", "O1", TS)
    with pytest.raises(AlreadyRegisteredError):
        engine.register_vehicle("V1", "", "", "O1", TS)


@pytest.mark.parametrize("timestamp", [None, "", "   ", 1769868000])
def test_register_rejects_bad_timestamp(engine, timestamp):
    with pytest.raises(InvalidInputError):
        engine.register_vehicle("V1", "Model X", "75kWh", "O1", timestamp)
    assert engine.get_contract_stats() == (0, 0)
    assert engine.get_events() == []


def test_owner_vehicles_insertion_order(engine):
    for vid in ("C", "A", "B"):
        engine.register_vehicle(vid, "Model Y", "80kWh", "O1", TS)
    assert engine.get_owner_vehicles("O1") == ["C", "A", "B"]
    assert engine.get_owner_vehicles("nobody") == []


def test_owner_vehicles_returns_copy(engine):
    engine.register_vehicle("V1", "Model X", "75kWh", "O1", TS)
    engine.get_owner_vehicles("O1").append("V9")
    assert engine.get_owner_vehicles("O1") == ["V1"]


def test_get_vehicle_info_unknown(engine):
    with pytest.raises(VehicleNotFoundError):
        engine.get_vehicle_info("ghost")


# ── charging sessions

def test_station_records_session_with_refund(two_vehicles, funds):
    settlement = two_vehicles.record_charging_session("V1", 10, 100, "S", 150, TS)

    assert settlement.session.session_id == 1
    assert settlement.session.station == "S"
    assert settlement.session.cost == 100
    assert settlement.session.completed is True
    assert settlement.refund == 50
    assert two_vehicles.get_vehicle_info("V1").total_energy_consumed == 10
    assert funds.refunded("S") == 50
    assert funds.net_paid("S") == 100
    assert two_vehicles.get_charging_session(1) == settlement.session


def test_session_events_started_then_completed(two_vehicles):
    settlement = two_vehicles.record_charging_session("V1", 10, 100, "S", 100, TS)
    assert settlement.events == [
        ChargingSessionStarted(1, "V1", "S"),
        ChargingSessionCompleted(1, 10, 100),
    ]
    assert two_vehicles.get_events()[-2:] == settlement.events


def test_session_ids_dense_and_counter_tracks(two_vehicles):
    for expected in range(1, 6):
        before = two_vehicles.get_contract_stats()[1]
        s = two_vehicles.record_charging_session("V2", 3, 10, "S", 10, TS).session
        after = two_vehicles.get_contract_stats()[1]
        assert after == before + 1
        assert s.session_id == after == expected
    assert two_vehicles.get_vehicle_info("V2").total_energy_consumed == 15


@pytest.mark.parametrize("extra", [0, 1, 7, 1000])
def test_refund_leaves_net_payment_equal_to_cost(two_vehicles, funds, extra):
    settlement = two_vehicles.record_charging_session("V1", 5, 40, "S", 40 + extra, TS)
    assert settlement.refund == extra
    assert settlement.session.cost == 40
    assert funds.net_paid("S") == 40


def test_zero_cost_session_is_allowed(two_vehicles, funds):
    settlement = two_vehicles.record_charging_session("V1", 1, 0, "S", 5, TS)
    assert settlement.refund == 5
    assert funds.net_paid("S") == 0


@pytest.mark.parametrize("vehicle_id,energy,cost,supplied,error", [
    ("ghost", 10, 100, 100, VehicleNotFoundError),
    ("V1", 0, 100, 100, InvalidAmountError),
    ("V1", -3, 100, 100, InvalidAmountError),
    ("V1", 10, -1, 100, InvalidAmountError),
    ("V1", 10, 100, 99, InsufficientPaymentError),
    ("V1", 1.5, 100, 100, InvalidInputError),
])
def test_record_session_rejections_leave_no_trace(two_vehicles, funds, vehicle_id, energy, cost, supplied, error):
    events_before = two_vehicles.get_events()
    with pytest.raises(error):
        two_vehicles.record_charging_session(vehicle_id, energy, cost, "S", supplied, TS)
    assert two_vehicles.get_contract_stats() == (2, 0)
    assert two_vehicles.get_vehicle_info("V1").total_energy_consumed == 0
    assert two_vehicles.get_events() == events_before
    assert funds.payments == []


def test_owner_session_names_station(two_vehicles, funds):
    settlement = two_vehicles.record_owner_charging_session("V1", 12, 60, "STATION-7", "O1", 80, TS)
    assert settlement.session.station == "STATION-7"
    assert settlement.refund == 20
    assert funds.net_paid("O1") == 60
    assert settlement.events[0] == ChargingSessionStarted(1, "V1", "STATION-7")


def test_owner_session_wrong_caller(two_vehicles):
    with pytest.raises(UnauthorizedError):
        two_vehicles.record_owner_charging_session("V1", 12, 60, "STATION-7", "O2", 80, TS)
    assert two_vehicles.get_contract_stats() == (2, 0)


@pytest.mark.parametrize("station", [None, "", "   ", ZERO_IDENTITY])
def test_owner_session_null_station(two_vehicles, station):
    with pytest.raises(InvalidStationError):
        two_vehicles.record_owner_charging_session("V1", 12, 60, station, "O1", 80, TS)
    assert two_vehicles.get_contract_stats() == (2, 0)


@pytest.mark.parametrize("timestamp", [None, ""])
def test_session_rejects_bad_timestamp(two_vehicles, funds, timestamp):
    with pytest.raises(InvalidInputError):
        two_vehicles.record_charging_session("V1", 10, 100, "S", 150, timestamp)
    with pytest.raises(InvalidInputError):
        two_vehicles.record_owner_charging_session("V1", 10, 100, "S2", "O1", 150, timestamp)
    assert two_vehicles.get_contract_stats() == (2, 0)
    assert funds.payments == []


def test_failed_refund_rolls_back_everything():
    engine = LedgerEngine(funds=ExplodingFunds())
    engine.register_vehicle("V1", "Model X", "75kWh", "O1", TS)

    with pytest.raises(ConnectionError):
        engine.record_charging_session("V1", 10, 100, "S", 150, TS)

    assert engine.get_contract_stats() == (1, 0)
    assert engine.get_vehicle_info("V1").total_energy_consumed == 0
    assert len(engine.get_events()) == 1
    with pytest.raises(InvalidSessionIdError):
        engine.get_charging_session(1)


# ── charging-session queries

def test_invalid_session_ids(two_vehicles):
    two_vehicles.record_charging_session("V1", 10, 100, "S", 150, TS)
    for bad in (0, 99, -1):
        with pytest.raises(InvalidSessionIdError):
            two_vehicles.get_charging_session(bad)


# ── energy credits

def test_add_then_transfer_credits(two_vehicles):
    assert two_vehicles.add_energy_credits("V1", 20, "O1") == []
    events = two_vehicles.transfer_energy_credits("V1", "V2", 15, "O1")

    assert two_vehicles.get_available_energy_credits("V1") == 5
    assert two_vehicles.get_available_energy_credits("V2") == 15
    assert events == [EnergyTransferCompleted("V1", "V2", 15)]

    with pytest.raises(InsufficientCreditsError):
        two_vehicles.transfer_energy_credits("V1", "V2", 10, "O1")
    assert two_vehicles.get_available_energy_credits("V1") == 5
    assert two_vehicles.get_available_energy_credits("V2") == 15


def test_transfer_is_zero_sum(two_vehicles):
    two_vehicles.add_energy_credits("V1", 30, "O1")
    two_vehicles.add_energy_credits("V2", 4, "O2")
    for amount in (1, 7, 22):
        before = two_vehicles.get_available_energy_credits("V1") + two_vehicles.get_available_energy_credits("V2")
        two_vehicles.transfer_energy_credits("V1", "V2", amount, "O1")
        after = two_vehicles.get_available_energy_credits("V1") + two_vehicles.get_available_energy_credits("V2")
        assert before == after == 34
    assert two_vehicles.get_available_energy_credits("V1") == 0


def test_balance_defaults_to_zero(two_vehicles):
    assert two_vehicles.get_available_energy_credits("V2") == 0


def test_balance_of_unknown_vehicle(engine):
    with pytest.raises(VehicleNotFoundError):
        engine.get_available_energy_credits("ghost")


@pytest.mark.parametrize("call", [
    lambda e: e.add_energy_credits("V1", 10, "O2"),
    lambda e: e.transfer_energy_credits("V1", "V2", 5, "O2"),
    lambda e: e.transfer_energy_credits("V1", "V2", 0, "O2"),
    lambda e: e.transfer_energy_credits("V1", "V1", 5, "O2"),
    lambda e: e.add_energy_credits("V1", -4, "intruder"),
])
def test_non_owner_is_always_unauthorized(two_vehicles, call):
    two_vehicles.add_energy_credits("V1", 10, "O1")
    with pytest.raises(UnauthorizedError):
        call(two_vehicles)
    assert two_vehicles.get_available_energy_credits("V1") == 10
    assert two_vehicles.get_available_energy_credits("V2") == 0


@pytest.mark.parametrize("args,error", [
    (("ghost", "V2", 5), VehicleNotFoundError),
    (("V1", "ghost", 5), VehicleNotFoundError),
    (("V1", "V1", 5), SameVehicleError),
    (("V1", "V2", 0), InvalidAmountError),
    (("V1", "V2", -5), InvalidAmountError),
    (("V1", "V2", 11), InsufficientCreditsError),
])
def test_transfer_rejections(two_vehicles, args, error):
    two_vehicles.add_energy_credits("V1", 10, "O1")
    events_before = two_vehicles.get_events()
    with pytest.raises(error):
        two_vehicles.transfer_energy_credits(*args, "O1")
    assert two_vehicles.get_available_energy_credits("V1") == 10
    assert two_vehicles.get_events() == events_before


@pytest.mark.parametrize("vehicle_id,amount,error", [
    ("ghost", 10, VehicleNotFoundError),
    ("V1", 0, InvalidAmountError),
    ("V1", -1, InvalidAmountError),
    ("V1", True, InvalidInputError),
])
def test_add_credits_rejections(two_vehicles, vehicle_id, amount, error):
    with pytest.raises(error):
        two_vehicles.add_energy_credits(vehicle_id, amount, "O1")
    assert two_vehicles.get_available_energy_credits("V1") == 0


def test_credits_never_negative_under_drain_attempts(two_vehicles):
    two_vehicles.add_energy_credits("V1", 3, "O1")
    for _ in range(5):
        try:
            two_vehicles.transfer_energy_credits("V1", "V2", 2, "O1")
        except InsufficientCreditsError:
            pass
    assert two_vehicles.get_available_energy_credits("V1") == 1
    assert two_vehicles.get_available_energy_credits("V2") == 2


# ── serialisation under threads

def test_concurrent_sessions_stay_dense(two_vehicles):
    def worker():
        for _ in range(50):
            two_vehicles.record_charging_session("V1", 1, 1, "S", 1, TS)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert two_vehicles.get_contract_stats() == (2, 400)
    assert sorted(two_vehicles.state.sessions) == list(range(1, 401))
    assert two_vehicles.get_vehicle_info("V1").total_energy_consumed == 400


def test_concurrent_transfers_conserve_credits(two_vehicles):
    two_vehicles.add_energy_credits("V1", 100, "O1")

    def drain():
        for _ in range(30):
            try:
                two_vehicles.transfer_energy_credits("V1", "V2", 1, "O1")
            except InsufficientCreditsError:
                pass

    threads = [threading.Thread(target=drain) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert two_vehicles.get_available_energy_credits("V1") == 0
    assert two_vehicles.get_available_energy_credits("V2") == 100


# ── funds gateway

def test_in_memory_funds_reverse_undoes_latest_match(funds):
    funds.settle("S", 150, 50)
    funds.settle("S", 30, 0)
    funds.settle("S", 150, 50)

    funds.reverse("S", 150, 50)
    assert funds.payments == [Payment("S", 150, 50), Payment("S", 30, 0)]
    assert funds.held == 130
    assert funds.net_paid("S") == 130


def test_in_memory_funds_reverse_unknown(funds):
    funds.settle("S", 10, 0)
    with pytest.raises(ValueError, match="No settlement"):
        funds.reverse("S", 10, 5)
    assert funds.held == 10
