from __future__ import annotations

import logging

import pytest

from oi_trader.config import DynamicTakeProfitConfig, TakeProfitTargetConfig
from oi_trader.errors import TrackingReleasedError
from oi_trader.execution.exit_scheduler import ExitScheduler
from oi_trader.storage.models import ExitType


def _three_batch_config() -> DynamicTakeProfitConfig:
    return DynamicTakeProfitConfig(
        targets=[
            TakeProfitTargetConfig(percentage=40, target_profit_pct=8),
            TakeProfitTargetConfig(percentage=30, target_profit_pct=14),
            TakeProfitTargetConfig(percentage=30, is_trailing=True, trailing_callback_pct=30),
        ]
    )


def test_batches_then_trailing_stop_long() -> None:
    scheduler = ExitScheduler()
    scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 10.0, _three_batch_config())

    assert scheduler.update_price(1, 100.0) == []

    first = scheduler.update_price(1, 108.0)
    assert [action.type for action in first] == [ExitType.BATCH_TAKE_PROFIT]
    assert first[0].quantity == pytest.approx(4.0)
    assert first[0].price == 108.0
    assert first[0].batch_number == 1
    state = scheduler.get_tracking_state(1)
    assert state is not None
    assert state.trailing_active is True
    assert state.trailing_stop_price == pytest.approx(105.6)

    second = scheduler.update_price(1, 114.0)
    assert [action.type for action in second] == [ExitType.BATCH_TAKE_PROFIT]
    assert second[0].quantity == pytest.approx(3.0)
    assert state.trailing_stop_price == pytest.approx(109.8)

    assert scheduler.update_price(1, 126.0) == []
    assert state.trailing_stop_price == pytest.approx(118.2)

    final = scheduler.update_price(1, 88.0)
    assert [action.type for action in final] == [ExitType.TRAILING_STOP]
    assert final[0].quantity == pytest.approx(3.0)
    assert final[0].batch_number == 3
    assert state.remaining_quantity == 0.0

    assert scheduler.update_price(1, 150.0) == []


def test_executed_batch_never_fires_twice() -> None:
    scheduler = ExitScheduler()
    scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 10.0, _three_batch_config())

    assert len(scheduler.update_price(1, 108.0)) == 1
    assert scheduler.update_price(1, 108.5) == []


def test_price_jump_fires_several_batches_in_one_update() -> None:
    scheduler = ExitScheduler()
    scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 10.0, _three_batch_config())

    actions = scheduler.update_price(1, 120.0)

    assert [action.batch_number for action in actions] == [1, 2]
    assert sum(action.quantity for action in actions) == pytest.approx(7.0)
    state = scheduler.get_tracking_state(1)
    assert state is not None
    assert state.trailing_stop_price == pytest.approx(114.0)


def test_short_targets_sit_below_entry() -> None:
    scheduler = ExitScheduler()
    scheduler.start_tracking(2, "ETHUSDT", "SHORT", 100.0, 5.0, _three_batch_config())

    assert scheduler.update_price(2, 93.0) == []
    actions = scheduler.update_price(2, 92.0)

    assert len(actions) == 1
    assert actions[0].quantity == pytest.approx(2.0)
    state = scheduler.get_tracking_state(2)
    assert state is not None
    assert state.trailing_stop_price == pytest.approx(94.4)


def test_full_allocation_leaves_exactly_zero() -> None:
    config = DynamicTakeProfitConfig(
        targets=[
            TakeProfitTargetConfig(percentage=50, target_profit_pct=5),
            TakeProfitTargetConfig(percentage=50, target_profit_pct=10),
        ]
    )
    scheduler = ExitScheduler()
    scheduler.start_tracking(3, "BTCUSDT", "LONG", 100.0, 0.3, config)

    scheduler.update_price(3, 105.0)
    scheduler.update_price(3, 110.0)

    state = scheduler.get_tracking_state(3)
    assert state is not None
    assert state.remaining_quantity == 0.0


def test_trailing_waits_for_first_fixed_batch() -> None:
    config = DynamicTakeProfitConfig(
        targets=[
            TakeProfitTargetConfig(percentage=50, target_profit_pct=20),
            TakeProfitTargetConfig(percentage=50, is_trailing=True),
        ]
    )
    scheduler = ExitScheduler()
    scheduler.start_tracking(4, "BTCUSDT", "LONG", 100.0, 1.0, config)

    assert scheduler.update_price(4, 115.0) == []
    assert scheduler.update_price(4, 90.0) == []
    state = scheduler.get_tracking_state(4)
    assert state is not None
    assert state.trailing_active is False


def test_invalid_target_sets_are_rejected() -> None:
    two_trailing = DynamicTakeProfitConfig.model_construct(
        targets=[
            TakeProfitTargetConfig(percentage=30, is_trailing=True),
            TakeProfitTargetConfig(percentage=30, is_trailing=True),
        ],
        enable_trailing=True,
        trailing_start_profit_pct=0.0,
    )
    over_allocated = DynamicTakeProfitConfig.model_construct(
        targets=[
            TakeProfitTargetConfig(percentage=70, target_profit_pct=5),
            TakeProfitTargetConfig(percentage=40, target_profit_pct=10),
        ],
        enable_trailing=True,
        trailing_start_profit_pct=0.0,
    )
    scheduler = ExitScheduler()

    with pytest.raises(ValueError):
        scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 1.0, two_trailing)
    with pytest.raises(ValueError):
        scheduler.start_tracking(2, "BTCUSDT", "LONG", 100.0, 1.0, over_allocated)
    with pytest.raises(ValueError):
        scheduler.start_tracking(3, "BTCUSDT", "LONG", 100.0, 0.0, _three_batch_config())
    assert scheduler.active_count == 0


def test_duplicate_tracking_is_rejected() -> None:
    scheduler = ExitScheduler()
    scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 1.0, _three_batch_config())

    with pytest.raises(ValueError):
        scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 1.0, _three_batch_config())


def test_release_is_single_shot(caplog: pytest.LogCaptureFixture) -> None:
    scheduler = ExitScheduler()
    scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 1.0, _three_batch_config())
    assert scheduler.active_count == 1

    scheduler.stop_tracking(1)
    assert scheduler.active_count == 0
    assert scheduler.get_tracking_state(1) is None

    with pytest.raises(TrackingReleasedError) as excinfo:
        scheduler.stop_tracking(1)
    assert excinfo.value.position_id == 1

    with caplog.at_level(logging.WARNING):
        assert scheduler.update_price(1, 110.0) == []
    assert "not tracked" in caplog.text


def test_unknown_position_is_not_released() -> None:
    scheduler = ExitScheduler()

    with pytest.raises(KeyError):
        scheduler.stop_tracking(99)
    assert scheduler.update_price(99, 100.0) == []


def test_reset_clears_tombstones() -> None:
    scheduler = ExitScheduler()
    scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 1.0, _three_batch_config())
    scheduler.stop_tracking(1)

    scheduler.reset()
    scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 1.0, _three_batch_config())

    assert scheduler.active_count == 1


def test_released_slots_are_reused() -> None:
    scheduler = ExitScheduler()

    for position_id in range(1, 51):
        scheduler.start_tracking(position_id, "BTCUSDT", "LONG", 100.0, 1.0, _three_batch_config())
        scheduler.stop_tracking(position_id)

    assert scheduler.capacity == 1
    assert scheduler.active_count == 0
    with pytest.raises(TrackingReleasedError):
        scheduler.stop_tracking(50)


def test_stale_handle_is_detected_after_slot_reuse() -> None:
    scheduler = ExitScheduler()
    first = scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 1.0, _three_batch_config())
    assert scheduler.resolve(first).position_id == 1

    scheduler.stop_tracking(1)
    with pytest.raises(TrackingReleasedError):
        scheduler.resolve(first)

    second = scheduler.start_tracking(2, "ETHUSDT", "SHORT", 50.0, 1.0, _three_batch_config())

    assert second.slot == first.slot
    assert second.generation == first.generation + 1
    assert scheduler.resolve(second).symbol == "ETHUSDT"
    with pytest.raises(TrackingReleasedError) as excinfo:
        scheduler.resolve(first)
    assert excinfo.value.position_id == 1


def test_released_id_is_forgotten_once_its_slot_is_reused() -> None:
    scheduler = ExitScheduler()
    scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 1.0, _three_batch_config())
    scheduler.stop_tracking(1)
    scheduler.start_tracking(2, "BTCUSDT", "LONG", 100.0, 1.0, _three_batch_config())

    with pytest.raises(KeyError) as excinfo:
        scheduler.stop_tracking(1)
    assert not isinstance(excinfo.value, TrackingReleasedError)


def test_trailing_target_is_tracked_after_fixed_batches() -> None:
    config = DynamicTakeProfitConfig(
        targets=[
            TakeProfitTargetConfig(percentage=30, is_trailing=True, trailing_callback_pct=25),
            TakeProfitTargetConfig(percentage=70, target_profit_pct=5),
        ]
    )
    scheduler = ExitScheduler()
    scheduler.start_tracking(1, "BTCUSDT", "LONG", 100.0, 1.0, config)

    state = scheduler.get_tracking_state(1)
    assert state is not None
    assert [target.is_trailing for target in state.targets] == [False, True]
    assert state.targets[1].trailing_callback_pct == 25.0
