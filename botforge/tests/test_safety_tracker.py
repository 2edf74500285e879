from botforge.persistence.record_store import MemoryRecordStore
from botforge.risk.lock import LockService, LockState, LockStatus, acquire, check_lock, release
from botforge.risk.safety import SafetySettings, SafetyTracker, TradeCounters, utc_day
from botforge.strategy.base import BotStatus
from botforge.strategy.momentum import MomentumBot

NOW = 1_700_000_000_000
DAY_MS = 86_400_000
ARMED = {BotStatus.WAITING}


def _bot(**safety):
    return MomentumBot(
        status=BotStatus.WAITING,
        safety=SafetySettings(**safety),
        counters=TradeCounters(last_reset_date=utc_day(NOW)),
    )


def _check(bot, lock=None, now=NOW):
    return SafetyTracker().can_execute(bot, ARMED, lock=lock, now=now)


def test_fresh_bot_is_allowed():
    assert _check(_bot()).allowed


def test_unarmed_status_blocks():
    bot = _bot()
    bot.status = BotStatus.PAUSED
    decision = _check(bot)
    assert not decision.allowed
    assert "not armed" in decision.reason


def test_lock_is_checked_before_cooldown():
    bot = _bot(cooldown=60)
    bot.counters.last_trigger_time = NOW - 1_000
    decision = _check(bot, lock=LockStatus(locked=True, remaining_ms=5_000, holder_key="GREEN"))
    assert not decision.allowed
    assert "lock" in decision.reason


def test_cooldown_window():
    bot = _bot(cooldown=30, cooldown_unit="Sec")
    bot.counters.last_trigger_time = NOW - 10_000
    decision = _check(bot)
    assert not decision.allowed
    assert "cooldown" in decision.reason

    bot.counters.last_trigger_time = NOW - 30_000
    assert _check(bot).allowed


def test_cooldown_units():
    assert SafetySettings(cooldown=2, cooldown_unit="Min").cooldown_ms() == 120_000
    assert SafetySettings(cooldown=1, cooldown_unit="Hour").cooldown_ms() == 3_600_000
    assert SafetySettings(cooldown=1, cooldown_unit="Weeks").cooldown_ms() is None


def test_malformed_cooldown_blocks():
    decision = _check(_bot(cooldown=5, cooldown_unit="Weeks"))
    assert not decision.allowed
    assert decision.reason == "malformed cooldown"


def test_one_trade_at_a_time():
    bot = _bot(one_trade_at_a_time=True)
    bot.counters.active_orders_count = 1
    decision = _check(bot)
    assert not decision.allowed
    assert "one trade" in decision.reason

    bot.counters.active_orders_count = 0
    assert _check(bot).allowed


def test_daily_limit_and_reset():
    bot = _bot(max_trades_per_day=2)
    bot.counters.daily_trade_count = 2
    decision = _check(bot)
    assert not decision.allowed
    assert decision.reason == "daily trade limit reached"

    # the next UTC day starts a fresh count
    tomorrow = NOW + DAY_MS
    decision = _check(bot, now=tomorrow)
    assert decision.allowed
    assert decision.reset_updates == {"daily_trade_count": 0, "last_reset_date": utc_day(tomorrow)}


def test_record_execution_updates_counters():
    bot = _bot()
    tracker = SafetyTracker()
    tracker.record_execution(bot, now=NOW, orders=3)
    assert bot.counters.last_trigger_time == NOW
    assert bot.counters.daily_trade_count == 1
    assert bot.counters.active_orders_count == 3


# ---------------- family lock ----------------


def test_acquire_and_check_lock():
    state = LockState(family="candle_strike")
    allowed, held = acquire(state, NOW, 30_000, "GREEN", "bot-1")
    assert allowed
    assert held.last_execution_time == {"GREEN": NOW}
    assert state.global_lock_until == 0

    assert check_lock(held, NOW + 29_999).locked
    assert not check_lock(held, NOW + 30_000).locked

    allowed, same = acquire(held, NOW + 1_000, 30_000, "RED", "bot-2")
    assert not allowed
    assert same is held


def test_release_only_rolls_back_own_reservation():
    previous = LockState(family="candle_strike")
    _, held = acquire(previous, NOW, 30_000, "GREEN", "bot-1")

    assert release(held, "bot-2", previous) is held
    assert release(held, "bot-1", previous).global_lock_until == 0


def test_lock_service_persists_state():
    locks = LockService(MemoryRecordStore())
    allowed, previous = locks.try_acquire("candle_strike", NOW, 10_000, "RED", "bot-1")
    assert allowed
    assert locks.status("candle_strike", NOW + 1).holder_bot_id == "bot-1"

    denied, _ = locks.try_acquire("candle_strike", NOW + 2, 10_000, "GREEN", "bot-2")
    assert not denied

    locks.restore("candle_strike", "bot-1", previous)
    assert not locks.status("candle_strike", NOW + 3).locked
