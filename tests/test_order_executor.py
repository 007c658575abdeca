import asyncio

from exchange.errors import ExchangeError
from exchange.models import ConditionCheck, ExchangeOrderState, OrderStatus
from trading.conditions import ConditionValidator
from trading.rate_limiter import RateLimiter

from conftest import add_key, make_spec


def run(coro):
    return asyncio.run(coro)


class RejectAll(ConditionValidator):
    def __init__(self):
        self.checked = []

    async def still_valid(self, order):
        self.checked.append(order.id)
        return ConditionCheck(valid=False, reason="price moved above entry band")


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def on_order_completed(self, order, result):
        self.calls.append((order, result))
        if self.fail:
            raise RuntimeError("bookkeeping down")


# ─── End-to-end scenarios ───

def test_rate_limited_three_times_then_succeeds(queue, store, exchange, make_executor, clock):
    add_key(store, "key-a")
    exchange.client("key-a", outcomes=["EAPI:Rate limit exceeded"] * 3)
    executor = make_executor()
    order = queue.create_order(make_spec(volume="1.0"))

    async def scenario():
        delays = []
        for _ in range(20):
            current = queue.get_order(order.id)
            if current.is_terminal:
                break
            await executor.execute_order(current)
            after = queue.get_order(order.id)
            if after.status == OrderStatus.RETRY and after.attempts > current.attempts:
                delays.append((after.next_retry_at - after.last_attempt_at).total_seconds())
            clock.advance(400)
        return delays

    delays = run(scenario())

    final = queue.get_order(order.id)
    assert final.status == OrderStatus.COMPLETED
    assert final.attempts == 4
    assert len(final.errors) == 3
    assert final.exchange_order_id == "TX-key-a-4"
    assert len(delays) == 3
    assert delays[0] < delays[1] < delays[2]


def test_insufficient_funds_is_retried(queue, store, exchange, make_executor, clock):
    add_key(store, "key-a")
    exchange.client("key-a", outcomes=["EOrder:Insufficient funds"])
    order = queue.create_order(make_spec())

    result = run(make_executor().execute_order(order))

    updated = queue.get_order(order.id)
    assert result.success is False
    assert result.should_retry is True
    assert updated.status == OrderStatus.RETRY
    assert updated.next_retry_at > clock.now
    assert updated.attempts == 1


def test_invalid_signature_fails_immediately(queue, store, exchange, breaker, make_executor):
    add_key(store, "key-a")
    add_key(store, "key-b")
    exchange.client("key-a", outcomes=["EAPI:Invalid signature"])
    order = queue.create_order(make_spec())

    result = run(make_executor().execute_order(order))

    updated = queue.get_order(order.id)
    assert result.should_retry is False
    assert updated.status == OrderStatus.FAILED
    assert updated.attempts == 1
    assert breaker.get_state("key-a").failures == 1
    assert "key-b" not in exchange.clients or exchange.clients["key-b"].placed == []


def test_open_breaker_key_is_skipped(queue, store, exchange, breaker, make_executor):
    add_key(store, "key-a")
    add_key(store, "key-b")
    exchange.client("key-a")
    exchange.client("key-b")
    for _ in range(3):
        breaker.record_failure("key-a", "Service unavailable")
    assert breaker.is_open("key-a")
    order = queue.create_order(make_spec())

    result = run(make_executor().execute_order(order))

    assert result.success is True
    assert result.key_used == "key-b"
    assert exchange.clients["key-a"].placed == []
    assert len(exchange.clients["key-b"].placed) == 1
    assert queue.get_order(order.id).api_key_used == "key-b"


# ─── Credential failover ───

def test_fails_over_to_next_key_within_one_attempt(queue, store, exchange, breaker, make_executor):
    add_key(store, "key-a")
    add_key(store, "key-b")
    exchange.client("key-a", outcomes=["HTTP 503: service unavailable"])
    order = queue.create_order(make_spec())

    result = run(make_executor().execute_order(order))

    updated = queue.get_order(order.id)
    assert result.success is True
    assert updated.status == OrderStatus.COMPLETED
    assert updated.attempts == 1
    assert updated.errors == []
    assert breaker.get_state("key-a").failures == 1
    assert exchange.clients["key-b"].placed[0]["userref"] == order.userref


def test_all_keys_failing_schedules_retry_then_defers(queue, store, exchange, make_executor):
    add_key(store, "key-a")
    add_key(store, "key-b")
    exchange.client("key-a", outcomes=["timeout"])
    exchange.client("key-b", outcomes=["ECONNRESET"])
    executor = make_executor()
    order = queue.create_order(make_spec())

    run(executor.execute_order(order))
    failed = queue.get_order(order.id)
    assert failed.status == OrderStatus.RETRY
    assert failed.attempts == 1
    assert failed.failed_api_keys == ["key-a", "key-b"]
    assert len(failed.errors) == 1
    assert failed.errors[0].key_used == "key-b"

    result = run(executor.execute_order(failed))
    deferred = queue.get_order(order.id)
    assert result.should_retry is True
    assert deferred.status == OrderStatus.RETRY
    assert deferred.attempts == 1
    assert len(deferred.errors) == 1
    assert deferred.failed_api_keys == []


def test_user_without_keys_fails(queue, store, make_executor):
    add_key(store, "key-x", user_id="someone-else")
    order = queue.create_order(make_spec())

    run(make_executor().execute_order(order))

    updated = queue.get_order(order.id)
    assert updated.status == OrderStatus.FAILED
    assert updated.last_error == "No API keys configured"


def test_round_robin_spreads_orders_across_keys(queue, store, exchange, make_executor, config):
    config.execution.credential_selection = "round_robin"
    add_key(store, "key-a")
    add_key(store, "key-b")
    executor = make_executor()
    first = queue.create_order(make_spec(bot_id="b1"))
    second = queue.create_order(make_spec(bot_id="b2"))

    r1 = run(executor.execute_order(first))
    r2 = run(executor.execute_order(second))

    assert {r1.key_used, r2.key_used} == {"key-a", "key-b"}


def test_insufficient_funds_cap(queue, store, exchange, make_executor, config):
    config.retry.max_insufficient_funds_attempts = 2
    add_key(store, "key-a")
    exchange.client("key-a", outcomes=["EOrder:Insufficient funds"] * 2)
    executor = make_executor()
    order = queue.create_order(make_spec())

    run(executor.execute_order(order))
    assert queue.get_order(order.id).status == OrderStatus.RETRY

    queue.clear_failed_api_keys(order.id)
    run(executor.execute_order(queue.get_order(order.id)))
    assert queue.get_order(order.id).status == OrderStatus.FAILED


def test_transient_error_on_last_attempt_reports_terminal_failure(queue, store, exchange, make_executor, config):
    config.retry.max_attempts = 1
    add_key(store, "key-a")
    exchange.client("key-a", outcomes=["EAPI:Rate limit exceeded"])
    executor = make_executor()
    order = queue.create_order(make_spec())

    result = run(executor.execute_order(order))

    assert queue.get_order(order.id).status == OrderStatus.FAILED
    assert result.success is False
    assert result.should_retry is False
    assert [o.id for o in executor.terminal_failures([result])] == [order.id]


def test_canceled_on_last_attempt_reports_terminal_failure(queue, store, exchange, make_executor, config):
    config.retry.max_attempts = 1
    add_key(store, "key-a")
    exchange.client("key-a", state=ExchangeOrderState.CANCELED)
    order = queue.create_order(make_spec())

    result = run(make_executor().execute_order(order))

    assert queue.get_order(order.id).status == OrderStatus.FAILED
    assert result.should_retry is False


def test_terminal_failures_ignores_retries_and_completions(queue, store, exchange, make_executor):
    add_key(store, "key-a")
    exchange.client("key-a", outcomes=["timeout"])
    executor = make_executor()
    retrying = queue.create_order(make_spec(bot_id="b1"))
    completed = queue.create_order(make_spec(bot_id="b2"))

    results = [
        run(executor.execute_order(retrying)),
        run(executor.execute_order(completed)),
        # A stale result for an order someone else already completed
        run(executor.execute_order(queue.get_order(completed.id))),
    ]

    assert results[0].should_retry is True
    assert results[2].success is False
    assert queue.get_order(completed.id).status == OrderStatus.COMPLETED
    assert executor.terminal_failures(results) == []


# ─── Retry-time validation & abandonment ───

def test_stale_decision_is_cancelled_without_exchange_call(queue, store, exchange, make_executor):
    add_key(store, "key-a")
    exchange.client("key-a", outcomes=["timeout"])
    validator = RejectAll()
    executor = make_executor(validator=validator)
    order = queue.create_order(make_spec())

    run(executor.execute_order(order))
    assert validator.checked == []

    retry = queue.get_order(order.id)
    result = run(executor.execute_order(retry))

    updated = queue.get_order(order.id)
    assert validator.checked == [order.id]
    assert updated.status == OrderStatus.FAILED
    assert updated.last_error.startswith("Requirements no longer met")
    assert result.should_retry is False
    assert len(exchange.clients["key-a"].placed) == 1


def test_runaway_order_is_abandoned(queue, store, exchange, make_executor, config):
    config.retry.abandon_after_errors = 2
    config.retry.max_attempts = 100
    add_key(store, "key-a")
    order = queue.create_order(make_spec())
    queue.mark_as_failed(order.id, "timeout")
    queue.clear_failed_api_keys(order.id)

    run(make_executor().execute_order(queue.get_order(order.id)))

    updated = queue.get_order(order.id)
    assert updated.status == OrderStatus.FAILED
    assert updated.last_error.startswith("Abandoned")
    assert "key-a" not in exchange.clients


# ─── Verification ───

def test_canceled_order_is_retried_without_blaming_the_key(queue, store, exchange, breaker, make_executor):
    add_key(store, "key-a")
    exchange.client("key-a", state=ExchangeOrderState.CANCELED)
    order = queue.create_order(make_spec())

    result = run(make_executor().execute_order(order))

    updated = queue.get_order(order.id)
    assert result.should_retry is True
    assert updated.status == OrderStatus.RETRY
    assert "canceled" in updated.last_error
    assert exchange.clients["key-a"].status_calls == 1
    assert breaker.get_state("key-a") is None


def test_lingering_open_order_is_accepted(queue, store, exchange, make_executor, config):
    add_key(store, "key-a")
    exchange.client("key-a", state=ExchangeOrderState.OPEN)
    order = queue.create_order(make_spec())

    result = run(make_executor().execute_order(order))

    assert result.success is True
    assert queue.get_order(order.id).status == OrderStatus.COMPLETED
    assert exchange.clients["key-a"].status_calls == config.execution.verify_attempts


def test_unreadable_status_is_accepted(queue, store, exchange, make_executor):
    add_key(store, "key-a")
    client = exchange.client("key-a")
    client.status_error = ExchangeError("Network error: reset")
    order = queue.create_order(make_spec())

    result = run(make_executor().execute_order(order))

    assert result.success is True
    assert queue.get_order(order.id).exchange_order_id == "TX-key-a-1"


# ─── Notifier ───

def test_notifier_receives_completed_order(queue, store, exchange, make_executor):
    add_key(store, "key-a")
    notifier = RecordingNotifier()
    order = queue.create_order(make_spec())

    run(make_executor(notifier=notifier).execute_order(order))

    assert len(notifier.calls) == 1
    notified, result = notifier.calls[0]
    assert notified.status == OrderStatus.COMPLETED
    assert result.executed_price == "30000.5"
    assert result.executed_volume == "1.0"


def test_notifier_failure_does_not_undo_completion(queue, store, exchange, make_executor):
    add_key(store, "key-a")
    order = queue.create_order(make_spec())

    result = run(make_executor(notifier=RecordingNotifier(fail=True)).execute_order(order))

    assert result.success is True
    assert queue.get_order(order.id).status == OrderStatus.COMPLETED


# ─── Main cycle ───

def test_cycle_dispatches_oldest_first_up_to_concurrency(queue, store, exchange, make_executor, config, clock):
    config.rate_limit.max_concurrent_orders = 2
    add_key(store, "key-a")
    ids = []
    for bot in ("b1", "b2", "b3"):
        ids.append(queue.create_order(make_spec(bot_id=bot)).id)
        clock.advance(1)
    executor = make_executor()

    results = run(executor.execute_pending_orders())

    assert [r.order_id for r in results] == ids[:2]
    assert all(r.success for r in results)
    assert queue.get_order(ids[2]).status == OrderStatus.PENDING
    assert executor.in_flight == set()


def test_executor_bug_becomes_retryable_failure(queue, store, make_executor):
    add_key(store, "key-a")

    def broken_factory(credential):
        raise RuntimeError("client construction exploded")

    executor = make_executor()
    executor._client_factory = broken_factory
    order = queue.create_order(make_spec())

    results = run(executor.execute_pending_orders())

    updated = queue.get_order(order.id)
    assert results[0].should_retry is True
    assert updated.status == OrderStatus.RETRY
    assert updated.last_error.startswith("Executor error")
    assert executor.in_flight == set()


def test_backpressure_while_orders_in_flight(queue, store, exchange, make_executor, config):
    config.rate_limit.max_concurrent_orders = 1
    add_key(store, "key-a")
    client = exchange.client("key-a")
    executor = make_executor()
    first = queue.create_order(make_spec(bot_id="b1"))
    queue.create_order(make_spec(bot_id="b2"))

    async def scenario():
        client.gate = asyncio.Event()
        cycle = asyncio.create_task(executor.execute_pending_orders())
        while not client.placed:
            await asyncio.sleep(0)

        assert executor.in_flight == {first.id}
        assert await executor.execute_pending_orders() == []

        client.gate.set()
        return await cycle

    results = run(scenario())

    assert [r.order_id for r in results] == [first.id]
    assert len(client.placed) == 1


def test_overlapping_cycles_dispatch_each_order_once(queue, store, exchange, make_executor):
    add_key(store, "key-a")
    client = exchange.client("key-a")
    executor = make_executor(rate_limiter=RateLimiter(max_per_second=20))
    ids = {queue.create_order(make_spec(bot_id=bot)).id for bot in ("b1", "b2")}

    async def scenario():
        client.gate = asyncio.Event()
        cycles = [asyncio.create_task(executor.execute_pending_orders()) for _ in range(2)]
        while len(client.placed) < 2:
            await asyncio.sleep(0.01)
        # Give any duplicate dispatch time to clear the limiter
        await asyncio.sleep(0.15)
        blocked = executor.in_flight

        client.gate.set()
        batches = await asyncio.gather(*cycles)
        return blocked, [r for batch in batches for r in batch]

    blocked, results = run(scenario())

    assert blocked == ids
    assert len(client.placed) == 2
    assert sorted(r.order_id for r in results) == sorted(ids)
    assert all(r.success for r in results)
    assert executor.in_flight == set()


def test_get_status(queue, store, breaker, make_executor):
    queue.create_order(make_spec())
    breaker.record_failure("key-a", "timeout")

    status = make_executor().get_status()

    assert status["executing_orders"] == []
    assert status["max_concurrent_orders"] == 5
    assert status["queue"]["pending"] == 1
    assert status["circuit_breakers"][0]["key_id"] == "key-a"


def test_close_closes_clients(queue, store, exchange, make_executor):
    add_key(store, "key-a")
    executor = make_executor()
    run(executor.execute_order(queue.create_order(make_spec())))

    run(executor.close())

    assert exchange.clients["key-a"].closed is True
