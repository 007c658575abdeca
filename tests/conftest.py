import random
from datetime import datetime, timedelta, timezone

import pytest

from config import ServiceConfig
from exchange.models import ApiCredential, OrderSide, OrderSpec, OrderType
from storage.memory import InMemoryStore
from trading.circuit_breaker import CircuitBreaker
from trading.order_executor import OrderExecutor
from trading.order_queue import OrderQueue

from fake_exchange import FakeExchange


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def make_spec(**overrides):
    fields = dict(
        user_id="user-1",
        bot_id="bot-1",
        pair="XBTUSD",
        side=OrderSide.BUY,
        volume="1.0",
        type=OrderType.MARKET,
        amount=None,
        reason="DCA entry",
    )
    fields.update(overrides)
    return OrderSpec(**fields)


def add_key(store, key_id, user_id="user-1"):
    store.add_credential(ApiCredential(
        id=key_id,
        user_id=user_id,
        name=f"key {key_id}",
        api_key=f"public-{key_id}",
        api_secret="c2VjcmV0",
    ))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    config = ServiceConfig()
    config.execution.verify_delay_sec = 0
    config.rate_limit.max_orders_per_second = 1000
    return config


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def queue(store, config, clock):
    return OrderQueue(store, config.retry, clock=clock, rng=random.Random(7))


@pytest.fixture
def breaker(config, clock):
    return CircuitBreaker(config.circuit_breaker, clock=clock)


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def make_executor(queue, breaker, store, config, exchange):
    def build(**kwargs):
        return OrderExecutor(
            queue=queue,
            breaker=breaker,
            credentials=store,
            config=config,
            client_factory=exchange.factory,
            **kwargs,
        )
    return build
