import asyncio

from exchange.models import ExecutionResult, OrderSide
from notifications.telegram import TelegramNotifier

from conftest import make_spec


class CapturingNotifier(TelegramNotifier):
    def __init__(self):
        super().__init__("token", "chat")
        self.sent = []

    async def send(self, message, parse_mode="HTML"):
        self.sent.append(message)


def test_disabled_without_credentials():
    assert TelegramNotifier("", "chat").enabled is False
    assert TelegramNotifier("token", "").enabled is False
    # No session is created while disabled
    notifier = TelegramNotifier("", "")
    asyncio.run(notifier.send("hello"))
    assert notifier._session is None


def test_fill_alert(queue):
    order = queue.create_order(make_spec(side=OrderSide.SELL, pair="ETHUSD", reason="take profit"))
    result = ExecutionResult(
        order_id=order.id, success=True, exchange_order_id="OX-9",
        executed_price="3100.2", executed_volume="1.0",
    )
    notifier = CapturingNotifier()

    asyncio.run(notifier.on_order_completed(order, result))

    message = notifier.sent[0]
    assert "SELL" in message
    assert "ETHUSD" in message
    assert "3100.2" in message
    assert "OX-9" in message
    assert "take profit" in message


def test_failure_alert(queue):
    order = queue.create_order(make_spec())
    failed = queue.mark_as_failed(order.id, "EAPI:Invalid key", retryable=False)
    notifier = CapturingNotifier()

    asyncio.run(notifier.send_order_failed(failed))

    assert "EAPI:Invalid key" in notifier.sent[0]
    assert "1/5" in notifier.sent[0]
