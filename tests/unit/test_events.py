import logging
import threading

import pytest

from loopback_oauth.events import EventBus
from loopback_oauth.utils import OAuthFlowException


def test_emit_reaches_listeners_of_that_event_only():
    bus = EventBus()
    first, second, other = [], [], []
    bus.listen('oauth-callback', first.append)
    bus.listen('oauth-callback', second.append)
    bus.listen('something-else', other.append)

    assert bus.emit('oauth-callback', 'https://app.example/cb') == 2

    assert first == ['https://app.example/cb']
    assert second == ['https://app.example/cb']
    assert other == []


def test_emit_without_listeners():
    assert EventBus().emit('oauth-callback', 'x') == 0


def test_unlisten_is_idempotent():
    bus = EventBus()
    received = []
    unlisten = bus.listen('oauth-callback', received.append)

    unlisten()
    unlisten()

    assert bus.emit('oauth-callback', 'x') == 0
    assert received == []


def test_listener_error_is_logged_and_isolated(caplog):
    bus = EventBus()
    received = []

    def broken(_):
        raise ValueError("boom")

    bus.listen('oauth-callback', broken)
    bus.listen('oauth-callback', received.append)

    with caplog.at_level(logging.ERROR, logger='loopback_oauth.events'):
        assert bus.emit('oauth-callback', 'x') == 2

    assert received == ['x']
    assert "Listener for 'oauth-callback' failed" in caplog.text


class TestEventWaiter:

    def test_returns_first_payload_only(self):
        bus = EventBus()
        waiter = bus.once('oauth-callback')

        bus.emit('oauth-callback', 'first')
        bus.emit('oauth-callback', 'second')

        assert waiter.is_set()
        assert waiter.wait(timeout=1) == 'first'

    def test_payload_from_another_thread(self):
        bus = EventBus()
        waiter = bus.once('oauth-callback')

        timer = threading.Timer(0.05, bus.emit, args=('oauth-callback', 'late'))
        timer.start()
        try:
            assert waiter.wait(timeout=5) == 'late'
        finally:
            timer.cancel()

    def test_timeout_raises(self):
        waiter = EventBus().once('oauth-callback')

        with pytest.raises(OAuthFlowException) as exc_info:
            waiter.wait(timeout=0.05)

        assert "Timed out after 0.05 seconds waiting for 'oauth-callback'" == str(exc_info.value)

    def test_abort_raises_reason(self):
        bus = EventBus()
        waiter = bus.once('oauth-callback')
        bus.listen('oauth-callback-failed', waiter.abort)

        bus.emit('oauth-callback-failed', 'no callback')

        with pytest.raises(OAuthFlowException) as exc_info:
            waiter.wait(timeout=1)
        assert str(exc_info.value) == 'no callback'

    def test_payload_wins_over_later_abort(self):
        bus = EventBus()
        waiter = bus.once('oauth-callback')

        bus.emit('oauth-callback', 'url')
        waiter.abort('too late')

        assert waiter.wait(timeout=1) == 'url'

    def test_unregisters_after_wait(self):
        bus = EventBus()
        waiter = bus.once('oauth-callback')
        bus.emit('oauth-callback', 'url')

        waiter.wait(timeout=1)

        assert bus.emit('oauth-callback', 'again') == 0

    def test_unregisters_after_timeout(self):
        bus = EventBus()
        waiter = bus.once('oauth-callback')

        with pytest.raises(OAuthFlowException):
            waiter.wait(timeout=0.01)

        assert bus.emit('oauth-callback', 'url') == 0
