import pytest

from pulse_relay.reconnect import ConnectionState, ReconnectController, backoff_delay

from fakes import FakeScheduler

S = ConnectionState


class Harness:
    def __init__(self, **kwargs):
        self.opens = 0
        self.closes = 0
        self.scheduler = FakeScheduler()
        self.transitions = []
        self.controller = ReconnectController(
            open_connection=self._open,
            close_connection=self._close,
            schedule=self.scheduler,
            **kwargs,
        )
        self.controller.add_listener(lambda old, new: self.transitions.append((old, new)))

    def _open(self):
        self.opens += 1

    def _close(self):
        self.closes += 1

    def connect(self):
        self.controller.authenticated()
        self.controller.opened()


@pytest.fixture
def harness():
    return Harness()


@pytest.mark.parametrize(
    "attempt,expected",
    [(1, 1.0), (2, 2.0), (3, 4.0), (4, 8.0), (5, 16.0), (6, 30.0), (12, 30.0)],
)
def test_backoff_delay(attempt, expected):
    assert backoff_delay(attempt, 1.0, 30.0) == expected


def test_backoff_delay_is_one_based():
    with pytest.raises(ValueError):
        backoff_delay(0)


def test_rejects_inverted_bounds():
    with pytest.raises(ValueError):
        ReconnectController(lambda: None, floor=5.0, ceiling=1.0)


def test_starts_disconnected_and_ignores_stray_events(harness):
    c = harness.controller
    assert c.state is S.DISCONNECTED
    c.closed(1006)
    c.failed()
    c.opened()
    assert c.state is S.DISCONNECTED
    assert harness.scheduler.timers == []
    assert harness.opens == 0


def test_authenticated_opens_once(harness):
    c = harness.controller
    c.authenticated()
    assert c.state is S.CONNECTING
    c.authenticated()
    assert harness.opens == 1

    c.opened()
    assert c.state is S.CONNECTED
    assert c.attempts == 0


def test_abnormal_close_schedules_exactly_one_retry(harness):
    c = harness.controller
    harness.connect()

    c.closed(1006)

    assert c.state is S.BACKOFF
    assert len(harness.scheduler.pending) == 1
    assert c.pending_delay == 1.0
    assert harness.opens == 1

    harness.scheduler.fire_last()
    assert c.state is S.CONNECTING
    assert harness.opens == 2
    assert c.pending_delay is None


def test_missing_close_frame_is_abnormal(harness):
    harness.connect()
    harness.controller.closed(None)
    assert harness.controller.state is S.BACKOFF


def test_normal_close_does_not_reconnect(harness):
    harness.connect()
    harness.controller.closed(1000)
    assert harness.controller.state is S.DISCONNECTED
    assert harness.scheduler.timers == []


def test_handshake_failure_backs_off(harness):
    c = harness.controller
    c.authenticated()
    c.failed()
    assert c.state is S.BACKOFF
    assert c.attempts == 1


def test_delays_double_to_ceiling_then_give_up(harness):
    c = harness.controller
    harness.connect()
    c.closed(1006)

    delays = []
    while c.state is S.BACKOFF:
        delays.append(harness.scheduler.fire_last())
        c.failed()

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
    assert c.state is S.DISCONNECTED
    assert c.exhausted
    assert c.pending_delay is None
    assert all(1.0 <= t.delay <= 30.0 for t in harness.scheduler.timers)


def test_successful_open_resets_attempts(harness):
    c = harness.controller
    harness.connect()
    c.closed(1006)
    harness.scheduler.fire_last()
    c.failed()
    assert c.attempts == 2

    harness.scheduler.fire_last()
    c.opened()
    assert c.attempts == 0

    c.closed(1011)
    assert c.pending_delay == 1.0


def test_authenticated_after_exhaustion_starts_over():
    harness = Harness(max_attempts=1)
    c = harness.controller
    harness.connect()
    c.closed(1006)
    harness.scheduler.fire_last()
    c.failed()
    assert c.state is S.DISCONNECTED and c.exhausted

    c.authenticated()
    assert c.state is S.CONNECTING
    assert c.attempts == 0
    assert not c.exhausted


def test_logout_cancels_pending_retry(harness):
    c = harness.controller
    harness.connect()
    c.closed(1006)
    timer = harness.scheduler.timers[-1]

    c.logout()

    assert c.state is S.DISCONNECTED
    assert timer.cancelled
    assert harness.closes == 0

    # a callback that already left the loop's queue must not reconnect
    timer.callback()
    assert c.state is S.DISCONNECTED
    assert harness.opens == 1


def test_logout_closes_live_connection(harness):
    harness.connect()
    harness.controller.logout()
    assert harness.controller.state is S.DISCONNECTED
    assert harness.closes == 1

    harness.controller.closed(1000)
    assert harness.scheduler.timers == []


def test_auth_rejected_does_not_retry(harness):
    c = harness.controller
    c.authenticated()
    c.auth_rejected()
    assert c.state is S.DISCONNECTED
    assert harness.scheduler.timers == []
    assert harness.closes == 0


def test_listener_sees_every_transition(harness):
    harness.connect()
    harness.controller.closed(1006)
    harness.scheduler.fire_last()
    assert harness.transitions == [
        (S.DISCONNECTED, S.CONNECTING),
        (S.CONNECTING, S.CONNECTED),
        (S.CONNECTED, S.BACKOFF),
        (S.BACKOFF, S.CONNECTING),
    ]


def test_listener_can_be_removed(harness):
    seen = []
    remove = harness.controller.add_listener(lambda old, new: seen.append(new))
    remove()
    remove()
    harness.connect()
    assert seen == []
