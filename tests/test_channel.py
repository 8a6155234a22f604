"""Tests for message channels: redelivery, dead-lettering, spool recovery."""

import json
import threading
import time

import pytest

from sparql_gateway.channel import Channel, MessageBus, UpdateMessage
from sparql_gateway.errors import ParseError, TransientStorageError
from sparql_gateway.failures import FailureStore

BODY = "INSERT DATA { GRAPH <urn:g> { <urn:a> <urn:b> <urn:c> } }"


class Recorder:
    """Handler double failing the first `failures` calls."""

    def __init__(self, failures=0, error=TransientStorageError("busy")):
        self.failures = failures
        self.error = error
        self.calls: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def __call__(self, msg: UpdateMessage):
        with self._lock:
            self.calls.append((msg.body, msg.redelivery_count))
            n = len(self.calls)
        if self.failures is None or n <= self.failures:
            raise self.error


@pytest.fixture
def channels():
    created = []
    yield created
    for ch in created:
        ch.stop(timeout=2)


def _channel(channels, handler, **kwargs):
    kwargs.setdefault("redelivery_delay", 0)
    ch = Channel("sparql-update", handler, **kwargs)
    channels.append(ch)
    return ch


class TestDelivery:
    def test_ack(self, channels):
        handler = Recorder()
        ch = _channel(channels, handler)
        ch.start()
        cid = ch.enqueue(BODY)
        assert ch.join(timeout=5)
        assert handler.calls == [(BODY, 0)]
        assert cid
        assert ch.get_stats()["acked"] == 1

    def test_enqueue_before_start(self, channels):
        handler = Recorder()
        ch = _channel(channels, handler)
        ch.enqueue(BODY)
        assert ch.pending == 1
        ch.start()
        assert ch.join(timeout=5)
        assert len(handler.calls) == 1

    def test_correlation_id_kept(self, channels):
        seen = []
        ch = _channel(channels, lambda m: seen.append(m.correlation_id))
        ch.start()
        ch.enqueue(BODY, correlation_id="abc")
        ch.join(timeout=5)
        assert seen == ["abc"]

    def test_several_workers(self, channels):
        handler = Recorder()
        ch = _channel(channels, handler, workers=4)
        ch.start()
        for i in range(20):
            ch.enqueue(f"{BODY} # {i}")
        assert ch.join(timeout=5)
        assert len(handler.calls) == 20


class TestRedelivery:
    def test_exactly_max_failures_then_success(self, channels):
        handler = Recorder(failures=5)
        dead = []
        ch = _channel(channels, handler, max_redeliveries=5, dead_letter=dead.append)
        ch.start()
        ch.enqueue(BODY)
        assert ch.join(timeout=5)
        assert [count for _, count in handler.calls] == [0, 1, 2, 3, 4, 5]
        assert dead == []
        assert ch.get_stats()["acked"] == 1

    def test_always_failing_is_dead_lettered_after_max(self, channels):
        handler = Recorder(failures=None)
        dead = []
        ch = _channel(channels, handler, max_redeliveries=5, dead_letter=dead.append)
        ch.start()
        ch.enqueue(BODY)
        assert ch.join(timeout=5)
        assert len(handler.calls) == 6
        assert len(dead) == 1
        assert dead[0].body == BODY
        assert dead[0].redelivery_count == 5
        assert ch.get_stats()["redelivered"] == 5
        assert ch.get_stats()["dead_lettered"] == 1

    def test_non_retryable_dead_letters_at_once(self, channels):
        handler = Recorder(failures=None, error=ParseError("not an update"))
        dead = []
        ch = _channel(channels, handler, max_redeliveries=5, dead_letter=dead.append)
        ch.start()
        ch.enqueue(BODY)
        assert ch.join(timeout=5)
        assert len(handler.calls) == 1
        assert len(dead) == 1

    def test_unknown_errors_are_retried(self, channels):
        handler = Recorder(failures=2, error=OSError("disk"))
        ch = _channel(channels, handler, max_redeliveries=5)
        ch.start()
        ch.enqueue(BODY)
        assert ch.join(timeout=5)
        assert len(handler.calls) == 3

    def test_zero_redeliveries(self, channels):
        handler = Recorder(failures=None)
        dead = []
        ch = _channel(channels, handler, max_redeliveries=0, dead_letter=dead.append)
        ch.start()
        ch.enqueue(BODY)
        assert ch.join(timeout=5)
        assert len(handler.calls) == 1
        assert len(dead) == 1

    def test_backoff(self):
        ch = Channel("x", lambda m: None, redelivery_delay=0.5,
                     backoff_multiplier=2.0, max_redelivery_delay=3.0)
        assert ch._backoff(1) == 0.5
        assert ch._backoff(2) == 1.0
        assert ch._backoff(3) == 2.0
        assert ch._backoff(4) == 3.0
        assert ch._backoff(10) == 3.0

    def test_backoff_waits_between_attempts(self, channels):
        handler = Recorder(failures=2)
        ch = _channel(channels, handler, redelivery_delay=0.05, backoff_multiplier=2.0)
        ch.start()
        start = time.monotonic()
        ch.enqueue(BODY)
        assert ch.join(timeout=5)
        assert time.monotonic() - start >= 0.15


class TestSpool:
    def test_spooled_until_ack(self, tmp_path, channels):
        gate = threading.Event()
        ch = _channel(channels, lambda m: gate.wait(5), spool_dir=tmp_path)
        ch.start()
        cid = ch.enqueue(BODY)
        spooled = tmp_path / "sparql-update" / f"{cid}.json"
        assert spooled.exists()
        gate.set()
        assert ch.join(timeout=5)
        assert not spooled.exists()

    def test_redelivery_count_persisted(self, tmp_path, channels):
        counts = []

        def handler(msg):
            path = tmp_path / "sparql-update" / f"{msg.correlation_id}.json"
            counts.append(json.loads(path.read_text())["redelivery_count"])
            if msg.redelivery_count < 2:
                raise TransientStorageError("busy")

        ch = _channel(channels, handler, spool_dir=tmp_path)
        ch.start()
        ch.enqueue(BODY)
        assert ch.join(timeout=5)
        assert counts == [0, 1, 2]

    def test_recovered_on_restart(self, tmp_path, channels):
        crashed = _channel(channels, Recorder(), spool_dir=tmp_path)
        cid = crashed.enqueue(BODY)

        handler = Recorder()
        restarted = _channel(channels, handler, spool_dir=tmp_path)
        assert restarted.pending == 1
        restarted.start()
        assert restarted.join(timeout=5)
        assert handler.calls == [(BODY, 0)]
        assert not (tmp_path / "sparql-update" / f"{cid}.json").exists()

    def test_unreadable_record_skipped(self, tmp_path, channels):
        spool = tmp_path / "sparql-update"
        spool.mkdir()
        (spool / "broken.json").write_text("{not json")
        ch = _channel(channels, Recorder(), spool_dir=tmp_path)
        assert ch.pending == 0

    def test_dead_letter_failure_keeps_spool(self, tmp_path, channels):
        def refuse(msg):
            raise OSError("failure sink unavailable")

        ch = _channel(channels, Recorder(failures=None), spool_dir=tmp_path,
                      max_redeliveries=1, dead_letter=refuse)
        ch.start()
        cid = ch.enqueue(BODY)
        assert ch.join(timeout=5)
        assert (tmp_path / "sparql-update" / f"{cid}.json").exists()


class TestMessageBus:
    def test_dead_letter_to_failure_store(self, tmp_path):
        failures = FailureStore(tmp_path / "failures")
        handler = Recorder(failures=None)
        bus = MessageBus(spool_dir=tmp_path / "spool")
        bus.register("sparql-update-failure", lambda m: failures.persist(m.body))
        bus.register("sparql-update", handler, max_redeliveries=5,
                     redelivery_delay=0, dead_letter="sparql-update-failure")
        bus.start()
        try:
            bus.send("sparql-update", BODY)
            assert bus.join(timeout=5)
            records = failures.records()
            assert len(records) == 1
            assert records[0].read_text(encoding="utf-8") == BODY
            assert len(handler.calls) == 6

            time.sleep(0.1)
            assert len(handler.calls) == 6
            assert list((tmp_path / "spool" / "sparql-update").glob("*.json")) == []
            assert list((tmp_path / "spool" / "sparql-update-failure").glob("*.json")) == []
        finally:
            bus.stop()

    def test_stop_during_backoff_keeps_dead_letter(self, tmp_path):
        failures = FailureStore(tmp_path / "failures")
        handler = Recorder(failures=None)
        bus = MessageBus()
        bus.register("sparql-update-failure", lambda m: failures.persist(m.body))
        bus.register("sparql-update", handler, max_redeliveries=5,
                     redelivery_delay=30, dead_letter="sparql-update-failure")
        bus.start()
        bus.send("sparql-update", BODY)
        deadline = time.monotonic() + 5
        while not handler.calls and time.monotonic() < deadline:
            time.sleep(0.01)
        assert len(handler.calls) == 1

        bus.stop()

        records = failures.records()
        assert len(records) == 1
        assert records[0].read_text(encoding="utf-8") == BODY
        assert bus.get_stats()["sparql-update"]["dead_lettered"] == 1

    def test_unknown_channel(self):
        with pytest.raises(ValueError):
            MessageBus().send("nope", BODY)

    def test_duplicate_registration(self):
        bus = MessageBus()
        bus.register("a", lambda m: None)
        with pytest.raises(ValueError):
            bus.register("a", lambda m: None)

    def test_send_after_stop(self):
        bus = MessageBus()
        bus.register("a", lambda m: None)
        bus.start()
        bus.stop()
        with pytest.raises(RuntimeError):
            bus.send("a", BODY)

    def test_stats(self):
        bus = MessageBus()
        bus.register("a", lambda m: None)
        bus.start()
        bus.send("a", BODY)
        bus.join(timeout=5)
        bus.stop()
        assert bus.get_stats()["a"]["acked"] == 1
