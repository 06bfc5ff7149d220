"""Tests for the service log buffer behind /logs."""
import logging

import pytest

from log_buffer import LogBuffer


@pytest.fixture()
def captured():
    buffer = LogBuffer(maxlen=3)
    log = logging.getLogger('test.log_buffer')
    log.setLevel(logging.DEBUG)
    log.propagate = False
    log.addHandler(buffer)
    yield log, buffer
    log.removeHandler(buffer)


class TestLogBuffer:
    def test_sequences_survive_eviction(self, captured):
        log, buffer = captured
        for i in range(5):
            log.info(f'message {i}')

        entries, latest = buffer.get_entries()
        assert latest == 5
        assert [e['sequence'] for e in entries] == [3, 4, 5]
        assert entries[-1]['message'] == 'message 4'
        assert entries[-1]['level'] == 'INFO'
        assert entries[-1]['logger_name'] == 'test.log_buffer'

    def test_cursor_returns_only_newer_entries(self, captured):
        log, buffer = captured
        log.warning('one')
        log.warning('two')

        entries, latest = buffer.get_entries(since_sequence=1)
        assert [e['message'] for e in entries] == ['two']
        assert buffer.get_entries(since_sequence=latest) == ([], latest)

    def test_limit_keeps_most_recent(self, captured):
        log, buffer = captured
        for i in range(3):
            log.debug(f'm{i}')

        entries, _ = buffer.get_entries(limit=1)
        assert [e['message'] for e in entries] == ['m2']

    def test_latest_sequence_matches_returned_entries(self, captured, monkeypatch):
        log, buffer = captured
        log.info('before')
        snapshot = buffer._ring.snapshot

        def snapshot_after_late_record():
            # A record lands while the entries are being read
            log.info('late')
            return snapshot()

        monkeypatch.setattr(buffer._ring, 'snapshot', snapshot_after_late_record)
        entries, latest = buffer.get_entries()
        assert latest == max(e['sequence'] for e in entries) == 2

        monkeypatch.undo()
        assert buffer.get_entries(since_sequence=latest) == ([], latest)
