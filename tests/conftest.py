"""
Shared pytest fixtures.

Key design decisions:
- The device log tool is replaced by tiny Python scripts run with sys.executable,
  so the real process plumbing (pipes, signals, exit codes) is exercised.
- Async code is driven with asyncio.run() inside plain pytest tests; no
  event-loop plugin is needed.
- Batch interval is shortened to keep tests fast; every wait is bounded.
"""
import asyncio
import json
import os
import sys
import textwrap
import time

import pytest

from relay import RelaySettings


FAST_INTERVAL_MS = 20


# ── Fake log tools ────────────────────────────────────────────────────────────

def hang_script():
    return 'import time\ntime.sleep(60)\n'


def emit_then_hang(text):
    return (
        'import sys, time\n'
        f'sys.stdout.write({text!r})\n'
        'sys.stdout.flush()\n'
        'time.sleep(60)\n'
    )


def emit_then_exit(text, code=0):
    return (
        'import sys\n'
        f'sys.stdout.write({text!r})\n'
        'sys.stdout.flush()\n'
        f'sys.exit({code})\n'
    )


def trickle(count, delay):
    """Emit `count` numbered lines, one every `delay` seconds, then hang."""
    return textwrap.dedent(f'''
        import sys, time
        for i in range({count}):
            sys.stdout.write(f"line {{i}}\\n")
            sys.stdout.flush()
            time.sleep({delay})
        time.sleep(60)
    ''')


def stderr_then_hang(text):
    return (
        'import sys, time\n'
        f'sys.stderr.write({text!r})\n'
        'sys.stderr.flush()\n'
        'time.sleep(60)\n'
    )


@pytest.fixture()
def tool(tmp_path):
    """Factory: write a script body to disk and return its command template."""
    counter = iter(range(1000))

    def _make(body):
        path = tmp_path / f'tool_{next(counter)}.py'
        path.write_text(body)
        return [sys.executable, str(path), '{device_id}']

    return _make


@pytest.fixture()
def make_settings():
    def _make(command, **overrides):
        values = dict(
            command=command,
            ring_capacity=1000,
            batch_interval_ms=FAST_INTERVAL_MS,
            max_buffered_bytes=5_000_000,
            max_queued_messages=1000,
            stop_timeout=2.0,
            mirror_dir=None,
        )
        values.update(overrides)
        return RelaySettings(**values)

    return _make


# ── Helpers ───────────────────────────────────────────────────────────────────

async def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll `predicate` until it is truthy; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail(f'condition not met within {timeout}s')
        await asyncio.sleep(interval)


def pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    # A zombie still answers signal 0; check its state on Linux
    try:
        with open(f'/proc/{pid}/stat') as f:
            return f.read().split(')')[-1].split()[0] != 'Z'
    except OSError:
        return True


class Sink:
    """Stand-in for a WebSocket: records every message sent to it."""

    def __init__(self, block=None):
        self.raw = []
        self._block = block

    async def send(self, text):
        if self._block is not None:
            await self._block.wait()
        self.raw.append(text)

    @property
    def messages(self):
        return [json.loads(t) for t in self.raw]

    def of_type(self, kind):
        return [m for m in self.messages if m['type'] == kind]

    @property
    def lines(self):
        return [line for m in self.of_type('batch') for line in m['lines']]
