# (c) Copyright 2022 Aaron Kimball

"""
Scripted stand-ins for SerialConn and the keyboard reader, for driving a Monitor
session tick by tick without hardware.
"""

import espmon.io as io


DISCONNECT = object()   # Script marker: the next read reports the port as lost.


class MockSerialConn(object):
    """
    Plays back a script of read results. Each script item is a bytes chunk (returned by
    one read_chunk() call) or DISCONNECT. Once the script runs out, reads time out (b'').

    Every reset step, write and lifecycle call is appended to `events` so that tests can
    check their order relative to device output.
    """

    def __init__(self, script=(), port='/dev/ttyMOCK0', baud=115200):
        self.port = port
        self.baud_rate = baud
        self.script = list(script)
        self.events = []
        self.written = b''
        self.connected = False
        self.reset_pending = False
        self.open_failures = 0      # Fail this many upcoming open()/reopen() calls.
        self.open_error = io.PortNotFoundError

    def __repr__(self):
        return f'{self.port} @ {self.baud_rate} baud'

    def open(self):
        self.events.append('open')
        if self.open_failures > 0:
            self.open_failures -= 1
            raise self.open_error(f'Serial port {self.port} not found')
        self.connected = True

    def reopen(self):
        self.events.append('reopen')
        self.close()
        self.open()

    def close(self):
        self.events.append('close')
        self.connected = False

    def is_open(self):
        return self.connected

    def read_chunk(self, timeout=None):
        if not self.connected:
            raise io.DisconnectedError(f'{self.port} is not open')
        if not self.script:
            return b''
        item = self.script.pop(0)
        if item is DISCONNECT:
            self.connected = False
            raise io.DisconnectedError(f'Lost connection to {self.port}: device removed')
        self.events.append(('read', item))
        return item

    def available(self):
        if self.connected and self.script and self.script[0] is not DISCONNECT:
            return len(self.script[0])
        return 0

    def write(self, data):
        if not self.connected:
            raise io.DisconnectedError(f'{self.port} is not open')
        self.events.append(('write', data))
        self.written += data
        return len(data)

    def reset(self, sequence, cancel=None):
        if not self.connected:
            raise io.DisconnectedError(f'{self.port} is not open')
        self.reset_pending = True
        for step in sequence:
            self.events.append(('set', step.line, step.level))
        self.reset_pending = False


class MockKeyboard(object):
    """
    Returns one scripted list of ControlCommands per poll() call.
    """

    interactive = True

    def __init__(self, polls=()):
        self.polls = list(polls)
        self.poll_timeouts = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def poll(self, timeout):
        self.poll_timeouts.append(timeout)
        if not self.polls:
            return []
        return self.polls.pop(0)


class FakeClock(object):
    """
    Monotonic clock that advances by `step` seconds on every reading.
    """

    def __init__(self, start=100.0, step=0.0):
        self.now = start
        self.step = step

    def __call__(self):
        t = self.now
        self.now += self.step
        return t

    def advance(self, secs):
        self.now += secs
