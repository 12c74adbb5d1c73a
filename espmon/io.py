# (c) Copyright 2021 Aaron Kimball
#
# Serial connection to the device: open/reopen, bounded-timeout reads, and
# control-line reset sequencing.

import errno
import os.path
import threading
import time

import serial

READ_SIZE = 1024


class SerialSessionError(Exception):
    """
    Base class for errors raised by the serial connection.
    """
    pass


class InvalidBaudError(SerialSessionError):
    """ The requested baud rate can't be used. """
    pass


class PortNotFoundError(SerialSessionError):
    """ The named port does not exist. """
    pass


class PortUnavailableError(SerialSessionError):
    """ The port exists but could not be opened or used. """
    pass


class DisconnectedError(PortUnavailableError):
    """ The port went away during a read or write (device unplugged, OS-level error). """
    pass


def _is_not_found(port, err):
    if getattr(err, 'errno', None) == errno.ENOENT:
        return True
    # pyserial wraps the OS error in its message for some platforms.
    if "No such file or directory" in str(err):
        return True
    return port.startswith('/') and not os.path.exists(port)


class SerialConn(object):
    """
    Owns the serial port to the device. Only the monitor loop reads from it; reset()
    takes the control-line lock for the duration of a reset sequence.
    """

    def __init__(self, port, baud, timeout=0.1):
        if not isinstance(baud, int) or isinstance(baud, bool) or baud <= 0:
            raise InvalidBaudError(f'Invalid baud rate: {baud}')

        self._port = port
        self._baud = baud
        self._timeout = timeout
        self._serial = None
        self._read_timeout = None  # Timeout currently set on the open port.
        self._ctrl_lock = threading.Lock()

        self.connected = False
        self.reset_pending = False

    @property
    def port(self):
        return self._port

    @property
    def baud_rate(self):
        return self._baud

    def __repr__(self):
        return f'{self._port} @ {self._baud} baud'

    def open(self):
        """
        Open the port.

        @throws InvalidBaudError if the OS/driver rejects the baud rate.
        @throws PortNotFoundError if the port does not exist.
        @throws PortUnavailableError for any other failure to open it.
        """
        if self.is_open():
            return

        conn = serial.Serial()
        conn.port = self._port
        try:
            conn.baudrate = self._baud
        except ValueError as e:
            raise InvalidBaudError(f'Invalid baud rate {self._baud}: {e}') from e
        conn.timeout = self._timeout
        # Don't let opening the port itself hold the chip in reset or in its bootloader.
        conn.dtr = False
        conn.rts = False

        try:
            conn.open()
        except ValueError as e:
            raise InvalidBaudError(f'Invalid baud rate {self._baud}: {e}') from e
        except (serial.SerialException, OSError) as e:
            if _is_not_found(self._port, e):
                raise PortNotFoundError(f'Serial port {self._port} not found') from e
            raise PortUnavailableError(f'Could not open {self._port}: {e}') from e

        self._serial = conn
        self.connected = True
        self._read_timeout = self._timeout

    def reopen(self):
        """
        Close any existing handle and try to open the port again.
        """
        self.close()
        self.open()

    def close(self):
        if self._serial is not None:
            try:
                self._serial.close()
            except (serial.SerialException, OSError):
                pass  # Already gone; nothing more to release.
        self._serial = None
        self.connected = False

    def is_open(self):
        return self._serial is not None and self._serial.is_open

    def _mark_disconnected(self, err):
        self.close()
        return DisconnectedError(f'Lost connection to {self._port}: {err}')

    def read_chunk(self, timeout=None):
        """
        Read whatever the device sends within `timeout` seconds (default: the connection
        timeout). Returns b'' if nothing arrived; that is not an error.

        @throws DisconnectedError if the port reports an error; the connection is closed.
        """
        if not self.is_open():
            raise DisconnectedError(f'{self._port} is not open')

        try:
            if timeout is not None and timeout != self._read_timeout:
                self._serial.timeout = timeout  # pyserial reconfigures the port on every set.
                self._read_timeout = timeout
            data = self._serial.read(1)
            if data:
                waiting = self._serial.in_waiting
                if waiting:
                    data += self._serial.read(min(waiting, READ_SIZE))
            return data
        except (serial.SerialException, OSError) as e:
            raise self._mark_disconnected(e) from e

    def available(self):
        """
        Return the number of bytes ready to read without blocking.
        """
        if not self.is_open():
            return 0
        try:
            return self._serial.in_waiting
        except (serial.SerialException, OSError) as e:
            raise self._mark_disconnected(e) from e

    def write(self, data):
        if not self.is_open():
            raise DisconnectedError(f'{self._port} is not open')
        try:
            return self._serial.write(data)
        except (serial.SerialException, OSError) as e:
            raise self._mark_disconnected(e) from e

    def _set_line(self, line, level):
        setattr(self._serial, line, level)

    def reset(self, sequence, cancel=None):
        """
        Run a chip reset sequence (a list of chips.ResetStep) on the control lines.

        Holds wait on `cancel` (a threading.Event) if given. Once it is set, the remaining
        steps still drive their lines, but without waiting, so the lines end up released.
        """
        if not self.is_open():
            raise DisconnectedError(f'{self._port} is not open')

        with self._ctrl_lock:
            self.reset_pending = True
            try:
                for step in sequence:
                    self._set_line(step.line, step.level)
                    if step.hold > 0 and not (cancel is not None and cancel.is_set()):
                        if cancel is not None:
                            cancel.wait(step.hold)
                        else:
                            time.sleep(step.hold)
            except (serial.SerialException, OSError) as e:
                raise self._mark_disconnected(e) from e
            finally:
                self.reset_pending = False
