# (c) Copyright 2021 Aaron Kimball
#
# The monitor session loop: reads the serial port, annotates and prints complete
# lines, and acts on keyboard commands.

import codecs
import os
import os.path
import threading
import time

import espmon.chips as chips
import espmon.io as io
import espmon.keyboard as keyboard
import espmon.serialize as serialize
import espmon.term as term
from espmon.term import MsgLevel

_LOCAL_CONF_FILENAME = os.path.expanduser("~/.espmon.conf")

_DEFAULT_BAUD_RATE = 115200
_DEFAULT_POLL_TIMEOUT = 50           # milliseconds
_DEFAULT_RECONNECT_INTERVAL = 1000   # milliseconds
_DEFAULT_LINE_TIMEOUT = 5000         # milliseconds

_mon_conf_keys = [
    "monitor.baud",
    "monitor.chip",
    "monitor.colors",
    "monitor.conf.formatversion",
    "monitor.forward_input",         # Send typed keys to the device.
    "monitor.framework",
    "monitor.line.timeout",          # Print an unterminated line after this long (ms).
    "monitor.mark_unresolved",       # Append <??> after addresses with no symbol.
    "monitor.poll.timeout",          # Wait how long for serial data each tick (ms)?
    "monitor.reconnect.interval",    # Retry a lost port how often (ms)?
    "monitor.reset",                 # Reset the device when the session starts.
    "monitor.verbose",
]

# Settings given in milliseconds.
_MILLISECOND_KEYS = ("monitor.line.timeout", "monitor.poll.timeout", "monitor.reconnect.interval")


def default_config():
    """
    Return a config map with every key set to its default value.
    """
    conf_map = {}
    for k in _mon_conf_keys:
        conf_map[k] = None

    conf_map["monitor.conf.formatversion"] = serialize.MON_CONF_FMT_VERSION
    conf_map["monitor.baud"] = _DEFAULT_BAUD_RATE
    conf_map["monitor.chip"] = chips.Chip.ESP32
    conf_map["monitor.colors"] = True
    conf_map["monitor.forward_input"] = False
    conf_map["monitor.framework"] = chips.Framework.BAREMETAL
    conf_map["monitor.line.timeout"] = _DEFAULT_LINE_TIMEOUT
    conf_map["monitor.mark_unresolved"] = False
    conf_map["monitor.poll.timeout"] = _DEFAULT_POLL_TIMEOUT
    conf_map["monitor.reconnect.interval"] = _DEFAULT_RECONNECT_INTERVAL
    conf_map["monitor.reset"] = True
    conf_map["monitor.verbose"] = False
    return conf_map


def load_config(print_q, filename=None, overrides=None):
    """
    Build the session config: defaults, then the user's config file (if it exists), then
    `overrides` (from the command line). Unknown keys in the file are dropped with a warning.
    """
    conf = default_config()
    if filename is None:
        filename = _LOCAL_CONF_FILENAME

    if filename and os.path.exists(filename):
        loaded = serialize.load_config_file(print_q, filename, 'config', conf)
        for key in list(loaded.keys()):
            if key not in _mon_conf_keys:
                print_q.put((f"Warning: ignoring unknown config key '{key}' in {filename}",
                             MsgLevel.WARN))
                del loaded[key]
        conf = loaded

    if overrides:
        for (key, val) in overrides.items():
            if key not in _mon_conf_keys:
                raise KeyError("Not a valid conf key: %s" % key)
            if val is not None:
                conf[key] = val

    for key in _MILLISECOND_KEYS:
        val = conf[key]
        if isinstance(val, bool) or not isinstance(val, (int, float)) or val < 0:
            raise ValueError(f"Config key '{key}' must be a non-negative number of milliseconds, "
                             f"not {val!r}")

    return conf


class SessionState:
    """
    Lifecycle of a monitor session.
    """
    CONNECTING = 0    # Opening the port for the first time.
    RUNNING = 1       # Reading and displaying device output.
    RESETTING = 2     # Running the chip's reset sequence.
    DISCONNECTED = 3  # Lost the port; retrying periodically.
    CLOSING = 4       # Quit requested; flushing and releasing the port.
    TERMINATED = 5


class LineBuffer(object):
    """
    Reassembles serial chunks into lines. Serial reads are not line-aligned, so the tail
    of each chunk is held until its '\\n' arrives (or it goes stale).
    """

    def __init__(self, timeout=_DEFAULT_LINE_TIMEOUT / 1000.0):
        self._timeout = timeout
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._partial = ''
        self._partial_since = None

    def has_partial(self):
        return len(self._partial) > 0

    def feed(self, data, now):
        """
        Add a chunk of bytes; return the list of lines completed by it, without their
        line terminators.
        """
        text = self._decoder.decode(data)
        if not text:
            return []

        pieces = (self._partial + text).split('\n')
        self._partial = pieces.pop()
        # The timeout counts from the last chunk that extended the partial line.
        self._partial_since = now if self._partial else None

        return [p[:-1] if p.endswith('\r') else p for p in pieces]

    def expired(self, now):
        """
        Return True if a partial line has waited longer than the timeout for its '\\n'.
        """
        return self.has_partial() and self._partial_since is not None and \
            now - self._partial_since > self._timeout

    def flush(self):
        """
        Return the partial line (possibly empty) and forget it.
        """
        tail = self._partial
        if tail.endswith('\r'):
            tail = tail[:-1]
        self.clear()
        return tail

    def clear(self):
        self._partial = ''
        self._partial_since = None
        self._decoder.reset()


class Monitor(object):
    """
        Main monitor session object.
    """

    def __init__(self, conn, annotator, print_q, config=None, kbd=None, clock=time.monotonic):
        """
        @param conn the io.SerialConn to the device (not yet opened)
        @param annotator the annotate.Annotator that rewrites device lines
        @param print_q the queue that connects us to stdout/ConsolePrinter
        @param config the config map from load_config(); defaults if None.
        @param kbd keyboard reader (see keyboard.open_keyboard()); NullKeyboard if None.
        @param clock monotonic time source, in seconds.
        """
        self._conn = conn
        self._annotator = annotator
        self._print_q = print_q
        self._config = config if config is not None else default_config()
        self._kbd = kbd if kbd is not None else keyboard.NullKeyboard()
        self._clock = clock

        self._state = SessionState.CONNECTING
        self._quit_event = threading.Event()  # Set from signal handlers; also cuts reset holds short.
        self._next_reconnect = 0.0
        self._line_buffer = LineBuffer(self.get_conf("monitor.line.timeout") / 1000.0)
        self._reset_sequence = chips.reset_sequence(self.get_conf("monitor.chip"))

        if self.get_conf("monitor.verbose"):
            self.verboseprint = self._verbose_print
        else:
            self.verboseprint = term.silent

    def get_conf(self, key):
        if key not in _mon_conf_keys:
            raise KeyError("Not a valid conf key: %s" % key)
        return self._config[key]

    def msg_q(self, color, *args):
        """
        Enqueue a msg for printing to the console. Adds the stringified message and color/priority
        level to the print queue.
        """
        def _str_fn(x):
            if isinstance(x, str):
                return x
            else:
                return repr(x)

        msg_str = "".join(list(map(_str_fn, args)))
        self._print_q.put((msg_str, color))

    def _verbose_print(self, *args):
        self.msg_q(MsgLevel.DEBUG, *args)

    @property
    def state(self):
        return self._state

    def request_quit(self):
        """
        Ask the loop to shut down at its next tick. Safe to call from a signal handler or
        another thread.
        """
        self._quit_event.set()

    ###### Output

    def _display(self, line):
        self._print_q.put((self._annotator.annotate(line), MsgLevel.DEVICE))

    def _flush_partial(self):
        """
        Print any buffered partial line as-is; never drop it and never stitch it to data
        that arrives after a discontinuity.
        """
        if self._line_buffer.has_partial():
            self._display(self._line_buffer.flush())
        else:
            self._line_buffer.clear()

    ###### Serial side

    def _poll_timeout(self):
        return self.get_conf("monitor.poll.timeout") / 1000.0

    def _service_serial(self):
        """
        Read one chunk (waiting up to the poll timeout), then drain whatever else is
        already available, printing every completed line.
        """
        try:
            data = self._conn.read_chunk(self._poll_timeout())
            while data:
                for line in self._line_buffer.feed(data, self._clock()):
                    self._display(line)
                if not self._conn.available():
                    break
                data = self._conn.read_chunk(0)
        except io.DisconnectedError as e:
            self._on_disconnect(e)
            return

        if self._line_buffer.expired(self._clock()):
            self._display(self._line_buffer.flush())

    def _on_disconnect(self, err):
        self.msg_q(MsgLevel.WARN, f"Device disconnected: {err}")
        self._flush_partial()
        self._state = SessionState.DISCONNECTED
        self._next_reconnect = self._clock() + self.get_conf("monitor.reconnect.interval") / 1000.0
        self.msg_q(MsgLevel.INFO, f"Waiting for {self._conn.port} to come back...")

    def _try_reconnect(self):
        now = self._clock()
        if now < self._next_reconnect:
            return

        try:
            self._conn.reopen()
        except (io.PortNotFoundError, io.PortUnavailableError) as e:
            self.verboseprint(f"Reconnect failed: {e}")
            self._next_reconnect = now + self.get_conf("monitor.reconnect.interval") / 1000.0
            return

        self._line_buffer.clear()
        self._state = SessionState.RUNNING
        self.msg_q(MsgLevel.SUCCESS, f"Reconnected to {self._conn}.")

    def reset_device(self):
        """
        Flush pending output and run the chip's reset sequence.
        """
        if self._state != SessionState.RUNNING:
            self.msg_q(MsgLevel.WARN, "Device is not connected; cannot reset.")
            return

        self._state = SessionState.RESETTING
        self._flush_partial()
        self.msg_q(MsgLevel.INFO, "Resetting device...")
        try:
            self._conn.reset(self._reset_sequence, cancel=self._quit_event)
        except io.DisconnectedError as e:
            self._on_disconnect(e)
            return

        self._state = SessionState.RUNNING
        self.verboseprint("Reset sequence complete.")

    ###### Keyboard side

    def _dispatch(self, cmd):
        if cmd.kind == keyboard.ControlCommand.QUIT:
            self._state = SessionState.CLOSING
        elif cmd.kind == keyboard.ControlCommand.RESET:
            self.reset_device()
        elif cmd.kind == keyboard.ControlCommand.PASSTHROUGH:
            if self.get_conf("monitor.forward_input") and self._state == SessionState.RUNNING:
                try:
                    self._conn.write(cmd.byte)
                except io.DisconnectedError as e:
                    self._on_disconnect(e)

    ###### Lifecycle

    def open(self):
        """
        Open the port for the first time.

        @throws io.SerialSessionError if the port can't be opened; the session is terminated.
        """
        self._state = SessionState.CONNECTING
        self.msg_q(MsgLevel.INFO, f"Opening {self._conn.port} with speed {self._conn.baud_rate}")
        try:
            self._conn.open()
        except io.SerialSessionError:
            self._state = SessionState.TERMINATED
            raise

        self._state = SessionState.RUNNING
        self.msg_q(MsgLevel.SUCCESS, "Connected.")
        if self._kbd.interactive:
            self.msg_q(MsgLevel.INFO, keyboard.HELP_TEXT)

    def tick(self):
        """
        One pass of the loop: drain serial output first, then act on keyboard commands.
        """
        if self._quit_event.is_set():
            self._state = SessionState.CLOSING
            return

        if self._state == SessionState.DISCONNECTED:
            self._try_reconnect()
            commands = self._kbd.poll(self._poll_timeout())
        else:
            self._service_serial()
            commands = self._kbd.poll(0)

        for cmd in commands:
            self._dispatch(cmd)
            if self._state == SessionState.CLOSING:
                break

    def loop(self):
        """
            The actual main loop.

            Returns the exit status for the program. (0 for success)
        """
        if self._state != SessionState.RUNNING:
            self.open()

        if self.get_conf("monitor.reset"):
            self.reset_device()

        try:
            while self._state not in (SessionState.CLOSING, SessionState.TERMINATED):
                self.tick()
        finally:
            self.close()

        return 0

    def close(self):
        """
        Flush any partial line and release the port.
        """
        if self._state == SessionState.TERMINATED:
            return
        self._state = SessionState.CLOSING
        self._flush_partial()
        self._conn.close()
        self._state = SessionState.TERMINATED
