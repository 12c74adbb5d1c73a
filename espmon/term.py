# (c) Copyright 2022 Aaron Kimball
#
# Methods and constants for working with the terminal and VT100 emulation.

import queue
import sys
import threading

# Change this flag to enable/disable color formatting.
enable_colors = True

COLOR_WHITE     = '\033[0m'

COLOR_GRAY      = '\033[90m'
COLOR_RED       = '\033[91m'
COLOR_GREEN     = '\033[92m'
COLOR_YELLOW    = '\033[93m'

INFO      = COLOR_WHITE
SUCCESS   = COLOR_GREEN
WARN      = COLOR_YELLOW
ERR       = COLOR_RED

COLOR_OFF = COLOR_WHITE # Normal white on black


def use_colors():
    """
    Return true if we should use color in formatting output.
    """
    return enable_colors

def silent(*args):
    """
        dummy method to turn verboseprint() calls to nothing
    """
    pass

def set_use_colors(do_use_colors):
    global enable_colors
    enable_colors = do_use_colors

def fmt(text, color_code=None):
    """
    Return a string wrapped in the codes to enable a certain color, if use_colors is active.
    """
    if use_colors() and color_code is not None:
        return f'{color_code}{text}{COLOR_OFF}'
    else:
        return text


class MsgLevel(object):
    """
    Priority level codes for messages submitted to ConsolePrinter; used to colorize
    messages appropriately.
    """
    INFO        = 0         # Standard message
    DEVICE      = 1         # Line received from the device (annotated)
    WARN        = 2         # Warnings
    ERR         = 3         # Errors
    DEBUG       = 4         # verboseprint() info from the monitor.
    SUCCESS     = 5         # Successful.

    @staticmethod
    def color_for_msg(msg_level):
        """
        Return a term color for the message level.
        """
        if msg_level is None:
            return INFO

        if msg_level == MsgLevel.INFO:
            return INFO
        elif msg_level == MsgLevel.DEVICE:
            return None     # Device output is shown exactly as received.
        elif msg_level == MsgLevel.WARN:
            return WARN
        elif msg_level == MsgLevel.ERR:
            return ERR
        elif msg_level == MsgLevel.DEBUG:
            return COLOR_GRAY
        elif msg_level == MsgLevel.SUCCESS:
            return SUCCESS
        else:
            return INFO


class ConsolePrinter(object):
    """
    Monitor that creates a queue of things to print to the console.
    Other threads may enqueue new text lines for printing; this thread is the only
    writer to stdout, so device output and status messages never interleave mid-line.

    While the keyboard reader holds the terminal in raw mode, the tty does not translate
    '\\n' into a carriage return, so lines are terminated with '\\r\\n' instead.
    """

    TIMEOUT = 0.250 # Blink when reading the queue every 250ms.

    def __init__(self, stream=None):
        self.print_q = queue.Queue(maxsize=16)
        self._stream = stream or sys.stdout
        self._alive = True
        self._raw_mode = False
        self._thread = threading.Thread(target=self.service, name='Console print thread')

    def start(self):
        self._thread.start()

    def shutdown(self):
        """
        Print anything still enqueued and stop the print thread.
        """
        if self._thread.is_alive():
            self.join_q()
        self._alive = False
        if self._thread.is_alive():
            self._thread.join()

    def set_raw_mode(self, raw_mode):
        """
        Set to True while the terminal is in raw mode so that line endings include '\\r'.
        """
        self._raw_mode = raw_mode

    def join_q(self):
        """
        Wait for any pending items to be printed and drained from the queue.
        """
        self.print_q.join()

    def format_line(self, textline, prio):
        textline = fmt(textline, MsgLevel.color_for_msg(prio))
        if self._raw_mode:
            return f'{textline}\r\n'
        return f'{textline}\n'

    def service(self):
        """
        Main service loop for thread. Receive lines to print and print them to stdout.
        """
        while self._alive:
            try:
                (textline, prio) = self.print_q.get(block=True, timeout=ConsolePrinter.TIMEOUT)
            except queue.Empty:
                continue

            try:
                self._stream.write(self.format_line(textline, prio))
                self._stream.flush()
            finally:
                self.print_q.task_done()


class NullPrinter(ConsolePrinter):
    """
    ConsolePrinter implementation that just silently consumes all text it receives.
    """

    def __init__(self):
        super().__init__()

    def service(self):
        while self._alive:
            try:
                (textline, prio) = self.print_q.get(block=True, timeout=ConsolePrinter.TIMEOUT)
            except queue.Empty:
                continue

            self.print_q.task_done()
