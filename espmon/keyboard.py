# (c) Copyright 2022 Aaron Kimball
#
# Keyboard control for the monitor: raw-mode key reads with a bounded wait, and
# translation of keys into control commands.

import os
import sys
import time

CTRL_C = 0x03
CTRL_R = 0x12
CTRL_RBRACKET = 0x1d


class ControlCommand(object):
    """
    A command from the keyboard: RESET, QUIT, or PASSTHROUGH of a literal byte.
    """
    RESET = 'reset'
    QUIT = 'quit'
    PASSTHROUGH = 'passthrough'

    __slots__ = ('kind', 'byte')

    def __init__(self, kind, byte=None):
        self.kind = kind
        self.byte = byte

    def __eq__(self, other):
        if not isinstance(other, ControlCommand):
            return NotImplemented
        return self.kind == other.kind and self.byte == other.byte

    def __hash__(self):
        return hash((self.kind, self.byte))

    def __repr__(self):
        if self.kind == ControlCommand.PASSTHROUGH:
            return f'Passthrough({self.byte!r})'
        return self.kind.capitalize()


Reset = ControlCommand(ControlCommand.RESET)
Quit = ControlCommand(ControlCommand.QUIT)


def Passthrough(byte):
    return ControlCommand(ControlCommand.PASSTHROUGH, bytes([byte]))


# Keys bound to commands; anything else is passed through.
KEY_BINDINGS = {
    CTRL_R: Reset,
    CTRL_C: Quit,
    CTRL_RBRACKET: Quit,
}

HELP_TEXT = "Press Ctrl-R to reset the device, Ctrl-C or Ctrl-] to quit."


def translate_keys(data):
    """
    Translate raw key bytes into a list of ControlCommands. Empty input means stdin hit
    end-of-file, which quits.
    """
    if len(data) == 0:
        return [Quit]
    return [KEY_BINDINGS.get(b, None) or Passthrough(b) for b in data]


class NullKeyboard(object):
    """
    Used when stdin is not a terminal: never produces commands.
    """

    interactive = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def poll(self, timeout):
        if timeout > 0:
            time.sleep(timeout)
        return []


class _PosixKeyboard(object):
    """
    Hold the controlling tty in raw mode (so ^C arrives as a byte rather than SIGINT)
    and poll it with select().
    """

    interactive = True

    def __init__(self, fd):
        self._fd = fd
        self._old_term = None

    def __enter__(self):
        import termios
        import tty
        self._old_term = termios.tcgetattr(self._fd)
        tty.setraw(self._fd)
        return self

    def __exit__(self, *exc):
        import termios
        if self._old_term is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._old_term)
            self._old_term = None
        return False

    def poll(self, timeout):
        import select
        ready, _, _ = select.select([self._fd], [], [], timeout)
        if not ready:
            return []
        return translate_keys(os.read(self._fd, 32))


class _WindowsKeyboard(object):
    """
    Poll the console with msvcrt.
    """

    interactive = True
    POLL_INTERVAL = 0.01

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def poll(self, timeout):
        import msvcrt
        deadline = time.monotonic() + timeout
        while not msvcrt.kbhit():
            if time.monotonic() >= deadline:
                return []
            time.sleep(self.POLL_INTERVAL)

        data = bytearray()
        while msvcrt.kbhit():
            ch = msvcrt.getch()
            if ch in (b'\x00', b'\xe0'):
                msvcrt.getch()  # Discard the scan code of an arrow/function key.
                continue
            data.extend(ch)
        if not data:
            return []
        return translate_keys(bytes(data))


def open_keyboard(stdin=None):
    """
    Return a keyboard context manager for stdin; a NullKeyboard if stdin isn't a tty.
    """
    stdin = stdin or sys.stdin
    try:
        is_tty = stdin.isatty()
    except (AttributeError, ValueError):
        is_tty = False

    if not is_tty:
        return NullKeyboard()
    elif os.name == 'nt':
        return _WindowsKeyboard()
    else:
        return _PosixKeyboard(stdin.fileno())
