# (c) Copyright 2021 Aaron Kimball

import argparse
import os.path
import signal
import sys

from .annotate import Annotator
from .monitor import Monitor
from .symbol import SymbolTable, ImageUnreadableError, InvalidImageError
from .term import ConsolePrinter, MsgLevel
from .version import MON_VERSION_STR, FULL_MON_VERSION_STR
import espmon.build as build
import espmon.chips as chips
import espmon.io as io
import espmon.keyboard as keyboard
import espmon.monitor as monitor
import espmon.term as term

__version__ = MON_VERSION_STR

# Process exit status codes.
EXIT_OK = 0
EXIT_ERROR = 1          # Unexpected failure.
EXIT_USAGE = 2          # Invalid argument or configuration value (including the baud rate).
EXIT_PORT = 3           # Serial port not found or could not be opened at startup.
EXIT_IMAGE = 4          # Firmware image exists but can't be read.
EXIT_BUILD = 5          # Pre-session build failed.


def _parseArgs(argv):
    parser = argparse.ArgumentParser(prog="espmon",
                                     description="Serial monitor for ESP32/ESP8266 firmware that "
                                     "annotates code addresses with function names and source lines")
    parser.add_argument("serial", metavar="SERIAL_DEVICE", help="Path to the serial device")
    parser.add_argument("-s", "--speed", type=int, metavar="BAUD",
                        help="Baud rate of the serial device (default: 115200)")
    parser.add_argument("-b", "--bin", metavar="ELF", help="Firmware image used to resolve addresses")

    reset_group = parser.add_mutually_exclusive_group()
    reset_group.add_argument("-r", "--reset", dest="reset", action="store_true", default=None,
                             help="Reset the chip on start (default)")
    reset_group.add_argument("--no-reset", dest="reset", action="store_false",
                             help="Do not reset the chip on start")

    parser.add_argument("--chip", type=str.lower, choices=chips.Chip.ALL,
                        help="Which chip family the device is (default: esp32)")
    parser.add_argument("--framework", type=str.lower, choices=["baremetal", "esp-idf", "espidf"],
                        help="Firmware framework, used for the cargo build target")
    parser.add_argument("--mark-unresolved", action="store_true", default=None,
                        help="Mark addresses with no known symbol as <??>")
    parser.add_argument("--forward-input", action="store_true", default=None,
                        help="Send typed keys (other than control keys) to the device")
    parser.add_argument("--build-cmd", metavar="CMD", help="Command to run before the session starts")

    cargo_group = parser.add_argument_group("cargo projects")
    cargo_group.add_argument("--cargo", action="store_true",
                             help="Build with cargo and monitor the resulting firmware image")
    cargo_group.add_argument("--release", action="store_true", help="Use the release build")
    cargo_group.add_argument("--example", metavar="NAME", help="Use the named example app binary")
    cargo_group.add_argument("--project", metavar="DIR", default=".",
                             help="Directory holding Cargo.toml (default: current directory)")

    parser.add_argument("--config", metavar="FILE", help="Read settings from FILE instead of ~/.espmon.conf")
    parser.add_argument("--no-config", action="store_true", help="Ignore the settings file")
    parser.add_argument("--no-color", action="store_true", help="Disable colored status messages")
    parser.add_argument("-v", "--verbose", action="store_true", default=None)
    parser.add_argument("--version", action="version", version=FULL_MON_VERSION_STR)

    return parser.parse_args(argv)


def _conf_overrides(args):
    """
    Config values set on the command line; None means "not given".
    """
    framework = None
    if args.framework:
        framework = chips.Framework.parse(args.framework)

    return {
        "monitor.baud": args.speed,
        "monitor.chip": args.chip,
        "monitor.colors": False if args.no_color else None,
        "monitor.forward_input": args.forward_input,
        "monitor.framework": framework,
        "monitor.mark_unresolved": args.mark_unresolved,
        "monitor.reset": args.reset,
        "monitor.verbose": args.verbose,
    }


def _make_verboseprint(print_q, verbose):
    if not verbose:
        return term.silent

    def _verboseprint(*args):
        print_q.put(("".join(map(str, args)), MsgLevel.DEBUG))

    return _verboseprint


def _install_signal_handlers(mon):
    """
    Route SIGINT/SIGTERM to a clean shutdown of the monitor. Returns the previous handlers.
    """
    def _handler(signum, frame):
        mon.request_quit()

    old_handlers = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        old_handlers[sig] = signal.signal(sig, _handler)
    return old_handlers


def _restore_signal_handlers(old_handlers):
    for (sig, handler) in old_handlers.items():
        signal.signal(sig, handler)


def _load_symbols(elf_name, print_q, verboseprint):
    """
    Return the SymbolTable for the firmware image, or an empty one if there's no usable image.

    @throws ImageUnreadableError if the image exists but can't be opened.
    """
    if elf_name is None:
        return SymbolTable()

    if not os.path.exists(elf_name):
        print_q.put((f"Warning: firmware image {elf_name} does not exist (you may need to build it); "
                     "addresses will not be annotated.", MsgLevel.WARN))
        return SymbolTable()

    try:
        return SymbolTable.load(elf_name, verboseprint)
    except InvalidImageError as e:
        print_q.put((f"Warning: {e}; addresses will not be annotated.", MsgLevel.WARN))
        return SymbolTable()


def run(args, console_printer):
    """
    Run a monitor session for the parsed command line. Returns the exit status.
    """
    print_q = console_printer.print_q

    if args.config and not args.no_config and not os.path.exists(args.config):
        print_q.put((f"Error: config file {args.config} does not exist", MsgLevel.ERR))
        return EXIT_USAGE

    try:
        config = monitor.load_config(print_q, '' if args.no_config else args.config,
                                     _conf_overrides(args))
        chip = chips.Chip.parse(config["monitor.chip"])
        framework = chips.Framework.parse(config["monitor.framework"])
    except (ValueError, AttributeError) as e:
        print_q.put((f"Error: {e}", MsgLevel.ERR))
        return EXIT_USAGE
    config["monitor.chip"] = chip
    config["monitor.framework"] = framework

    term.set_use_colors(bool(config["monitor.colors"]) and sys.stdout.isatty())
    verboseprint = _make_verboseprint(print_q, config["monitor.verbose"])

    elf_name = args.bin
    build_cmd = args.build_cmd
    build_dir = None
    if args.cargo:
        try:
            if build_cmd is None:
                build_cmd = build.cargo_build_command(chip, framework, args.release, args.example)
            if elf_name is None:
                elf_name = build.cargo_artifact(chip, framework, args.release, args.example,
                                                args.project)
        except ValueError as e:
            print_q.put((f"Error: {e}", MsgLevel.ERR))
            return EXIT_USAGE
        except build.BuildError as e:
            print_q.put((f"Error: {e}", MsgLevel.ERR))
            return EXIT_BUILD
        build_dir = args.project
        verboseprint(f"Firmware image: {elf_name}")

    if build_cmd:
        try:
            built = build.run_build_hook(build_cmd, print_q, cwd=build_dir)
        except build.BuildError as e:
            print_q.put((f"Error: {e}", MsgLevel.ERR))
            built = False
        if not built:
            return EXIT_BUILD

    try:
        table = _load_symbols(elf_name, print_q, verboseprint)
    except ImageUnreadableError as e:
        print_q.put((f"Error: {e}", MsgLevel.ERR))
        return EXIT_IMAGE

    try:
        conn = io.SerialConn(args.serial, config["monitor.baud"],
                             config["monitor.poll.timeout"] / 1000.0)
    except io.InvalidBaudError as e:
        print_q.put((f"Error: {e}", MsgLevel.ERR))
        return EXIT_USAGE

    annotator = Annotator(table, bool(config["monitor.mark_unresolved"]))
    with keyboard.open_keyboard() as kbd:
        console_printer.join_q()
        console_printer.set_raw_mode(kbd.interactive)
        mon = Monitor(conn, annotator, print_q, config, kbd)
        old_handlers = _install_signal_handlers(mon)
        try:
            return mon.loop()
        except io.InvalidBaudError as e:
            print_q.put((f"Error: {e}", MsgLevel.ERR))
            return EXIT_USAGE
        except (io.PortNotFoundError, io.PortUnavailableError) as e:
            print_q.put((f"Error: {e}", MsgLevel.ERR))
            return EXIT_PORT
        finally:
            _restore_signal_handlers(old_handlers)
            console_printer.join_q()
            console_printer.set_raw_mode(False)


def main(argv=None):
    args = _parseArgs(argv)

    console_printer = ConsolePrinter()
    console_printer.start()
    try:
        return run(args, console_printer)
    finally:
        console_printer.shutdown()


def console_main():
    sys.exit(main())
