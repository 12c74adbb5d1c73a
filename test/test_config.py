#!/usr/bin/env python3
# (c) Copyright 2022 Aaron Kimball

import os
import queue
import tempfile
import unittest

import espmon.monitor as monitor
import espmon.serialize as serialize
from espmon.term import MsgLevel


class TestConfig(unittest.TestCase):
    """
    Loading ~/.espmon.conf-style config files and applying command-line overrides.
    """

    def setUp(self):
        self.print_q = queue.Queue()
        self.tmpdir = tempfile.TemporaryDirectory()
        self.conf_file = os.path.join(self.tmpdir.name, 'espmon.conf')

    def tearDown(self):
        self.tmpdir.cleanup()

    def _write_conf(self, text):
        with open(self.conf_file, 'w') as f:
            f.write(text)

    def _levels(self):
        levels = []
        while not self.print_q.empty():
            levels.append(self.print_q.get_nowait()[1])
        return levels

    def test_defaults(self):
        conf = monitor.load_config(self.print_q, '')
        self.assertEqual(conf, monitor.default_config())
        self.assertEqual(conf["monitor.baud"], 115200)
        self.assertEqual(conf["monitor.chip"], 'esp32')
        self.assertTrue(conf["monitor.reset"])
        self.assertFalse(conf["monitor.mark_unresolved"])
        self.assertFalse(conf["monitor.forward_input"])
        self.assertEqual(conf["monitor.line.timeout"], 5000)
        self.assertEqual(conf["monitor.reconnect.interval"], 1000)

    def test_missing_file_uses_defaults(self):
        conf = monitor.load_config(self.print_q, os.path.join(self.tmpdir.name, 'nope.conf'))
        self.assertEqual(conf, monitor.default_config())
        self.assertEqual(self._levels(), [])

    def test_load_file(self):
        self._write_conf("formatversion = 1\n"
                         "config = {\n"
                         "  'monitor.baud': 921600,\n"
                         "  'monitor.chip': 'esp32c3',\n"
                         "  'monitor.bogus': True,\n"
                         "}\n")
        conf = monitor.load_config(self.print_q, self.conf_file)
        self.assertEqual(conf["monitor.baud"], 921600)
        self.assertEqual(conf["monitor.chip"], 'esp32c3')
        self.assertNotIn("monitor.bogus", conf)
        self.assertEqual(conf["monitor.reset"], True)  # Untouched keys keep their defaults.
        self.assertEqual(self._levels(), [MsgLevel.WARN])

    def test_overrides(self):
        self._write_conf("formatversion = 1\nconfig = {'monitor.baud': 921600, 'monitor.reset': False}\n")
        conf = monitor.load_config(self.print_q, self.conf_file,
                                   {"monitor.baud": 9600, "monitor.reset": None})
        self.assertEqual(conf["monitor.baud"], 9600)
        self.assertEqual(conf["monitor.reset"], False)  # None means "not given".

        with self.assertRaises(KeyError):
            monitor.load_config(self.print_q, '', {"monitor.nonexistent": 1})

    def test_millisecond_settings_checked(self):
        for bad in ('50', None, True, -5):
            self._write_conf(f"formatversion = 1\nconfig = {{'monitor.poll.timeout': {bad!r}}}\n")
            with self.assertRaises(ValueError):
                monitor.load_config(self.print_q, self.conf_file)

        self._write_conf("formatversion = 1\nconfig = {'monitor.line.timeout': 0, 'monitor.poll.timeout': 12.5}\n")
        conf = monitor.load_config(self.print_q, self.conf_file)
        self.assertEqual(conf["monitor.line.timeout"], 0)
        self.assertEqual(conf["monitor.poll.timeout"], 12.5)

    def test_syntax_error(self):
        self._write_conf("config = {'monitor.baud': \n")
        conf = monitor.load_config(self.print_q, self.conf_file)
        self.assertEqual(conf, monitor.default_config())
        self.assertIn(MsgLevel.WARN, self._levels())

    def test_future_version(self):
        self._write_conf(f"formatversion = {serialize.MON_CONF_FMT_VERSION + 1}\n"
                         "config = {'monitor.baud': 921600}\n")
        conf = monitor.load_config(self.print_q, self.conf_file)
        self.assertEqual(conf["monitor.baud"], 115200)
        self.assertEqual(self._levels(), [MsgLevel.ERR])

    def test_not_a_dict(self):
        self._write_conf("formatversion = 1\nconfig = [1, 2, 3]\n")
        conf = serialize.load_config_file(self.print_q, self.conf_file, 'config', {'a': 1})
        self.assertEqual(conf, {'a': 1})
        self.assertEqual(self._levels(), [MsgLevel.ERR])


if __name__ == "__main__":
    unittest.main(verbosity=2)
