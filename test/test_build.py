#!/usr/bin/env python3
# (c) Copyright 2022 Aaron Kimball

import os
import sys
import tempfile
import unittest

import espmon.build as build
from espmon.chips import Chip, Framework
import espmon.term as term


class TestBuildHook(unittest.TestCase):
    """
    Running the pre-session build command.
    """

    @classmethod
    def setUpClass(cls):
        cls.console_printer = term.NullPrinter()
        cls.console_printer.start()

    @classmethod
    def tearDownClass(cls):
        cls.console_printer.shutdown()

    def test_success(self):
        self.assertTrue(build.run_build_hook([sys.executable, '-c', 'pass'],
                                             self.console_printer.print_q))

    def test_failure(self):
        self.assertFalse(build.run_build_hook([sys.executable, '-c', 'raise SystemExit(3)'],
                                              self.console_printer.print_q))

    def test_missing_program(self):
        self.assertFalse(build.run_build_hook(['espmon-no-such-build-tool'],
                                              self.console_printer.print_q))

    def test_empty_command(self):
        with self.assertRaises(build.BuildError):
            build.run_build_hook('', self.console_printer.print_q)

    def test_runs_in_directory(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            script = "open('built.txt', 'w').close()"
            self.assertTrue(build.run_build_hook([sys.executable, '-c', script],
                                                 self.console_printer.print_q, cwd=tmpdir))
            self.assertTrue(os.path.exists(os.path.join(tmpdir, 'built.txt')))


class TestCargo(unittest.TestCase):
    """
    cargo build commands and artifact paths.
    """

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.project = self.tmpdir.name

    def tearDown(self):
        self.tmpdir.cleanup()

    def _write_manifest(self, text):
        with open(os.path.join(self.project, 'Cargo.toml'), 'w') as f:
            f.write(text)

    def test_build_command(self):
        self.assertEqual(build.cargo_build_command(Chip.ESP32, Framework.BAREMETAL),
                         ['cargo', 'build', '--target', 'xtensa-esp32-none-elf'])
        self.assertEqual(build.cargo_build_command(Chip.ESP32C3, Framework.ESP_IDF, release=True,
                                                   example='blinky'),
                         ['cargo', 'build', '--release', '--example', 'blinky',
                          '--target', 'riscv32imc-esp-espidf'])

    def test_artifact_path(self):
        self._write_manifest('[package]\nname = "firmware"\nversion = "0.1.0"\n')
        self.assertEqual(
            build.cargo_artifact(Chip.ESP32, Framework.BAREMETAL, project_dir=self.project),
            os.path.join(self.project, 'target', 'xtensa-esp32-none-elf', 'debug', 'firmware'))
        self.assertEqual(
            build.cargo_artifact(Chip.ESP8266, Framework.BAREMETAL, release=True,
                                 project_dir=self.project),
            os.path.join(self.project, 'target', 'xtensa-esp8266-none-elf', 'release', 'firmware'))

    def test_example_artifact_path(self):
        # Examples don't need the package name.
        self.assertEqual(
            build.cargo_artifact(Chip.ESP32S2, Framework.ESP_IDF, example='hello',
                                 project_dir=self.project),
            os.path.join(self.project, 'target', 'xtensa-esp32s2-espidf', 'debug',
                         'examples', 'hello'))

    def test_manifest_errors(self):
        with self.assertRaises(build.BuildError):
            build.cargo_package_name(self.project)  # No Cargo.toml.

        self._write_manifest('[workspace]\nmembers = ["a"]\n')
        with self.assertRaises(build.BuildError):
            build.cargo_package_name(self.project)

        self._write_manifest('[package\nname = \n')
        with self.assertRaises(build.BuildError):
            build.cargo_package_name(self.project)


if __name__ == "__main__":
    unittest.main(verbosity=2)
