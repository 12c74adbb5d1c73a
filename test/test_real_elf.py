#!/usr/bin/env python3
# (c) Copyright 2022 Aaron Kimball

import os
import shutil
import subprocess
import tempfile
import unittest

from elftools.elf.elffile import ELFFile

from espmon.annotate import Annotator
from espmon.symbol import SymbolTable

# Line numbers below are 1-based positions in this source.
_FIXTURE_SRC = """\
static volatile int sink;

int helper(int x) {
    sink = x * 3;
    return sink + 1;
}

int main(void) {
    int total = 0;
    for (int i = 0; i < 4; i++) {
        total += helper(i);
    }
    return total == 0;
}
"""

_HELPER_LINES = range(3, 7)
_MAIN_LINES = range(8, 15)


def _find_compiler():
    for name in ('cc', 'gcc', 'clang'):
        path = shutil.which(name)
        if path:
            return path
    return None


class TestRealElf(unittest.TestCase):
    """
    Symbol loading from an image built by the host C compiler.
    """

    @classmethod
    def setUpClass(cls):
        compiler = _find_compiler()
        if compiler is None:
            raise unittest.SkipTest("No C compiler available")

        cls.tmpdir = tempfile.TemporaryDirectory()
        src = os.path.join(cls.tmpdir.name, 'fixture.c')
        cls.elf_name = os.path.join(cls.tmpdir.name, 'fixture')
        with open(src, 'w') as f:
            f.write(_FIXTURE_SRC)

        try:
            subprocess.run([compiler, '-g', '-O0', '-o', cls.elf_name, src],
                           cwd=cls.tmpdir.name, check=True,
                           stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=60)
        except (OSError, subprocess.SubprocessError):
            cls.tmpdir.cleanup()
            raise unittest.SkipTest("C compiler could not build the fixture image")

        with open(cls.elf_name, 'rb') as f:
            symtab = ELFFile(f).get_section_by_name('.symtab')
            if symtab is None:
                cls.tmpdir.cleanup()
                raise unittest.SkipTest("Fixture image has no .symtab")
            cls.addrs = {}
            for name in ('main', 'helper'):
                syms = symtab.get_symbol_by_name(name)
                if not syms:
                    cls.tmpdir.cleanup()
                    raise unittest.SkipTest(f"Fixture image has no '{name}' symbol")
                cls.addrs[name] = syms[0]['st_value']

        cls.table = SymbolTable.load(cls.elf_name)

    @classmethod
    def tearDownClass(cls):
        cls.tmpdir.cleanup()

    def _check_function(self, name, lines):
        addr = self.addrs[name]
        for at in (addr, addr + 1):
            entry = self.table.lookup(at)
            self.assertIsNotNone(entry, f"{name}+{at - addr:#x} did not resolve")
            self.assertEqual(entry.name, name)
            self.assertEqual(entry.file, 'fixture.c')
            self.assertIn(entry.line, lines)

    def test_main_resolves(self):
        self._check_function('main', _MAIN_LINES)

    def test_helper_resolves(self):
        self._check_function('helper', _HELPER_LINES)

    def test_functions_do_not_overlap(self):
        main_entry = self.table.lookup(self.addrs['main'])
        helper_entry = self.table.lookup(self.addrs['helper'])
        self.assertNotEqual(main_entry.name, helper_entry.name)
        self.assertFalse(main_entry.contains(self.addrs['helper']))

    def test_annotate_line(self):
        annotator = Annotator(self.table)
        line = f"Backtrace: {self.addrs['helper']:#010x}:0x3ffb1f50"
        annotated = annotator.annotate(line)
        self.assertIn('<helper at fixture.c:', annotated)


if __name__ == "__main__":
    unittest.main(verbosity=2)
