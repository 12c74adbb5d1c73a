# (c) Copyright 2021 Aaron Kimball
#
# Methods that pipe out to programs included in gnu binutils (c++filt).

import functools
import locale
import re
import subprocess

# undesirable suffixes on demangled names
_clone_regex = re.compile(r'\[clone \.[A-Za-z_]+.*\]$')

# Itanium C++ ABI mangled names start with '_Z'.
_MANGLED_PREFIX = '_Z'


def is_mangled(name):
    return name is not None and name.startswith(_MANGLED_PREFIX)


@functools.lru_cache(maxsize=1024)
def demangle(name):
    """
        Use c++filt in binutils to demangle a C++ name into a human-readable one.

        Names that are not mangled are returned as-is without spawning c++filt. If
        c++filt is not installed, the raw name is returned.
    """
    if name is None:
        return None
    if not is_mangled(name):
        return name

    args = ['c++filt', name]
    try:
        pipe = subprocess.Popen(args, stdin=None, stdout=subprocess.PIPE,
                                encoding=locale.getpreferredencoding())
    except OSError:
        return name
    stdout, _ = pipe.communicate()
    demangled_list = stdout.split("\n")
    demangled = demangled_list[0].strip()
    if len(demangled) == 0:
        return name

    # Remove any '[clone .constprop.NN]', etc suffixes.
    demangled = _clone_regex.sub('', demangled).strip()
    return demangled
