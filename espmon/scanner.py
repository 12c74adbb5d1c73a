# (c) Copyright 2022 Aaron Kimball
#
# Find hexadecimal address tokens ('0x4008a123') in lines of device output.

import re

# '0x' plus 1--16 hex digits. The token may not be glued to a preceding or following
# word character, so hex dumps ('00x12', '0x1234zz') and over-long literals never match.
_ADDR_REGEX = re.compile(r'(?<![0-9A-Za-z_])0x([0-9a-fA-F]{1,16})(?![0-9A-Za-z_])')


class AddressMatch(object):
    """
    One address token found within a line.

    span is the (start, end) character offset of raw_text within the scanned line.
    """

    __slots__ = ('raw_text', 'parsed_value', 'span')

    def __init__(self, raw_text, parsed_value, span):
        self.raw_text = raw_text
        self.parsed_value = parsed_value
        self.span = span

    def __eq__(self, other):
        if not isinstance(other, AddressMatch):
            return NotImplemented
        return (self.raw_text, self.parsed_value, self.span) == \
            (other.raw_text, other.parsed_value, other.span)

    def __repr__(self):
        return f'AddressMatch({self.raw_text!r}, {self.parsed_value:#x}, {self.span})'


def scan(line):
    """
    Yield AddressMatch objects for each address token in line, left to right.
    """
    for m in _ADDR_REGEX.finditer(line):
        yield AddressMatch(m.group(0), int(m.group(1), 16), m.span())
