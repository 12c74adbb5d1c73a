# (c) Copyright 2022 Aaron Kimball
#
# Append '<function at file:line>' after each address in a line of device output.

import espmon.scanner as scanner

UNRESOLVED = '<??>'


def _annotation_for(entry, mark_unresolved):
    if entry is not None:
        return f' <{entry.describe()}>'
    elif mark_unresolved:
        return f' {UNRESOLVED}'
    return None


def annotate(line, table, mark_unresolved=False):
    """
    Return `line` with the symbol for each recognized address inserted right after it.

    The address tokens themselves are never modified, and an address already followed by
    its annotation is left alone. Insertions are computed against the
    original offsets and spliced in from right to left, so earlier offsets stay valid.
    """
    insertions = []
    for match in scanner.scan(line):
        text = _annotation_for(table.lookup(match.parsed_value), mark_unresolved)
        if text is None or line.startswith(text, match.span[1]):
            continue  # Nothing to add, or this address already carries its annotation.
        insertions.append((match.span[1], text))

    if not insertions:
        return line

    out = line
    for (offset, text) in reversed(insertions):
        out = out[:offset] + text + out[offset:]
    return out


class Annotator(object):
    """
    Binds a SymbolTable and the unresolved-address policy for use by the monitor loop.
    """

    def __init__(self, table, mark_unresolved=False):
        self._table = table
        self.mark_unresolved = mark_unresolved

    @property
    def table(self):
        return self._table

    def is_active(self):
        """ True if annotation can change a line at all. """
        return len(self._table) > 0 or self.mark_unresolved

    def annotate(self, line):
        if not self.is_active():
            return line
        return annotate(line, self._table, self.mark_unresolved)
