# (c) Copyright 2022 Aaron Kimball
#
# Address -> function/source line table, built once from the firmware ELF's
# .debug_info, .debug_line and .symtab sections.

import heapq
import os.path
import time

from elftools.elf.elffile import ELFFile
from sortedcontainers import SortedDict

import espmon.binutils as binutils
import espmon.term as term


class ImageUnreadableError(Exception):
    """ The firmware image file could not be opened at all. """
    pass


class InvalidImageError(Exception):
    """ The firmware image is not a readable ELF or its debug info is malformed. """
    pass


class SymbolEntry(object):
    """
    A single resolvable address range: [start_address, start_address + size) belongs
    to the function `name`, compiled from `file`:`line` (if known).

    Entries are immutable once created.
    """

    __slots__ = ('_start', '_size', '_name', '_file', '_line')

    def __init__(self, start_address, size, name, file=None, line=None):
        self._start = start_address
        self._size = size
        self._name = name
        self._file = file
        self._line = line

    @property
    def start_address(self):
        return self._start

    @property
    def size(self):
        return self._size

    @property
    def end_address(self):
        return self._start + self._size

    @property
    def name(self):
        return self._name

    @property
    def file(self):
        return self._file

    @property
    def line(self):
        return self._line

    @property
    def demangled(self):
        return binutils.demangle(self._name)

    def contains(self, addr):
        if self._size == 0:
            return addr == self._start
        return self._start <= addr < self._start + self._size

    def describe(self):
        """
        Return 'name at file:line', or just 'name' if the source position is unknown.
        """
        if self._file is not None and self._line is not None:
            return f'{self.demangled} at {self._file}:{self._line}'
        return self.demangled

    def __eq__(self, other):
        if not isinstance(other, SymbolEntry):
            return NotImplemented
        return (self._start, self._size, self._name, self._file, self._line) == \
            (other._start, other._size, other._name, other._file, other._line)

    def __hash__(self):
        return hash((self._start, self._size, self._name, self._file, self._line))

    def __repr__(self):
        s = f'{self._name} @ {self._start:04x} <len={self._size}>'
        if self._file is not None:
            s += f' {self._file}:{self._line}'
        return s


class _FuncRecord(object):
    """
    A function range pulled from the image before overlaps are resolved.
    """

    # Records from .debug_info win ties against .symtab records of the same size.
    PRIO_DWARF = 0
    PRIO_SYMTAB = 1

    def __init__(self, start, size, name, prio, order):
        if size <= 0:
            size = 1  # No known extent; resolvable at its exact entry address only.
        self.start = start
        self.end = start + size
        self.name = name
        self.prio = prio
        self.order = order

    def heap_key(self):
        # Tightest range first; then .debug_info over .symtab; then first-seen.
        return (self.end - self.start, self.prio, self.order)


def _flatten_ranges(records):
    """
    Resolve overlapping function ranges so that each address is owned by the tightest
    (smallest) range enclosing it.

    Returns (segments, overlap_count) where segments is an address-ordered list of
    non-overlapping (start, end, record) tuples.
    """
    if not records:
        return [], 0

    records = sorted(records, key=lambda r: (r.start, r.order))
    boundaries = sorted(set([r.start for r in records] + [r.end for r in records]))

    segments = []
    active = []  # heap of (heap_key, record)
    overlaps = 0
    next_rec = 0
    for i in range(0, len(boundaries) - 1):
        point = boundaries[i]

        while active and active[0][1].end <= point:
            heapq.heappop(active)  # Top-most range has ended.

        while next_rec < len(records) and records[next_rec].start == point:
            rec = records[next_rec]
            if active:
                # Expired ranges were popped above, so the top is still live.
                overlaps += 1
            heapq.heappush(active, (rec.heap_key(), rec))
            next_rec += 1

        if not active:
            continue

        owner = active[0][1]
        seg_end = boundaries[i + 1]
        if segments and segments[-1][2] is owner and segments[-1][1] == point:
            # Extend the previous segment owned by the same function.
            segments[-1] = (segments[-1][0], seg_end, owner)
        else:
            segments.append((point, seg_end, owner))

    return segments, overlaps


class SymbolTable(object):
    """
    Read-only, address-ordered collection of SymbolEntry records.

    Build with SymbolTable.load(elf_filename), or directly from an iterable of entries
    (which may overlap; overlaps are resolved to the tightest enclosing range).
    """

    def __init__(self, entries=()):
        records = []
        for (i, entry) in enumerate(entries):
            records.append((_FuncRecord(entry.start_address, entry.size, entry.name,
                                        _FuncRecord.PRIO_DWARF, i), entry))

        by_record = dict((id(rec), entry) for (rec, entry) in records)
        segments, self.overlaps_resolved = _flatten_ranges([rec for (rec, _) in records])

        self._entries = SortedDict()
        for (start, end, rec) in segments:
            orig = by_record[id(rec)]
            if start == orig.start_address and end - start == max(orig.size, 1):
                entry = orig  # Not split; keep the original object.
            else:
                entry = SymbolEntry(start, end - start, orig.name, orig.file, orig.line)
            self._entries[start] = entry

    @classmethod
    def _from_flat_entries(cls, entries, overlaps_resolved=0):
        """
        Wrap an already non-overlapping, address-ordered list of entries.
        """
        table = cls.__new__(cls)
        table._entries = SortedDict()
        for entry in entries:
            table._entries[entry.start_address] = entry
        table.overlaps_resolved = overlaps_resolved
        return table

    @classmethod
    def load(cls, elf_name, verboseprint=term.silent):
        """
        Read the firmware image and build its symbol table.

        If elf_name is None, returns an empty table.

        @throws ImageUnreadableError if the file cannot be opened.
        @throws InvalidImageError if the file is not an ELF image or its debug info cannot be
            parsed.
        """
        if elf_name is None:
            return cls()

        start_time = time.time()
        try:
            elf_file_handle = open(elf_name, 'rb')
        except OSError as e:
            raise ImageUnreadableError(f'Cannot open firmware image {elf_name}: {e.strerror}') from e

        with elf_file_handle:
            try:
                loader = _ImageLoader(ELFFile(elf_file_handle), verboseprint)
                table = loader.build()
            except Exception as e:
                raise InvalidImageError(f'Cannot read debug info from {elf_name}: {e}') from e

        end_time = time.time()
        verboseprint(f'Loaded {len(table)} symbol ranges in {1000*(end_time - start_time):0.01f}ms.')
        return table

    def lookup(self, addr):
        """
        Return the SymbolEntry whose range contains addr, or None.
        """
        idx = self._entries.bisect_right(addr) - 1
        if idx < 0:
            return None

        entry = self._entries.peekitem(idx)[1]
        if entry.contains(addr):
            return entry
        return None

    def __len__(self):
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries.values())

    def __repr__(self):
        return f'SymbolTable<{len(self._entries)} entries>'


class _ImageLoader(object):
    """
    Collects function ranges and line rows from an opened ELFFile and merges them into a
    SymbolTable.
    """

    def __init__(self, elf, verboseprint=term.silent):
        self.elf = elf
        self.verboseprint = verboseprint
        self._records = []
        # address -> (file, line); None marks the end of a line-table sequence.
        self._line_rows = SortedDict()

    def _add_record(self, start, size, name, prio):
        self._records.append(_FuncRecord(start, size, name, prio, len(self._records)))

    def build(self):
        if self.elf.has_dwarf_info():
            dwarf_info = self.elf.get_dwarf_info()
            if dwarf_info.has_debug_info:
                self._read_debug_info(dwarf_info)
            else:
                # It was just an exception handler unwind table; no good.
                self.verboseprint("Warning: empty debug info in program binary.")
        else:
            self.verboseprint("Warning: no debug info in program binary.")

        self._read_symtab()

        segments, overlaps = _flatten_ranges(self._records)
        if overlaps:
            self.verboseprint(f'Resolved {overlaps} overlapping function ranges to the tightest range.')

        return SymbolTable._from_flat_entries(self._split_by_lines(segments), overlaps)

    ###### .debug_info / .debug_line

    def _read_debug_info(self, dwarf_info):
        range_lists = dwarf_info.range_lists()
        for compile_unit in dwarf_info.iter_CUs():
            top_die = compile_unit.get_top_DIE()
            cu_base = 0
            if 'DW_AT_low_pc' in top_die.attributes:
                cu_base = top_die.attributes['DW_AT_low_pc'].value

            for die in compile_unit.iter_DIEs():
                if die.tag == 'DW_TAG_subprogram':
                    self._read_subprogram(die, compile_unit, cu_base, range_lists)

            line_program = dwarf_info.line_program_for_CU(compile_unit)
            if line_program is not None:
                self._read_line_program(line_program)

    def _die_name(self, die):
        """
        Return the linkage (mangled) name or plain name of a subprogram, following
        DW_AT_specification / DW_AT_abstract_origin for out-of-line definitions.
        """
        seen = 0
        while die is not None and seen < 8:
            for attr_name in ('DW_AT_linkage_name', 'DW_AT_MIPS_linkage_name', 'DW_AT_name'):
                attr = die.attributes.get(attr_name)
                if attr is not None:
                    val = attr.value
                    if isinstance(val, bytes):
                        val = val.decode('utf-8', errors='replace')
                    return val

            next_die = None
            for ref_name in ('DW_AT_specification', 'DW_AT_abstract_origin'):
                if ref_name in die.attributes:
                    next_die = die.get_DIE_from_attribute(ref_name)
                    break
            die = next_die
            seen += 1

        return None

    def _read_subprogram(self, die, compile_unit, cu_base, range_lists):
        attrs = die.attributes
        name = self._die_name(die)
        if name is None:
            return

        if 'DW_AT_low_pc' in attrs:
            low_pc = attrs['DW_AT_low_pc'].value
            high_attr = attrs.get('DW_AT_high_pc')
            if high_attr is None:
                size = 0
            elif high_attr.form.startswith('DW_FORM_addr'):
                size = high_attr.value - low_pc  # DWARF 2/3: absolute address.
            else:
                size = high_attr.value  # DWARF 4+: offset from low_pc.
            self._add_record(low_pc, size, name, _FuncRecord.PRIO_DWARF)
        elif 'DW_AT_ranges' in attrs and range_lists is not None:
            ranges_attr = attrs['DW_AT_ranges']
            if ranges_attr.form == 'DW_FORM_rnglistx':
                # TODO(aaron): resolve DWARF 5 rnglistx indices through DW_AT_rnglists_base.
                return
            base = cu_base
            for r in range_lists.get_range_list_at_offset(ranges_attr.value, cu=compile_unit):
                if hasattr(r, 'base_address'):
                    base = r.base_address
                    continue
                if getattr(r, 'is_absolute', False):
                    begin, end = r.begin_offset, r.end_offset
                else:
                    begin, end = base + r.begin_offset, base + r.end_offset
                self._add_record(begin, end - begin, name, _FuncRecord.PRIO_DWARF)

    def _read_line_program(self, line_program):
        header = line_program.header
        file_entries = header['file_entry']
        # DWARF 5 file indices are 0-based; earlier versions are 1-based.
        file_index_base = 0 if header['version'] >= 5 else 1

        def _file_name(file_idx):
            idx = file_idx - file_index_base
            if idx < 0 or idx >= len(file_entries):
                return None
            name = file_entries[idx].name
            if isinstance(name, bytes):
                name = name.decode('utf-8', errors='replace')
            return os.path.basename(name)

        for entry in line_program.get_entries():
            state = entry.state
            if state is None:
                continue  # Opcode that doesn't emit a row.

            if state.end_sequence:
                if state.address not in self._line_rows:
                    self._line_rows[state.address] = None
            else:
                self._line_rows[state.address] = (_file_name(state.file), state.line)

    ###### .symtab

    def _read_symtab(self):
        syms = self.elf.get_section_by_name(".symtab")
        if syms is None:
            return

        dwarf_starts = set(rec.start for rec in self._records)
        is_thumb = self.elf['e_machine'] == 'EM_ARM'
        for sym in syms.iter_symbols():
            if sym.entry['st_info']['type'] != "STT_FUNC" or not sym.name:
                continue
            addr = sym.entry['st_value']
            if is_thumb:
                addr &= ~1  # Thumb function addresses carry the mode bit.
            if addr in dwarf_starts:
                continue  # Already described by .debug_info.
            self._add_record(addr, sym.entry['st_size'], sym.name, _FuncRecord.PRIO_SYMTAB)

    ###### merge

    def _line_at(self, addr):
        idx = self._line_rows.bisect_right(addr) - 1
        if idx < 0:
            return None
        return self._line_rows.peekitem(idx)[1]

    def _split_by_lines(self, segments):
        """
        Cut each function segment at line-row boundaries so every entry carries the
        source position in effect over its whole range.
        """
        entries = []
        for (start, end, rec) in segments:
            cuts = [start]
            cuts.extend(self._line_rows.irange(start, end, inclusive=(False, False)))
            cuts.append(end)

            for i in range(0, len(cuts) - 1):
                lo, hi = cuts[i], cuts[i + 1]
                pos = self._line_at(lo)
                if pos is None:
                    file, line = None, None
                else:
                    file, line = pos

                prev = entries[-1] if entries else None
                if prev is not None and prev.end_address == lo and prev.name == rec.name and \
                        prev.file == file and prev.line == line:
                    # Same function and source line as the previous piece; coalesce.
                    entries[-1] = SymbolEntry(prev.start_address, hi - prev.start_address,
                                              rec.name, file, line)
                else:
                    entries.append(SymbolEntry(lo, hi - lo, rec.name, file, line))

        return entries
