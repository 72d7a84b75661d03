"""Mach-O header and load command parsing for 64-bit ARM64 images."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Callable

from revoffsets.errors import UnsupportedFormat

MH_MAGIC_64 = 0xFEEDFACF
MH_CIGAM_64 = 0xCFFAEDFE
MH_MAGIC = 0xFEEDFACE
MH_CIGAM = 0xCEFAEDFE
FAT_MAGIC = 0xCAFEBABE
FAT_MAGIC_64 = 0xCAFEBABF

CPU_TYPE_ARM64 = 0x0100000C
MH_EXECUTE = 0x2

LC_REQ_DYLD = 0x80000000
LC_SYMTAB = 0x2
LC_SEGMENT_64 = 0x19
LC_FUNCTION_STARTS = 0x26

VM_PROT_READ = 0x1
VM_PROT_WRITE = 0x2
VM_PROT_EXECUTE = 0x4

S_ATTR_PURE_INSTRUCTIONS = 0x80000000
S_ATTR_SOME_INSTRUCTIONS = 0x00000400

HEADER_64 = struct.Struct("<IiiIIIII")
LOAD_COMMAND = struct.Struct("<II")
SEGMENT_64 = struct.Struct("<II16sQQQQiiII")
SECTION_64 = struct.Struct("<16s16sQQIIIIIIII")
SYMTAB = struct.Struct("<IIIIII")
LINKEDIT_DATA = struct.Struct("<IIII")
FAT_HEADER = struct.Struct(">II")
FAT_ARCH = struct.Struct(">iiIII")
FAT_ARCH_64 = struct.Struct(">iiQQII")

ReadFn = Callable[[int, int], bytes]


def _cstr(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("ascii", errors="replace")


@dataclass(frozen=True)
class MachHeader:
    magic: int
    cpu_type: int
    cpu_subtype: int
    file_type: int
    n_cmds: int
    size_of_cmds: int
    flags: int


@dataclass(frozen=True)
class Section:
    segment_name: str
    name: str
    addr: int
    size: int
    offset: int
    flags: int

    @property
    def has_instructions(self) -> bool:
        return bool(self.flags & (S_ATTR_PURE_INSTRUCTIONS | S_ATTR_SOME_INSTRUCTIONS))

    @property
    def end(self) -> int:
        return self.addr + self.size

    def slid(self, slide: int) -> Section:
        return Section(self.segment_name, self.name, self.addr + slide, self.size, self.offset, self.flags)


@dataclass(frozen=True)
class Segment:
    name: str
    vmaddr: int
    vmsize: int
    fileoff: int
    filesize: int
    maxprot: int
    initprot: int
    sections: tuple[Section, ...] = ()

    @property
    def end(self) -> int:
        return self.vmaddr + self.vmsize

    @property
    def readable(self) -> bool:
        return bool(self.initprot & VM_PROT_READ)

    @property
    def writable(self) -> bool:
        return bool(self.initprot & VM_PROT_WRITE)

    @property
    def executable(self) -> bool:
        return bool(self.initprot & VM_PROT_EXECUTE)

    def contains(self, address: int, length: int = 1) -> bool:
        return self.vmaddr <= address and address + length <= self.end

    def slid(self, slide: int) -> Segment:
        return Segment(
            self.name,
            self.vmaddr + slide,
            self.vmsize,
            self.fileoff,
            self.filesize,
            self.maxprot,
            self.initprot,
            tuple(s.slid(slide) for s in self.sections),
        )


@dataclass(frozen=True)
class SymtabInfo:
    symoff: int
    nsyms: int
    stroff: int
    strsize: int


@dataclass(frozen=True)
class LoadCommands:
    header: MachHeader
    segments: tuple[Segment, ...]
    symtab: SymtabInfo | None
    function_starts: tuple[int, int] | None  # (dataoff, datasize)


def parse_header(raw: bytes) -> MachHeader:
    """Validate a Mach-O header as 64-bit little-endian ARM64."""
    if len(raw) < HEADER_64.size:
        raise UnsupportedFormat("file too small for a Mach-O header")
    magic = struct.unpack_from("<I", raw)[0]
    if magic in (MH_MAGIC, MH_CIGAM):
        raise UnsupportedFormat("32-bit Mach-O images are not supported")
    if magic == MH_CIGAM_64:
        raise UnsupportedFormat("big-endian Mach-O images are not supported")
    if magic != MH_MAGIC_64:
        raise UnsupportedFormat(f"not a Mach-O image (magic 0x{magic:08x})")
    fields = HEADER_64.unpack_from(raw)
    header = MachHeader(*fields[:7])
    if header.cpu_type != CPU_TYPE_ARM64:
        raise UnsupportedFormat(f"unsupported CPU type 0x{header.cpu_type & 0xFFFFFFFF:x} (need arm64)")
    return header


def parse_load_commands(header: MachHeader, raw: bytes) -> LoadCommands:
    """Parse load commands from ``raw`` (header followed by the command area)."""
    offset = HEADER_64.size
    end = offset + header.size_of_cmds
    if len(raw) < end:
        raise UnsupportedFormat("truncated load commands")

    segments: list[Segment] = []
    symtab: SymtabInfo | None = None
    function_starts: tuple[int, int] | None = None

    for _ in range(header.n_cmds):
        if offset + LOAD_COMMAND.size > end:
            raise UnsupportedFormat("load command runs past sizeofcmds")
        cmd, cmd_size = LOAD_COMMAND.unpack_from(raw, offset)
        if cmd_size < LOAD_COMMAND.size or offset + cmd_size > end:
            raise UnsupportedFormat(f"malformed load command 0x{cmd:x}")
        cmd &= ~LC_REQ_DYLD

        if cmd == LC_SEGMENT_64:
            segments.append(_parse_segment(raw, offset))
        elif cmd == LC_SYMTAB:
            _, _, symoff, nsyms, stroff, strsize = SYMTAB.unpack_from(raw, offset)
            symtab = SymtabInfo(symoff, nsyms, stroff, strsize)
        elif cmd == LC_FUNCTION_STARTS:
            _, _, dataoff, datasize = LINKEDIT_DATA.unpack_from(raw, offset)
            function_starts = (dataoff, datasize)
        offset += cmd_size

    return LoadCommands(header, tuple(segments), symtab, function_starts)


def _parse_segment(raw: bytes, offset: int) -> Segment:
    (_, _, segname, vmaddr, vmsize, fileoff, filesize,
     maxprot, initprot, nsects, _flags) = SEGMENT_64.unpack_from(raw, offset)
    sections: list[Section] = []
    sect_off = offset + SEGMENT_64.size
    for _ in range(nsects):
        (sectname, sect_segname, addr, size, file_offset,
         _align, _reloff, _nreloc, flags, *_reserved) = SECTION_64.unpack_from(raw, sect_off)
        sections.append(Section(_cstr(sect_segname), _cstr(sectname), addr, size, file_offset, flags))
        sect_off += SECTION_64.size
    return Segment(_cstr(segname), vmaddr, vmsize, fileoff, filesize, maxprot, initprot, tuple(sections))


def read_load_commands(read: ReadFn, base: int = 0) -> LoadCommands:
    """Parse header + load commands through a reader (file slice or process memory)."""
    header = parse_header(read(base, HEADER_64.size))
    raw = read(base, HEADER_64.size + header.size_of_cmds)
    return parse_load_commands(header, raw)


def select_arm64_slice(data: bytes) -> tuple[int, int]:
    """Return (offset, size) of the image inside ``data``, picking the arm64 slice of a fat file."""
    if len(data) < 4:
        raise UnsupportedFormat("file too small for a Mach-O header")
    magic = struct.unpack_from(">I", data)[0]
    if magic not in (FAT_MAGIC, FAT_MAGIC_64):
        return 0, len(data)

    _, nfat_arch = FAT_HEADER.unpack_from(data)
    arch_struct = FAT_ARCH_64 if magic == FAT_MAGIC_64 else FAT_ARCH
    pos = FAT_HEADER.size
    for _ in range(nfat_arch):
        if pos + arch_struct.size > len(data):
            break
        cpu_type, _sub, offset, size, *_ = arch_struct.unpack_from(data, pos)
        if cpu_type == CPU_TYPE_ARM64:
            if offset + size > len(data):
                raise UnsupportedFormat("arm64 slice runs past end of file")
            return offset, size
        pos += arch_struct.size
    raise UnsupportedFormat("fat binary has no arm64 slice")


def decode_uleb128(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while pos < len(data):
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
    raise ValueError("truncated ULEB128")


def decode_function_starts(blob: bytes, text_vmaddr: int) -> tuple[int, ...]:
    """Decode LC_FUNCTION_STARTS deltas into absolute addresses."""
    starts: list[int] = []
    address = text_vmaddr
    pos = 0
    while pos < len(blob):
        try:
            delta, pos = decode_uleb128(blob, pos)
        except ValueError:
            break
        if delta == 0:
            break
        address += delta
        starts.append(address)
    return tuple(starts)
