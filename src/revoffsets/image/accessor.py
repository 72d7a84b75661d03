"""Uniform byte-range/segment access over a Mach-O file or a live process."""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from revoffsets.errors import ImageNotFound, ImageReadError, OutOfBounds, UnsupportedFormat
from revoffsets.image.macho import (
    LoadCommands,
    Section,
    Segment,
    SymtabInfo,
    decode_function_starts,
    parse_header,
    parse_load_commands,
    select_arm64_slice,
)
from revoffsets.utils.logging import get_logger

if TYPE_CHECKING:
    from revoffsets.config.models import OffsetsConfig

log = get_logger(__name__)


@dataclass(frozen=True)
class Region:
    """Half-open address range ``[start, end)``."""

    start: int
    end: int
    name: str = ""

    @property
    def size(self) -> int:
        return max(0, self.end - self.start)

    def contains(self, address: int, length: int = 1) -> bool:
        return self.start <= address and address + length <= self.end

    def intersect(self, other: Region) -> Region | None:
        start = max(self.start, other.start)
        end = min(self.end, other.end)
        if start >= end:
            return None
        return Region(start, end, self.name or other.name)


class BinaryImage(ABC):
    """Read-only view of one ARM64 Mach-O image.

    Concrete images are immutable after construction and safe to read from
    several threads at once.
    """

    architecture = "arm64"

    def __init__(self, name: str, commands: LoadCommands, slide: int = 0) -> None:
        self.name = name
        self._commands = commands
        self._slide = slide
        self._segments = tuple(seg.slid(slide) for seg in commands.segments)
        self._function_starts: tuple[int, ...] | None = None

    # -- identity --

    @property
    @abstractmethod
    def identity(self) -> str: ...

    @property
    def slide(self) -> int:
        return self._slide

    @property
    def base_address(self) -> int:
        text = self.find_segment("__TEXT")
        return text.vmaddr if text else 0

    @property
    def symtab(self) -> SymtabInfo | None:
        return self._commands.symtab

    # -- segments and sections --

    def segments(self) -> tuple[Segment, ...]:
        return self._segments

    def find_segment(self, name: str) -> Segment | None:
        for seg in self._segments:
            if seg.name == name:
                return seg
        return None

    def find_section(self, segment: str, section: str) -> Section | None:
        seg = self.find_segment(segment)
        if seg is None:
            return None
        for sect in seg.sections:
            if sect.name == section:
                return sect
        return None

    def segment_for(self, address: int) -> Segment | None:
        for seg in self._segments:
            if seg.contains(address):
                return seg
        return None

    def executable_segments(self) -> tuple[Segment, ...]:
        return tuple(seg for seg in self._segments if seg.executable)

    def is_executable(self, address: int) -> bool:
        seg = self.segment_for(address)
        return seg is not None and seg.executable

    def code_regions(self) -> tuple[Region, ...]:
        """Instruction-bearing sections of executable segments (whole segments when none are flagged)."""
        regions: list[Region] = []
        for seg in self.executable_segments():
            code = [s for s in seg.sections if s.has_instructions and s.size]
            if code:
                regions.extend(Region(s.addr, s.end, f"{seg.name},{s.name}") for s in code)
            elif seg.vmsize:
                regions.append(Region(seg.vmaddr, seg.end, seg.name))
        return tuple(regions)

    def resolve_region(self, spec: str) -> Region | None:
        """Resolve ``"__TEXT"`` or ``"__TEXT,__text"`` to an address range."""
        seg_name, _, sect_name = spec.partition(",")
        if sect_name:
            sect = self.find_section(seg_name.strip(), sect_name.strip())
            return Region(sect.addr, sect.end, spec) if sect else None
        seg = self.find_segment(seg_name.strip())
        return Region(seg.vmaddr, seg.end, spec) if seg else None

    # -- reads --

    def read_bytes(self, address: int, length: int) -> bytes:
        """Read ``length`` bytes at ``address``; the range must sit inside one segment."""
        if length < 0:
            raise OutOfBounds(f"negative read length {length}", address)
        if length == 0:
            return b""
        seg = self.segment_for(address)
        if seg is None or not seg.contains(address, length):
            raise OutOfBounds(f"read of {length} bytes at 0x{address:x} is outside every segment", address)
        return self._read_segment(seg, address, length)

    @abstractmethod
    def _read_segment(self, seg: Segment, address: int, length: int) -> bytes: ...

    @abstractmethod
    def read_linkedit(self, fileoff: int, size: int) -> bytes:
        """Read bytes addressed by file offset (symbol/string tables)."""

    def function_starts(self) -> tuple[int, ...]:
        if self._function_starts is None:
            self._function_starts = self._load_function_starts()
        return self._function_starts

    def _load_function_starts(self) -> tuple[int, ...]:
        location = self._commands.function_starts
        text = self.find_segment("__TEXT")
        if location is None or text is None:
            return ()
        dataoff, datasize = location
        if not datasize:
            return ()
        try:
            blob = self.read_linkedit(dataoff, datasize)
        except ImageReadError as exc:
            log.warning("function_starts_unreadable", error=str(exc))
            return ()
        return decode_function_starts(blob, text.vmaddr)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} base=0x{self.base_address:x}>"


class FileImage(BinaryImage):
    """Image backed by a Mach-O file (thin, or the arm64 slice of a fat file)."""

    def __init__(self, path: Path, data: bytes) -> None:
        self.path = path
        slice_offset, slice_size = select_arm64_slice(data)
        self._data = data[slice_offset : slice_offset + slice_size]
        header = parse_header(self._data)
        commands = parse_load_commands(header, self._data)
        super().__init__(path.name, commands)
        self._sha256 = hashlib.sha256(data).hexdigest()

    @property
    def identity(self) -> str:
        return self._sha256

    def _read_segment(self, seg: Segment, address: int, length: int) -> bytes:
        rel = address - seg.vmaddr
        out = bytearray(length)
        # Bytes past filesize are zero-fill
        avail = max(0, min(length, seg.filesize - rel))
        if avail:
            start = seg.fileoff + rel
            chunk = self._data[start : start + avail]
            out[: len(chunk)] = chunk
        return bytes(out)

    def read_linkedit(self, fileoff: int, size: int) -> bytes:
        if fileoff < 0 or size < 0 or fileoff + size > len(self._data):
            raise OutOfBounds(f"file range 0x{fileoff:x}+0x{size:x} past end of image")
        return self._data[fileoff : fileoff + size]


def open_file(path: str | Path) -> FileImage:
    path = Path(path)
    if not path.is_file():
        raise ImageNotFound(f"no such file: {path}")
    data = path.read_bytes()
    image = FileImage(path, data)
    log.info(
        "image_loaded",
        path=str(path),
        segments=len(image.segments()),
        base=hex(image.base_address),
        sha256=image.identity[:16],
    )
    return image


def open_image(source: str | Path | int, *, config: OffsetsConfig | None = None) -> BinaryImage:
    """Open a Mach-O file (path) or attach to a live process (pid)."""
    if isinstance(source, int) and not isinstance(source, bool):
        from revoffsets.image.process import open_process

        if config is None:
            return open_process(source)
        return open_process(
            source,
            read_timeout=config.process.read_timeout,
            max_regions=config.process.max_region_scan,
        )
    if isinstance(source, (str, Path)):
        return open_file(source)
    raise UnsupportedFormat(f"unsupported image source {source!r}")
