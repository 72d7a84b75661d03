"""Live-process images: Mach task memory reads behind the BinaryImage interface."""

from __future__ import annotations

import ctypes
import ctypes.util
import hashlib
import os
import sys
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Iterable, Protocol

from revoffsets.config.defaults import DEFAULT_MAX_REGION_SCAN, DEFAULT_READ_TIMEOUT
from revoffsets.errors import (
    AccessDenied,
    ImageNotFound,
    ImageReadError,
    OutOfBounds,
    Timeout,
    UnreadableMemory,
    UnsupportedFormat,
)
from revoffsets.image.accessor import BinaryImage
from revoffsets.image.macho import (
    HEADER_64,
    MH_EXECUTE,
    MH_MAGIC_64,
    VM_PROT_EXECUTE,
    Segment,
    parse_header,
    parse_load_commands,
)
from revoffsets.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class MemoryRegion:
    start: int
    size: int
    protection: int

    @property
    def end(self) -> int:
        return self.start + self.size


class MemoryReader(Protocol):
    """OS-level primitive for reading another process's memory."""

    def read(self, address: int, size: int) -> bytes: ...

    def regions(self) -> Iterable[MemoryRegion]: ...


class ProcessImage(BinaryImage):
    """Main executable of a running process.

    Every read runs on its own daemon thread and is abandoned after
    ``read_timeout`` seconds, so a read stuck in the kernel never holds up
    interpreter exit. The target keeps running: pages may vanish between
    reads and each failure is reported for that read alone.
    """

    def __init__(
        self,
        pid: int,
        reader: MemoryReader,
        *,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        max_regions: int = DEFAULT_MAX_REGION_SCAN,
        name: str | None = None,
    ) -> None:
        self.pid = pid
        self._reader = reader
        self._timeout = read_timeout
        self._closed = False

        load_address = self._find_main_image(max_regions)
        header = parse_header(self._timed_read(load_address, HEADER_64.size))
        raw = self._timed_read(load_address, HEADER_64.size + header.size_of_cmds)
        commands = parse_load_commands(header, raw)

        text = next((s for s in commands.segments if s.name == "__TEXT"), None)
        if text is None:
            raise UnsupportedFormat(f"process {pid}: main image has no __TEXT segment")
        super().__init__(name or f"pid:{pid}", commands, slide=load_address - text.vmaddr)
        self._identity = hashlib.sha256(raw).hexdigest()
        log.info("process_attached", pid=pid, base=hex(load_address), slide=hex(self.slide))

    @property
    def identity(self) -> str:
        return self._identity

    def close(self) -> None:
        self._closed = True

    def _find_main_image(self, max_regions: int) -> int:
        last_error: ImageReadError | None = None
        for index, region in enumerate(self._reader.regions()):
            if index >= max_regions:
                log.debug("region_scan_limit", pid=self.pid, limit=max_regions)
                break
            if not region.protection & VM_PROT_EXECUTE or region.size < HEADER_64.size:
                continue
            try:
                raw = self._timed_read(region.start, HEADER_64.size)
            except ImageReadError as exc:
                log.debug("region_unreadable", pid=self.pid, start=hex(region.start), error=str(exc))
                last_error = exc
                continue
            magic, _cpu, _sub, file_type = HEADER_64.unpack_from(raw)[:4]
            if magic == MH_MAGIC_64 and file_type == MH_EXECUTE:
                return region.start
        if last_error is not None:
            raise last_error
        raise UnsupportedFormat(f"process {self.pid}: no executable Mach-O image found in memory")

    def _timed_read(self, address: int, size: int) -> bytes:
        if self._closed:
            raise UnreadableMemory(f"process {self.pid} image is closed", address)
        future: Future[bytes] = Future()

        def work() -> None:
            try:
                future.set_result(self._reader.read(address, size))
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=work, name=f"pid{self.pid}-read", daemon=True).start()
        try:
            data = future.result(timeout=self._timeout)
        except FutureTimeout:
            raise Timeout(f"read of {size} bytes at 0x{address:x} timed out", address) from None
        except ImageReadError:
            raise
        except OSError as exc:
            raise UnreadableMemory(f"read at 0x{address:x} failed: {exc}", address) from exc
        if len(data) != size:
            raise UnreadableMemory(f"short read at 0x{address:x} ({len(data)}/{size})", address)
        return data

    def _read_segment(self, seg: Segment, address: int, length: int) -> bytes:
        return self._timed_read(address, length)

    def read_linkedit(self, fileoff: int, size: int) -> bytes:
        for seg in self.segments():
            if seg.fileoff <= fileoff and fileoff + size <= seg.fileoff + seg.filesize:
                return self._timed_read(seg.vmaddr + (fileoff - seg.fileoff), size)
        raise OutOfBounds(f"file range 0x{fileoff:x}+0x{size:x} is not mapped by any segment")


# -- macOS Mach task reader --

KERN_SUCCESS = 0
VM_REGION_BASIC_INFO_64 = 9


class _VMRegionBasicInfo64(ctypes.Structure):
    _pack_ = 4
    _fields_ = [
        ("protection", ctypes.c_int),
        ("max_protection", ctypes.c_int),
        ("inheritance", ctypes.c_uint),
        ("shared", ctypes.c_uint),
        ("reserved", ctypes.c_uint),
        ("offset", ctypes.c_ulonglong),
        ("behavior", ctypes.c_int),
        ("user_wired_count", ctypes.c_ushort),
    ]


_VM_REGION_BASIC_INFO_COUNT_64 = ctypes.sizeof(_VMRegionBasicInfo64) // 4


class MachTaskReader:
    """Reads a process through its Mach task port (requires task_for_pid rights)."""

    def __init__(self, pid: int) -> None:
        if sys.platform != "darwin":
            raise UnsupportedFormat("live process mode requires macOS")
        self.pid = pid
        self._lib = ctypes.CDLL(ctypes.util.find_library("System") or "/usr/lib/libSystem.B.dylib")
        self._declare()
        task = ctypes.c_uint(0)
        kr = self._lib.task_for_pid(self._lib.mach_task_self(), pid, ctypes.byref(task))
        if kr != KERN_SUCCESS:
            raise AccessDenied(f"task_for_pid({pid}) failed with kern_return {kr}; run as root or with the debugger entitlement")
        self._task = task.value

    def _declare(self) -> None:
        lib = self._lib
        lib.mach_task_self.restype = ctypes.c_uint
        lib.mach_task_self.argtypes = []
        lib.task_for_pid.restype = ctypes.c_int
        lib.task_for_pid.argtypes = [ctypes.c_uint, ctypes.c_int, ctypes.POINTER(ctypes.c_uint)]
        lib.mach_vm_read_overwrite.restype = ctypes.c_int
        lib.mach_vm_read_overwrite.argtypes = [
            ctypes.c_uint,
            ctypes.c_ulonglong,
            ctypes.c_ulonglong,
            ctypes.c_void_p,
            ctypes.POINTER(ctypes.c_ulonglong),
        ]
        lib.mach_vm_region.restype = ctypes.c_int
        lib.mach_vm_region.argtypes = [
            ctypes.c_uint,
            ctypes.POINTER(ctypes.c_ulonglong),
            ctypes.POINTER(ctypes.c_ulonglong),
            ctypes.c_int,
            ctypes.c_void_p,
            ctypes.POINTER(ctypes.c_uint),
            ctypes.POINTER(ctypes.c_uint),
        ]

    def read(self, address: int, size: int) -> bytes:
        buf = ctypes.create_string_buffer(size)
        out_size = ctypes.c_ulonglong(0)
        kr = self._lib.mach_vm_read_overwrite(
            self._task, address, size, ctypes.cast(buf, ctypes.c_void_p), ctypes.byref(out_size)
        )
        if kr != KERN_SUCCESS:
            raise UnreadableMemory(f"mach_vm_read_overwrite at 0x{address:x} returned {kr}", address)
        return buf.raw[: out_size.value]

    def regions(self) -> Iterable[MemoryRegion]:
        address = ctypes.c_ulonglong(0)
        while True:
            size = ctypes.c_ulonglong(0)
            info = _VMRegionBasicInfo64()
            count = ctypes.c_uint(_VM_REGION_BASIC_INFO_COUNT_64)
            object_name = ctypes.c_uint(0)
            kr = self._lib.mach_vm_region(
                self._task,
                ctypes.byref(address),
                ctypes.byref(size),
                VM_REGION_BASIC_INFO_64,
                ctypes.byref(info),
                ctypes.byref(count),
                ctypes.byref(object_name),
            )
            if kr != KERN_SUCCESS:
                return
            yield MemoryRegion(address.value, size.value, info.protection)
            address.value += size.value


def open_process(
    pid: int,
    *,
    read_timeout: float | None = None,
    max_regions: int = DEFAULT_MAX_REGION_SCAN,
) -> ProcessImage:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        raise ImageNotFound(f"no process with pid {pid}") from None
    except PermissionError:
        pass  # exists, owned by someone else; task_for_pid decides
    reader = MachTaskReader(pid)
    return ProcessImage(pid, reader, read_timeout=read_timeout or DEFAULT_READ_TIMEOUT, max_regions=max_regions)
