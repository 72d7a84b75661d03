"""Builders for small ARM64 Mach-O images and AArch64 instruction words used in tests."""

import struct

MH_MAGIC_64 = 0xFEEDFACF
CPU_TYPE_ARM64 = 0x0100000C
CPU_TYPE_X86_64 = 0x01000007
MH_EXECUTE = 0x2

TEXT_VMADDR = 0x100000000
CODE_OFFSET = 0x4000
CODE_ADDR = TEXT_VMADDR + CODE_OFFSET
PAGE = 0x4000

NOP = 0xD503201F
RET = 0xD65F03C0
SUB_X8_X8_X9 = 0xCB090108
ASR_X0_X8_4 = 0x9344FD00
STP_FP_LR = 0xA9BF7BFD  # stp x29, x30, [sp, #-0x10]!
MOV_FP_SP = 0x910003FD  # mov x29, sp
LDP_FP_LR = 0xA8C17BFD  # ldp x29, x30, [sp], #0x10
PACIBSP = 0xD503237F


def _align(value, alignment=PAGE):
    return (value + alignment - 1) // alignment * alignment


def _name16(name):
    return name.encode().ljust(16, b"\x00")


def _uleb128(value):
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


# -- instruction encoders --


def words(*values):
    return struct.pack(f"<{len(values)}I", *values)


def ldr_x(rt, rn, imm):
    return 0xF9400000 | ((imm // 8) << 10) | (rn << 5) | rt


def ldr_w(rt, rn, imm):
    return 0xB9400000 | ((imm // 4) << 10) | (rn << 5) | rt


def ldrb(rt, rn, imm):
    return 0x39400000 | (imm << 10) | (rn << 5) | rt


def str_x(rt, rn, imm):
    return 0xF9000000 | ((imm // 8) << 10) | (rn << 5) | rt


def ldp_x(rt, rt2, rn, imm):
    return 0xA9400000 | (((imm // 8) & 0x7F) << 15) | (rt2 << 10) | (rn << 5) | rt


def ldr_x_post(rt, rn, imm):
    return 0xF8400400 | ((imm & 0x1FF) << 12) | (rn << 5) | rt


def sub_sp(imm):
    return 0xD10003FF | (imm << 10)


def mov_x(rd, rm):
    return 0xAA0003E0 | (rm << 16) | rd


def bl(src, dst):
    return 0x94000000 | (((dst - src) >> 2) & 0x3FFFFFF)


def b(src, dst):
    return 0x14000000 | (((dst - src) >> 2) & 0x3FFFFFF)


def cbz_x(rt, src, dst):
    return 0xB4000000 | ((((dst - src) >> 2) & 0x7FFFF) << 5) | rt


LUA_GETTOP = words(ldr_x(8, 0, 0x10), ldr_x(9, 0, 0x18), SUB_X8_X8_X9, ASR_X0_X8_4, RET)
LUA_GETTOP_PATTERN = "?? ?? 40 F9 ?? ?? 40 F9 ?? ?? ?? CB ?? ?? 44 93 C0 03 5F D6"


def place(functions, size=0x100):
    """Lay out ``{offset: code}`` inside a NOP-filled code blob of ``size`` bytes."""
    blob = bytearray(words(*([NOP] * (size // 4))))
    for offset, code in functions.items():
        blob[offset : offset + len(code)] = code
    return bytes(blob)


def build_macho(
    code,
    symbols=(),
    *,
    function_starts=(),
    data=b"",
    cpu_type=CPU_TYPE_ARM64,
    magic=MH_MAGIC_64,
):
    """Build a thin MH_EXECUTE image.

    ``code`` lands in ``__TEXT,__text`` at CODE_ADDR. ``symbols`` is a list of
    ``(name, address)`` or ``(name, address, external)`` tuples. A non-empty
    ``data`` adds a read-write ``__DATA`` segment after ``__TEXT``.
    """
    text_size = _align(CODE_OFFSET + len(code))
    data_size = _align(len(data)) if data else 0
    data_vmaddr = TEXT_VMADDR + text_size
    linkedit_fileoff = text_size + data_size
    linkedit_vmaddr = TEXT_VMADDR + text_size + data_size

    nlist = bytearray()
    strtab = bytearray(b"\x00")
    for entry in symbols:
        name, address = entry[0], entry[1]
        external = entry[2] if len(entry) > 2 else True
        n_type = 0x0E | (0x01 if external else 0)
        nlist += struct.pack("<IBBHQ", len(strtab), n_type, 1, 0, address)
        strtab += name.encode() + b"\x00"
    while len(strtab) % 8:
        strtab += b"\x00"

    starts_blob = b""
    if function_starts:
        previous = TEXT_VMADDR
        for start in sorted(function_starts):
            starts_blob += _uleb128(start - previous)
            previous = start
        starts_blob += b"\x00"
        starts_blob += b"\x00" * (-len(starts_blob) % 8)

    symoff = linkedit_fileoff
    stroff = symoff + len(nlist)
    starts_off = stroff + len(strtab)
    linkedit = bytes(nlist) + bytes(strtab) + starts_blob

    commands = []
    text_cmd = struct.pack(
        "<II16sQQQQiiII",
        0x19, 72 + 80, _name16("__TEXT"), TEXT_VMADDR, text_size, 0, text_size, 5, 5, 1, 0,
    ) + struct.pack(
        "<16s16sQQIIIIIIII",
        _name16("__text"), _name16("__TEXT"), CODE_ADDR, len(code), CODE_OFFSET, 2, 0, 0, 0x80000400, 0, 0, 0,
    )
    commands.append(text_cmd)
    if data:
        commands.append(
            struct.pack(
                "<II16sQQQQiiII",
                0x19, 72 + 80, _name16("__DATA"), data_vmaddr, data_size, text_size, data_size, 3, 3, 1, 0,
            )
            + struct.pack(
                "<16s16sQQIIIIIIII",
                _name16("__data"), _name16("__DATA"), data_vmaddr, len(data), text_size, 3, 0, 0, 0, 0, 0, 0,
            )
        )
    commands.append(
        struct.pack(
            "<II16sQQQQiiII",
            0x19, 72, _name16("__LINKEDIT"), linkedit_vmaddr, _align(max(len(linkedit), 1)),
            linkedit_fileoff, len(linkedit), 1, 1, 0, 0,
        )
    )
    commands.append(struct.pack("<IIIIII", 0x2, 24, symoff, len(symbols), stroff, len(strtab)))
    if starts_blob:
        commands.append(struct.pack("<IIII", 0x26, 16, starts_off, len(starts_blob)))

    cmds = b"".join(commands)
    header = struct.pack("<IiiIIIII", magic, cpu_type, 0, MH_EXECUTE, len(commands), len(cmds), 0, 0)

    image = bytearray(text_size + data_size)
    image[: len(header)] = header
    image[len(header) : len(header) + len(cmds)] = cmds
    image[CODE_OFFSET : CODE_OFFSET + len(code)] = code
    if data:
        image[text_size : text_size + len(data)] = data
    return bytes(image) + linkedit


def build_fat(slices):
    """Wrap ``[(cpu_type, thin_image), ...]`` in a 32-bit fat header."""
    header = struct.pack(">II", 0xCAFEBABE, len(slices))
    offset = _align(8 + 20 * len(slices))
    arches = b""
    body = b""
    for cpu_type, thin in slices:
        arches += struct.pack(">iiIII", cpu_type, 0, offset + len(body), len(thin), 14)
        body += thin + b"\x00" * (-len(thin) % PAGE)
    head = header + arches
    return head + b"\x00" * (offset - len(head)) + body
