"""SLIP framing for ROM bootloader command frames."""

SLIP_END = 0xC0
SLIP_ESC = 0xDB
SLIP_ESC_END = 0xDC
SLIP_ESC_ESC = 0xDD


def encode(data: bytes) -> bytes:
    """Wrap a payload in SLIP delimiters, escaping END and ESC bytes."""
    frame = bytearray([SLIP_END])
    for byte in data:
        if byte == SLIP_END:
            frame += bytes([SLIP_ESC, SLIP_ESC_END])
        elif byte == SLIP_ESC:
            frame += bytes([SLIP_ESC, SLIP_ESC_ESC])
        else:
            frame.append(byte)
    frame.append(SLIP_END)
    return bytes(frame)


def decode(frame: bytes) -> bytes:
    """Inverse of encode().

    Leading and trailing END delimiters are optional.

    Raises:
        ValueError: On an unknown escape sequence, a dangling escape byte or
            an END byte inside the frame body.
    """
    body = bytes(frame)
    if body[:1] == bytes([SLIP_END]):
        body = body[1:]
    if body[-1:] == bytes([SLIP_END]):
        body = body[:-1]

    data = bytearray()
    escaped = False
    for byte in body:
        if escaped:
            if byte == SLIP_ESC_END:
                data.append(SLIP_END)
            elif byte == SLIP_ESC_ESC:
                data.append(SLIP_ESC)
            else:
                raise ValueError(f"Invalid SLIP escape 0xDB 0x{byte:02X}")
            escaped = False
        elif byte == SLIP_ESC:
            escaped = True
        elif byte == SLIP_END:
            raise ValueError("Unexpected SLIP END inside frame")
        else:
            data.append(byte)

    if escaped:
        raise ValueError("Frame ends with a dangling SLIP escape")
    return bytes(data)


# SYNC: direction 0x00, command 0x08, 36-byte body (07 07 12 20 + 32 x 0x55).
SYNC_PAYLOAD = bytes([0x00, 0x08, 0x24, 0x00, 0x00, 0x00, 0x00, 0x00,
                      0x07, 0x07, 0x12, 0x20]) + bytes([0x55] * 32)

# READ_REG 0x40001000, the chip magic register.
READ_REG_PAYLOAD = bytes([0x00, 0x0A, 0x04, 0x00, 0x00, 0x00, 0x00, 0x00,
                          0x00, 0x10, 0x00, 0x40])

SYNC_FRAME = encode(SYNC_PAYLOAD)
READ_REG_FRAME = encode(READ_REG_PAYLOAD)
