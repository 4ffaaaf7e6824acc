# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
YMODEM wire format definitions and serialization.

Packets are laid out as ``[mark][seq][255-seq][payload][0x00][0x00]``. The
trailer is always zero: the receiving firmware does not verify a CRC, and
devices expect these exact bytes.
"""

from enum import Enum, IntEnum


class ControlByte(IntEnum):
    """YMODEM control bytes."""
    SOH = 0x01  # 128 byte blocks
    STX = 0x02  # 1024 byte blocks
    EOT = 0x04
    ACK = 0x06
    NAK = 0x15
    CA = 0x18
    CRC16 = 0x43

    def __str__(self) -> str:
        return self.name


class ResponseKind(Enum):
    """Outcome of classifying the bytes received for one exchange."""
    PENDING = "pending"
    ACK = "ack"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


BLOCK_MARKS = {
    128: ControlByte.SOH,
    1024: ControlByte.STX,
}

# Asks a device in listening mode to start receiving firmware.
TRANSFER_REQUEST = b"f"

LISTENING_BANNER = "Waiting for the binary file to be sent ... (press 'a' to abort)"

TRAILER = b"\x00\x00"


def block_mark(block_length: int) -> ControlByte:
    """Return the packet mark for a block length (128 or 1024)."""
    try:
        return BLOCK_MARKS[block_length]
    except KeyError:
        raise ValueError(f"Invalid block length: {block_length}") from None


def encode_packet(seq: int, payload: bytes, block_length: int) -> bytes:
    """
    Wrap a payload in the packet envelope.

    Args:
        seq: Packet sequence number (taken modulo 256)
        payload: Up to block_length bytes, zero-padded to block_length
        block_length: 128 or 1024

    Returns:
        The framed packet

    Raises:
        ValueError: If the block length is invalid or the payload too long
    """
    mark = block_mark(block_length)
    if len(payload) > block_length:
        raise ValueError(
            f"Payload of {len(payload)} bytes exceeds block length {block_length}"
        )
    seq &= 0xFF
    header = bytes([mark, seq, 0xFF - seq])
    return header + payload.ljust(block_length, b"\x00") + TRAILER


def encode_file_header(name: str, length: int, block_length: int, seq: int = 0) -> bytes:
    """Encode a file header packet: ``name\\0length `` padded with zeros."""
    payload = f"{name}\0{length} ".encode("utf-8")
    return encode_packet(seq, payload, block_length)


def encode_batch_end(block_length: int) -> bytes:
    """Encode the empty header that terminates a batch."""
    return encode_file_header("", 0, block_length)


def encode_eot() -> bytes:
    """Encode a lone End-Of-Transmission byte."""
    return bytes([ControlByte.EOT])


def encode_cancel() -> bytes:
    """Encode the cancel sequence (two CA bytes)."""
    return bytes([ControlByte.CA, ControlByte.CA])


def classify_response(data: bytes, expect_crc_mode: bool = False) -> ResponseKind:
    """
    Classify the bytes accumulated for one exchange.

    Args:
        data: Everything received since the packet was written
        expect_crc_mode: True for the first block of a file, where the
            device bundles a CRC-16 mode byte with its ACK

    Returns:
        PENDING if more bytes are needed, otherwise the final outcome
    """
    if not data:
        return ResponseKind.PENDING

    lead = data[0]
    if lead == ControlByte.ACK:
        if expect_crc_mode and len(data) < 2:
            return ResponseKind.PENDING
        return ResponseKind.ACK
    if lead == ControlByte.CA:
        # Cancellation is only conclusive after two bytes.
        if len(data) < 2:
            return ResponseKind.PENDING
        return ResponseKind.CANCELLED
    if lead == ControlByte.NAK:
        return ResponseKind.CANCELLED
    return ResponseKind.UNKNOWN


def describe(data: bytes) -> str:
    """Render received bytes for logging, naming short control sequences."""
    if len(data) <= 2:
        names = []
        for byte in data:
            try:
                names.append(str(ControlByte(byte)))
            except ValueError:
                names.append(f"0x{byte:02x}")
        return " ".join(names)
    return f"{data.hex(' ')} {data.decode('latin-1')!r}"
