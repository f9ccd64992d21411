"""Bitfield parsing and utilities for BitTorrent piece availability."""

from __future__ import annotations


def bitfield_length(num_pieces: int) -> int:
    """Number of bytes a bitfield for ``num_pieces`` pieces occupies."""
    return (num_pieces + 7) // 8


def parse_bitfield(bitfield: bytes, num_pieces: int) -> set[int]:
    """Parse a bitfield into a set of piece indices (bits set to 1).

    Bits are numbered big-endian within each byte, as on the wire.
    Spare bits past ``num_pieces`` are ignored.
    """
    pieces: set[int] = set()
    if not bitfield or num_pieces <= 0:
        return pieces
    for byte_idx, byte_val in enumerate(bitfield):
        for bit_idx in range(8):
            piece_idx = byte_idx * 8 + bit_idx
            if piece_idx >= num_pieces:
                return pieces
            if byte_val & (1 << (7 - bit_idx)):
                pieces.add(piece_idx)
    return pieces


def build_bitfield(pieces: set[int] | list[int], num_pieces: int) -> bytes:
    """Build a bitfield with the given piece indices set."""
    data = bytearray(bitfield_length(num_pieces))
    for idx in pieces:
        if 0 <= idx < num_pieces:
            data[idx // 8] |= 1 << (7 - idx % 8)
    return bytes(data)
