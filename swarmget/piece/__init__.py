"""Piece selection, block bookkeeping and verification."""

from __future__ import annotations

from swarmget.piece.piece_manager import (
    Block,
    BlockOutcome,
    BlockRequest,
    BlockResult,
    BlockStatus,
    Piece,
    PieceManager,
    PieceStatus,
)

__all__ = [
    "Block",
    "BlockOutcome",
    "BlockRequest",
    "BlockResult",
    "BlockStatus",
    "Piece",
    "PieceManager",
    "PieceStatus",
]
