"""FEN helpers: short keys, side to move, and applying UCI moves."""

import chess

from errors import IllegalMoveError
from models import BLACK, WHITE, Color

# King onto its own rook's home square -> standard castling destination.
# Maps move -> (castling move, king square, color, kingside)
ROOK_SQUARE_CASTLING = {
    "e1h1": ("e1g1", chess.E1, chess.WHITE, True),
    "e1a1": ("e1c1", chess.E1, chess.WHITE, False),
    "e8h8": ("e8g8", chess.E8, chess.BLACK, True),
    "e8a8": ("e8c8", chess.E8, chess.BLACK, False),
}


def short_fen(fen: str) -> str:
    """FEN without halfmove clock and move number, so transpositions share a key."""
    return " ".join(fen.split()[:4])


def color_to_play(fen: str) -> Color:
    parts = fen.split()
    if len(parts) < 2 or parts[1] not in ("w", "b"):
        raise IllegalMoveError(fen, None, "no side to move in FEN")
    return WHITE if parts[1] == "w" else BLACK


def opposite(color: Color) -> Color:
    return BLACK if color == WHITE else WHITE


def normalize_castling(board: chess.Board, uci: str) -> str:
    """
    Rewrite king-takes-own-rook notation (e1h1, e8a8, ...) into the two-square
    castling move, provided the matching castling right is present.
    Any other move is returned unchanged.
    """
    entry = ROOK_SQUARE_CASTLING.get(uci)
    if entry is None:
        return uci
    castling_uci, king_square, color, kingside = entry
    if board.piece_at(king_square) != chess.Piece(chess.KING, color):
        return uci
    if kingside and board.has_kingside_castling_rights(color):
        return castling_uci
    if not kingside and board.has_queenside_castling_rights(color):
        return castling_uci
    return uci


def load_board(fen: str) -> chess.Board:
    try:
        return chess.Board(fen)
    except ValueError as e:
        raise IllegalMoveError(fen, None, str(e)) from e


def apply_uci_move(fen: str, uci: str) -> str:
    """Return the FEN reached by playing ``uci`` (promotions included) from ``fen``."""
    board = load_board(fen)
    normalized = normalize_castling(board, uci)
    try:
        move = chess.Move.from_uci(normalized)
    except ValueError as e:
        raise IllegalMoveError(fen, uci, str(e)) from e
    if not board.is_legal(move):
        raise IllegalMoveError(fen, uci, "illegal in this position")
    board.push(move)
    return board.fen()


def resulting_fen(fen: str, uci: str | None) -> str:
    """``fen`` itself when no move is given, otherwise the position after ``uci``."""
    if uci is None:
        return fen
    return apply_uci_move(fen, uci)


def move_to_san(fen: str, uci: str) -> str:
    """SAN for ``uci`` in ``fen``; falls back to the UCI text when it cannot be parsed."""
    try:
        board = chess.Board(fen)
        move = chess.Move.from_uci(normalize_castling(board, uci))
    except ValueError:
        return uci
    if not board.is_legal(move):
        return uci
    return board.san(move)
