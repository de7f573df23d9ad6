"""Parsing of UCI engine output lines."""

import re

import chess
import chess.engine

from models import WHITE
from positions import color_to_play

SCORE_PATTERN = re.compile(r"\bscore (cp|mate) (-?\d+)")
PV_PATTERN = re.compile(r"\bpv\s+(.+)$")

PIECE_VALUES = {
    chess.PAWN: 1,
    chess.KNIGHT: 3,
    chess.BISHOP: 3,
    chess.ROOK: 5,
    chess.QUEEN: 9,
    chess.KING: 0,
}


def score_to_cp(score: chess.engine.PovScore) -> float:
    """Convert a PovScore to centipawns from White's perspective. Cap mate at ±1000."""
    white_score = score.white()
    if white_score.is_mate():
        # mate 0 from the mated side is MateGiven for the other one
        return 1000 if white_score > chess.engine.Cp(0) else -1000
    return white_score.score(mate_score=10000)


def has_score(message: str) -> bool:
    return message.startswith("info") and not message.startswith("info string") and " score " in message


def parse_score(fen: str, message: str) -> float:
    """
    Evaluation in pawns, White's perspective, from an ``info ... score ...`` line.
    UCI scores are relative to the side to move in ``fen``.
    """
    match = SCORE_PATTERN.search(message)
    if not match:
        raise ValueError(f"no score in engine message: {message!r}")
    kind, value = match.group(1), int(match.group(2))
    relative = chess.engine.Cp(value) if kind == "cp" else chess.engine.Mate(value)
    turn = chess.WHITE if color_to_play(fen) == WHITE else chess.BLACK
    return score_to_cp(chess.engine.PovScore(relative, turn)) / 100.0


def parse_depth(message: str) -> int | None:
    match = re.search(r"\bdepth (\d+)", message)
    return int(match.group(1)) if match else None


def parse_best_move(message: str) -> str:
    parts = message.split()
    if len(parts) < 2 or parts[0] != "bestmove":
        raise ValueError(f"not a bestmove message: {message!r}")
    return parts[1]


def extract_pv(message: str) -> list[str]:
    match = PV_PATTERN.search(message)
    if not match:
        return []
    return match.group(1).split()


def detect_sacrifices(fen: str, uci_moves: list[str]) -> list[chess.Move]:
    """Moves in the line that capture a piece worth at least two points less than the mover."""
    board = chess.Board(fen)
    sacrifices = []
    for uci in uci_moves:
        try:
            move = chess.Move.from_uci(uci)
        except ValueError:
            break
        if not board.is_legal(move):
            break
        mover = board.piece_at(move.from_square)
        captured = board.piece_at(move.to_square)
        if mover and captured:
            captured_value = PIECE_VALUES[captured.piece_type]
            if captured_value > 0 and PIECE_VALUES[mover.piece_type] - captured_value > 1:
                sacrifices.append(move)
        board.push(move)
    return sacrifices


def pv_to_san(fen: str, uci_moves: list[str]) -> str:
    """Principal variation as numbered SAN, stopping at the first unplayable move."""
    board = chess.Board(fen)
    moves = []
    for uci in uci_moves:
        try:
            move = chess.Move.from_uci(uci)
        except ValueError:
            break
        if not board.is_legal(move):
            break
        moves.append(move)
        board.push(move)
    return chess.Board(fen).variation_san(moves)
