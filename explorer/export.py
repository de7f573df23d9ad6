"""
Export of good moves found by an exploration.

Formats: csv (one row per move), json (run summary + moves), pgn (one game per
position, each good move as a variation with its statistics as comment).

Also marks branching points of an existing repertoire PGN for study:
  python export.py repertoire.pgn -o repertoire_marked.pgn
"""

import argparse
import csv
import json
from pathlib import Path

import chess
import chess.pgn

from logging_config import setup_logging
from models import ExplorationRun, GoodMove
from positions import normalize_castling

logger = setup_logging(__name__)

CSV_HEADERS = [
    "FEN", "Move", "SAN", "Probability Occurring", "Raw Probability", "Rating Rank",
    "Rating Percentile", "Average Rating For All Moves", "Average Rating",
    "Average Rating Opponents", "White Points Pct", "Games Position", "Games Move",
    "Popularity%", "Ratio", "Performance", "Eval",
]


def good_move_row(move: GoodMove) -> list:
    ratio = move.rating_ratio
    return [
        move.fen,
        move.move,
        move.san,
        move.probability,
        move.raw_probability,
        move.rating_rank,
        move.rating_percentile,
        move.average_rating_all_moves,
        move.average_rating,
        move.average_rating_opponents if move.average_rating_opponents is not None else "",
        move.white_points_pct,
        move.total_games,
        move.total_games_move,
        move.popularity,
        ratio if ratio is not None else "N/A",
        move.performance,
        move.evaluation if move.evaluation is not None else "",
    ]


def export_csv(good_moves: list[GoodMove], output_path: Path) -> int:
    """Write one CSV row per good move. Returns rows written."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8", newline="") as f:
        w = csv.writer(f)
        w.writerow(CSV_HEADERS)
        w.writerows(good_move_row(m) for m in good_moves)
    return len(good_moves)


def run_to_dict(run: ExplorationRun) -> dict:
    return {
        "rootFen": run.root_fen,
        "targetColor": run.target_color,
        "maxDepth": run.max_depth,
        "rootEval": run.root_eval,
        "rootTotalGames": run.root_total_games,
        "errorCount": run.error_count,
        "errors": run.errors,
        "goodMoves": [m.to_dict() for m in run.good_moves],
    }


def export_json(run: ExplorationRun, output_path: Path) -> int:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(run_to_dict(run), f, indent=2)
    return len(run.good_moves)


def move_comment(move: GoodMove) -> str:
    parts = [
        f"games {move.total_games_move}/{move.total_games}",
        f"popularity {move.popularity * 100:.1f}%",
        f"rating {move.average_rating} vs {move.average_rating_all_moves:.0f}",
        f"percentile {move.rating_percentile:.0f}",
        f"probability {move.probability * 100:.1f}%",
    ]
    if move.average_rating_opponents is not None:
        parts.append(f"opponents {move.average_rating_opponents:.0f}")
    comment = ", ".join(parts)
    if move.evaluation is not None:
        comment = f"{comment} [%eval {move.evaluation:.2f}]"
    return comment


def export_pgn(good_moves: list[GoodMove], output_path: Path) -> int:
    """Write one game per originating position. Returns games written."""
    by_fen: dict[str, list[GoodMove]] = {}
    for move in good_moves:
        by_fen.setdefault(move.fen, []).append(move)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open(output_path, "w", encoding="utf-8") as f:
        for fen, moves in by_fen.items():
            board = chess.Board(fen)
            game = chess.pgn.Game.from_board(board)
            game.headers["Event"] = "Opening explorer good moves"
            game.headers["Site"] = "Lichess Opening Explorer"
            game.headers["Result"] = "*"

            added = 0
            for good_move in moves:
                try:
                    move = chess.Move.from_uci(normalize_castling(board, good_move.move))
                except ValueError:
                    logger.warning("cannot export %s in %s", good_move.move, fen)
                    continue
                if not board.is_legal(move):
                    logger.warning("cannot export %s in %s", good_move.move, fen)
                    continue
                node = game.add_main_variation(move) if added == 0 else game.add_variation(move)
                node.comment = move_comment(good_move)
                added += 1

            if added:
                print(game, file=f, end="\n\n")
                count += 1
    return count


# !, ?, !!, ??, !?, ?!
MOVE_ASSESSMENT_NAGS = frozenset(range(chess.pgn.NAG_GOOD_MOVE, chess.pgn.NAG_DUBIOUS_MOVE + 1))


def variation_stats(game: chess.pgn.Game) -> tuple[int, int]:
    """(side lines, moves inside side lines), nested lines included."""
    lines = 0
    moves = 0
    stack = [game]
    while stack:
        node = stack.pop()
        for i, child in enumerate(node.variations):
            if i > 0:
                lines += 1
            if not child.is_mainline():
                moves += 1
            stack.append(child)
    return lines, moves


def mark_branching_moves(game: chess.pgn.Game) -> int:
    """
    Highlight in red ([%csl R<square>]) the destination of every main-line move
    that is followed by alternatives or by an assessed (!/?) move, and store
    the side-line counts in the Round / EventRounds headers.

    The final move is never marked. Returns the number of marked moves.
    """
    marked = 0
    node = game.next()
    while node is not None and node.next() is not None:
        branching = len(node.variations) > 1
        assessed = bool(node.next().nags & MOVE_ASSESSMENT_NAGS)
        if branching or assessed:
            square = chess.square_name(node.move.to_square)
            node.comment = f"[%csl R{square}] {node.comment}".strip()
            marked += 1
        node = node.next()

    lines, moves = variation_stats(game)
    game.headers["Round"] = str(lines)
    game.headers["EventRounds"] = str(moves)
    return marked


def mark_pgn_file(input_path: Path, output_path: Path) -> int:
    """Mark every game of ``input_path`` into ``output_path``. Returns games written."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open(input_path, encoding="utf-8") as src, open(output_path, "w", encoding="utf-8") as dst:
        while True:
            game = chess.pgn.read_game(src)
            if game is None:
                break
            if game.errors:
                logger.warning("game %d: %d parse errors, marking what was read", count + 1, len(game.errors))
            mark_branching_moves(game)
            print(game, file=dst, end="\n\n")
            count += 1
    logger.info("marked %d games into %s", count, output_path)
    return count


def main():
    parser = argparse.ArgumentParser(description="Mark branching moves of a repertoire PGN.")
    parser.add_argument("input")
    parser.add_argument("--output", "-o", required=True)
    args = parser.parse_args()

    n = mark_pgn_file(Path(args.input), Path(args.output))
    print(f"Marked {n} games into {args.output}")


if __name__ == "__main__":
    main()
