# core/rules.py
"""
Deterministic coaching rules.

Everything in this module is a pure function: ELO bucketing, turn reasoning,
game-phase classification, the phase-based fallback advice and the final
message formatter. The orchestrator and the LLM coach both build on these.
"""

import math
from typing import Optional, Tuple

import chess

from core.models import CoachingAdvice, PositionContext, UserInfo

# When the screenshot does not reveal the user's colour we coach as White.
DEFAULT_USER_COLOR = "white"

# Suggested move used when neither the engine nor the AI produced one.
NO_MOVE_PLACEHOLDER = "See position"

PIECE_NAMES = {
    "p": "pawn",
    "n": "knight",
    "b": "bishop",
    "r": "rook",
    "q": "queen",
    "k": "king",
}


def depth_for(elo: Optional[int]) -> int:
    """Engine search depth for a player rating; unknown ratings get club depth."""
    if elo is None:
        return 12
    if elo < 800:
        return 8
    if elo < 1200:
        return 10
    if elo < 1600:
        return 12
    if elo < 2000:
        return 15
    return 18


def skill_level_for(elo: Optional[int]) -> str:
    """
    Explanation tier for a player rating.

    The thresholds intentionally differ from depth_for: depth and wording are
    tuned separately.
    """
    if elo is None:
        return "intermediate"
    if elo < 1000:
        return "beginner"
    if elo < 1800:
        return "intermediate"
    return "advanced"


def describe_piece(code: Optional[str]) -> str:
    """Turn an engine piece letter ('n', 'B', ...) into its English name."""
    if not code:
        return "piece"
    return PIECE_NAMES.get(code.strip().lower(), "piece")


def _color_code(color: Optional[str]) -> Optional[str]:
    if not color:
        return None
    lowered = color.strip().lower()
    if lowered in ("w", "white"):
        return "w"
    if lowered in ("b", "black"):
        return "b"
    return None


def is_users_turn(active_color: str, user_color: Optional[str],
                  default_color: str = DEFAULT_USER_COLOR) -> bool:
    """
    Return True when the side to move is the user's side.

    `user_color` may be "White"/"Black"/"w"/"b" in any case; anything else
    (None, "Uncertain") falls back to `default_color`.

    Raises:
        ValueError: If `active_color` or `default_color` is not a colour.
    """
    active = _color_code(active_color)
    if active is None:
        raise ValueError(f"Invalid active colour: {active_color!r}")
    user = _color_code(user_color)
    if user is None:
        user = _color_code(default_color)
        if user is None:
            raise ValueError(f"Invalid default colour: {default_color!r}")
    return active == user


def position_context_from_moves(moves: str) -> PositionContext:
    """
    Derive move number and side to move from the number of plies played.

    The moves are not checked against the rules of chess; only the token count
    matters. "e4 e5 Nf3" is three plies: move 2, Black to move.
    """
    plies = len(moves.split()) if moves else 0
    move_number = max(1, math.ceil(plies / 2))
    active_color = "w" if plies % 2 == 0 else "b"
    return PositionContext(move_number=move_number, active_color=active_color)


def count_pieces(moves: str, fen: Optional[str] = None) -> Optional[int]:
    """
    Count the pieces on the board after `moves`.

    The move list is replayed from the starting position; if it does not parse
    as legal SAN, the engine's FEN is used instead. Returns None when neither
    source is usable.
    """
    board = chess.Board()
    try:
        for token in (moves or "").split():
            board.push_san(token)
        return len(board.piece_map())
    except ValueError:
        pass

    if fen:
        try:
            return len(chess.Board(fen).piece_map())
        except ValueError:
            return None
    return None


def validate_fen(fen: str) -> Tuple[bool, Optional[str]]:
    """Check that a FEN parses and that both kings are on the board."""
    try:
        board = chess.Board(fen)
    except ValueError as e:
        return False, f"Invalid FEN format: {e}"

    if board.king(chess.WHITE) is None:
        return False, "Invalid position: White king is missing"
    if board.king(chess.BLACK) is None:
        return False, "Invalid position: Black king is missing"
    return True, None


def classify_phase(move_number: int, piece_count: Optional[int]) -> Optional[str]:
    """
    Classify the game phase; None means the position fits no band cleanly.

    Without a piece count only the move-number bands are used.
    """
    if piece_count is None:
        if move_number <= 10:
            return "opening"
        if move_number <= 25:
            return "middlegame"
        return "endgame"

    if move_number <= 10 and piece_count > 24:
        return "opening"
    if 11 <= move_number <= 25 and piece_count > 12:
        return "middlegame"
    if move_number > 25 or piece_count <= 12:
        return "endgame"
    return None


_PHASE_TEXT = {
    "opening": (
        "You're in the opening phase (move {move_number}). Stick to the opening principles: "
        "control the center with your pawns, bring your knights and bishops out before your queen, "
        "and castle early to keep your king safe.",
        "In the opening every tempo counts. Pieces that reach good squares early give you more "
        "options later, while moving the same piece twice hands your opponent time.",
    ),
    "middlegame": (
        "You're in the middlegame now (move {move_number}). Look for tactical chances such as forks, "
        "pins and skewers, improve your worst-placed piece, and keep your king safe.",
        "Middlegame plans come from the pawn structure: put your pieces where they support your pawn "
        "breaks and always check what your opponent is threatening before you move.",
    ),
    "endgame": (
        "Welcome to the endgame (move {move_number}), where precision matters most. Activate your king, "
        "push passed pawns toward promotion and stop your opponent's dangerous pawns.",
        "With fewer pieces on the board the king becomes a strong fighting piece, and every pawn "
        "can decide the game.",
    ),
}

_GENERIC_TEXT = (
    "Play carefully (move {move_number}). Before each move check every capture, check and threat "
    "for both sides, and keep your pieces protected.",
    "When the position is unclear, safe and active moves are better than risky ones.",
)


def phase_advice(move_number: int, piece_count: Optional[int],
                 difficulty: str = "beginner",
                 suggested_move: Optional[str] = None) -> CoachingAdvice:
    """
    Deterministic, phase-based coaching used when the AI is skipped or fails.

    Args:
        move_number: Current full-move number.
        piece_count: Pieces left on the board, or None if unknown.
        difficulty: Skill tier the advice is written for.
        suggested_move: A move to recommend (normally the engine's); without it
            the placeholder "See position" is used.
    """
    phase = classify_phase(move_number, piece_count)
    template, reasoning = _PHASE_TEXT.get(phase, _GENERIC_TEXT)
    explanation = template.format(move_number=move_number)
    if suggested_move:
        explanation = f"{explanation} The engine's choice here is {suggested_move}."
    return CoachingAdvice(
        suggested_move=suggested_move or NO_MOVE_PLACEHOLDER,
        explanation=explanation,
        reasoning=reasoning,
        difficulty=difficulty,
        confidence="medium" if suggested_move else "low",
    )


_LEVEL_TIPS = {
    "beginner": "Before every move, check which of your pieces are attacked and keep them protected.",
    "intermediate": "Look for your opponent's threats before committing to a plan.",
    "advanced": "Compare candidate moves and calculate the critical lines to the end.",
}


def _greeting(elo: Optional[int]) -> str:
    if elo is not None and elo < 1000:
        return "Hi there!"
    if elo is not None and elo > 1800:
        return "Hello,"
    return "Hello!"


def format_final_message(advice: CoachingAdvice, user_info: UserInfo) -> str:
    """
    Build the user-facing coaching text.

    Layout: greeting and suggested move, the explanation, the reasoning (not
    shown to beginners), and a rating-specific footer when the ELO is known.
    """
    parts = [
        f"{_greeting(user_info.elo)} Suggested move: {advice.suggested_move}",
        advice.explanation,
    ]
    if advice.difficulty != "beginner":
        parts.append(f"Why: {advice.reasoning}")
    if user_info.elo is not None:
        tip = _LEVEL_TIPS[skill_level_for(user_info.elo)]
        parts.append(f"Tailored for your level (~{user_info.elo} ELO): {tip}")
    return "\n\n".join(parts)
