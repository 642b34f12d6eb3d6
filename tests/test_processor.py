# tests/test_processor.py

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.analysis import CoachingProcessor, build_processor
from core.errors import CoachingError, InvalidInputError
from core.models import CoachingAdvice, EngineAnalysis, UserInfo
from core.settings import Settings

OPENING_MOVES = "e4 e5 Nf3 Nc6"


def _processor(user_info, engine=None, advice=None):
    analyzer = MagicMock()
    analyzer.analyze = AsyncMock(return_value=engine)
    coach = MagicMock()
    coach.extract_user_info = AsyncMock(return_value=user_info)
    coach.generate_advice = AsyncMock(return_value=advice)
    return CoachingProcessor(analyzer, coach), analyzer, coach


def _engine(move="Bb5"):
    return EngineAnalysis(evaluation=0.35, best_move_san=move, best_move_uci="f1b5", piece="b",
                          from_square="f1", to_square="b5", depth=8)


def test_low_rated_player_gets_phase_advice_without_ai():
    """
    A 326-rated player at move 2 never reaches the coaching model: the engine
    is asked at depth 8 and the answer is the phase-based opening advice.
    """
    # 1. ARRANGE
    processor, analyzer, coach = _processor(UserInfo(color="White", elo=326))

    # 2. ACT
    result = asyncio.run(processor.coach_position(b"png", OPENING_MOVES))

    # 3. ASSERT
    analyzer.analyze.assert_awaited_once_with(OPENING_MOVES, 8, 1, 50)
    coach.generate_advice.assert_not_awaited()
    assert result.best_move is None
    assert result.advice.startswith("Hi there! Suggested move: See position")
    assert "opening principles" in result.advice
    assert "Why:" not in result.advice
    assert "~326 ELO" in result.advice


def test_low_rated_player_is_given_engine_move_on_own_turn():
    processor, _, coach = _processor(UserInfo(color="White", elo=450), engine=_engine())

    result = asyncio.run(processor.coach_position(b"png", OPENING_MOVES))

    coach.generate_advice.assert_not_awaited()
    assert result.best_move == "Bb5"
    assert "The engine's choice here is Bb5." in result.advice


def test_low_rated_player_is_not_given_opponents_engine_move():
    processor, _, _ = _processor(UserInfo(color="Black", elo=450), engine=_engine())

    result = asyncio.run(processor.coach_position(b"png", OPENING_MOVES))

    assert result.best_move is None
    assert "Bb5" not in result.advice


def test_rated_player_gets_ai_advice():
    # 1. ARRANGE
    user_info = UserInfo(color="White", elo=1500)
    engine = _engine()
    advice = CoachingAdvice(
        suggested_move="Bb5",
        explanation="The Ruy Lopez: pressure the knight that defends e5.",
        reasoning="Indirect pressure on the centre.",
        difficulty="intermediate",
        confidence="high",
    )
    processor, analyzer, coach = _processor(user_info, engine=engine, advice=advice)

    # 2. ACT
    result = asyncio.run(processor.coach_position(b"png", OPENING_MOVES, mime_type="image/jpeg"))

    # 3. ASSERT
    coach.extract_user_info.assert_awaited_once_with(b"png", "image/jpeg")
    analyzer.analyze.assert_awaited_once_with(OPENING_MOVES, 12, 1, 50)
    args = coach.generate_advice.await_args.args
    assert args[0] == user_info
    assert args[1].move_number == 2
    assert args[1].active_color == "w"
    assert args[1].piece_count == 32
    assert args[2] == engine
    assert args[3] == OPENING_MOVES
    assert result.best_move == "Bb5"
    assert result.advice == (
        "Hello! Suggested move: Bb5\n\n"
        "The Ruy Lopez: pressure the knight that defends e5.\n\n"
        "Why: Indirect pressure on the centre.\n\n"
        "Tailored for your level (~1500 ELO): Look for your opponent's threats before committing to a plan."
    )


def test_unknown_elo_uses_default_depth_and_ai():
    advice = CoachingAdvice(suggested_move="See position", explanation="e", reasoning="r",
                            difficulty="intermediate", confidence="low")
    processor, analyzer, coach = _processor(UserInfo.uncertain(), advice=advice)

    result = asyncio.run(processor.coach_position(b"png", ""))

    analyzer.analyze.assert_awaited_once_with("", 12, 1, 50)
    coach.generate_advice.assert_awaited_once()
    assert result.best_move is None
    assert "ELO" not in result.advice


def test_explicit_depth_overrides_elo_depth():
    processor, analyzer, _ = _processor(UserInfo(color="White", elo=326))

    asyncio.run(processor.coach_position(b"png", OPENING_MOVES, depth=5))

    analyzer.analyze.assert_awaited_once_with(OPENING_MOVES, 5, 1, 50)


def test_piece_count_falls_back_to_engine_fen():
    engine = EngineAnalysis(evaluation=1.2, best_move_san="Kd2",
                            fen="8/1k1n1p2/b1p1p3/3b4/2P5/1P2P1P1/P2P1Q2/1R3B1B w - - 0 30")
    processor, _, coach = _processor(UserInfo(color="White", elo=1500), engine=engine,
                                     advice=CoachingAdvice(suggested_move="Kd2", explanation="e", reasoning="r",
                                                           difficulty="intermediate", confidence="high"))

    asyncio.run(processor.coach_position(b"png", "moves that are not san"))

    assert coach.generate_advice.await_args.args[1].piece_count == 17


@pytest.mark.parametrize("image_bytes, mime_type", [
    (b"", "image/png"),
    (b"%PDF-1.4", "application/pdf"),
])
def test_invalid_input_is_rejected_before_any_call(image_bytes, mime_type):
    processor, analyzer, coach = _processor(UserInfo(color="White", elo=1500))

    with pytest.raises(InvalidInputError):
        asyncio.run(processor.coach_position(image_bytes, OPENING_MOVES, mime_type=mime_type))

    coach.extract_user_info.assert_not_awaited()
    analyzer.analyze.assert_not_awaited()


def test_unexpected_failure_is_wrapped_with_context():
    # 1. ARRANGE
    processor, analyzer, _ = _processor(UserInfo(color="White", elo=326))
    analyzer.analyze.side_effect = RuntimeError("engine client exploded")

    # 2. ACT
    with pytest.raises(CoachingError) as exc_info:
        asyncio.run(processor.coach_position(b"png", OPENING_MOVES))

    # 3. ASSERT
    error = exc_info.value
    assert "Chess coaching orchestration failed" in str(error)
    assert "engine client exploded" in str(error)
    assert isinstance(error.__cause__, RuntimeError)
    assert error.context() == {"moves": OPENING_MOVES, "analysis_depth": 8, "move_number": 2}


def test_build_processor_wires_settings():
    config = Settings(
        chess_api_url="http://engine.local/v1",
        engine_timeout_s=2.5,
        engine_max_concurrency=2,
        ollama_model="coach",
        ollama_vision_model="vision",
        beginner_bypass_elo=700,
        engine_variants=2,
        engine_max_thinking_time_ms=80,
    )

    processor = build_processor(config, MagicMock(), MagicMock())

    assert processor.analyzer.base_url == "http://engine.local/v1"
    assert processor.analyzer.timeout == 2.5
    assert processor.coach.model == "coach"
    assert processor.coach.vision_model == "vision"
    assert processor.coach.prompts_dir == config.prompts_dir
    assert processor.beginner_bypass_elo == 700
    assert processor.variants == 2
    assert processor.max_thinking_time == 80
