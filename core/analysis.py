"""
Core components of the screenshot coaching pipeline.

This module provides the classes that read a chess screenshot, analyse the
position with the chess-api.com engine and turn the result into coaching
advice with an Ollama-served LLM:

- ChessApiAnalyzer: HTTP client for the engine service.
- LLMCoach: vision extraction and the structured coaching call.
- CoachingProcessor: runs the steps in order and falls back when one fails.
"""

import asyncio
import logging
import os
import re
from typing import Any, Dict, List, Optional

import httpx
import ollama
from pydantic import ValidationError

from core.errors import AI_UNAVAILABLE, ENGINE_UNAVAILABLE, TIMEOUT, CoachingError, InvalidInputError, format_error
from core.models import CoachingAdvice, CoachingResult, EngineAnalysis, PositionContext, UserInfo
from core.rules import (
    NO_MOVE_PLACEHOLDER,
    count_pieces,
    depth_for,
    describe_piece,
    format_final_message,
    is_users_turn,
    phase_advice,
    position_context_from_moves,
    skill_level_for,
    validate_fen,
)
from core.settings import Settings

logger = logging.getLogger(__name__)

CHESS_API_URL = "https://chess-api.com/v1"

VISION_SYSTEM_PROMPT = "vision_system_prompt.txt"
VISION_USER_PROMPT = "vision_user_prompt.txt"
COACHING_SYSTEM_PROMPT = "coaching_system_prompt.txt"

# Patterns used to rescue a best move / evaluation from a non-JSON engine reply.
_MOVE_PATTERNS = [
    re.compile(
        r"(?i:best move|move)\s*:\s*"
        r"([a-h][1-8][a-h][1-8][qrbn]?|O-O(?:-O)?|[NBRQK]?[a-h]?[1-8]?x?[a-h][1-8](?:=[QRBN])?[+#]?)"
    ),
    re.compile(r"[a-h][1-8]\s*(?:→|->)\s*[a-h][1-8]\s*\(([^()\s]+)\)"),
]
_EVAL_PATTERNS = [
    re.compile(r"(?i:eval|evaluation)\s*:\s*\[?([-+]?\d*\.?\d+)"),
    re.compile(r"\[([-+]?\d*\.?\d+)\]"),
]


def parse_text_response(response_text: str) -> Optional[EngineAnalysis]:
    """
    Best-effort parse of an engine reply that is not valid JSON.

    Looks for a best move ("Best Move: Nf3", "e2 → e4 (e4)") and an evaluation
    ("eval: 0.3", "[+0.25]"). Returns None when neither can be found.
    """
    move = None
    for pattern in _MOVE_PATTERNS:
        match = pattern.search(response_text)
        if match:
            move = match.group(1)
            break

    evaluation = None
    for pattern in _EVAL_PATTERNS:
        match = pattern.search(response_text)
        if match:
            try:
                evaluation = float(match.group(1))
            except ValueError:
                continue
            break

    if move is None and evaluation is None:
        return None

    return EngineAnalysis(
        text=response_text,
        evaluation=evaluation if evaluation is not None else 0.0,
        best_move_san=move,
        best_move_uci=move,
    )


def _clean_json_content(content: str) -> str:
    """Strip Markdown code fences and surrounding chatter from an LLM JSON answer."""
    if '```json' in content:
        content = content.split('```json')[1].split('```')[0]
    elif content.strip().startswith('```'):
        content = content.strip()[3:]
        closing = content.rfind('```')
        if closing != -1:
            content = content[:closing]
    content = content.strip()

    start = content.find('{')
    end = content.rfind('}')
    if start != -1 and end > start:
        content = content[start:end + 1]
    return content


def _is_engine_move(move: str, engine: Optional[EngineAnalysis]) -> bool:
    if engine is None:
        return False
    candidates = {m.lower() for m in (engine.best_move_san, engine.best_move_uci) if m}
    return move.strip().lower() in candidates


class ChessApiAnalyzer:
    """
    Handles all interactions with the chess-api.com engine service.

    Each analysis is a single POST with no retries and no caching. Every call
    has its own deadline, and a semaphore caps how many calls run at once.
    """

    def __init__(self, http_client: httpx.AsyncClient, base_url: str = CHESS_API_URL,
                 timeout: float = 5.0, max_concurrency: int = 4):
        """
        Initialize the ChessApiAnalyzer.

        Args:
            http_client: Shared async HTTP client; its lifetime is owned by the caller.
            base_url: Engine endpoint to POST to.
            timeout: Deadline in seconds for one engine call.
            max_concurrency: Maximum number of engine calls in flight.
        """
        self.http_client = http_client
        self.base_url = base_url
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def analyze(self, moves: str, depth: int = 12, variants: int = 1,
                      max_thinking_time: int = 50) -> Optional[EngineAnalysis]:
        """
        Analyse the position reached after a sequence of SAN moves.

        The documented service limits (depth <= 18, variants <= 5,
        max_thinking_time <= 100 ms) are passed through, not enforced.

        Returns:
            The parsed analysis, or None if the engine could not be reached or
            its reply could not be understood.
        """
        payload = {
            "input": moves,
            "depth": depth,
            "variants": variants,
            "maxThinkingTime": max_thinking_time,
        }
        return await self._request(payload)

    async def analyze_fen(self, fen: str, depth: int = 12, variants: int = 1,
                          max_thinking_time: int = 50) -> Optional[EngineAnalysis]:
        """Analyse a position given as FEN. Invalid FENs are rejected locally."""
        is_valid, error = validate_fen(fen)
        if not is_valid:
            logger.warning("Not sending invalid FEN to the engine: %s", error)
            return None
        payload = {
            "fen": fen,
            "depth": depth,
            "variants": variants,
            "maxThinkingTime": max_thinking_time,
        }
        return await self._request(payload)

    async def _request(self, payload: Dict[str, Any]) -> Optional[EngineAnalysis]:
        try:
            async with self._semaphore:
                response = await asyncio.wait_for(
                    self.http_client.post(self.base_url, json=payload),
                    timeout=self.timeout,
                )
            response.raise_for_status()
        except asyncio.TimeoutError:
            logger.warning("Engine call failed: %s", format_error(TIMEOUT, detail=f"no reply within {self.timeout}s"))
            return None
        except httpx.HTTPError as e:
            logger.warning("Engine call failed: %s", format_error(ENGINE_UNAVAILABLE, detail=str(e)))
            return None

        body = response.text
        if not body or not body.strip():
            logger.warning("Empty response from chess engine service")
            return None
        return self.parse_response(body)

    @staticmethod
    def parse_response(body: str) -> Optional[EngineAnalysis]:
        """Decode an engine reply, falling back to text scraping if it is not the expected JSON."""
        try:
            return EngineAnalysis.model_validate_json(body)
        except ValidationError as e:
            logger.warning("Error parsing chess engine response (%s); raw response: %.200s",
                           e.errors()[0]["msg"], body)
        analysis = parse_text_response(body)
        if analysis is None:
            logger.warning("Could not rescue a move or evaluation from the engine response")
        return analysis


class LLMCoach:
    """
    Handles interaction with Ollama models for screenshot reading and coaching.

    Loads prompts from external files and requests structured (JSON schema)
    answers. Neither public method raises on AI failures: each returns its
    documented fallback instead.
    """

    def __init__(self, client: ollama.AsyncClient, model: str, vision_model: str,
                 prompts_dir: str, timeout: float = 60.0,
                 coaching_temperature: float = 0.3, vision_temperature: float = 0.1):
        """
        Initialize the LLM coach.

        Args:
            client: Ollama async client shared for the application lifetime.
            model: Model used for the coaching advice.
            vision_model: Multimodal model used to read the screenshot.
            prompts_dir: Directory holding the system/user prompt files.
            timeout: Deadline in seconds for one AI call.
        """
        self.client = client
        self.model = model
        self.vision_model = vision_model
        self.prompts_dir = prompts_dir
        self.timeout = timeout
        self.coaching_temperature = coaching_temperature
        self.vision_temperature = vision_temperature
        self._prompts: Dict[str, str] = {}

    def _load_prompt(self, name: str) -> str:
        """
        Load a prompt file from the prompts directory, caching its contents.

        Raises:
            FileNotFoundError: If the prompt file is not found.
        """
        if name not in self._prompts:
            path = os.path.join(self.prompts_dir, name)
            if not os.path.exists(path):
                raise FileNotFoundError(f"Prompt file not found at: {path}")
            with open(path, 'r', encoding='utf-8') as f:
                self._prompts[name] = f.read()
        return self._prompts[name]

    async def _chat(self, model: str, messages: List[Dict[str, Any]],
                    schema: Dict[str, Any], temperature: float) -> str:
        response = await asyncio.wait_for(
            self.client.chat(
                model=model,
                messages=messages,
                format=schema,
                options={'temperature': temperature},
            ),
            timeout=self.timeout,
        )
        return _clean_json_content(response['message']['content'] or "")

    async def extract_user_info(self, image_bytes: bytes, mime_type: str = "image/png") -> UserInfo:
        """
        Read the user's colour and rating from a game screenshot.

        Returns:
            The extracted UserInfo, or UserInfo.uncertain() on any failure.
        """
        try:
            messages = [
                {'role': 'system', 'content': self._load_prompt(VISION_SYSTEM_PROMPT)},
                {'role': 'user', 'content': self._load_prompt(VISION_USER_PROMPT), 'images': [image_bytes]},
            ]
            content = await self._chat(self.vision_model, messages,
                                       UserInfo.model_json_schema(), self.vision_temperature)
            if not content:
                logger.info("Vision model returned no content; user info is uncertain")
                return UserInfo.uncertain()
            return UserInfo.model_validate_json(content)
        except Exception as e:
            logger.warning("Error parsing user info from %s screenshot: %s", mime_type,
                           format_error(AI_UNAVAILABLE, detail=repr(e)))
            return UserInfo.uncertain()

    def build_advice_prompt(self, user_info: UserInfo, context: PositionContext,
                            engine: Optional[EngineAnalysis], moves: str = "") -> str:
        """
        Build the user prompt for the coaching call.

        When it is the user's move the engine's best move is presented as the
        recommendation; otherwise it is presented as the opponent's expected
        reply and the model is asked how the user should respond.
        """
        skill_level = skill_level_for(user_info.elo)
        users_turn = is_users_turn(context.active_color, user_info.color)
        side_to_move = "White" if context.active_color == "w" else "Black"
        if user_info.color in ("White", "Black"):
            user_color = user_info.color
        else:
            user_color = "Unknown (coach as White)"

        player_block = f"""
        Player Information:
        - ELO Rating: {user_info.elo if user_info.elo is not None else "Unknown"}
        - Playing as: {user_color}
        - Skill Level: {skill_level}
        - Current Move Number: {context.move_number}
        - Side to move: {side_to_move}

        Game Moves So Far: "{moves}"
        """

        if users_turn:
            task_block = f"""
        It is YOUR move: the player is {side_to_move} and {side_to_move} is to move.
        {self._engine_block(engine, "Engine's best move for you")}
        TASK:
        - Recommend the engine's best move to the player as suggestedMove{self._engine_move_hint(engine)}.
        - Explain at {skill_level} level why this move is good, describing the moving piece correctly.
        """
        else:
            task_block = f"""
        It is your OPPONENT's move: {side_to_move} is to move, not the player.
        {self._engine_block(engine, "Engine's expected move for your opponent")}
        TASK:
        - The engine move above belongs to the opponent. Do NOT present it as the player's move.
        - Explain what your opponent will probably play next and what it threatens or prepares.
        - Tell the player how to respond and what to watch out for.
        - suggestedMove must be a move the player can consider after the opponent's reply,
          or "{NO_MOVE_PLACEHOLDER}" if you cannot tell.
        """

        return player_block + task_block + self._skill_instructions(skill_level)

    @staticmethod
    def _engine_move_hint(engine: Optional[EngineAnalysis]) -> str:
        if engine is None or not engine.best_move:
            return f' (use "{NO_MOVE_PLACEHOLDER}" if you cannot name a concrete move)'
        return f" ({engine.best_move})"

    @staticmethod
    def _engine_block(engine: Optional[EngineAnalysis], move_label: str) -> str:
        if engine is None:
            return (
                "Engine analysis: unavailable. Do not invent concrete tactics; "
                "give general positional advice for the current phase of the game."
            )

        lines = ["Engine analysis:"]
        if engine.best_move:
            piece_name = describe_piece(engine.piece)
            squares = ""
            if engine.from_square and engine.to_square:
                squares = f", {piece_name} from {engine.from_square} to {engine.to_square}"
            lines.append(f"- {move_label}: {engine.best_move} (moving piece: {piece_name}{squares})")
        lines.append(f"- Evaluation: {engine.evaluation:+.2f} (positive favours White, negative favours Black)")
        if engine.depth is not None:
            lines.append(f"- Depth: {engine.depth}")
        if engine.win_chance is not None:
            lines.append(f"- Win chance for the side to move: {engine.win_chance:.1f}%")
        if engine.mate is not None:
            lines.append(f"- Forced mate in: {engine.mate}")
        if engine.text:
            lines.append(f"- Engine summary: {engine.text}")
        return "\n        ".join(lines)

    @staticmethod
    def _skill_instructions(skill_level: str) -> str:
        if skill_level == "beginner":
            detail = ("Use simple words, one or two ideas, no evaluation numbers. "
                      "Prefer safe positional explanations over tactical claims.")
        elif skill_level == "advanced":
            detail = ("Include strategic themes, pawn structure and concrete candidate lines "
                      "where the engine analysis supports them.")
        else:
            detail = "Explain the main plan and one tactical point to keep in mind."
        return f"""
        Instructions:
        - Tailor the coaching to the {skill_level} level. {detail}
        - Name the opening if the moves match a known pattern.
        - Set difficulty to "{skill_level}".
        """

    def default_advice(self, user_info: UserInfo, context: PositionContext,
                       engine: Optional[EngineAnalysis]) -> CoachingAdvice:
        """Low-confidence, phase-based advice used when the coaching call fails."""
        users_turn = is_users_turn(context.active_color, user_info.color)
        engine_move = engine.best_move if engine is not None and users_turn else None
        advice = phase_advice(
            context.move_number,
            context.piece_count,
            difficulty=skill_level_for(user_info.elo),
            suggested_move=engine_move,
        )
        return advice.model_copy(update={"confidence": "low"})

    async def generate_advice(self, user_info: UserInfo, context: PositionContext,
                              engine: Optional[EngineAnalysis], moves: str = "") -> CoachingAdvice:
        """
        Ask the coaching model for structured advice on the current position.

        Returns:
            The model's CoachingAdvice, or default_advice() if the call fails or
            the answer cannot be decoded.
        """
        try:
            messages = [
                {'role': 'system', 'content': self._load_prompt(COACHING_SYSTEM_PROMPT)},
                {'role': 'user', 'content': self.build_advice_prompt(user_info, context, engine, moves)},
            ]
            content = await self._chat(self.model, messages,
                                       CoachingAdvice.model_json_schema(), self.coaching_temperature)
            if not content:
                raise ValueError("coaching model returned no content")
            advice = CoachingAdvice.model_validate_json(content)
        except Exception as e:
            logger.warning("Error getting coaching advice from Ollama: %s", format_error(AI_UNAVAILABLE, detail=repr(e)))
            return self.default_advice(user_info, context, engine)

        if not is_users_turn(context.active_color, user_info.color) and _is_engine_move(advice.suggested_move, engine):
            logger.info("Model suggested the opponent's move %s; replacing it", advice.suggested_move)
            advice = advice.model_copy(update={"suggested_move": NO_MOVE_PLACEHOLDER})
        return advice


class CoachingProcessor:
    """
    Coordinates the coaching pipeline for a single request.

    This class brings together the vision step, the engine analyzer and the LLM
    coach. The steps run strictly in sequence because each one needs the
    previous result.
    """

    def __init__(self, analyzer: ChessApiAnalyzer, coach: LLMCoach,
                 beginner_bypass_elo: int = 600, variants: int = 1,
                 max_thinking_time: int = 50):
        """
        Initialize the CoachingProcessor.

        Args:
            analyzer: A ChessApiAnalyzer instance.
            coach: An LLMCoach instance.
            beginner_bypass_elo: Players rated below this never get LLM advice.
            variants: Engine variants to request.
            max_thinking_time: Engine thinking time in milliseconds.
        """
        self.analyzer = analyzer
        self.coach = coach
        self.beginner_bypass_elo = beginner_bypass_elo
        self.variants = variants
        self.max_thinking_time = max_thinking_time

    async def coach_position(self, image_bytes: bytes, moves: str,
                             mime_type: str = "image/png",
                             depth: Optional[int] = None) -> CoachingResult:
        """
        Produce coaching advice for a screenshot and the moves played so far.

        Args:
            image_bytes: The screenshot.
            moves: Space-separated SAN moves, e.g. "e4 e5 Nf3 Nc6".
            mime_type: Content type of the screenshot.
            depth: Engine depth to force; by default it is derived from the ELO.

        Raises:
            InvalidInputError: If the screenshot is empty or not an image.
            CoachingError: If the pipeline fails unexpectedly.
        """
        if not image_bytes:
            raise InvalidInputError("Screenshot is empty")
        if mime_type and not mime_type.startswith("image/"):
            raise InvalidInputError(f"Screenshot must be an image, got {mime_type}")
        moves = (moves or "").strip()

        context = position_context_from_moves(moves)
        analysis_depth = depth
        try:
            logger.info("Extracting user info from screenshot (%d bytes)", len(image_bytes))
            user_info = await self.coach.extract_user_info(image_bytes, mime_type)
            logger.info("User info: %s", user_info)

            if analysis_depth is None:
                analysis_depth = depth_for(user_info.elo)
            logger.info("Move %d, %s to move, engine depth %d for ELO %s",
                        context.move_number, context.active_color, analysis_depth, user_info.elo)

            engine = await self.analyzer.analyze(moves, analysis_depth, self.variants, self.max_thinking_time)
            context = context.model_copy(update={
                "piece_count": count_pieces(moves, engine.fen if engine is not None else None),
            })

            advice = await self._advise(user_info, context, engine, moves)
            message = format_final_message(advice, user_info)
        except Exception as e:
            logger.exception("Chess coaching pipeline failed")
            raise CoachingError(
                f"Chess coaching orchestration failed: {e}",
                moves=moves,
                analysis_depth=analysis_depth,
                move_number=context.move_number,
            ) from e

        best_move = None if advice.suggested_move == NO_MOVE_PLACEHOLDER else advice.suggested_move
        return CoachingResult(best_move=best_move, advice=message)

    async def _advise(self, user_info: UserInfo, context: PositionContext,
                      engine: Optional[EngineAnalysis], moves: str) -> CoachingAdvice:
        if user_info.elo is not None and user_info.elo < self.beginner_bypass_elo:
            logger.info("ELO %d is below %d; using phase-based beginner advice",
                        user_info.elo, self.beginner_bypass_elo)
            users_turn = is_users_turn(context.active_color, user_info.color)
            engine_move = engine.best_move if engine is not None and users_turn else None
            return phase_advice(context.move_number, context.piece_count,
                                difficulty="beginner", suggested_move=engine_move)

        return await self.coach.generate_advice(user_info, context, engine, moves)


def build_processor(config: Settings, http_client: httpx.AsyncClient,
                    ollama_client: ollama.AsyncClient) -> CoachingProcessor:
    """Wire the pipeline from settings and the long-lived clients owned by the caller."""
    analyzer = ChessApiAnalyzer(
        http_client,
        base_url=config.chess_api_url,
        timeout=config.engine_timeout_s,
        max_concurrency=config.engine_max_concurrency,
    )
    coach = LLMCoach(
        ollama_client,
        model=config.ollama_model,
        vision_model=config.ollama_vision_model,
        prompts_dir=config.prompts_dir,
        timeout=config.ai_timeout_s,
        coaching_temperature=config.coaching_temperature,
        vision_temperature=config.vision_temperature,
    )
    return CoachingProcessor(
        analyzer,
        coach,
        beginner_bypass_elo=config.beginner_bypass_elo,
        variants=config.engine_variants,
        max_thinking_time=config.engine_max_thinking_time_ms,
    )
