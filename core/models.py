# core/models.py
"""
Data model shared by the coaching pipeline.

Every object here lives for a single request. The JSON field names match the
wire format (camelCase from the AI schema and chess-api.com), while Python code
uses the snake_case attribute names.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Color = Literal["White", "Black", "Uncertain"]
Confidence = Literal["High", "Medium", "Low"]
Difficulty = Literal["beginner", "intermediate", "advanced"]
AdviceConfidence = Literal["high", "medium", "low"]


class UserInfo(BaseModel):
    """Who the user is, as read from the screenshot by the vision step."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    color: Color = "Uncertain"
    elo: Optional[int] = None
    color_confidence: Optional[Confidence] = Field(default=None, alias="colorConfidence")
    elo_confidence: Optional[Confidence] = Field(default=None, alias="eloConfidence")

    @field_validator("color", mode="before")
    @classmethod
    def _normalize_color(cls, value):
        if value is None:
            return "Uncertain"
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("white", "w"):
                return "White"
            if lowered in ("black", "b"):
                return "Black"
            return "Uncertain"
        return value

    @field_validator("color_confidence", "elo_confidence", mode="before")
    @classmethod
    def _normalize_confidence(cls, value):
        if isinstance(value, str):
            return value.strip().capitalize() or None
        return value

    @classmethod
    def uncertain(cls) -> "UserInfo":
        return cls(color="Uncertain", elo=None)


class EngineAnalysis(BaseModel):
    """One chess-api.com reply. Only `text` and `eval` are reliably present."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    text: str = ""
    evaluation: float = Field(alias="eval")
    best_move_uci: Optional[str] = Field(default=None, alias="move")
    best_move_san: Optional[str] = Field(default=None, alias="san")
    piece: Optional[str] = None
    from_square: Optional[str] = Field(default=None, alias="from")
    to_square: Optional[str] = Field(default=None, alias="to")
    depth: Optional[int] = None
    win_chance: Optional[float] = Field(default=None, alias="winChance")
    mate: Optional[int] = None
    fen: Optional[str] = None
    turn: Optional[Literal["w", "b"]] = None
    continuation: Optional[List[str]] = Field(default=None, alias="continuationArr")

    @property
    def best_move(self) -> Optional[str]:
        return self.best_move_san or self.best_move_uci


class PositionContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    move_number: int = Field(default=1, ge=1)
    active_color: Literal["w", "b"] = "w"
    piece_count: Optional[int] = None


class CoachingAdvice(BaseModel):
    """Structured coaching answer, either from the AI call or a deterministic fallback."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    suggested_move: str = Field(alias="suggestedMove")
    explanation: str
    reasoning: str
    difficulty: Difficulty
    confidence: AdviceConfidence

    @field_validator("difficulty", "confidence", mode="before")
    @classmethod
    def _lowercase(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class CoachingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    best_move: Optional[str] = None
    advice: str
