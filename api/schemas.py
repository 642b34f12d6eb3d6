from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CoachingResponse(BaseModel):
    """Envelope returned by POST /api/coach for both success and failure."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    best_move: Optional[str] = Field(default=None, alias="bestMove",
                                     description="Recommended move in algebraic notation")
    advice: Optional[str] = Field(default=None, description="Coaching text for the user")
    error: Optional[str] = Field(default=None, description="Error message if the request failed")
