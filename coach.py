# coach.py
"""
Chess screenshot coach that suggests a move and explains it.

This module provides a CLI interface for coaching from a Chess.com screenshot
and the moves played so far, using the chess-api.com engine and an
Ollama-served LLM.
"""

import argparse
import asyncio
import mimetypes
import sys

import httpx
import ollama

from core.analysis import build_processor
from core.errors import CoachingError, InvalidInputError
from core.settings import configure_logging, settings


async def run(screenshot_path: str, moves: str, depth=None, mime_type=None):
    """Run the coaching pipeline once for a screenshot on disk."""
    with open(screenshot_path, "rb") as f:
        image_bytes = f.read()
    mime_type = mime_type or mimetypes.guess_type(screenshot_path)[0] or "image/png"

    async with httpx.AsyncClient(timeout=settings.engine_timeout_s) as http_client:
        ollama_client = ollama.AsyncClient(host=settings.ollama_host, timeout=settings.ai_timeout_s)
        processor = build_processor(settings, http_client, ollama_client)
        return await processor.coach_position(image_bytes, moves, mime_type=mime_type, depth=depth)


def main():
    """Main function to run the coaching from the command line."""
    parser = argparse.ArgumentParser(description="Suggests a move and explains it from a chess screenshot.")
    parser.add_argument("screenshot", help="Path to the Chess.com screenshot (PNG or JPEG).")
    parser.add_argument("--moves", default="",
                        help="Moves played so far in algebraic notation, e.g. \"e4 e5 Nf3 Nc6\".")
    parser.add_argument("--depth", type=int, choices=range(1, 19), metavar="[1-18]",
                        help="Engine depth override. By default it is chosen from the player's ELO.")
    parser.add_argument("--mime-type", help="Content type of the screenshot if it cannot be guessed.")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level (default: %(default)s).")
    args = parser.parse_args()

    configure_logging(args.log_level)

    try:
        result = asyncio.run(run(args.screenshot, args.moves, args.depth, args.mime_type))
    except FileNotFoundError:
        print(f"Error: Screenshot not found at {args.screenshot}", file=sys.stderr)
        sys.exit(1)
    except InvalidInputError as e:
        print(f"Error: Invalid input: {e}", file=sys.stderr)
        sys.exit(2)
    except CoachingError as e:
        print(f"Error: Chess coaching analysis failed: {e}", file=sys.stderr)
        sys.exit(1)

    print(result.advice)
    print("-" * 40)
    print(f"Best move: {result.best_move or 'n/a'}")


if __name__ == "__main__":
    main()
