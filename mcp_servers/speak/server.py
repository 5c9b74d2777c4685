"""
Speak/stop request handling on top of a platform speech engine.
Playback failures are returned as text so the calling agent can react to them.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .engine import PlaybackError, SpeechEngine, build_engine


log = logging.getLogger(__name__)

MIN_SPEED = 0.1
MAX_SPEED = 1.9
DEFAULT_SPEED = 1.0

SPEAK_SUCCESS = (
    "Successfully spoke. You can wait for an answer from the user now "
    "or continue speaking if you were not done."
)
STOP_SUCCESS = "Speech stopped"


class SpeakValidationError(ValueError):
    """Malformed or missing tool arguments; never reaches the engine."""


@dataclass
class SpeakRequest:
    text: str
    voice: Optional[str] = None
    speed: Optional[float] = None

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "SpeakRequest":
        text = args.get("text")
        if not isinstance(text, str):
            raise SpeakValidationError("text is required and must be a string")
        if not text.strip():
            raise SpeakValidationError("text must not be empty")

        voice = args.get("voice")
        if voice is not None and (not isinstance(voice, str) or not voice.strip()):
            raise SpeakValidationError("voice must be a non-empty string")

        speed = args.get("speed")
        if speed is not None:
            if isinstance(speed, bool) or not isinstance(speed, (int, float)):
                raise SpeakValidationError("speed must be a number")
            if not MIN_SPEED <= speed <= MAX_SPEED:
                raise SpeakValidationError(f"speed must be between {MIN_SPEED} and {MAX_SPEED}, got {speed}")
            speed = float(speed)
        return cls(text=text, voice=voice, speed=speed)


@dataclass
class SpeechResult:
    success: bool
    error_message: Optional[str] = None


class SpeakService:
    def __init__(self, engine: Optional[SpeechEngine] = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> SpeechEngine:
        # Built on first use; SPEAK_ENGINE is not read at import.
        if self._engine is None:
            self._engine = build_engine()
        return self._engine

    @engine.setter
    def engine(self, engine: SpeechEngine) -> None:
        self._engine = engine

    async def handle_speak(self, args: Dict[str, Any]) -> str:
        request = SpeakRequest.from_args(args)
        result = await self._speak(request)
        if result.success:
            return SPEAK_SUCCESS
        return f'Error speaking "{request.text}": {result.error_message}'

    def handle_stop(self, args: Optional[Dict[str, Any]] = None) -> str:
        log.info("stop requested")
        try:
            self.engine.stop()
        except Exception as exc:
            log.warning("stop failed: %s", exc)
            return f"Error stopping speech: {exc}"
        return STOP_SUCCESS

    async def _speak(self, request: SpeakRequest) -> SpeechResult:
        log.info(
            "speaking %d chars (voice=%s, speed=%s)",
            len(request.text),
            request.voice or "default",
            request.speed if request.speed is not None else DEFAULT_SPEED,
        )
        try:
            await self.engine.speak(request.text, voice=request.voice, speed=request.speed)
        except PlaybackError as exc:
            log.warning("playback failed: %s", exc)
            return SpeechResult(success=False, error_message=str(exc))
        except Exception as exc:
            log.exception("speech engine raised unexpectedly")
            return SpeechResult(success=False, error_message=str(exc) or type(exc).__name__)
        return SpeechResult(success=True)
