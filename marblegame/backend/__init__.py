"""Backend package for the marble guessing game."""

from .config import BackendSettings, load_settings
from .models import ErrorCode, Guess, Phase, PlayerRef, RoundResult
from .participant import Participant
from .registry import SessionRegistry
from .security import generate_session_code, generate_token
from .session import Session
from .state import build_state_view, render_state_message

__all__ = [
    "BackendSettings",
    "build_state_view",
    "ErrorCode",
    "generate_session_code",
    "generate_token",
    "Guess",
    "load_settings",
    "Participant",
    "Phase",
    "PlayerRef",
    "render_state_message",
    "RoundResult",
    "Session",
    "SessionRegistry",
]
