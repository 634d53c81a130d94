from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent

TERM_SELECTION_MODES = ("multi", "single")


@dataclass(frozen=True)
class Settings:
    """Configuration container for collaborator access, retry policy, and session limits."""
    api_base_url: str
    api_token: str
    request_timeout: float
    max_consecutive_errors: int
    manual_flow_url: str
    campaign_view_url: str
    term_selection_mode: str
    max_sessions: int
    sessions_path: Optional[Path]


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables.
    Dependencies: Uses os.getenv and BASE_DIR for the default sessions file.
    Failure Modes: Invalid numeric env values or an unknown TERM_SELECTION_MODE raise ValueError.
    If Removed: The gateway and conversation engine cannot be configured at startup.
    Testing Notes: Verify defaults and overrides via monkeypatched environment variables.
    """
    # Resolve the sessions file, then build Settings.
    sessions_path = os.getenv("SESSIONS_PATH")
    if sessions_path:
        sessions_file: Optional[Path] = Path(sessions_path)
    elif os.getenv("PERSIST_SESSIONS", "1") == "0":
        sessions_file = None
    else:
        sessions_file = (BASE_DIR / "data" / "sessions.json").resolve()

    term_mode = os.getenv("TERM_SELECTION_MODE", "multi").strip().lower()
    if term_mode not in TERM_SELECTION_MODES:
        raise ValueError(f"TERM_SELECTION_MODE must be one of {', '.join(TERM_SELECTION_MODES)}")

    return Settings(
        api_base_url=os.getenv("LINKWIZARD_API_BASE_URL", "http://localhost:5000/api").rstrip("/"),
        api_token=os.getenv("LINKWIZARD_API_TOKEN", ""),
        request_timeout=float(os.getenv("REQUEST_TIMEOUT", "10")),
        max_consecutive_errors=int(os.getenv("MAX_CONSECUTIVE_ERRORS", "3")),
        manual_flow_url=os.getenv("MANUAL_FLOW_URL", "/new-campaign"),
        campaign_view_url=os.getenv("CAMPAIGN_VIEW_URL", "/campaigns"),
        term_selection_mode=term_mode,
        max_sessions=int(os.getenv("MAX_SESSIONS", "200")),
        sessions_path=sessions_file,
    )
