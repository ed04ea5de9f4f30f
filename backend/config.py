from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_SYSTEM_PROMPT = (
    "You are a medical support assistant. You do NOT diagnose or prescribe. "
    "You provide general health information and encourage consulting a doctor. "
    "For emergencies (chest pain, breathing issues, severe bleeding, suicidal thoughts), "
    "instruct to seek immediate help."
)


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _llama_server_url() -> str:
    explicit = os.getenv("LLAMA_SERVER_URL", "").strip()
    if explicit:
        return explicit.rstrip("/")
    host = os.getenv("LLAMA_SERVER_HOST", "localhost").strip() or "localhost"
    port = os.getenv("LLAMA_SERVER_PORT", "8080").strip() or "8080"
    return f"http://{host}:{port}"


@dataclass(frozen=True)
class ChatSettings:
    api_key: str | None
    db_path: str
    safety_mode: bool
    llama_server_url: str
    request_timeout_seconds: float
    model_name: str
    retry_attempts: int
    retry_delay_seconds: float
    context_window: int
    max_messages_per_session: int
    max_session_hours: float
    messages_per_minute: int
    messages_per_hour: int
    max_message_length: int
    heartbeat_seconds: float
    cors_origins: tuple[str, ...]
    log_level: str
    host: str
    port: int
    system_prompt: str
    fast_system_prompt: str

    @property
    def active_system_prompt(self) -> str:
        return self.system_prompt if self.safety_mode else self.fast_system_prompt


def load_settings() -> ChatSettings:
    default_db = str(Path(__file__).resolve().parent / "careline.sqlite")
    origins = os.getenv("CORS_ORIGINS", "")
    return ChatSettings(
        api_key=os.getenv("CHATBOT_API_KEY") or None,
        db_path=os.getenv("CHATBOT_DB_PATH", default_db),
        safety_mode=_env_bool("MEDICAL_SAFETY_MODE", True),
        llama_server_url=_llama_server_url(),
        request_timeout_seconds=_env_float("LLAMA_REQUEST_TIMEOUT_SECONDS", 300.0),
        model_name=os.getenv("LLAMA_MODEL_NAME", "llama-3-8b-instruct"),
        retry_attempts=_env_int("LLAMA_RETRY_ATTEMPTS", 3),
        retry_delay_seconds=_env_float("LLAMA_RETRY_DELAY_SECONDS", 1.0),
        context_window=_env_int("CHATBOT_CONTEXT_WINDOW", 10),
        max_messages_per_session=_env_int("CHATBOT_MAX_MESSAGES_PER_SESSION", 50),
        max_session_hours=_env_float("CHATBOT_MAX_SESSION_HOURS", 24.0),
        messages_per_minute=_env_int("CHATBOT_MESSAGES_PER_MINUTE", 10),
        messages_per_hour=_env_int("CHATBOT_MESSAGES_PER_HOUR", 100),
        max_message_length=_env_int("CHATBOT_MAX_MESSAGE_LENGTH", 2000),
        heartbeat_seconds=_env_float("CHATBOT_HEARTBEAT_SECONDS", 15.0),
        cors_origins=tuple(origin.strip() for origin in origins.split(",") if origin.strip()),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        host=os.getenv("CHATBOT_HOST", "127.0.0.1"),
        port=_env_int("CHATBOT_PORT", 3000),
        system_prompt=os.getenv("CHATBOT_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
        fast_system_prompt=os.getenv("CHATBOT_FAST_SYSTEM_PROMPT", ""),
    )
