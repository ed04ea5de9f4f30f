from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
for path in (BACKEND_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from chat_core import GenerationRegistry, InputGuard, SafetyFilter  # noqa: E402
from chat_core.handoff import StaffDesk  # noqa: E402
from chat_core.orchestrator import SessionOrchestrator  # noqa: E402
from chat_store import ConversationStore, HandoffStore, SQLiteChatDB  # noqa: E402
from fake_engine import ScriptedEngine  # noqa: E402

API_KEY = "test-api-key"


@pytest.fixture
def chat_db(tmp_path) -> SQLiteChatDB:
    return SQLiteChatDB(str(tmp_path / "careline-test.sqlite"))


@pytest.fixture
def store(chat_db) -> ConversationStore:
    return ConversationStore(chat_db)


@pytest.fixture
def handoffs(chat_db) -> HandoffStore:
    return HandoffStore(chat_db)


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture
def make_orchestrator(chat_db, engine) -> Callable[..., SessionOrchestrator]:
    def _make(*, safety_mode: bool = True, **options) -> SessionOrchestrator:
        conversation_store = ConversationStore(chat_db, safety_mode=safety_mode)
        options.setdefault("heartbeat_seconds", 0)
        return SessionOrchestrator(
            conversation_store,
            HandoffStore(chat_db),
            SafetyFilter(),
            options.pop("inference", engine),
            generations=options.pop("generations", GenerationRegistry()),
            guard=InputGuard(),
            safety_mode=safety_mode,
            **options,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> SessionOrchestrator:
    return make_orchestrator()


@pytest.fixture
def staff_desk(orchestrator) -> StaffDesk:
    return StaffDesk(orchestrator.store, orchestrator.handoffs, generations=orchestrator.generations)


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "careline-api.sqlite"
    monkeypatch.setenv("CHATBOT_DB_PATH", str(db_path))
    monkeypatch.setenv("CHATBOT_API_KEY", API_KEY)
    monkeypatch.setenv("MEDICAL_SAFETY_MODE", "true")
    monkeypatch.setenv("CHATBOT_HEARTBEAT_SECONDS", "0")
    # Keep CI deterministic; no real engine is ever contacted.
    monkeypatch.setenv("LLAMA_SERVER_URL", "http://engine.invalid:8080")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def api_engine(backend_module) -> ScriptedEngine:
    fake = ScriptedEngine()
    backend_module.container.use_inference(fake)
    return fake


@pytest.fixture
def client(backend_module, api_engine):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def api_headers() -> Callable[..., dict[str, str]]:
    def _make(staff_id: str | None = None) -> dict[str, str]:
        headers = {"X-API-Key": API_KEY}
        if staff_id:
            headers["X-Staff-Id"] = staff_id
        return headers

    return _make
