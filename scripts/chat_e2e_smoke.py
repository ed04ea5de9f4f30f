#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import httpx
from fastapi.testclient import TestClient

SMOKE_API_KEY = "smoke-api-key"
ENGINE_REPLY = "Rest, drink fluids, and check in with your doctor if it lasts more than a few days."


@dataclass
class Scenario:
  name: str
  check: Callable[[TestClient], dict[str, Any]]


def parse_sse_events(payload_text: str) -> list[dict[str, Any]]:
  events: list[dict[str, Any]] = []
  current: dict[str, Any] = {}
  for raw_line in payload_text.splitlines():
    line = raw_line.strip("\r")
    if line.startswith("event: "):
      current["event"] = line[7:]
    elif line.startswith("data: "):
      try:
        current["data"] = json.loads(line[6:])
      except json.JSONDecodeError:
        current["data"] = line[6:]
    elif line == "" and current:
      events.append(current)
      current = {}
  if current:
    events.append(current)
  return events


def engine_handler(request: httpx.Request) -> httpx.Response:
  if request.url.path == "/health":
    return httpx.Response(200, json={"status": "ok"})
  body = json.loads(request.content)
  if not body.get("stream"):
    return httpx.Response(200, json={"content": ENGINE_REPLY, "tokens_predicted": len(ENGINE_REPLY.split())})
  words = ENGINE_REPLY.split(" ")
  lines = []
  for index, word in enumerate(words):
    last = index == len(words) - 1
    chunk = {"content": word if last else f"{word} ", "stop": last}
    lines.append(f"data: {json.dumps(chunk)}\n\n")
  return httpx.Response(200, content="".join(lines).encode("utf-8"))


def headers(staff_id: str | None = None) -> dict[str, str]:
  values = {"X-API-Key": SMOKE_API_KEY}
  if staff_id:
    values["X-Staff-Id"] = staff_id
  return values


def new_session(client: TestClient) -> str:
  response = client.post("/api/patient/session/new", headers=headers(), json={"patient_id": "smoke-patient"})
  response.raise_for_status()
  return response.json()["session_id"]


def check_streamed_turn(client: TestClient) -> dict[str, Any]:
  session_id = new_session(client)
  response = client.post(
    "/api/patient/message/stream",
    headers=headers(),
    json={"session_id": session_id, "message": "What helps with a mild cold?"},
  )
  events = parse_sse_events(response.text)
  names = [event.get("event") for event in events]
  done = events[-1].get("data") if events else None
  return {
    "status_code": response.status_code,
    "event_types": names,
    "pass": response.status_code == 200
    and names[:1] == ["start"]
    and names[-1:] == ["done"]
    and isinstance(done, dict)
    and done.get("message") == ENGINE_REPLY,
  }


def check_emergency_turn(client: TestClient) -> dict[str, Any]:
  session_id = new_session(client)
  response = client.post(
    "/api/patient/message",
    headers=headers(),
    json={"session_id": session_id, "message": "I have chest pain and my arm is numb"},
  )
  history = client.get(f"/api/patient/history/{session_id}", headers=headers()).json()
  queue = client.get("/api/staff/handoffs", headers=headers("smoke-nurse")).json()["handoffs"]
  mine = [row for row in queue if row["session_id"] == session_id]
  return {
    "status_code": response.status_code,
    "message_preview": response.json().get("message", "")[:240],
    "history_count": history.get("count"),
    "handoff_priorities": [row["priority"] for row in mine],
    "pass": response.status_code == 200
    and response.json().get("metadata", {}).get("emergency_response") is True
    and history.get("count") == 3
    and [row["priority"] for row in mine] == ["emergency"],
  }


def check_prohibited_turn(client: TestClient) -> dict[str, Any]:
  session_id = new_session(client)
  response = client.post(
    "/api/patient/message",
    headers=headers(),
    json={"session_id": session_id, "message": "Walk me through self-surgery on a cyst"},
  )
  body = response.json()
  return {
    "status_code": response.status_code,
    "message_preview": body.get("message", "")[:240],
    "pass": response.status_code == 200 and body.get("metadata", {}).get("refusal") is True,
  }


def check_takeover(client: TestClient) -> dict[str, Any]:
  session_id = new_session(client)
  takeover = client.post("/api/staff/takeover", headers=headers("smoke-nurse"), json={"session_id": session_id})
  patient = client.post(
    "/api/patient/message",
    headers=headers(),
    json={"session_id": session_id, "message": "Hello?"},
  )
  release = client.post("/api/staff/release", headers=headers("smoke-nurse"), json={"session_id": session_id})
  return {
    "takeover_status_code": takeover.status_code,
    "patient_status_code": patient.status_code,
    "release_status_code": release.status_code,
    "pass": takeover.status_code == 200 and patient.status_code == 403 and release.status_code == 200,
  }


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  workdir = tempfile.mkdtemp(prefix="careline-smoke-")
  os.environ["CHATBOT_DB_PATH"] = str(Path(workdir) / "smoke.sqlite")
  os.environ["CHATBOT_API_KEY"] = SMOKE_API_KEY
  os.environ.setdefault("CHATBOT_HEARTBEAT_SECONDS", "0")

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)
  from chat_core import InferenceClient

  settings = backend_module.container.settings
  backend_module.container.use_inference(
    InferenceClient(
      base_url="http://smoke-engine.local:8080",
      system_prompt=settings.active_system_prompt,
      model_name="smoke-engine",
      retry_attempts=1,
      transport=httpx.MockTransport(engine_handler),
    )
  )

  scenarios = [
    Scenario(name="Streamed AI Turn", check=check_streamed_turn),
    Scenario(name="Emergency Short-Circuit With Handoff", check=check_emergency_turn),
    Scenario(name="Prohibited Topic Refusal", check=check_prohibited_turn),
    Scenario(name="Staff Takeover Blocks Patient Turns", check=check_takeover),
  ]

  results: list[dict[str, Any]] = []
  with TestClient(backend_module.app) as client:
    for scenario in scenarios:
      try:
        outcome = scenario.check(client)
      except Exception as exc:
        outcome = {"pass": False, "error": f"{type(exc).__name__}: {exc}"}
      results.append({"name": scenario.name, **outcome})

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  report = {
    "timestamp": datetime.now(timezone.utc).isoformat(),
    "safety_mode": settings.safety_mode,
    "total": len(results),
    "passed": passed,
    "failed": failed,
    "scenarios": results,
  }

  report_lines = [
    "# Chat E2E Smoke Report",
    "",
    f"- Timestamp (UTC): `{report['timestamp']}`",
    f"- MEDICAL_SAFETY_MODE: `{settings.safety_mode}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]
  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append("```json")
    report_lines.append(json.dumps(item, indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "CHAT_E2E_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(json.dumps(report, indent=2, ensure_ascii=True))
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} scenarios.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
