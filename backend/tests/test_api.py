"""API integration tests."""

from __future__ import annotations

import re
import time

import orjson
import pytest
from fastapi.testclient import TestClient

from docchat.api import dependencies as deps
from docchat.app import app

from conftest import FakeChatProvider, paged_text

OWNER = {"X-User-Id": "owner-1"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Roles": "super_admin"}

_QUIZ_RE = re.compile(r"Generate (\d+) multiple-choice")


def _reply(messages) -> str:
    match = _QUIZ_RE.search(messages[-1]["content"])
    if match is None:
        return "The target is below 130[1].\n\n**References**\n[1] Page 1"
    questions = [
        {"question": f"Question {idx}?", "options": ["A", "B", "C", "D"], "correctAnswer": 0, "page": 1}
        for idx in range(int(match.group(1)))
    ]
    return orjson.dumps({"questions": questions}).decode("utf-8")


@pytest.fixture
def chat_provider() -> FakeChatProvider:
    return FakeChatProvider(
        default=_reply,
        stream_chunks=["The target is below 130[1].", "\n\n**References**\n[1] Page 1"],
    )


@pytest.fixture
def client(chat_provider: FakeChatProvider) -> TestClient:
    deps._CHAT_PROVIDER = chat_provider
    with TestClient(app) as test_client:
        yield test_client


def _ingest(client: TestClient, slug: str, headers=OWNER, **body) -> dict:
    payload = {
        "upload_type": "text",
        "title": "Cardio Manual",
        "text": paged_text(["blood pressure target is below 130", "dosage guidance"]),
        **body,
    }
    resp = client.post(f"/documents/{slug}/ingest", json=payload, headers=headers)
    assert resp.status_code == 202, resp.text
    accepted = resp.json()
    # Anonymous uploads are polled as an admin; nobody else can see them before publish.
    _wait_for(client, slug, accepted["event_id"], headers=headers or ADMIN)
    return accepted


def _wait_for(client: TestClient, slug: str, event_id: str, headers=OWNER, timeout: float = 10.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        resp = client.get(f"/documents/{slug}/history", headers=headers)
        assert resp.status_code == 200, resp.text
        for event in resp.json():
            if event["id"] == event_id and event["status"] != "started":
                return event
        time.sleep(0.02)
    raise AssertionError(f"event {event_id} did not finish")


def _chat(client: TestClient, session: str = "s1", slugs=("cardio",), headers=OWNER):
    return client.post(
        "/chat",
        json={"message": "What is the blood pressure target?", "document_slugs": list(slugs), "session_id": session},
        headers=headers,
    )


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_ingest_then_chat_flow(client: TestClient) -> None:
    accepted = _ingest(client, "cardio")
    assert accepted["status"] == "accepted"

    (event,) = client.get("/documents/cardio/history").json()
    assert event["status"] == "completed"
    assert event["action_type"] == "train"
    assert event["chunk_count"] >= 1

    document = client.get("/documents/cardio").json()
    assert document["title"] == "Cardio Manual"
    assert document["live_chunk_count"] == event["chunk_count"]

    resp = _chat(client)
    assert resp.status_code == 200, resp.text
    payload = resp.json()
    assert "below 130" in payload["answer"]
    assert payload["citations"] == [{"number": 1, "page": 1, "document": None, "document_slug": "cardio"}]
    assert payload["metadata"]["chunks_used"] >= 1
    assert payload["partial_failure"] is None

    (audit,) = client.get("/admin/chat/audits", params={"session_id": "s1"}, headers=ADMIN).json()
    assert audit["chunk_ids"] == payload["metadata"]["chunk_ids"]
    assert audit["document_slugs"] == ["cardio"]
    assert audit["user_id"] == "owner-1"
    assert audit["model"] == "fake-chat"
    assert audit["streaming"] is False
    assert audit["retrieval_ms"] == payload["metadata"]["retrieval_ms"]
    assert audit["generation_ms"] == payload["metadata"]["generation_ms"]


def test_invalid_ingest_body_is_rejected(client: TestClient) -> None:
    resp = client.post(
        "/documents/cardio/ingest",
        json={"upload_type": "text", "text": "x", "content_base64": "eA=="},
        headers=OWNER,
    )
    assert resp.status_code == 422
    bad_slug = client.post("/documents/Not A Slug/ingest", json={"upload_type": "text", "text": "x"}, headers=OWNER)
    assert bad_slug.status_code == 400
    assert bad_slug.json()["kind"] == "validation"


def test_retrain_requires_owner(client: TestClient) -> None:
    _ingest(client, "cardio")
    resp = client.post(
        "/documents/cardio/ingest",
        json={"upload_type": "text", "mode": "replace", "text": "new content"},
        headers={"X-User-Id": "someone-else"},
    )
    assert resp.status_code == 403


def test_anonymous_caller_cannot_retrain_anonymous_document(client: TestClient) -> None:
    _ingest(client, "open-notes", headers={})
    assert client.get("/documents/open-notes").json()["title"] == "Cardio Manual"
    resp = client.post(
        "/documents/open-notes/ingest",
        json={"upload_type": "text", "mode": "replace", "text": "overwritten"},
    )
    assert resp.status_code == 403
    admin = client.post(
        "/documents/open-notes/ingest",
        json={"upload_type": "text", "mode": "append", "text": "[Page 3] appendix notes"},
        headers=ADMIN,
    )
    assert admin.status_code == 202
    event = _wait_for(client, "open-notes", admin.json()["event_id"], headers=ADMIN)
    assert event["status"] == "completed"
    assert event["requested_by"] == "admin-1"


def test_burst_is_rate_limited(client: TestClient) -> None:
    _ingest(client, "cardio")
    for _ in range(3):
        assert _chat(client).status_code == 200
    resp = _chat(client)
    assert resp.status_code == 429
    body = resp.json()
    assert body["type"] == "rate_limit_exceeded"
    assert body["reason"] == "burst_limit"
    assert int(resp.headers["Retry-After"]) == body["retry_after"]
    assert _chat(client, session="s2").status_code == 200


def test_unknown_and_restricted_documents(client: TestClient) -> None:
    assert _chat(client, slugs=("missing",)).status_code == 404
    _ingest(client, "private", access_level="owner_restricted")
    assert _chat(client, slugs=("private",), headers={"X-User-Id": "stranger"}).status_code == 403
    assert client.get("/documents/private", headers={"X-User-Id": "stranger"}).status_code == 403
    assert client.get("/documents/private", headers=ADMIN).status_code == 200


def test_history_follows_document_access(client: TestClient) -> None:
    _ingest(client, "private", access_level="owner_restricted")
    stranger = client.get("/documents/private/history", headers={"X-User-Id": "stranger"})
    assert stranger.status_code == 403
    assert client.get("/documents/private/history").status_code == 403
    (event,) = client.get("/documents/private/history", headers=OWNER).json()
    assert event["requested_by"] == "owner-1"
    assert len(client.get("/documents/private/history", headers=ADMIN).json()) == 1
    assert client.get("/documents/missing/history", headers=OWNER).status_code == 404


def test_stream_frames(client: TestClient) -> None:
    _ingest(client, "cardio")
    with client.stream(
        "POST",
        "/chat/stream",
        json={"message": "Target?", "document_slugs": ["cardio"], "session_id": "s1"},
        headers=OWNER,
    ) as resp:
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        body = "".join(resp.iter_text())
    frames = [orjson.loads(line[len("data: ") :]) for line in body.split("\n\n") if line.startswith("data: ")]
    assert [frame["type"] for frame in frames] == ["content", "content", "done"]
    assert frames[-1]["metadata"]["citations"][0]["page"] == 1
    (audit,) = client.get("/admin/chat/audits", headers=ADMIN).json()
    assert audit["streaming"] is True
    assert audit["session_id"] == "s1"
    assert audit["chunk_ids"] == frames[-1]["metadata"]["chunk_ids"]
    assert client.get("/admin/chat/audits", headers=OWNER).status_code == 403


def test_stream_reports_unknown_document_as_frame(client: TestClient) -> None:
    with client.stream(
        "POST",
        "/chat/stream",
        json={"message": "Target?", "document_slugs": ["missing"], "session_id": "s1"},
    ) as resp:
        body = "".join(resp.iter_text())
    frames = [orjson.loads(line[len("data: ") :]) for line in body.split("\n\n") if line.startswith("data: ")]
    assert len(frames) == 1
    assert frames[0]["type"] == "error"
    assert frames[0]["error"]["kind"] == "validation"
    assert client.get("/admin/chat/audits", headers=ADMIN).json() == []


def test_quiz_generation_and_regeneration_limit(client: TestClient) -> None:
    _ingest(client, "cardio")
    resp = client.post("/quiz/cardio/generate", headers=OWNER)
    assert resp.status_code == 200, resp.text
    quiz = resp.json()
    assert quiz["requested"] == 10
    assert quiz["shortfall"] == 0
    assert len(quiz["questions"]) == 10
    assert quiz["generated_by"] == "owner-1"

    assert client.post("/quiz/cardio/generate", headers=OWNER).status_code == 409
    override = client.post("/quiz/cardio/generate", json={"question_count": 5}, headers=ADMIN)
    assert override.status_code == 200
    assert len(client.get("/quiz/cardio").json()["questions"]) == 5


def test_quiz_count_is_validated(client: TestClient) -> None:
    _ingest(client, "cardio")
    assert client.post("/quiz/cardio/generate", json={"question_count": 0}, headers=OWNER).status_code == 422
    assert client.get("/quiz/missing").status_code == 404


def test_admin_routes_require_super_admin(client: TestClient) -> None:
    assert client.get("/admin/stats", headers=OWNER).status_code == 403
    stats = client.get("/admin/stats", headers=ADMIN)
    assert stats.status_code == 200
    assert stats.json()["active_jobs"] == 0
    limiter = client.get("/admin/rate-limit", headers=ADMIN).json()
    assert {rule["reason"] for rule in limiter["rules"]} == {"rate_limit", "burst_limit"}
    assert client.get("/admin/processing/stale", headers=ADMIN).json() == []


def test_metrics_endpoint(client: TestClient) -> None:
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "docchat_requests_total" in resp.text
