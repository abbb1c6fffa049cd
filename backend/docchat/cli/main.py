"""CLI entrypoint for DocChat."""

from __future__ import annotations

import base64
import json
import os
from pathlib import Path
from typing import Optional

import requests
import typer

from docchat.chat.ratelimit import ClientRateGuard, build_rules
from docchat.utils.ids import new_id

app = typer.Typer(name="docchat", help="DocChat command-line interface")
quiz_app = typer.Typer(name="quiz")
app.add_typer(quiz_app, name="quiz")

DEFAULT_HOST = "http://127.0.0.1:8000"
UPLOAD_TYPES = {".pdf": "pdf", ".txt": "text", ".md": "text", ".mp3": "audio", ".m4a": "audio", ".wav": "audio"}


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip('/')
    env_host = os.environ.get("DOCCHAT_HOST")
    if env_host:
        return env_host.rstrip('/')
    return DEFAULT_HOST


def _headers(user: Optional[str], roles: Optional[str]) -> dict[str, str]:
    headers = {}
    if user:
        headers["X-User-Id"] = user
    if roles:
        headers["X-User-Roles"] = roles
    return headers


def _request(method: str, path: str, host: Optional[str] = None, **kwargs) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}{path}"
    resp = requests.request(method, url, timeout=120, **kwargs)
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def _stream_answer(body: dict, host: Optional[str], headers: dict[str, str]) -> Optional[dict]:
    """Echo streamed content frames; returns the answer and metadata, or None on an error frame."""
    resp = _request("POST", "/chat/stream", host=host, json=body, headers=headers, stream=True)
    parts: list[str] = []
    with resp:
        for line in resp.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data: "):
                continue
            frame = json.loads(line[len("data: ") :])
            if frame["type"] == "content":
                parts.append(frame["chunk"])
                typer.echo(frame["chunk"], nl=False)
            elif frame["type"] == "error":
                if parts:
                    typer.echo("")
                typer.echo(f"Answer failed: {frame['error']}", err=True)
                return None
            else:
                typer.echo("")
                return {"answer": "".join(parts), "partial_failure": frame["metadata"].get("partial_failure")}
    return None


@app.command()
def ingest(
    slug: str = typer.Argument(..., help="Document slug"),
    path: Path = typer.Argument(..., help="PDF, text or audio file"),
    mode: str = typer.Option("train", "--mode", help="train, replace or append"),
    upload_type: Optional[str] = typer.Option(None, "--type", help="pdf, text or audio; guessed from the suffix"),
    title: Optional[str] = typer.Option(None, "--title", help="Document title"),
    embedding_type: Optional[str] = typer.Option(None, "--embedding-type", help="openai or local"),
    user: Optional[str] = typer.Option(None, "--user", help="Caller user id"),
    roles: Optional[str] = typer.Option(None, "--roles", help="Comma separated caller roles"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Upload a file and start training or retraining a document."""
    path = path.expanduser()
    kind = upload_type or UPLOAD_TYPES.get(path.suffix.lower())
    if kind is None:
        typer.echo(f"Cannot tell the upload type of {path.name}; pass --type", err=True)
        raise typer.Exit(code=2)
    body: dict[str, object] = {
        "upload_type": kind,
        "mode": mode,
        "title": title,
        "file_name": path.name,
        "embedding_type": embedding_type,
        "content_base64": base64.b64encode(path.read_bytes()).decode("ascii"),
    }
    resp = _request("POST", f"/documents/{slug}/ingest", host=host, json=body, headers=_headers(user, roles))
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def history(
    slug: str = typer.Argument(..., help="Document slug"),
    limit: int = typer.Option(20, "--limit", help="Number of events"),
    user: Optional[str] = typer.Option(None, "--user", help="Caller user id"),
    roles: Optional[str] = typer.Option(None, "--roles", help="Comma separated caller roles"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Show processing events for a document."""
    resp = _request(
        "GET",
        f"/documents/{slug}/history",
        host=host,
        params={"limit": limit},
        headers=_headers(user, roles),
    )
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def ask(
    docs: list[str] = typer.Option(..., "--doc", help="Document slug; repeat for several"),
    question: Optional[str] = typer.Argument(None, help="Question; omit for an interactive session"),
    user: Optional[str] = typer.Option(None, "--user", help="Caller user id"),
    roles: Optional[str] = typer.Option(None, "--roles", help="Comma separated caller roles"),
    stream: bool = typer.Option(False, "--stream", help="Print the answer as it is generated"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Ask questions about one or more documents."""
    session_id = new_id("cli")
    guard = ClientRateGuard(build_rules(10, 60, 3, 10))
    history_messages: list[dict[str, str]] = []
    headers = _headers(user, roles)

    def send(text: str) -> None:
        admission = guard.check()
        if not admission.allowed:
            typer.echo(f"Slow down: try again in {admission.retry_after_seconds}s ({admission.reason})", err=True)
            return
        guard.record()
        body = {
            "message": text,
            "document_slugs": docs,
            "session_id": session_id,
            "history": history_messages,
        }
        if stream:
            payload = _stream_answer(body, host, headers)
            if payload is None:
                return
        else:
            payload = _request("POST", "/chat", host=host, json=body, headers=headers).json()
            typer.echo(payload["answer"])
        if payload.get("partial_failure"):
            failed = [item["document_slug"] for item in payload["partial_failure"]["failed_documents"]]
            typer.echo(f"(not searched: {', '.join(failed)})", err=True)
        history_messages.extend(
            [{"role": "user", "content": text}, {"role": "assistant", "content": payload["answer"]}]
        )

    if question:
        send(question)
        return
    while True:
        text = typer.prompt("you", default="", show_default=False).strip()
        if text in {"", "exit", "quit"}:
            break
        send(text)


@quiz_app.command("generate")
def generate_quiz(
    slug: str = typer.Argument(..., help="Document slug"),
    count: Optional[int] = typer.Option(None, "--count", help="Number of questions (1-100)"),
    user: Optional[str] = typer.Option(None, "--user", help="Caller user id"),
    roles: Optional[str] = typer.Option(None, "--roles", help="Comma separated caller roles"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Generate the question bank for a document."""
    resp = _request(
        "POST",
        f"/quiz/{slug}/generate",
        host=host,
        json={"question_count": count},
        headers=_headers(user, roles),
    )
    typer.echo(json.dumps(resp.json(), indent=2))


@quiz_app.command("show")
def show_quiz(
    slug: str = typer.Argument(..., help="Document slug"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Print the stored question bank for a document."""
    resp = _request("GET", f"/quiz/{slug}", host=host)
    typer.echo(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    app()
