"""CLI entrypoint for ragforge."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

import requests
import typer

app = typer.Typer(name="ragforge", help="ragforge command-line interface")
jobs_app = typer.Typer(name="jobs", help="Inspect and maintain the job queue")
kb_app = typer.Typer(name="kb", help="Manage knowledge bases")
app.add_typer(jobs_app, name="jobs")
app.add_typer(kb_app, name="kb")

DEFAULT_HOST = "http://127.0.0.1:5173"


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip('/')
    env_host = os.environ.get("RAGF_HOST")
    if env_host:
        return env_host.rstrip('/')
    return DEFAULT_HOST


def _request(method: str, path: str, host: Optional[str] = None, **kwargs) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}{path}"
    resp = requests.request(method, url, timeout=kwargs.pop("timeout", 60), **kwargs)
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2))


@app.command()
def worker(
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Number of worker threads"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
    json_logs: bool = typer.Option(True, "--json/--plain", help="JSON lines or human readable logs"),
) -> None:
    """Run queue workers in this process until interrupted."""
    from ragforge.core.config import get_settings
    from ragforge.core.logging import configure_logging
    from ragforge.jobs.runner import run_workers

    configure_logging(log_level.upper(), use_json=json_logs)
    run_workers(get_settings(), concurrency=concurrency)


@app.command()
def upload(
    path: Path = typer.Argument(..., help="File to register for processing"),
    kb: str = typer.Option(..., "--kb", help="Knowledge base ID"),
    file_type: Optional[str] = typer.Option(None, "--type", help="MIME type or extension; defaults to the suffix"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Register a document and enqueue its processing job."""
    resolved = path.expanduser().resolve()
    if not resolved.is_file():
        typer.echo(f"No such file: {resolved}", err=True)
        raise typer.Exit(code=1)
    payload = {
        "knowledge_base_id": kb,
        "source_uri": resolved.as_uri(),
        "file_name": resolved.name,
        "file_type": file_type or resolved.suffix.lstrip(".") or None,
    }
    resp = _request("POST", "/documents", host=host, json=payload)
    _echo_json(resp.json())


@app.command()
def status(
    document_id: str = typer.Argument(..., help="Document identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Show a document's processing status."""
    resp = _request("GET", f"/documents/{document_id}", host=host)
    _echo_json(resp.json())


@app.command()
def ask(
    knowledge_base_id: str = typer.Argument(..., help="Knowledge base to ask"),
    question: str = typer.Argument(..., help="Question text"),
    provider: Optional[str] = typer.Option(None, "--provider", help="ollama, openai or openrouter"),
    model: Optional[str] = typer.Option(None, "--model", help="Override the provider's default model"),
    show_sources: bool = typer.Option(False, "--sources", help="Print the retrieved passages"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Ask a question in a fresh chat session, printing tokens as they arrive."""
    session = _request("POST", "/chat/sessions", host=host, json={"knowledge_base_id": knowledge_base_id}).json()
    body = {"content": question, "provider": provider, "model": model}
    resp = _request(
        "POST",
        f"/chat/sessions/{session['id']}/messages",
        host=host,
        json={key: value for key, value in body.items() if value is not None},
        stream=True,
        timeout=None,
    )
    with resp:
        for line in resp.iter_lines():
            if not line:
                continue
            envelope = json.loads(line)
            if "token" in envelope:
                typer.echo(envelope["token"], nl=False)
            elif "error" in envelope:
                typer.echo(f"\n[error] {envelope['error']}", err=True)
            elif envelope.get("done"):
                confidence = envelope.get("confidence") or {}
                typer.echo(
                    f"\n\nconfidence: {confidence.get('bucket')} ({confidence.get('value')}) "
                    f"tokens: {envelope.get('tokens_used')}"
                )
                if show_sources:
                    for idx, source in enumerate(envelope.get("sources") or [], 1):
                        typer.echo(f"[{idx}] {source['similarity']:.3f} {source['chunk_text'][:120]!r}")
                break


@kb_app.command("create")
def create_kb(
    name: str = typer.Argument(..., help="Knowledge base name"),
    provider: Optional[str] = typer.Option(None, "--embedding-provider", help="hashed, ollama or openai"),
    model: Optional[str] = typer.Option(None, "--embedding-model", help="Embedding model name"),
    dim: Optional[int] = typer.Option(None, "--dim", help="Embedding dimension"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Create a knowledge base with a fixed embedding configuration."""
    payload = {"name": name, "embedding_provider": provider, "embedding_model": model, "embedding_dim": dim}
    resp = _request("POST", "/knowledge-bases", host=host, json=payload)
    _echo_json(resp.json())


@kb_app.command("stats")
def kb_stats(
    knowledge_base_id: str = typer.Argument(..., help="Knowledge base identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Chunk counts and whether the knowledge base is ready for chat."""
    resp = _request("GET", f"/knowledge-bases/{knowledge_base_id}/stats", host=host)
    _echo_json(resp.json())


@jobs_app.command("stats")
def job_stats(
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Job counts per status."""
    resp = _request("GET", "/jobs/stats", host=host)
    _echo_json(resp.json())


@jobs_app.command("cleanup")
def job_cleanup(
    retention_days: Optional[float] = typer.Option(None, "--days", help="Override the retention window"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Delete finished jobs older than the retention window."""
    resp = _request("POST", "/jobs/cleanup", host=host, json={"retention_days": retention_days})
    _echo_json(resp.json())


if __name__ == "__main__":
    app()
