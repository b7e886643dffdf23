"""Engram CLI."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from engram.config import Config
from engram.engine import MemoryEngine
from engram.exceptions import EngramError
from engram.log import setup_logging
from engram.types import (
    ContextFilter,
    EpisodeDraft,
    MemoryCandidate,
    MemoryContext,
    MemoryKind,
    MemoryQuery,
)
from engram.utils import json_dumps

T = TypeVar("T")

_KINDS = [k.value for k in MemoryKind]


def _get_engine(ctx: click.Context) -> MemoryEngine:
    config = Config()
    data_dir = ctx.obj.get("data_dir")
    if data_dir:
        config.data_dir = Path(data_dir)
    return MemoryEngine(config)


def _run(ctx: click.Context, fn: Callable[[MemoryEngine], Awaitable[T]]) -> T:
    """Run ``fn`` against a fresh engine and close it afterwards."""
    engine = _get_engine(ctx)

    async def _go() -> T:
        try:
            return await fn(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_go())
    except EngramError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(data: Any) -> None:
    click.echo(json_dumps(data))


@click.group()
@click.option("--data-dir", envvar="ENGRAM_DATA_DIR", default=None, help="Data directory")
@click.option("--log-level", envvar="ENGRAM_LOG_LEVEL", default="WARNING", help="Log level")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, log_level: str) -> None:
    """Engram - persistent long-term and episodic memory."""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir
    setup_logging(log_level)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Emit JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show memory engine status."""

    async def _status(engine: MemoryEngine) -> dict[str, Any]:
        return engine.status()

    st = _run(ctx, _status)
    if as_json:
        _echo_json(st)
        return
    click.echo("Engram Memory Status")
    click.echo(f"  Memories:  {st['memories']}")
    for kind, count in sorted(st["by_kind"].items()):
        click.echo(f"    {kind:<13} {count}")
    click.echo(f"  Patterns:  {st['patterns']}")
    click.echo(f"  Vectors:   {st['index']['size']} ({st['index']['model']}, {st['index']['dims']}d)")


@main.command()
@click.argument("content")
@click.option("--kind", "-t", type=click.Choice(_KINDS), default="fact", help="Memory kind")
@click.option("--user", "-u", default=None, help="User id")
@click.option("--conversation", "-c", default=None, help="Conversation id")
@click.option("--workspace", "-w", default=None, help="Workspace id")
@click.option("--importance", "-i", type=float, default=None, help="Importance in [0, 1]")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.pass_context
def store(
    ctx: click.Context,
    content: str,
    kind: str,
    user: str | None,
    conversation: str | None,
    workspace: str | None,
    importance: float | None,
    tags: tuple[str, ...],
) -> None:
    """Store a memory."""
    candidate = MemoryCandidate(
        content=content,
        kind=kind,
        context=MemoryContext(user_id=user, conversation_id=conversation, workspace_id=workspace),
        importance=importance,
        tags=list(tags) or None,
    )
    memory_id = _run(ctx, lambda engine: engine.store(candidate))
    click.echo(memory_id)


@main.command()
@click.argument("query")
@click.option("--limit", "-k", default=10, help="Number of results")
@click.option("--kind", "kinds", multiple=True, type=click.Choice(_KINDS), help="Restrict kinds")
@click.option("--user", "-u", default=None, help="User id")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON")
@click.pass_context
def retrieve(
    ctx: click.Context,
    query: str,
    limit: int,
    kinds: tuple[str, ...],
    user: str | None,
    as_json: bool,
) -> None:
    """Search memory."""
    q = MemoryQuery(
        query=query,
        kinds=[MemoryKind(k) for k in kinds] or None,
        context=ContextFilter(user_id=user) if user else None,
        max_results=limit,
    )
    results = _run(ctx, lambda engine: engine.retrieve(q))
    if as_json:
        _echo_json([r.model_dump(mode="json") for r in results])
        return
    if not results:
        click.echo("No results found.")
        return
    for i, r in enumerate(results, 1):
        click.echo(f"\n--- Result {i} (score: {r.score:.4f}, kind: {r.memory.kind.value}) ---")
        click.echo(f"ID: {r.memory.id}")
        click.echo(r.memory.content[:200].replace("\n", " "))
        click.echo(r.explanation)


@main.command()
@click.argument("memory_id")
@click.pass_context
def delete(ctx: click.Context, memory_id: str) -> None:
    """Delete a memory."""
    _run(ctx, lambda engine: engine.delete(memory_id))
    click.echo(f"Deleted {memory_id}")


@main.command()
@click.argument("event")
@click.argument("outcome")
@click.option("--success/--failure", default=False, help="Whether the episode succeeded")
@click.option("--user", "-u", default=None, help="User id")
@click.option("--participant", "participants", multiple=True, help="Participant (repeatable)")
@click.option("--emotion", "emotions", multiple=True, help="Emotion (repeatable)")
@click.option("--duration", type=float, default=None, help="Duration in seconds")
@click.option("--learn", is_flag=True, help="Update patterns after recording")
@click.pass_context
def episode(
    ctx: click.Context,
    event: str,
    outcome: str,
    success: bool,
    user: str | None,
    participants: tuple[str, ...],
    emotions: tuple[str, ...],
    duration: float | None,
    learn: bool,
) -> None:
    """Record an episode."""
    draft = EpisodeDraft(
        event=event,
        outcome=outcome,
        success=success,
        context=MemoryContext(user_id=user),
        participants=list(participants),
        emotions=list(emotions),
        duration=duration,
    )

    async def _record(engine: MemoryEngine) -> tuple[str, int]:
        episode_id = await engine.record_episode(draft)
        learned = await engine.learn_from_experience(episode_id) if learn else []
        return episode_id, len(learned)

    episode_id, learned = _run(ctx, _record)
    click.echo(episode_id)
    if learn:
        click.echo(f"Patterns updated: {learned}")


@main.command()
@click.argument("scenario")
@click.pass_context
def predict(ctx: click.Context, scenario: str) -> None:
    """Predict an outcome from similar past experiences."""
    click.echo(_run(ctx, lambda engine: engine.predict_outcome(scenario)))


@main.command()
@click.option("--limit", "-l", default=20, help="Number of patterns")
@click.pass_context
def patterns(ctx: click.Context, limit: int) -> None:
    """List learned patterns."""

    async def _list(engine: MemoryEngine):
        return engine.list_patterns(limit)

    found = _run(ctx, _list)
    if not found:
        click.echo("No patterns learned yet.")
        return
    for p in found:
        click.echo(
            f"  [{p.id[:8]}] {p.description} (x{p.frequency}, "
            f"confidence {p.confidence:.2f}, success {p.predictive_value:.0%})"
        )


@main.command()
@click.option("--threshold", type=float, default=None, help="Cluster similarity threshold")
@click.pass_context
def consolidate(ctx: click.Context, threshold: float | None) -> None:
    """Merge near-duplicate memories."""
    stats = _run(ctx, lambda engine: engine.consolidate(threshold))
    click.echo(
        f"Merged {stats['clusters_merged']} clusters, removed {stats['memories_removed']} "
        f"memories ({stats['remaining']} remaining)"
    )


@main.command()
@click.option("--dry-run", is_flag=True, help="Only report what would be deleted")
@click.pass_context
def forget(ctx: click.Context, dry_run: bool) -> None:
    """Delete memories past their retention period."""
    stats = _run(ctx, lambda engine: engine.forget_expired(dry_run=dry_run))
    verb = "Would delete" if dry_run else "Deleted"
    count = stats["candidate_count"] if dry_run else stats["deleted"]
    click.echo(f"{verb} {count} expired memories")


@main.command(name="rebuild-index")
@click.option("--no-reembed", is_flag=True, help="Skip embedding records without a vector")
@click.pass_context
def rebuild_index(ctx: click.Context, no_reembed: bool) -> None:
    """Rebuild the vector index from the store."""
    stats = _run(ctx, lambda engine: engine.rebuild_index(reembed_missing=not no_reembed))
    click.echo(f"Loaded {stats['loaded']} vectors, re-embedded {stats['reembedded']}")
    if stats["failed"]:
        click.echo(f"Failed to embed: {', '.join(stats['failed'])}", err=True)


if __name__ == "__main__":
    main()
