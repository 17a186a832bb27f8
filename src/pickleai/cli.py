"""PickleAI gateway CLI."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import click
from loguru import logger

from pickleai.assistant import PickleAssistant
from pickleai.config import Config
from pickleai.exceptions import BlockedURLError, UpstreamError
from pickleai.types import ActivityType
from pickleai.utils import json_dumps

T = TypeVar("T")


def _get_config(data_dir: str | None = None) -> Config:
    config = Config()
    if data_dir:
        config.data_dir = Path(data_dir)
    return config


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _run(ctx: click.Context, work: Callable[[PickleAssistant], Awaitable[T]]) -> T:
    """Build an assistant, run ``work`` on it, and close it on the same loop."""
    async def runner() -> T:
        assistant = PickleAssistant(_get_config(ctx.obj.get("data_dir")))
        try:
            return await work(assistant)
        finally:
            await assistant.close()

    return asyncio.run(runner())


def _echo_json(data: Any) -> None:
    click.echo(json_dumps(data))


@click.group()
@click.option("--data-dir", envvar="PICKLEAI_DATA_DIR", default=None, help="Data directory")
@click.option("--log-level", envvar="PICKLEAI_LOG_LEVEL", default="INFO", help="Log level")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, log_level: str) -> None:
    """PickleAI gateway: personalization and moderation for the pickleball assistant."""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir
    _configure_logging(log_level)


@main.command()
@click.option("--host", "-h", default=None, help="Bind host")
@click.option("--port", "-p", default=None, type=int, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the HTTP API server."""
    import uvicorn

    from pickleai.api.routes import create_app

    config = _get_config(ctx.obj.get("data_dir"))
    app = create_app(config)
    uvicorn.run(
        app,
        host=host or config.api.host,
        port=port or config.api.port,
        log_level=config.api.log_level.lower(),
    )


@main.command()
@click.argument("message")
@click.option("--user", "-u", "user_id", default="local", help="User id")
@click.pass_context
def chat(ctx: click.Context, message: str, user_id: str) -> None:
    """Send one message through the full gateway."""
    async def work(assistant: PickleAssistant):
        reply = await assistant.handle_chat(user_id, message)
        await assistant.drain()
        return reply

    try:
        reply = _run(ctx, work)
    except UpstreamError as e:
        raise click.ClickException(f"AI service unavailable: {e}") from e
    click.echo(reply.response)
    if reply.security.blocked:
        click.echo(f"[blocked: {reply.security.reason}]", err=True)


@main.command()
@click.argument("activity_type", type=click.Choice([t.value for t in ActivityType]))
@click.argument("action")
@click.option("--user", "-u", "user_id", default="local", help="User id")
@click.option("--duration", "-d", default=None, type=float, help="Duration in seconds")
@click.pass_context
def activity(ctx: click.Context, activity_type: str, action: str, user_id: str, duration: float | None) -> None:
    """Record an activity event."""
    async def work(assistant: PickleAssistant):
        record = await assistant.record_activity(user_id, activity_type, action, duration)
        await assistant.drain()
        return record

    record = _run(ctx, work)
    click.echo(f"Recorded {record.type.value} ({record.id}), engagement {record.engagement_score:.2f}")


@main.command()
@click.option("--user", "-u", "user_id", default="local", help="User id")
@click.pass_context
def analytics(ctx: click.Context, user_id: str) -> None:
    """Show activity analytics and recommendations."""
    async def work(assistant: PickleAssistant):
        return assistant.analytics(user_id)

    data = _run(ctx, work)
    a = data["analytics"]
    click.echo(f"Analytics for {user_id}")
    click.echo(f"  Activities:     {a['total_activities']}")
    click.echo(f"  Active minutes: {a['active_minutes']}")
    click.echo(f"  Engagement:     {a['engagement_score']:.2f}")
    click.echo(f"  Top activity:   {a['top_activity']}")
    for rec in data["recommendations"]:
        click.echo(f"  [{rec['priority']}] {rec['recommendation']}")


@main.command()
@click.pass_context
def usage(ctx: click.Context) -> None:
    """Show persisted request counts and cost estimates."""
    async def work(assistant: PickleAssistant):
        return assistant.usage_stats()

    _echo_json(_run(ctx, work).model_dump())


@main.command()
@click.option("--user", "-u", "user_id", required=True, help="User id")
@click.pass_context
def export(ctx: click.Context, user_id: str) -> None:
    """Export a user's stored context and activity as JSON."""
    async def work(assistant: PickleAssistant):
        return await assistant.export_user_data(user_id)

    _echo_json(_run(ctx, work))


@main.command()
@click.option("--user", "-u", "user_id", required=True, help="User id")
@click.confirmation_option(prompt="Delete all personalization data for this user?")
@click.pass_context
def clear(ctx: click.Context, user_id: str) -> None:
    """Delete a user's stored context and activity."""
    async def work(assistant: PickleAssistant):
        await assistant.clear_user_data(user_id)

    _run(ctx, work)
    click.echo(f"Cleared data for {user_id}")


@main.command()
@click.argument("url")
@click.pass_context
def fetch(ctx: click.Context, url: str) -> None:
    """Retrieve a web page and print its summary."""
    async def work(assistant: PickleAssistant):
        page = await assistant.retriever.retrieve_content(url)
        summary = await assistant.content_summary(url)
        return page, summary

    try:
        page, summary = _run(ctx, work)
    except (UpstreamError, BlockedURLError) as e:
        raise click.ClickException(str(e)) from e
    click.echo(page.title)
    click.echo(page.summary)
    click.echo(f"Topics: {', '.join(summary.topics)}  Sentiment: {summary.sentiment}")
    for link in page.live_links:
        click.echo(f"  - {link.text} ({link.type}): {link.url}")


@main.command()
@click.pass_context
def prune(ctx: click.Context) -> None:
    """Prune expired context entries and stale rate-limit records."""
    async def work(assistant: PickleAssistant):
        return await assistant.run_maintenance()

    result = _run(ctx, work)
    click.echo(f"Pruned {result['context_pruned']} context entries")


if __name__ == "__main__":
    main()
