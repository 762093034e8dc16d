"""Admin CLI for the announcement delivery engine."""

from __future__ import annotations

import asyncio
import json
import os
import sys
from contextlib import asynccontextmanager

import click

# Ensure shared package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "shared"))


def run_async(coro):
    """Run an async function in a new event loop."""
    return asyncio.run(coro)


@asynccontextmanager
async def _engine_graph():
    """Build the scheduler/orchestrator object graph for one command."""
    from comms.discord_bot.rest_client import DiscordRestClient
    from modules.announcements.audience import AudienceResolver
    from modules.announcements.orchestrator import SagaOrchestrator
    from modules.announcements.queue import TriggerQueue
    from modules.announcements.saga import SagaStore
    from modules.announcements.scheduler import AnnouncementScheduler
    from modules.announcements.store import AnnouncementStore
    from modules.announcements.tenancy import TenantConnectionResolver
    from shared.config import get_settings
    from shared.database import get_engine, get_session_factory
    from shared.redis import create_redis

    settings = get_settings()
    session_factory = get_session_factory()
    redis = create_redis(settings)
    chat = DiscordRestClient(settings)

    queue = TriggerQueue(redis, settings.announcement_queue_prefix)
    announcements = AnnouncementStore(session_factory)
    sagas = SagaStore(session_factory)
    tenants = TenantConnectionResolver(session_factory, settings)
    audience = AudienceResolver()
    graph = {
        "queue": queue,
        "announcements": announcements,
        "sagas": sagas,
        "tenants": tenants,
        "audience": audience,
        "scheduler": AnnouncementScheduler(session_factory, announcements, queue),
        "orchestrator": SagaOrchestrator(
            session_factory,
            announcements=announcements,
            sagas=sagas,
            tenants=tenants,
            audience=audience,
            chat=chat,
            settings=settings,
        ),
    }
    try:
        yield graph
    finally:
        await chat.aclose()
        await redis.aclose()
        await get_engine().dispose()


@click.group()
def cli():
    """Announcement delivery engine administration CLI."""
    pass


# --- Setup ---


@cli.command()
def setup():
    """Run database migrations."""
    click.echo("Running database migrations...")
    _run_migrations()
    click.echo("Setup complete.")


def _run_migrations():
    """Run Alembic migrations using the Python API."""
    from alembic import command
    from alembic.config import Config

    # Look for alembic.ini in /app (Docker) or alongside this script (local)
    for candidate in ["/app/alembic.ini", os.path.join(os.path.dirname(__file__), "alembic.ini")]:
        if os.path.exists(candidate):
            alembic_cfg = Config(candidate)
            script_dir = os.path.join(os.path.dirname(candidate), "alembic")
            if os.path.isdir(script_dir):
                alembic_cfg.set_main_option("script_location", script_dir)
            db_url = os.environ.get("DATABASE_URL")
            if db_url:
                alembic_cfg.set_main_option("sqlalchemy.url", db_url)
            command.upgrade(alembic_cfg, "head")
            return

    click.echo("  Warning: alembic.ini not found, skipping migrations.")


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
def serve(host, port):
    """Run the announcements service and its trigger worker."""
    run_async(_serve(host, port))


async def _serve(host, port):
    import uvicorn

    config = uvicorn.Config(
        "modules.announcements.main:app",
        host=host,
        port=port,
        log_level="info",
        proxy_headers=True,
    )
    await uvicorn.Server(config).serve()


# --- Announcements ---


@cli.group()
def announcements():
    """Announcement commands."""
    pass


@announcements.command("list")
@click.option("--community-id", default=None, help="Only this community")
@click.option("--drafts/--scheduled", default=None, help="Filter by draft flag")
@click.option("--sort-by", default="created_at:desc", help="e.g. scheduled_at:asc")
@click.option("--limit", default=10, type=int)
@click.option("--page", default=1, type=int)
def list_announcements(community_id, drafts, sort_by, limit, page):
    """List announcements, newest first."""
    run_async(_list_announcements(community_id, drafts, sort_by, limit, page))


async def _list_announcements(community_id, drafts, sort_by, limit, page):
    filters = {}
    if community_id:
        filters["community_id"] = community_id
    if drafts is not None:
        filters["draft"] = drafts

    async with _engine_graph() as graph:
        result = await graph["announcements"].query(
            filters, sort_by=sort_by, limit=limit, page=page
        )

    if not result.results:
        click.echo("No announcements found.")
        return
    for a in result.results:
        state = "draft" if a.draft else (f"scheduled {a.scheduled_at:%Y-%m-%d %H:%M}" if a.scheduled_at else "sent")
        trigger = f" | job {a.job_id}" if a.job_id else ""
        click.echo(f"{a.id} | {a.title or '(untitled)'} | {state}{trigger}")
    click.echo(f"Page {result.page}/{result.total_pages} ({result.total_results} total)")


@announcements.command("show")
@click.argument("announcement_id", type=click.UUID)
def show_announcement(announcement_id):
    """Show one announcement with its targets."""
    run_async(_show_announcement(announcement_id))


async def _show_announcement(announcement_id):
    from modules.announcements.errors import TenantUnavailable
    from shared.schemas.announcements import AnnouncementRead, parse_targets

    async with _engine_graph() as graph:
        announcement = await graph["announcements"].get(announcement_id)
        if announcement is None:
            click.echo(f"Error: Announcement {announcement_id} not found.")
            return
        jobs = await graph["queue"].jobs_for(announcement.id)

        audiences = []
        for target in parse_targets(announcement.data):
            try:
                tenant = await graph["tenants"].platform_tenant(target.platform_id)
                async with graph["tenants"].resolve(tenant.tenant_id) as handle:
                    details = await graph["audience"].describe_target(handle, target.delivery)
            except TenantUnavailable as e:
                audiences.append((target, None, str(e)))
                continue
            audiences.append((target, details, None))

    read = AnnouncementRead.model_validate(announcement)
    click.echo(json.dumps(read.model_dump(mode="json"), indent=2))
    for job in jobs:
        click.echo(f"  Trigger {job.job_id} fires at {job.fire_at.isoformat()}")

    for index, (target, details, error) in enumerate(audiences):
        click.echo(f"  Target {index} ({target.delivery.kind}) on platform {target.platform_id}")
        if details is None:
            click.echo(f"    Audience unavailable: {error}")
            continue
        if details.channels:
            click.echo(f"    Channels: {_labels((c.name, c.channel_id) for c in details.channels)}")
        if details.safety_message_channel:
            channel = details.safety_message_channel
            click.echo(f"    Safety channel: {_labels([(channel.name, channel.channel_id)])}")
        if details.users:
            click.echo(f"    Users: {_labels((u.ngu, u.discord_id) for u in details.users)}")
        if details.roles:
            click.echo(f"    Roles: {_labels((r.name, r.role_id) for r in details.roles)}")
        if details.engagement_categories:
            click.echo(f"    Cohorts: {', '.join(details.engagement_categories)}")


def _labels(pairs) -> str:
    return ", ".join(f"{name} ({id_})" if name else id_ for name, id_ in pairs)


@announcements.command("cancel")
@click.argument("announcement_id", type=click.UUID)
def cancel_announcement(announcement_id):
    """Remove the trigger and return the announcement to draft."""
    run_async(_cancel_announcement(announcement_id))


async def _cancel_announcement(announcement_id):
    from modules.announcements.errors import AnnouncementError
    from shared.schemas.announcements import AnnouncementUpdate

    async with _engine_graph() as graph:
        try:
            announcement = await graph["scheduler"].schedule_remove(
                announcement_id, AnnouncementUpdate(draft=True)
            )
        except AnnouncementError as e:
            click.echo(f"Error: {e}")
            return
    click.echo(f"Cancelled announcement {announcement.id}")


@announcements.command("delete")
@click.argument("announcement_id", type=click.UUID)
@click.confirmation_option(prompt="Delete this announcement permanently?")
def delete_announcement(announcement_id):
    """Delete an announcement and revoke its trigger."""
    run_async(_delete_announcement(announcement_id))


async def _delete_announcement(announcement_id):
    from modules.announcements.errors import AnnouncementError

    async with _engine_graph() as graph:
        try:
            announcement = await graph["scheduler"].delete(announcement_id)
        except AnnouncementError as e:
            click.echo(f"Error: {e}")
            return
    click.echo(f"Deleted announcement {announcement.id}")


# --- Sagas ---


@cli.group()
def sagas():
    """Delivery saga commands."""
    pass


@sagas.command("list")
@click.option("--status", default=None, type=click.Choice(["running", "done", "failed"]))
@click.option(
    "--announcement-id", default=None, type=click.UUID, help="Only sagas of this announcement"
)
@click.option("--limit", default=50, type=int)
def list_sagas(status, announcement_id, limit):
    """List recent sagas."""
    run_async(_list_sagas(status, announcement_id, limit))


async def _list_sagas(status, announcement_id, limit):
    async with _engine_graph() as graph:
        rows = await graph["sagas"].list(
            status=status,
            announcement_id=announcement_id,
            limit=limit,
        )

    if not rows:
        click.echo("No sagas found.")
        return
    for s in rows:
        error = f" | {s.error}" if s.error else ""
        click.echo(
            f"{s.id} | {s.choreography} | target {s.target_index} | "
            f"{s.status} @ {s.step}{error}"
        )


@sagas.command("show")
@click.argument("saga_id", type=click.UUID)
def show_saga(saga_id):
    """Show a saga's persisted state."""
    run_async(_show_saga(saga_id))


async def _show_saga(saga_id):
    async with _engine_graph() as graph:
        saga = await graph["sagas"].get(saga_id)

    if saga is None:
        click.echo(f"Error: Saga {saga_id} not found.")
        return
    click.echo(f"Saga {saga.id} ({saga.choreography})")
    click.echo(f"  Announcement: {saga.announcement_id}")
    click.echo(f"  Status: {saga.status} @ {saga.step}")
    if saga.failed_step:
        click.echo(f"  Failed at: {saga.failed_step}: {saga.error}")
    click.echo(json.dumps(saga.data, indent=2))


@sagas.command("retry")
@click.argument("saga_id", type=click.UUID)
def retry_saga(saga_id):
    """Re-run a failed saga from the step it failed on."""
    run_async(_retry_saga(saga_id))


async def _retry_saga(saga_id):
    from modules.announcements.errors import SagaTransitionError

    async with _engine_graph() as graph:
        try:
            payload = await graph["orchestrator"].retry_failed(saga_id)
        except SagaTransitionError as e:
            click.echo(f"Error: {e}")
            return

    if payload is None:
        click.echo("Saga did not reach a terminal step; it will be resumed by the worker.")
    else:
        click.echo(f"Saga {saga_id} finished at {payload.step}")


# --- Triggers ---


@cli.group()
def triggers():
    """Trigger queue commands."""
    pass


@triggers.command("list")
def list_triggers():
    """List live triggers in fire order."""
    run_async(_list_triggers())


async def _list_triggers():
    async with _engine_graph() as graph:
        jobs = await graph["queue"].all()

    if not jobs:
        click.echo("No live triggers.")
        return
    for job in jobs:
        click.echo(f"{job.job_id} | announcement {job.announcement_id} | {job.fire_at.isoformat()}")


@triggers.command("reconcile")
def reconcile_triggers():
    """Restore triggers recorded on announcements but missing from the queue."""
    run_async(_reconcile_triggers())


async def _reconcile_triggers():
    async with _engine_graph() as graph:
        restored = await graph["scheduler"].reconcile()
    click.echo(f"Restored {restored} trigger(s).")


if __name__ == "__main__":
    cli()
