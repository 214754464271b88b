"""CoachGuard CLI — operator maintenance against the database.

Usage:
    coachguard init-db                          # Create tables (dev convenience)
    coachguard grant-admin <identity-id>        # Make an identity an admin
    coachguard revoke-admin <identity-id>       # Back to a plain user
    coachguard purge-identity <identity-id>     # Delete an identity and all it owns
    coachguard prune-orphans                    # Delete messages detached from their owner

Learn: These run with the operator principal (admin role, no end-user
session behind it). The cross-owner commands still go through the
ownership policy with a principal scoped to one MaintenanceOperation,
exactly like the admin API does.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import sys
import uuid

import click

from coachguard import __version__
from coachguard.errors import UpstreamUnavailable


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop, normal CLI invocation
        return asyncio.run(coro)
    else:
        # Already inside an event loop (e.g. test runner): run in a thread
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _parse_identity(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        click.secho(f"Error: '{value}' is not a valid identity id", fg="red", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="coachguard")
def main():
    """CoachGuard — access-control maintenance for the coaching platform."""
    from coachguard.config import settings
    from coachguard.log import configure_logging

    configure_logging(settings)


# ---------------------------------------------------------------------------
# coachguard init-db
# ---------------------------------------------------------------------------


@main.command("init-db")
def init_db():
    """Create all tables. Production schemas are managed with alembic."""
    _run(_init_db_impl())
    click.secho("Tables created.", fg="green")


async def _init_db_impl():
    from coachguard.db.engine import engine
    from coachguard.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


# ---------------------------------------------------------------------------
# coachguard grant-admin / revoke-admin
# ---------------------------------------------------------------------------


@main.command("grant-admin")
@click.argument("identity_id")
def grant_admin(identity_id: str):
    """Give IDENTITY_ID the admin role (provisions the profile if needed)."""
    _run(_set_role_impl(_parse_identity(identity_id), "admin"))


@main.command("revoke-admin")
@click.argument("identity_id")
def revoke_admin(identity_id: str):
    """Return IDENTITY_ID to the user role."""
    _run(_set_role_impl(_parse_identity(identity_id), "user"))


async def _set_role_impl(identity_id: uuid.UUID, role_name: str):
    from coachguard.db.engine import async_session_factory, engine
    from coachguard.policy.roles import Role
    from coachguard.services.profile_store import ProfileStore
    from coachguard.services.provisioning import ensure_profile

    try:
        async with async_session_factory() as db:
            await ensure_profile(db, identity_id)
            profile = await ProfileStore(db).set_role(identity_id, Role(role_name))
        click.echo(f"{profile.id}  role={click.style(profile.role, bold=True)}")
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# coachguard purge-identity
# ---------------------------------------------------------------------------


@main.command("purge-identity")
@click.argument("identity_id")
@click.option("--keep-upstream", is_flag=True, help="Delete local data only; leave the provider identity")
@click.option("--yes", is_flag=True, help="Don't ask for confirmation")
def purge_identity(identity_id: str, keep_upstream: bool, yes: bool):
    """Delete IDENTITY_ID with its conversations, messages, progress and profile."""
    ident = _parse_identity(identity_id)
    if not yes:
        click.confirm(f"Permanently delete identity {ident} and everything it owns?", abort=True)

    try:
        report = _run(_purge_impl(ident, keep_upstream))
    except UpstreamUnavailable as e:
        click.secho(
            f"Local data deleted, but the provider could not be reached: {e.detail}. "
            "Re-run to finish.",
            fg="yellow",
            err=True,
        )
        sys.exit(2)

    click.echo(
        f"Purged {report.identity_id}: "
        f"{report.conversations} conversations, "
        f"{report.messages} messages, "
        f"{report.progress_records} progress records, "
        f"profile {'deleted' if report.profile_deleted else 'absent'}"
    )


async def _purge_impl(identity_id: uuid.UUID, keep_upstream: bool):
    from coachguard.auth.providers import build_provider
    from coachguard.config import settings
    from coachguard.db.engine import async_session_factory, engine
    from coachguard.policy.roles import operator_principal
    from coachguard.services.identity_service import IdentityService

    provider = None if keep_upstream else build_provider(settings, async_session_factory)
    try:
        async with async_session_factory() as db:
            return await IdentityService(db, provider).purge(
                operator_principal(), identity_id
            )
    finally:
        if provider is not None:
            await provider.close()
        await engine.dispose()


# ---------------------------------------------------------------------------
# coachguard prune-orphans
# ---------------------------------------------------------------------------


@main.command("prune-orphans")
def prune_orphans():
    """Delete messages whose owner no longer matches their conversation."""
    pruned = _run(_prune_impl())
    click.echo(f"Pruned {pruned} orphaned messages.")


async def _prune_impl() -> int:
    from coachguard.db.engine import async_session_factory, engine
    from coachguard.policy.roles import operator_principal
    from coachguard.services.identity_service import IdentityService

    try:
        async with async_session_factory() as db:
            return await IdentityService(db).prune_orphaned_messages(operator_principal())
    finally:
        await engine.dispose()


if __name__ == "__main__":
    main()
