"""
Last Wish CLI - operator commands for the check-in switch.

Usage:
    lastwish --help                      Show all commands
    lastwish tick                        Run one scheduler pass
    lastwish status EMAIL                Show a user's switch and countdown
    lastwish backdate EMAIL --days N     Move last check-in N days into the past
    lastwish release-claim EMAIL         Drop a stuck delivery claim
    lastwish test-email                  Send a sample test release to DEV_EMAIL
"""

import asyncio
from datetime import timedelta

import typer

app = typer.Typer(
    name="lastwish",
    help="Last Wish CLI - scheduler and operator tooling",
    no_args_is_help=True,
)


# --- Printer helpers ---


def _print_success(message: str) -> None:
    """Print a success message."""
    typer.echo(f"  ✅ {message}")


def _print_warning(message: str) -> None:
    """Print a warning message."""
    typer.echo(f"  ⚠️ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


async def _find_user_id(db, email: str):
    from sqlalchemy import func, select

    from app.models.user import User

    result = await db.execute(select(User.id).where(func.lower(User.email) == email.lower()))
    user_id = result.scalar_one_or_none()
    if user_id is None:
        _print_error(f"No user with email {email}")
        raise typer.Exit(1)
    return user_id


@app.command()
def tick():
    """Run one dead-man's-switch pass (for cron deployments)."""
    from app.core.logging import setup_logging
    from app.jobs.dead_mans_switch import run_switch_tick

    setup_logging()

    try:
        stats = asyncio.run(run_switch_tick())
    except Exception as e:
        _print_error(f"Tick failed: {e}")
        raise typer.Exit(1) from e

    typer.echo(
        f"\nCandidates: {stats['candidates']}  delivered: {stats['delivered']}  "
        f"failed: {stats['failed']}  conflicts: {stats['conflict']}  errors: {stats['errors']}"
    )
    if stats["failed"] or stats["errors"]:
        raise typer.Exit(1)


@app.command()
def status(email: str = typer.Argument(..., help="Owner's email address")):
    """Show a user's switch settings, countdown and delivery state."""
    from app.core.database import AsyncSessionLocal
    from app.core.datetime_utils import utc_now
    from app.pipeline.countdown import evaluate_switch
    from app.services import switch_store

    async def run() -> None:
        async with AsyncSessionLocal() as db:
            user_id = await _find_user_id(db, email)
            switch = await switch_store.get_switch(db, user_id)
            if switch is None:
                _print_warning("Last Wish not configured")
                return

            countdown = evaluate_switch(switch, utc_now())
            typer.echo(f"\nLast Wish for {email} (epoch {switch.epoch})")
            typer.echo(f"  enabled:         {switch.is_enabled}")
            typer.echo(f"  frequency:       {switch.frequency_days} days")
            typer.echo(f"  last check-in:   {switch.last_check_in or 'never'}")
            typer.echo(f"  recipients:      {len(switch.recipients)}")
            typer.echo(f"  days left:       {countdown.days_left}")
            typer.echo(f"  urgency:         {countdown.urgency.value}")
            typer.echo(f"  delivered at:    {switch.delivered_at or '-'}")
            typer.echo(f"  delivering:      {switch.delivering} (claimed {switch.claimed_at or '-'})")
            typer.echo(f"  pending since:   {switch.overdue_at or '-'}")
            typer.echo(f"  failed attempts: {switch.delivery_attempts}")
            if switch.last_error:
                typer.echo(f"  last error:      {switch.last_error}")

    asyncio.run(run())


@app.command()
def backdate(
    email: str = typer.Argument(..., help="Owner's email address"),
    days: int = typer.Option(..., "--days", "-d", min=1, help="Days to move the check-in back"),
):
    """Move the last check-in into the past (testing and support only)."""
    from app.core.database import AsyncSessionLocal
    from app.core.datetime_utils import utc_now
    from app.core.exceptions import SwitchNotFound
    from app.core.logging import setup_logging
    from app.services import switch_store

    setup_logging()

    async def run() -> None:
        async with AsyncSessionLocal() as db:
            user_id = await _find_user_id(db, email)
            try:
                switch = await switch_store.backdate_check_in(
                    db, user_id, utc_now() - timedelta(days=days)
                )
            except SwitchNotFound as e:
                _print_error(e.message)
                raise typer.Exit(1) from e
            await db.commit()
            if switch.delivered_at is not None:
                _print_warning("Switch already delivered; check-in left unchanged")
            else:
                _print_success(f"Last check-in set to {switch.last_check_in}")

    asyncio.run(run())


@app.command()
def release_claim(email: str = typer.Argument(..., help="Owner's email address")):
    """Release a stuck delivery claim so the next tick retries immediately."""
    from app.core.database import AsyncSessionLocal
    from app.core.logging import setup_logging
    from app.services import switch_store

    setup_logging()

    async def run() -> None:
        async with AsyncSessionLocal() as db:
            user_id = await _find_user_id(db, email)
            released = await switch_store.force_release_claim(db, user_id)
            await db.commit()
            if released:
                _print_success("Claim released")
            else:
                _print_warning("No active claim")

    asyncio.run(run())


@app.command()
def test_email():
    """Send a sample test release to DEV_EMAIL."""
    from app.core.logging import setup_logging
    from app.services.email_service import send_dev_test_email

    setup_logging()

    typer.echo("\n📧 Sending test email...")

    results = asyncio.run(send_dev_test_email())

    if "error" in results:
        _print_error(str(results["error"]))
        raise typer.Exit(1)

    if results.get("last_wish"):
        _print_success("Last Wish test email sent")
    else:
        _print_error("Last Wish test email failed")
        raise typer.Exit(1)


@app.command()
def migrate():
    """Run database migrations (alembic upgrade head)."""
    import subprocess

    result = subprocess.run(["alembic", "upgrade", "head"], check=False)
    raise typer.Exit(result.returncode)


@app.command()
def serve(
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable hot reload"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to run on"),
):
    """Start the API server."""
    import subprocess

    cmd = ["uvicorn", "app.main:app", "--host", "0.0.0.0", "--port", str(port)]
    if reload:
        cmd.append("--reload")

    subprocess.run(cmd, check=False)


if __name__ == "__main__":
    app()
