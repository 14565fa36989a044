"""
MeetCoach CLI

Command-line interface for the MeetCoach service.
"""

import logging

import click
import structlog

from meetcoach import __version__
from meetcoach.config import settings

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
# CLI Group
# ══════════════════════════════════════════════════════════════


@click.group()
@click.version_option(version=__version__, prog_name="meetcoach")
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """MeetCoach - real-time coaching feedback for meeting hosts."""
    if debug:
        logging.basicConfig(level=logging.DEBUG)
        structlog.configure(
            wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        )


# ══════════════════════════════════════════════════════════════
# Server Commands
# ══════════════════════════════════════════════════════════════


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind to")
@click.option("--port", default=8000, help="Port to bind to")
@click.option("--reload/--no-reload", default=False, help="Enable auto-reload")
def serve(host: str, port: int, reload: bool) -> None:
    """Start the MeetCoach API and WebSocket server.

    Feedback state lives in process memory, so the server always runs a
    single worker.
    """
    import uvicorn

    click.echo(f"Starting MeetCoach API on {host}:{port}")
    click.echo("Endpoints:")
    click.echo(f"  - ws://{host}:{port}/ws/egress-audio")
    click.echo(f"  - ws://{host}:{port}/ws/feedback/{{meeting_id}}")

    uvicorn.run(
        "meetcoach.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


# ══════════════════════════════════════════════════════════════
# Config Commands
# ══════════════════════════════════════════════════════════════


@cli.command()
def config() -> None:
    """Show current configuration."""
    click.echo("MeetCoach Configuration\n")

    config_items = [
        ("Environment", settings.app_env),
        ("Debug", str(settings.debug)),
        ("Redis", str(settings.redis_url)),
        ("Prosody URL", settings.prosody_ws_url),
        ("Prosody API Key", settings.prosody_api_key),
        ("Segment Seconds", str(settings.audio_segment_seconds)),
        ("Include Host", str(settings.feedback_include_host)),
        ("Min Gap (ms)", str(settings.feedback_min_gap_ms)),
        ("Feedback TTL (days)", str(settings.feedback_ttl_days)),
    ]

    for key, value in config_items:
        # Mask sensitive values
        if "key" in key.lower() or "secret" in key.lower():
            value = "***" if value else "Not set"
        click.echo(f"  {key:20} {value}")


# ══════════════════════════════════════════════════════════════
# Entry Point
# ══════════════════════════════════════════════════════════════


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
