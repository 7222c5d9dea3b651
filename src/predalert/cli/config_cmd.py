"""Config command: print effective settings."""

from __future__ import annotations

import json

import typer

from predalert.config.settings import Settings


def effective_config(settings: Settings) -> dict:
    return {
        "scan": {
            "interval_minutes": settings.scan_interval_minutes,
            "duplicate_suppression_minutes": settings.duplicate_suppression_minutes,
            "cache_ttl_ms": settings.cache_ttl_ms,
        },
        "thresholds": settings.thresholds.model_dump(),
        "diversity": settings.diversity.model_dump(),
        "scoring": settings.scoring_overrides,
        "sources": {name: settings.source(name).model_dump() for name in settings.source_names},
    }


def show_config(ctx: typer.Context) -> None:
    """Show the merged configuration (defaults, default.toml and profile)."""
    typer.echo(json.dumps(effective_config(ctx.obj["settings"]), indent=2))
