#!/usr/bin/env python3
"""
Management script for the tokenization engine.

Usage (via API):
    python manage.py assets load [-f data/assets.json] [--base-url http://localhost:8000]
    python manage.py assets show [--status sale_active] [--base-url http://localhost:8000]

Usage (direct DB access):
    python manage.py db init
    python manage.py db clear
    python manage.py db status
    python manage.py sweep [--at 2030-01-01T00:00:00]
"""

import asyncio
import json
from pathlib import Path

import click
import httpx
from sqlalchemy import func, select

from tokenengine.database import AsyncSessionLocal, Base, engine
from tokenengine.models import (
    DistributionEvent,
    EngineEvent,
    HoldingRecord,
    MarketplaceListing,
    PayoutLine,
    TokenizedAsset,
    Trade,
)
from tokenengine.services.scheduler import run_sweep


DEFAULT_BASE_URL = "http://localhost:8000"


# ============================================================================
# Direct database operations (internal)
# ============================================================================


async def _init_db():
    """Initialize the database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def _clear_db():
    """Drop and recreate all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def _count_records():
    """Count records in each table."""
    async with AsyncSessionLocal() as session:
        counts = {}
        for model, name in [
            (TokenizedAsset, "assets"),
            (HoldingRecord, "holdings"),
            (MarketplaceListing, "listings"),
            (Trade, "trades"),
            (DistributionEvent, "distributions"),
            (PayoutLine, "payout_lines"),
            (EngineEvent, "events"),
        ]:
            result = await session.execute(select(func.count()).select_from(model))
            counts[name] = result.scalar_one()
        return counts


# ============================================================================
# API operations
# ============================================================================


def _api_load_assets(filepath: Path, base_url: str):
    """Create draft assets via API."""
    with open(filepath) as f:
        assets_data = json.load(f)

    loaded = 0
    errors = 0

    with httpx.Client(base_url=base_url, timeout=30) as client:
        for data in assets_data:
            response = client.post("/admin/assets", json=data)

            if response.status_code == 201:
                loaded += 1
                asset = response.json()
                click.echo(f"  Created {asset['symbol']}: {asset['name']} ({asset['id']})")
            else:
                errors += 1
                error_detail = response.json().get("message", response.text)
                click.echo(f"  Error {data.get('symbol')}: {error_detail}", err=True)

    return loaded, errors


def _api_show_assets(base_url: str, status: str | None):
    """Get assets via API."""
    params = {"status": status} if status else {}
    with httpx.Client(base_url=base_url, timeout=30) as client:
        response = client.get("/api/v1/assets", params=params)
        if response.status_code == 404:
            raise click.ClickException(
                f"Endpoint not found. Is the engine API running at {base_url}?"
            )
        response.raise_for_status()
        return response.json()["assets"]


# ============================================================================
# CLI: Main group
# ============================================================================


@click.group()
def cli():
    """Tokenization engine management commands."""
    pass


# ============================================================================
# CLI: assets (via API)
# ============================================================================


@cli.group()
def assets():
    """Manage tokenized assets (via API)."""
    pass


@assets.command("load")
@click.option(
    "--file", "-f",
    default="data/assets.json",
    type=click.Path(exists=True),
    help="JSON file with a list of asset definitions",
)
@click.option(
    "--base-url", "-u",
    default=DEFAULT_BASE_URL,
    help=f"API base URL (default: {DEFAULT_BASE_URL})",
)
def assets_load(file, base_url):
    """Create draft assets from a JSON file via API."""
    click.echo(f"Loading assets from {file} via {base_url}...")

    try:
        loaded, errors = _api_load_assets(Path(file), base_url)
        click.echo(f"\nDone: {loaded} created, {errors} errors")
    except httpx.ConnectError:
        click.echo(f"\nError: Could not connect to {base_url}", err=True)
        click.echo(
            "Is the server running? Start it with: uvicorn tokenengine.main:app", err=True
        )
        raise SystemExit(1)


@assets.command("show")
@click.option("--status", "-s", default=None, help="Only assets in this status")
@click.option(
    "--base-url", "-u",
    default=DEFAULT_BASE_URL,
    help=f"API base URL (default: {DEFAULT_BASE_URL})",
)
def assets_show(status, base_url):
    """Show tokenized assets via API."""
    try:
        asset_list = _api_show_assets(base_url, status)
    except httpx.ConnectError:
        click.echo(f"\nError: Could not connect to {base_url}", err=True)
        click.echo(
            "Is the server running? Start it with: uvicorn tokenengine.main:app", err=True
        )
        raise SystemExit(1)

    if not asset_list:
        click.echo("No assets found.")
        return

    click.echo(f"\n{'Symbol':<8} {'Name':<28} {'Status':<18} {'Sold':>12} {'Supply':>12}")
    click.echo("-" * 82)
    for a in asset_list:
        click.echo(
            f"{a['symbol']:<8} {a['name'][:28]:<28} {a['status']:<18} "
            f"{a['units_sold']:>12,} {a['total_supply']:>12,}"
        )
    click.echo(f"\nTotal: {len(asset_list)} assets")


# ============================================================================
# CLI: sweep (direct database access)
# ============================================================================


@cli.command("sweep")
@click.option(
    "--at",
    "at",
    type=click.DateTime(),
    default=None,
    help="Sweep as of this UTC time (default: now)",
)
def sweep(at):
    """Run one sale window sweep: open due sales, close ended ones, expire listings."""

    async def run():
        await _init_db()
        return await run_sweep(AsyncSessionLocal, at)

    result = asyncio.run(run())
    click.echo("\nSweep result:")
    click.echo("-" * 30)
    for outcome, count in result.to_dict().items():
        click.echo(f"  {outcome:<18} {count:>8,}")


# ============================================================================
# CLI: db (direct database access)
# ============================================================================


@cli.group()
def db():
    """Direct database management (bypasses API)."""
    pass


@db.command("init")
def db_init():
    """Create any missing tables."""
    asyncio.run(_init_db())
    click.echo("Database initialized.")


@db.command("clear")
@click.confirmation_option(prompt="Are you sure you want to clear all data?")
def db_clear():
    """Clear all data from the database (destructive!)."""
    click.echo("Clearing database...")
    asyncio.run(_clear_db())
    click.echo("Database cleared and tables recreated.")


@db.command("status")
def db_status():
    """Show database status and record counts."""

    async def run():
        await _init_db()
        return await _count_records()

    counts = asyncio.run(run())

    click.echo("\nDatabase Status:")
    click.echo("-" * 30)
    for table, count in counts.items():
        click.echo(f"  {table:<15} {count:>10,}")
    click.echo("-" * 30)
    click.echo(f"  {'Total':<15} {sum(counts.values()):>10,}")


if __name__ == "__main__":
    cli()
