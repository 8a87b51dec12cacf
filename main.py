"""
Command line entry point for the Lead Enrichment Console
Batch-processes spreadsheets, runs single lookups, lists history and serves the HTTP API
"""
# -*- coding: utf-8 -*-
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from loguru import logger

from app_context import AppContext
from auth_service import AuthError
from config import get_settings
from history_manager import format_history_input, format_history_result
from models import FEATURE_MODES
from spreadsheet import SpreadsheetImportError

# CLI Application
app = typer.Typer(help="Lead Enrichment Console - find emails, verify emails and look up LinkedIn profiles")


def _check_mode(mode: str) -> str:
    if mode not in FEATURE_MODES:
        typer.echo(f" Unknown mode: {mode} (expected one of {', '.join(FEATURE_MODES)})", err=True)
        raise typer.Exit(1)
    return mode


async def _signed_in_context(mode: str, email: Optional[str], password: Optional[str]) -> AppContext:
    context = AppContext()
    if email and password:
        try:
            await context.sign_in(email, password)
        except AuthError as e:
            await context.close()
            typer.echo(f" Sign-in failed: {e}", err=True)
            raise typer.Exit(1)
    context.switch_mode(mode)
    return context


@app.command()
def process(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="XLSX or CSV file to process"),
    mode: str = typer.Option("enrich", "--mode", "-m", help="enrich, verify or linkedin"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write results to .xlsx or .json"),
    name_column: Optional[str] = typer.Option(None, "--name-column", help="Override the detected name column"),
    company_column: Optional[str] = typer.Option(None, "--company-column", help="Override the detected company column"),
    email: Optional[str] = typer.Option(None, "--email", envvar="CONSOLE_EMAIL", help="Account email (enables cache and history)"),
    password: Optional[str] = typer.Option(None, "--password", envvar="CONSOLE_PASSWORD", help="Account password"),
):
    """Process every row of a spreadsheet"""
    _check_mode(mode)

    async def run():
        context = await _signed_in_context(mode, email, password)
        try:
            try:
                mapping = await context.import_file(file.name, file.read_bytes())
            except SpreadsheetImportError as e:
                typer.echo(f" {e}", err=True)
                raise typer.Exit(1)

            if name_column or company_column:
                mapping = mapping.model_copy(update={
                    "name_header": name_column or mapping.name_header,
                    "company_header": company_column or mapping.company_header,
                })
                context.update_mapping(mapping)

            typer.echo(f" Rows: {len(context.rows)}")
            typer.echo(f" Name column: {mapping.name_header or '-'}")
            typer.echo(f" Company column: {mapping.company_header or '-'}")
            typer.echo(f" Email column: {mapping.email_header or '-'}")

            def on_update(rows, index):
                row = rows[index]
                logger.debug(f"[{index + 1}/{len(rows)}] {row.name or row.email}: {row.status}")

            entry = await context.run_batch(on_update=on_update)

            for slice_ in context.stats():
                typer.echo(f" {slice_.name}: {slice_.value}")
            typer.echo(f" History entry: {entry.id}")

            if output:
                fmt = "json" if output.suffix.lower() == ".json" else "xlsx"
                data = context.export(fmt)
                if isinstance(data, str):
                    output.write_text(data, encoding="utf-8")
                else:
                    output.write_bytes(data)
                typer.echo(f" Results written to {output}")
        finally:
            await context.close()

    asyncio.run(run())


@app.command()
def single(
    mode: str = typer.Option("enrich", "--mode", "-m", help="enrich, verify or linkedin"),
    name: str = typer.Option("", "--name", "-n", help="Full name of the prospect"),
    company: str = typer.Option("", "--company", "-c", help="Company name or domain"),
    target_email: str = typer.Option("", "--target", "-t", help="Email address to verify"),
    retry: bool = typer.Option(False, "--retry", help="Skip the cache and ask the remote service again"),
    email: Optional[str] = typer.Option(None, "--email", envvar="CONSOLE_EMAIL", help="Account email"),
    password: Optional[str] = typer.Option(None, "--password", envvar="CONSOLE_PASSWORD", help="Account password"),
):
    """Look up a single record"""
    _check_mode(mode)

    async def run():
        context = await _signed_in_context(mode, email, password)
        try:
            try:
                lookup = await context.run_single(name, company, target_email, retry=retry)
            except ValueError as e:
                typer.echo(f" {e}", err=True)
                raise typer.Exit(1)

            row = lookup.row
            typer.echo(f" Status: {row.status}")
            if row.email:
                typer.echo(f" Email: {row.email}")
            if row.linkedin_url:
                typer.echo(f" LinkedIn: {row.linkedin_url}")
            if lookup.message:
                typer.echo(f" Message: {lookup.message}")
            if lookup.cached and row.cache:
                typer.echo(f" Cached: {row.cache.cached_at} ({row.cache.cached_via or 'unknown source'})")

            typer.echo(f"JSON_OUTPUT: {json.dumps(row.model_dump(mode='json'))}")
        finally:
            await context.close()

    asyncio.run(run())


@app.command()
def history(
    mode: str = typer.Option("enrich", "--mode", "-m", help="enrich, verify or linkedin"),
    email: str = typer.Option(..., "--email", envvar="CONSOLE_EMAIL", help="Account email"),
    password: str = typer.Option(..., "--password", envvar="CONSOLE_PASSWORD", help="Account password"),
):
    """List recent history entries of an account"""
    _check_mode(mode)

    async def run():
        context = await _signed_in_context(mode, email, password)
        try:
            entries = context.history.buckets.for_mode(mode)
            if not entries:
                typer.echo(" No history yet")
                return
            for entry in entries:
                flags = []
                if entry.has_cached:
                    flags.append("cached")
                if entry.synced:
                    flags.append("synced")
                suffix = f" [{', '.join(flags)}]" if flags else ""
                typer.echo(
                    f" {entry.id} | {entry.kind:<6} | {format_history_input(entry)} -> "
                    f"{format_history_result(entry.result)}{suffix}"
                )
        finally:
            await context.close()

    asyncio.run(run())


@app.command()
def serve(
    port: int = typer.Option(8000, "--port", "-p", help="Port for the HTTP API"),
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Host for the HTTP API"),
):
    """Run the HTTP API"""
    from api_service import app as api_app

    logger.info(f"Starting Lead Enrichment API Service on {host}:{port}")
    uvicorn.run(api_app, host=host, port=port, log_level="info", access_log=False)


def setup_logging():
    """Setup logging for the CLI and the API service"""
    settings = get_settings()
    logger.remove()  # Remove default handler

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan> | "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stderr,
        level="DEBUG" if settings.debug_mode else settings.log_level,
        format=log_format,
        colorize=True,
        backtrace=settings.debug_mode,
        diagnose=settings.debug_mode
    )

    if settings.log_file_enabled:
        os.makedirs(settings.log_file_path, exist_ok=True)

        logger.add(
            f"{settings.log_file_path}/service.log",
            level=settings.log_level,
            format=log_format,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            compression="gz",
            colorize=False
        )

        logger.add(
            f"{settings.log_file_path}/errors.log",
            level="ERROR",
            format=log_format,
            rotation=settings.log_rotation,
            retention="90 days",
            compression="gz",
            colorize=False
        )

    logger.debug(f"Logging configured (level: {settings.log_level})")


@app.callback()
def main():
    setup_logging()


if __name__ == "__main__":
    app()
