"""
Command line entry point for the Task Tree server.

Commands:
    serve            Run the API under uvicorn
    init-db          Create (or recreate) the schema
    prune-sessions   Delete every expired session
    import FILE      Import lists, tasks and labels from YAML for one user
"""

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

import click

from .config import AppConfig, ConfigError
from .database import Database, open_database
from .exceptions import TaskTreeError
from .importer import import_tree_from_file
from .statements import format_timestamp

logger = logging.getLogger(__name__)


def _open(config: AppConfig, db_path: Optional[str], drop_existing: bool = False) -> Database:
    return open_database(
        db_path or config.database_path,
        pool_size=1,
        timeout_seconds=config.storage_timeout_seconds,
        drop_existing=drop_existing,
    )


@click.group()
@click.option("--env", "env_name", default=None, help="Configuration preset (development, test, production)")
@click.option("--db-path", default=None, help="SQLite database path, overrides the preset")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, env_name, db_path, verbose):
    """Task Tree server and maintenance commands."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)
    try:
        config = AppConfig.from_env(env_name)
    except ConfigError as e:
        raise click.ClickException(str(e))
    ctx.obj = {"config": config, "db_path": db_path}


@main.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", default=None, type=int, help="Port to listen on")
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
@click.pass_context
def serve(ctx, host, port, reload):
    """Run the API server."""
    import uvicorn

    config: AppConfig = ctx.obj["config"]
    if ctx.obj["db_path"]:
        os.environ["TASKTREE_DATABASE_PATH"] = ctx.obj["db_path"]
    os.environ["TASKTREE_ENV"] = config.environment_name

    click.echo(f"Starting Task Tree API ({config.environment_name}) on "
               f"{host or config.host}:{port or config.port}")
    uvicorn.run(
        "tasktree.api:app",
        host=host or config.host,
        port=port or config.port,
        reload=reload,
        log_level="info",
    )


@main.command("init-db")
@click.option("--drop", is_flag=True, help="Drop existing tables first")
@click.pass_context
def init_db(ctx, drop):
    """Create the database schema."""
    config: AppConfig = ctx.obj["config"]
    if drop:
        click.confirm("This deletes every user, list, task and session. Continue?", abort=True)
    db = _open(config, ctx.obj["db_path"], drop_existing=drop)
    db.close()
    click.echo(f"Database ready at {db.db_path}")


@main.command("prune-sessions")
@click.pass_context
def prune_sessions(ctx):
    """Delete every expired session."""
    config: AppConfig = ctx.obj["config"]
    with _open(config, ctx.obj["db_path"]) as db:
        removed = db.prune_all_expired_sessions(format_timestamp(datetime.now(timezone.utc)))
    click.echo(f"Removed {removed} expired sessions")


@main.command("import")
@click.argument("yaml_file", type=click.Path(dir_okay=False))
@click.option("--user-id", required=True, help="User that will own the imported rows")
@click.pass_context
def import_command(ctx, yaml_file, user_id):
    """Import lists, tasks and labels from a YAML file."""
    config: AppConfig = ctx.obj["config"]
    with _open(config, ctx.obj["db_path"]) as db:
        try:
            stats = import_tree_from_file(db, user_id, yaml_file)
        except (FileNotFoundError, ValueError, TaskTreeError) as e:
            raise click.ClickException(f"Import failed: {e}")
    click.echo(
        f"Imported {stats['lists_created']} lists, {stats['tasks_created']} tasks, "
        f"{stats['labels_created']} labels ({stats['labels_attached']} attachments)"
    )


if __name__ == "__main__":
    sys.exit(main())
