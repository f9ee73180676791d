"""CLI commands for CipherTrail."""

import json
import logging
import sys

import click

from ciphertrail.audit.orchestrator import AuditOrchestrator
from ciphertrail.audit.reader import AuditReader
from ciphertrail.db.adapter import SchemaConfig, get_adapter
from ciphertrail.db.session import create_db_engine
from ciphertrail.errors import CipherTrailError
from ciphertrail.security.encryption import get_encryption_service
from ciphertrail.settings import get_settings

JSON_LOG_FORMAT = '{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "module": "%(name)s"}'
TEXT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

key_option = click.option(
    "--key",
    prompt="Encryption key",
    hide_input=True,
    envvar="CIPHERTRAIL_KEY",
    help="Encryption key (prompted when omitted).",
)


def _configure_logging(settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format=JSON_LOG_FORMAT if settings.log_format == "json" else TEXT_LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def _build_adapter(ctx: click.Context):
    """Create the engine and dialect adapter for this invocation."""
    settings = ctx.obj["settings"]
    engine = create_db_engine(ctx.obj["database_url"], settings)
    schema_config = SchemaConfig(
        schema=ctx.obj["schema"] or settings.audit_schema,
        database=ctx.obj["database"] or settings.audit_database,
    )
    return get_adapter(ctx.obj["dialect"], engine, schema_config)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--database-url", envvar="DATABASE_URL", default=None, help="SQLAlchemy database URL.")
@click.option("--dialect", type=click.Choice(["mysql", "postgresql"]), default=None, help="Defaults to the URL dialect.")
@click.option("--schema", default=None, help="PostgreSQL schema of the audited tables.")
@click.option("--database", default=None, help="MySQL database of the audited tables.")
@click.pass_context
def cli(ctx, database_url, dialect, schema, database):
    """CipherTrail encrypted audit trail CLI."""
    settings = get_settings()
    _configure_logging(settings)
    ctx.ensure_object(dict)
    ctx.obj.update(
        {
            "settings": settings,
            "database_url": database_url,
            "dialect": dialect,
            "schema": schema,
            "database": database,
        }
    )


@cli.command()
@click.argument("tables", nargs=-1, required=True)
@key_option
@click.option("--actor", default=None, help="Name recorded in operational events.")
@click.pass_context
def setup(ctx, tables, key, actor):
    """Enable encrypted auditing on one or more tables."""
    orchestrator = AuditOrchestrator(_build_adapter(ctx), settings=ctx.obj["settings"])
    try:
        if len(tables) == 1:
            results = [orchestrator.setup_one(tables[0], key, actor=actor)]
        else:
            results = orchestrator.setup_many(tables, key, actor=actor).results
    except CipherTrailError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    for result in results:
        if result.success:
            label = "skipped (already audited)" if result.skipped else f"-> {result.audit_table_name}"
            click.echo(f"✓ {result.table_name} {label}")
        else:
            click.echo(f"✗ {result.table_name} failed at {result.failed_step}: {result.error}", err=True)

    if any(not result.success for result in results):
        sys.exit(1)


@cli.command()
@click.argument("table")
@click.option("--key", default=None, envvar="CIPHERTRAIL_KEY", help="Key used at setup, to locate the shadow table.")
@click.option("--audit-table", is_flag=True, help="TABLE is a shadow table name instead of an original table.")
@click.option("--actor", default=None)
@click.pass_context
def remove(ctx, table, key, audit_table, actor):
    """Remove auditing from a table."""
    orchestrator = AuditOrchestrator(_build_adapter(ctx), settings=ctx.obj["settings"])
    try:
        if audit_table:
            result = orchestrator.remove_audit_table(table, key=key, actor=actor)
        else:
            result = orchestrator.remove_one(table, key=key, actor=actor)
    except CipherTrailError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ Auditing removed from {result.table_name}")
    for warning in result.warnings:
        click.echo(f"  warning: {warning}", err=True)


@cli.command("remove-all")
@click.confirmation_option(prompt="Remove auditing from every table?")
@click.option("--key", default=None, envvar="CIPHERTRAIL_KEY", help="Traces shadow tables that have no mapping row.")
@click.pass_context
def remove_all(ctx, key):
    """Remove every audit table, trigger and mapping."""
    orchestrator = AuditOrchestrator(_build_adapter(ctx), settings=ctx.obj["settings"])
    try:
        results = orchestrator.remove_all(key=key)
    except CipherTrailError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    kept = [result for result in results if not result.success]
    click.echo(f"✓ Removed auditing from {len(results) - len(kept)} table(s)")
    for result in kept:
        for warning in result.warnings:
            click.echo(f"✗ {result.table_name}: {warning}", err=True)
    if kept:
        sys.exit(1)


@cli.command()
@click.option("--key", default=None, envvar="CIPHERTRAIL_KEY", help="Locates shadow tables that have no mapping row.")
@click.option("--json", "as_json", is_flag=True, help="Print the status as JSON.")
@click.pass_context
def tables(ctx, key, as_json):
    """Show which tables are audited and the triggers they carry."""
    orchestrator = AuditOrchestrator(_build_adapter(ctx), settings=ctx.obj["settings"])
    try:
        statuses = orchestrator.table_status(key=key)
    except CipherTrailError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    if as_json:
        _echo_json([status.to_dict() for status in statuses])
        return
    if not statuses:
        click.echo("No tables found.")
        return
    for status in statuses:
        click.echo(
            f"{status.table_name}  {status.status}  {status.audit_table_name or '-'}  "
            f"{len(status.audit_triggers)}/{status.trigger_count} audit triggers"
        )


@cli.command("list")
@click.option("--key", default=None, envvar="CIPHERTRAIL_KEY", help="Resolves tables that have no mapping row.")
@click.pass_context
def list_tables(ctx, key):
    """List audit tables with their original table and record count."""
    reader = AuditReader(_build_adapter(ctx), settings=ctx.obj["settings"])
    tables = reader.list_audit_tables(key)
    if not tables:
        click.echo("No audit tables found.")
        return
    for info in tables:
        click.echo(f"{info.audit_table_name}  {info.original_table or '?'}  {info.record_count} records")


@cli.command()
@click.argument("audit_table")
@click.option("--decrypt", is_flag=True, help="Decrypt the rows (prompts for the key).")
@click.option("--key", default=None, envvar="CIPHERTRAIL_KEY")
@click.option("--limit", type=int, default=None)
@click.option("--offset", type=int, default=0)
@click.pass_context
def show(ctx, audit_table, decrypt, key, limit, offset):
    """Show a page of an audit table."""
    reader = AuditReader(_build_adapter(ctx), settings=ctx.obj["settings"])
    try:
        if decrypt:
            key = key or click.prompt("Encryption key", hide_input=True)
            page = reader.get_decrypted(audit_table, key, limit=limit, offset=offset)
            _echo_json(
                {
                    "original_table": page.original_table,
                    "columns": page.original_columns,
                    "total_records": page.total_records,
                    "rows": page.rows,
                    "errors": page.errors,
                }
            )
        else:
            page = reader.get_encrypted(audit_table, limit=limit, offset=offset)
            _echo_json({"columns": page.columns, "total_records": page.total_records, "rows": page.rows})
    except CipherTrailError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


@cli.command("verify-key")
@click.argument("audit_table")
@key_option
@click.pass_context
def verify_key(ctx, audit_table, key):
    """Check a key against an audit table."""
    reader = AuditReader(_build_adapter(ctx), settings=ctx.obj["settings"])
    try:
        check = reader.validate_password(audit_table, key)
    except CipherTrailError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    if check.valid:
        click.echo(f"✓ {check.message}")
    else:
        click.echo(f"✗ {check.message}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("audit_table")
@click.option("--key", default=None, envvar="CIPHERTRAIL_KEY", help="Adds per-operation counts.")
@click.pass_context
def stats(ctx, audit_table, key):
    """Show statistics for an audit table."""
    reader = AuditReader(_build_adapter(ctx), settings=ctx.obj["settings"])
    try:
        _echo_json(reader.get_statistics(audit_table, key))
    except CipherTrailError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("audit_table")
@key_option
@click.option("--sample-size", type=int, default=100)
@click.pass_context
def integrity(ctx, audit_table, key, sample_size):
    """Decrypt a sample of an audit table and report integrity."""
    reader = AuditReader(_build_adapter(ctx), settings=ctx.obj["settings"])
    try:
        report = reader.verify_integrity(audit_table, key, sample_size=sample_size)
    except CipherTrailError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    _echo_json(
        {
            "total": report.total,
            "valid": report.valid,
            "invalid": report.invalid,
            "empty": report.empty,
            "integrity_percentage": report.integrity_percentage,
        }
    )
    if report.invalid:
        sys.exit(1)


@cli.command("generate-key")
@click.option("--length", type=int, default=16)
@click.option("--no-special", is_flag=True, help="Letters and digits only.")
def generate_key(length, no_special):
    """Generate a random key that satisfies the key policy."""
    try:
        click.echo(get_encryption_service().generate_secure_key(length, include_special=not no_special))
    except ValueError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
