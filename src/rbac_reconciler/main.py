"""Command-line entry point for the role grant reconciler.

Exit codes:
    0  Satisfied (or dry run with nothing to grant)
    1  PartiallyGranted (or dry run with grants pending)
    2  Failed
    3  Setup failure: configuration, credentials, authentication or query
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from datetime import UTC, datetime
from pathlib import Path

import click

from . import __version__
from .config import Config, ConfigurationError, CredentialKind, PrincipalType
from .reconciler import EXIT_SETUP_FAILURE, ReconcileOutcome, Reconciler
from .report import format_report
from .security import SecretlessViolationError
from .spec_loader import SpecLoadError, load_access_spec

# LogRecord attributes that are not user-supplied extras
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(verbose: bool = False) -> None:
    """Configure JSON logging on stderr; stdout is reserved for the report."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# Config field -> environment variable it is read from
_ENV_FOR_FIELD: dict[str, str] = {
    "principal_id": "RBAC_PRINCIPAL_ID",
    "principal_type": "RBAC_PRINCIPAL_TYPE",
    "subscription_id": "AZURE_SUBSCRIPTION_ID",
    "required_roles": "RBAC_REQUIRED_ROLES",
}


def build_config(spec_path: Path | None = None, **flags: object) -> Config:
    """Layer configuration: flags over environment over access spec file.

    Raises:
        ConfigurationError: If the resulting configuration is invalid.
        SpecLoadError: If the spec file cannot be loaded.
    """
    overrides = dict(flags)
    if spec_path is not None:
        spec = load_access_spec(spec_path)
        from_spec: dict[str, object] = {
            "principal_id": spec.principal_id,
            "principal_type": spec.principal_type,
            "subscription_id": spec.subscription_id,
            "required_roles": tuple(spec.roles),
        }
        for key, value in from_spec.items():
            if overrides.get(key) in (None, ()) and not os.environ.get(_ENV_FOR_FIELD[key]):
                overrides[key] = value
    return Config.from_env(**overrides)


def render_outcome(outcome: ReconcileOutcome, output: str = "text") -> str:
    """Render a run outcome for stdout."""
    if output == "json":
        data: dict[str, object] = {
            "principal": outcome.principal.principal_id,
            "scope": outcome.scope.resource_id,
            "stage": outcome.stage.value,
            "exitCode": outcome.exit_code,
            "plan": list(outcome.plan.role_names) if outcome.plan is not None else None,
        }
        if outcome.error is not None:
            data["error"] = {
                "kind": outcome.error.kind.value,
                "message": outcome.error.message,
                "remediation": outcome.error.remediation,
            }
        if outcome.run_result is not None:
            data["result"] = outcome.run_result.to_dict()
        return json.dumps(data, indent=2)

    if outcome.error is not None:
        return (
            f"Reconciliation halted during {outcome.stage.value}: {outcome.error}\n"
            f"  Remediation: {outcome.error.remediation}"
        )

    if outcome.run_result is not None:
        return format_report(outcome.run_result, outcome.principal, outcome.scope)

    # Dry run
    lines = [f"Dry run for {outcome.principal} at {outcome.scope}"]
    if outcome.plan is not None:
        lines.extend(f"  [would grant] {name}" for name in outcome.plan.role_names)
    return "\n".join(lines)


async def main(config: Config, output: str = "text") -> int:
    """Run one reconciliation and print its report.

    Returns:
        Process exit code.
    """
    logger = logging.getLogger(__name__)

    try:
        reconciler = Reconciler(config)
    except SecretlessViolationError as e:
        logger.critical("Security violation: credentials detected in environment")
        click.echo(str(e), err=True)
        return EXIT_SETUP_FAILURE

    logger.info(
        "Starting role reconciliation",
        extra={
            "principal_id": config.principal_id,
            "subscription_id": config.subscription_id,
            "required_roles": list(reconciler.required),
            "dry_run": config.dry_run,
        },
    )

    try:
        outcome = await reconciler.reconcile()
    except Exception as e:
        logger.exception("Reconciliation failed unexpectedly", extra={"error": str(e)})
        click.echo(f"Reconciliation failed unexpectedly: {type(e).__name__}: {e}", err=True)
        return EXIT_SETUP_FAILURE

    click.echo(render_outcome(outcome, output))
    return outcome.exit_code


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="rbac-reconcile")
@click.option("--principal", "principal_id", help="Object ID of the principal to reconcile.")
@click.option(
    "--principal-type",
    type=click.Choice([t.value for t in PrincipalType]),
    help="Kind of principal (default: ServicePrincipal).",
)
@click.option("--scope", "subscription_id", help="Target subscription ID.")
@click.option(
    "--role",
    "roles",
    multiple=True,
    help="Required role name; repeatable (default: Contributor).",
)
@click.option(
    "--credential",
    "credential_kind",
    type=click.Choice([k.value for k in CredentialKind]),
    help="Caller credential source (default: cli).",
)
@click.option(
    "--spec",
    "spec_path",
    type=click.Path(path_type=Path, dir_okay=False),
    envvar="RBAC_ACCESS_SPEC",
    help="YAML access spec providing defaults for principal, scope and roles.",
)
@click.option("--dry-run", is_flag=True, help="Plan only; make no grants.")
@click.option(
    "--output",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="Report format.",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def cli(
    principal_id: str | None,
    principal_type: str | None,
    subscription_id: str | None,
    roles: tuple[str, ...],
    credential_kind: str | None,
    spec_path: Path | None,
    dry_run: bool,
    output: str,
    verbose: bool,
) -> None:
    """Ensure a principal holds the required role assignments on a subscription.

    \b
    Examples:
        rbac-reconcile --principal <object-id> --scope <subscription-id>
        rbac-reconcile --principal <id> --scope <sub> --role Contributor --role Reader
        rbac-reconcile --spec access.yaml --dry-run
    """
    setup_logging(verbose)
    logger = logging.getLogger(__name__)

    try:
        config = build_config(
            spec_path,
            principal_id=principal_id,
            principal_type=principal_type,
            subscription_id=subscription_id,
            required_roles=roles,
            credential_kind=credential_kind,
            dry_run=True if dry_run else None,
        )
    except (ConfigurationError, SpecLoadError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        click.echo(str(e), err=True)
        sys.exit(EXIT_SETUP_FAILURE)

    sys.exit(asyncio.run(main(config, output)))


def run() -> None:
    """Entry point for the console script."""
    cli()


if __name__ == "__main__":
    run()
