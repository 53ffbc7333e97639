"""KubeConverge command-line interface.

Commands:
    kubeconverge watch -f FILE [-f FILE ...] [--namespace NS] [--context CTX]
                                             Watch manifests until they converge.
    kubeconverge version [--cluster]         Print version (and kubectl/server versions) and exit.

Defaults come from ``KUBECONVERGE_*`` environment variables (see
:func:`kubeconverge.config.load_config`). ``watch`` exits 0 when every
resource succeeded, 1 when any failed and 70 when any timed out.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Any

import click
import yaml

from kubeconverge import __version__
from kubeconverge.cache.sync_mediator import SyncMediator
from kubeconverge.cluster.kubectl import Kubectl
from kubeconverge.concurrency import with_delayed_exceptions
from kubeconverge.config import load_config
from kubeconverge.errors import (
    DurationParseError,
    FatalDeploymentError,
    InvalidTemplateError,
    KubeConvergeError,
    KubectlError,
    exit_code_for,
)
from kubeconverge.models.watch import WatchReport
from kubeconverge.observability.logging import LOG_LEVELS, bind_cluster_context, get_logger, setup_logging
from kubeconverge.resources import (
    CustomResourceDefinition,
    KubernetesResource,
    build_resource,
    crds_by_kind,
)
from kubeconverge.resources.base import validate_essentials
from kubeconverge.utils.duration import parse_duration
from kubeconverge.watch.resource_watcher import ResourceWatcher

_MANIFEST_SUFFIXES: frozenset[str] = frozenset({".yml", ".yaml", ".json"})

_logger = get_logger("cli")

# ---------------------------------------------------------------------------
# Colour helpers
# ---------------------------------------------------------------------------

_SUMMARY_COLORS: dict[str, str] = {
    "succeeded": "green",
    "failed": "red",
    "timed out": "yellow",
}


def _styled_summary_line(line: str) -> str:
    for marker, color in _SUMMARY_COLORS.items():
        if marker in line:
            return click.style(line, fg=color, bold=True)
    return line


# ---------------------------------------------------------------------------
# Manifest helpers
# ---------------------------------------------------------------------------


def _manifest_paths(paths: Iterable[str]) -> list[Path]:
    """Expand directories into the manifest files they contain, sorted by name."""
    found: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            found.extend(sorted(p for p in path.iterdir() if p.suffix in _MANIFEST_SUFFIXES))
        else:
            found.append(path)
    return found


def load_manifests(paths: Iterable[str]) -> list[tuple[str, dict[str, Any]]]:
    """Parse every YAML document in *paths*, skipping empty documents.

    Raises:
        InvalidTemplateError: if a file is not valid YAML.
    """
    manifests: list[tuple[str, dict[str, Any]]] = []
    for path in _manifest_paths(paths):
        try:
            documents = list(yaml.safe_load_all(path.read_text()))
        except yaml.YAMLError as exc:
            raise InvalidTemplateError(f"Template is not valid YAML: {exc}", filename=str(path)) from exc
        for document in documents:
            if document is None:
                continue
            if isinstance(document, dict) and document.get("kind") == "List":
                manifests.extend((str(path), item) for item in document.get("items") or [])
            else:
                manifests.append((str(path), document))
    return manifests


def build_resources(
    manifests: list[tuple[str, dict[str, Any]]],
    namespace: str,
    context: str,
    cluster_crds: list[dict[str, Any]],
) -> list[KubernetesResource]:
    """Turn parsed manifests into resources, resolving custom kinds against CRDs.

    CRDs in *manifests* take precedence over those already in the cluster.

    Raises:
        InvalidTemplateError: for the first manifest lacking a kind or name,
            after every manifest has been checked and each problem logged.
    """

    def _check(manifest: tuple[str, dict[str, Any]]) -> None:
        filename, definition = manifest
        try:
            validate_essentials(definition, filename=filename)
        except InvalidTemplateError as exc:
            _logger.error("invalid_template", filename=filename, error=str(exc))
            raise

    with_delayed_exceptions(manifests, _check, InvalidTemplateError)

    crds = [CustomResourceDefinition(namespace, context, data) for data in cluster_crds]
    crds.extend(
        CustomResourceDefinition(namespace, context, definition)
        for _filename, definition in manifests
        if definition.get("kind") == CustomResourceDefinition.KIND
    )
    index = crds_by_kind(crds)
    return [
        build_resource(namespace, context, definition, crd=index.get(str(definition["kind"])))
        for _filename, definition in manifests
    ]


def _validation_errors(resources: Iterable[KubernetesResource]) -> list[str]:
    errors: list[str] = []
    for resource in resources:
        resource.validate_definition()
        if resource.validation_failed:
            errors.extend(f"{resource.id}: {error}" for error in resource.validation_errors)
    return errors


def _print_report(report: WatchReport) -> None:
    for line in report.summary_lines():
        click.echo(_styled_summary_line(line))
    for outcome in report.succeeded:
        if outcome.status:
            click.echo(f"  {outcome.status}")
    for message in report.debug_messages:
        click.echo("")
        click.echo(message)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
def cli() -> None:
    """KubeConverge - watch Kubernetes rollouts until they converge."""


# ---------------------------------------------------------------------------
# kubeconverge version
# ---------------------------------------------------------------------------


@cli.command("version")
@click.option("--cluster", is_flag=True, help="Also print the kubectl client and cluster server versions.")
@click.option("--context", default=None, help="kubectl context.")
def cmd_version(cluster: bool, context: str | None) -> None:
    """Print the KubeConverge version and exit."""
    click.echo(f"kubeconverge {__version__}")
    if not cluster:
        return

    try:
        config = load_config()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    setup_logging(config.log.level)

    kubectl = Kubectl(
        config.kubectl.namespace,
        context if context is not None else config.kubectl.context,
        default_timeout=config.kubectl.request_timeout_seconds,
    )
    try:
        click.echo(f"kubectl client {kubectl.client_version()}")
        click.echo(f"kubernetes server {kubectl.server_version()}")
    except KubectlError as exc:
        raise click.ClickException(str(exc)) from exc


# ---------------------------------------------------------------------------
# kubeconverge watch
# ---------------------------------------------------------------------------


@cli.command("watch")
@click.option(
    "--filenames",
    "-f",
    "filenames",
    multiple=True,
    required=True,
    type=click.Path(exists=True),
    help="Manifest file or directory; may be repeated.",
)
@click.option("--namespace", "-n", default=None, help="Target namespace.")
@click.option("--context", default=None, help="kubectl context.")
@click.option("--global-timeout", default=None, help="Give up on every resource after this duration (e.g. 10m).")
@click.option("--poll-delay", default=None, type=float, help="Seconds between sync passes.")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(list(LOG_LEVELS)),
    help="Structured log level.",
)
@click.pass_context
def cmd_watch(
    ctx: click.Context,
    filenames: tuple[str, ...],
    namespace: str | None,
    context: str | None,
    global_timeout: str | None,
    poll_delay: float | None,
    log_level: str | None,
) -> None:
    """Watch the resources in FILENAMES until each succeeds, fails or times out."""
    try:
        config = load_config()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    setup_logging(log_level or config.log.level)
    namespace = namespace or config.kubectl.namespace
    context = context if context is not None else config.kubectl.context
    bind_cluster_context(namespace, context)
    raw_timeout = global_timeout if global_timeout is not None else config.watch.global_timeout
    try:
        timeout = parse_duration(raw_timeout) if raw_timeout else None
    except DurationParseError as exc:
        raise click.BadParameter(str(exc), param_hint="--global-timeout") from exc

    kubectl = Kubectl(
        namespace,
        context,
        log_failure_by_default=config.kubectl.log_failures,
        default_timeout=config.kubectl.request_timeout_seconds,
    )
    mediator = SyncMediator(kubectl, max_workers=config.watch.max_workers)

    try:
        manifests = load_manifests(filenames)
        resources = build_resources(
            manifests, namespace, context, mediator.list_all(CustomResourceDefinition.KIND)
        )
    except InvalidTemplateError as exc:
        detail = f"{exc.filename}: {exc}" if exc.filename else str(exc)
        if exc.content:
            detail = f"{detail}\n{exc.content}"
        raise click.ClickException(detail) from exc
    except FatalDeploymentError as exc:
        raise click.ClickException(str(exc)) from exc

    if not resources:
        raise click.ClickException("No resources found in the given manifests")

    errors = _validation_errors(resources)
    if errors:
        raise click.ClickException("Template validation failed:\n" + "\n".join(errors))

    _logger.info("watch_started", namespace=namespace, context=context, resources=len(resources))
    watcher = ResourceWatcher(
        resources,
        mediator,
        timeout=timeout,
        kubectl=kubectl,
        fetch_events=config.watch.fetch_debug_events,
        fetch_logs=config.watch.fetch_debug_logs,
    )
    try:
        report = watcher.run(
            delay_sync=poll_delay if poll_delay is not None else config.watch.poll_delay_seconds,
            reminder_interval=config.watch.reminder_interval_seconds,
        )
    except KubeConvergeError as exc:
        click.echo(click.style(str(exc), fg="red", bold=True), err=True)
        ctx.exit(exit_code_for(exc))

    _print_report(report)
    ctx.exit(report.exit_code)
