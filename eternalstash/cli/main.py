"""Click commands: run the service, or query a running one."""

from __future__ import annotations

import asyncio
import json

import click
import httpx

from eternalstash import __version__
from eternalstash.config import load_config
from eternalstash.models.config import EternalStashConfig


@click.group()
@click.version_option(__version__, prog_name="eternalstash")
def cli() -> None:
    """Record which container images ran in which pods, and when."""


def _apply_overrides(
    config: EternalStashConfig,
    kubeconfig: str | None,
    in_cluster: bool,
    namespace: str | None,
    port: int | None,
) -> EternalStashConfig:
    if kubeconfig:
        config.kubernetes.credentials = "kubeconfig"
        config.kubernetes.kubeconfig = kubeconfig
    elif in_cluster:
        config.kubernetes.credentials = "in-cluster"
        config.kubernetes.kubeconfig = ""
    if namespace is not None:
        config.kubernetes.namespace = namespace
    if port is not None:
        config.api.port = port
    return config


@cli.command()
@click.option(
    "--kubeconfig",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to a kubeconfig file. Overrides ETERNALSTASH_KUBECONFIG.",
)
@click.option("--in-cluster", is_flag=True, help="Use the pod's service account credentials.")
@click.option("--namespace", default=None, help="Watch a single namespace instead of the whole cluster.")
@click.option("--port", type=click.IntRange(1024, 65535), default=None, help="Query API port.")
def run(kubeconfig: str | None, in_cluster: bool, namespace: str | None, port: int | None) -> None:
    """Watch the cluster and record image usage until interrupted."""
    if kubeconfig and in_cluster:
        raise click.UsageError("--kubeconfig and --in-cluster are mutually exclusive")
    try:
        config = load_config()
    except ValueError as exc:
        raise click.ClickException(f"invalid configuration: {exc}") from exc

    from eternalstash.app import main

    asyncio.run(main(_apply_overrides(config, kubeconfig, in_cluster, namespace, port)))


@cli.command()
@click.option(
    "--url",
    default="http://localhost:8080",
    show_default=True,
    envvar="ETERNALSTASH_URL",
    help="Base URL of a running EternalStash query API.",
)
@click.option("--timeout", type=float, default=10.0, show_default=True, help="Request timeout in seconds.")
def images(url: str, timeout: float) -> None:
    """Print every recorded image usage as JSON."""
    try:
        response = httpx.get(f"{url.rstrip('/')}/images", timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise click.ClickException(f"query failed: {exc}") from exc
    click.echo(json.dumps(response.json(), indent=2))
