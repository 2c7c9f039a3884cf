"""
Container health check: poll /api/health until it says "healthy" or the
retry budget is spent.

Exit codes: 0 healthy · 1 unhealthy/unreachable · 130 SIGINT · 143 SIGTERM
"""

from __future__ import annotations

import signal
import sys
import time
from importlib.metadata import PackageNotFoundError, version

import click
import requests

try:
    __version__ = version("inkwell")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"

DEFAULT_URL = "http://localhost:5000/api/health"
USER_AGENT = f"inkwell-healthcheck/{__version__}"


def check_once(url: str, *, timeout: float) -> tuple[bool, str]:
    """One GET → (healthy?, one-line summary). Network errors raise."""
    resp = requests.get(url, timeout=timeout, headers={"User-Agent": USER_AGENT})
    try:
        health = resp.json()
    except ValueError:
        health = {"status": "unknown"}
    if not isinstance(health, dict):
        health = {"status": "unknown"}

    if resp.status_code != 200:
        return False, f"HTTP {resp.status_code}: health endpoint returned non-200 status"

    if health.get("status") != "healthy":
        msg = f"status={health.get('status')} database={health.get('database', 'unknown')}"
        if health.get("error"):
            msg += f" error={health['error']}"
        return False, msg

    msg = f"database={health.get('database')} uptime={health.get('uptime')}s"
    mem = health.get("memory")
    if isinstance(mem, dict):
        msg += f" memory={mem.get('heapUsed', mem.get('rss'))}MB"
    return True, msg


def wait_healthy(
    url: str,
    *,
    timeout: float = 10.0,
    retries: int = 3,
    delay: float = 2.0,
    echo=click.echo,
    sleep=time.sleep,
) -> bool:
    """Try up to *retries* times, *delay* seconds apart."""
    attempts = max(retries, 1)
    for attempt in range(1, attempts + 1):
        echo(f"Health check attempt {attempt}/{attempts}…")
        try:
            ok, msg = check_once(url, timeout=timeout)
        except requests.Timeout:
            ok, msg = False, f"request timeout after {timeout}s"
        except requests.RequestException as exc:
            ok, msg = False, f"request failed: {exc}"

        if ok:
            echo(f"✓ Application is healthy ({msg})")
            return True

        echo(f"✗ {msg}")
        if attempt < attempts:
            echo(f"  retrying in {delay:g}s…")
            sleep(delay)
    return False


def _on_sigterm(signum, frame):
    click.echo("\nHealth check terminated", err=True)
    sys.exit(143)


@click.command()
@click.option("--url", envvar="HEALTH_URL", default=DEFAULT_URL, show_default=True)
@click.option(
    "--timeout", envvar="HEALTH_TIMEOUT", type=float, default=10.0, show_default=True,
    help="Per-request timeout in seconds.",
)
@click.option("--retries", envvar="HEALTH_RETRIES", type=int, default=3, show_default=True)
@click.option(
    "--delay", envvar="HEALTH_RETRY_DELAY", type=float, default=2.0, show_default=True,
    help="Seconds between attempts.",
)
def main(url: str, timeout: float, retries: int, delay: float):
    """Check the blog's health endpoint (for Docker HEALTHCHECK)."""
    signal.signal(signal.SIGTERM, _on_sigterm)
    click.echo(f"Health check for {url} (timeout {timeout:g}s, retries {retries})")
    try:
        healthy = wait_healthy(url, timeout=timeout, retries=retries, delay=delay)
    except KeyboardInterrupt:
        click.echo("\nHealth check interrupted", err=True)
        sys.exit(130)

    if healthy:
        click.secho("✓ Health check passed", fg="green")
        sys.exit(0)
    click.secho("✗ Health check failed", fg="red")
    sys.exit(1)


if __name__ == "__main__":
    main()
