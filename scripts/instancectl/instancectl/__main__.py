"""
Instancer Admin CLI - instancectl
Python Click-based admin tool for managing challenge instances and flags.
"""

import json
import sys
from typing import Any, Dict, List, Optional

import click
import requests


# ============================================
# CLI Configuration
# ============================================

class Context:
    """CLI context for global settings."""

    def __init__(self):
        self.api_url: str = "http://localhost:8000"
        self.api_key: Optional[str] = None
        self.user_id: Optional[int] = None
        self.output_format: str = "table"
        self.quiet: bool = False


pass_context = click.make_pass_decorator(Context, ensure=True)


def setup_api_client(ctx: Context) -> requests.Session:
    """Create API client with auth headers."""
    session = requests.Session()
    session.headers.update({"Content-Type": "application/json"})
    if ctx.api_key:
        session.headers.update({"Authorization": f"Bearer {ctx.api_key}"})
    if ctx.user_id is not None:
        session.headers.update({"X-User-Id": str(ctx.user_id)})
    return session


def api_call(ctx: Context, method: str, path: str, **kwargs) -> Any:
    """Perform a request against /api/v1 and return the decoded body."""
    session = setup_api_client(ctx)
    url = f"{ctx.api_url.rstrip('/')}/api/v1{path}"
    try:
        response = session.request(method, url, timeout=60, **kwargs)
    except requests.RequestException as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if response.status_code >= 400:
        try:
            body = response.json()
            message = body.get("message") or body.get("detail") or response.text
        except ValueError:
            message = response.text
        click.echo(f"Error ({response.status_code}): {message}", err=True)
        sys.exit(1)

    return response.json()


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def echo_report(ctx: Context, report: Dict[str, Any]) -> None:
    if ctx.output_format == "json":
        echo_json(report)
        return
    click.echo(
        f"Destroyed: {report.get('cleaned', 0)}  "
        f"Failed: {report.get('failed', 0)}  "
        f"Skipped: {report.get('skipped', 0)}"
    )
    if report.get("failed_ids"):
        click.echo(f"Failed ids: {', '.join(str(i) for i in report['failed_ids'])}")


def format_ports(ports: Dict[str, str]) -> str:
    return ",".join(f"{c}->{h}" for c, h in sorted(ports.items())) or "-"


# ============================================
# Base Commands
# ============================================

@click.group()
@click.option(
    "--api-url",
    default="http://localhost:8000",
    help="API URL for the Instancer server",
    envvar="INSTANCER_API_URL",
)
@click.option(
    "--api-key",
    help="API key for the authenticating gateway",
    envvar="INSTANCER_API_KEY",
)
@click.option(
    "--user-id",
    type=int,
    help="Admin user id, sent as X-User-Id when talking to the service directly",
    envvar="INSTANCER_USER_ID",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.option(
    "--quiet",
    is_flag=True,
    help="Suppress output except errors",
)
@click.pass_context
def cli(
    ctx: click.Context,
    api_url: str,
    api_key: Optional[str],
    user_id: Optional[int],
    output: str,
    quiet: bool,
):
    """Instancer Admin CLI"""
    ctx.ensure_object(Context)
    ctx.obj.api_url = api_url
    ctx.obj.api_key = api_key
    ctx.obj.user_id = user_id
    ctx.obj.output_format = output
    ctx.obj.quiet = quiet


# ============================================
# Instance Commands
# ============================================

@cli.group()
def instances():
    """Challenge instance commands"""
    pass


@instances.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include destroyed instances")
@click.option("--contest-id", type=int, help="Filter by contest")
@click.option("--search", help="Match container, team, user or challenge name")
@pass_context
def instances_list(ctx: Context, show_all: bool, contest_id: Optional[int], search: Optional[str]):
    """List instances"""
    params: Dict[str, Any] = {"status": "all" if show_all else "running"}
    if contest_id is not None:
        params["contest_id"] = contest_id
    if search:
        params["search"] = search

    result = api_call(ctx, "GET", "/admin/instances", params=params)
    items: List[Dict[str, Any]] = result.get("instances", [])

    if ctx.output_format == "json":
        echo_json(items)
        return

    click.echo(
        f"{'ID':<6} {'Team':<16} {'Challenge':<20} {'Status':<10} "
        f"{'Ports':<20} {'Expires':<26}"
    )
    click.echo("-" * 100)
    for item in items:
        expired = " (expired)" if item.get("is_expired") and item.get("status") == "running" else ""
        click.echo(
            f"{item.get('id', ''):<6} "
            f"{item.get('team_name', '')[:16]:<16} "
            f"{item.get('challenge_name', '')[:20]:<20} "
            f"{item.get('status', ''):<10} "
            f"{format_ports(item.get('ports', {}))[:20]:<20} "
            f"{item.get('expires_at', '')}{expired}"
        )
    if not ctx.quiet:
        click.echo(f"\nTotal: {result.get('total', len(items))}")


@instances.command("destroy")
@click.argument("instance_id", type=int)
@click.option("--force", is_flag=True, help="Skip confirmation")
@pass_context
def instances_destroy(ctx: Context, instance_id: int, force: bool):
    """Destroy one instance"""
    if not force:
        if not click.confirm(f"Destroy instance {instance_id}?"):
            return

    api_call(ctx, "DELETE", f"/admin/instances/{instance_id}")
    if not ctx.quiet:
        click.echo(f"Instance {instance_id} destroyed")


@instances.command("batch-destroy")
@click.argument("instance_ids", type=int, nargs=-1, required=True)
@click.option("--force", is_flag=True, help="Skip confirmation")
@pass_context
def instances_batch_destroy(ctx: Context, instance_ids: tuple, force: bool):
    """Destroy several instances"""
    if not force:
        if not click.confirm(f"Destroy {len(instance_ids)} instances?"):
            return

    report = api_call(ctx, "POST", "/admin/instances/batch-destroy", json={"ids": list(instance_ids)})
    echo_report(ctx, report)


@instances.command("clean-expired")
@pass_context
def instances_clean_expired(ctx: Context):
    """Destroy every expired instance now"""
    report = api_call(ctx, "POST", "/admin/instances/clean-expired")
    echo_report(ctx, report)


@instances.command("stats")
@pass_context
def instances_stats(ctx: Context):
    """Show instance statistics"""
    stats = api_call(ctx, "GET", "/admin/instances/stats")

    if ctx.output_format == "json":
        echo_json(stats)
        return

    click.echo(f"Running:          {stats.get('running_count', 0)}")
    click.echo(f"Expired (unswept): {stats.get('expired_count', 0)}")
    click.echo(f"Created today:    {stats.get('today_created', 0)}")
    click.echo(f"Destroyed today:  {stats.get('today_destroyed', 0)}")
    contests = stats.get("contest_stats", [])
    if contests:
        click.echo("\nTop contests:")
        for contest in contests:
            click.echo(f"  {contest.get('title', '')[:40]:<40} {contest.get('count', 0)}")


@instances.command("logs")
@click.argument("instance_id", type=int)
@click.option("--lines", type=int, default=100, help="Number of trailing lines (max 500)")
@pass_context
def instances_logs(ctx: Context, instance_id: int, lines: int):
    """Show runtime logs of an instance"""
    result = api_call(ctx, "GET", f"/admin/instances/{instance_id}/logs", params={"lines": lines})

    if ctx.output_format == "json":
        echo_json(result)
    else:
        click.echo(result.get("logs", ""))


# ============================================
# Flag Commands
# ============================================

@cli.group()
def flags():
    """Team flag commands"""
    pass


@flags.command("list")
@click.argument("contest_id", type=int)
@click.argument("challenge_id", type=int)
@pass_context
def flags_list(ctx: Context, contest_id: int, challenge_id: int):
    """List every team's flag for a challenge"""
    result = api_call(ctx, "GET", f"/admin/contests/{contest_id}/challenges/{challenge_id}/flags")
    items = result.get("flags", [])

    if ctx.output_format == "json":
        echo_json(items)
        return

    click.echo(f"{'Team':<24} {'Flag'}")
    click.echo("-" * 80)
    for item in items:
        click.echo(f"{item.get('team_name', '')[:24]:<24} {item.get('flag', '')}")


@flags.command("generate")
@click.argument("contest_id", type=int)
@click.argument("team_id", type=int)
@pass_context
def flags_generate(ctx: Context, contest_id: int, team_id: int):
    """Generate a team's flags for every public challenge"""
    result = api_call(ctx, "POST", f"/admin/contests/{contest_id}/teams/{team_id}/flags")

    if ctx.output_format == "json":
        echo_json(result)
    elif not ctx.quiet:
        click.echo(f"Team {team_id}: {result.get('count', 0)} flags ready")


if __name__ == "__main__":
    cli()
