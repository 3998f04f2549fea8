"""Command-line interface for lb-client."""

import json
import logging
import sys
from typing import Optional

import click

from . import __version__
from .client import LoadBalancedClient
from .config import config_from_env, load_config
from .providers.base import Message
from .retry import RetryConfig, retry_sync


@click.group()
@click.version_option(version=__version__, prog_name="lb-client")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False),
              help="JSON config file (defaults to LB_* environment variables)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """Chat completions load-balanced across several endpoints."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


def get_client(ctx: click.Context) -> LoadBalancedClient:
    """Create client from context."""
    config_path = ctx.obj["config_path"]
    config = load_config(config_path) if config_path else config_from_env()
    return LoadBalancedClient(config)


def _fail(ctx: click.Context, error: Exception) -> None:
    if ctx.obj.get("verbose"):
        import traceback
        click.echo(traceback.format_exc(), err=True)
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@cli.command()
@click.argument("message")
@click.option("--model", "-m", help="Model to request")
@click.option("--system", "-s", help="System prompt")
@click.option("--max-tokens", "-t", type=int, default=1024, help="Maximum tokens in response")
@click.option("--temperature", type=float, default=0.7, help="Sampling temperature")
@click.option("--retries", "-r", type=int, default=0, help="Retry on other endpoints this many times")
@click.option("--stream", "stream_output", is_flag=True, help="Stream the response")
@click.option("--json-output", "-j", is_flag=True, help="Output as JSON")
@click.pass_context
def send(ctx: click.Context, message: str, model: Optional[str], system: Optional[str],
         max_tokens: int, temperature: float, retries: int, stream_output: bool,
         json_output: bool) -> None:
    """Send a single message through the pool.

    Example:
        lb-client -c endpoints.json send "What is 2+2?"
        lb-client send "Hello" --stream --system "You are helpful."
    """
    messages = []
    if system:
        messages.append(Message.system(system))
    messages.append(Message.user(message))

    try:
        with get_client(ctx) as client:
            if stream_output:
                for chunk in client.stream(messages, model=model, max_tokens=max_tokens,
                                           temperature=temperature):
                    click.echo(chunk, nl=False)
                click.echo()
                return

            response = retry_sync(
                client.complete,
                messages,
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                config=RetryConfig(max_retries=retries),
            )

            if json_output:
                output = {
                    "content": response.content,
                    "model": response.model,
                    "finish_reason": response.finish_reason,
                    "usage": response.usage,
                }
                click.echo(json.dumps(output, indent=2))
            else:
                click.echo(response.content)

    except Exception as e:
        _fail(ctx, e)


@cli.command()
@click.option("--json-output", "-j", is_flag=True, help="Output as JSON")
@click.pass_context
def endpoints(ctx: click.Context, json_output: bool) -> None:
    """Show configured endpoints and their circuit state.

    Example:
        lb-client -c endpoints.json endpoints
    """
    try:
        with get_client(ctx) as client:
            stats = client.get_circuit_stats()

            if json_output:
                click.echo(json.dumps(stats, indent=2))
                return

            if not stats:
                click.echo("No endpoints configured.")
            for name, data in stats.items():
                state = data.get("state", "unknown")
                icon = "[CLOSED]" if state == "closed" else ("[OPEN]" if state == "open" else "[HALF]")
                click.echo(f"{icon} {name}  {data.get('base_url', '')}")
                for requested, actual in data.get("model_map", {}).items():
                    click.echo(f"    {requested} -> {actual}")

    except Exception as e:
        _fail(ctx, e)


def main() -> None:
    """Entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
