import sys
import os
from typing import Optional

import click
from rich.console import Console

from . import __version__
from .config import get_settings
from .errors import InputValidationError
from .logging_config import configure_logging
from .models import (
    DnsQueryRequest, Done, HttpCheckRequest, PingRequest, PortScanRequest,
    ProbeRequest, SessionState, TracerouteRequest,
)
from .output import ConsoleOutput
from .portspec import format_ports
from .session import ProbeEngine, QueueSink


console = Console()

EXIT_CODES = {
    SessionState.COMPLETED: 0,
    SessionState.FAILED: 1,
    SessionState.CANCELLED: 130,
}


def is_admin() -> bool:
    """Check if running with elevated privileges (admin on Windows, root on Linux)"""
    if sys.platform == 'win32':
        try:
            import ctypes
            return ctypes.windll.shell32.IsUserAnAdmin() != 0
        except (AttributeError, OSError):
            return False
    else:
        # Linux/macOS: check if running as root
        return os.geteuid() == 0


def build_request(factory, **kwargs) -> ProbeRequest:
    """Build a request, turning validation errors into usage errors"""
    try:
        return factory(**kwargs)
    except InputValidationError as e:
        raise click.UsageError(str(e)) from e


def run_session(ctx: click.Context, request: ProbeRequest, title: str, details: str):
    """
    Start a session and render its events until Done.

    Ctrl-C cancels the session; its remaining events, including the
    cancellation note, are still drained and printed.
    """
    output: ConsoleOutput = ctx.obj['output']
    engine: ProbeEngine = ctx.obj['engine']

    output.print_header(title, details)

    sink = QueueSink()
    session = engine.start(request, sink)
    state: Optional[SessionState] = None

    while state is None:
        try:
            for event in sink:
                output.render(event)
                if isinstance(event, Done):
                    state = event.state
        except KeyboardInterrupt:
            console.print("\n[yellow]Stopping...[/]")
            engine.cancel(session.id)

    ctx.exit(EXIT_CODES.get(state, 1))


@click.group()
@click.option('--debug', is_flag=True, help='Verbose logging and session state output')
@click.option('--log-file', type=click.Path(dir_okay=False),
              help='Also write a detailed log to this file')
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, debug: bool, log_file: Optional[str]):
    """
    NetLens - Network diagnostics from the command line.

    Ping, traceroute, TCP port scan, DNS lookup and HTTP checks with
    live, cancellable output.

    Examples:

        netlens ping 8.8.8.8 -n 10

        netlens trace example.com -m 20

        netlens scan 192.168.1.1 22,80,443,8000-8010

        netlens dns example.com -t MX -s 1.1.1.1

        netlens http https://example.com
    """
    settings = get_settings()
    configure_logging(
        debug=debug,
        log_file=log_file or settings.log_file or None,
        level=settings.log_level,
    )
    ctx.ensure_object(dict)
    ctx.obj['settings'] = settings
    ctx.obj['output'] = ConsoleOutput(console, verbose=debug)
    ctx.obj['engine'] = ProbeEngine()


@main.command()
@click.argument('target')
@click.option('-n', '--count', type=int, default=None,
              help='Number of echo requests (default: 4)')
@click.option('-w', '--timeout', 'timeout_ms', type=int, default=None,
              help='Timeout per reply in milliseconds (default: 1000)')
@click.pass_context
def ping(ctx: click.Context, target: str, count: Optional[int], timeout_ms: Optional[int]):
    """Send ICMP echo requests to TARGET."""
    settings = ctx.obj['settings']
    request = build_request(
        PingRequest,
        target=target,
        count=settings.ping_count if count is None else count,
        timeout_ms=settings.ping_timeout_ms if timeout_ms is None else timeout_ms,
    )
    if sys.platform != 'win32' and not is_admin():
        ctx.obj['output'].print_warning(
            "Not running as root; falling back to unprivileged ICMP sockets if available."
        )
    run_session(
        ctx, request,
        f"Ping {request.target}",
        f"Count: {request.count}  |  Timeout: {request.timeout_ms}ms",
    )


@main.command()
@click.argument('target')
@click.option('-m', '--max-hops', type=int, default=None,
              help='Maximum hops, 1-128 (default: 30)')
@click.option('-w', '--timeout', 'timeout_ms', type=int, default=None,
              help='Timeout per hop in milliseconds (default: 1000)')
@click.pass_context
def trace(ctx: click.Context, target: str, max_hops: Optional[int], timeout_ms: Optional[int]):
    """Trace the route to TARGET."""
    settings = ctx.obj['settings']
    request = build_request(
        TracerouteRequest,
        target=target,
        max_hops=settings.max_hops if max_hops is None else max_hops,
        timeout_ms=settings.trace_timeout_ms if timeout_ms is None else timeout_ms,
    )
    if sys.platform != 'win32' and not is_admin():
        ctx.obj['output'].print_warning(
            "Root privileges are needed to see intermediate hops. Please run with sudo."
        )
    run_session(
        ctx, request,
        f"Traceroute to {request.target}",
        f"Max hops: {request.max_hops}  |  Timeout: {request.timeout_ms}ms",
    )


@main.command()
@click.argument('target')
@click.argument('ports')
@click.option('-w', '--timeout', 'timeout_ms', type=int, default=None,
              help='Connect timeout per port in milliseconds (default: 500)')
@click.option('-j', '--workers', type=int, default=None,
              help='Concurrent connection attempts (default: 1)')
@click.pass_context
def scan(ctx: click.Context, target: str, ports: str,
         timeout_ms: Optional[int], workers: Optional[int]):
    """Scan TCP PORTS (e.g. 22,80,8000-8010) on TARGET."""
    settings = ctx.obj['settings']
    request = build_request(
        PortScanRequest,
        target=target,
        ports=ports,
        timeout_ms=settings.port_timeout_ms if timeout_ms is None else timeout_ms,
        workers=settings.scan_workers if workers is None else workers,
    )
    run_session(
        ctx, request,
        f"TCP port scan of {request.target}",
        f"Ports: {format_ports(list(request.port_list))} ({len(request.port_list)})  |  "
        f"Timeout: {request.timeout_ms}ms  |  Workers: {request.workers}",
    )


@main.command()
@click.argument('name')
@click.option('-t', '--type', 'record_type', default='A', show_default=True,
              help='Record type: A, AAAA, CNAME, MX, NS, PTR, SOA, TXT, ...')
@click.option('-s', '--server', default=None,
              help='DNS server IP address (default: system resolver)')
@click.pass_context
def dns(ctx: click.Context, name: str, record_type: str, server: Optional[str]):
    """Query DNS records for NAME."""
    request = build_request(DnsQueryRequest, name=name, record_type=record_type, server=server)
    run_session(
        ctx, request,
        f"DNS {request.record_type} lookup for {request.name}",
        f"Server: {request.server or 'system default'}",
    )


@main.command()
@click.argument('url')
@click.pass_context
def http(ctx: click.Context, url: str):
    """Check that URL answers an HTTP GET."""
    request = build_request(HttpCheckRequest, url=url)
    run_session(
        ctx, request,
        f"HTTP check of {request.url}",
        f"Timeout: {ctx.obj['settings'].http_timeout:.0f}s",
    )


if __name__ == '__main__':
    main()
