"""
Rich console output for NetLens - renders result events as they arrive
"""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from .. import __version__
from ..models import (
    DnsRecordResult, Done, EchoResult, EchoStatus, Error, HopResult, Info, PortResult,
    PortStatus, ResultEvent, SessionState, StateChanged, Summary,
)


PORT_STYLES = {
    PortStatus.OPEN: 'bold green',
    PortStatus.CLOSED: 'red',
    PortStatus.FILTERED: 'yellow',
    PortStatus.ERROR: 'magenta',
}

DONE_STYLES = {
    SessionState.COMPLETED: 'green',
    SessionState.FAILED: 'bold red',
    SessionState.CANCELLED: 'yellow',
}


class ConsoleOutput:
    """
    Rich console output for probe sessions.

    Features:
    - Real-time per-event output
    - Color-coded hop, reply and port lines
    - Statistics summary panel
    """

    def __init__(self, console: Optional[Console] = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose

    def print_header(self, title: str, details: str):
        """Print session header panel"""
        content = Text()
        content.append("🔍 NetLens", style="bold cyan")
        content.append(f" v{__version__}\n", style="dim")
        content.append(title, style="bold")
        content.append("\n")
        content.append(details, style="dim")

        self.console.print(Panel(content, border_style="cyan", padding=(0, 1)))
        self.console.print()

    def render(self, event: ResultEvent):
        """Print one event"""
        if isinstance(event, Info):
            self.console.print(Text(event.text, style="dim" if event.text.startswith("Using") else ""))
        elif isinstance(event, EchoResult):
            self.console.print(self.format_echo(event))
        elif isinstance(event, HopResult):
            self.console.print(self.format_hop(event))
        elif isinstance(event, PortResult):
            self.console.print(self.format_port(event))
        elif isinstance(event, DnsRecordResult):
            self.console.print(Text(f"  {event.text}"))
        elif isinstance(event, Summary):
            self.print_summary(event)
        elif isinstance(event, Error):
            self.print_error(event.message)
        elif isinstance(event, StateChanged):
            if self.verbose:
                self.console.print(f"[dim]state: {event.state.value}[/]")
        elif isinstance(event, Done):
            if event.message:
                style = DONE_STYLES.get(event.state, "")
                self.console.print()
                self.console.print(Text(event.message, style=style))

    def format_echo(self, event: EchoResult) -> Text:
        line = Text()
        if event.ok:
            line.append(f"Reply from {event.address}: ", style="green")
            line.append(f"bytes={event.size if event.size is not None else '-'} ")
            line.append(f"time={self._format_ms(event.rtt_ms)} ")
            line.append(f"TTL={event.ttl if event.ttl is not None else '-'}", style="dim")
        else:
            line.append(event.detail or f"Request failed: {event.status.value}", style="yellow")
        return line

    def format_hop(self, hop: HopResult) -> Text:
        """Format a hop line: number, RTT, address [name]"""
        line = Text()
        line.append(f"{hop.ttl:>3}  ", style="dim")

        if hop.address is None:
            line.append(f"{'*':^10}  ", style="yellow")
            line.append(hop.detail or "Request timed out.", style="yellow")
            return line

        line.append(f"{self._format_ms(hop.rtt_ms):^10}  ")
        line.append(hop.address, style="bold" if hop.status is EchoStatus.SUCCESS else "")
        if hop.hostname and hop.hostname != hop.address:
            line.append(f" [{hop.hostname}]", style="cyan")
        return line

    def format_port(self, result: PortResult) -> Text:
        line = Text()
        line.append(f"Port {result.port:>5}: ")
        line.append(f"{result.label:<18}", style=PORT_STYLES.get(result.status, ""))
        line.append(f"({result.elapsed_ms:.0f}ms)", style="dim")
        return line

    def print_summary(self, summary: Summary):
        """Print ping statistics panel"""
        content = Text()
        content.append("Packets: ", style="bold")
        content.append(
            f"Sent = {summary.sent}, Received = {summary.received}, "
            f"Lost = {summary.lost} ({summary.loss_percent:.0f}% loss)"
        )
        if summary.avg_ms is not None:
            content.append("\n")
            content.append("Round trip: ", style="bold")
            content.append(
                f"Minimum = {self._format_ms(summary.min_ms)}, "
                f"Maximum = {self._format_ms(summary.max_ms)}, "
                f"Average = {self._format_ms(summary.avg_ms)}"
            )

        if summary.sent and summary.received == summary.sent:
            border = "green"
        elif summary.received:
            border = "yellow"
        else:
            border = "red"

        self.console.print()
        self.console.print(Panel(
            content,
            title=Text("📊 Ping statistics", style="bold"),
            border_style=border,
            padding=(0, 1)
        ))

    def print_error(self, message: str):
        """Print error message"""
        if message.startswith("Error"):
            self.console.print(Text(message, style="bold red"))
            return
        self.console.print(Text.assemble(("Error: ", "bold red"), message))

    def print_warning(self, message: str):
        """Print warning message"""
        self.console.print(Text.assemble(("Warning: ", "yellow"), message))

    @staticmethod
    def _format_ms(value: Optional[float]) -> str:
        if value is None:
            return "*"
        if value < 1:
            return "<1ms"
        return f"{value:.0f}ms"
