"""
Port specification parser

Turns text such as ``"22,80,443,8000-8010"`` into a sorted list of ports.
"""

from .errors import EmptyInputError, FormatError


MIN_PORT = 1
MAX_PORT = 65535


def _parse_port(text: str, token: str) -> int:
    text = text.strip()
    if not (text.isascii() and text.isdigit()):
        raise FormatError(token)
    port = int(text)
    if not MIN_PORT <= port <= MAX_PORT:
        raise FormatError(token)
    return port


def parse_ports(text: str) -> list[int]:
    """
    Parse a port specification.

    Tokens are separated by commas. Each token is a single port or an
    inclusive ``start-end`` range with ``start <= end``. A single bad token
    rejects the whole specification.

    Args:
        text: Port specification

    Returns:
        Ascending, duplicate-free list of ports

    Raises:
        EmptyInputError: Nothing to parse
        FormatError: A token is malformed or out of range
    """
    if text is None or not text.strip():
        raise EmptyInputError("Please enter ports to scan.")

    ports: set[int] = set()

    for part in text.split(','):
        token = part.strip()
        if not token:
            continue

        if '-' in token:
            bounds = token.split('-')
            if len(bounds) != 2:
                raise FormatError(token, "Invalid port range")
            try:
                start = _parse_port(bounds[0], token)
                end = _parse_port(bounds[1], token)
            except FormatError:
                raise FormatError(token, "Invalid port range") from None
            if start > end:
                raise FormatError(token, "Invalid port range")
            ports.update(range(start, end + 1))
        else:
            ports.add(_parse_port(token, token))

    if not ports:
        raise EmptyInputError("No valid ports found in the input.")

    return sorted(ports)


def format_ports(ports: list[int]) -> str:
    """Collapse a sorted port list back into compact range notation"""
    if not ports:
        return ""

    parts = []
    start = prev = ports[0]
    for port in ports[1:]:
        if port == prev + 1:
            prev = port
            continue
        parts.append(str(start) if start == prev else f"{start}-{prev}")
        start = prev = port
    parts.append(str(start) if start == prev else f"{start}-{prev}")
    return ",".join(parts)
