"""Tests for port specification parsing"""

import pytest

from netlens.errors import EmptyInputError, FormatError, InputValidationError
from netlens.portspec import format_ports, parse_ports


class TestParsePorts:
    def test_mixed_ports_and_range(self):
        assert parse_ports("22,80,443,8000-8003") == [22, 80, 443, 8000, 8001, 8002, 8003]

    def test_sorted_and_deduplicated(self):
        assert parse_ports("443,80,80,1-3,2") == [1, 2, 3, 80, 443]

    def test_whitespace_around_tokens(self):
        assert parse_ports(" 22 , 80 - 82 ") == [22, 80, 81, 82]

    def test_empty_tokens_skipped(self):
        assert parse_ports("22,,80,") == [22, 80]

    def test_single_port_range(self):
        assert parse_ports("5-5") == [5]

    def test_full_range(self):
        ports = parse_ports("1-65535")
        assert len(ports) == 65535
        assert ports[0] == 1 and ports[-1] == 65535

    @pytest.mark.parametrize("text", ["70000", "0", "abc", "-5", "1-2-3", "5-3", "80-", "+80", "٣"])
    def test_malformed_rejected(self, text):
        with pytest.raises(FormatError):
            parse_ports(text)

    def test_one_bad_token_rejects_everything(self):
        with pytest.raises(FormatError) as exc_info:
            parse_ports("22,abc,80")
        assert exc_info.value.token == "abc"
        assert "'abc'" in str(exc_info.value)

    def test_inverted_range_message(self):
        with pytest.raises(FormatError, match="Invalid port range"):
            parse_ports("5-3")

    @pytest.mark.parametrize("text", ["", "   ", ",", " , ,"])
    def test_empty_input(self, text):
        with pytest.raises(EmptyInputError):
            parse_ports(text)

    def test_errors_are_input_validation_errors(self):
        with pytest.raises(InputValidationError):
            parse_ports("99999")
        with pytest.raises(ValueError):
            parse_ports("")


class TestFormatPorts:
    def test_collapses_runs(self):
        assert format_ports([1, 2, 3, 5, 7, 8]) == "1-3,5,7-8"

    def test_single(self):
        assert format_ports([443]) == "443"

    def test_empty(self):
        assert format_ports([]) == ""

    def test_reparse(self):
        ports = parse_ports("22,80,443,8000-8010")
        assert parse_ports(format_ports(ports)) == ports
