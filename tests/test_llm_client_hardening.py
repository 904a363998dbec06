"""Test completion client hardening: timeout, single retry, config errors, logging hygiene."""

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import httpx
import pytest
from unittest.mock import patch, MagicMock

from kbchat.errors import ConfigurationError, UpstreamError, UpstreamTimeoutError
from kbchat.llm_client import (
    CompletionClient,
    RetryPolicy,
    _cap_response,
    _redact_headers,
    _redact_token,
    close_http_client,
    retry_on_network_or_5xx,
)
from tests.conftest import completion_response, error_response, stream_response

MESSAGES = [
    {"role": "system", "content": "sys"},
    {"role": "system", "content": "(empty KB)"},
    {"role": "user", "content": "hello"},
]


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestRetryLogic:
    """Retry policy with mocked HTTPX."""

    @patch("kbchat.llm_client._get_http_client")
    def test_retry_once_on_500_with_identical_payload(self, mock_get_client, completion_client):
        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.side_effect = [error_response(500), completion_response("recovered")]

        result = completion_client.complete(MESSAGES)

        assert result.text == "recovered"
        assert result.attempts == 2
        assert mock_client.stream.call_count == 2
        first, second = mock_client.stream.call_args_list
        assert first.kwargs["json"] == second.kwargs["json"]
        assert first.kwargs["headers"] == second.kwargs["headers"]
        assert first.args == second.args

    @patch("kbchat.llm_client._get_http_client")
    def test_no_retry_on_400(self, mock_get_client, completion_client):
        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.return_value = error_response(400)

        with pytest.raises(UpstreamError) as exc_info:
            completion_client.complete(MESSAGES)

        assert exc_info.value.upstream_status == 400
        assert mock_client.stream.call_count == 1

    @patch("kbchat.llm_client._get_http_client")
    def test_no_retry_on_401(self, mock_get_client, completion_client):
        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.return_value = error_response(401)

        with pytest.raises(UpstreamError):
            completion_client.complete(MESSAGES)
        assert mock_client.stream.call_count == 1

    @patch("kbchat.llm_client._get_http_client")
    def test_retry_on_timeout(self, mock_get_client, completion_client):
        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.side_effect = [httpx.ReadTimeout("timeout"), completion_response("ok")]

        result = completion_client.complete(MESSAGES)

        assert result.text == "ok"
        assert mock_client.stream.call_count == 2

    @patch("kbchat.llm_client._get_http_client")
    def test_retry_on_connection_error(self, mock_get_client, completion_client):
        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.side_effect = [httpx.ConnectError("refused"), completion_response("ok")]

        assert completion_client.complete(MESSAGES).text == "ok"
        assert mock_client.stream.call_count == 2

    @patch("kbchat.llm_client._get_http_client")
    def test_gives_up_after_two_attempts(self, mock_get_client, completion_client):
        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.side_effect = [error_response(503), error_response(502), completion_response()]

        with pytest.raises(UpstreamError) as exc_info:
            completion_client.complete(MESSAGES)

        assert exc_info.value.upstream_status == 502
        assert mock_client.stream.call_count == 2

    @patch("kbchat.llm_client._get_http_client")
    def test_two_timeouts_raise_timeout_error(self, mock_get_client, completion_client):
        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.side_effect = httpx.ReadTimeout("timeout")

        with pytest.raises(UpstreamTimeoutError):
            completion_client.complete(MESSAGES)
        assert mock_client.stream.call_count == 2

    @patch("kbchat.llm_client._get_http_client")
    def test_timeout_passed_per_request(self, mock_get_client, completion_client):
        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.return_value = completion_response()

        completion_client.complete(MESSAGES)

        timeout = mock_client.stream.call_args.kwargs["timeout"]
        assert isinstance(timeout, httpx.Timeout)
        assert timeout.read == 15
        assert timeout.connect == 15

    @patch("kbchat.llm_client._get_http_client")
    def test_slow_body_aborted_at_deadline(self, mock_get_client):
        clock = FakeClock()
        client = CompletionClient(
            base_url="https://llm.test/v1",
            timeout_seconds=15,
            retry_policy=RetryPolicy(max_attempts=1),
            api_key_provider=lambda: "sk-test-key-123456",
            clock=clock,
        )
        received = []

        def drip():
            for byte in json.dumps({"choices": []}).encode("utf-8"):
                clock.now += 10
                received.append(byte)
                yield bytes([byte])

        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.return_value = stream_response("", chunks=drip())

        with pytest.raises(UpstreamTimeoutError):
            client.complete(MESSAGES)
        assert len(received) == 2

    @patch("kbchat.llm_client._get_http_client")
    def test_slow_body_counts_as_failed_attempt(self, mock_get_client):
        clock = FakeClock()
        client = CompletionClient(
            base_url="https://llm.test/v1",
            timeout_seconds=15,
            api_key_provider=lambda: "sk-test-key-123456",
            clock=clock,
        )

        def drip():
            while True:
                clock.now += 20
                yield b" "

        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.side_effect = [stream_response("", chunks=drip()), completion_response("ok")]

        result = client.complete(MESSAGES)
        assert result.text == "ok"
        assert result.attempts == 2


class TestRequestShape:
    @patch("kbchat.llm_client._get_http_client")
    def test_payload_and_auth(self, mock_get_client, completion_client):
        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.return_value = completion_response()

        completion_client.complete(MESSAGES)

        args, kwargs = mock_client.stream.call_args
        assert args == ("POST", "https://llm.test/v1/chat/completions")
        assert kwargs["json"] == {"model": "test-model", "temperature": 0.2, "messages": MESSAGES}
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test-key-123456"

    @patch("kbchat.llm_client._get_http_client")
    def test_missing_key_is_config_error(self, mock_get_client):
        client = CompletionClient(base_url="https://llm.test/v1", api_key_provider=lambda: "")
        with pytest.raises(ConfigurationError):
            client.complete(MESSAGES)
        mock_get_client.assert_not_called()


class TestExtractText:
    def test_extracts_and_strips(self):
        data = {"choices": [{"message": {"content": "  hi there \n"}}]}
        assert CompletionClient.extract_text(data) == "hi there"

    @pytest.mark.parametrize("data", [
        {},
        {"choices": []},
        {"choices": [{}]},
        {"choices": [{"message": {"content": None}}]},
        {"choices": [{"message": {"content": "   "}}]},
        {"raw": "<html>oops</html>"},
    ])
    def test_missing_text_is_none(self, data):
        assert CompletionClient.extract_text(data) is None

    @patch("kbchat.llm_client._get_http_client")
    def test_non_json_success_body_has_no_text(self, mock_get_client, completion_client):
        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        mock_client.stream.return_value = stream_response("not json")

        result = completion_client.complete(MESSAGES)
        assert result.text is None
        assert result.attempts == 1


class TestRetryPolicy:
    def test_predicate(self):
        assert retry_on_network_or_5xx(UpstreamError("net"))
        assert retry_on_network_or_5xx(UpstreamError("5xx", upstream_status=500))
        assert retry_on_network_or_5xx(UpstreamTimeoutError("slow"))
        assert not retry_on_network_or_5xx(UpstreamError("4xx", upstream_status=429))
        assert not retry_on_network_or_5xx(ValueError("other"))

    def test_non_retryable_error_propagates_immediately(self):
        calls = []

        def attempt():
            calls.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=2).run(attempt)
        assert len(calls) == 1

    def test_returns_attempt_count(self):
        outcomes = iter([UpstreamError("down"), "ok"])

        def attempt():
            item = next(outcomes)
            if isinstance(item, Exception):
                raise item
            return item

        assert RetryPolicy(max_attempts=2).run(attempt) == ("ok", 2)


class TestLoggingHygiene:
    def test_redact_token(self):
        redacted = _redact_token("Authorization: Bearer sk-1234567890abcdef")
        assert "sk-1234567890abcdef" not in redacted
        assert "Bearer ***" in redacted

    def test_redact_headers(self):
        headers = _redact_headers({"Authorization": "Bearer secret", "Content-Type": "application/json"})
        assert headers["Authorization"] == "Bearer ***"
        assert headers["Content-Type"] == "application/json"

    def test_cap_response_long(self):
        capped = _cap_response("x" * 500, max_len=200)
        assert "300 more bytes" in capped

    @patch("kbchat.llm_client._get_http_client")
    def test_error_context_is_capped_and_redacted(self, mock_get_client, completion_client):
        mock_client = MagicMock()
        mock_get_client.return_value = mock_client
        body = json.dumps({"error": "Bearer leaked-token " + "y" * 500})
        mock_client.stream.return_value = error_response(400, body=body)

        with pytest.raises(UpstreamError) as exc_info:
            completion_client.complete(MESSAGES)

        logged = exc_info.value.context["body"]
        assert "leaked-token" not in logged
        assert "more bytes" in logged


class _DripHandler(BaseHTTPRequestHandler):
    """Answers 200 and then sends the body one byte at a time."""

    delay = 0.2

    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length") or 0))
        body = json.dumps({"choices": [{"message": {"content": "too late"}}]}).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        try:
            for i in range(len(body)):
                self.wfile.write(body[i:i + 1])
                self.wfile.flush()
                time.sleep(self.delay)
        except OSError:
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def drip_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _DripHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/v1"
    server.shutdown()
    server.server_close()


@pytest.mark.integration
class TestWallClockDeadline:
    def test_trickling_server_cannot_outlast_timeout(self, drip_server):
        client = CompletionClient(
            base_url=drip_server,
            timeout_seconds=1.0,
            retry_policy=RetryPolicy(max_attempts=1),
            api_key_provider=lambda: "sk-test-key-123456",
        )
        t0 = time.monotonic()
        try:
            with pytest.raises(UpstreamTimeoutError):
                client.complete(MESSAGES)
        finally:
            close_http_client()
        assert time.monotonic() - t0 < 3.0
