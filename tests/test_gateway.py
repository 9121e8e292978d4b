"""Unit tests for the RequestGateway class."""
import asyncio
import pytest
import httpx
import openai
from unittest.mock import AsyncMock, patch

from feedbackspec.config.settings import Settings
from feedbackspec.agents.errors import ErrorKind, GatewayError, USER_MESSAGES, GENERIC_USER_MESSAGE
from feedbackspec.agents.gateway import RequestGateway, map_upstream_error


URL = "https://api.openai.com/v1/chat/completions"
MESSAGES = [{"role": "user", "content": "Summarize this feedback"}]


def status_error(cls, status):
    request = httpx.Request("POST", URL)
    return cls("upstream said no", response=httpx.Response(status, request=request), body=None)


class TestConstruction:
    """Client construction and configuration gating."""

    def test_builds_client_without_sdk_retries(self, config):
        """The SDK client is built with retries disabled."""
        with patch("feedbackspec.agents.gateway.AsyncOpenAI") as mock_openai:
            gateway = RequestGateway(config)

        mock_openai.assert_called_once_with(api_key="test-key", max_retries=0)
        assert gateway.client is mock_openai.return_value
        assert gateway.model == "gpt-4o-mini"
        assert gateway.is_configured() is True

    def test_no_client_when_key_missing(self, unconfigured_config):
        with patch("feedbackspec.agents.gateway.AsyncOpenAI") as mock_openai:
            gateway = RequestGateway(unconfigured_config)

        mock_openai.assert_not_called()
        assert gateway.client is None
        assert gateway.is_configured() is False

    def test_blank_key_is_not_configured(self):
        config = Settings(openai_api_key="   ", _env_file=None)
        assert config.ai_configured is False
        assert RequestGateway(config).is_configured() is False

    @pytest.mark.asyncio
    async def test_unconfigured_request_raises(self, unconfigured_gateway):
        with pytest.raises(GatewayError) as exc_info:
            await unconfigured_gateway.make_request(MESSAGES, caller_id="tenant-1")

        assert exc_info.value.kind == ErrorKind.UNCONFIGURED
        assert exc_info.value.user_message == USER_MESSAGES[ErrorKind.UNCONFIGURED]


class TestMakeRequest:
    """Request building and reply handling."""

    @pytest.mark.asyncio
    async def test_returns_reply_text(self, gateway, fake_client, reply):
        reply("Hello there")

        result = await gateway.make_request(MESSAGES, max_tokens=200, temperature=0.1, caller_id="tenant-1")

        assert result == "Hello there"
        kwargs = fake_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"] == MESSAGES
        assert kwargs["max_tokens"] == 200
        assert kwargs["temperature"] == 0.1
        assert kwargs["user"] == "tenant-1"

    @pytest.mark.asyncio
    async def test_anonymous_request_has_no_user_field(self, gateway, fake_client):
        await gateway.make_request(MESSAGES)

        assert "user" not in fake_client.chat.completions.create.call_args.kwargs

    @pytest.mark.asyncio
    async def test_model_override(self, gateway, fake_client):
        await gateway.make_request(MESSAGES, model="gpt-4o")

        assert fake_client.chat.completions.create.call_args.kwargs["model"] == "gpt-4o"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", None])
    async def test_empty_reply_is_malformed(self, gateway, fake_client, make_completion, content):
        fake_client.chat.completions.create.return_value = make_completion(content)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.make_request(MESSAGES)

        assert exc_info.value.kind == ErrorKind.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_missing_choices_is_malformed(self, gateway, fake_client):
        fake_client.chat.completions.create.return_value.choices = []

        with pytest.raises(GatewayError) as exc_info:
            await gateway.make_request(MESSAGES)

        assert exc_info.value.kind == ErrorKind.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_malformed_reply_is_not_cached(self, gateway, fake_client, reply):
        reply("")
        with pytest.raises(GatewayError):
            await gateway.make_request(MESSAGES)

        reply("recovered")
        assert await gateway.make_request(MESSAGES) == "recovered"
        assert fake_client.chat.completions.create.call_count == 2


class TestCaching:
    """Response cache behaviour."""

    @pytest.mark.asyncio
    async def test_identical_request_served_from_cache(self, gateway, fake_client, reply):
        """A repeated request inside the TTL makes exactly one upstream call."""
        reply("cached answer")

        first = await gateway.make_request(MESSAGES, caller_id="tenant-1")
        second = await gateway.make_request(MESSAGES, caller_id="tenant-1")

        assert first == second == "cached answer"
        assert fake_client.chat.completions.create.call_count == 1

    @pytest.mark.asyncio
    async def test_cache_is_shared_across_callers(self, gateway, fake_client):
        await gateway.make_request(MESSAGES, caller_id="tenant-1")
        await gateway.make_request(MESSAGES, caller_id="tenant-2")

        assert fake_client.chat.completions.create.call_count == 1

    @pytest.mark.asyncio
    async def test_different_parameters_miss_cache(self, gateway, fake_client):
        await gateway.make_request(MESSAGES, temperature=0.2)
        await gateway.make_request(MESSAGES, temperature=0.3)

        assert fake_client.chat.completions.create.call_count == 2

    @pytest.mark.asyncio
    async def test_cache_disabled(self, gateway, fake_client):
        await gateway.make_request(MESSAGES, cache_enabled=False)
        await gateway.make_request(MESSAGES, cache_enabled=False)

        assert fake_client.chat.completions.create.call_count == 2
        assert gateway.get_stats()["cache_size"] == 0

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, gateway, fake_client, clock):
        await gateway.make_request(MESSAGES)
        clock.advance(3601)
        await gateway.make_request(MESSAGES)

        assert fake_client.chat.completions.create.call_count == 2

    def test_fifo_eviction(self, fake_client, clock):
        config = Settings(openai_api_key="test-key", cache_max_entries=2, maintenance_interval_seconds=0, _env_file=None)
        gateway = RequestGateway(config, client=fake_client, clock=clock)

        gateway.set_cached_response("a", "1")
        gateway.set_cached_response("b", "2")
        gateway.set_cached_response("c", "3")

        assert gateway.get_cached_response("a") is None
        assert gateway.get_cached_response("b") == "2"
        assert gateway.get_cached_response("c") == "3"

    def test_clear_cache(self, gateway):
        gateway.set_cached_response("a", "1")
        gateway.clear_cache()

        assert gateway.get_cached_response("a") is None

    def test_cache_key_is_deterministic(self):
        reordered = [{"content": "Summarize this feedback", "role": "user"}]

        key = RequestGateway.generate_cache_key(MESSAGES, "gpt-4o-mini", 0.7, 1000)

        assert key == RequestGateway.generate_cache_key(reordered, "gpt-4o-mini", 0.7, 1000)
        assert key != RequestGateway.generate_cache_key(MESSAGES, "gpt-4o", 0.7, 1000)
        assert key != RequestGateway.generate_cache_key(MESSAGES, "gpt-4o-mini", 0.7, 999)
        assert len(key) == 64


class TestRateLimiting:
    """Per-caller sliding window."""

    @pytest.mark.asyncio
    async def test_101st_request_in_window_is_rejected(self, gateway, fake_client, clock):
        for _ in range(100):
            await gateway.make_request(MESSAGES, caller_id="tenant-1", cache_enabled=False)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.make_request(MESSAGES, caller_id="tenant-1", cache_enabled=False)

        assert exc_info.value.kind == ErrorKind.RATE_LIMITED
        assert fake_client.chat.completions.create.call_count == 100

        clock.advance(3601)
        assert await gateway.make_request(MESSAGES, caller_id="tenant-1", cache_enabled=False) == "ok"

    def test_callers_are_limited_independently(self, fake_client, clock):
        config = Settings(openai_api_key="test-key", rate_limit_per_hour=1, maintenance_interval_seconds=0, _env_file=None)
        gateway = RequestGateway(config, client=fake_client, clock=clock)

        assert gateway.check_rate_limit("tenant-1") is True
        assert gateway.check_rate_limit("tenant-1") is False
        assert gateway.check_rate_limit("tenant-2") is True

    def test_window_slides(self, fake_client, clock):
        config = Settings(openai_api_key="test-key", rate_limit_per_hour=2, maintenance_interval_seconds=0, _env_file=None)
        gateway = RequestGateway(config, client=fake_client, clock=clock)

        assert gateway.check_rate_limit("tenant-1")
        clock.advance(1800)
        assert gateway.check_rate_limit("tenant-1")
        assert not gateway.check_rate_limit("tenant-1")

        # First request leaves the window, second is still inside it
        clock.advance(1801)
        assert gateway.check_rate_limit("tenant-1")
        assert not gateway.check_rate_limit("tenant-1")

    def test_anonymous_calls_are_not_limited(self, fake_client, clock):
        config = Settings(openai_api_key="test-key", rate_limit_per_hour=1, maintenance_interval_seconds=0, _env_file=None)
        gateway = RequestGateway(config, client=fake_client, clock=clock)

        assert all(gateway.check_rate_limit(None) for _ in range(5))
        assert gateway.get_stats()["active_callers"] == 0

    @pytest.mark.asyncio
    async def test_cache_hits_count_against_limit(self, fake_client, clock):
        config = Settings(openai_api_key="test-key", rate_limit_per_hour=2, maintenance_interval_seconds=0, _env_file=None)
        gateway = RequestGateway(config, client=fake_client, clock=clock)

        await gateway.make_request(MESSAGES, caller_id="tenant-1")
        await gateway.make_request(MESSAGES, caller_id="tenant-1")

        with pytest.raises(GatewayError) as exc_info:
            await gateway.make_request(MESSAGES, caller_id="tenant-1")
        assert exc_info.value.kind == ErrorKind.RATE_LIMITED


class TestTimeouts:
    """Timeout enforcement and in-flight sharing."""

    @pytest.mark.asyncio
    async def test_timeout_cancels_upstream_call(self, gateway, fake_client):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def slow_call(**kwargs):
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        fake_client.chat.completions.create.side_effect = slow_call

        with pytest.raises(GatewayError) as exc_info:
            await gateway.make_request(MESSAGES, timeout=0.05)

        assert exc_info.value.kind == ErrorKind.TIMEOUT
        assert started.is_set()
        await asyncio.wait_for(cancelled.wait(), 1)
        for _ in range(3):
            await asyncio.sleep(0)
        assert gateway.get_stats()["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_retry_right_after_timeout_starts_a_new_call(self, gateway, fake_client, make_completion):
        """An identical request issued right after a timeout never joins the cancelled task."""
        calls = []

        async def first_call_hangs(**kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                await asyncio.sleep(10)
            return make_completion("fresh")

        fake_client.chat.completions.create.side_effect = first_call_hangs

        with pytest.raises(GatewayError) as exc_info:
            await gateway.make_request(MESSAGES, timeout=0.05)
        assert exc_info.value.kind == ErrorKind.TIMEOUT

        assert await gateway.make_request(MESSAGES, timeout=1) == "fresh"
        assert fake_client.chat.completions.create.call_count == 2

    @pytest.mark.asyncio
    async def test_identical_concurrent_requests_share_one_call(self, gateway, fake_client, make_completion):
        async def delayed_call(**kwargs):
            await asyncio.sleep(0.01)
            return make_completion("shared")

        fake_client.chat.completions.create.side_effect = delayed_call

        results = await asyncio.gather(
            gateway.make_request(MESSAGES, caller_id="tenant-1"),
            gateway.make_request(MESSAGES, caller_id="tenant-2"),
        )

        assert results == ["shared", "shared"]
        assert fake_client.chat.completions.create.call_count == 1

    @pytest.mark.asyncio
    async def test_uncached_requests_are_not_shared(self, gateway, fake_client, make_completion):
        async def delayed_call(**kwargs):
            await asyncio.sleep(0.01)
            return make_completion("separate")

        fake_client.chat.completions.create.side_effect = delayed_call

        await asyncio.gather(
            gateway.make_request(MESSAGES, cache_enabled=False),
            gateway.make_request(MESSAGES, cache_enabled=False),
        )

        assert fake_client.chat.completions.create.call_count == 2


class TestErrorMapping:
    """Upstream exceptions map onto the gateway taxonomy."""

    @pytest.mark.parametrize("error, kind, status", [
        (status_error(openai.BadRequestError, 400), ErrorKind.UPSTREAM_BAD_REQUEST, 400),
        (status_error(openai.AuthenticationError, 401), ErrorKind.UPSTREAM_AUTH_FAILED, 401),
        (status_error(openai.RateLimitError, 429), ErrorKind.RATE_LIMITED, 429),
        (status_error(openai.InternalServerError, 500), ErrorKind.UPSTREAM_SERVER_ERROR, 500),
        (status_error(openai.InternalServerError, 503), ErrorKind.UPSTREAM_SERVER_ERROR, 503),
        (status_error(openai.NotFoundError, 404), ErrorKind.UNKNOWN, 404),
    ])
    def test_status_errors(self, error, kind, status):
        mapped = map_upstream_error(error)

        assert mapped.kind == kind
        assert mapped.status_code == status

    def test_timeout_error(self):
        mapped = map_upstream_error(openai.APITimeoutError(request=httpx.Request("POST", URL)))
        assert mapped.kind == ErrorKind.TIMEOUT

    def test_connection_error(self):
        mapped = map_upstream_error(openai.APIConnectionError(request=httpx.Request("POST", URL)))
        assert mapped.kind == ErrorKind.CONNECTION_FAILED

    def test_unexpected_error(self):
        mapped = map_upstream_error(RuntimeError("socket exploded"))
        assert mapped.kind == ErrorKind.UNKNOWN
        assert "socket exploded" in str(mapped)

    def test_gateway_error_passes_through(self):
        error = GatewayError(ErrorKind.TIMEOUT, "slow")
        assert map_upstream_error(error) is error

    @pytest.mark.asyncio
    async def test_request_raises_mapped_error(self, gateway, fake_client):
        fake_client.chat.completions.create.side_effect = status_error(openai.AuthenticationError, 401)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.make_request(MESSAGES)

        assert exc_info.value.kind == ErrorKind.UPSTREAM_AUTH_FAILED
        assert exc_info.value.is_actionable

    @pytest.mark.asyncio
    async def test_upstream_rate_limit_is_retried(self, fake_client, clock, make_completion):
        config = Settings(openai_api_key="test-key", upstream_max_retries=2,
                          upstream_retry_base_delay=0.0, maintenance_interval_seconds=0, _env_file=None)
        gateway = RequestGateway(config, client=fake_client, clock=clock)
        fake_client.chat.completions.create.side_effect = [
            status_error(openai.RateLimitError, 429),
            status_error(openai.RateLimitError, 429),
            make_completion("third time lucky"),
        ]

        assert await gateway.make_request(MESSAGES) == "third time lucky"
        assert fake_client.chat.completions.create.call_count == 3

    @pytest.mark.asyncio
    async def test_upstream_rate_limit_surfaces_after_retries(self, fake_client, clock):
        config = Settings(openai_api_key="test-key", upstream_max_retries=1,
                          upstream_retry_base_delay=0.0, maintenance_interval_seconds=0, _env_file=None)
        gateway = RequestGateway(config, client=fake_client, clock=clock)
        fake_client.chat.completions.create.side_effect = status_error(openai.RateLimitError, 429)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.make_request(MESSAGES)

        assert exc_info.value.kind == ErrorKind.RATE_LIMITED
        assert fake_client.chat.completions.create.call_count == 2

    def test_user_messages(self):
        assert GatewayError(ErrorKind.RATE_LIMITED, "x").user_message == USER_MESSAGES[ErrorKind.RATE_LIMITED]
        assert GatewayError(ErrorKind.UPSTREAM_SERVER_ERROR, "x").user_message == GENERIC_USER_MESSAGE
        assert GatewayError(ErrorKind.UPSTREAM_SERVER_ERROR, "x").is_actionable is False


class TestMaintenance:
    """Periodic cleanup of cache entries and idle windows."""

    def test_cleanup_removes_idle_windows_and_expired_entries(self, gateway, clock):
        gateway.check_rate_limit("tenant-1")
        gateway.set_cached_response("key", "value")

        assert gateway.cleanup() == {"cache_entries_removed": 0, "windows_removed": 0}

        clock.advance(7201)
        gateway.check_rate_limit("tenant-2")

        assert gateway.cleanup() == {"cache_entries_removed": 1, "windows_removed": 1}
        stats = gateway.get_stats()
        assert stats["cache_size"] == 0
        assert stats["active_callers"] == 1

    def test_get_stats(self, gateway):
        gateway.check_rate_limit("tenant-1")
        gateway.set_cached_response("key", "value")

        assert gateway.get_stats() == {
            "cache_size": 1,
            "active_callers": 1,
            "in_flight": 0,
            "is_configured": True,
        }

    @pytest.mark.asyncio
    async def test_start_and_stop_maintenance(self, gateway):
        task = gateway.start_maintenance()

        assert gateway.start_maintenance() is task
        await gateway.stop_maintenance()
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_aclose_closes_client(self, gateway, fake_client):
        await gateway.aclose()

        fake_client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_first_request_schedules_sweep(self, fake_client, clock):
        config = Settings(openai_api_key="test-key", upstream_max_retries=0, _env_file=None)
        gateway = RequestGateway(config, client=fake_client, clock=clock)
        assert gateway._maintenance_task is None

        await gateway.make_request(MESSAGES, caller_id="tenant-1")
        task = gateway._maintenance_task

        assert task is not None and not task.done()
        await gateway.make_request(MESSAGES, caller_id="tenant-1")
        assert gateway._maintenance_task is task

        await gateway.aclose()
        assert task.cancelled()
        assert gateway._maintenance_task is None

    @pytest.mark.asyncio
    async def test_sweep_disabled_with_zero_interval(self, gateway):
        await gateway.make_request(MESSAGES, caller_id="tenant-1")

        assert gateway._maintenance_task is None
