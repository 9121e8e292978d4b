# feedbackspec/agents/gateway.py
from openai import AsyncOpenAI, APIConnectionError, APIStatusError, APITimeoutError, RateLimitError
from typing import List, Dict, Optional, Callable, Any
from feedbackspec.config.settings import Settings
from feedbackspec.agents.errors import ErrorKind, GatewayError
import asyncio
import hashlib
import json
import logging
import threading
import time

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7


class CacheEntry:
    """Cached upstream response text."""

    def __init__(self, value: str, timestamp: float):
        self.value = value
        self.timestamp = timestamp

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.timestamp >= ttl


class RateLimitWindow:
    """Request timestamps for one caller over the rolling window."""

    def __init__(self, caller_id: str, window_start: float):
        self.caller_id = caller_id
        self.requests: List[float] = []
        self.window_start = window_start

    def last_activity(self) -> float:
        return self.requests[-1] if self.requests else self.window_start


class _InFlight:
    """Upstream task shared by every caller waiting on the same cache key."""

    def __init__(self, task: asyncio.Task):
        self.task = task
        self.waiters = 0


def map_upstream_error(error: Exception) -> GatewayError:
    """Translate an OpenAI SDK / transport exception into the gateway taxonomy."""
    if isinstance(error, GatewayError):
        return error

    # APITimeoutError subclasses APIConnectionError, so it has to be checked first
    if isinstance(error, APITimeoutError):
        return GatewayError(ErrorKind.TIMEOUT, "OpenAI request timeout", str(error))
    if isinstance(error, APIConnectionError):
        return GatewayError(ErrorKind.CONNECTION_FAILED, "OpenAI connection failed",
                            "Unable to connect to OpenAI API")

    if isinstance(error, APIStatusError):
        status = error.status_code
        detail = getattr(error, "message", None) or str(error)
        if status == 400:
            return GatewayError(ErrorKind.UPSTREAM_BAD_REQUEST, "Invalid request to OpenAI", detail, status)
        if status == 401:
            return GatewayError(ErrorKind.UPSTREAM_AUTH_FAILED, "OpenAI authentication failed",
                                "Invalid API key or unauthorized access", status)
        if status == 429:
            return GatewayError(ErrorKind.RATE_LIMITED, "OpenAI rate limit exceeded", detail, status)
        if status >= 500:
            return GatewayError(ErrorKind.UPSTREAM_SERVER_ERROR, "OpenAI server error", detail, status)
        return GatewayError(ErrorKind.UNKNOWN, f"OpenAI API error ({status})", detail, status)

    return GatewayError(ErrorKind.UNKNOWN, "Unknown OpenAI error", str(error))


class RequestGateway:
    """
    Single entry point for every text-generation call.

    Owns configuration gating, per-caller rate limiting, the response cache,
    timeout enforcement and error mapping. State lives on the instance so
    tenants (and tests) can be isolated by constructing separate gateways.
    """

    def __init__(self, config: Settings, client: Optional[Any] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.model = config.openai_llm_model
        self.clock = clock
        self.rate_limit = config.rate_limit_per_hour
        self.rate_window = config.rate_limit_window_seconds
        self.idle_window = config.rate_limit_idle_seconds
        self.cache_ttl = config.cache_ttl_seconds
        self.cache_capacity = config.cache_max_entries
        self.default_timeout = config.request_timeout_seconds
        self.max_retries = config.upstream_max_retries
        self.base_delay = config.upstream_retry_base_delay

        self.client = client
        if self.client is None and config.ai_configured:
            # SDK retries off; 429 backoff happens in _fetch
            self.client = AsyncOpenAI(api_key=config.openai_api_key, max_retries=0)

        self._cache: Dict[str, CacheEntry] = {}
        self._windows: Dict[str, RateLimitWindow] = {}
        self._in_flight: Dict[str, _InFlight] = {}
        self._lock = threading.Lock()
        self._maintenance_task: Optional[asyncio.Task] = None

    def is_configured(self) -> bool:
        return self.config.ai_configured and self.client is not None

    @staticmethod
    def generate_cache_key(messages: List[dict], model: str, temperature: float, max_tokens: int) -> str:
        """Deterministic key over the request signature. The caller is deliberately excluded."""
        payload = json.dumps(
            {"messages": messages, "model": model, "temperature": temperature, "max_tokens": max_tokens},
            sort_keys=True,
            ensure_ascii=False,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def check_rate_limit(self, caller_id: Optional[str]) -> bool:
        """
        Test the caller against the sliding window and record the call if accepted.

        Anonymous calls are not limited.
        """
        if not caller_id:
            return True

        now = self.clock()
        cutoff = now - self.rate_window
        with self._lock:
            window = self._windows.get(caller_id)
            if window is None:
                window = RateLimitWindow(caller_id, now)
                self._windows[caller_id] = window

            window.requests = [ts for ts in window.requests if ts > cutoff]
            if window.requests:
                window.window_start = window.requests[0]

            if len(window.requests) >= self.rate_limit:
                return False

            if not window.requests:
                window.window_start = now
            window.requests.append(now)
            return True

    def get_cached_response(self, cache_key: str) -> Optional[str]:
        now = self.clock()
        with self._lock:
            entry = self._cache.get(cache_key)
            if entry is None:
                return None
            if entry.is_expired(now, self.cache_ttl):
                del self._cache[cache_key]
                return None
            return entry.value

    def set_cached_response(self, cache_key: str, value: str) -> None:
        with self._lock:
            # Re-inserting moves the key to the back of the FIFO order
            self._cache.pop(cache_key, None)
            while len(self._cache) >= self.cache_capacity:
                oldest_key = next(iter(self._cache))
                del self._cache[oldest_key]
            self._cache[cache_key] = CacheEntry(value, self.clock())

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    async def make_request(
        self,
        messages: List[dict],
        *,
        model: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        caller_id: Optional[str] = None,
        timeout: Optional[float] = None,
        cache_enabled: bool = True,
        context: str = "AI request",
    ) -> str:
        """
        Send role-tagged messages to the chat completion endpoint.

        Args:
            messages: List of message dicts (e.g., [{"role": "user", "content": "Hello"}])
            model: Model override (defaults to the configured model)
            max_tokens: Upper bound on completion tokens
            temperature: Sampling temperature
            caller_id: Identity the rate limit is charged to
            timeout: Seconds before the call fails with a Timeout error
            cache_enabled: Serve from / store into the response cache
            context: Short label used in log lines

        Returns:
            The assistant's reply text.

        Raises:
            GatewayError: for every failure, tagged with its ErrorKind.
        """
        if not self.is_configured():
            raise GatewayError(ErrorKind.UNCONFIGURED, "OpenAI API key not configured",
                               "OPENAI_API_KEY environment variable is missing")

        if self.config.maintenance_interval_seconds > 0:
            self.start_maintenance()

        if not self.check_rate_limit(caller_id):
            raise GatewayError(ErrorKind.RATE_LIMITED, "Rate limit exceeded",
                               f"Caller has exceeded {self.rate_limit} requests per hour")

        model = model or self.model
        timeout = self.default_timeout if timeout is None else timeout

        cache_key = None
        if cache_enabled:
            cache_key = self.generate_cache_key(messages, model, temperature, max_tokens)
            cached = self.get_cached_response(cache_key)
            if cached is not None:
                logger.info(f"Using cached OpenAI response for {context}")
                return cached

        logger.info(
            f"Making OpenAI request for {context}: model={model}, messages={len(messages)}, "
            f"caller={caller_id or 'anonymous'}, temperature={temperature}, max_tokens={max_tokens}"
        )

        def factory():
            return self._fetch(messages, model, max_tokens, temperature, caller_id, cache_key, context)

        return await self._await_upstream(cache_key, factory, timeout, context)

    async def _await_upstream(self, cache_key: Optional[str], factory: Callable, timeout: float, context: str) -> str:
        """Race the (possibly shared) upstream task against the timeout and cancel it once abandoned."""
        flight = self._in_flight.get(cache_key) if cache_key else None
        if flight is not None and (flight.task.done() or flight.waiters == 0):
            # Finished or abandoned; never join a task that is being cancelled
            self._forget(cache_key, flight)
            flight = None
        if flight is None:
            flight = _InFlight(asyncio.ensure_future(factory()))
            if cache_key:
                self._in_flight[cache_key] = flight
                flight.task.add_done_callback(lambda _task: self._forget(cache_key, flight))
        else:
            logger.info(f"Joining in-flight OpenAI request for {context}")

        flight.waiters += 1
        try:
            return await asyncio.wait_for(asyncio.shield(flight.task), timeout)
        except asyncio.TimeoutError:
            raise GatewayError(ErrorKind.TIMEOUT, "OpenAI request timeout",
                               f"Request timed out after {timeout}s") from None
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                if cache_key:
                    self._forget(cache_key, flight)
                flight.task.cancel()
                logger.warning(f"Cancelled abandoned OpenAI request for {context}")

    def _forget(self, cache_key: str, flight: _InFlight) -> None:
        if self._in_flight.get(cache_key) is flight:
            del self._in_flight[cache_key]

    async def _fetch(self, messages: List[dict], model: str, max_tokens: int, temperature: float,
                     caller_id: Optional[str], cache_key: Optional[str], context: str) -> str:
        """
        Perform the upstream call with exponential backoff on upstream rate limits.
        """
        request = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if caller_id:
            request["user"] = caller_id

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.chat.completions.create(**request)
                break
            except RateLimitError as e:
                if attempt == self.max_retries:
                    # Last attempt, surface the error
                    raise map_upstream_error(e) from e

                delay = self.base_delay * (2 ** attempt)
                logger.warning(f"Rate limit hit on {context}. Retrying in {delay}s... (attempt {attempt + 1}/{self.max_retries + 1})")
                await asyncio.sleep(delay)
            except Exception as e:
                logger.error(f"OpenAI request failed for {context}: {e}")
                raise map_upstream_error(e) from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            content = None

        if not isinstance(content, str) or not content.strip():
            raise GatewayError(ErrorKind.MALFORMED_RESPONSE, "Empty response from OpenAI",
                               "OpenAI returned no content in response")

        usage = getattr(response, "usage", None)
        logger.info(
            f"OpenAI response received for {context}: {len(content)} characters, "
            f"tokens used: {getattr(usage, 'total_tokens', 0)}"
        )

        if cache_key:
            self.set_cached_response(cache_key, content)
        return content

    def cleanup(self) -> Dict[str, int]:
        """Drop expired cache entries and rate-limit windows idle for longer than the idle window."""
        now = self.clock()
        with self._lock:
            expired = [key for key, entry in self._cache.items() if entry.is_expired(now, self.cache_ttl)]
            for key in expired:
                del self._cache[key]

            idle = [caller for caller, window in self._windows.items()
                    if now - window.last_activity() > self.idle_window]
            for caller in idle:
                del self._windows[caller]

        if expired or idle:
            logger.info(f"Gateway cleanup removed {len(expired)} cache entries and {len(idle)} idle rate-limit windows")
        return {"cache_entries_removed": len(expired), "windows_removed": len(idle)}

    def start_maintenance(self) -> asyncio.Task:
        """Schedule cleanup() on a fixed interval in the running event loop."""
        if self._maintenance_task is None or self._maintenance_task.done():
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        return self._maintenance_task

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.maintenance_interval_seconds)
            self.cleanup()

    async def stop_maintenance(self) -> None:
        task, self._maintenance_task = self._maintenance_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def aclose(self) -> None:
        await self.stop_maintenance()
        if self.client is not None and hasattr(self.client, "close"):
            await self.client.close()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "cache_size": len(self._cache),
                "active_callers": len(self._windows),
                "in_flight": len(self._in_flight),
                "is_configured": self.is_configured(),
            }
