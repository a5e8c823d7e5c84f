from aiohttp import (
    AsyncResolver,
    ClientSession,
    ClientTimeout,
    DummyCookieJar,
    TCPConnector,
)
from aiohttp_retry import JitterRetry, RetryClient
from twilio.http.async_http_client import AsyncTwilioHttpClient

from memocare.helpers.cache import lru_acache


@lru_acache()
async def aiohttp_session() -> ClientSession:
    """
    Create an AIOHTTP session.

    Cookies are never stored, every outgoing call is authenticated by its SDK. Object is cached for performance.

    Returns a `ClientSession` instance.
    """
    return ClientSession(
        auto_decompress=False,
        cookie_jar=DummyCookieJar(),
        trust_env=True,
        # Performance
        connector=TCPConnector(resolver=AsyncResolver()),
        # Reliability
        timeout=ClientTimeout(
            connect=5,
            total=30,
        ),
    )


@lru_acache()
async def twilio_http() -> AsyncTwilioHttpClient:
    """
    Create a Twilio HTTP client.

    Emergency SMS must not be lost to a transient network error, requests are retried with jitter. Object is cached for performance.

    Returns a `AsyncTwilioHttpClient` instance.
    """
    _twilio_http = AsyncTwilioHttpClient(
        timeout=10,
    )
    _twilio_http.session = RetryClient(
        client_session=await aiohttp_session(),
        # Reliability
        retry_options=JitterRetry(
            attempts=3,
            max_timeout=8,
            start_timeout=0.8,
        ),  # Twilio SDK outsources its retry logic to AIOHTTP
    )
    return _twilio_http
