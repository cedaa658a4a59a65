import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from nush.nush_context import CommandSet, shell_command
from nush.nush_serialize import deserialize, serialize

logger = logging.getLogger(__name__)


class HttpStatusError(Exception):
    def __init__(self, status: int, url: str, preview: str):
        super().__init__(f"HTTP {status} for {url}: {preview}")
        self.status = status
        self.url = url


async def http_request(method: str, url: str, *, headers: Optional[Dict] = None, timeout: float = 5.0,
                       data: Any = None, full: bool = False, allow_errors: bool = False,
                       retries: int = 2, backoff: float = 0.2) -> Any:
    """
    Core HTTP helper.

    Returns the deserialized body, or with ``full`` a record of
    ``{status, headers, body}``. A non-2xx status raises ``HttpStatusError``
    unless ``allow_errors`` is set. Transport errors are retried with
    exponential backoff.
    """
    headers = {str(k): str(v) for k, v in (headers or {}).items()}
    body = None
    if data is not None:
        if isinstance(data, (bytes, bytearray)):
            body = bytes(data)
        elif isinstance(data, str):
            body = data.encode("utf-8")
            headers.setdefault("Content-Type", "text/plain; charset=utf-8")
        else:
            body = serialize(data, fmt="json", pretty=False).encode("utf-8")
            headers.setdefault("Content-Type", "application/json")

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        for attempt in range(retries + 1):
            try:
                resp = await client.request(method.upper(), url, headers=headers, content=body)
                break
            except httpx.TransportError as e:
                if attempt >= retries:
                    raise
                logger.debug("%s %s failed (%s), retrying", method, url, e)
                await asyncio.sleep(backoff * (2 ** attempt))

    value = deserialize(resp.content, content_type=resp.headers.get("Content-Type"))
    if not (200 <= resp.status_code < 300) and not allow_errors:
        raise HttpStatusError(resp.status_code, url, (resp.text or "")[:200])
    if full:
        return {
            "status": int(resp.status_code),
            "headers": {str(k).lower(): v for k, v in resp.headers.items()},
            "body": value,
        }
    return value


class HttpCommands(CommandSet):
    category = "network"

    async def _request(self, call, method, url, data=None, *, headers, max_time, full, allow_errors):
        try:
            return await http_request(method, url, headers=headers, timeout=max_time, data=data,
                                      full=full, allow_errors=allow_errors)
        except HttpStatusError as e:
            raise call.error(str(e), kind="NetworkFailure", status=e.status) from e
        except httpx.HTTPError as e:
            raise call.error(f"http {method.lower()}: request to {url} failed: {e}", kind="NetworkFailure") from e

    @shell_command("http get", "Fetch a URL.",
                   short={"headers": "H", "max_time": "m", "full": "f", "allow_errors": "e"})
    async def _http_get(self, call, input, url: str, *, headers: dict = None, max_time: float = 5.0,
                        full: bool = False, allow_errors: bool = False):
        return await self._request(call, "GET", url, headers=headers, max_time=max_time,
                                   full=full, allow_errors=allow_errors)

    @shell_command("http delete", "Send a DELETE request.",
                   short={"headers": "H", "max_time": "m", "full": "f", "allow_errors": "e"})
    async def _http_delete(self, call, input, url: str, *, headers: dict = None, max_time: float = 5.0,
                           full: bool = False, allow_errors: bool = False):
        return await self._request(call, "DELETE", url, headers=headers, max_time=max_time,
                                   full=full, allow_errors=allow_errors)

    @shell_command("http post", "Send a POST request; records and lists are sent as JSON.",
                   short={"headers": "H", "max_time": "m", "full": "f", "allow_errors": "e"})
    async def _http_post(self, call, input, url: str, data=None, *, headers: dict = None, max_time: float = 5.0,
                         full: bool = False, allow_errors: bool = False):
        return await self._request(call, "POST", url, input if data is None else data, headers=headers,
                                   max_time=max_time, full=full, allow_errors=allow_errors)

    @shell_command("http put", "Send a PUT request; records and lists are sent as JSON.",
                   short={"headers": "H", "max_time": "m", "full": "f", "allow_errors": "e"})
    async def _http_put(self, call, input, url: str, data=None, *, headers: dict = None, max_time: float = 5.0,
                        full: bool = False, allow_errors: bool = False):
        return await self._request(call, "PUT", url, input if data is None else data, headers=headers,
                                   max_time=max_time, full=full, allow_errors=allow_errors)
