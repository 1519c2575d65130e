import asyncio
import json
import socket
import urllib.request
import urllib.error
from typing import Any, Dict, Optional


class HttpError(Exception):
    """Base exception for the HTTP client."""
    pass


class HttpStatusError(HttpError):
    """The server answered with a non-2xx status."""

    def __init__(self, status: int, body: Any, url: str):
        self.status = status
        self.body = body
        self.url = url
        super().__init__(f"HTTP Error {status} from {url}: {json.dumps(body) if not isinstance(body, str) else body}")

    @property
    def is_retryable(self) -> bool:
        return self.status == 429 or self.status >= 500


class HttpTransportError(HttpError):
    """The request never produced a response (DNS, refused connection, timeout)."""

    def __init__(self, message: str, url: str, timed_out: bool = False):
        self.url = url
        self.timed_out = timed_out
        super().__init__(message)


class HttpDecodeError(HttpTransportError):
    """A 2xx answer arrived but its body is not valid JSON."""


async def request(
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    json_data: Optional[Dict[str, Any]] = None,
    timeout: float = 10.0,
) -> Any:
    """
    Executes an HTTP request asynchronously using a thread executor.

    Returns the decoded JSON body (or None for an empty body). Raises
    HttpStatusError for non-2xx answers, HttpTransportError when no
    answer arrived and HttpDecodeError when a 2xx body is not JSON.
    """
    headers = dict(headers or {})

    data = None
    if json_data is not None:
        data = json.dumps(json_data).encode("utf-8")
        headers["Content-Type"] = "application/json"

    # Ensure we always accept JSON
    headers.setdefault("Accept", "application/json")

    req = urllib.request.Request(url, data=data, headers=headers, method=method)

    loop = asyncio.get_running_loop()

    return await loop.run_in_executor(None, _perform_request, req, timeout)

def _perform_request(req: urllib.request.Request, timeout: float) -> Any:
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            response_data = response.read()
            if not response_data:
                return None
            try:
                return json.loads(response_data)
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                raise HttpDecodeError(f"Malformed response body from {req.full_url}: {e}", req.full_url) from e
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8", errors="replace")
        try:
            body = json.loads(error_body)
        except json.JSONDecodeError:
            body = error_body
        raise HttpStatusError(e.code, body, req.full_url) from e
    except urllib.error.URLError as e:
        timed_out = isinstance(e.reason, (socket.timeout, TimeoutError))
        raise HttpTransportError(f"Request to {req.full_url} failed: {e.reason}", req.full_url, timed_out) from e
    except (socket.timeout, TimeoutError) as e:
        raise HttpTransportError(f"Request to {req.full_url} timed out", req.full_url, True) from e
    except OSError as e:
        raise HttpTransportError(f"Request to {req.full_url} failed: {e}", req.full_url) from e
