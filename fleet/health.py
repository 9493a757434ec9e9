from __future__ import annotations

import time

import httpx


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call an instance health endpoint.

    Any 200 response counts as healthy.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


def instance_health_url(host: str, port: int, path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    return f"http://{host}:{int(port)}{path}"
