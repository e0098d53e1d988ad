from __future__ import annotations

import httpx

_CLIENTS: dict[str, httpx.AsyncClient] = {}


async def get_async_client(name: str, *, timeout_s: float = 600.0) -> httpx.AsyncClient:
    """Return a process-wide client per logical upstream, creating it on first use."""
    client = _CLIENTS.get(name)
    if client is None or client.is_closed:
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=min(timeout_s, 30.0)),
            limits=httpx.Limits(max_keepalive_connections=20, keepalive_expiry=60.0),
        )
        _CLIENTS[name] = client
    return client


async def aclose_all() -> None:
    clients = list(_CLIENTS.values())
    _CLIENTS.clear()
    for client in clients:
        await client.aclose()
