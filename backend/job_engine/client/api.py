"""HTTP client for the job control API, including an SSE reader."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=60.0)
INACCESSIBLE_STATUSES = {401, 403, 404}


class EventStream:
    """Reads ``data:`` frames from an open ``text/event-stream`` response.

    Frames from this API carry a single data line each. ``receive()``
    returns the decoded message, None for a keep-alive comment, and None
    with ``closed`` set once the server ends the stream.
    """

    def __init__(self, response: httpx.Response):
        self._response = response
        self._lines = response.iter_lines()
        self.closed = False

    def receive(self) -> dict[str, Any] | None:
        if self.closed:
            return None
        for line in self._lines:
            if not line:
                continue
            if line.startswith(":"):
                return None
            if line.startswith("data:"):
                try:
                    return json.loads(line[5:].strip())
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring malformed event: {line[:200]}")
        self.close()
        return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._response.close()


class JobApiClient:
    """Thin wrapper over the ``/api/jobs`` endpoints.

    Pass either a configured ``httpx.Client`` (tests hand in the app's
    ``TestClient``) or a ``base_url``. ``owner_id`` is sent as the caller
    principal on every request.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        owner_id: str | None = None,
        client: httpx.Client | None = None,
    ):
        if client is None:
            if base_url is None:
                raise ValueError("JobApiClient needs a base_url or a client")
            client = httpx.Client(base_url=base_url, timeout=DEFAULT_TIMEOUT)
        self._client = client
        self._headers = {"X-Owner-Id": owner_id} if owner_id else {}

    def close(self) -> None:
        self._client.close()

    def create_job(self, job_type: str, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        response = self._client.post(
            "/api/jobs",
            json={"type": job_type, "metadata": metadata or {}},
            headers=self._headers,
        )
        response.raise_for_status()
        return response.json()

    def fetch_status(self, job_id: str) -> dict[str, Any] | None:
        """Current job record, or None when the job is gone or not ours."""
        response = self._client.get(f"/api/jobs/{job_id}/status", headers=self._headers)
        if response.status_code in INACCESSIBLE_STATUSES:
            return None
        response.raise_for_status()
        return response.json()

    def cancel(self, job_id: str) -> dict[str, Any] | None:
        response = self._client.post(f"/api/jobs/{job_id}/cancel", headers=self._headers)
        if response.status_code in INACCESSIBLE_STATUSES:
            return None
        response.raise_for_status()
        return response.json()

    def delete(self, job_id: str) -> bool:
        """Delete the job; False if it was already gone or is not ours."""
        response = self._client.delete(f"/api/jobs/{job_id}", headers=self._headers)
        if response.status_code in INACCESSIBLE_STATUSES:
            return False
        response.raise_for_status()
        return True

    def open_stream(self, job_id: str) -> EventStream:
        request = self._client.build_request(
            "GET",
            f"/api/jobs/{job_id}/stream",
            headers={**self._headers, "Accept": "text/event-stream"},
        )
        response = self._client.send(request, stream=True)
        if response.status_code != 200:
            response.read()
            response.close()
            response.raise_for_status()
        return EventStream(response)
