from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import Any

import httpx

from .config import ApiConfig
from .errors import BuildNotFoundError, GenericError


def _package_version() -> str:
    try:
        return version("matrixgate")
    except PackageNotFoundError:
        # running from a source checkout without an installed distribution
        return "0+unknown"


USER_AGENT = f"matrixgate/{_package_version()}"


class BuildStatusClient:
    """Read-only client for the `/builds/<id>` endpoint of the CI status API."""

    def __init__(self, api_config: ApiConfig, *, transport: httpx.BaseTransport | None = None) -> None:
        self.api_config = api_config
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.api_config.url.rstrip("/"),
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            follow_redirects=True,
            max_redirects=self.api_config.max_redirects,
            timeout=self.api_config.timeout_seconds,
            transport=self._transport,
        )

    def get_build(self, build_id: str) -> dict[str, Any]:
        try:
            with self._client() as client:
                response = client.get(f"/builds/{build_id}")
                if response.status_code == httpx.codes.NOT_FOUND:
                    raise BuildNotFoundError(build_id)
                response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise GenericError(f"request for build {build_id} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise GenericError(f"build {build_id} returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise GenericError(f"build {build_id} payload must be an object")
        return payload
