"""Client for the ArtifactsMMO game server."""

import logging
import os
import re
import time
from collections.abc import Callable
from typing import Any

import httpx

from loopkeeper.services.cooldown import compute_wait

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.artifactsmmo.com"

_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_character_name(name: str | None) -> str:
    """Strip everything the server rejects from a character name."""
    if not name:
        return ""
    return _NAME_RE.sub("", str(name))


class GameApiError(Exception):
    """Raised when the game server answers with a non-2xx status."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"API error ({status_code}): {body}")


class GameClient:
    """Thin wrapper over the game server's character and action endpoints.

    Action methods return the ``data`` payload of the response, which carries
    ``cooldown.total_seconds`` and the updated ``character``.
    """

    def __init__(self, client: httpx.Client | None = None):
        self._owns_client = client is None
        self.client = client or GameClient.get_client()

    @staticmethod
    def get_client(
        base_url: str | None = None, token: str | None = None
    ) -> httpx.Client:
        """Get configured HTTP client.

        Args:
            base_url: Server URL (defaults to ARTIFACTS_API_URL env var)
            token: Account token (defaults to ARTIFACTS_API_TOKEN env var)

        Returns:
            Configured httpx.Client with base_url, headers, and timeout
        """
        if base_url is None:
            base_url = os.getenv("ARTIFACTS_API_URL", DEFAULT_API_URL)
        if token is None:
            token = os.getenv("ARTIFACTS_API_TOKEN", "")

        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        return httpx.Client(base_url=base_url, headers=headers, timeout=30.0)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "GameClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(
        self, method: str, path: str, json: Any | None = None
    ) -> dict[str, Any]:
        response = self.client.request(method, path, json=json)
        if response.is_error:
            raise GameApiError(response.status_code, response.text)

        payload = response.json()
        if isinstance(payload, dict) and "data" in payload:
            return payload["data"]
        return payload

    def get_character(self, name: str) -> dict[str, Any]:
        """Get character details without triggering a cooldown."""
        name = sanitize_character_name(name)
        return self._request("GET", f"/characters/{name}")

    def action(
        self, name: str, action: str, payload: Any | None = None
    ) -> dict[str, Any]:
        """Perform ``/my/{name}/action/{action}``."""
        name = sanitize_character_name(name)
        logger.debug(f"[{name}] action/{action} {payload or ''}")
        return self._request("POST", f"/my/{name}/action/{action}", json=payload)

    def move(self, name: str, x: int, y: int) -> dict[str, Any]:
        return self.action(name, "move", {"x": x, "y": y})

    def gather(self, name: str) -> dict[str, Any]:
        return self.action(name, "gathering")

    def fight(self, name: str) -> dict[str, Any]:
        return self.action(name, "fight")

    def rest(self, name: str) -> dict[str, Any]:
        return self.action(name, "rest")

    def deposit(self, name: str, code: str, quantity: int) -> dict[str, Any]:
        return self.action(
            name, "bank/deposit/item", [{"code": code, "quantity": quantity}]
        )

    def remaining_cooldown(self, name: str) -> float:
        """Seconds (buffer included) until the character may act again.

        Failing to fetch details is not fatal; the next action will report the
        cooldown itself, so 0 is returned.
        """
        try:
            details = self.get_character(name)
        except (GameApiError, httpx.HTTPError) as e:
            logger.warning(f"[{name}] Could not read cooldown: {e}")
            return 0.0
        return compute_wait(details)

    def wait_for_cooldown(
        self, name: str, sleep: Callable[[float], None] = time.sleep
    ) -> float:
        """Block until the character's current cooldown has expired.

        Returns the number of seconds waited.
        """
        wait = self.remaining_cooldown(name)
        if wait > 0:
            logger.info(f"[{name}] Waiting {wait:.1f}s for cooldown")
            sleep(wait)
        return wait
