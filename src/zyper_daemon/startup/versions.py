"""Available server versions, fetched from the upstream project APIs."""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from zyper_daemon.core.exceptions import VersionLookupError
from zyper_daemon.core.models import ServerKind

logger = structlog.get_logger()

PAPER_API = "https://api.papermc.io/v2/projects/paper"
VELOCITY_API = "https://api.papermc.io/v2/projects/velocity"
PURPUR_API = "https://api.purpurmc.org/v2/purpur"
MOJANG_MANIFEST = "https://launchermeta.mojang.com/mc/game/version_manifest.json"

FALLBACK_VERSIONS = ["1.20.4", "1.20.1", "1.19.4", "1.18.2"]
SPIGOT_VERSIONS = ["1.20.4", "1.20.1", "1.19.4", "1.18.2", "1.17.1", "1.16.5"]
VELOCITY_FALLBACK = ["3.3.0", "3.2.0"]
VANILLA_LIMIT = 20


class VersionCatalog:
    """Lists versions per server kind, newest first.

    Upstream failures fall back to a static list so the panel can always
    offer something.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, connect=5.0))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, url: str) -> Any:
        response = await self.client.get(url)
        response.raise_for_status()
        return response.json()

    async def versions(self, kind: str) -> List[str]:
        try:
            server_kind = ServerKind(kind.lower())
        except ValueError:
            return list(SPIGOT_VERSIONS)

        if server_kind == ServerKind.BUNGEE:
            return ["latest"]
        if server_kind == ServerKind.SPIGOT:
            return list(SPIGOT_VERSIONS)

        fallback = VELOCITY_FALLBACK if server_kind == ServerKind.VELOCITY else FALLBACK_VERSIONS
        try:
            if server_kind == ServerKind.PAPER:
                data = await self._get_json(PAPER_API)
                return list(reversed(data["versions"]))
            if server_kind == ServerKind.VELOCITY:
                data = await self._get_json(VELOCITY_API)
                return list(reversed(data["versions"]))
            if server_kind == ServerKind.PURPUR:
                data = await self._get_json(PURPUR_API)
                return list(reversed(list(data["versions"])))
            data = await self._get_json(MOJANG_MANIFEST)
            releases = [v["id"] for v in data["versions"] if v.get("type") == "release"]
            return releases[:VANILLA_LIMIT]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning("Version lookup failed, using fallback", kind=server_kind.value, error=str(e))
            return list(fallback)

    async def paper_builds(self, version: str) -> Dict[str, Any]:
        try:
            data = await self._get_json(f"{PAPER_API}/versions/{version}")
            builds = list(data["builds"])
        except httpx.HTTPStatusError as e:
            raise VersionLookupError(
                f"Paper version {version} not available (HTTP {e.response.status_code})",
                code="version_not_found",
            ) from e
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            raise VersionLookupError(f"Failed to fetch Paper builds: {e}", code="upstream_error") from e

        return {
            "version": version,
            "builds": list(reversed(builds)),
            "latest": builds[-1] if builds else None,
        }
