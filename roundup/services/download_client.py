# roundup/services/download_client.py

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from ..config import logger
from ..errors import ConfigurationError, GatewayError, TrackerFault
from ..models import ClientTorrentState, TorrentStatus
from ..utils import extract_info_hash


@dataclass(frozen=True)
class TorrentFile:
    index: int
    name: str
    wanted: bool


class DownloadClient(ABC):
    """
    Contract over an external torrent daemon.

    GatewayError means the daemon itself could not be used (unreachable,
    auth refused, submission rejected). TrackerFault means one hash could not
    be queried while the daemon otherwise answered.
    """

    name = "download client"

    @abstractmethod
    async def submit(self, magnet: str) -> str:
        """Adds a magnet and returns its lowercase info hash."""

    @abstractmethod
    async def status(self, magnet_hash: str) -> TorrentStatus:
        """Returns the torrent's state; ClientTorrentState.MISSING if unknown to the daemon."""

    @abstractmethod
    async def remove(self, magnet_hash: str, delete_files: bool = False) -> None: ...

    @abstractmethod
    async def list_files(self, magnet_hash: str) -> list[TorrentFile]: ...

    @abstractmethod
    async def set_files_wanted(
        self, magnet_hash: str, indexes: list[int], wanted: bool
    ) -> None: ...

    @abstractmethod
    async def reannounce(self, magnet_hash: str) -> None: ...

    async def aclose(self) -> None:
        return None


# --- qBittorrent ---


class QBittorrentClient(DownloadClient):
    """Thin wrapper around the qBittorrent Web API v2."""

    name = "qBittorrent"

    STATE_MAP: dict[str, ClientTorrentState] = {
        "error": ClientTorrentState.ERROR,
        "missingFiles": ClientTorrentState.ERROR,
        "metaDL": ClientTorrentState.METADATA,
        "forcedMetaDL": ClientTorrentState.METADATA,
        "pausedDL": ClientTorrentState.PAUSED,
        "stoppedDL": ClientTorrentState.PAUSED,
        "queuedDL": ClientTorrentState.QUEUED,
        "checkingDL": ClientTorrentState.QUEUED,
        "checkingResumeData": ClientTorrentState.QUEUED,
        "allocating": ClientTorrentState.QUEUED,
        "moving": ClientTorrentState.QUEUED,
        "stalledDL": ClientTorrentState.STALLED,
        "downloading": ClientTorrentState.DOWNLOADING,
        "forcedDL": ClientTorrentState.DOWNLOADING,
        "uploading": ClientTorrentState.COMPLETED,
        "stalledUP": ClientTorrentState.COMPLETED,
        "pausedUP": ClientTorrentState.COMPLETED,
        "stoppedUP": ClientTorrentState.COMPLETED,
        "queuedUP": ClientTorrentState.COMPLETED,
        "forcedUP": ClientTorrentState.COMPLETED,
        "checkingUP": ClientTorrentState.COMPLETED,
    }

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_url = f"{url.rstrip('/')}/api/v2/"
        self.username = username
        self.password = password
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._authenticated = False
        self._login_lock = asyncio.Lock()

    async def _login(self) -> None:
        async with self._login_lock:
            try:
                response = await self._client.post(
                    f"{self.api_url}auth/login",
                    data={"username": self.username, "password": self.password},
                )
            except httpx.HTTPError as exc:
                raise GatewayError(f"qBittorrent unreachable: {exc}") from exc
            if response.status_code != 200 or response.text.strip().lower() not in {
                "ok",
                "ok.",
            }:
                raise GatewayError(
                    f"qBittorrent login failed: {response.status_code} {response.text.strip()}"
                )
            self._authenticated = True
            logger.debug("[CLIENT] qBittorrent session authenticated.")

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        if not self._authenticated:
            await self._login()

        url = f"{self.api_url}{endpoint}"
        try:
            response = await self._client.request(method, url, **kwargs)
            if response.status_code == 403:
                logger.debug("[CLIENT] qBittorrent session expired, re-authenticating")
                self._authenticated = False
                await self._login()
                response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise GatewayError(f"HTTP {method} {endpoint} failed: {exc}") from exc

        if response.status_code >= 400:
            raise GatewayError(
                f"HTTP {method} {endpoint} failed: {response.status_code} {response.text[:200]}"
            )
        return response

    async def submit(self, magnet: str) -> str:
        magnet_hash = extract_info_hash(magnet)
        if not magnet_hash:
            raise GatewayError(f"Cannot derive an info hash from magnet {magnet[:80]}")
        response = await self._request("POST", "torrents/add", data={"urls": magnet})
        if response.text.strip().lower().startswith("fails"):
            raise GatewayError(f"qBittorrent rejected torrent {magnet_hash}")
        logger.info(f"[CLIENT] qBittorrent accepted torrent {magnet_hash}.")
        return magnet_hash

    async def status(self, magnet_hash: str) -> TorrentStatus:
        response = await self._request(
            "GET", "torrents/info", params={"hashes": magnet_hash}
        )
        try:
            torrents = response.json()
        except ValueError as exc:
            raise TrackerFault(magnet_hash, f"invalid JSON from torrents/info: {exc}") from exc
        if not isinstance(torrents, list):
            raise TrackerFault(magnet_hash, "torrents/info did not return a list")
        if not torrents:
            return TorrentStatus(ClientTorrentState.MISSING, 0.0)

        data = torrents[0]
        try:
            progress = float(data.get("progress", 0.0))
        except (TypeError, ValueError) as exc:
            raise TrackerFault(magnet_hash, f"bad progress value: {exc}") from exc
        raw_state = str(data.get("state", ""))
        state = self.STATE_MAP.get(raw_state, ClientTorrentState.DOWNLOADING)
        if progress >= 1.0 and state is not ClientTorrentState.ERROR:
            state = ClientTorrentState.COMPLETED
        return TorrentStatus(state, progress, data.get("name"))

    async def remove(self, magnet_hash: str, delete_files: bool = False) -> None:
        await self._request(
            "POST",
            "torrents/delete",
            data={"hashes": magnet_hash, "deleteFiles": str(delete_files).lower()},
        )

    async def list_files(self, magnet_hash: str) -> list[TorrentFile]:
        response = await self._request("GET", "torrents/files", params={"hash": magnet_hash})
        try:
            entries = response.json()
        except ValueError as exc:
            raise TrackerFault(magnet_hash, f"invalid JSON from torrents/files: {exc}") from exc
        return [
            TorrentFile(
                index=int(entry.get("index", position)),
                name=str(entry.get("name", "")),
                wanted=int(entry.get("priority", 1)) != 0,
            )
            for position, entry in enumerate(entries or [])
        ]

    async def set_files_wanted(
        self, magnet_hash: str, indexes: list[int], wanted: bool
    ) -> None:
        if not indexes:
            return
        await self._request(
            "POST",
            "torrents/filePrio",
            data={
                "hash": magnet_hash,
                "id": "|".join(str(i) for i in indexes),
                "priority": 1 if wanted else 0,
            },
        )

    async def reannounce(self, magnet_hash: str) -> None:
        await self._request("POST", "torrents/reannounce", data={"hashes": magnet_hash})

    async def aclose(self) -> None:
        await self._client.aclose()


# --- Transmission ---


class TransmissionClient(DownloadClient):
    """Transmission JSON-RPC client with X-Transmission-Session-Id negotiation."""

    name = "Transmission"
    SESSION_HEADER = "X-Transmission-Session-Id"
    STATUS_FIELDS = [
        "hashString",
        "name",
        "status",
        "percentDone",
        "metadataPercentComplete",
        "error",
        "errorString",
        "peersSendingToUs",
        "rateDownload",
    ]

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        url = url.rstrip("/")
        self.rpc_url = url if url.endswith("/rpc") else f"{url}/transmission/rpc"
        self._auth = httpx.BasicAuth(username, password) if username or password else None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._session_id: str | None = None

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        headers = {self.SESSION_HEADER: self._session_id} if self._session_id else {}
        try:
            return await self._client.post(
                self.rpc_url, json=payload, headers=headers, auth=self._auth
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"Transmission unreachable: {exc}") from exc

    async def _call(self, method: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        payload = {"method": method, "arguments": arguments or {}}
        response = await self._post(payload)
        # First call may need X-Transmission-Session-Id negotiation
        if response.status_code == 409:
            self._session_id = response.headers.get(self.SESSION_HEADER)
            response = await self._post(payload)

        if response.status_code >= 400:
            raise GatewayError(f"Transmission {method} failed: HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayError(f"Transmission {method} returned invalid JSON") from exc
        result = body.get("result") if isinstance(body, dict) else None
        if result != "success":
            raise GatewayError(f"Transmission {method} failed: {result}")
        return body.get("arguments") or {}

    async def submit(self, magnet: str) -> str:
        arguments = await self._call("torrent-add", {"filename": magnet})
        torrent = arguments.get("torrent-added") or arguments.get("torrent-duplicate")
        if not isinstance(torrent, dict) or not torrent.get("hashString"):
            raise GatewayError("Transmission did not report the added torrent")
        magnet_hash = str(torrent["hashString"]).lower()
        logger.info(f"[CLIENT] Transmission accepted torrent {magnet_hash}.")
        return magnet_hash

    async def _get_torrent(self, magnet_hash: str, fields: list[str]) -> dict[str, Any] | None:
        arguments = await self._call("torrent-get", {"ids": [magnet_hash], "fields": fields})
        torrents = arguments.get("torrents")
        if not isinstance(torrents, list):
            raise TrackerFault(magnet_hash, "torrent-get did not return a torrent list")
        return torrents[0] if torrents else None

    async def status(self, magnet_hash: str) -> TorrentStatus:
        data = await self._get_torrent(magnet_hash, self.STATUS_FIELDS)
        if data is None:
            return TorrentStatus(ClientTorrentState.MISSING, 0.0)
        try:
            progress = float(data.get("percentDone", 0.0))
            metadata = float(data.get("metadataPercentComplete", 1.0))
            status_code = int(data.get("status", 0))
            error_code = int(data.get("error", 0))
        except (TypeError, ValueError) as exc:
            raise TrackerFault(magnet_hash, f"bad torrent-get values: {exc}") from exc

        name = data.get("name")
        # error 3 is a local error; 1 and 2 are tracker warnings/errors.
        if error_code == 3:
            logger.warning(f"[CLIENT] Transmission error for {magnet_hash}: {data.get('errorString')}")
            return TorrentStatus(ClientTorrentState.ERROR, progress, name)
        if progress >= 1.0 or status_code in (5, 6):
            return TorrentStatus(ClientTorrentState.COMPLETED, progress, name)
        if metadata < 1.0:
            return TorrentStatus(ClientTorrentState.METADATA, progress, name)
        if status_code == 0:
            return TorrentStatus(ClientTorrentState.PAUSED, progress, name)
        if status_code in (1, 2, 3):
            return TorrentStatus(ClientTorrentState.QUEUED, progress, name)
        if not data.get("peersSendingToUs") and not data.get("rateDownload"):
            return TorrentStatus(ClientTorrentState.STALLED, progress, name)
        return TorrentStatus(ClientTorrentState.DOWNLOADING, progress, name)

    async def remove(self, magnet_hash: str, delete_files: bool = False) -> None:
        await self._call(
            "torrent-remove", {"ids": [magnet_hash], "delete-local-data": delete_files}
        )

    async def list_files(self, magnet_hash: str) -> list[TorrentFile]:
        data = await self._get_torrent(magnet_hash, ["files", "fileStats"])
        if data is None:
            return []
        files = data.get("files") or []
        stats = data.get("fileStats") or []
        return [
            TorrentFile(
                index=index,
                name=str(entry.get("name", "")),
                wanted=bool(stats[index].get("wanted", True)) if index < len(stats) else True,
            )
            for index, entry in enumerate(files)
        ]

    async def set_files_wanted(
        self, magnet_hash: str, indexes: list[int], wanted: bool
    ) -> None:
        if not indexes:
            return
        key = "files-wanted" if wanted else "files-unwanted"
        await self._call("torrent-set", {"ids": [magnet_hash], key: indexes})

    async def reannounce(self, magnet_hash: str) -> None:
        await self._call("torrent-reannounce", {"ids": [magnet_hash]})

    async def aclose(self) -> None:
        await self._client.aclose()


def build_download_client(client_config: dict[str, Any]) -> DownloadClient:
    client_type = client_config.get("type", "qbittorrent")
    kwargs = {
        "url": client_config["url"],
        "username": client_config.get("username", ""),
        "password": client_config.get("password", ""),
        "timeout": float(client_config.get("timeout", 15.0)),
    }
    if client_type == "transmission":
        return TransmissionClient(**kwargs)
    if client_type == "qbittorrent":
        return QBittorrentClient(**kwargs)
    raise ConfigurationError(f"Unsupported download client type: {client_type}")
