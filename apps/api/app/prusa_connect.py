"""Prusa Connect API client for remote print dispatch."""

import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

REMOTE_BODY_CHARS = 2000


class PrusaConnectError(Exception):
    """Remote API failure mapped to the status code we answer with."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        remote_status: Optional[int] = None,
        remote_body: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.remote_status = remote_status
        self.remote_body = remote_body


class PrinterNotFoundError(PrusaConnectError):
    def __init__(self, name: str, available: List[str]):
        listing = ", ".join(available) if available else "none"
        super().__init__(f"Printer '{name}' not found. Available printers: {listing}", status_code=404)
        self.name = name
        self.available = available


def map_remote_status(status: int) -> int:
    """Local status for a remote HTTP error status."""
    if status in (401, 403):
        return 401
    if status in (404, 413):
        return status
    return 500


def _remote_error(action: str, exc: httpx.HTTPError) -> PrusaConnectError:
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        body = response.text[:REMOTE_BODY_CHARS]
        return PrusaConnectError(
            f"Prusa Connect {action} failed with HTTP {response.status_code}",
            status_code=map_remote_status(response.status_code),
            remote_status=response.status_code,
            remote_body=body,
        )
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException)):
        return PrusaConnectError(f"Cannot reach Prusa Connect during {action}: {exc}", status_code=503)
    return PrusaConnectError(f"Prusa Connect {action} failed: {exc}", status_code=500)


def _printer_id(printer: Dict[str, Any]) -> Optional[str]:
    value = printer.get("uuid") or printer.get("id")
    return str(value) if value is not None else None


class PrusaConnectClient:
    """Authenticated client for the Prusa Connect printer API."""

    def __init__(self, base_url: str, token: Optional[str], transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return bool(self.token)

    async def connect(self):
        """Initialize HTTP client."""
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=30.0,
            follow_redirects=True,
            transport=self.transport,
        )

    async def close(self):
        """Close HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    def _require_client(self) -> httpx.AsyncClient:
        if not self.token:
            raise PrusaConnectError("Prusa Connect API token not configured. Set PRUSA_CONNECT_TOKEN.", status_code=500)
        if not self.client:
            raise RuntimeError("Client not connected. Call connect() first.")
        return self.client

    async def get_printers_raw(self) -> Any:
        """Return the remote printer list body unmodified."""
        client = self._require_client()
        try:
            response = await client.get("/printers")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise _remote_error("printer list", e) from e
        return response.json()

    async def list_printers(self) -> List[Dict[str, Any]]:
        """Get printers as dicts with at least ``id`` and ``name``."""
        data = await self.get_printers_raw()
        raw = data.get("printers", []) if isinstance(data, dict) else data
        if not isinstance(raw, list):
            raise PrusaConnectError("Unexpected printer list format from Prusa Connect", remote_body=str(data)[:REMOTE_BODY_CHARS])

        printers = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            printer_id = _printer_id(entry)
            if printer_id is None:
                continue
            printers.append({**entry, "id": printer_id, "name": entry.get("name") or printer_id})
        return printers

    async def resolve_printer_id(self, name: str) -> Dict[str, Any]:
        """Find a printer by exact name, then by case-insensitive substring."""
        printers = await self.list_printers()

        for printer in printers:
            if printer["name"] == name:
                return printer

        needle = name.lower()
        for printer in printers:
            if needle in str(printer["name"]).lower():
                logger.info(f"Matched printer '{name}' to '{printer['name']}' by substring")
                return printer

        raise PrinterNotFoundError(name, [str(p["name"]) for p in printers])

    async def upload_artifact(self, printer_id: str, content: bytes, filename: str) -> str:
        """Upload a file to the printer's storage and return the remote file id."""
        client = self._require_client()

        # Dynamic timeout: min 30s, ~1s per MB, max 300s
        upload_timeout = min(300.0, max(30.0, len(content) / (1024 * 1024)))
        files = {"file": (filename, content, "application/octet-stream")}
        try:
            response = await client.post(f"/printers/{printer_id}/files", files=files, timeout=upload_timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise _remote_error("file upload", e) from e

        body = response.json()
        file_id = None
        if isinstance(body, dict):
            file_id = body.get("id") or body.get("file_id") or body.get("hash")
        if not file_id:
            raise PrusaConnectError(
                "Prusa Connect upload response did not contain a file id",
                remote_status=response.status_code,
                remote_body=response.text[:REMOTE_BODY_CHARS],
            )
        logger.info(f"Uploaded {filename} ({len(content)} bytes) to printer {printer_id} as {file_id}")
        return str(file_id)

    async def dispatch_print(
        self,
        printer_id: str,
        file_id: str,
        printer_profile: str,
        filament_profile: str,
        print_profile: str,
    ) -> Any:
        """Ask the printer to slice and print an uploaded file."""
        client = self._require_client()
        payload = {
            "command": "START_PRINT",
            "kwargs": {
                "file_id": file_id,
                "printer_profile": printer_profile,
                "filament_profile": filament_profile,
                "print_profile": print_profile,
            },
        }
        try:
            response = await client.post(f"/printers/{printer_id}/commands", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise _remote_error("print command", e) from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text[:REMOTE_BODY_CHARS]}


# Global client instance
_prusa_connect_client: Optional[PrusaConnectClient] = None


async def init_prusa_connect(base_url: str, token: Optional[str], transport: Optional[httpx.AsyncBaseTransport] = None):
    """Initialize the Prusa Connect client. Missing token is logged, not fatal."""
    global _prusa_connect_client

    if not token:
        logger.warning("PRUSA_CONNECT_TOKEN not set; Prusa Connect endpoints will fail until it is configured")

    _prusa_connect_client = PrusaConnectClient(base_url, token, transport=transport)
    await _prusa_connect_client.connect()


async def close_prusa_connect():
    """Close Prusa Connect client."""
    global _prusa_connect_client

    if _prusa_connect_client:
        await _prusa_connect_client.close()
        _prusa_connect_client = None


def get_prusa_connect() -> Optional[PrusaConnectClient]:
    """Get Prusa Connect client (None before startup)."""
    return _prusa_connect_client
