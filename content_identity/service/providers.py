import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import httpx

from content_identity.config import Config
from content_identity.errors import PermanentProviderError, TransientProviderError
from content_identity.models.providers import AuthScheme, ProviderConfig
from content_identity.service.hashing import mask

logger = logging.getLogger(__name__)

CID_FIELDS = ("cid", "Hash", "IpfsHash")
TRANSIENT_STATUS = {408, 429}


class ResponseShape(str, Enum):
    SINGLE_JSON = "single_json"
    NDJSON = "ndjson"


@dataclass(frozen=True)
class UploadRecord:
    """Normalized view of a provider response, whatever its wire shape."""

    shape: ResponseShape
    cid: Optional[str]
    records: int


def _cid_from(record: dict, cid_field: Optional[str]) -> Optional[str]:
    fields = (cid_field,) if cid_field else CID_FIELDS
    for name in fields:
        value = record.get(name)
        if isinstance(value, dict):
            # IPLD link form: {"/": "<cid>"}
            value = value.get("/")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _detect_shape(body: str, content_type: str) -> ResponseShape:
    if "ndjson" in content_type or "jsonlines" in content_type:
        return ResponseShape.NDJSON
    lines = [line for line in body.splitlines() if line.strip()]
    if len(lines) > 1:
        try:
            json.loads(body)
            return ResponseShape.SINGLE_JSON
        except ValueError:
            return ResponseShape.NDJSON
    return ResponseShape.SINGLE_JSON


def _parse_single(body: str, cid_field: Optional[str]) -> UploadRecord:
    try:
        document = json.loads(body)
    except ValueError:
        return UploadRecord(ResponseShape.SINGLE_JSON, None, 0)
    cid = _cid_from(document, cid_field) if isinstance(document, dict) else None
    return UploadRecord(ResponseShape.SINGLE_JSON, cid, 1)


def _parse_ndjson(body: str, cid_field: Optional[str]) -> UploadRecord:
    cid = None
    records = 0
    for line in body.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError:
            logger.debug("Skipping malformed NDJSON line in upload response")
            continue
        if not isinstance(record, dict):
            continue
        records += 1
        found = _cid_from(record, cid_field)
        if found:
            cid = found
    return UploadRecord(ResponseShape.NDJSON, cid, records)


def parse_upload_response(body: str, content_type: str = "", cid_field: Optional[str] = None) -> UploadRecord:
    """Parse a single JSON object or NDJSON stream; the CID comes from the last well-formed record."""
    shape = _detect_shape(body, content_type.lower())
    if shape == ResponseShape.NDJSON:
        return _parse_ndjson(body, cid_field)
    return _parse_single(body, cid_field)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class UploadProvider(ABC):
    """A content-addressed upload backend: ``submit(bytes) -> cid``."""

    name: str

    @abstractmethod
    async def submit(self, data: bytes, filename: str = "content", timeout: Optional[float] = None) -> str:
        """Upload ``data`` and return its CID.

        Raises TransientProviderError for failures worth retrying and
        PermanentProviderError for everything else.
        """


class HttpUploadProvider(UploadProvider):
    """Multipart POST to an IPFS-style HTTP upload API."""

    def __init__(self, config: ProviderConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.name = config.name
        self.timeout = config.timeout or Config.UPLOAD_TIMEOUT
        self._transport = transport

    def _auth(self):
        if self.config.auth_scheme == AuthScheme.KEY_SECRET:
            return httpx.BasicAuth(self.config.key, self.config.secret)
        return None

    def _headers(self) -> dict:
        if self.config.auth_scheme == AuthScheme.BEARER:
            return {"Authorization": f"Bearer {self.config.token}"}
        return {}

    async def submit(self, data: bytes, filename: str = "content", timeout: Optional[float] = None) -> str:
        files = {self.config.file_field: (filename, data, "application/octet-stream")}
        timeout = timeout or self.timeout

        logger.debug(f"Uploading {len(data)} bytes to provider {self.name}")

        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    self.config.endpoint, files=files, headers=self._headers(), auth=self._auth()
                )
            except httpx.TimeoutException as e:
                raise TransientProviderError(self.name, f"timeout: {type(e).__name__}") from e
            except httpx.RequestError as e:
                raise TransientProviderError(self.name, f"network error: {type(e).__name__}") from e

        status = response.status_code
        if status >= 500 or status in TRANSIENT_STATUS:
            raise TransientProviderError(
                self.name, f"HTTP {status}", status_code=status, retry_after=_retry_after(response)
            )
        if status >= 400:
            raise PermanentProviderError(self.name, f"HTTP {status}", status_code=status)

        record = parse_upload_response(
            response.text, response.headers.get("content-type", ""), self.config.cid_field
        )
        if not record.cid:
            raise PermanentProviderError(
                self.name, f"no CID in {record.shape.value} response ({record.records} records)", status_code=status
            )

        logger.info(f"Provider {self.name} returned CID {mask(record.cid)}")
        return record.cid


def build_providers(configs: List[ProviderConfig], transport: Optional[httpx.AsyncBaseTransport] = None) -> List[UploadProvider]:
    return [HttpUploadProvider(config, transport=transport) for config in sorted(configs, key=lambda c: c.priority)]
