"""
HTTP client for the storage backend control API.

Talks JSON over HTTP using httpx. Job watching uses a long-lived
streaming response carrying newline-delimited JSON, one job status per
line.

Endpoints:
    POST /ffs                       -> {"id", "token"}
    POST /ffs/addrs                 -> {"addr"}
    GET  /ffs/info                  -> {"info": {"id", "balancesList": [...]}}
    POST /ffs/stage                 -> {"cid"}          (raw body)
    GET  /ffs/data/{cid}            -> raw bytes
    POST /ffs/storage-config/{cid}  -> {"jobId"}
    GET  /ffs/jobs/watch?ids=...    -> NDJSON job stream

Invariants:
    - Transport failures and 5xx answers raise StorageConnectionError
    - The session token is sent on every request once set
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import BlobNotFoundError, JobNotFoundError, StorageConnectionError, StorageError
from .base import (
    AUTH_HEADER,
    AccountInfo,
    BalanceInfo,
    DealError,
    Job,
    JobStatus,
    Session,
    WalletAddress,
    transport_options,
)

logger = logging.getLogger(__name__)


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SessionPayload(_Wire):
    id: str
    token: str


class AddrPayload(_Wire):
    addr: str
    name: str = ""
    type: str = "bls"


class BalancePayload(_Wire):
    addr: Optional[AddrPayload] = None
    balance: int = 0


class InfoPayload(_Wire):
    id: str = ""
    balances_list: list[BalancePayload] = Field(default_factory=list, alias="balancesList")


class InfoResponse(_Wire):
    info: Optional[InfoPayload] = None


class DealErrorPayload(_Wire):
    proposal_cid: str = Field(default="", alias="proposalCid")
    miner: str = ""
    message: str = ""


class JobPayload(_Wire):
    id: str
    cid: str = ""
    status: JobStatus
    err_cause: str = Field(default="", alias="errCause")
    deal_errors_list: list[DealErrorPayload] = Field(default_factory=list, alias="dealErrorsList")

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> JobStatus:
        return JobStatus.parse(value)

    def to_job(self) -> Job:
        return Job(
            id=self.id,
            cid=self.cid,
            status=self.status,
            err_cause=self.err_cause,
            deal_errors=tuple(
                DealError(proposal_cid=e.proposal_cid, miner=e.miner, message=e.message)
                for e in self.deal_errors_list
            ),
        )


class WatchLine(_Wire):
    job: Optional[JobPayload] = None


class StagePayload(_Wire):
    cid: str


class PushPayload(_Wire):
    job_id: str = Field(alias="jobId")


class HttpStorageBackend:
    """StorageBackend implementation over HTTP.

    Example:
        >>> backend = HttpStorageBackend("http://0.0.0.0:6002")
        >>> session = await backend.create_session()
        >>> backend.set_token(session.token)
        >>> cid = await backend.stage(b"snapshot")
    """

    def __init__(
        self,
        endpoint: str = "http://0.0.0.0:6002",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint: Base URL of the control API
            timeout_seconds: Per-request timeout (watch streams have no read timeout)
            transport: Optional httpx transport (used by tests)
        """
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self._client = httpx.AsyncClient(
            base_url=endpoint,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise StorageConnectionError(
                f"Storage backend request failed: {e}", endpoint=self.endpoint
            ) from e
        self._check(response, path)
        return response

    def _check(self, response: httpx.Response, path: str) -> None:
        if response.status_code >= 500:
            raise StorageConnectionError(
                f"Storage backend error {response.status_code} on {path}",
                endpoint=self.endpoint,
            )
        if response.status_code >= 400:
            raise StorageError(
                f"Storage backend rejected {path}: {response.status_code}",
                status_code=response.status_code,
            )

    def _parse(self, model: type[_Wire], raw: str | bytes) -> Any:
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"Unexpected storage backend response: {e}") from e

    async def create_session(self) -> Session:
        response = await self._request("POST", "/ffs")
        payload = self._parse(SessionPayload, response.content)
        logger.info("Created storage session", extra={"session_id": payload.id})
        return Session(id=payload.id, token=payload.token)

    def set_token(self, token: str) -> None:
        self._client.headers[AUTH_HEADER] = token
        self._client.headers.update(transport_options(self.endpoint, token)["headers"])

    async def new_addr(self, name: str, addr_type: str = "bls") -> WalletAddress:
        response = await self._request("POST", "/ffs/addrs", json={"name": name, "type": addr_type})
        payload = self._parse(AddrPayload, response.content)
        return WalletAddress(addr=payload.addr, name=payload.name or name, type=payload.type)

    async def info(self) -> Optional[AccountInfo]:
        response = await self._request("GET", "/ffs/info")
        payload = self._parse(InfoResponse, response.content)
        if payload.info is None:
            return None
        return AccountInfo(
            id=payload.info.id,
            balances=[
                BalanceInfo(
                    addr=WalletAddress(
                        addr=b.addr.addr,
                        name=b.addr.name,
                        type=b.addr.type,
                        balance=b.balance,
                    ),
                    balance=b.balance,
                )
                for b in payload.info.balances_list
                if b.addr is not None
            ],
        )

    async def stage(self, data: bytes) -> str:
        response = await self._request(
            "POST",
            "/ffs/stage",
            content=data,
            headers={"content-type": "application/octet-stream"},
        )
        return self._parse(StagePayload, response.content).cid

    async def get(self, cid: str) -> bytes:
        try:
            response = await self._request("GET", f"/ffs/data/{cid}")
        except StorageError as e:
            if e.details.get("status_code") == 404:
                raise BlobNotFoundError(cid) from e
            raise
        return response.content

    async def push_storage_config(self, cid: str) -> str:
        response = await self._request("POST", f"/ffs/storage-config/{cid}")
        job_id = self._parse(PushPayload, response.content).job_id
        logger.info("Pushed storage config", extra={"cid": cid, "job_id": job_id})
        return job_id

    async def watch_jobs(self, job_ids: Sequence[str]) -> AsyncIterator[Job]:
        params = [("ids", job_id) for job_id in job_ids]
        timeout = httpx.Timeout(self.timeout_seconds, read=None)
        try:
            async with self._client.stream(
                "GET", "/ffs/jobs/watch", params=params, timeout=timeout
            ) as response:
                if response.status_code == 404 and len(job_ids) == 1:
                    raise JobNotFoundError(job_ids[0])
                self._check(response, "/ffs/jobs/watch")
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    update = self._parse(WatchLine, line)
                    payload = update.job or self._parse(JobPayload, line)
                    yield payload.to_job()
        except httpx.TransportError as e:
            raise StorageConnectionError(
                f"Job watch stream failed: {e}", endpoint=self.endpoint
            ) from e

    async def close(self) -> None:
        await self._client.aclose()
