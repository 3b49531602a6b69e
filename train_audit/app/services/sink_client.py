"""
Remote sink client.

Posts one batch per request as a form body (``action`` + JSON ``data``) and
interprets the collector's JSON reply. Transport errors, non-success statuses
and malformed or negative replies all surface as ``NetworkFailureError``.
"""

import json
import logging
from typing import Optional, Sequence, Set

import httpx

from train_audit.app.core.config import Settings, settings
from train_audit.app.core.exceptions import NetworkFailureError
from train_audit.app.core.reliability import CircuitBreaker, CircuitOpenError
from train_audit.app.schemas.sink import SinkRow
from train_audit.app.schemas.telemetry import TelemetryRecord

logger = logging.getLogger("train_audit.sink")


class HttpSink:
    """
    HTTP collector client.
    
    Args:
        url: Collector endpoint
        action: Value of the ``action`` form field
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        breaker: Circuit breaker shared by all submissions of this client
    """
    
    def __init__(
        self,
        url: str,
        action: str = "saveData",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        breaker: Optional[CircuitBreaker] = None
    ):
        self.url = url
        self.action = action
        self.breaker = breaker or CircuitBreaker()
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )
    
    @classmethod
    def from_settings(cls, cfg: Settings = settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "HttpSink":
        return cls(
            url=cfg.sink_url,
            action=cfg.sink_action,
            timeout=cfg.sink_timeout_seconds,
            transport=transport,
            breaker=CircuitBreaker(
                failure_threshold=cfg.sink_failure_threshold,
                reset_timeout=cfg.sink_reset_timeout_seconds,
            ),
        )
    
    @staticmethod
    def encode(records: Sequence[TelemetryRecord]) -> str:
        rows = [SinkRow.from_record(record).model_dump(by_alias=True, mode="json") for record in records]
        return json.dumps(rows)
    
    async def submit(self, records: Sequence[TelemetryRecord]) -> Optional[Set[str]]:
        """
        Send a batch in a single request.
        
        Returns:
            The ids the collector acknowledged, or None when the reply carries
            no per-item acknowledgement (the whole batch is accepted)
        
        Raises:
            NetworkFailureError: On any kind of failure
        """
        form = {"action": self.action, "data": self.encode(records)}
        try:
            return await self.breaker.call(self._post, form)
        except CircuitOpenError as exc:
            raise NetworkFailureError("Sink circuit is open", details={"url": self.url}) from exc
        except httpx.HTTPError as exc:
            raise NetworkFailureError(f"Sink unreachable: {exc}", details={"url": self.url}) from exc
    
    async def _post(self, form: dict) -> Optional[Set[str]]:
        response = await self._client.post(self.url, data=form)
        if not response.is_success:
            raise NetworkFailureError(
                f"Sink returned HTTP {response.status_code}",
                details={"status_code": response.status_code}
            )
        
        try:
            payload = response.json()
        except ValueError as exc:
            raise NetworkFailureError("Sink reply is not JSON") from exc
        
        if not isinstance(payload, dict) or payload.get("status") != "success":
            raise NetworkFailureError(
                "Sink did not confirm the batch",
                details={"reply": payload if isinstance(payload, dict) else str(payload)[:200]}
            )
        
        acknowledged = payload.get("acknowledged", payload.get("sentIds"))
        if acknowledged is None:
            return None
        if not isinstance(acknowledged, list):
            raise NetworkFailureError("Malformed acknowledgement list")
        return {str(item) for item in acknowledged}
    
    async def aclose(self) -> None:
        await self._client.aclose()
