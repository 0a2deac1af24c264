from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, Sequence, TypeVar

from swapbot.common import (
    ConfigurationError,
    EndpointTransportError,
    NoEndpointsAvailable,
    guarded_call,
    log_event,
)

from .health import EndpointHealthStore
from .ledger import Web3Ledger
from .settings import EndpointConfig, EndpointPoolSettings
from .stream import LogHandler, WebSocketLogStream

if TYPE_CHECKING:
    from swapbot.trading.types import Wallet

T = TypeVar("T")


class LedgerClient(Protocol):
    name: str

    async def block_number(self) -> int:
        ...

    async def pool_tokens(self, pool_address: str) -> tuple[str, str]:
        ...

    async def get_reserves(self, pool_address: str) -> tuple[int, int, int]:
        ...

    async def balance_of(self, asset_address: str, owner: str) -> int:
        ...

    async def allowance(self, asset_address: str, owner: str, spender: str) -> int:
        ...

    async def get_amount_out(self, *, router: str, amount_in: int, reserve_in: int, reserve_out: int) -> int:
        ...

    async def send_approve(
        self,
        *,
        wallet: Wallet,
        asset_address: str,
        spender: str,
        amount: int,
        gas_price_wei: int,
        gas_limit: int,
    ) -> str:
        ...

    async def send_swap(
        self,
        *,
        wallet: Wallet,
        router: str,
        amount_in: int,
        min_amount_out: int,
        path: list[str],
        deadline: int,
        gas_price_wei: int,
        gas_limit: int,
    ) -> str:
        ...

    async def wait_for_receipt(self, tx_hash: str, *, timeout_seconds: float) -> bool:
        ...

    async def close(self) -> None:
        ...


class LogStream(Protocol):
    async def subscribe_logs(self, *, address: str, topics: list[str], handler: LogHandler) -> str:
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        ...

    async def close(self) -> None:
        ...


@dataclass(slots=True)
class Endpoint:
    name: str
    client: LedgerClient
    stream: LogStream | None = None


@dataclass(slots=True, frozen=True)
class EndpointHealth:
    name: str
    reachable: bool
    marked_failed: bool
    streaming: bool
    block_number: int | None = None
    latency_ms: float | None = None
    error: str = ""


@dataclass(slots=True, frozen=True)
class HealthReport:
    endpoints: tuple[EndpointHealth, ...]
    checked_at: float

    @property
    def total(self) -> int:
        return len(self.endpoints)

    @property
    def reachable_count(self) -> int:
        return sum(1 for item in self.endpoints if item.reachable)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at,
            "total": self.total,
            "reachable": self.reachable_count,
            "endpoints": [asdict(item) for item in self.endpoints],
        }


class EndpointPool:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        endpoints: Sequence[Endpoint],
        health: EndpointHealthStore | None = None,
        rng: random.Random | None = None,
        max_call_attempts: int = 2,
        probe_timeout_seconds: float = 5.0,
    ) -> None:
        if not endpoints:
            raise ConfigurationError("Endpoint pool needs at least one endpoint")
        names = [endpoint.name for endpoint in endpoints]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Endpoint names must be unique: {names}")

        self._logger = logger
        self._endpoints = list(endpoints)
        self._health = health or EndpointHealthStore()
        self._rng = rng or random.Random()
        self._max_call_attempts = max(1, int(max_call_attempts))
        self._probe_timeout_seconds = max(0.5, float(probe_timeout_seconds))

    @classmethod
    def from_settings(cls, *, logger: logging.Logger, settings: EndpointPoolSettings) -> "EndpointPool":
        endpoints = [cls._build_endpoint(logger=logger, config=config, settings=settings) for config in settings.endpoints]
        return cls(
            logger=logger,
            endpoints=endpoints,
            health=EndpointHealthStore(cooldown_seconds=settings.failure_cooldown_seconds),
            max_call_attempts=settings.max_call_attempts,
            probe_timeout_seconds=settings.probe_timeout_seconds,
        )

    @staticmethod
    def _build_endpoint(*, logger: logging.Logger, config: EndpointConfig, settings: EndpointPoolSettings) -> Endpoint:
        stream = None
        if config.ws_url:
            stream = WebSocketLogStream(
                logger=logger,
                name=config.name,
                ws_url=config.ws_url,
                timeout_seconds=settings.request_timeout_seconds,
            )
        return Endpoint(
            name=config.name,
            client=Web3Ledger(
                logger=logger,
                name=config.name,
                rpc_url=config.rpc_url,
                timeout_seconds=settings.request_timeout_seconds,
                chain_id=settings.chain_id,
            ),
            stream=stream,
        )

    @property
    def endpoints(self) -> list[Endpoint]:
        return list(self._endpoints)

    @property
    def primary(self) -> Endpoint:
        return self._endpoints[0]

    @property
    def health(self) -> EndpointHealthStore:
        return self._health

    def get(self, name: str) -> Endpoint | None:
        for endpoint in self._endpoints:
            if endpoint.name == name:
                return endpoint
        return None

    def all_healthy(self) -> list[Endpoint]:
        failed = self._health.failed_names()
        return [endpoint for endpoint in self._endpoints if endpoint.name not in failed]

    def all_streaming(self) -> list[Endpoint]:
        return [endpoint for endpoint in self.all_healthy() if endpoint.stream is not None]

    def pick_random(self) -> Endpoint:
        healthy = self.all_healthy()
        if healthy:
            return self._rng.choice(healthy)

        self._health.clear()
        log_event(
            self._logger,
            level="warning",
            event="endpoint_pool_fail_open",
            message="All endpoints are marked failed; clearing marks and using the primary endpoint",
            primary=self.primary.name,
            endpoint_total=len(self._endpoints),
        )
        return self.primary

    def pick_by_preference(self, names: Sequence[str]) -> Endpoint:
        healthy = {endpoint.name: endpoint for endpoint in self.all_healthy()}
        for name in names:
            endpoint = healthy.get(name)
            if endpoint is not None:
                return endpoint
        return self.pick_random()

    def mark_failed(self, name: str, *, error: str = "") -> None:
        self._health.mark_failed(name)
        log_event(
            self._logger,
            level="warning",
            event="endpoint_marked_failed",
            message="Endpoint marked failed",
            endpoint=name,
            error=error,
            cooldown_seconds=self._health.cooldown_seconds,
        )

    async def _probe(self, endpoint: Endpoint) -> EndpointHealth:
        started = time.perf_counter()
        try:
            block_number = await asyncio.wait_for(endpoint.client.block_number(), timeout=self._probe_timeout_seconds)
        except (EndpointTransportError, asyncio.TimeoutError) as error:
            self.mark_failed(endpoint.name, error=str(error) or "probe timeout")
            return EndpointHealth(
                name=endpoint.name,
                reachable=False,
                marked_failed=True,
                streaming=endpoint.stream is not None,
                error=str(error) or "probe timeout",
            )

        self._health.mark_healthy(endpoint.name)
        return EndpointHealth(
            name=endpoint.name,
            reachable=True,
            marked_failed=False,
            streaming=endpoint.stream is not None,
            block_number=block_number,
            latency_ms=round((time.perf_counter() - started) * 1000.0, 2),
        )

    async def health_check(self) -> HealthReport:
        results = await asyncio.gather(*(self._probe(endpoint) for endpoint in self._endpoints))
        report = HealthReport(endpoints=tuple(results), checked_at=time.time())
        log_event(
            self._logger,
            level="info" if report.reachable_count else "warning",
            event="endpoint_health_checked",
            message="Endpoint health check completed",
            reachable=report.reachable_count,
            total=report.total,
            endpoints=[asdict(item) for item in report.endpoints],
        )
        return report

    async def call(
        self,
        operation: Callable[[LedgerClient], Awaitable[T]],
        *,
        preferred: Sequence[str] = (),
        attempts: int | None = None,
        description: str = "ledger_call",
    ) -> T:
        max_attempts = self._max_call_attempts if attempts is None else max(1, int(attempts))
        last_error: EndpointTransportError | None = None
        for attempt in range(max_attempts):
            endpoint = self.pick_by_preference(preferred) if preferred else self.pick_random()
            try:
                return await operation(endpoint.client)
            except EndpointTransportError as error:
                last_error = error
                self.mark_failed(endpoint.name, error=str(error))
                log_event(
                    self._logger,
                    level="debug",
                    event="endpoint_call_retry",
                    message="Ledger call failed on endpoint; trying another",
                    operation=description,
                    endpoint=endpoint.name,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                )

        raise NoEndpointsAvailable(f"{description} failed after {max_attempts} attempts: {last_error}")

    async def close(self) -> None:
        for endpoint in self._endpoints:
            if endpoint.stream is not None:
                await guarded_call(
                    endpoint.stream.close,
                    logger=self._logger,
                    event="log_stream_close_failed",
                    message="Failed to close log stream",
                    endpoint=endpoint.name,
                )
            await guarded_call(
                endpoint.client.close,
                logger=self._logger,
                event="ledger_close_failed",
                message="Failed to close ledger client",
                endpoint=endpoint.name,
            )
