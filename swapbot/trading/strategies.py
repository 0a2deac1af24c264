from __future__ import annotations

import asyncio
import itertools
import logging
import random
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, ClassVar, Sequence

from swapbot.common import (
    FAIL_REASON_EXECUTION_ERROR,
    FAIL_REASON_WATCH_TIMEOUT,
    ConfigurationError,
    EngineError,
    LedgerRevertError,
    log_event,
    sleep_seconds,
)

from .executor import TradeExecutor
from .monitor import PriceMonitor
from .progress import ProgressFeed
from .types import (
    MODE_BUY,
    MODE_SELL,
    MODE_TWO_WAY,
    SIDE_BUY,
    SIDE_SELL,
    STRATEGY_DEFAULT,
    STRATEGY_FLUSH,
    STRATEGY_INSTANT,
    STRATEGY_MARKET_MAKER,
    STRATEGY_SELL_ALL,
    AssetSpec,
    ConcurrencyPolicy,
    DetectedAsset,
    PoolSpec,
    PriceTrigger,
    StrategyParams,
    SwapIntent,
    SwapResult,
    Wallet,
    from_base_units,
    normalize_strategy,
    to_base_units,
)

Sleeper = Callable[[float], Awaitable[None]]
ResultSink = Callable[[SwapResult], None]
WalletRoutine = Callable[[Wallet], Awaitable[None]]
DetectedAssetsLoader = Callable[[], Awaitable[list[DetectedAsset]]]


def describe_result(result: SwapResult) -> str:
    label = result.wallet_label or result.wallet_address
    if result.success:
        received = from_base_units(result.amount_received, result.output_decimals)
        return f"[{label}] {result.side} {result.asset_symbol}: ok, received {received:.6f} (tx {result.tx_hash})"
    return f"[{label}] {result.side} {result.asset_symbol}: failed ({result.reason})"


class WalletExecutionEngine:
    """Runs one routine per enabled wallet under a concurrency policy.

    A wallet whose routine raises gets an ``execution_error`` result; the
    other wallets are unaffected.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        policy: ConcurrencyPolicy,
        on_result: ResultSink,
        sleep: Sleeper = sleep_seconds,
    ) -> None:
        self._logger = logger
        self.policy = policy
        self._on_result = on_result
        self._sleep = sleep

    def _record_crash(self, wallet: Wallet, error: BaseException) -> None:
        log_event(
            self._logger,
            level="error",
            event="wallet_routine_failed",
            message="Wallet routine raised; continuing with the remaining wallets",
            wallet_address=wallet.address,
            error=str(error),
            error_type=type(error).__name__,
        )
        self._on_result(
            SwapResult(
                success=False,
                amount_received=0,
                reason=getattr(error, "reason", FAIL_REASON_EXECUTION_ERROR),
                wallet_address=wallet.address,
                wallet_label=wallet.label,
            )
        )

    async def run(
        self,
        wallets: Sequence[Wallet],
        routine: WalletRoutine,
        *,
        delay: Callable[[], float] | None = None,
    ) -> None:
        active = [wallet for wallet in wallets if wallet.enabled]
        skipped = len(wallets) - len(active)
        if skipped:
            log_event(
                self._logger,
                level="info",
                event="wallets_skipped_disabled",
                message="Skipping disabled wallets",
                skipped=skipped,
            )

        if self.policy is ConcurrencyPolicy.PARALLEL_WALLETS:
            outcomes = await asyncio.gather(*(routine(wallet) for wallet in active), return_exceptions=True)
            for wallet, outcome in zip(active, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, Exception):
                    self._record_crash(wallet, outcome)
            return

        for index, wallet in enumerate(active):
            try:
                await routine(wallet)
            except Exception as error:
                self._record_crash(wallet, error)
            if delay is not None and index + 1 < len(active):
                await self._sleep(delay())


class Strategy:
    name: ClassVar[str] = ""
    allowed_modes: ClassVar[tuple[str, ...]] = (MODE_BUY, MODE_SELL, MODE_TWO_WAY)
    policy: ClassVar[ConcurrencyPolicy] = ConcurrencyPolicy.SEQUENTIAL

    def __init__(
        self,
        *,
        logger: logging.Logger,
        executor: TradeExecutor,
        monitor: PriceMonitor,
        params: StrategyParams,
        progress: ProgressFeed,
        rng: random.Random | None = None,
        sleep: Sleeper = sleep_seconds,
        results: list[SwapResult] | None = None,
    ) -> None:
        self._logger = logger
        self._executor = executor
        self._monitor = monitor
        self._params = params
        self._progress = progress
        self._rng = rng or random.Random()
        self._sleep = sleep
        self.results: list[SwapResult] = results if results is not None else []
        self._engine = WalletExecutionEngine(logger=logger, policy=self.policy, on_result=self._record, sleep=sleep)

    @classmethod
    def check_mode(cls, bot_mode: str) -> None:
        if bot_mode not in cls.allowed_modes:
            raise ConfigurationError(
                f"Strategy {cls.name} requires bot mode {' or '.join(cls.allowed_modes)}, got {bot_mode}"
            )

    def _record(self, result: SwapResult) -> None:
        tagged = replace(result, strategy=self.name)
        self.results.append(tagged)
        self._progress.emit(describe_result(tagged), strategy=self.name, success=tagged.success, reason=tagged.reason)

    def _uniform(self, low: float, high: float) -> float:
        return self._rng.uniform(low, high) if high > low else low

    def _random_reference_amount(self) -> float:
        return self._uniform(self._params.amount_min, self._params.amount_max)

    async def _buy(self, wallet: Wallet, pool: PoolSpec, reference_amount: float) -> SwapResult:
        intent = SwapIntent.buy(
            wallet=wallet,
            pool=pool,
            amount_in=to_base_units(reference_amount, pool.reference.decimals),
            slippage_bps=self._params.slippage_bps,
        )
        result = await self._executor.swap_exact_in(intent)
        self._record(result)
        return result

    async def _sell(self, wallet: Wallet, pool: PoolSpec, amount_in: int) -> SwapResult:
        intent = SwapIntent.sell(wallet=wallet, pool=pool, amount_in=amount_in, slippage_bps=self._params.slippage_bps)
        result = await self._executor.swap_exact_in(intent)
        self._record(result)
        return result

    async def _flush_wallet(self, wallet: Wallet, pools: Sequence[PoolSpec], *, asset_delay_seconds: float) -> None:
        for index, pool in enumerate(pools):
            try:
                result = await self._executor.flush_balance(wallet, pool, slippage_bps=self._params.slippage_bps)
            except Exception as error:
                log_event(
                    self._logger,
                    level="error",
                    event="flush_asset_failed",
                    message="Flush raised for one asset; continuing with the next",
                    wallet_address=wallet.address,
                    asset_symbol=pool.symbol,
                    pool_address=pool.pool_address,
                    error=str(error),
                    error_type=type(error).__name__,
                )
                result = SwapResult(
                    success=False,
                    amount_received=0,
                    reason=FAIL_REASON_EXECUTION_ERROR,
                    wallet_address=wallet.address,
                    wallet_label=wallet.label,
                    side=SIDE_SELL,
                    asset_symbol=pool.symbol,
                    pool_address=pool.pool_address,
                    input_decimals=pool.asset.decimals,
                    output_decimals=pool.reference.decimals,
                )
            self._record(result)
            if index + 1 < len(pools):
                await self._sleep(asset_delay_seconds)

    async def run(self, wallets: Sequence[Wallet], pools: Sequence[PoolSpec]) -> list[SwapResult]:
        raise NotImplementedError


class InstantRoundTripStrategy(Strategy):
    name = STRATEGY_INSTANT
    allowed_modes = (MODE_TWO_WAY,)

    async def run(self, wallets: Sequence[Wallet], pools: Sequence[PoolSpec]) -> list[SwapResult]:
        async def routine(wallet: Wallet) -> None:
            for pool in pools:
                bought = await self._buy(wallet, pool, self._random_reference_amount())
                if not bought.success or bought.amount_received <= 0:
                    continue
                await self._sleep(
                    self._uniform(self._params.instant_delay_min_seconds, self._params.instant_delay_max_seconds)
                )
                await self._sell(wallet, pool, bought.amount_received)

        await self._engine.run(
            wallets,
            routine,
            delay=lambda: self._uniform(self._params.wallet_delay_min_seconds, self._params.wallet_delay_max_seconds),
        )
        return self.results


class RangeMarketMakerStrategy(Strategy):
    name = STRATEGY_MARKET_MAKER
    allowed_modes = (MODE_TWO_WAY,)

    async def run(self, wallets: Sequence[Wallet], pools: Sequence[PoolSpec]) -> list[SwapResult]:
        for pool in pools:
            await self._run_pool(wallets, pool)
        return self.results

    async def _sample_base_price(self, pool: PoolSpec) -> float | None:
        try:
            point = await self._monitor.read_price(pool)
        except (EngineError, LedgerRevertError) as error:
            self._progress.emit(f"{pool.symbol}: base price unavailable ({error})", strategy=self.name)
            return None
        return point.price

    async def _react(self, wallet: Wallet, pool: PoolSpec, trigger: PriceTrigger) -> None:
        reference_amount = self._random_reference_amount()
        if trigger.side == SIDE_BUY:
            await self._buy(wallet, pool, reference_amount)
            return
        await self._sell(wallet, pool, to_base_units(reference_amount / trigger.price, pool.asset.decimals))

    async def _run_pool(self, wallets: Sequence[Wallet], pool: PoolSpec) -> None:
        base_price = await self._sample_base_price(pool)
        if base_price is None:
            return

        triggers: asyncio.Queue[PriceTrigger] = asyncio.Queue()
        range_pct = self._params.mm_range_pct
        try:
            watch_id = await self._monitor.watch_range(pool, base_price, range_pct, range_pct, triggers.put_nowait)
        except EngineError as error:
            self._progress.emit(f"{pool.symbol}: could not arm price watch ({error.reason})", strategy=self.name)
            return

        # 0 passes in continuous mode means re-arm until stopped.
        passes = self._params.mm_max_passes if self._params.mm_continuous else 1
        pass_label = str(passes) if passes else "unbounded"
        timeout = self._params.mm_watch_timeout_seconds or None
        try:
            for pass_index in itertools.count():
                self._progress.emit(
                    f"{pool.symbol}: watching {base_price:.10f} +/-{range_pct}% (pass {pass_index + 1}/{pass_label})",
                    strategy=self.name,
                )
                try:
                    trigger = await asyncio.wait_for(triggers.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    self._progress.emit(
                        f"{pool.symbol}: no crossing before timeout ({FAIL_REASON_WATCH_TIMEOUT})",
                        strategy=self.name,
                    )
                    return

                self._progress.emit(
                    f"{pool.symbol}: {trigger.side} trigger at {trigger.price:.10f} via {trigger.endpoint}",
                    strategy=self.name,
                )
                await self._engine.run(wallets, lambda wallet: self._react(wallet, pool, trigger))

                if passes and pass_index + 1 >= passes:
                    return
                next_base = await self._sample_base_price(pool)
                if next_base is None or not self._monitor.rearm(watch_id, base_price=next_base):
                    return
                base_price = next_base
        finally:
            await self._monitor.stop(watch_id)


class ScheduledSingleSideStrategy(Strategy):
    name = STRATEGY_DEFAULT
    allowed_modes = (MODE_BUY, MODE_SELL)

    async def run(self, wallets: Sequence[Wallet], pools: Sequence[PoolSpec]) -> list[SwapResult]:
        params = self._params
        for loop_index in range(params.num_loops):
            self._progress.emit(f"loop {loop_index + 1}/{params.num_loops}", strategy=self.name)
            for pool in pools:
                await self._run_pool(wallets, pool)
            if loop_index + 1 < params.num_loops:
                await self._sleep(self._uniform(params.loop_delay_min_seconds, params.loop_delay_max_seconds))
        return self.results

    async def _run_pool(self, wallets: Sequence[Wallet], pool: PoolSpec) -> None:
        price = 0.0
        if self._params.bot_mode == MODE_SELL:
            try:
                price = (await self._monitor.read_price(pool)).price
            except (EngineError, LedgerRevertError) as error:
                self._progress.emit(f"{pool.symbol}: price unavailable, skipping ({error})", strategy=self.name)
                return

        async def routine(wallet: Wallet) -> None:
            reference_amount = self._random_reference_amount()
            if self._params.bot_mode == MODE_BUY:
                await self._buy(wallet, pool, reference_amount)
            else:
                await self._sell(wallet, pool, to_base_units(reference_amount / price, pool.asset.decimals))

        await self._engine.run(
            wallets,
            routine,
            delay=lambda: self._uniform(self._params.tx_delay_min_seconds, self._params.tx_delay_max_seconds),
        )


class FlushToReferenceStrategy(Strategy):
    name = STRATEGY_FLUSH

    async def run(self, wallets: Sequence[Wallet], pools: Sequence[PoolSpec]) -> list[SwapResult]:
        await self._engine.run(
            wallets,
            lambda wallet: self._flush_wallet(
                wallet,
                pools,
                asset_delay_seconds=self._params.flush_asset_delay_seconds,
            ),
            delay=lambda: self._params.flush_wallet_delay_seconds,
        )
        return self.results


class FlushAllDetectedStrategy(Strategy):
    name = STRATEGY_SELL_ALL
    policy = ConcurrencyPolicy.PARALLEL_WALLETS

    async def run(self, wallets: Sequence[Wallet], pools: Sequence[PoolSpec]) -> list[SwapResult]:
        await self._engine.run(
            wallets,
            lambda wallet: self._flush_wallet(
                wallet,
                pools,
                asset_delay_seconds=self._params.sell_all_asset_delay_seconds,
            ),
        )
        return self.results


STRATEGY_CLASSES: dict[str, type[Strategy]] = {
    cls.name: cls
    for cls in (
        InstantRoundTripStrategy,
        RangeMarketMakerStrategy,
        ScheduledSingleSideStrategy,
        FlushToReferenceStrategy,
        FlushAllDetectedStrategy,
    )
}


@dataclass(slots=True)
class StrategyRun:
    strategy: str
    task: asyncio.Task[list[SwapResult]]
    progress: ProgressFeed
    results: list[SwapResult]

    async def wait(self) -> list[SwapResult]:
        return await self.task


class StrategyDriver:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        executor: TradeExecutor,
        monitor: PriceMonitor,
        params: StrategyParams,
        reference: AssetSpec,
        detected_assets_loader: DetectedAssetsLoader | None = None,
        rng: random.Random | None = None,
        sleep: Sleeper = sleep_seconds,
    ) -> None:
        self._logger = logger
        self._executor = executor
        self._monitor = monitor
        self._params = params
        self._reference = reference
        self._detected_assets_loader = detected_assets_loader
        self._rng = rng
        self._sleep = sleep

    def validate(self, name: str) -> str:
        strategy_name = normalize_strategy(name)
        STRATEGY_CLASSES[strategy_name].check_mode(self._params.bot_mode)
        if strategy_name == STRATEGY_SELL_ALL and self._detected_assets_loader is None:
            raise ConfigurationError("SELL_ALL needs a detected-asset source")
        return strategy_name

    async def _detected_pools(self) -> list[PoolSpec]:
        assets = await self._detected_assets_loader()
        return [asset.to_pool_spec(self._reference) for asset in assets if asset.pool_address]

    async def run(
        self,
        name: str,
        wallets: Sequence[Wallet],
        pools: Sequence[PoolSpec] | None = None,
        *,
        progress: ProgressFeed | None = None,
        collector: list[SwapResult] | None = None,
    ) -> list[SwapResult]:
        strategy_name = self.validate(name)
        feed = progress or ProgressFeed(logger=self._logger)
        strategy = STRATEGY_CLASSES[strategy_name](
            logger=self._logger,
            executor=self._executor,
            monitor=self._monitor,
            params=self._params,
            progress=feed,
            rng=self._rng,
            sleep=self._sleep,
            results=collector,
        )
        try:
            if strategy_name == STRATEGY_SELL_ALL:
                pools = await self._detected_pools()
            if not pools:
                feed.emit(f"{strategy_name}: no pools to trade", strategy=strategy_name)
                return []

            enabled = sum(1 for wallet in wallets if wallet.enabled)
            feed.emit(
                f"{strategy_name}: starting with {enabled} wallet(s) over {len(pools)} pool(s)",
                strategy=strategy_name,
            )
            await strategy.run(wallets, list(pools))
        except asyncio.CancelledError:
            feed.emit(f"{strategy_name}: cancelled", strategy=strategy_name)
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="exception",
                event="strategy_failed",
                message="Strategy stopped early",
                strategy=strategy_name,
                error=str(error),
            )
            feed.emit(f"{strategy_name}: stopped early ({error})", strategy=strategy_name)
        finally:
            succeeded = sum(1 for result in strategy.results if result.success)
            feed.emit(
                f"{strategy_name}: finished, {succeeded}/{len(strategy.results)} swaps succeeded",
                strategy=strategy_name,
            )
            feed.close()
        return strategy.results

    def start(
        self,
        name: str,
        wallets: Sequence[Wallet],
        pools: Sequence[PoolSpec] | None = None,
    ) -> StrategyRun:
        strategy_name = self.validate(name)
        feed = ProgressFeed(logger=self._logger)
        collected: list[SwapResult] = []
        task = asyncio.create_task(
            self.run(strategy_name, wallets, pools, progress=feed, collector=collected),
            name=f"strategy-{strategy_name}",
        )
        return StrategyRun(strategy=strategy_name, task=task, progress=feed, results=collected)
