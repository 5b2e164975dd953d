"""
Stage Engine — runs an ordered list of named stages over one work item.

Each stage is registered with an explicit retry policy:

  NoRetry()                               — classification stages (fetch,
                                            dedup, age, filter): one shot
  RetryWithBackoff(max_attempts, timeout) — stages making an external call
                                            (render, send): each attempt is
                                            raced against a timeout, failed
                                            attempts wait 2^attempt * base

Execution is strictly forward and single-pass. The first failure stops the
run and names the failing stage; a skip also stops the run but counts as a
successful terminal outcome. Stages after the stopping point never execute
and leave nothing in the context metadata.

    Pending → Running(stage_i) → Running(stage_i+1) | Skipped | Failed(stage_i)
                               → Completed (after the last stage)
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from core.errors import StageTimeoutError, SystemicError
from models.schemas import FeedItem

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Policies
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class NoRetry:
    """Execute once; errors and failures stop the pipeline immediately."""


@dataclass(frozen=True)
class RetryWithBackoff:
    max_attempts: int = 3
    timeout: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")


StagePolicy = Union[NoRetry, RetryWithBackoff]


# ──────────────────────────────────────────────────────────────
#  Context & results
# ──────────────────────────────────────────────────────────────

class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class StageContext:
    """The unit flowing through the pipeline. Never shared between runs."""
    item: FeedItem
    scope: str
    destination: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    state: RunState = RunState.PENDING
    current_stage: Optional[str] = None

    @property
    def item_id(self) -> str:
        return self.item.id


@dataclass
class StageResult:
    success: bool = True
    skipped: bool = False
    error: Optional[BaseException] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    attempts: int = 1
    duration_ms: float = 0.0

    @classmethod
    def ok(cls, **metadata) -> StageResult:
        return cls(success=True, metadata=metadata)

    @classmethod
    def skip(cls, reason: str, **metadata) -> StageResult:
        return cls(success=True, skipped=True, metadata={"reason": reason, **metadata})

    @classmethod
    def fail(cls, error: Union[BaseException, str], **metadata) -> StageResult:
        if isinstance(error, str):
            error = SystemicError(error)
        return cls(success=False, error=error, metadata=metadata)


@dataclass
class PipelineResult:
    success: bool
    final_context: StageContext
    skipped: bool = False
    failing_stage: Optional[str] = None
    error: Optional[BaseException] = None
    stage_results: dict[str, StageResult] = field(default_factory=dict)
    processing_time_ms: float = 0.0

    @property
    def attempts(self) -> dict[str, int]:
        return {name: r.attempts for name, r in self.stage_results.items()}


StageExecutor = Callable[[StageContext], Awaitable[Optional[StageResult]]]


@dataclass
class _Stage:
    name: str
    executor: StageExecutor
    policy: StagePolicy


# ──────────────────────────────────────────────────────────────
#  Engine
# ──────────────────────────────────────────────────────────────

class StageEngine:
    """
    Ordered stage orchestrator.

    Usage:
        engine = StageEngine(backoff_base=1.0)
        engine.register_stage("dedup", dedup_stage, NoRetry())
        engine.register_stage("send", send_stage, RetryWithBackoff(5, timeout=10))
        result = await engine.process(StageContext(item=item, scope="topic-1"))

    An executor returns a StageResult (or None for plain success) and may
    raise; a raised exception is a failed attempt.
    """

    def __init__(
        self,
        backoff_base: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._clock = clock
        self._stages: list[_Stage] = []

    def register_stage(self, name: str, executor: StageExecutor, policy: StagePolicy = NoRetry()) -> None:
        if any(s.name == name for s in self._stages):
            raise ValueError(f"Stage already registered: {name}")
        if not isinstance(policy, (NoRetry, RetryWithBackoff)):
            raise TypeError(f"Unsupported stage policy: {policy!r}")
        self._stages.append(_Stage(name, executor, policy))
        logger.debug("pipeline_stage_registered", stage=name, policy=type(policy).__name__)

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self._stages]

    def policy_for(self, name: str) -> StagePolicy:
        for s in self._stages:
            if s.name == name:
                return s.policy
        raise KeyError(name)

    async def process(self, ctx: StageContext) -> PipelineResult:
        start = self._clock()
        results: dict[str, StageResult] = {}
        timings = ctx.metadata.setdefault("timings", {})
        ctx.state = RunState.RUNNING

        for stage in self._stages:
            ctx.current_stage = stage.name
            stage_start = self._clock()

            if isinstance(stage.policy, RetryWithBackoff):
                result = await self._run_with_retry(stage, ctx)
            else:
                result = await self._run_once(stage, ctx)

            result.duration_ms = round((self._clock() - stage_start) * 1000, 1)
            timings[stage.name] = result.duration_ms
            results[stage.name] = result
            ctx.metadata[stage.name] = {
                "success": result.success,
                "skipped": result.skipped,
                "attempts": result.attempts,
                **result.metadata,
            }

            if not result.success:
                ctx.state = RunState.FAILED
                return self._finish(ctx, results, start, success=False,
                                    failing_stage=stage.name, error=result.error)

            if result.skipped:
                ctx.state = RunState.SKIPPED
                return self._finish(ctx, results, start, success=True, skipped=True)

        ctx.state = RunState.COMPLETED
        ctx.current_stage = None
        return self._finish(ctx, results, start, success=True)

    # Alias kept for callers that think in handler terms.
    run = process

    async def _run_once(self, stage: _Stage, ctx: StageContext) -> StageResult:
        try:
            outcome = await stage.executor(ctx)
        except Exception as e:
            return StageResult(success=False, error=e)
        return outcome if outcome is not None else StageResult.ok()

    async def _run_with_retry(self, stage: _Stage, ctx: StageContext) -> StageResult:
        policy: RetryWithBackoff = stage.policy  # type: ignore[assignment]
        last_error: Optional[BaseException] = None
        last_result: Optional[StageResult] = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                outcome = await asyncio.wait_for(stage.executor(ctx), timeout=policy.timeout)
                outcome = outcome if outcome is not None else StageResult.ok()
                if outcome.success:
                    outcome.attempts = attempt
                    if attempt > 1:
                        logger.info("stage_retry_succeeded", stage=stage.name,
                                    item_id=ctx.item_id, attempts=attempt)
                    return outcome
                last_result = outcome
                last_error = outcome.error or SystemicError(f"Stage {stage.name} failed")
            except asyncio.TimeoutError:
                last_error = StageTimeoutError(stage.name, policy.timeout)
                last_result = None
                logger.warning("stage_timeout", stage=stage.name, item_id=ctx.item_id,
                               attempt=attempt, timeout_s=policy.timeout)
            except Exception as e:
                last_error = e
                last_result = None

            logger.info("stage_retry", stage=stage.name, item_id=ctx.item_id,
                        attempt=attempt, max_attempts=policy.max_attempts,
                        error=str(last_error))

            if attempt < policy.max_attempts:
                await self._sleep((2 ** attempt) * self.backoff_base)

        metadata = last_result.metadata if last_result else {}
        return StageResult(success=False, error=last_error, metadata=metadata,
                           attempts=policy.max_attempts)

    def _finish(
        self,
        ctx: StageContext,
        results: dict[str, StageResult],
        start: float,
        *,
        success: bool,
        skipped: bool = False,
        failing_stage: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> PipelineResult:
        elapsed = round((self._clock() - start) * 1000, 1)
        trail = " → ".join(self._symbol(r) for r in results.values())

        if success:
            logger.info("pipeline_complete", item_id=ctx.item_id, scope=ctx.scope,
                        skipped=skipped,
                        reason=results[ctx.current_stage].metadata.get("reason") if skipped else None,
                        stages=trail, duration_ms=elapsed)
        else:
            logger.info("pipeline_failed", item_id=ctx.item_id, scope=ctx.scope,
                        stage=failing_stage, error=str(error), stages=trail,
                        duration_ms=elapsed)

        return PipelineResult(
            success=success,
            final_context=ctx,
            skipped=skipped,
            failing_stage=failing_stage,
            error=error,
            stage_results=results,
            processing_time_ms=elapsed,
        )

    @staticmethod
    def _symbol(result: StageResult) -> str:
        if not result.success:
            return "✗"
        return "⏩" if result.skipped else "✓"
