"""
Automation hook dispatch. The pipeline only emits an ordered list of Hook values;
dispatchers decide whether handlers run in-process or as queued jobs for the worker.
"""
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Sequence

from gigguin.metrics import hooks_dispatched_total, hooks_failed_total, hooks_processed_total
from gigguin.models import EventPipeline
from gigguin.queue import make_job, push_job
from gigguin.stages import EventStage, Hook

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HookContext:
    hook: Hook
    event_id: str
    org_id: str
    stage: EventStage
    actor: str
    automatic: bool = False

    def to_job(self) -> dict:
        return make_job(
            hook=self.hook.value,
            event_id=self.event_id,
            org_id=self.org_id,
            stage=self.stage.value,
            actor=self.actor,
            automatic=self.automatic,
        )

    @classmethod
    def from_job(cls, job: dict) -> "HookContext":
        """Raises ValueError/KeyError for malformed jobs or unknown hook names."""
        return cls(
            hook=Hook(job["hook"]),
            event_id=job["event_id"],
            org_id=job["org_id"],
            stage=EventStage(job["stage"]),
            actor=job["actor"],
            automatic=bool(job.get("automatic", False)),
        )


HookHandler = Callable[[HookContext], Awaitable[None]]


class UnknownHook(Exception):
    def __init__(self, hook: Hook):
        self.hook = hook
        super().__init__(f"No handler registered for hook {hook.value}")


class AutomationRegistry:
    """Maps each Hook to its handler."""

    def __init__(self):
        self._handlers: dict[Hook, HookHandler] = {}

    def register(self, hook: Hook) -> Callable[[HookHandler], HookHandler]:
        def decorator(handler: HookHandler) -> HookHandler:
            self._handlers[hook] = handler
            return handler
        return decorator

    def handler_for(self, hook: Hook) -> HookHandler:
        try:
            return self._handlers[hook]
        except KeyError:
            raise UnknownHook(hook) from None

    def __contains__(self, hook: Hook) -> bool:
        return hook in self._handlers

    async def run(self, context: HookContext) -> None:
        await self.handler_for(context.hook)(context)


def build_contexts(
    hooks: Sequence[Hook],
    pipeline: EventPipeline,
    actor: str,
    automatic: bool = False,
) -> list[HookContext]:
    return [
        HookContext(
            hook=hook,
            event_id=pipeline.event_id,
            org_id=pipeline.org_id,
            stage=pipeline.stage,
            actor=actor,
            automatic=automatic,
        )
        for hook in hooks
    ]


class HookDispatcher(Protocol):
    async def dispatch(
        self,
        hooks: Sequence[Hook],
        pipeline: EventPipeline,
        actor: str,
        automatic: bool = False,
    ) -> None:
        ...


class InlineDispatcher:
    """Runs handlers in order in the caller's task. A failing hook does not stop the ones after it."""

    def __init__(self, registry: AutomationRegistry):
        self.registry = registry

    async def dispatch(self, hooks, pipeline, actor, automatic=False) -> None:
        for context in build_contexts(hooks, pipeline, actor, automatic):
            hooks_dispatched_total.labels(hook=context.hook.value).inc()
            try:
                await self.registry.run(context)
                hooks_processed_total.inc()
            except Exception:
                hooks_failed_total.inc()
                logger.exception("Hook %s failed for event_id=%s", context.hook.value, context.event_id)


class QueueDispatcher:
    """
    Enqueues one job per hook, in order. The worker runs them through the registry.
    A job that cannot be queued is logged and counted; the hooks after it are still queued.
    """

    async def dispatch(self, hooks, pipeline, actor, automatic=False) -> None:
        queued = 0
        for context in build_contexts(hooks, pipeline, actor, automatic):
            try:
                await push_job(context.to_job())
            except Exception:
                hooks_failed_total.inc()
                logger.exception("Failed to queue hook %s for event_id=%s", context.hook.value, context.event_id)
                continue
            queued += 1
            hooks_dispatched_total.labels(hook=context.hook.value).inc()
        if queued:
            logger.info("Queued %d hook(s) for event_id=%s stage=%s", queued, pipeline.event_id, pipeline.stage.value)
