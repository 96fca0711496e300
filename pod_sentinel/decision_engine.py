"""
Idle-vs-busy decisions for pods whose shutdown timer lapsed
"""
import logging

from pod_sentinel.errors import ProviderError
from pod_sentinel.lifecycle_controller import LifecycleController
from pod_sentinel.models import Decision, Outcome, UtilizationReading
from pod_sentinel.runpod_manager import RunPodManager
from pod_sentinel.timer_store import TimerStore

logger = logging.getLogger(__name__)

class IdleDecisionEngine:
    """Turns a lapsed timer into a re-arm or a stop.

    A pod is stopped only when a fresh reading proves it idle. Missing pods,
    pods without GPU data and provider failures all count as busy, so the
    timer is extended rather than risking a stop on bad data.
    """

    def __init__(
        self,
        runpod_manager: RunPodManager,
        timer_store: TimerStore,
        lifecycle_controller: LifecycleController,
        idle_threshold: float = 5.0,
        extension_seconds: int = 3600,
    ):
        self.runpod_manager = runpod_manager
        self.timer_store = timer_store
        self.lifecycle_controller = lifecycle_controller
        self.idle_threshold = idle_threshold
        self.extension_seconds = extension_seconds

    async def read_utilization(self, pod_id: str) -> UtilizationReading:
        """Fresh reading, or the fail-safe-busy sentinel when none is available"""
        try:
            reading = await self.runpod_manager.get_utilization(pod_id)
        except ProviderError as e:
            logger.warning("Utilization lookup for pod %s failed: %s", pod_id, e)
            reading = None

        if reading is None:
            return UtilizationReading.unavailable()
        return reading

    async def decide(self, pod_id: str) -> Decision:
        reading = await self.read_utilization(pod_id)

        if reading.score > self.idle_threshold:
            await self.timer_store.arm(pod_id, self.extension_seconds)
            decision = Decision(pod_id=pod_id, reading=reading, outcome=Outcome.REARM)
            logger.info(
                "Pod %s busy (score %.1f%% > %.1f%%, data %s), timer extended by %ds",
                pod_id, reading.score, self.idle_threshold,
                "available" if reading.available else "unavailable",
                self.extension_seconds
            )
            return decision

        logger.info("Pod %s idle (score %.1f%% <= %.1f%%), stopping", pod_id, reading.score, self.idle_threshold)
        result = await self.lifecycle_controller.terminate(pod_id)
        logger.info("Pod %s stop result: %s (%s)", pod_id, result.status.value, result.desired_status or result.error)
        return Decision(pod_id=pod_id, reading=reading, outcome=Outcome.TERMINATE, terminate_result=result)
