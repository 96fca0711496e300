"""
Stop requests for idle pods
"""
import logging
from typing import Any, Dict, Optional

from pod_sentinel.errors import ProviderError, TransientStoreError
from pod_sentinel.models import TerminateResult, TerminateStatus
from pod_sentinel.runpod_manager import RunPodManager
from pod_sentinel.timer_store import TimerStore

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ("not found", "does not exist", "no pod")

def _is_not_found(errors: Any) -> bool:
    if not isinstance(errors, list):
        return False
    for error in errors:
        message = str(error.get("message", "") if isinstance(error, dict) else error).lower()
        if any(marker in message for marker in NOT_FOUND_MARKERS):
            return True
    return False

class LifecycleController:
    """Requests termination of exactly one pod and classifies what the provider said"""

    def __init__(self, runpod_manager: RunPodManager, timer_store: Optional[TimerStore] = None):
        self.runpod_manager = runpod_manager
        self.timer_store = timer_store

    async def terminate(self, pod_id: str) -> TerminateResult:
        """Stop a pod. Failures are reported, never retried here"""
        try:
            body = await self.runpod_manager.stop_pod(pod_id)
        except ProviderError as e:
            return await self._failed(pod_id, str(e))

        result = self._classify(pod_id, body)
        if result.status == TerminateStatus.ACKNOWLEDGED:
            logger.info("✓ Pod %s stop issued, new status: %s", pod_id, result.desired_status)
        elif result.status == TerminateStatus.NOT_FOUND:
            logger.info("Pod %s already gone, nothing to stop (%s)", pod_id, result.error)
        else:
            return await self._failed(pod_id, result.error)
        return result

    def _classify(self, pod_id: str, body: Dict[str, Any]) -> TerminateResult:
        stopped = (body.get("data") or {}).get("podStop")
        if isinstance(stopped, dict) and stopped.get("id"):
            return TerminateResult(
                status=TerminateStatus.ACKNOWLEDGED,
                pod_id=stopped["id"],
                desired_status=stopped.get("desiredStatus"),
            )

        errors = body.get("errors")
        if _is_not_found(errors):
            return TerminateResult(status=TerminateStatus.NOT_FOUND, pod_id=pod_id, error=str(errors))

        return TerminateResult(
            status=TerminateStatus.PROVIDER_ERROR,
            pod_id=pod_id,
            error=str(errors or body),
        )

    async def _failed(self, pod_id: str, error: Optional[str]) -> TerminateResult:
        logger.error("✗ Error stopping pod %s: %s", pod_id, error)
        if self.timer_store is not None:
            try:
                await self.timer_store.record_failed_stop(pod_id)
            except TransientStoreError as e:
                logger.warning("Could not record failed stop for pod %s: %s", pod_id, e)
        return TerminateResult(status=TerminateStatus.PROVIDER_ERROR, pod_id=pod_id, error=error)
