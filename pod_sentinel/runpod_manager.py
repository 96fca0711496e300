"""
RunPod API access for the pod sentinel
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from pod_sentinel.config import SentinelConfig
from pod_sentinel.errors import ProviderError
from pod_sentinel.models import UtilizationReading

logger = logging.getLogger(__name__)

PODS_QUERY = """
query {
  myself {
    pods {
      id
      name
      desiredStatus
      runtime {
        uptimeInSeconds
        gpus {
          id
          gpuUtilPercent
          memoryUtilPercent
        }
        container {
          cpuPercent
          memoryPercent
        }
      }
    }
  }
}
"""

STOP_MUTATION = """
mutation StopPod($input: PodStopInput!) {
  podStop(input: $input) {
    id
    desiredStatus
  }
}
"""

class RunPodManager:
    """Talks to the RunPod GraphQL API"""

    def __init__(self, config: SentinelConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        """Create a shared HTTP client with auth and timeout"""
        return httpx.AsyncClient(
            timeout=self.config.provider_timeout,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.config.runpod_api_key}",
            },
        )

    async def close(self):
        await self.client.aclose()

    async def _graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """POST a GraphQL document and return the decoded body"""
        payload: Dict[str, Any] = {"query": query}
        if variables is not None:
            payload["variables"] = variables

        try:
            response = await self.client.post(self.config.runpod_api_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(f"RunPod returned HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"RunPod request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"RunPod returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise ProviderError(f"RunPod returned unexpected body: {body!r}")
        return body

    async def query_pods(self) -> List[Dict[str, Any]]:
        """List every pod visible to the API key"""
        body = await self._graphql(PODS_QUERY)
        if body.get("errors"):
            raise ProviderError(f"RunPod pod query failed: {body['errors']}")

        pods = ((body.get("data") or {}).get("myself") or {}).get("pods")
        if not isinstance(pods, list):
            raise ProviderError(f"RunPod pod query returned no pod list: {body}")

        logger.debug("RunPod returned %d pods", len(pods))
        return pods

    async def get_utilization(self, pod_id: str) -> Optional[UtilizationReading]:
        """Current GPU and GPU-memory utilization for a pod, or None if unknown"""
        pods = await self.query_pods()
        pod = next((p for p in pods if p.get("id") == pod_id), None)

        if not pod:
            logger.info("Pod %s not found in RunPod inventory", pod_id)
            return None

        runtime = pod.get("runtime") or {}
        gpus = runtime.get("gpus") or []

        gpu_values = []
        memory_values = []
        for gpu in gpus:
            try:
                gpu_percent = float(gpu["gpuUtilPercent"])
                memory_percent = float(gpu["memoryUtilPercent"])
            except (KeyError, TypeError, ValueError):
                continue
            gpu_values.append(gpu_percent)
            memory_values.append(memory_percent)

        if not gpu_values:
            logger.info("No GPU data found for pod %s", pod_id)
            return None

        # Multi-GPU pods are as busy as their busiest GPU
        reading = UtilizationReading(gpu_percent=max(gpu_values), memory_percent=max(memory_values))
        logger.info(
            "Pod %s: GPU utilization %.1f%%, memory utilization %.1f%%",
            pod_id, reading.gpu_percent, reading.memory_percent
        )
        return reading

    async def stop_pod(self, pod_id: str) -> Dict[str, Any]:
        """Issue the podStop mutation and return the raw response body"""
        return await self._graphql(STOP_MUTATION, {"input": {"podId": pod_id}})
