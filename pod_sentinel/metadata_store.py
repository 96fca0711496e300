"""
Pod -> subscription lookups backed by MongoDB
"""
import logging
from typing import Optional

from pymongo import AsyncMongoClient
from pymongo.errors import PyMongoError

from pod_sentinel.config import SentinelConfig
from pod_sentinel.errors import TransientStoreError

logger = logging.getLogger(__name__)

class MetadataStore:
    """Read-only view of the podMetadata collection"""

    def __init__(self, collection, client: Optional[AsyncMongoClient] = None):
        self.collection = collection
        self.client = client

    @classmethod
    def from_config(cls, config: SentinelConfig) -> 'MetadataStore':
        client = AsyncMongoClient(config.mongo_uri, serverSelectionTimeoutMS=5000)
        collection = client[config.mongo_database][config.mongo_collection]
        return cls(collection, client)

    async def find_subscription(self, pod_id: str) -> Optional[str]:
        """Subscription id that should hear about this pod, or None"""
        try:
            doc = await self.collection.find_one({"podId": pod_id}, projection={"subscriptionId": 1})
        except PyMongoError as e:
            raise TransientStoreError(f"Metadata lookup for pod {pod_id} failed: {e}") from e

        if not doc or not doc.get("subscriptionId"):
            return None
        return str(doc["subscriptionId"])

    async def close(self):
        if self.client is not None:
            await self.client.close()
