"""
Error types raised across the sentinel
"""

class SentinelError(Exception):
    """Base class for sentinel errors"""

class TransientStoreError(SentinelError):
    """Redis or MongoDB unreachable or timed out; retried on the next cycle"""

class ProviderError(SentinelError):
    """RunPod call failed or returned something we cannot interpret"""

class SubscriberWriteError(SentinelError):
    """An event could not be written to a subscriber connection"""

    def __init__(self, subscription_id: str, reason: str):
        super().__init__(f"Write to subscription {subscription_id} failed: {reason}")
        self.subscription_id = subscription_id
        self.reason = reason
