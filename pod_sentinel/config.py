"""
Configuration management for the pod sentinel
"""
import os
from dataclasses import dataclass, field
from typing import List

DETECTION_MODES = ("push", "poll", "both")

@dataclass
class SentinelConfig:
    """Configuration settings for the sentinel"""

    # RunPod Configuration
    runpod_api_key: str
    runpod_api_url: str
    provider_timeout: float

    # Store Configuration
    redis_url: str
    redis_db: int
    mongo_uri: str
    mongo_database: str
    mongo_collection: str

    # Idle Policy Settings
    idle_threshold: float
    extension_seconds: int

    # Expiry Detection Settings
    detection_mode: str
    poll_interval: float
    poll_max_keys: int
    timer_grace_seconds: int
    claim_window_seconds: int
    reconnect_delay: float
    configure_keyspace_events: bool
    timer_prefix: str = "shutdown"
    ready_prefix: str = "ready"
    dead_letter_key: str = "failed-stops"

    # Event Stream Settings
    heartbeat_interval: float = 25.0
    connection_queue_size: int = 100
    cors_origins: List[str] = field(default_factory=lambda: ["https://wispi.art"])

    # Server Settings
    host: str = "0.0.0.0"
    port: int = 4000
    log_level: str = "INFO"

    @property
    def push_enabled(self) -> bool:
        return self.detection_mode in ("push", "both")

    @property
    def poll_enabled(self) -> bool:
        return self.detection_mode in ("poll", "both")

    @classmethod
    def from_env(cls) -> 'SentinelConfig':
        """Load configuration from environment variables"""

        # Required variables
        runpod_api_key = os.getenv("POD_KEY")
        if not runpod_api_key:
            raise ValueError("POD_KEY environment variable is required")

        redis_url = os.getenv("REDIS_URL")
        if not redis_url:
            raise ValueError("REDIS_URL environment variable is required")

        mongo_uri = os.getenv("MONGO_URI")
        if not mongo_uri:
            raise ValueError("MONGO_URI environment variable is required")

        detection_mode = os.getenv("DETECTION_MODE", "both").strip().lower()
        if detection_mode not in DETECTION_MODES:
            raise ValueError(f"DETECTION_MODE must be one of {', '.join(DETECTION_MODES)}, got '{detection_mode}'")

        poll_interval = float(os.getenv("POLL_INTERVAL", "15"))
        if poll_interval <= 0:
            raise ValueError("POLL_INTERVAL must be positive")

        # Keys must outlive their deadline by two scans or the poll loop never sees them lapse
        poll_enabled = detection_mode in ("poll", "both")
        default_grace = str(int(poll_interval * 2)) if poll_enabled else "0"

        # Parse origins - support both single origin and comma-separated list
        origins_str = os.getenv("CORS_ORIGINS", "https://wispi.art")
        cors_origins = [o.strip() for o in origins_str.split(",") if o.strip()]

        return cls(
            # RunPod Configuration
            runpod_api_key=runpod_api_key,
            runpod_api_url=os.getenv("RUNPOD_API_URL", "https://api.runpod.io/graphql"),
            provider_timeout=float(os.getenv("PROVIDER_TIMEOUT", "15")),

            # Store Configuration
            redis_url=redis_url,
            redis_db=int(os.getenv("REDIS_DB", "0")),
            mongo_uri=mongo_uri,
            mongo_database=os.getenv("MONGO_DATABASE", "podActivityDB"),
            mongo_collection=os.getenv("MONGO_COLLECTION", "podMetadata"),

            # Idle Policy Settings
            idle_threshold=float(os.getenv("IDLE_THRESHOLD", "5")),
            extension_seconds=int(os.getenv("EXTENSION_SECONDS", "3600")),

            # Expiry Detection Settings
            detection_mode=detection_mode,
            poll_interval=poll_interval,
            poll_max_keys=int(os.getenv("POLL_MAX_KEYS", "1000")),
            timer_grace_seconds=int(os.getenv("TIMER_GRACE_SECONDS", default_grace)),
            claim_window_seconds=int(os.getenv("CLAIM_WINDOW_SECONDS", "30")),
            reconnect_delay=float(os.getenv("RECONNECT_DELAY", "5")),
            configure_keyspace_events=os.getenv("CONFIGURE_KEYSPACE_EVENTS", "true").lower() in ("true", "1", "yes"),
            timer_prefix=os.getenv("TIMER_PREFIX", "shutdown"),
            ready_prefix=os.getenv("READY_PREFIX", "ready"),
            dead_letter_key=os.getenv("DEAD_LETTER_KEY", "failed-stops"),

            # Event Stream Settings
            heartbeat_interval=float(os.getenv("HEARTBEAT_INTERVAL", "25")),
            connection_queue_size=int(os.getenv("CONNECTION_QUEUE_SIZE", "100")),
            cors_origins=cors_origins,

            # Server Settings
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "4000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper()
        )
