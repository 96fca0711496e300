#!/usr/bin/env python3
"""
Simple script to run the sentinel with environment configuration
"""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

REQUIRED_VARS = ["POD_KEY", "REDIS_URL", "MONGO_URI"]

def main():
    """Load environment and run sentinel"""

    # Load environment from config file
    config_file = Path(os.getenv("SENTINEL_CONFIG_FILE", "sentinel_config.env"))

    if config_file.exists():
        print(f"Loading configuration from {config_file}")
        load_dotenv(config_file)
    else:
        print(f"WARNING: Configuration file {config_file} not found.")
        print("Please copy sentinel_config.env.example to sentinel_config.env and configure it.")

        # Check if required environment variables are set
        missing_vars = [var for var in REQUIRED_VARS if not os.getenv(var)]

        if missing_vars:
            print(f"ERROR: Required environment variables not set: {', '.join(missing_vars)}")
            sys.exit(1)

    from pod_sentinel.orchestrator import main as sentinel_main
    sentinel_main()

if __name__ == "__main__":
    main()
