"""
Global state for WebChatBridge.
Holds the process-wide services that routes share; populated by `main.init_services`.
"""

from collections import defaultdict
from typing import Dict, Optional
import asyncio


# Core services
engine = None
pool = None
identities = None
login_store = None
login_manager = None
driver = None

# Background engine startup
engine_task: Optional[asyncio.Task] = None

# API key usage timestamps, for the per-minute rate limit
api_key_usage: Dict[str, list] = defaultdict(list)


def reset() -> None:
    global engine, pool, identities, login_store, login_manager, driver, engine_task
    engine = None
    pool = None
    identities = None
    login_store = None
    login_manager = None
    driver = None
    engine_task = None
    api_key_usage.clear()
