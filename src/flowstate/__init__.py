"""
Flowstate - Flow Orchestration Engine

Runs registered capabilities as state-machine driven instances that clients
create, advance with events, patch and dismiss, with reconnect-safe message
replay and idempotent command submission.

Quick Start:
    >>> from flowstate.config.container import setup_container
    >>>
    >>> container = setup_container()
    >>> sessions = container.get("session_manager")
    >>> session = sessions.open_session(caller=CallerContext(permissions=frozenset({"orders:write"})))
    >>> outcome = await sessions.submit(
    ...     session.session_id,
    ...     "req-1",
    ...     CreateCommand("commerce.place_order", {"customer_id": "c1", "sku": "sku-espresso"}),
    ... )
    >>> outcome.unwrap().instance.state
    'review'

API Server:
    $ flowstate --port 8000
    # or
    $ uvicorn flowstate.api.server:app --host 0.0.0.0 --port 8000

Configuration:
    Environment variables with the FLOW_ prefix:
    - FLOW_STORE__BACKEND=sqlite
    - FLOW_ENGINE__MAX_COMMIT_RETRIES=8
    - FLOW_OBSERVABILITY__LOG_LEVEL=DEBUG
"""

__version__ = "1.0.0"

from .config.settings import Settings
from .core.collaborators import CallerContext
from .core.orchestrator import FlowOrchestrator
from .core.registry import CapabilityRegistry
from .core.session import CreateCommand, SessionManager

__all__ = [
    "FlowOrchestrator",
    "SessionManager",
    "CapabilityRegistry",
    "CallerContext",
    "CreateCommand",
    "Settings",
]
