# students_api/logging_utils.py
import json, logging, time, uuid
from collections import deque
from typing import Deque, Dict, Any, Optional

MAX_LOGS = 1000

# most recent events, served by GET /logs
RECENT_LOGS: Deque[Dict[str, Any]] = deque(maxlen=MAX_LOGS)

logger = logging.getLogger("students_api")

def now_ts() -> float:
    return time.time()

def new_req_id() -> str:
    return uuid.uuid4().hex[:12]

def log_event(kind: str, level: int = logging.INFO, **fields):
    """Record a structured event in the ring buffer and on the stdlib logger."""
    evt = {"ts": now_ts(), "kind": kind}
    evt.update(fields)
    RECENT_LOGS.append(evt)
    if logger.isEnabledFor(level):
        logger.log(level, json.dumps(evt, default=str))
    return evt

def dump_logs(limit: int = 100, kind: Optional[str] = None):
    if limit <= 0:
        limit = 100
    events = list(RECENT_LOGS)
    if kind:
        events = [e for e in events if e["kind"] == kind]
    return events[-limit:]
