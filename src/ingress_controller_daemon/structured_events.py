import logging
import time
from typing import Dict, Any, Optional
from enum import Enum
from dataclasses import dataclass, asdict


class EventType(Enum):
    """Standard event types for structured logging"""
    DAEMON_LIFECYCLE = "daemon_lifecycle"
    BOOTSTRAP_STAGE = "bootstrap_stage"
    STATE_TRANSITION = "state_transition"
    LEADER_ELECTION = "leader_election"
    SHUTDOWN = "shutdown"


class ActionResult(Enum):
    """Standard action results"""
    SUCCESS = "success"
    FAILURE = "failure"
    NO_CHANGE = "no_change"
    SKIPPED = "skipped"


@dataclass
class StructuredEvent:
    """Base structure for all structured log events"""
    event_type: str
    timestamp: float
    result: str
    component: str
    operation: str
    details: Dict[str, Any]
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None


_LEVELS = {
    ActionResult.FAILURE.value: logging.ERROR,
    ActionResult.NO_CHANGE.value: logging.DEBUG,
}


class StructuredEventLogger:
    """Emits structured lifecycle events through the standard logging tree"""

    def __init__(self, logger):
        self.logger = logging.getLogger(logger) if isinstance(logger, str) else logger

    def log_event(self, event) -> None:
        """Log a structured event with consistent schema"""
        if isinstance(event, StructuredEvent):
            fields = asdict(event)
        elif isinstance(event, dict):
            fields = dict(event)
        else:
            raise TypeError(f"Event must be StructuredEvent dataclass or dict, got {type(event)}")

        log_data = {"structured_event": True, **fields}
        result = fields.get("result")
        level = _LEVELS.get(result, logging.INFO)

        message = f"{fields.get('component', 'unknown')}.{fields.get('operation', 'unknown')}: {result}"
        if fields.get("error_message"):
            message += f" - {fields['error_message']}"

        # json_fields is understood by both the local formatters and Cloud Logging
        self.logger.log(level, message, extra={"json_fields": log_data})

    def log_stage(self, stage: str, result: ActionResult,
                  duration_ms: int = None, error_message: str = None,
                  details: Dict[str, Any] = None) -> None:
        """Log the outcome of one bootstrap stage"""
        self.log_event(StructuredEvent(
            event_type=EventType.BOOTSTRAP_STAGE.value,
            timestamp=time.time(),
            result=result.value,
            component="launch",
            operation=stage,
            details=details or {},
            duration_ms=duration_ms,
            error_message=error_message,
        ))

    def log_state_transition(self, old_state: str, new_state: str, reason: str = None) -> None:
        """Log lifecycle state machine transitions"""
        self.log_event(StructuredEvent(
            event_type=EventType.STATE_TRANSITION.value,
            timestamp=time.time(),
            result=ActionResult.SUCCESS.value,
            component="lifecycle",
            operation="state_transition",
            details={"old_state": old_state, "new_state": new_state, "reason": reason},
        ))

    def log_leadership_change(self, election_id: str, identity: str, leading: bool,
                              holder: str = None) -> None:
        """Log this replica gaining or losing leadership"""
        self.log_event(StructuredEvent(
            event_type=EventType.LEADER_ELECTION.value,
            timestamp=time.time(),
            result=ActionResult.SUCCESS.value,
            component="leader_election",
            operation="started_leading" if leading else "stopped_leading",
            details={"election_id": election_id, "identity": identity,
                     "leading": leading, "observed_holder": holder},
        ))

    def log_shutdown(self, exit_code: int, reason: str, duration_ms: int = None) -> None:
        """Log process termination"""
        self.log_event(StructuredEvent(
            event_type=EventType.SHUTDOWN.value,
            timestamp=time.time(),
            result=ActionResult.SUCCESS.value if exit_code == 0 else ActionResult.FAILURE.value,
            component="daemon",
            operation="shutdown",
            details={"exit_code": exit_code, "reason": reason},
            duration_ms=duration_ms,
            error_message=None if exit_code == 0 else reason,
        ))
