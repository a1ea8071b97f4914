import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "agi-core"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add turn context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    context = structlog.contextvars.get_contextvars()

    trace_id = context.get("trace_id")
    if trace_id:
        event_dict.setdefault("trace_id", trace_id)

    conversation_id = context.get("conversation_id")
    if conversation_id:
        event_dict.setdefault("conversation_id", conversation_id)

    return event_dict


def bind_turn_context(conversation_id: str, trace_id: Optional[str] = None) -> None:
    """Bind ids of the running turn so every log line carries them"""

    structlog.contextvars.bind_contextvars(conversation_id=conversation_id)
    if trace_id:
        structlog.contextvars.bind_contextvars(trace_id=trace_id)


def clear_turn_context() -> None:
    structlog.contextvars.unbind_contextvars("conversation_id", "trace_id")


class AgentLogger:
    """Specialized logger for reasoning-loop operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_phase_transition(
        self,
        conversation_id: str,
        from_phase: Optional[str],
        to_phase: str,
        step: Optional[int] = None,
        state_summary: Optional[Dict[str, Any]] = None
    ):
        """Log reasoning phase transitions"""

        self.logger.info(
            "phase_transition",
            conversation_id=conversation_id,
            from_phase=from_phase,
            to_phase=to_phase,
            step=step,
            state_summary=state_summary or {}
        )

    def log_tool_execution(
        self,
        tool_name: str,
        conversation_id: str,
        action_name: str,
        input_data: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        log = self.logger.info if success else self.logger.warning
        log(
            "tool_execution",
            tool_name=tool_name,
            conversation_id=conversation_id,
            action_name=action_name,
            input_data=input_data,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_action_transition(
        self,
        action_id: str,
        task_id: str,
        from_status: str,
        to_status: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log action lifecycle changes"""

        self.logger.debug(
            "action_transition",
            action_id=action_id,
            task_id=task_id,
            from_status=from_status,
            to_status=to_status,
            details=details or {}
        )


# Global logger instance
agent_logger = AgentLogger("agi_core")
