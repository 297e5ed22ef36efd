"""structlog setup for the chat core.

Every event carries the session fields that are set in the current context:
user_id (signed-in user), operation_id (one contact matching request) and
conversation_id (conversation being written). A field passed on the log call
itself wins over the context value.

Usage:
    configure_logging()          # once, see chatapp.client.create_client
    logger = get_logger(__name__)
    logger.info("message_sent", message_id=message.id)
"""

import logging
import sys
from contextvars import ContextVar

import structlog

user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
operation_id_var: ContextVar[str | None] = ContextVar("operation_id", default=None)
conversation_id_var: ContextVar[str | None] = ContextVar("conversation_id", default=None)

_SESSION_FIELDS = (
    ("user_id", user_id_var),
    ("operation_id", operation_id_var),
    ("conversation_id", conversation_id_var),
)

# Third-party loggers kept at WARNING
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def add_session_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """structlog processor injecting the session fields that are set."""
    for key, var in _SESSION_FIELDS:
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def configure_logging(json_format: bool = True) -> None:
    """Route structlog and stdlib records through one stdout handler.

    Args:
        json_format: JSON lines when True, structlog's console renderer otherwise.
    """
    pre_chain = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_session_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    renderer = (
        structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    # Reconfiguring replaces the handler instead of stacking a second one
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.INFO)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_session_context(user_id: str | None) -> None:
    user_id_var.set(user_id)


def set_operation_id(operation_id: str | None) -> None:
    """Tag events of one contact matching request."""
    operation_id_var.set(operation_id)


def set_conversation_id(conversation_id: str | None) -> None:
    conversation_id_var.set(conversation_id)


def clear_session_context() -> None:
    """Forget every session field, on sign-out."""
    for _, var in _SESSION_FIELDS:
        var.set(None)
