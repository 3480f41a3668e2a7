"""
Progress and status events.

Events form a closed set of variants. Producers emit them through
``send_event``; a sink is any callable taking one event.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartEvent:
    """Signals the beginning of an operation."""
    operation: str


@dataclass(frozen=True)
class UpdateEvent:
    """Progress or status information during an operation."""
    operation: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FinishEvent:
    """Signals the successful completion of an operation."""
    operation: str


@dataclass(frozen=True)
class ErrorEvent:
    """Signals an error during an operation."""
    operation: str
    error: BaseException


@dataclass(frozen=True)
class PromptEvent:
    """Requests user input; the answer is passed to ``respond``."""
    id: str
    prompt: str
    default_value: str = ''
    respond: Optional[Callable[[Any], None]] = None


Event = Union[StartEvent, UpdateEvent, FinishEvent, ErrorEvent, PromptEvent]
EventSink = Callable[[Event], None]


def send_event(sink: Optional[EventSink], event: Event):
    """Send an event to the sink if one is configured."""
    if sink is not None:
        sink(event)


def describe_event(event: Event) -> str:
    """
    Render an event as a single log line.

    Raises:
        TypeError: If ``event`` is not one of the event variants
    """
    match event:
        case StartEvent(operation=operation):
            return f"[{operation}] started"
        case UpdateEvent(operation=operation, message=message, data=data):
            if data:
                details = ', '.join(f"{k}={v}" for k, v in sorted(data.items()))
                return f"[{operation}] {message} ({details})"
            return f"[{operation}] {message}"
        case FinishEvent(operation=operation):
            return f"[{operation}] finished"
        case ErrorEvent(operation=operation, error=error):
            return f"[{operation}] failed: {error}"
        case PromptEvent(id=prompt_id, prompt=prompt, default_value=default):
            return f"[prompt:{prompt_id}] {prompt} (default: {default!r})"
        case _:
            raise TypeError(f"Unknown event type: {type(event).__name__}")


class LoggingSink:
    """Sink that writes every event to a logger."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def __call__(self, event: Event):
        level = logging.ERROR if isinstance(event, ErrorEvent) else logging.INFO
        self.log.log(level, describe_event(event))


class CollectingSink:
    """Sink that keeps every event it receives, in order."""

    def __init__(self):
        self.events: List[Event] = []

    def __call__(self, event: Event):
        self.events.append(event)

    def of_type(self, event_type) -> List[Event]:
        return [e for e in self.events if isinstance(e, event_type)]
