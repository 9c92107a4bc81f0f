"""Activity Registry: maps node types to the callables that execute them."""

import inspect
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .exceptions import ActivityRegistryError
from .logging import get_logger
from ..models.core import is_trigger_type

logger = get_logger(__name__)


@dataclass(frozen=True)
class ActivityDefinition:
    """A registered activity.

    ``handler`` is called as ``handler(input, context)`` and may be a plain
    function or a coroutine function. ``classify_error`` overrides the
    default retryable/terminal decision for errors it raises.
    """
    name: str
    handler: Callable
    description: str = ""
    classify_error: Optional[Callable[[BaseException], bool]] = None
    timeout_seconds: Optional[float] = None
    retry_on_timeout: bool = True

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)


class ActivityRegistry:
    """Process-local registry of activities, safe to share across threads."""

    def __init__(self):
        self._activities: Dict[str, ActivityDefinition] = {}
        self._lock = threading.RLock()

    def register(
        self,
        name: str,
        handler: Callable,
        description: str = "",
        classify_error: Optional[Callable[[BaseException], bool]] = None,
        timeout_seconds: Optional[float] = None,
        retry_on_timeout: bool = True,
        replace: bool = False
    ) -> ActivityDefinition:
        """Register a callable as the activity for a node type.

        Args:
            name: Node type handled by the activity
            handler: Callable taking ``(input, context)``
            description: Optional description of the activity's purpose
            classify_error: Optional retryable/terminal classifier
            timeout_seconds: Default per-node timeout for this activity
            retry_on_timeout: Whether a timed-out attempt may be retried
            replace: Allow overwriting an existing registration

        Raises:
            ActivityRegistryError: If the name is taken or the handler is invalid
        """
        if not name or not name.strip():
            raise ActivityRegistryError("Activity name cannot be empty", operation="register")

        name = name.strip()

        if not callable(handler):
            raise ActivityRegistryError(
                f"Activity '{name}' must be callable", activity_type=name, operation="register"
            )

        try:
            sig = inspect.signature(handler)
            if len(sig.parameters) < 2 and not any(
                p.kind == inspect.Parameter.VAR_POSITIONAL for p in sig.parameters.values()
            ):
                raise ActivityRegistryError(
                    f"Activity '{name}' must accept (input, context)",
                    activity_type=name, operation="register"
                )
        except (ValueError, TypeError) as e:
            raise ActivityRegistryError(
                f"Cannot inspect signature of activity '{name}': {e}",
                activity_type=name, operation="register"
            )

        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ActivityRegistryError(
                f"Activity '{name}' timeout must be positive", activity_type=name, operation="register"
            )

        definition = ActivityDefinition(
            name=name,
            handler=handler,
            description=(description or inspect.getdoc(handler) or "").strip().split("\n")[0],
            classify_error=classify_error,
            timeout_seconds=timeout_seconds,
            retry_on_timeout=retry_on_timeout,
        )

        with self._lock:
            if name in self._activities and not replace:
                raise ActivityRegistryError(
                    f"Activity '{name}' is already registered", activity_type=name, operation="register"
                )
            self._activities[name] = definition

        logger.info(f"Registered activity '{name}' from {handler.__module__}.{getattr(handler, '__name__', handler)}")
        return definition

    def activity(self, name: str, **options):
        """Decorator form of ``register``."""
        def decorator(handler: Callable) -> Callable:
            self.register(name, handler, **options)
            return handler
        return decorator

    def get(self, name: str) -> ActivityDefinition:
        """Retrieve a registered activity.

        Raises:
            ActivityRegistryError: If no activity is registered under the name
        """
        with self._lock:
            definition = self._activities.get(name)
        if definition is None:
            raise ActivityRegistryError(
                f"Activity '{name}' is not registered", activity_type=name, operation="get"
            )
        return definition

    def resolve(self, node_type: str) -> Optional[ActivityDefinition]:
        """Activity for a node type; None for triggers without a registration."""
        with self._lock:
            definition = self._activities.get(node_type)
        if definition is None and not is_trigger_type(node_type):
            raise ActivityRegistryError(
                f"Unknown node type '{node_type}'", activity_type=node_type, operation="resolve"
            )
        return definition

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._activities

    def supports(self, node_type: str) -> bool:
        """Whether a node of this type can be executed."""
        return is_trigger_type(node_type) or self.has(node_type)

    def list(self) -> Dict[str, str]:
        """Registered activity names mapped to their descriptions."""
        with self._lock:
            return {name: definition.description for name, definition in sorted(self._activities.items())}

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._activities)

    def unregister(self, name: str) -> bool:
        """Remove an activity. Returns False if it was not registered."""
        with self._lock:
            removed = self._activities.pop(name, None)
        if removed is not None:
            logger.info(f"Unregistered activity '{name}'")
        return removed is not None

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._activities)
