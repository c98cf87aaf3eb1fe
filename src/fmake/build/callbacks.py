"""Action callback protocol for the build executor.

Defines the interface the executor uses to report each compile and link
action to a display layer.
"""

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .build_planner import BuildAction
    from .executor import ActionOutcome


@runtime_checkable
class ActionCallback(Protocol):
    """Protocol for receiving action updates from the executor.

    Both methods are called from the executor's scheduling thread, never
    concurrently with each other.
    """

    def on_action_start(self, action: "BuildAction") -> None:
        """Called when an action is handed to a worker."""
        ...

    def on_action_finish(self, action: "BuildAction", outcome: "ActionOutcome") -> None:
        """Called when an action ends (built, up to date, failed or skipped)."""
        ...


class NullCallback:
    """No-op callback for tests and non-interactive use."""

    def on_action_start(self, action: "BuildAction") -> None:
        pass

    def on_action_finish(self, action: "BuildAction", outcome: "ActionOutcome") -> None:
        pass
