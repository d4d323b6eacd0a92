"""
Handler Registry - maps operation ids to their handlers.

Handlers are bound once, when the manifest is loaded: every operation must
resolve to a handler at that point or loading fails with MissingHandlerError.
Nothing is looked up by name at run time.

Resolution order for an operation:
1. A handler registered explicitly for its id
2. The registry's default factory (manifest `command`/`file` -> CommandHandler)
"""

from typing import Callable, Iterable, Optional

from bootkit.errors import MissingHandlerError
from bootkit.handlers.base import CallableHandler, CommandHandler, OperationHandler
from bootkit.schemas import Operation

HandlerFactory = Callable[[Operation], Optional[OperationHandler]]


class HandlerRegistry:
    """
    Registry of operation handlers.

    Usage:
        registry = HandlerRegistry.create_default()
        registry.register("git", CommandHandler(command="git init"))

        @registry.operation("packages")
        def install_packages(ctx):
            ...

        bindings = registry.bind(manifest_operations)
    """

    def __init__(self, default_factory: Optional[HandlerFactory] = None) -> None:
        """
        Initialize an empty handler registry.

        Args:
            default_factory: Fallback that builds a handler from an Operation,
                             returning None when it cannot
        """
        self._handlers: dict[str, OperationHandler] = {}
        self._default_factory = default_factory

    def register(self, operation_id: str, handler: OperationHandler) -> None:
        """
        Register a handler for an operation id.

        Args:
            operation_id: Manifest operation id
            handler: Handler instance
        """
        if not isinstance(handler, OperationHandler):
            raise TypeError(f"handler for {operation_id} must be an OperationHandler")
        self._handlers[operation_id] = handler

    def operation(self, operation_id: str, satisfied: Optional[Callable] = None) -> Callable:
        """Decorator registering a function as the handler for operation_id."""
        def decorator(func: Callable) -> Callable:
            self.register(operation_id, CallableHandler(func, satisfied=satisfied))
            return func
        return decorator

    def get(self, operation_id: str) -> OperationHandler:
        """
        Get the explicitly registered handler for an operation id.

        Raises:
            KeyError: If no handler is registered for the id
        """
        if operation_id not in self._handlers:
            registered = sorted(self._handlers)
            raise KeyError(
                f"No handler registered for operation: {operation_id}. "
                f"Registered: {registered}"
            )
        return self._handlers[operation_id]

    def has(self, operation_id: str) -> bool:
        return operation_id in self._handlers

    def list_operations(self) -> list[str]:
        return sorted(self._handlers)

    def resolve_for(self, operation: Operation) -> Optional[OperationHandler]:
        """Return the handler an operation would be bound to, or None."""
        if operation.id in self._handlers:
            return self._handlers[operation.id]
        if self._default_factory is not None:
            return self._default_factory(operation)
        return None

    def bind(self, operations: Iterable[Operation]) -> dict[str, OperationHandler]:
        """
        Resolve a handler for every operation.

        Returns:
            Operation id -> handler

        Raises:
            MissingHandlerError: Naming every operation without a handler
        """
        bound: dict[str, OperationHandler] = {}
        missing = []
        for op in operations:
            handler = self.resolve_for(op)
            if handler is None:
                missing.append(op.id)
            else:
                bound[op.id] = handler
        if missing:
            raise MissingHandlerError(sorted(missing))
        return bound

    @classmethod
    def create_default(cls) -> "HandlerRegistry":
        """
        Create a registry that runs manifest `command`/`file` entries.

        Operations with neither still need an explicit registration.
        """
        return cls(default_factory=CommandHandler.for_operation)
