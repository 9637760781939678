from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def has(self, name: str) -> bool:
        """Check whether an implementation is registered under the name."""
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Stage Registry - fulfillment pipeline processors
class StageProcessor(Protocol):
    """Protocol for stage processors that handle one pipeline stage."""

    async def __call__(self, payload: dict[str, Any], run_context: Any) -> Any:
        """
        Process one job of the stage.

        Args:
            payload: Opaque job payload written by the enqueue path
            run_context: RunContext with correlation id, trigger type,
                stage, job id and originating event metadata

        Returns:
            A StageResult, a plain result dict, or None for success.
            Raising is treated as a retryable failure.
        """
        ...


class StageRegistry(Registry[StageProcessor]):
    """Registry for stage processors (ingest, booking, payment, payment-save)."""

    def __init__(self):
        super().__init__("Stage")


# Global registry instances (singletons)
stage_registry = StageRegistry()
