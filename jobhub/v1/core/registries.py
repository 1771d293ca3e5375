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
        """Check whether an implementation is registered under a name."""
        return name in self._implementations

    def unregister(self, name: str) -> None:
        """Remove an implementation if present."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot unregister '{name}' from {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations.pop(name, None)

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - executable logic behind job definitions
class JobHandler(Protocol):
    """Protocol for handlers that execute claimed jobs.

    ``handle`` may be a coroutine function or a plain function; plain
    functions are run in a worker thread and receive no session, since an
    async session is bound to the event loop.
    """

    def handle(
        self,
        session: Any,  # AsyncSession, None for plain functions
        ctx: Any,  # JobContext
    ) -> Any:
        """
        Execute a job.

        Args:
            session: Database session for the duration of the invocation,
                or None when ``handle`` is a plain function
            ctx: Job context with payload, caller identity, progress reporting
                and the cancellation token

        Returns:
            JSON-serializable result stored on the completed job
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for job handlers, keyed by job definition name."""

    def __init__(self):
        super().__init__("Job")


# Global registry instance (singleton)
job_registry = JobRegistry()
