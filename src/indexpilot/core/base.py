"""Base classes for IndexPilot components.

Every stateful part of IndexPilot (cache, analyzers, planner, executor,
learning system, orchestrators) derives from these classes so that runtime
reconfiguration, metrics and the async lifecycle behave the same way
everywhere.

Classes:
    BaseComponent: Holds the configuration section and reports metrics
    ConfigurableComponent: Accepts configuration updates at runtime
    AsyncComponent: Owns background tasks or connections
    LifecycleComponent: Reports the phase it is currently in

Example:
    >>> class CacheManager(AsyncComponent[CacheConfig]):
    ...     async def _async_initialize(self) -> None:
    ...         self._sweeper = asyncio.create_task(self._sweep_loop())
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, Generic, TypeVar

import structlog

from .exceptions import IndexPilotException, ValidationError

# Configuration section type
T = TypeVar("T")


class BaseComponent(Generic[T], ABC):
    """Base class for all IndexPilot components.

    Type Parameters:
        T: Configuration section this component reads

    Example:
        >>> class OptimizationPlanner(BaseComponent[IndexOptimizerConfig]):
        ...     component_name = "OptimizationPlanner"
    """

    component_name: ClassVar[str] = "BaseComponent"

    def __init__(self, config: T) -> None:
        """Initialize base component.

        Args:
            config: Configuration section for this component

        Raises:
            ValidationError: If configuration is None
        """
        if config is None:
            raise ValidationError(
                "Configuration cannot be None",
                code="CONFIG_NULL",
                context={"component": self.component_name},
            )

        self._config: T = config
        self._initialized: bool = False
        self._creation_time: float = time.time()
        self._logger = structlog.get_logger(self.__class__.__name__)

    @property
    def config(self) -> T:
        return self._config

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def uptime(self) -> float:
        """Seconds since the component was created."""
        return time.time() - self._creation_time

    def get_metrics(self) -> Dict[str, Any]:
        """Get component metrics; subclasses extend the returned dict."""
        return {
            "component": self.component_name,
            "uptime_seconds": self.uptime,
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"name={self.component_name!r}, "
            f"initialized={self._initialized})"
        )


class ConfigurableComponent(BaseComponent[T]):
    """Component whose configuration section can be replaced at runtime.

    Orchestrators override ``_on_config_updated`` to push the new section down
    to the stages they own.
    """

    def __init__(self, config: T) -> None:
        super().__init__(config)
        self._config_version: int = 1

    def update_config(self, new_config: T) -> None:
        """Replace the active configuration section.

        Args:
            new_config: Section of the same type as the current one

        Raises:
            ValidationError: If the section is missing or of another type
        """
        if new_config is None or not isinstance(new_config, type(self._config)):
            raise ValidationError(
                "New configuration is invalid",
                code="CONFIG_UPDATE_INVALID",
                context={
                    "component": self.component_name,
                    "expected": type(self._config).__name__,
                    "received": type(new_config).__name__,
                },
            )

        self._config = new_config
        self._config_version += 1
        self._on_config_updated()

        self._logger.info(
            "Configuration updated",
            component=self.component_name,
            version=self._config_version,
        )

    def _on_config_updated(self) -> None:
        """Hook called after the active configuration changed."""
        pass

    @property
    def config_version(self) -> int:
        return self._config_version


class AsyncComponent(ConfigurableComponent[T]):
    """Component with async initialization and cleanup.

    Used as ``async with component:``; both steps are idempotent.
    """

    def __init__(self, config: T) -> None:
        super().__init__(config)
        self._initialization_lock = asyncio.Lock()
        self._cleanup_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize component asynchronously.

        Concurrent calls are serialized and a second call is a no-op.

        Raises:
            IndexPilotException: If initialization fails
        """
        async with self._initialization_lock:
            if self._initialized:
                return

            try:
                await self._async_initialize()
            except IndexPilotException:
                self._logger.error("Component initialization failed", component=self.component_name)
                raise
            except Exception as e:
                self._logger.error(
                    "Component initialization failed",
                    component=self.component_name,
                    error=str(e),
                )
                raise IndexPilotException(
                    f"Failed to initialize {self.component_name}",
                    code="INIT_FAILED",
                    context={"component": self.component_name},
                    cause=e,
                ) from e

            self._initialized = True
            self._logger.info("Component initialized", component=self.component_name)

    async def cleanup(self) -> None:
        """Release component resources.

        Cleanup failures are logged, not raised, so that they do not mask
        the error that triggered the shutdown.
        """
        async with self._cleanup_lock:
            if not self._initialized:
                return

            try:
                await self._async_cleanup()
            except Exception as e:
                self._logger.error(
                    "Component cleanup failed",
                    component=self.component_name,
                    error=str(e),
                )
            finally:
                self._initialized = False

    @abstractmethod
    async def _async_initialize(self) -> None:
        """Perform async initialization work."""
        pass

    async def _async_cleanup(self) -> None:
        """Perform async cleanup work."""
        pass

    async def __aenter__(self) -> "AsyncComponent[T]":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.cleanup()


class LifecycleComponent(AsyncComponent[T]):
    """Async component that reports a named state, e.g. an optimizer phase."""

    def __init__(self, config: T) -> None:
        super().__init__(config)
        self._state: str = "created"

    @property
    def state(self) -> str:
        return self._state

    def _set_state(self, new_state: str) -> None:
        previous, self._state = self._state, new_state
        self._logger.debug(
            "Component state changed",
            component=self.component_name,
            previous_state=previous,
            new_state=new_state,
        )

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics["state"] = self._state
        return metrics
