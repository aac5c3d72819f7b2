"""Unit tests for the IndexPilot component base classes."""

import pytest

from indexpilot.config.models import CacheConfig, IndexOptimizerConfig, PatternTrackerConfig
from indexpilot.core.base import AsyncComponent, BaseComponent, ConfigurableComponent, LifecycleComponent
from indexpilot.core.exceptions import ConfigurationError, IndexPilotException, ValidationError
from indexpilot.optimization.planner import OptimizationPlanner


class _Stage(ConfigurableComponent[IndexOptimizerConfig]):
    component_name = "Stage"

    def __init__(self, config: IndexOptimizerConfig):
        super().__init__(config)
        self.reconfigured = 0

    def _on_config_updated(self) -> None:
        self.reconfigured += 1


class _Sweeper(AsyncComponent[CacheConfig]):
    component_name = "Sweeper"

    def __init__(self, config: CacheConfig, *, fail_with: Exception = None, fail_cleanup: bool = False):
        super().__init__(config)
        self.fail_with = fail_with
        self.fail_cleanup = fail_cleanup
        self.started = 0
        self.stopped = 0

    async def _async_initialize(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.started += 1

    async def _async_cleanup(self) -> None:
        self.stopped += 1
        if self.fail_cleanup:
            raise RuntimeError("sweep task already gone")


class _Orchestrator(LifecycleComponent[IndexOptimizerConfig]):
    component_name = "Orchestrator"

    async def _async_initialize(self) -> None:
        self._set_state("idle")


class TestBaseComponent:
    """Test configuration holding and metrics."""

    def test_missing_config(self):
        """Test a component cannot be built without its section."""
        with pytest.raises(ValidationError) as exc_info:
            OptimizationPlanner(None)

        assert exc_info.value.code == "CONFIG_NULL"
        assert exc_info.value.context == {"component": "OptimizationPlanner"}

    def test_metrics_and_repr(self):
        """Test the base metrics and representation."""
        stage = _Stage(IndexOptimizerConfig())

        metrics = stage.get_metrics()

        assert metrics["component"] == "Stage"
        assert metrics["uptime_seconds"] >= 0
        assert not stage.is_initialized
        assert repr(stage) == "_Stage(name='Stage', initialized=False)"

    def test_abstract_base(self):
        """Test the base class itself cannot be instantiated."""
        assert issubclass(_Stage, BaseComponent)
        with pytest.raises(TypeError):
            AsyncComponent(CacheConfig())


class TestConfigurableComponent:
    """Test runtime configuration updates."""

    def test_update_calls_hook(self, log_output):
        """Test an update bumps the version and calls the hook."""
        stage = _Stage(IndexOptimizerConfig())
        updated = stage.config.update_from_dict({"auto_execute": True})

        stage.update_config(updated)

        assert stage.config is updated
        assert stage.config_version == 2
        assert stage.reconfigured == 1
        [entry] = [e for e in log_output if e["event"] == "Configuration updated"]
        assert (entry["component"], entry["version"]) == ("Stage", 2)

    @pytest.mark.parametrize("replacement", [None, PatternTrackerConfig()])
    def test_rejected_update(self, replacement):
        """Test missing or foreign sections leave the component unchanged."""
        original = IndexOptimizerConfig()
        stage = _Stage(original)

        with pytest.raises(ValidationError) as exc_info:
            stage.update_config(replacement)

        assert exc_info.value.code == "CONFIG_UPDATE_INVALID"
        assert exc_info.value.context["expected"] == "IndexOptimizerConfig"
        assert stage.config is original
        assert stage.config_version == 1
        assert stage.reconfigured == 0

    def test_stage_components_follow_updates(self):
        """Test a real stage sees the new section after an update."""
        planner = OptimizationPlanner(IndexOptimizerConfig())

        planner.update_config(IndexOptimizerConfig(max_batch_size=2))

        assert planner.config.max_batch_size == 2


class TestAsyncComponent:
    """Test async initialization and cleanup."""

    @pytest.mark.asyncio
    async def test_context_manager(self):
        """Test ``async with`` initializes once and cleans up once."""
        sweeper = _Sweeper(CacheConfig())

        async with sweeper as entered:
            assert entered is sweeper
            assert sweeper.is_initialized
            await sweeper.initialize()

        assert sweeper.started == 1
        assert sweeper.stopped == 1
        assert not sweeper.is_initialized

    @pytest.mark.asyncio
    async def test_cleanup_without_initialize(self):
        """Test cleanup of a component that never started is a no-op."""
        sweeper = _Sweeper(CacheConfig())

        await sweeper.cleanup()

        assert sweeper.stopped == 0

    @pytest.mark.asyncio
    async def test_unexpected_initialization_error_is_wrapped(self):
        """Test foreign errors become INIT_FAILED with the cause attached."""
        sweeper = _Sweeper(CacheConfig(), fail_with=RuntimeError("event loop closed"))

        with pytest.raises(IndexPilotException) as exc_info:
            await sweeper.initialize()

        assert exc_info.value.code == "INIT_FAILED"
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert not sweeper.is_initialized

    @pytest.mark.asyncio
    async def test_domain_initialization_error_propagates(self):
        """Test IndexPilot errors pass through unchanged."""
        error = ConfigurationError("Missing DSN", code="CONFIG_NOT_FOUND")

        with pytest.raises(ConfigurationError) as exc_info:
            await _Sweeper(CacheConfig(), fail_with=error).initialize()

        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_cleanup_errors_are_logged(self, log_output):
        """Test cleanup failures are logged and the component still stops."""
        sweeper = _Sweeper(CacheConfig(), fail_cleanup=True)
        await sweeper.initialize()

        await sweeper.cleanup()

        assert not sweeper.is_initialized
        [entry] = [e for e in log_output if e["event"] == "Component cleanup failed"]
        assert entry["error"] == "sweep task already gone"


class TestLifecycleComponent:
    """Test named state reporting."""

    @pytest.mark.asyncio
    async def test_state_transitions(self, log_output):
        """Test the state moves and is reported in metrics."""
        orchestrator = _Orchestrator(IndexOptimizerConfig())
        assert orchestrator.state == "created"

        await orchestrator.initialize()

        assert orchestrator.state == "idle"
        assert orchestrator.get_metrics()["state"] == "idle"
        [entry] = [e for e in log_output if e["event"] == "Component state changed"]
        assert (entry["previous_state"], entry["new_state"]) == ("created", "idle")
