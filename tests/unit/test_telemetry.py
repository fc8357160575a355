"""Unit tests for telemetry module."""
import os
from unittest.mock import MagicMock, patch


class TestGetOtelConfig:
    """Tests for get_otel_config function."""

    def test_returns_default_values_when_no_env_vars(self):
        """Should return default configuration when no env vars are set."""
        with patch.dict(os.environ, {}, clear=True):
            from Conductor.Core.telemetry import get_otel_config

            config = get_otel_config()

            assert config["endpoint"] == "http://alloy:4317"
            assert config["service_name"] == "conductor-worker"
            assert config["environment"] == "development"
            assert config["version"] == "unknown"
            assert config["resource_attributes"] == {}

    def test_returns_custom_values_from_env(self):
        """Should read the endpoint, service and deployment from env."""
        env = {
            "OTEL_EXPORTER_OTLP_ENDPOINT": "http://collector:4317",
            "OTEL_SERVICE_NAME": "conductor-blue",
            "CONDUCTOR_ENVIRONMENT": "production",
            "CONDUCTOR_VERSION": "3.1.0",
        }
        with patch.dict(os.environ, env):
            from Conductor.Core.telemetry import get_otel_config

            config = get_otel_config()

            assert config["endpoint"] == "http://collector:4317"
            assert config["service_name"] == "conductor-blue"
            assert config["environment"] == "production"
            assert config["version"] == "3.1.0"

    def test_parses_resource_attributes_from_env(self):
        """Should parse comma-separated key=value pairs and skip malformed ones."""
        with patch.dict(
            os.environ,
            {"OTEL_RESOURCE_ATTRIBUTES": "team=sre, region = eu-west-1,malformed"},
        ):
            from Conductor.Core.telemetry import get_otel_config

            config = get_otel_config()

            assert config["resource_attributes"] == {"team": "sre", "region": "eu-west-1"}


class TestCreateResource:
    """Tests for create_resource function."""

    def test_creates_resource_with_service_attributes(self):
        """Should create resource with service name, version, and environment."""
        from Conductor.Core.telemetry import create_resource

        resource = create_resource({
            "service_name": "conductor-worker",
            "version": "1.0.0",
            "environment": "test",
            "resource_attributes": {"custom.attr": "custom-value"},
        })

        attrs = dict(resource.attributes)
        assert attrs["service.name"] == "conductor-worker"
        assert attrs["service.version"] == "1.0.0"
        assert attrs["deployment.environment"] == "test"
        assert attrs["custom.attr"] == "custom-value"


class TestCreateTracerProvider:
    """Tests for create_tracer_provider function."""

    @patch("Conductor.Core.telemetry.OTLPSpanExporter")
    @patch("Conductor.Core.telemetry.BatchSpanProcessor")
    def test_creates_tracer_provider_with_exporter(
        self, mock_processor_class, mock_exporter_class
    ):
        """Should create TracerProvider with an insecure OTLP exporter."""
        from Conductor.Core.telemetry import create_resource, create_tracer_provider

        mock_exporter = MagicMock()
        mock_exporter_class.return_value = mock_exporter
        resource = create_resource({
            "service_name": "test",
            "version": "1.0.0",
            "environment": "test",
            "resource_attributes": {},
        })

        provider = create_tracer_provider(resource, "http://test:4317")

        mock_exporter_class.assert_called_once_with(endpoint="http://test:4317", insecure=True)
        mock_processor_class.assert_called_once_with(mock_exporter)
        assert provider is not None


class TestInitWorkerTelemetry:
    """Tests for init_worker_telemetry function."""

    def setup_method(self):
        """Reset module state before each test."""
        import Conductor.Core.telemetry as telemetry_module

        telemetry_module._initialized = False
        telemetry_module._tracer_provider = None

    def teardown_method(self):
        """Reset module state after each test."""
        import Conductor.Core.telemetry as telemetry_module

        telemetry_module._initialized = False
        telemetry_module._tracer_provider = None

    @patch("Conductor.Core.telemetry.trace.set_tracer_provider")
    @patch("Conductor.Core.telemetry.create_tracer_provider")
    @patch("Conductor.Core.telemetry.create_resource")
    @patch("Conductor.Core.telemetry.setup_propagators")
    def test_initializes_telemetry_successfully(
        self, mock_propagators, mock_create_resource, mock_create_provider, mock_set_provider
    ):
        """Should install the provider and propagators and return True."""
        from Conductor.Core.telemetry import init_worker_telemetry, is_telemetry_enabled

        mock_provider = MagicMock()
        mock_create_provider.return_value = mock_provider

        result = init_worker_telemetry(service_name="conductor-worker-test")

        assert result is True
        assert is_telemetry_enabled() is True
        assert mock_create_resource.call_args.args[0]["service_name"] == "conductor-worker-test"
        mock_set_provider.assert_called_once_with(mock_provider)
        mock_propagators.assert_called_once()

    @patch("Conductor.Core.telemetry.create_resource")
    def test_skips_if_already_initialized(self, mock_create_resource):
        """Should skip initialization if already initialized."""
        import Conductor.Core.telemetry as telemetry_module
        from Conductor.Core.telemetry import init_worker_telemetry

        telemetry_module._initialized = True

        assert init_worker_telemetry() is True
        mock_create_resource.assert_not_called()

    @patch("Conductor.Core.telemetry.create_resource")
    def test_returns_true_when_disabled(self, mock_create_resource):
        """Should return True without creating a provider when enable=False."""
        from Conductor.Core.telemetry import init_worker_telemetry, is_telemetry_enabled

        assert init_worker_telemetry(enable=False) is True
        assert is_telemetry_enabled() is True
        mock_create_resource.assert_not_called()

    @patch("Conductor.Core.telemetry.create_resource")
    def test_returns_false_on_exception(self, mock_create_resource):
        """Should return False if initialization fails."""
        from Conductor.Core.telemetry import init_worker_telemetry, is_telemetry_enabled

        mock_create_resource.side_effect = Exception("Test error")

        assert init_worker_telemetry() is False
        assert is_telemetry_enabled() is False


class TestShutdownTelemetry:
    """Tests for shutdown_telemetry function."""

    def setup_method(self):
        """Reset module state before each test."""
        import Conductor.Core.telemetry as telemetry_module

        telemetry_module._initialized = False
        telemetry_module._tracer_provider = None

    def test_shuts_down_tracer_provider(self):
        """Should call shutdown on the tracer provider and reset state."""
        import Conductor.Core.telemetry as telemetry_module
        from Conductor.Core.telemetry import is_telemetry_enabled, shutdown_telemetry

        mock_provider = MagicMock()
        telemetry_module._tracer_provider = mock_provider
        telemetry_module._initialized = True

        shutdown_telemetry()

        mock_provider.shutdown.assert_called_once()
        assert is_telemetry_enabled() is False
        assert telemetry_module._tracer_provider is None

    def test_handles_shutdown_exception(self):
        """Should not raise if the provider fails to shut down."""
        import Conductor.Core.telemetry as telemetry_module
        from Conductor.Core.telemetry import shutdown_telemetry

        mock_provider = MagicMock()
        mock_provider.shutdown.side_effect = Exception("flush failed")
        telemetry_module._tracer_provider = mock_provider

        shutdown_telemetry()

        assert telemetry_module._tracer_provider is None


class TestGetTracer:
    """Tests for get_tracer function."""

    @patch("Conductor.Core.telemetry.trace.get_tracer")
    def test_returns_tracer_with_name(self, mock_get_tracer):
        """Should return a tracer with the specified name."""
        from Conductor.Core.telemetry import get_tracer

        mock_tracer = MagicMock()
        mock_get_tracer.return_value = mock_tracer

        assert get_tracer("Conductor.Core.orchestrator") == mock_tracer
        mock_get_tracer.assert_called_once_with("Conductor.Core.orchestrator")


class TestSamplingAndEnableFlag:
    """Tests for the sampling ratio and OTEL_ENABLED."""

    def test_defaults(self):
        """Should trace everything and be enabled by default."""
        with patch.dict(os.environ, {}, clear=True):
            from Conductor.Core.telemetry import get_otel_config

            config = get_otel_config()

            assert config["enabled"] is True
            assert config["sample_ratio"] == 1.0

    def test_sample_ratio_is_clamped(self):
        """Should clamp the ratio into 0.0-1.0 and ignore garbage."""
        from Conductor.Core.telemetry import _parse_sample_ratio

        assert _parse_sample_ratio("0.25") == 0.25
        assert _parse_sample_ratio("4") == 1.0
        assert _parse_sample_ratio("-1") == 0.0
        assert _parse_sample_ratio("often") == 1.0
        assert _parse_sample_ratio(None) == 1.0

    @patch("Conductor.Core.telemetry.create_resource")
    def test_disabled_from_env(self, mock_create_resource):
        """Should honour OTEL_ENABLED=false when enable is not given."""
        import Conductor.Core.telemetry as telemetry_module
        from Conductor.Core.telemetry import init_worker_telemetry

        telemetry_module._initialized = False
        try:
            with patch.dict(os.environ, {"OTEL_ENABLED": "false"}):
                assert init_worker_telemetry() is True
            mock_create_resource.assert_not_called()
        finally:
            telemetry_module._initialized = False
            telemetry_module._tracer_provider = None

    @patch("Conductor.Core.telemetry.OTLPSpanExporter")
    @patch("Conductor.Core.telemetry.BatchSpanProcessor")
    def test_provider_uses_ratio_sampler(self, mock_processor_class, mock_exporter_class):
        """Should sample root spans by ratio and follow the parent otherwise."""
        from opentelemetry.sdk.trace.sampling import ParentBased

        from Conductor.Core.telemetry import create_resource, create_tracer_provider

        resource = create_resource({
            "service_name": "test",
            "version": "1.0.0",
            "environment": "test",
        })

        provider = create_tracer_provider(resource, "http://test:4317", sample_ratio=0.5)

        assert isinstance(provider.sampler, ParentBased)
        assert "0.5" in provider.sampler.get_description()


class TestSpanHelpers:
    """Tests for trace_id_of and mark_span_outcome."""

    def test_trace_id_of_recording_span(self):
        """Should return the hex trace id of a real span."""
        from opentelemetry.sdk.trace import TracerProvider

        from Conductor.Core.telemetry import trace_id_of

        tracer = TracerProvider().get_tracer("conductor.tests")
        with tracer.start_as_current_span("runbook.execution") as span:
            expected = format(span.get_span_context().trace_id, "032x")

            assert trace_id_of(span) == expected

    def test_trace_id_of_invalid_span(self):
        """Should return None for the no-op span."""
        from opentelemetry import trace

        from Conductor.Core.telemetry import trace_id_of

        assert trace_id_of(trace.INVALID_SPAN) is None

    def test_success_outcome_is_ok(self):
        """Should mark successes and pauses as OK."""
        from opentelemetry.trace import StatusCode

        from Conductor.Core.telemetry import mark_span_outcome

        span = MagicMock()

        mark_span_outcome(span, "PAUSED")

        span.set_attribute.assert_called_once_with("conductor.outcome", "PAUSED")
        assert span.set_status.call_args[0][0].status_code == StatusCode.OK

    def test_failure_outcome_is_error(self):
        """Should mark failures as errors with the error message."""
        from opentelemetry.trace import StatusCode

        from Conductor.Core.telemetry import mark_span_outcome

        span = MagicMock()

        mark_span_outcome(span, "FAILED", "exit code 1")

        status = span.set_status.call_args[0][0]
        assert status.status_code == StatusCode.ERROR
        assert status.description == "exit code 1"
