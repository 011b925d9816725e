import logging

import pytest
from httpx import ASGITransport, AsyncClient
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from services.common import ServiceSettings, build_app, configure_logging
from services.common.tracing import _INSTRUMENTED_APPS, configure_tracing, outbound_span
from services.partner_service.app.errors import ConfigurationError, register_error_handlers


@pytest.mark.usefixtures("caplog")
class TestTracingInstrumentation:
    def test_tracing_sets_provider_once(self, caplog: pytest.LogCaptureFixture) -> None:
        settings = ServiceSettings(
            enable_tracing=True,
            enable_metrics=False,
            app_name="Partner Tracing Test",
        )
        configure_logging(settings)
        caplog.set_level(logging.WARNING)
        before = len(_INSTRUMENTED_APPS)
        app = build_app(settings)
        assert len(_INSTRUMENTED_APPS) == before + 1
        configure_tracing(app, settings)
        assert len(_INSTRUMENTED_APPS) == before + 1
        assert isinstance(trace.get_tracer_provider(), TracerProvider)
        assert app.state.settings is settings

    def test_logging_injects_trace_identifiers(self, caplog: pytest.LogCaptureFixture) -> None:
        settings = ServiceSettings(
            enable_tracing=True,
            enable_metrics=False,
            app_name="Partner Logging Test",
        )
        configure_logging(settings)
        build_app(settings)
        caplog.clear()
        tracer = trace.get_tracer(__name__)
        logger = logging.getLogger("partner-trace-test")
        with caplog.at_level(logging.INFO):
            logger.info("outside span")
            with tracer.start_as_current_span("partner-checkout"):
                logger.info("inside span")
        outside = next(record for record in caplog.records if record.message == "outside span")
        inside = next(record for record in caplog.records if record.message == "inside span")
        assert getattr(outside, "trace_id", "-") == "-"
        assert len(getattr(inside, "trace_id", "-")) == 32
        assert len(getattr(inside, "span_id", "-")) == 16

    def test_outbound_span_records_failures(self) -> None:
        settings = ServiceSettings(enable_tracing=True, enable_metrics=False, app_name="Partner Span Test")
        build_app(settings)
        provider = trace.get_tracer_provider()
        assert isinstance(provider, TracerProvider)
        exporter = InMemorySpanExporter()
        provider.add_span_processor(SimpleSpanProcessor(exporter))

        with outbound_span("payment.refund", **{"payment.provider": "paypal", "payment.capture": None}):
            pass
        with pytest.raises(RuntimeError):
            with outbound_span("payment.confirm_capture", **{"payment.provider": "stripe"}):
                raise RuntimeError("gateway down")

        finished = {span.name: span for span in exporter.get_finished_spans()}
        refund = finished["payment.refund"]
        assert refund.kind is SpanKind.CLIENT
        assert dict(refund.attributes) == {"payment.provider": "paypal"}
        failed = finished["payment.confirm_capture"]
        assert failed.status.status_code is StatusCode.ERROR
        assert failed.events[0].name == "exception"
        exporter.shutdown()

    def test_noisy_client_loggers_are_quieted(self) -> None:
        configure_logging(ServiceSettings(log_level="INFO"))
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("stripe").level == logging.WARNING


@pytest.mark.asyncio
async def test_server_side_partner_errors_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    app = build_app(ServiceSettings(enable_metrics=False, app_name="Partner Error Test"))
    register_error_handlers(app)

    @app.get("/boom")
    async def boom() -> None:
        raise ConfigurationError("Partner pricing has not been configured.")

    with caplog.at_level(logging.ERROR, logger="services.partner_service.app.errors"):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/boom")

    assert response.status_code == 503
    assert response.json() == {"detail": "Partner pricing has not been configured.", "code": "ConfigurationError"}
    assert any("ConfigurationError on GET /boom" in record.getMessage() for record in caplog.records)
