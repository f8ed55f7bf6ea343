import io
import logging

from chatarbor.observability import SECURITY_LOGGER_NAME, MetricsRecorder, audit_security_event


def _capture_logger_output(logger_name: str):
    logger = logging.getLogger(logger_name)
    buffer = io.StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger, handler, buffer


def test_metrics_recorder_logs_when_enabled() -> None:
    metrics = MetricsRecorder(enabled=True, namespace="chatarbor.test")
    logger, handler, buffer = _capture_logger_output("chatarbor.metrics")

    try:
        metrics.increment("knowledge.ingest", operation="add", outcome="indexed")
        metrics.record_timing("knowledge.search_duration", 0.05, strategy="vector")
    finally:
        logger.removeHandler(handler)

    output = buffer.getvalue()
    assert "chatarbor.test.knowledge.ingest value=1 operation=add outcome=indexed" in output
    assert "chatarbor.test.knowledge.search_duration duration_ms=50 strategy=vector" in output


def test_metrics_recorder_disabled_suppresses_logs(caplog) -> None:
    metrics = MetricsRecorder(enabled=False)

    with caplog.at_level(logging.INFO, logger="chatarbor.metrics"):
        metrics.increment("knowledge.ingest", operation="add")
        with metrics.track_timing("knowledge.bulk_duration"):
            pass

    assert not caplog.records


def test_prometheus_export_renders_counters_and_histograms() -> None:
    metrics = MetricsRecorder(enabled=True, prometheus_enabled=True)

    metrics.increment("scrape.requests", outcome="ok")
    metrics.increment("scrape.requests", outcome="ok")
    with metrics.track_timing("chat.stream_duration", backend="openai"):
        pass

    body = metrics.render_prometheus().decode("utf-8")
    assert 'chatarbor_scrape_requests_total{outcome="ok"} 2.0' in body
    assert 'chatarbor_chat_stream_duration_count{backend="openai"} 1.0' in body


def test_render_prometheus_requires_export() -> None:
    metrics = MetricsRecorder(enabled=True)

    assert metrics.prometheus_enabled is False
    try:
        metrics.render_prometheus()
    except RuntimeError as exc:
        assert "disabled" in str(exc)
    else:  # pragma: no cover - guard
        raise AssertionError("render_prometheus should fail when export is disabled")


def test_security_events_go_to_audit_logger() -> None:
    logger = logging.getLogger(SECURITY_LOGGER_NAME)
    buffer = io.StringIO()
    handler = logging.StreamHandler(buffer)
    logger.addHandler(handler)
    logger.setLevel(logging.WARNING)

    try:
        audit_security_event("scrape_blocked", url="http://10.0.0.1/", reason="private_address", address=None)
    finally:
        logger.removeHandler(handler)

    line = buffer.getvalue().strip()
    assert line == "security.scrape_blocked reason=private_address url=http://10.0.0.1/"
