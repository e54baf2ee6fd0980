from fiqh_assistant.utils import tracing
from fiqh_assistant.utils.tracing import start_span


def test_start_span_is_non_recording_without_sdk_provider():
    with start_span("test-span", {"foo": "bar", "skipped": None}) as span:
        assert span is not None
        assert not span.is_recording()
        span.set_attribute("ignored", 1)


def test_configure_tracing_without_endpoint_is_noop():
    tracing.configure_tracing()
    assert tracing._CONFIGURED is False


def test_parse_headers():
    assert tracing._parse_headers("a=1, b = two,broken,,c=") == {"a": "1", "b": "two", "c": ""}
