import structlog

from siteaudit.core.logging import add_severity, bind_analysis, configure_logging, unbind_analysis


def test_add_severity():
    assert add_severity(None, "warning", {})["severity"] == "WARNING"
    assert add_severity(None, "trace", {})["severity"] == "INFO"


def test_analysis_context_bound_and_cleared():
    configure_logging(level="DEBUG", log_format="console")
    analysis_id = bind_analysis("https://example.com/")
    context = structlog.contextvars.get_contextvars()
    assert context["analysis_id"] == analysis_id
    assert context["root_url"] == "https://example.com/"

    unbind_analysis()
    assert "analysis_id" not in structlog.contextvars.get_contextvars()
