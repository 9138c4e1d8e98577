"""Tests for alert rendering."""

import pytest

from conftest import make_finding_event
from piiwatch.core.errors import RenderError
from piiwatch.routing.render import (
    GENERIC_TEMPLATE,
    AlertRenderer,
    AlertTemplate,
    render_template,
    resolve_path,
)


@pytest.fixture
def renderer():
    return AlertRenderer(region="eu-west-1", issue_board_url="https://issues.example.com/board")


class TestResolvePath:
    def test_nested_and_indexed(self):
        doc = {"a": {"b": [{"c": 1}, {"c": 2}]}}
        assert resolve_path(doc, "$.a.b[1].c") == 2
        assert resolve_path(doc, "$") == doc

    @pytest.mark.parametrize("path", ["$.a.x", "$.a.b[5]", "$.a.b.c", "a.b", "$..a"])
    def test_missing_or_malformed(self, path):
        with pytest.raises(RenderError):
            resolve_path({"a": {"b": [1]}}, path)


class TestGenericTemplate:
    def test_low_severity_finding(self, renderer):
        payload = renderer.render(make_finding_event(job_id="job-42").to_document(), "generic")

        assert payload.format == "generic"
        assert payload.title == "Finding for job job-42"
        assert payload.body["summary"] == "PII finding"
        assert payload.body["severity"] == "Low"
        assert payload.body["jobId"] == "job-42"
        view, issue = payload.body["links"]
        assert "job-42" in view["url"]
        assert "region=eu-west-1" in view["url"]
        assert issue["url"] == "https://issues.example.com/board"

    def test_rendering_is_deterministic(self, renderer):
        document = make_finding_event().to_document()
        assert renderer.render(document).to_json() == renderer.render(document).to_json()

    def test_template_is_not_mutated(self, renderer):
        renderer.render(make_finding_event().to_document())
        assert GENERIC_TEMPLATE.document["title"] == "Finding for job <jobId>"


class TestTeamsTemplate:
    def test_message_card(self, renderer):
        payload = renderer.render(make_finding_event(job_id="job-7").to_document(), "teams")
        body = payload.body
        assert body["@type"] == "MessageCard"
        assert body["title"] == "Finding for job job-7"
        facts = {fact["name"]: fact["value"] for fact in body["sections"][0]["facts"]}
        assert facts == {"Job ID": "job-7", "Severity": "Low", "Type": "SensitiveData:S3Object/Personal"}
        uris = [action["targets"][0]["uri"] for action in body["potentialAction"]]
        assert "job-7" in uris[0]
        assert uris[1] == "https://issues.example.com/board"


class TestRenderErrors:
    def test_missing_job_id(self, renderer):
        document = make_finding_event().to_document()
        del document["detail"]["classificationDetails"]["jobId"]
        with pytest.raises(RenderError) as exc_info:
            renderer.render(document)
        assert exc_info.value.field_path == "$.detail.classificationDetails.jobId"
        assert exc_info.value.retryable is False

    def test_null_and_blank_values(self, renderer):
        document = make_finding_event().to_document()
        document["detail"]["severity"]["description"] = None
        with pytest.raises(RenderError):
            renderer.render(document)
        document["detail"]["severity"]["description"] = "  "
        with pytest.raises(RenderError):
            renderer.render(document)

    def test_non_scalar_value(self, renderer):
        document = make_finding_event().to_document()
        document["detail"]["type"] = {"nested": True}
        with pytest.raises(RenderError):
            renderer.render(document)

    def test_unknown_format(self, renderer):
        with pytest.raises(RenderError):
            renderer.render(make_finding_event().to_document(), "slack")

    def test_placeholder_without_value(self):
        template = AlertTemplate(name="t", document={"x": "<nothing>"}, input_paths={})
        with pytest.raises(RenderError):
            render_template(template, {})

    def test_whole_placeholder_keeps_type(self):
        template = AlertTemplate(name="t", document={"count": "<n>"}, input_paths={"n": "$.n"})
        assert render_template(template, {"n": 3}).body == {"count": 3}
