"""
test_templates.py — Jinja2 template rendering.

Run with:
    pytest tests/test_templates.py -v
"""

from __future__ import annotations

import pytest

from backend.app.core.errors import ErrorKind, TemplateNotFound, TemplateRenderError
from backend.app.delivery.models import Channel
from backend.app.delivery.templates import JinjaTemplateRenderer, TemplateSource


class TestJinjaTemplateRenderer:

    def test_render_subject_and_body(self, renderer):
        rendered = renderer.render("welcome", Channel.EMAIL, {"name": "Asha"})
        assert rendered.subject == "Welcome Asha"
        assert rendered.body == "Hi Asha, welcome aboard."

    def test_no_subject(self, renderer):
        assert renderer.render("otp", Channel.SMS, {"code": "4821"}).subject is None

    def test_channel_specific_override(self, renderer):
        renderer.register("welcome", body="Welcome {{ name }}!", channel=Channel.SMS)
        assert renderer.render("welcome", Channel.SMS, {"name": "Asha"}).body == "Welcome Asha!"
        assert renderer.render("welcome", Channel.EMAIL, {"name": "Asha"}).body == "Hi Asha, welcome aboard."

    def test_re_register_replaces_compiled(self, renderer):
        renderer.render("otp", Channel.SMS, {"code": "1"})
        renderer.register("otp", body="Code: {{ code }}")
        assert renderer.render("otp", Channel.SMS, {"code": "1"}).body == "Code: 1"

    def test_unknown_template(self, renderer):
        with pytest.raises(TemplateNotFound) as exc:
            renderer.render("nope", Channel.EMAIL, {})
        assert exc.value.error_kind == ErrorKind.TEMPLATE_NOT_FOUND

    def test_missing_variable_is_render_error(self, renderer):
        with pytest.raises(TemplateRenderError) as exc:
            renderer.render("welcome", Channel.EMAIL, {})
        assert exc.value.error_kind == ErrorKind.TEMPLATE_RENDER_ERROR

    def test_syntax_error_is_render_error(self):
        renderer = JinjaTemplateRenderer({"broken": TemplateSource(body="{{ name ")})
        with pytest.raises(TemplateRenderError):
            renderer.render("broken", Channel.EMAIL, {"name": "x"})

    def test_sandbox_blocks_unsafe_access(self):
        renderer = JinjaTemplateRenderer({"evil": TemplateSource(body="{{ x.__class__.__mro__ }}")})
        with pytest.raises(TemplateRenderError):
            renderer.render("evil", Channel.EMAIL, {"x": "s"})

    def test_python_error_in_expression_is_render_error(self):
        renderer = JinjaTemplateRenderer({"total": TemplateSource(body="Total {{ amount + 1 }}")})
        with pytest.raises(TemplateRenderError) as exc:
            renderer.render("total", Channel.EMAIL, {"amount": "ten"})
        assert "TypeError" in exc.value.message
        assert renderer.render("total", Channel.EMAIL, {"amount": 9}).body == "Total 10"
