"""
templates.py — Render a named template into subject + body.

Templates are Jinja2 sources kept per (name, channel), with a channel-less
fallback. Rendering runs in a sandboxed environment with StrictUndefined, so
a missing variable is a render error rather than an empty string.

    renderer.register("order_shipped", body="Hi {{ name }}, ...",
                      subject="Order {{ order_id }} shipped")
    renderer.render("order_shipped", Channel.EMAIL, {"name": "Asha", ...})
        → RenderedMessage(subject="Order 42 shipped", body="Hi Asha, ...")
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import jinja2
from jinja2.sandbox import SandboxedEnvironment

from backend.app.core.errors import TemplateNotFound, TemplateRenderError
from backend.app.delivery.models import Channel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderedMessage:
    subject: Optional[str]
    body: str


@dataclass(frozen=True)
class TemplateSource:
    body: str
    subject: Optional[str] = None


class TemplateRenderer(ABC):
    """Raises TemplateNotFound or TemplateRenderError on failure."""

    @abstractmethod
    def render(self, template_name: str, channel: Channel, variables: Mapping[str, Any]) -> RenderedMessage:
        ...


class JinjaTemplateRenderer(TemplateRenderer):
    """In-memory template registry rendered with a sandboxed Jinja2 environment."""

    def __init__(self, templates: Optional[Dict[str, TemplateSource]] = None):
        self._env = SandboxedEnvironment(
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._sources: Dict[Tuple[str, Optional[Channel]], TemplateSource] = {}
        self._compiled: Dict[str, jinja2.Template] = {}
        self._lock = threading.Lock()
        for name, source in (templates or {}).items():
            self._sources[(name, None)] = source

    def register(
        self,
        name: str,
        body: str,
        subject: Optional[str] = None,
        channel: Optional[Channel] = None,
    ) -> None:
        """Add or replace a template; ``channel=None`` applies to every channel."""
        with self._lock:
            self._sources[(name, channel)] = TemplateSource(body=body, subject=subject)
            self._compiled = {k: v for k, v in self._compiled.items() if not k.startswith(f"{name}|")}

    def _source(self, name: str, channel: Channel) -> TemplateSource:
        with self._lock:
            source = self._sources.get((name, channel)) or self._sources.get((name, None))
        if source is None:
            raise TemplateNotFound(name)
        return source

    def _compile(self, cache_key: str, text: str) -> jinja2.Template:
        with self._lock:
            template = self._compiled.get(cache_key)
            if template is None:
                template = self._env.from_string(text)
                self._compiled[cache_key] = template
            return template

    def render(self, template_name: str, channel: Channel, variables: Mapping[str, Any]) -> RenderedMessage:
        source = self._source(template_name, channel)
        prefix = f"{template_name}|{channel.value}"
        try:
            body = self._compile(f"{prefix}|body", source.body).render(**variables)
            subject = None
            if source.subject is not None:
                subject = self._compile(f"{prefix}|subject", source.subject).render(**variables).strip()
        except jinja2.TemplateError as e:
            logger.warning("Template %s failed to render: %s", template_name, e)
            raise TemplateRenderError(template_name, str(e)) from e
        except Exception as e:
            # expressions can raise plain Python errors on valid-looking input
            logger.warning("Template %s raised %s: %s", template_name, type(e).__name__, e)
            raise TemplateRenderError(template_name, f"{type(e).__name__}: {e}") from e
        return RenderedMessage(subject=subject, body=body)
