"""
Template rendering for migrations, shared partials and code packages.

Migration bodies are Jinja2 templates. Values from the caller's data
mapping are available as top-level variables, shared partials can be
pulled in with `{% include "shared/file.sql" %}`, and a handful of helper
functions (`env`, `expandenv`, `now`) and SQL quoting filters are added on
top of Jinja's own string and collection filters.
"""

import datetime
import os
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping

from jinja2 import DictLoader, Environment, StrictUndefined, TemplateError

from tern.migrations.exceptions import TemplateRenderError


class TemplateRenderer(ABC):
    """Capability used by discovery and code packages to render SQL templates."""

    @abstractmethod
    def register_partial(self, name: str, text: str) -> None:
        """Make a template available for inclusion under the given name."""
        pass

    @abstractmethod
    def register_function(self, name: str, func: Callable[..., Any]) -> None:
        """Expose a helper function to every template."""
        pass

    @abstractmethod
    def render(self, name: str, text: str, data: Mapping[str, Any]) -> str:
        """Render template text against data.

        Raises:
            TemplateRenderError: If the template cannot be parsed or evaluated
        """
        pass

    @abstractmethod
    def render_partial(self, name: str, data: Mapping[str, Any]) -> str:
        """Render a previously registered partial by name."""
        pass


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default)


def _squote(value: Any) -> str:
    """Quote a value as a SQL string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def _dquote(value: Any) -> str:
    """Quote a value as a SQL identifier."""
    return '"' + str(value).replace('"', '""') + '"'


class JinjaTemplateRenderer(TemplateRenderer):
    """TemplateRenderer backed by a Jinja2 environment.

    Undefined variables are errors rather than silently rendering as empty
    strings, so a typo in a data key fails discovery instead of producing
    wrong SQL.
    """

    def __init__(self, partials: Mapping[str, str] | None = None):
        self._partials: dict[str, str] = dict(partials or {})
        self._env = Environment(
            loader=DictLoader(self._partials),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        self._env.globals.update(
            env=_env,
            expandenv=os.path.expandvars,
            now=datetime.datetime.now,
        )
        self._env.filters.update(squote=_squote, dquote=_dquote)

    def register_partial(self, name: str, text: str) -> None:
        try:
            self._env.parse(text, name=name)
        except TemplateError as e:
            raise TemplateRenderError(name, e) from e
        self._partials[name] = text

    def register_function(self, name: str, func: Callable[..., Any]) -> None:
        self._env.globals[name] = func

    def render(self, name: str, text: str, data: Mapping[str, Any]) -> str:
        try:
            template = self._env.from_string(text)
            return template.render(dict(data))
        except TemplateError as e:
            raise TemplateRenderError(name, e) from e

    def render_partial(self, name: str, data: Mapping[str, Any]) -> str:
        try:
            return self._env.get_template(name).render(dict(data))
        except TemplateError as e:
            raise TemplateRenderError(name, e) from e
