from __future__ import annotations

from functools import lru_cache

from jinja2 import Environment, PackageLoader, select_autoescape

__all__ = [
    "render_template",
    "render_landing_page",
]


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        loader=PackageLoader("dashrelay.webui", "templates"),
        autoescape=select_autoescape(["html", "xml"]),
    )


def render_template(name: str, **context: object) -> str:
    template = _environment().get_template(name)
    return template.render(**context)


def render_landing_page(manifest_name: str) -> str:
    return render_template("index.html", manifest_url=f"/{manifest_name}")
