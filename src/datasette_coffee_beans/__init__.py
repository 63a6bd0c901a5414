"""Datasette plugin for a coffee bean inventory with a daily Bean of the Day."""

from datasette_coffee_beans.plugin import (
    actor_from_request,
    register_routes,
    skip_csrf,
    startup,
)

__all__ = [
    "actor_from_request",
    "register_routes",
    "skip_csrf",
    "startup",
]
