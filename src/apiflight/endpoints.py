"""Endpoint path helpers."""

import re
from typing import Any
from urllib.parse import quote

_PARAM_PATTERN = re.compile(r":([A-Za-z_][A-Za-z0-9_]*)")


def format_endpoint(template: str, **params: Any) -> str:
    """Substitute ``:name`` path parameters with URL-encoded values.

    Example:
        format_endpoint("/exams/:examId/attempts/:attemptId", examId=3, attemptId="a b")
        # "/exams/3/attempts/a%20b"
    """

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in params:
            raise KeyError(f"Missing path parameter {name!r} for {template!r}")
        value = params[name]
        if value is None:
            raise ValueError(f"Path parameter {name!r} is None")
        return quote(str(value), safe="")

    return _PARAM_PATTERN.sub(replace, template)


def join_url(base: str, endpoint: str) -> str:
    """Join a base prefix and an endpoint with exactly one slash."""
    if endpoint.startswith(("http://", "https://")):
        return endpoint
    if not base:
        return endpoint
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


__all__ = ["format_endpoint", "join_url"]
