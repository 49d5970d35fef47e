"""Helpers for the remote store's connection string.

Supabase and most hosting dashboards hand out ``postgres://`` or
``postgresql://`` URLs, SQLAlchemy-style tooling adds a ``+driver`` suffix,
while Tortoise ORM selects its asyncpg backend from the ``asyncpg://``
scheme. SQLite URLs are passed through for local runs and tests.
"""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit


def to_asyncpg_dsn(url: str) -> str:
    """Convert a PostgreSQL DSN to the ``asyncpg://`` scheme for Tortoise."""

    if url.startswith("sqlite://"):
        return url
    if url.startswith(("postgresql+", "postgres+")):
        url = "postgresql://" + url.split("://", 1)[1]
    if url.startswith("postgresql://"):
        return "asyncpg://" + url[len("postgresql://") :]
    if url.startswith("postgres://"):
        return "asyncpg://" + url[len("postgres://") :]
    return url


def redact_dsn(url: str) -> str:
    """Hide the password so a DSN can be logged."""

    parts = urlsplit(url)
    if not parts.password:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urlunsplit(parts._replace(netloc=netloc))
