"""Transports that deliver operations to the GraphQL endpoint."""

from .base import BatchTransport, Transport
from .http import HttpTransport

__all__ = ["BatchTransport", "HttpTransport", "Transport"]
