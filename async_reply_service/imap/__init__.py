"""IMAP access for inbound reply polling."""

from .client import IMAPClient
from .fetcher import IMAPFetcher

__all__ = ["IMAPClient", "IMAPFetcher"]
