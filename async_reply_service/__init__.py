"""Asynchronous IMAP reply ingestion and threaded SMTP replies for multi-site contact forms.

This package provides the email side of the contact-form inbox:

- Periodic IMAP polling of every configured website, one task per site
- MIME parsing of unread mail and sender-based conversation matching
- Reply persistence in a per-site SQLite store
- Threaded outbound replies (``In-Reply-To``/``References``) over SMTP
- Prometheus metrics and a FastAPI control surface

Example:
    Basic usage with the FastAPI application::

        from async_reply_service.core import AsyncReplyCore
        from async_reply_service.api import create_app

        core = AsyncReplyCore(websites_dir="websites", db_dir="/data/sites")
        app = create_app(core, api_token="secret")
"""
