"""Core orchestration logic for the asynchronous reply service."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ReplyServiceError, TenantConfigurationError, TransportError
from .imap.fetcher import IMAPFetcher
from .logger import get_logger
from .models import SENT_BY_ADMIN, IncomingEmail, OutboundReply
from .persistence import MessageStore
from .prometheus import ReplyMetrics
from .scheduler import DEFAULT_POLL_INTERVAL, TenantScheduler
from .smtp_sender import SMTPReplySender, admin_reply_body, build_reply
from .tenants import TenantConfig, TenantLoader

DEFAULT_NETWORK_TIMEOUT = 30.0


def _original_from_payload(data: Optional[Dict[str, Any]]) -> Optional[IncomingEmail]:
    """Rebuild the threading-relevant part of a customer email from a command payload."""
    if not data:
        return None
    return IncomingEmail(
        sender=str(data.get("sender") or ""),
        subject=str(data.get("subject") or ""),
        message_id=str(data.get("message_id") or ""),
        references=str(data.get("references") or ""),
    )


class AsyncReplyCore:
    """Coordinate tenant discovery, mailbox polling and operator replies."""

    def __init__(
        self,
        *,
        websites_dir: str = "websites",
        db_dir: str = "/data/sites",
        logger=None,
        metrics: ReplyMetrics | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        network_timeout: float = DEFAULT_NETWORK_TIMEOUT,
        start_active: bool = True,
    ):
        """Prepare the runtime collaborators and scheduler state."""
        self.logger = logger or get_logger()
        self.metrics = metrics or ReplyMetrics()
        self.db_dir = os.path.expanduser(db_dir)
        self.tenants = TenantLoader(websites_dir, logger=self.logger)
        self.fetcher = IMAPFetcher(logger=self.logger, timeout=network_timeout)
        self.sender = SMTPReplySender(timeout=network_timeout, logger=self.logger)
        self.scheduler = TenantScheduler(
            self.tenants.load_all,
            self.store_for,
            interval=poll_interval,
            fetcher=self.fetcher,
            metrics=self.metrics,
            logger=self.logger,
        )
        self._active = bool(start_active)
        self._stores: Dict[str, MessageStore] = {}

    # --------------------------------------------------------------------- stores
    def store_path(self, tenant: TenantConfig) -> str:
        return str(Path(self.db_dir) / f"{tenant.id}.db")

    async def store_for(self, tenant: TenantConfig) -> MessageStore:
        """Return the conversation store of ``tenant``, creating its schema once."""
        store = self._stores.get(tenant.id)
        if store is None:
            Path(self.db_dir).mkdir(parents=True, exist_ok=True)
            store = MessageStore(self.store_path(tenant))
            await store.init_db()
            self._stores[tenant.id] = store
        return store

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the polling loop when the service is active."""
        if not self._active:
            self.logger.info("Email polling is not active; waiting for 'activate'")
            return
        await self.scheduler.start()

    async def stop(self) -> None:
        """Stop the background tasks gracefully."""
        await self.scheduler.stop()

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        if cmd == "run now":
            if not self.scheduler.running:
                return {"ok": False, "error": "polling is not active"}
            self.scheduler.wake()
            return {"ok": True}
        if cmd == "activate":
            self._active = True
            await self.scheduler.start()
            return {"ok": True, "active": True}
        if cmd == "suspend":
            self._active = False
            await self.scheduler.stop()
            return {"ok": True, "active": False}
        if cmd == "listTenants":
            return {"ok": True, "tenants": self._list_tenants()}
        if cmd == "pollTenant":
            return await self._poll_tenant(payload.get("tenant_id"))
        if cmd == "sendReply":
            return await self._handle_send_reply(payload)
        return {"ok": False, "error": "unknown command"}

    def _list_tenants(self) -> List[Dict[str, Any]]:
        tenants = []
        for tenant in self.tenants.load_all():
            info = tenant.summary()
            info["last_poll"] = self.scheduler.last_results.get(tenant.id)
            tenants.append(info)
        return tenants

    async def _poll_tenant(self, tenant_id: Optional[str]) -> Dict[str, Any]:
        if not tenant_id:
            return {"ok": False, "error": "missing 'tenant_id'"}
        try:
            tenant = self.tenants.get(tenant_id)
        except TenantConfigurationError as exc:
            return {"ok": False, "error": str(exc)}
        if not tenant.has_imap:
            return {"ok": False, "error": f"IMAP not configured for {tenant_id}"}
        try:
            result = await self.scheduler.poll_tenant(tenant)
        except (ReplyServiceError, RuntimeError) as exc:
            return {"ok": False, "error": str(exc)}
        return {"ok": True, "tenant_id": tenant_id, **result.as_dict()}

    async def _handle_send_reply(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        missing = [key for key in ("tenant_id", "conversation_id", "text") if payload.get(key) in (None, "")]
        if missing:
            return {"ok": False, "error": f"missing {', '.join(repr(key) for key in missing)}"}
        original = payload.get("original")
        try:
            msg_id = await self.send_reply(
                payload["tenant_id"],
                int(payload["conversation_id"]),
                payload["text"],
                html_text=payload.get("html_text") or "",
                original=_original_from_payload(original),
            )
        except (ReplyServiceError, LookupError) as exc:
            return {"ok": False, "error": str(exc)}
        return {"ok": True, "message_id": msg_id}

    # ------------------------------------------------------------ operator reply
    async def send_reply(
        self,
        tenant_id: str,
        conversation_id: int,
        text: str,
        *,
        html_text: str = "",
        original: Optional[IncomingEmail] = None,
    ) -> str:
        """Email an operator reply to the customer, then record it.

        The reply is stored (``sent_by="admin"``) only after the SMTP server
        accepted the message; a failed send stores nothing.

        Returns:
            The ``Message-ID`` of the sent email.

        Raises:
            TenantConfigurationError: Unknown tenant or SMTP not configured.
            LookupError: The conversation does not exist.
            TransportError: The SMTP server could not be reached or refused the mail.
        """
        tenant = self.tenants.get(tenant_id)
        if not tenant.has_smtp:
            raise TenantConfigurationError(f"SMTP not configured for {tenant_id}")

        store = await self.store_for(tenant)
        conversation = await store.get_message(conversation_id)
        if conversation is None:
            raise LookupError(f"Message {conversation_id} not found")

        from_address = tenant.sender_address
        from_name = tenant.sender_name
        body = admin_reply_body(conversation.get("name") or "", text, from_name)

        if original is not None and original.message_id:
            reply = build_reply(original, body, from_address=from_address, from_name=from_name, html_body=html_text)
            if not reply.to:
                reply.to = conversation["email"]
        else:
            reply = OutboundReply(
                from_address=from_address,
                from_name=from_name,
                to=conversation["email"],
                reply_to=tenant.email.reply_to or from_address,
                subject=f"Re: Message from {tenant.site_name}",
                body=body,
                html_body=html_text,
            )

        try:
            sent = await self.sender.send(tenant.smtp, reply)
        except TransportError:
            self.logger.warning("Reply to message %d for %s not sent; nothing recorded", conversation_id, tenant_id)
            raise

        await store.create_reply(conversation_id, text, SENT_BY_ADMIN)
        self.metrics.inc_reply_sent(tenant.id)
        self.logger.info("Email sent successfully to %s (%s)", reply.to, conversation.get("name"))
        return str(sent["Message-ID"])


__all__ = ["AsyncReplyCore"]
