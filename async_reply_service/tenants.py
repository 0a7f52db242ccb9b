"""Per-website mail configuration read from ``<websites_dir>/<site>/config.json``.

Only the keys the reply pipeline needs are modelled; everything else in the
site configuration is ignored. A site is identified by its database name,
falling back to its directory name.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import TenantConfigurationError
from .logger import get_logger
from .models import MailServerConfig

if TYPE_CHECKING:
    from logging import Logger

CONFIG_FILENAME = "config.json"


class TenantEmailSettings(BaseModel):
    """The ``email`` block of a site configuration."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    from_address: Annotated[str, Field(default="", alias="fromAddress")]
    from_name: Annotated[str, Field(default="", alias="fromName")]
    reply_to: Annotated[str, Field(default="", alias="replyTo")]
    imap: MailServerConfig = Field(default_factory=MailServerConfig)
    smtp: MailServerConfig = Field(default_factory=MailServerConfig)


class TenantDatabase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""


class TenantConfig(BaseModel):
    """One website, as far as the reply pipeline is concerned."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Annotated[str, Field(default="", description="Tenant identifier (database name)")]
    site_name: Annotated[str, Field(default="", alias="siteName")]
    directory: Annotated[str, Field(default="", description="Site directory relative to websites_dir")]
    database: TenantDatabase = Field(default_factory=TenantDatabase)
    email: TenantEmailSettings = Field(default_factory=TenantEmailSettings)

    @property
    def imap(self) -> MailServerConfig:
        return self.email.imap

    @property
    def smtp(self) -> MailServerConfig:
        return self.email.smtp

    @property
    def has_imap(self) -> bool:
        return self.email.imap.is_configured

    @property
    def has_smtp(self) -> bool:
        return self.email.smtp.is_configured

    @property
    def sender_address(self) -> str:
        """Configured from address, falling back to the SMTP login."""
        return self.email.from_address or self.email.smtp.username

    @property
    def sender_name(self) -> str:
        """Configured from name, falling back to the site name."""
        return self.email.from_name or self.site_name

    def summary(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "site_name": self.site_name,
            "directory": self.directory,
            "imap_configured": self.has_imap,
            "smtp_configured": self.has_smtp,
        }


class TenantLoader:
    """Enumerate site configurations below a websites directory.

    The directory is scanned again on every call so that edits are picked up
    without a restart. Unreadable or invalid files are logged and skipped.
    """

    def __init__(self, websites_dir: str | Path, logger: Logger | None = None):
        self.websites_dir = Path(websites_dir)
        self.logger = logger or get_logger("tenants")

    def load_all(self) -> List[TenantConfig]:
        if not self.websites_dir.is_dir():
            self.logger.warning("Websites directory not found: %s", self.websites_dir)
            return []

        tenants: List[TenantConfig] = []
        seen: set[str] = set()
        for path in sorted(self.websites_dir.rglob(CONFIG_FILENAME)):
            tenant = self._load_file(path)
            if tenant is None:
                continue
            if tenant.id in seen:
                self.logger.warning("Duplicate tenant id %s in %s, skipping", tenant.id, path)
                continue
            seen.add(tenant.id)
            tenants.append(tenant)
        return tenants

    def _load_file(self, path: Path) -> Optional[TenantConfig]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("Skipping unreadable site config %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            self.logger.warning("Skipping site config %s: not a JSON object", path)
            return None
        try:
            tenant = TenantConfig.model_validate(data)
        except ValidationError as exc:
            self.logger.warning("Skipping invalid site config %s: %s", path, exc)
            return None

        directory = path.parent.relative_to(self.websites_dir).as_posix()
        tenant_id = tenant.database.name or tenant.id or path.parent.name
        return tenant.model_copy(update={"id": tenant_id, "directory": directory})

    def get(self, tenant_id: str) -> TenantConfig:
        """Return a single tenant or raise :class:`TenantConfigurationError`."""
        for tenant in self.load_all():
            if tenant.id == tenant_id:
                return tenant
        raise TenantConfigurationError(f"Unknown tenant '{tenant_id}'")


__all__ = ["TenantConfig", "TenantEmailSettings", "TenantLoader"]
