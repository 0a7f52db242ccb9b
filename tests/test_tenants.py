import json

import pytest

from async_reply_service.errors import TenantConfigurationError
from async_reply_service.tenants import TenantConfig, TenantLoader


def _write_site(root, directory, data):
    site = root / directory
    site.mkdir(parents=True, exist_ok=True)
    (site / "config.json").write_text(json.dumps(data), encoding="utf-8")
    return site


SHOP = {
    "siteName": "Corner Shop",
    "database": {"name": "corner_shop"},
    "theme": {"primary": "#fff"},
    "email": {
        "fromAddress": "hello@corner.test",
        "fromName": "Corner Shop Team",
        "replyTo": "support@corner.test",
        "imap": {"server": "imap.corner.test", "port": 993, "username": "in", "password": "pw", "useTLS": True},
        "smtp": {"server": "smtp.corner.test", "port": 587, "username": "out", "password": "pw", "useTLS": True},
    },
}


def test_model_reads_camel_case_keys():
    tenant = TenantConfig.model_validate(SHOP)

    assert tenant.site_name == "Corner Shop"
    assert tenant.imap.server == "imap.corner.test"
    assert tenant.imap.use_tls is True
    assert tenant.has_imap and tenant.has_smtp
    assert tenant.sender_address == "hello@corner.test"
    assert tenant.sender_name == "Corner Shop Team"


def test_sender_falls_back_to_smtp_login_and_site_name():
    tenant = TenantConfig.model_validate(
        {"siteName": "Bakery", "email": {"smtp": {"server": "smtp.b.test", "port": 25, "username": "bakery@b.test"}}}
    )
    assert tenant.sender_address == "bakery@b.test"
    assert tenant.sender_name == "Bakery"


@pytest.mark.parametrize(
    "imap",
    [{}, {"server": "", "port": 993}, {"server": "imap.x.test", "port": 0}, {"server": "   ", "port": 143}],
)
def test_incomplete_imap_is_not_configured(imap):
    tenant = TenantConfig.model_validate({"email": {"imap": imap}})
    assert tenant.has_imap is False


def test_loader_discovers_sites_and_derives_ids(tmp_path):
    _write_site(tmp_path, "corner", SHOP)
    _write_site(tmp_path, "nested/bakery", {"siteName": "Bakery"})

    tenants = TenantLoader(tmp_path).load_all()

    by_id = {t.id: t for t in tenants}
    assert set(by_id) == {"corner_shop", "bakery"}
    assert by_id["corner_shop"].directory == "corner"
    assert by_id["bakery"].directory == "nested/bakery"
    assert by_id["bakery"].has_imap is False


def test_loader_skips_invalid_and_duplicate_configs(tmp_path):
    _write_site(tmp_path, "a", SHOP)
    _write_site(tmp_path, "b", SHOP)
    broken = tmp_path / "c"
    broken.mkdir()
    (broken / "config.json").write_text("{not json", encoding="utf-8")
    _write_site(tmp_path, "d", ["not", "an", "object"])
    _write_site(tmp_path, "e", {"email": {"imap": {"port": "not-a-port"}}})

    tenants = TenantLoader(tmp_path).load_all()

    assert [t.id for t in tenants] == ["corner_shop"]
    assert tenants[0].directory == "a"


def test_loader_rescans_on_every_call(tmp_path):
    loader = TenantLoader(tmp_path)
    assert loader.load_all() == []

    _write_site(tmp_path, "corner", SHOP)

    assert [t.id for t in loader.load_all()] == ["corner_shop"]


def test_missing_directory_yields_no_tenants(tmp_path):
    assert TenantLoader(tmp_path / "missing").load_all() == []


def test_get_unknown_tenant_raises(tmp_path):
    _write_site(tmp_path, "corner", SHOP)
    loader = TenantLoader(tmp_path)

    assert loader.get("corner_shop").site_name == "Corner Shop"
    with pytest.raises(TenantConfigurationError):
        loader.get("nope")


def test_summary_reports_configuration_flags():
    summary = TenantConfig.model_validate({**SHOP, "id": "corner_shop"}).summary()
    assert summary == {
        "id": "corner_shop",
        "site_name": "Corner Shop",
        "directory": "",
        "imap_configured": True,
        "smtp_configured": True,
    }
