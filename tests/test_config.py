from config import Config


def test_defaults_and_validation(monkeypatch, tmp_path):
    monkeypatch.setenv("BOT_CONFIG_PATH", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("FEED_FETCH_TIMEOUT", "not-a-number")
    monkeypatch.setenv("SUBSCRIPTION_CONCURRENCY", "0")
    monkeypatch.delenv("ITEM_LIMIT_PER_FEED", raising=False)
    monkeypatch.delenv("BITABLE_APP_TOKEN", raising=False)
    monkeypatch.delenv("STORE_BACKEND", raising=False)
    cfg = Config()
    assert cfg.FEED_FETCH_TIMEOUT == 20
    assert cfg.SUBSCRIPTION_CONCURRENCY == 4
    assert cfg.ITEM_LIMIT_PER_FEED == 5
    assert cfg.STORE_BACKEND == "sqlite"


def test_bitable_backend_selected_when_configured(monkeypatch, tmp_path):
    monkeypatch.setenv("BOT_CONFIG_PATH", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("BITABLE_APP_TOKEN", "bascn")
    monkeypatch.setenv("BITABLE_TABLE_ID", "tbl1")
    monkeypatch.delenv("STORE_BACKEND", raising=False)
    assert Config().STORE_BACKEND == "bitable"


def test_bot_yaml_item_limit(monkeypatch, tmp_path):
    path = tmp_path / "bot.yaml"
    path.write_text("limits:\n  items_per_feed: 8\n")
    monkeypatch.setenv("BOT_CONFIG_PATH", str(path))
    monkeypatch.delenv("ITEM_LIMIT_PER_FEED", raising=False)
    assert Config().ITEM_LIMIT_PER_FEED == 8

    monkeypatch.setenv("ITEM_LIMIT_PER_FEED", "3")
    assert Config().ITEM_LIMIT_PER_FEED == 3


def test_secrets_file_exports_values(monkeypatch, tmp_path):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("environment:\n  APP_ID: cli_from_secrets\n  APP_SECRET: s3cret\n")
    monkeypatch.setenv("SECRETS_FILE", str(secrets))
    monkeypatch.setenv("BOT_CONFIG_PATH", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("APP_ID", "")
    monkeypatch.setenv("APP_SECRET", "")
    cfg = Config()
    assert cfg.APP_ID == "cli_from_secrets"
    assert cfg.get_config_summary()["has_app_credentials"] is True
