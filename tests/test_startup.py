from linkpay.common.startup import safe_config


def test_startup_config_masks_credentials(settings):
    settings.database_url = "postgresql+psycopg://linkpay:hunter2@db:5432/linkpay"
    settings.verifier_token = "verifier-secret"
    config = safe_config(settings, ["database_url", "redis_url", "verifier_token", "webhook_max_attempts"])
    assert "hunter2" not in config["database_url"]
    assert config["database_url"].startswith("postgresql+psycopg://linkpay:")
    assert config["redis_url"] == "<unset>"
    assert config["verifier_token"] == "<redacted>"
    assert config["webhook_max_attempts"] == 3
