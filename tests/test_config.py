"""
Tests for settings loading
"""
from fightcard.config import load_config


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    for name in ("ADMIN_TOKEN", "PUBLIC_BASE_URL", "START_EMPTY", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)
    settings = load_config(str(tmp_path / "absent.yaml"))
    assert settings.admin_token == "letmein"
    assert settings.mirror.retries == 3


def test_yaml_then_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "admin_token: from-yaml\n"
        "outbox_size: 8\n"
        "mirror:\n"
        "  file_dir: null\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("ADMIN_TOKEN", "from-env")
    monkeypatch.setenv("START_EMPTY", "yes")
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

    settings = load_config(str(path))

    assert settings.admin_token == "from-env"
    assert settings.outbox_size == 8
    assert settings.start_empty is True
    assert settings.mirror.database_url == "sqlite+aiosqlite:///:memory:"
    assert settings.mirror.file_dir is None
