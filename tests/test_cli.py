"""Tests for the docvault CLI and runtime wiring, against a SQLite config file."""

import pytest
import yaml

from docvault.cli import main
from docvault.documents.storage import S3ObjectStorage
from docvault.engine.config import DocVaultConfig
from docvault.engine.principal import Principal
from docvault.engine.runtime import get_runtime, init_runtime

from tests.conftest import ADMIN_TOKEN, JWT_SECRET, PASSWORD


def _settings(tmp_path) -> dict:
    return {
        "environment": "dev",
        "database": {"url": f"sqlite:///{tmp_path / 'cli.db'}"},
        "cache": {"enabled": False},
        "jwt": {"secret_key": JWT_SECRET},
        "security": {"admin_token": ADMIN_TOKEN, "bcrypt_rounds": 4},
        "storage": {
            "bucket": "docs",
            "endpoint": "http://localhost:9000",
            "access_key_id": "minio",
            "secret_access_key": "minio123",
            "local": True,
        },
        "logging": {"directory": str(tmp_path / "logs")},
    }


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "docvault.yaml"
    path.write_text(yaml.safe_dump(_settings(tmp_path)), encoding="utf-8")
    return str(path)


class TestInit:

    def test_skip_bucket(self, config_path, capsys):
        assert main(["--config", config_path, "init", "--skip-bucket"]) == 0
        out = capsys.readouterr().out
        assert "[OK] Database tables created" in out
        assert "[SKIP] Object storage" in out

    def test_creates_bucket(self, config_path, monkeypatch, capsys):
        monkeypatch.setattr(S3ObjectStorage, "ensure_bucket", lambda self: True)
        assert main(["--config", config_path, "init"]) == 0
        assert "Bucket 'docs' created" in capsys.readouterr().out

    def test_bad_config(self, tmp_path, capsys):
        path = tmp_path / "broken.yaml"
        path.write_text("environment: [unclosed", encoding="utf-8")
        assert main(["--config", str(path), "init"]) == 1
        assert "[ERROR]" in capsys.readouterr().out


class TestCheck:

    def test_reports_ok(self, config_path, capsys):
        assert main(["--config", config_path, "check"]) == 0
        out = capsys.readouterr().out
        assert "[OK] Database reachable" in out
        assert "[SKIP] Cache disabled" in out
        assert "[WARN] jwt.secret_key" not in out

    def test_warns_on_defaults(self, tmp_path, capsys):
        settings = _settings(tmp_path)
        settings["jwt"] = {}
        settings["security"] = {}
        path = tmp_path / "defaults.yaml"
        path.write_text(yaml.safe_dump(settings), encoding="utf-8")
        assert main(["--config", str(path), "check"]) == 0
        out = capsys.readouterr().out
        assert "[WARN] jwt.secret_key is the default value" in out
        assert "[WARN] security.admin_token is empty" in out


class TestCreateUser:

    def test_create_then_duplicate(self, config_path, capsys):
        assert main(["--config", config_path, "init", "--skip-bucket"]) == 0
        assert main(["--config", config_path, "create-user", "cliuser01", "--password", PASSWORD]) == 0
        assert "[OK] User 'cliuser01' created" in capsys.readouterr().out

        assert main(["--config", config_path, "create-user", "cliuser01", "--password", PASSWORD]) == 1
        assert "[ERROR]" in capsys.readouterr().out

    def test_prompts_for_password(self, config_path, monkeypatch):
        main(["--config", config_path, "init", "--skip-bucket"])
        answers = iter(["Mismatch1!", "Other1!xx", PASSWORD, PASSWORD])
        monkeypatch.setattr("getpass.getpass", lambda prompt="": next(answers))
        assert main(["--config", config_path, "create-user", "cliuser02"]) == 0

    def test_weak_password(self, config_path, capsys):
        main(["--config", config_path, "init", "--skip-bucket"])
        assert main(["--config", config_path, "create-user", "cliuser03", "--password", "weak"]) == 1


class TestNoCommand:

    def test_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage: docvault" in capsys.readouterr().out


class TestRuntime:

    def test_not_initialized(self):
        with pytest.raises(RuntimeError):
            get_runtime()

    def test_startup_wires_services(self, tmp_path):
        runtime = init_runtime(DocVaultConfig(**_settings(tmp_path)), create_tables=True)
        assert get_runtime() is runtime
        runtime.startup()
        try:
            status = runtime.status()
            assert status["cache_enabled"] is False
            assert status["webhook_enabled"] is False
            assert status["storage_bucket"] == "docs"

            tokens = runtime.users.register(ADMIN_TOKEN, "runtime01", PASSWORD)
            principal = runtime.sessions.authenticate(tokens.access_token)
            assert principal.kind == "user"
            page = runtime.documents.list_documents(principal)
            assert page.items == []
            assert runtime.sessions.authenticate(ADMIN_TOKEN) == Principal.admin()
        finally:
            runtime.shutdown()

    def test_startup_is_idempotent(self, tmp_path):
        runtime = init_runtime(DocVaultConfig(**_settings(tmp_path)), create_tables=True)
        runtime.startup()
        factory = runtime.session_factory
        runtime.startup()
        assert runtime.session_factory is factory
        runtime.shutdown()
        runtime.shutdown()
