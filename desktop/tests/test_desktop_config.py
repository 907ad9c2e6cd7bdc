from desktop.config import Settings, load_env_file, merge_env


def test_load_env_file_parses_key_values(tmp_path):
    env = tmp_path / ".env"
    env.write_text(
        "\n".join(
            [
                "# comment",
                "",
                "REMOTE_DATABASE_URL=postgresql://u:p@db:5432/pos?sslmode=require",
                "NAME = \"Main Pharmacy\"",
                "TOKEN='abc=def'",
                "EMPTY=",
                "not a pair",
                "=novalue",
            ]
        ),
        encoding="utf-8",
    )
    assert load_env_file(env) == {
        "REMOTE_DATABASE_URL": "postgresql://u:p@db:5432/pos?sslmode=require",
        "NAME": "Main Pharmacy",
        "TOKEN": "abc=def",
        "EMPTY": "",
    }


def test_load_env_file_missing_is_empty(tmp_path):
    assert load_env_file(tmp_path / "nope.env") == {}


def test_merge_env_never_overrides_caller_values():
    merged = merge_env({"PORT": "6000", "PATH": "/bin"}, {"PORT": "5001", "EXTRA": "1"})
    assert merged == {"PORT": "6000", "PATH": "/bin", "EXTRA": "1"}
    assert merge_env({"A": "1"}, None) == {"A": "1"}


def test_settings_defaults_and_overrides(monkeypatch, tmp_path):
    for name in ("BACKEND_PORT", "BACKEND_HOST", "STARTUP_TIMEOUT", "PORT_RETRY_ATTEMPTS", "BACKEND_DIST_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("APP_DATA_DIR", str(tmp_path))
    s = Settings()
    assert s.port == 5001
    assert s.base_url == "http://127.0.0.1:5001"
    assert s.database_path == tmp_path / "data" / "pharmapos.db"
    assert s.logs_dir == tmp_path / "logs"
    assert (s.port_retry_attempts, s.port_retry_backoff, s.startup_timeout) == (5, 1.0, 20.0)
    assert (s.supervisor_interval, s.unhealthy_threshold, s.boot_attempts) == (10.0, 3, 5)
    assert s.backend_dist_dir is None

    monkeypatch.setenv("BACKEND_PORT", "6001")
    monkeypatch.setenv("STARTUP_TIMEOUT", "soon")
    s = Settings()
    assert s.port == 6001
    assert s.startup_timeout == 20.0
