from config import Settings


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("CROWD_THRESHOLD", "3.5")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("UNRELATED_VAR", "ignored")

    settings = Settings()
    assert settings.CROWD_THRESHOLD == 3.5
    assert settings.LOG_LEVEL == "debug"
    assert "DEBUG" not in Settings.model_fields
