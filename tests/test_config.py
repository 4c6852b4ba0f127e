from attendance_node.config import Config


def test_defaults(monkeypatch):
    for name in ("MATCH_THRESHOLD", "MODEL_LOAD_TIMEOUT", "ALLOW_DEGRADED_MODE", "DETECTION_INTERVAL"):
        monkeypatch.delenv(name, raising=False)

    config = Config()

    assert config.MATCH_THRESHOLD == 0.6
    assert config.MODEL_LOAD_TIMEOUT == 30.0
    assert config.ALLOW_DEGRADED_MODE is False
    assert config.DETECTION_INTERVAL == 0.1


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("MATCH_THRESHOLD", "0.45")
    monkeypatch.setenv("ALLOW_DEGRADED_MODE", "yes")
    monkeypatch.setenv("SESSION_CONTEXT", "CS101")

    config = Config()

    assert config.MATCH_THRESHOLD == 0.45
    assert config.ALLOW_DEGRADED_MODE is True
    assert config.SESSION_CONTEXT == "CS101"
