from shuttle_node.config import Config


class TestConfig:

    def test_defaults(self, monkeypatch):
        for name in ("MATCH_THRESHOLD", "CAPTURE_COOLDOWN_MS", "GATE_DEVICE_NAME", "GATE_ENABLED"):
            monkeypatch.delenv(name, raising=False)

        cfg = Config()

        assert cfg.MATCH_THRESHOLD == 0.6
        assert cfg.CAPTURE_COOLDOWN_MS == 3000
        assert cfg.GATE_DEVICE_NAME == "ESP32_Gate"
        assert cfg.GATE_ENABLED is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("GATE_ENABLED", "false")
        monkeypatch.setenv("MATCH_THRESHOLD", "0.45")
        monkeypatch.setenv("GATE_PORT", "/dev/ttyUSB0")

        cfg = Config()

        assert cfg.GATE_ENABLED is False
        assert cfg.MATCH_THRESHOLD == 0.45
        assert cfg.GATE_PORT == "/dev/ttyUSB0"
