"""
Tests pour core/config.py
"""
import pytest

from core.config import TWITCH_CLIENT_ID, TWITCH_SCOPES, AppConfig, ConfigError, load_config, parse_config


@pytest.mark.unit
class TestConfig:
    """Chargement de config/config.yaml"""

    def test_defaults(self):
        """Vérifie les valeurs par défaut"""
        config = AppConfig()
        assert config.twitch.client_id == TWITCH_CLIENT_ID
        assert config.twitch.scopes == TWITCH_SCOPES
        assert config.oauth.refresh_margin == 1800
        assert config.predictions.window_max == 1800

    def test_missing_file_uses_defaults(self, tmp_path):
        """Vérifie les défauts quand le fichier n'existe pas"""
        config = load_config(str(tmp_path / "nope.yaml"))
        assert config == AppConfig()

    def test_load_yaml(self, tmp_path):
        """Vérifie la lecture YAML et la conversion des types"""
        path = tmp_path / "config.yaml"
        path.write_text(
            "twitch:\n"
            "  http_timeout: 5\n"
            "  open_browser: false\n"
            "predictions:\n"
            "  title: Qui gagne ?\n"
            "  default_rounds_to_win: 3\n",
            encoding="utf-8"
        )

        config = load_config(str(path))

        assert config.twitch.http_timeout == 5.0
        assert isinstance(config.twitch.http_timeout, float)
        assert config.twitch.open_browser is False
        assert config.predictions.title == "Qui gagne ?"
        assert config.predictions.default_rounds_to_win == 3
        assert config.oauth.refresh_margin == 1800

    def test_empty_file(self, tmp_path):
        """Vérifie qu'un fichier vide donne les défauts"""
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(str(path)) == AppConfig()

    def test_unknown_keys_ignored(self):
        """Vérifie que les clés inconnues sont ignorées"""
        config = parse_config({"oauth": {"refresh_margin": 600, "whatever": 1}, "database": {}})
        assert config.oauth.refresh_margin == 600

    @pytest.mark.parametrize("data", [
        {"oauth": {"refresh_margin": "soon"}},
        {"oauth": {"refresh_margin": True}},
        {"twitch": {"open_browser": 1}},
        {"twitch": {"scopes": "channel:read:predictions"}},
        {"predictions": []},
        ["not", "a", "mapping"],
    ])
    def test_invalid_types(self, data):
        """Vérifie le refus des types invalides"""
        with pytest.raises(ConfigError):
            parse_config(data)

    def test_window_bounds_checked(self):
        """Vérifie la cohérence window_min / window_max"""
        with pytest.raises(ConfigError):
            parse_config({"predictions": {"window_min": 600, "window_max": 120}})
