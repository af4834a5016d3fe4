# chaoscanvas/tests/test_config.py
import pytest
from pydantic import ValidationError as PydanticValidationError

from chaoscanvas.config import ReloadableSettings, Settings, load_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("CHAOS_CONFIG_PATH", "CHAOS_DAILY_CAP", "CHAOS_RATE_MAX", "CHAOS_DATABASE_DSN"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = load_settings()
    assert s.database_dsn == "mem://"
    assert s.starting_coins == 100
    assert s.daily_contribution_cap == 15
    assert s.contribution_rate_max == 20
    assert s.contribution_rate_window_ms == 300_000
    assert s.coin_packages["2000"] == 2000
    assert s.config_origin == "defaults"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("CHAOS_DAILY_CAP", "3")
    monkeypatch.setenv("CHAOS_DATABASE_DSN", "sqlite:///:memory:")
    s = load_settings()
    assert s.daily_contribution_cap == 3
    assert s.database_dsn == "sqlite:///:memory:"


def test_out_of_range_env_is_ignored(monkeypatch):
    monkeypatch.setenv("CHAOS_RATE_MAX", "0")
    assert load_settings().contribution_rate_max == 20


def test_yaml_overlay(monkeypatch, tmp_path):
    path = tmp_path / "chaos.yaml"
    path.write_text("daily_contribution_cap: 7\ncheckout_url: https://checkout.example\n")
    monkeypatch.setenv("CHAOS_CONFIG_PATH", str(path))
    s = load_settings()
    assert s.daily_contribution_cap == 7
    assert s.checkout_url == "https://checkout.example"
    assert s.config_origin == "yaml"


def test_unknown_keys_rejected():
    with pytest.raises(PydanticValidationError):
        Settings(not_a_setting=1)


def test_config_hash_is_stable():
    assert Settings().config_hash() == Settings().config_hash()
    assert Settings().config_hash() != Settings(daily_contribution_cap=1).config_hash()


def test_reloadable_settings_set():
    rs = ReloadableSettings(Settings())
    updated = rs.set(daily_contribution_cap=2, bogus=True)
    assert updated.daily_contribution_cap == 2
    assert rs.get() is updated


def test_settings_are_frozen():
    s = Settings()
    with pytest.raises(PydanticValidationError):
        s.daily_contribution_cap = 1
