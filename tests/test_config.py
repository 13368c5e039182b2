import pytest

from config import BotConfig, GuardConfig, LifecycleConfig, StrategyConfig
from exceptions import ConfigError


def test_defaults_validate():
    bundle = StrategyConfig().validate()
    assert bundle.bot.max_iterations >= 1
    assert bundle.scorer.min_confidence == pytest.approx(0.65)


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("MAX_ITERATIONS", "7")
    monkeypatch.setenv("TIMEFRAME", "5m")
    monkeypatch.setenv("MIN_CONFIDENCE", "0.7")
    bundle = StrategyConfig.from_env()
    assert bundle.bot.max_iterations == 7
    assert bundle.bot.timeframe == "5m"
    assert bundle.scorer.min_confidence == pytest.approx(0.7)


def test_from_env_rejects_bad_values(monkeypatch):
    monkeypatch.setenv("RISK_FRACTION", "1.5")
    with pytest.raises(ConfigError):
        StrategyConfig.from_env()


@pytest.mark.parametrize("part", [
    BotConfig(max_iterations=0),
    BotConfig(interval_sec=-1.0),
    GuardConfig(max_consecutive_losses=0),
    LifecycleConfig(trailing_distance_pct=1.0),
])
def test_invalid_parts(part):
    with pytest.raises(ConfigError):
        part.validate()
