import pytest
import yaml

from aiquant.utils.config_loader import default_config_path, load_config, validate_config

from tests.helpers import BASE_CONFIG


def _write(tmp_path, doc, name="config.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(doc))
    return path


def test_shipped_config_is_valid(monkeypatch):
    monkeypatch.delenv("AIQUANT_CONFIG_PATH", raising=False)
    cfg = load_config(default_config_path(), force_reload=True)
    assert cfg["trading"]["allocation_fraction"] == 0.20
    assert cfg["risk"]["trail_stop_fraction"] == 0.02
    assert cfg["policy"]["entry_confidence_threshold"] > cfg["policy"]["exit_confidence_threshold"]


def test_load_config_returns_independent_copies(tmp_path):
    path = _write(tmp_path, BASE_CONFIG)
    a = load_config(path, force_reload=True)
    a["trading"]["starting_cash"] = 1
    b = load_config(path)
    assert b["trading"]["starting_cash"] == 10000


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("AIQUANT_STARTING_CASH", "2500")
    monkeypatch.setenv("AIQUANT_CYCLE_INTERVAL_SECONDS", "60")
    monkeypatch.setenv("FINNHUB_API_KEY", "secret")
    cfg = load_config(_write(tmp_path, BASE_CONFIG), force_reload=True)
    assert cfg["trading"]["starting_cash"] == 2500.0
    assert cfg["scheduler"]["cycle_interval_seconds"] == 60
    assert cfg["market_data"]["api_key"] == "secret"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", force_reload=True)


def test_missing_section_is_fatal(tmp_path):
    doc = {k: v for k, v in BASE_CONFIG.items() if k != "risk"}
    with pytest.raises(ValueError, match=r"Missing required config sections: risk"):
        load_config(_write(tmp_path, doc), force_reload=True)


def test_non_mapping_is_rejected(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match=r"YAML mapping"):
        load_config(path, force_reload=True)


@pytest.mark.parametrize("fraction", [0, 1.2, "x"])
def test_validate_rejects_bad_allocation(fraction):
    doc = {k: dict(v) for k, v in BASE_CONFIG.items()}
    doc["trading"]["allocation_fraction"] = fraction
    with pytest.raises(ValueError, match=r"allocation_fraction"):
        validate_config(doc)


def test_validate_rejects_negative_cash():
    doc = {k: dict(v) for k, v in BASE_CONFIG.items()}
    doc["trading"]["starting_cash"] = -5
    with pytest.raises(ValueError, match=r"starting_cash"):
        validate_config(doc)
