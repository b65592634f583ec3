from __future__ import annotations

from pathlib import Path

import pytest

from bluezctl.core.config_loader import load_config
from bluezctl.core.errors import ConfigLoadError, ConfigValidationError


def _write_config(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.delenv("BLUEZCTL_CONFIG", raising=False)


def test_packaged_defaults() -> None:
    loaded = load_config()
    assert loaded.sources == ("defaults",)
    assert loaded.warnings == ()
    assert loaded.config.adapter == "hci0"
    assert loaded.config.bus == "system"
    assert loaded.config.call_timeout_s == 30.0
    assert loaded.config.event_backlog == 256


def test_user_file_overrides_defaults(tmp_path: Path) -> None:
    user = _write_config(
        tmp_path / "cfg" / "bluezctl" / "config.yaml",
        """
adapter: hci1
connect_timeout_s: 12
""",
    )
    loaded = load_config()
    assert loaded.sources == ("defaults", str(user))
    assert loaded.config.adapter == "hci1"
    assert loaded.config.connect_timeout_s == 12.0
    assert isinstance(loaded.config.connect_timeout_s, float)
    assert loaded.config.call_timeout_s == 30.0


def test_explicit_path_wins_over_user_file(tmp_path: Path) -> None:
    _write_config(tmp_path / "cfg" / "bluezctl" / "config.yaml", "event_backlog: 16\n")
    explicit = _write_config(tmp_path / "explicit.yaml", "event_backlog: 32\nbus: session\n")

    loaded = load_config(explicit)

    assert loaded.config.event_backlog == 32
    assert loaded.config.bus == "session"
    assert loaded.sources[-1] == str(explicit)


def test_env_file_is_used(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    env_file = _write_config(tmp_path / "env.yaml", "orphan_staleness_s: 1.5\n")
    monkeypatch.setenv("BLUEZCTL_CONFIG", str(env_file))
    assert load_config().config.orphan_staleness_s == 1.5


def test_missing_env_file_is_a_warning(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BLUEZCTL_CONFIG", str(tmp_path / "nope.yaml"))
    loaded = load_config()
    assert len(loaded.warnings) == 1
    assert "nope.yaml" in loaded.warnings[0]


def test_missing_explicit_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError):
        load_config(tmp_path / "nope.yaml")


def test_unknown_key_rejected(tmp_path: Path) -> None:
    bad = _write_config(tmp_path / "bad.yaml", "adapter: hci0\ncolour: blue\n")
    with pytest.raises(ConfigValidationError):
        load_config(bad)


def test_wrong_type_rejected(tmp_path: Path) -> None:
    bad = _write_config(tmp_path / "bad.yaml", "event_backlog: 0\n")
    with pytest.raises(ConfigValidationError, match="event_backlog"):
        load_config(bad)


def test_duplicate_keys_rejected(tmp_path: Path) -> None:
    bad = _write_config(tmp_path / "dup.yaml", "adapter: hci0\nadapter: hci1\n")
    with pytest.raises(ConfigValidationError, match="Duplicate key"):
        load_config(bad)


def test_non_mapping_root_rejected(tmp_path: Path) -> None:
    bad = _write_config(tmp_path / "list.yaml", "- hci0\n")
    with pytest.raises(ConfigValidationError):
        load_config(bad)


def test_empty_file_keeps_defaults(tmp_path: Path) -> None:
    empty = _write_config(tmp_path / "empty.yaml", "")
    assert load_config(empty).config.adapter == "hci0"


def test_adapter_may_be_given_by_address(tmp_path: Path) -> None:
    config = _write_config(tmp_path / "mac.yaml", 'adapter: "00:1a:7d:da:71:13"\n')
    assert load_config(config).config.adapter == "00:1a:7d:da:71:13"


def test_malformed_adapter_rejected(tmp_path: Path) -> None:
    bad = _write_config(tmp_path / "bad.yaml", 'adapter: "hci 0"\n')
    with pytest.raises(ConfigValidationError, match="adapter"):
        load_config(bad)
