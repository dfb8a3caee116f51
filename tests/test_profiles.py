from duet import CoordinatorConfig
from duet.utils.profiles import ENV_PROFILES_VAR, load_profiles, resolve_profile

PROFILES = """
default:
  pairing_policy: single-slot
  ping_interval: 15
fifo:
  pairing_policy: fifo
  queue_size: 32
  ice_servers:
    - urls: stun:stun.example.com:3478
"""


def test_bundled_profiles_load() -> None:
    profiles = load_profiles()

    assert {"default", "fifo", "debug"} <= set(profiles)
    assert profiles["default"]["pairing_policy"] == "single-slot"
    assert profiles["debug"]["ping_interval"] == 0


def test_resolve_profile_from_file(tmp_path) -> None:
    path = tmp_path / "profiles.yaml"
    path.write_text(PROFILES, encoding="utf-8")

    assert resolve_profile("fifo", path)["queue_size"] == 32
    assert resolve_profile("missing", path) == {"pairing_policy": "single-slot", "ping_interval": 15}


def test_missing_file_yields_empty_profile(tmp_path) -> None:
    assert resolve_profile("default", tmp_path / "absent.yaml") == {}


def test_config_from_env_override(tmp_path, monkeypatch) -> None:
    path = tmp_path / "custom.yaml"
    path.write_text(PROFILES, encoding="utf-8")
    monkeypatch.setenv(ENV_PROFILES_VAR, str(path))

    config = CoordinatorConfig.from_profile("fifo")

    assert config.profile == "fifo"
    assert config.pairing_policy == "fifo"
    assert config.queue_size == 32
    assert config.ping_interval == 30.0
    assert config.ice_servers == [{"urls": "stun:stun.example.com:3478"}]
