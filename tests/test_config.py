"""Tests for dagmesh.config."""

from dagmesh.config import default_config, load_config, merge_config, validate_configuration


def test_defaults_when_file_missing(tmp_path):
    config = load_config(tmp_path / "absent.yaml")
    assert config == default_config()
    assert config["engine"]["max_concurrency"] == 4


def test_yaml_overrides_merge_over_defaults(tmp_path):
    path = tmp_path / "dagmesh_config.yaml"
    path.write_text(
        "mesh:\n  id: prod-mesh\nrouter:\n  event_timeout: 2.5\n",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config["mesh"]["id"] == "prod-mesh"
    assert config["mesh"]["max_concurrency"] == 10
    assert config["router"]["event_timeout"] == 2.5
    assert config["router"]["interaction_limit"] == 1000


def test_empty_yaml_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(path) == default_config()


def test_defaults_are_not_shared():
    config = merge_config(None)
    config["mesh"]["id"] = "changed"
    assert default_config()["mesh"]["id"] == "dagmesh"


def test_validate_configuration():
    assert validate_configuration(default_config()).result is True

    bad = merge_config({"mesh": {"max_concurrency": 0}})
    result = validate_configuration(bad)
    assert result.result is False
    assert result.details["key"] == "mesh.max_concurrency"

    negative_timeout = merge_config({"router": {"event_timeout": -1}})
    assert validate_configuration(negative_timeout).result is False


def test_retry_attempts_must_be_non_negative():
    assert validate_configuration(merge_config({"mesh": {"retry_attempts": 0}})).result is True

    result = validate_configuration(merge_config({"mesh": {"retry_attempts": -1}}))
    assert result.result is False
    assert result.details["key"] == "mesh.retry_attempts"
