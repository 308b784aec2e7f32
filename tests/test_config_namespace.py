import pytest

from unitkit import ConfigNamespace


def test_config_namespace_get_bool_is_strict():
    ns = ConfigNamespace({"shell": "false"}, path="units[0]")
    with pytest.raises(TypeError, match=r"units\[0\].shell must be a boolean"):
        ns.get_bool("shell")


def test_config_namespace_get_list_str_trims_and_rejects_empty_items():
    ns = ConfigNamespace({"targets": [" a ", "b"], "bad": ["x", " "]}, path="units[0]")
    assert ns.get_list_str("targets") == ["a", "b"]
    with pytest.raises(ValueError, match=r"units\[0\].bad\[1\] cannot be empty"):
        ns.get_list_str("bad")


def test_config_namespace_get_command_accepts_string_or_argv():
    ns = ConfigNamespace({"a": " make all ", "b": ["touch", 1], "c": [["nested"]]}, path="units[0]")
    assert ns.get_command("a") == "make all"
    assert ns.get_command("b") == ["touch", "1"]
    with pytest.raises(TypeError, match=r"must be a list of scalars"):
        ns.get_command("c")
    assert ns.get_command("missing", default=None) is None


def test_config_namespace_tracks_consumed_and_effective_values():
    ns = ConfigNamespace({"name": "demo", "typo": 1}, path="units[2]")
    ns.get_str("name")
    ns.get_bool("shell", default=False)

    assert ns.consumed_keys() == ("name", "shell")
    assert ns.unconsumed_keys() == ("typo",)
    assert ns.effective_values() == {"name": "demo", "shell": False}
    with pytest.raises(ValueError, match=r"Unknown config keys under units\[2\]: typo \(unit: demo"):
        ns.assert_consumed(unit_name="demo")


def test_config_namespace_missing_required_key_raises():
    ns = ConfigNamespace({}, path="units[0]")
    with pytest.raises(ValueError, match=r"Missing required config key: units\[0\].targets"):
        ns.get_list_str("targets")


def test_config_namespace_get_list_mapping_rejects_scalars():
    ns = ConfigNamespace({"units": [{"name": "a"}, "b"]}, path="")
    with pytest.raises(TypeError, match=r"units\[1\] must be a mapping"):
        ns.get_list_mapping("units")
