"""Tests for the emulated platform environment."""

from __future__ import annotations

import json

from dropstage.env import STACK, baseline_env, build_environment, env_list, merge_env, vcap_services
from dropstage.types import ApplicationDescriptor, Service


def _service(**overrides) -> Service:
    fields = {"name": "db", "label": "p-mysql", "plan": "small", "credentials": {"uri": "mysql://x"}}
    fields.update(overrides)
    return Service(**fields)


class TestBaseline:
    def test_platform_contract_variables(self):
        env = baseline_env(ApplicationDescriptor(name="myapp"))
        assert env["CF_STACK"] == STACK
        assert env["MEMORY_LIMIT"] == "512m"
        assert env["HOME"] == "/home/vcap"
        assert env["USER"] == "vcap"
        assert env["LANG"] == "en_US.UTF-8"

    def test_memory_limit_follows_descriptor(self):
        env = baseline_env(ApplicationDescriptor(name="myapp", mem=1024))
        assert env["MEMORY_LIMIT"] == "1024m"


class TestVcapServices:
    def test_missing_services_serialize_to_empty_object(self):
        assert vcap_services(None) == "{}"

    def test_empty_services_serialize_to_empty_object(self):
        assert vcap_services({}) == "{}"

    def test_bindings_keyed_by_label(self):
        decoded = json.loads(vcap_services({"p-mysql": [_service()]}))
        assert list(decoded) == ["p-mysql"]
        binding = decoded["p-mysql"][0]
        assert binding["name"] == "db"
        assert binding["credentials"] == {"uri": "mysql://x"}
        # unset optional fields are left out rather than sent as null
        assert "provider" not in binding
        assert "syslog_drain_url" not in binding

    def test_extra_fields_preserved(self):
        decoded = json.loads(vcap_services({"p-mysql": [_service(instance_name="db-1")]}))
        assert decoded["p-mysql"][0]["instance_name"] == "db-1"


class TestMergeEnv:
    def test_later_layers_win(self):
        merged = merge_env({"A": "1", "B": "1"}, {"B": "2"}, None, {"C": "3"})
        assert merged == {"A": "1", "B": "2", "C": "3"}


class TestBuildEnvironment:
    def test_application_name_reaches_vcap_application(self):
        env = build_environment(ApplicationDescriptor(name="myapp"), None)
        vcap = json.loads(env["VCAP_APPLICATION"])
        assert vcap["application_name"] == "myapp"
        assert vcap["name"] == "myapp"
        assert vcap["space_name"] == "cflocal-space"
        assert vcap["limits"] == {"fds": 16384, "mem": 512, "disk": 1024}
        assert env["VCAP_SERVICES"] == "{}"

    def test_user_env_overrides_staging_env_and_baseline(self):
        env = build_environment(
            ApplicationDescriptor(name="myapp"),
            None,
            {"LANG": "C", "STAGE_ONLY": "yes", "SHARED": "staging"},
            {"SHARED": "user"},
        )
        assert env["LANG"] == "C"
        assert env["STAGE_ONLY"] == "yes"
        assert env["SHARED"] == "user"

    def test_env_list_is_sorted_key_value_pairs(self):
        assert env_list({"B": "2", "A": "x=y"}) == ["A=x=y", "B=2"]
